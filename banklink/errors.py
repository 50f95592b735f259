"""Domain errors raised by the integration layer.

Each error carries a machine-readable ``code``; ``banklink.main`` maps codes
to HTTP responses and redirect reasons. Lower layers only raise.
"""


class BankLinkError(Exception):
    code = "BANKLINK_ERROR"

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


class NotConfigured(BankLinkError):
    """Bank integration is not configured"""
    code = "NOT_CONFIGURED"


class Forbidden(BankLinkError):
    """Only tenant superadmins may manage the bank connection"""
    code = "FORBIDDEN"


class AlreadyConnected(BankLinkError):
    """Tenant already has an active bank connection"""
    code = "already_connected"


class OAuthDenied(BankLinkError):
    """Authorization was denied at the provider"""
    code = "oauth_denied"


class InvalidCallback(BankLinkError):
    """Callback is missing code or state"""
    code = "invalid_callback"


class StateMismatch(BankLinkError):
    """Returned state does not match the bound state"""
    code = "state_mismatch"


class SessionExpired(BankLinkError):
    """Authorization session expired or already used"""
    code = "session_expired"


class StorageFailed(BankLinkError):
    """Could not store the connection"""
    code = "storage_failed"


class NoConnection(BankLinkError):
    """No active bank connection"""
    code = "NO_CONNECTION"


class RefreshFailed(BankLinkError):
    """Provider rejected the token refresh; reconnect required"""
    code = "REFRESH_FAILED"


class ValidationFailed(BankLinkError):
    code = "VALIDATION_FAILED"


class NotFound(BankLinkError):
    code = "NOT_FOUND"


class PaymentFailed(BankLinkError):
    code = "PAYMENT_FAILED"


class PayloadError(BankLinkError):
    """Webhook payload could not be parsed"""
    code = "INVALID_PAYLOAD"


class SignatureError(BankLinkError):
    """Webhook signature missing or invalid"""
    code = "INVALID_SIGNATURE"


class DeleteFailed(BankLinkError):
    """Failed to delete the connection and its data"""
    code = "DELETE_FAILED"


class UpdateFailed(BankLinkError):
    """Failed to revoke the connection"""
    code = "UPDATE_FAILED"
