from typing import Optional

from pydantic_settings import BaseSettings

SANDBOX_API_BASE_URL = "https://sandbox-b2b.revolut.com/api/1.0"
PRODUCTION_API_BASE_URL = "https://b2b.revolut.com/api/1.0"
SANDBOX_AUTH_URL = "https://sandbox-business.revolut.com/app-confirm"
PRODUCTION_AUTH_URL = "https://business.revolut.com/app-confirm"


class Settings(BaseSettings):
    APP_BASE_URL: str = "http://127.0.0.1:8000"
    DATABASE_URL: str = "sqlite:///./banklink.db"
    VAULT_KEY: str = "dev-vault-key-change-me"
    LOG_LEVEL: str = "INFO"

    # Integration is disabled while the client id is missing.
    BANK_CLIENT_ID: Optional[str] = None
    BANK_SANDBOX: bool = True
    BANK_REDIRECT_URI: Optional[str] = None
    BANK_WEBHOOK_SECRET: Optional[str] = None
    BANK_API_BASE_URL: Optional[str] = None
    BANK_AUTH_URL: Optional[str] = None
    BANK_SCOPE: str = "accounts:read transactions:read payments:write"
    WEBHOOK_SIGNATURE_HEADER: str = "Bank-Signature"

    SETTINGS_PATH: str = "/settings"
    MOCK_PROVIDER_ENABLED: bool = True

    HTTP_TIMEOUT_SECONDS: int = 10
    RATE_LIMIT_MAX_RETRIES: int = 5
    OAUTH_STATE_TTL_MINUTES: int = 10
    REFRESH_TOKEN_TTL_DAYS: int = 90
    TOKEN_EXPIRY_SKEW_SECONDS: int = 300
    SYNC_WINDOW_DAYS: int = 30
    SYNC_TRANSACTION_COUNT: int = 1000
    SYNC_STALE_AFTER_MINUTES: int = 60

    @property
    def api_base_url(self) -> str:
        if self.BANK_API_BASE_URL:
            return self.BANK_API_BASE_URL
        return SANDBOX_API_BASE_URL if self.BANK_SANDBOX else PRODUCTION_API_BASE_URL

    @property
    def auth_url(self) -> str:
        if self.BANK_AUTH_URL:
            return self.BANK_AUTH_URL
        return SANDBOX_AUTH_URL if self.BANK_SANDBOX else PRODUCTION_AUTH_URL

    @property
    def redirect_uri(self) -> str:
        return self.BANK_REDIRECT_URI or f"{self.APP_BASE_URL}/integrations/bank/callback"

    @property
    def is_configured(self) -> bool:
        return bool(self.BANK_CLIENT_ID)


settings = Settings()
