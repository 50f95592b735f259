"""OAuth connection lifecycle: authorize, callback, refresh, disconnect.

A tenant moves absent -> pending authorization (an OAuthState row) ->
active (a Connection row) -> revoked. Every mutating operation checks the
caller's role before touching storage.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from banklink.collaborators import Principal, require_admin
from banklink.db import as_utc, utcnow
from banklink.errors import (
    AlreadyConnected,
    DeleteFailed,
    InvalidCallback,
    NoConnection,
    NotConfigured,
    OAuthDenied,
    RefreshFailed,
    SessionExpired,
    StateMismatch,
    StorageFailed,
    UpdateFailed,
)
from banklink.models import (
    CONNECTION_ACTIVE,
    CONNECTION_EXPIRED,
    CONNECTION_REVOKED,
    Account,
    Connection,
    OAuthState,
    Payment,
    SyncRun,
    Transaction,
)
from banklink.provider_client import ProviderClient, ProviderError, ProviderTimeoutError, TokenExpiredError
from banklink.settings import settings
from banklink.vault import TokenVault, get_vault

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_TTL = 3600


@dataclass
class AuthorizationRequest:
    url: str
    state: str


def _is_rejection(error: ProviderError) -> bool:
    """Client errors from the token endpoint mean the grant itself is bad."""
    if isinstance(error, ProviderTimeoutError):
        return False
    if isinstance(error, TokenExpiredError):
        return True
    return error.status_code is not None and 400 <= error.status_code < 500 and error.status_code != 429


def purge_tenant_data(db: Session, tenant_id: str):
    """Deletes the connection and everything mirrored for the tenant. Caller commits."""
    db.query(Payment).filter(Payment.tenant_id == tenant_id).delete(synchronize_session=False)
    db.query(Transaction).filter(Transaction.tenant_id == tenant_id).delete(synchronize_session=False)
    db.query(Account).filter(Account.tenant_id == tenant_id).delete(synchronize_session=False)
    db.query(SyncRun).filter(SyncRun.tenant_id == tenant_id).delete(synchronize_session=False)
    db.query(Connection).filter(Connection.tenant_id == tenant_id).delete(synchronize_session=False)


class ConnectionManager:
    def __init__(self, db: Session, client: Optional[ProviderClient] = None,
                 vault: Optional[TokenVault] = None):
        self.db = db
        self.client = client or ProviderClient()
        self.vault = vault or get_vault()

    def _get_connection(self, tenant_id: str) -> Optional[Connection]:
        return self.db.query(Connection).filter(Connection.tenant_id == tenant_id).first()

    def initiate(self, principal: Principal) -> AuthorizationRequest:
        if not settings.is_configured:
            raise NotConfigured("Bank integration is not configured")
        require_admin(principal, "connect the bank account")

        existing = self._get_connection(principal.tenant_id)
        if existing and existing.status == CONNECTION_ACTIVE:
            raise AlreadyConnected()

        now = utcnow()
        # Drop bindings nobody came back for
        self.db.query(OAuthState).filter(OAuthState.expires_at < now).delete(synchronize_session=False)

        state = secrets.token_urlsafe(32)
        self.db.add(OAuthState(
            state=state,
            tenant_id=principal.tenant_id,
            expires_at=now + timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES),
        ))
        self.db.commit()

        logger.info("Started bank authorization", extra={"tenant_id": principal.tenant_id})
        return AuthorizationRequest(url=self.client.build_authorize_url(state), state=state)

    def _consume_state(self, state: Optional[str]):
        """Deletes the binding for ``state`` and returns (tenant_id, expires_at), or None."""
        if not state:
            return None
        row = self.db.query(OAuthState).filter(OAuthState.state == state).first()
        if not row:
            return None
        binding = (row.tenant_id, as_utc(row.expires_at))
        self.db.delete(row)
        self.db.commit()
        return binding

    def complete(self, principal: Principal, code: Optional[str], state: Optional[str],
                 bound_state: Optional[str] = None, error: Optional[str] = None,
                 error_description: Optional[str] = None) -> Connection:
        require_admin(principal, "connect the bank account")

        # Single use: spent before any check so a rejected callback cannot be replayed
        binding = self._consume_state(state)

        if error:
            logger.warning(f"Provider denied authorization: {error} {error_description or ''}".strip(),
                           extra={"tenant_id": principal.tenant_id})
            raise OAuthDenied(error_description or error)
        if not code or not state:
            raise InvalidCallback()
        if bound_state is not None and bound_state != state:
            raise StateMismatch()
        if binding is None:
            if bound_state is None:
                raise StateMismatch("Unknown authorization state")
            raise SessionExpired()

        bound_tenant_id, expires_at = binding
        if bound_tenant_id != principal.tenant_id:
            logger.warning("Authorization state issued to a different tenant",
                           extra={"tenant_id": principal.tenant_id})
            raise StateMismatch("Authorization state belongs to another tenant")
        if expires_at < utcnow():
            raise SessionExpired()

        tokens = self.client.exchange_code_for_token(code)
        now = utcnow()

        try:
            conn = self._get_connection(principal.tenant_id)
            if conn is None:
                conn = Connection(tenant_id=principal.tenant_id)
                self.db.add(conn)
            # Reconnect supersedes the previous row in place so mirrored data keeps its owner
            self._store_tokens(conn, tokens, now, reset_refresh_expiry=True)
            conn.status = CONNECTION_ACTIVE
            conn.connected_at = now
            conn.disconnected_at = None
            conn.last_sync_error = None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store bank connection: {e}", extra={"tenant_id": principal.tenant_id})
            raise StorageFailed() from e

        logger.info("Bank connection established", extra={"tenant_id": principal.tenant_id})
        return conn

    def _store_tokens(self, conn: Connection, tokens: dict, now, reset_refresh_expiry: bool = False):
        conn.access_token_enc = self.vault.encrypt(tokens["access_token"])
        conn.token_type = tokens.get("token_type") or "Bearer"
        expires_in = int(tokens.get("expires_in") or DEFAULT_ACCESS_TOKEN_TTL)
        conn.access_token_expires_at = now + timedelta(seconds=expires_in)

        refresh_token = tokens.get("refresh_token")
        if refresh_token:
            conn.refresh_token_enc = self.vault.encrypt(refresh_token)
            reset_refresh_expiry = True
        if reset_refresh_expiry:
            refresh_expires_in = tokens.get("refresh_token_expires_in")
            if refresh_expires_in:
                conn.refresh_token_expires_at = now + timedelta(seconds=int(refresh_expires_in))
            else:
                conn.refresh_token_expires_at = now + timedelta(days=settings.REFRESH_TOKEN_TTL_DAYS)

    def disconnect(self, principal: Principal, delete_data: bool = False) -> bool:
        require_admin(principal, "disconnect the bank account")

        conn = self._get_connection(principal.tenant_id)
        if not conn:
            raise NoConnection("No bank connection found")

        if delete_data:
            try:
                purge_tenant_data(self.db, principal.tenant_id)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to delete bank connection: {e}", extra={"tenant_id": principal.tenant_id})
                raise DeleteFailed() from e
        else:
            try:
                conn.status = CONNECTION_REVOKED
                conn.disconnected_at = utcnow()
                conn.access_token_enc = ""
                conn.refresh_token_enc = ""
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to revoke bank connection: {e}", extra={"tenant_id": principal.tenant_id})
                raise UpdateFailed() from e

        logger.info(f"Bank connection disconnected (data deleted: {delete_data})",
                    extra={"tenant_id": principal.tenant_id})
        return delete_data

    def _needs_refresh(self, conn: Connection) -> bool:
        expires_at = as_utc(conn.access_token_expires_at)
        if expires_at is None:
            return True
        return expires_at - timedelta(seconds=settings.TOKEN_EXPIRY_SKEW_SECONDS) <= utcnow()

    def get_valid_token(self, tenant_id: str) -> str:
        """
        Returns a decrypted access token that is not about to expire,
        refreshing it first when needed.
        """
        conn = self.db.query(Connection).filter(
            Connection.tenant_id == tenant_id,
            Connection.status == CONNECTION_ACTIVE,
        ).first()
        if not conn:
            raise NoConnection()

        if not self._needs_refresh(conn):
            return self.vault.decrypt(conn.access_token_enc)
        return self._refresh(tenant_id)

    def _degrade(self, conn: Connection, reason: str):
        conn.status = CONNECTION_EXPIRED
        conn.last_sync_error = reason
        self.db.commit()
        logger.error(f"Bank connection degraded: {reason}", extra={"tenant_id": conn.tenant_id})

    def _refresh(self, tenant_id: str) -> str:
        # Row lock serialises refreshes for one tenant; re-check once we hold it
        conn = self.db.query(Connection).populate_existing().with_for_update().filter(
            Connection.tenant_id == tenant_id,
        ).first()
        if not conn or conn.status != CONNECTION_ACTIVE:
            self.db.rollback()
            raise NoConnection()
        if not self._needs_refresh(conn):
            token = self.vault.decrypt(conn.access_token_enc)
            self.db.commit()
            return token

        refresh_expires_at = as_utc(conn.refresh_token_expires_at)
        if refresh_expires_at is not None and refresh_expires_at <= utcnow():
            self._degrade(conn, "Refresh token expired")
            raise RefreshFailed("Refresh token expired; reconnect the bank account")

        refresh_token = self.vault.decrypt(conn.refresh_token_enc)
        if not refresh_token:
            self._degrade(conn, "No refresh token stored")
            raise RefreshFailed("No refresh token stored; reconnect the bank account")

        logger.info("Access token expired, refreshing", extra={"tenant_id": tenant_id})
        try:
            tokens = self.client.refresh_access_token(refresh_token)
        except ProviderError as e:
            if _is_rejection(e):
                self._degrade(conn, f"Token refresh rejected: {e}")
                raise RefreshFailed(f"Token refresh rejected: {e}") from e
            self.db.rollback()
            raise

        # Both tokens and expiries land in one commit
        self._store_tokens(conn, tokens, utcnow())
        self.db.commit()
        return tokens["access_token"]

    def status(self, tenant_id: str) -> dict:
        conn = self._get_connection(tenant_id)
        if not conn:
            return {"connected": False, "status": "none"}
        return {
            "connected": conn.status == CONNECTION_ACTIVE,
            "status": conn.status,
            "connected_at": conn.connected_at,
            "disconnected_at": conn.disconnected_at,
            "access_token_expires_at": conn.access_token_expires_at,
            "refresh_token_expires_at": conn.refresh_token_expires_at,
            "last_sync_at": conn.last_sync_at,
            "last_sync_status": conn.last_sync_status,
            "last_sync_error": conn.last_sync_error,
        }
