import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode

import httpx

from banklink.settings import settings

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


class ProviderError(Exception):
    """Provider returned an error or an unusable response"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Request to the provider timed out"""


class TokenExpiredError(ProviderError):
    """Raised when provider returns 401/403"""


class RateLimitedError(ProviderError):
    """Raised when provider returns 429"""

    def __init__(self, retry_after: int):
        super().__init__(f"Rate limited, retry after {retry_after}s", status_code=429)
        self.retry_after = retry_after


def client_assertion() -> str:
    # Sandbox accepts the client id; production needs an RS256-signed JWT
    # (iss/sub=client_id, aud, exp, jti) built from the app's private key.
    return settings.BANK_CLIENT_ID or ""


def _parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def parse_account(raw: dict) -> dict:
    """Normalize a provider account into Account column values."""
    metadata = {k: raw[k] for k in ("public", "created_at", "updated_at") if k in raw}
    return {
        "external_account_id": raw["id"],
        "name": raw.get("name"),
        "balance": _decimal(raw.get("balance")) or Decimal("0"),
        "currency": raw.get("currency") or "EUR",
        "state": raw.get("state"),
        "account_metadata": metadata or None,
    }


def parse_transaction(raw: dict) -> dict:
    """
    Normalize a provider transaction into Transaction column values.
    The first leg names the owning account (``external_account_id``); the
    caller maps it to a local account id.
    """
    legs = raw.get("legs") or []
    leg = legs[0] if legs else {}
    counterparty = leg.get("counterparty") or {}
    merchant = raw.get("merchant") or {}
    created_at = _parse_timestamp(raw.get("created_at"))
    return {
        "external_transaction_id": raw["id"],
        "external_account_id": leg.get("account_id"),
        "leg_id": leg.get("leg_id"),
        "type": raw.get("type"),
        "state": raw.get("state") or "pending",
        "amount": _decimal(leg.get("amount")) or Decimal("0"),
        "currency": leg.get("currency") or "EUR",
        "balance_after": _decimal(leg.get("balance")),
        "counterparty_name": counterparty.get("name"),
        "reference": raw.get("reference"),
        "description": leg.get("description"),
        "merchant_name": merchant.get("name"),
        "transaction_date": created_at.date() if created_at else None,
        "created_at_provider": created_at,
        "completed_at_provider": _parse_timestamp(raw.get("completed_at")),
    }


class ProviderClient:
    def __init__(self):
        self.base_url = settings.api_base_url
        self.client_id = settings.BANK_CLIENT_ID or ""
        self.timeout = settings.HTTP_TIMEOUT_SECONDS

    def _get_client(self):
        return httpx.Client(timeout=self.timeout)

    def _send(self, method: str, path: str, access_token: Optional[str] = None, **kwargs):
        headers = kwargs.pop("headers", {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            with self._get_client() as client:
                resp = client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            logger.warning(f"Provider {method} {path} returned {resp.status_code}")

        if resp.status_code in (401, 403):
            raise TokenExpiredError(f"{method} {path} rejected credentials", status_code=resp.status_code)

        if resp.status_code == 429:
            retry_header = resp.headers.get("Retry-After", "1")
            try:
                retry_after = int(retry_header)
            except ValueError:
                retry_after = 1
            raise RateLimitedError(retry_after)

        if resp.status_code >= 400:
            raise ProviderError(
                f"Provider API error ({resp.status_code}): {resp.text}", status_code=resp.status_code
            )

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{method} {path} returned invalid JSON") from e

    def build_authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": settings.redirect_uri,
            "response_type": "code",
            "scope": settings.BANK_SCOPE,
            "state": state,
        }
        return f"{settings.auth_url}?{urlencode(params)}"

    def _token_request(self, data: dict) -> dict:
        data.update({
            "client_id": self.client_id,
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": client_assertion(),
        })
        tokens = self._send("POST", "/auth/token", data=data)
        if not tokens.get("access_token"):
            raise ProviderError("Token response did not include an access token")
        return tokens

    def exchange_code_for_token(self, code: str) -> dict:
        return self._token_request({"grant_type": "authorization_code", "code": code})

    def refresh_access_token(self, refresh_token: str) -> dict:
        return self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def list_accounts(self, access_token: str) -> list:
        return self._send("GET", "/accounts", access_token=access_token)

    def list_transactions(self, access_token: str, since: datetime, count: int) -> list:
        params = {"from": since.isoformat(), "count": count}
        return self._send("GET", "/transactions", access_token=access_token, params=params)

    def create_counterparty(self, access_token: str, name: str, iban: str, currency: str,
                            bic: Optional[str] = None) -> dict:
        body = {
            "company_name": name,
            "bank_country": iban[:2].upper(),
            "currency": currency,
            "iban": iban,
        }
        if bic:
            body["bic"] = bic
        return self._send("POST", "/counterparty", access_token=access_token, json=body)

    def create_payment(self, access_token: str, request_id: str, account_id: str,
                       counterparty_id: str, amount_minor: int, currency: str,
                       reference: Optional[str] = None) -> dict:
        body = {
            "request_id": request_id,
            "account_id": account_id,
            "receiver": {"counterparty_id": counterparty_id, "account_id": counterparty_id},
            "amount": amount_minor,
            "currency": currency,
        }
        if reference:
            body["reference"] = reference
        return self._send("POST", "/pay", access_token=access_token, json=body)
