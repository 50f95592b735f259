"""Symmetric encryption of OAuth tokens at rest.

Fernet gives authenticated encryption with a random IV per call, so the
same token never encrypts to the same ciphertext twice.
"""
import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from banklink.settings import settings


class IntegrityError(Exception):
    """Ciphertext failed authentication (tampered, truncated or wrong key)."""


def build_fernet(vault_key: str) -> Fernet:
    # SHA256 of the configured key -> 32 bytes -> urlsafe base64 (Fernet key format)
    digest = hashlib.sha256(vault_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class TokenVault:
    def __init__(self, vault_key: str):
        if not vault_key:
            raise ValueError("vault key must not be empty")
        self._fernet = build_fernet(vault_key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypts ciphertext produced by encrypt().
        An empty ciphertext is a cleared token and decrypts to "".
        Raises IntegrityError if the authentication tag does not verify.
        """
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise IntegrityError("Token ciphertext failed integrity check") from e


@lru_cache()
def get_vault() -> TokenVault:
    return TokenVault(settings.VAULT_KEY)
