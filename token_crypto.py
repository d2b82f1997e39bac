"""Encryption at rest for stored QuickBooks credentials."""

from __future__ import annotations

import base64
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from config import get_settings

logger = logging.getLogger(__name__)

PREFIX = "fernet:"


@lru_cache(maxsize=4)
def _fernet(key: Optional[str], secret_key: str) -> Fernet:
    if key:
        return Fernet(key.encode("ascii"))
    derived = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"cosbudget-token-key",
    ).derive(secret_key.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(derived))


def current_fernet() -> Fernet:
    settings = get_settings()
    return _fernet(settings.token_key, settings.secret_key)


def encrypt_token(value: str, fernet: Optional[Fernet] = None) -> str:
    fernet = fernet or current_fernet()
    return PREFIX + fernet.encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_token(value: str, fernet: Optional[Fernet] = None) -> Optional[str]:
    """Plain values written before encryption was enabled pass through.

    A value encrypted under a different key yields ``None``, which the token
    manager reports as a connection that needs to be re-established.
    """
    if not value.startswith(PREFIX):
        return value
    fernet = fernet or current_fernet()
    try:
        return fernet.decrypt(value[len(PREFIX):].encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.warning("token_decrypt_failed: reconnect QuickBooks or restore COSBUDGET_TOKEN_KEY")
        return None


class EncryptedText(TypeDecorator):
    """Text column holding a Fernet-encrypted secret."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return encrypt_token(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return decrypt_token(value)
