"""
Secret decryption and log redaction for the action processor.

Page access tokens and WhatsApp API keys are stored encrypted by the
platform. They are decrypted here, immediately before use, and must never
reach a log record.

This module supports:
1. Local Fernet decryption keyed from ENCRYPTION_KEY
2. Stripping credential-bearing keys from actions before logging
3. Automatic secret redaction from log records

Usage:
    from action_processor.platform.secrets import decrypt_secret, sanitize_action

    page_token = await decrypt_secret(encrypted_token)
    logger.info("Dispatching", extra={"action": sanitize_action(payload)})
"""

import base64
import hashlib
import logging
import os
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Keys removed from actions before they are logged
DEFAULT_SENSITIVE_ACTION_KEYS = ("twitterAccessTokens", "apiKey")

SECRET_PATTERNS = [
    re.compile(r"(api[_-]?key)", re.IGNORECASE),
    re.compile(r"(access[_-]?token)", re.IGNORECASE),
    re.compile(r"(access[_-]?secret)", re.IGNORECASE),
    re.compile(r"(consumer[_-]?secret)", re.IGNORECASE),
    re.compile(r"(password)", re.IGNORECASE),
    re.compile(r"(authorization)", re.IGNORECASE),
    re.compile(r"(encryption[_-]?key)", re.IGNORECASE),
    re.compile(r"(database[_-]?url)", re.IGNORECASE),
    re.compile(r"(credentials)", re.IGNORECASE),
]

SECRET_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+[a-zA-Z0-9._-]+)"),
    re.compile(r"(SG\.[a-zA-Z0-9_-]{16,}\.[a-zA-Z0-9_-]{16,})"),  # SendGrid keys
    re.compile(r"(EAA[a-zA-Z0-9]{20,})"),  # Meta page tokens
    re.compile(r"(oauth_signature=\"[^\"]+\")"),
]

REDACTED_VALUE = "[REDACTED]"


class EncryptionError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass


class SecretCipher:
    """Fernet cipher derived from ENCRYPTION_KEY with PBKDF2."""

    def __init__(self, encryption_key: Optional[str] = None):
        self._encryption_key = encryption_key
        self._fernet: Optional[Fernet] = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._encryption_key or os.getenv("ENCRYPTION_KEY")
            if not key:
                raise EncryptionError("ENCRYPTION_KEY is not configured")
            derived_key = hashlib.pbkdf2_hmac(
                "sha256",
                key.encode(),
                b"action-processor-salt",
                100000,
                dklen=32,
            )
            self._fernet = Fernet(base64.urlsafe_b64encode(derived_key))
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            ValueError: If ciphertext is empty
            EncryptionError: If the key is missing or the ciphertext is invalid
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")
        try:
            return self._get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise EncryptionError("Invalid ciphertext or wrong encryption key")


_default_cipher = SecretCipher()


async def decrypt_secret(ciphertext: str, cipher: Optional[SecretCipher] = None) -> str:
    """
    Decrypt a stored secret.

    Args:
        ciphertext: The encrypted secret from the database
        cipher: Optional cipher (defaults to one keyed from ENCRYPTION_KEY)

    Returns:
        Decrypted secret
    """
    return (cipher or _default_cipher).decrypt(ciphertext)


def sanitize_action(
    payload: Mapping[str, Any],
    sensitive_keys: Iterable[str] = DEFAULT_SENSITIVE_ACTION_KEYS,
) -> Dict[str, Any]:
    """
    Copy of an action payload without credential-bearing keys.

    Nested values are passed through redact_secrets as well.
    """
    dropped = set(sensitive_keys)
    return redact_secrets({k: v for k, v in payload.items() if k not in dropped})


def is_secret_key(key: str) -> bool:
    """True if the key name suggests it holds a secret."""
    return any(pattern.search(key) for pattern in SECRET_PATTERNS)


def redact_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value

    result = value
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_secrets(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact secrets from a data structure.

    Use this before logging any data that might contain secrets.
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE if is_secret_key(str(key)) else redact_secrets(value, _depth + 1)
            for key, value in data.items()
        }

    if isinstance(data, list):
        return [redact_secrets(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_value(data)

    return data


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts secrets from log records.

    Usage:
        handler.addFilter(SecretRedactingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_secrets(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if is_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(record.__dict__[key], (dict, list)):
                setattr(record, key, redact_secrets(record.__dict__[key]))

        return True


def install_redacting_filter(root: Optional[logging.Logger] = None) -> None:
    """Attach SecretRedactingFilter to every handler of the root logger."""
    root = root or logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(f, SecretRedactingFilter) for f in handler.filters):
            handler.addFilter(SecretRedactingFilter())
