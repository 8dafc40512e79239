"""
Secret encryption — encrypt / decrypt tokens and client secrets at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key is read from ``config.token_encryption_key`` (env var:
``TOKEN_ENCRYPTION_KEY``).  Without a key, values are stored as plaintext
and a warning is logged once.  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_initialised = False


def _init_fernet() -> None:
    """Lazy-initialise the Fernet cipher once."""
    global _fernet, _initialised

    _initialised = True
    key = config.token_encryption_key
    if not key:
        logger.warning(
            "TOKEN_ENCRYPTION_KEY not set; tokens and client secrets will be stored as plaintext"
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode())
        logger.info("Secret encryption enabled (Fernet)")
    except ValueError as exc:
        logger.error("Invalid TOKEN_ENCRYPTION_KEY, storing plaintext: %s", exc)
        _fernet = None


def reset_encryption() -> None:
    """Forget the cached cipher so the next call re-reads the key."""
    global _fernet, _initialised
    _fernet = None
    _initialised = False


def encrypt_secret(plaintext: str) -> str:
    """Return Fernet ciphertext, or ``plaintext`` when encryption is off.  Empty stays empty."""
    if not _initialised:
        _init_fernet()
    if not plaintext or _fernet is None:
        return plaintext
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_secret(ciphertext: str) -> str:
    """
    Decrypt a value read from the database.

    Values written before a key was configured are not valid Fernet tokens
    and come back unchanged.
    """
    if not _initialised:
        _init_fernet()
    if not ciphertext or _fernet is None:
        return ciphertext
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return ciphertext


def is_encryption_enabled() -> bool:
    if not _initialised:
        _init_fernet()
    return _fernet is not None
