"""PKCE (RFC 7636, S256) verifier/challenge and CSRF state generation."""

from __future__ import annotations

import base64
import hashlib
import secrets

from oauth.errors import PKCEGenerationError

_RANDOM_BYTES = 32


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _random_token(purpose: str) -> str:
    try:
        raw = secrets.token_bytes(_RANDOM_BYTES)
    except (OSError, NotImplementedError) as exc:
        raise PKCEGenerationError(f"secure random source unavailable for {purpose}", cause=exc) from exc
    return _b64url(raw)


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 characters)."""
    return _random_token("code verifier")


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_state() -> str:
    """CSRF state token, drawn independently of the verifier."""
    return _random_token("state")
