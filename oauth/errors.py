"""
Error taxonomy for the OAuth authorization flow.

Every error carries the flow ``step`` it happened in and the underlying
``cause`` so the UI can render a one-line message.
"""

from __future__ import annotations

from typing import Optional


class OAuthFlowError(Exception):
    """Base class for all authorization-flow failures."""

    default_step = "oauth"

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step or self.default_step
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


# ── Configuration ──────────────────────────────────────────────────────────


class ConfigurationError(OAuthFlowError):
    """A required field, client id/secret or token is missing."""

    default_step = "configuration"


class PKCEGenerationError(OAuthFlowError):
    """The secure random source could not produce a verifier or state."""

    default_step = "pkce"


# ── Local callback listener ────────────────────────────────────────────────


class CallbackServerError(OAuthFlowError):
    default_step = "callback server"


class CallbackError(OAuthFlowError):
    """Protocol integrity failure on the redirect. Never retried."""

    default_step = "callback"


class AuthorizationDeniedError(CallbackError):
    def __init__(self, error: str, error_description: str = "") -> None:
        super().__init__(f"oauth error: {error} - {error_description}")
        self.error = error
        self.error_description = error_description


class StateMismatchError(CallbackError):
    def __init__(self) -> None:
        super().__init__("state mismatch: callback state does not match this authorization attempt")


class MissingCodeError(CallbackError):
    def __init__(self) -> None:
        super().__init__("no authorization code received")


class CallbackTimeoutError(OAuthFlowError):
    default_step = "callback"

    def __init__(self) -> None:
        super().__init__("timeout waiting for authorization callback")


class CallbackCancelledError(OAuthFlowError):
    default_step = "callback"

    def __init__(self) -> None:
        super().__init__("authorization cancelled")


# ── Provider / network ─────────────────────────────────────────────────────


class TokenExchangeError(OAuthFlowError):
    default_step = "token exchange"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: str = "",
        step: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, step=step, cause=cause)
        self.status_code = status_code
        self.error_code = error_code


class AccountLookupError(OAuthFlowError):
    default_step = "account lookup"


# ── Persistence ────────────────────────────────────────────────────────────


class PersistenceError(OAuthFlowError):
    default_step = "persistence"


class RollbackError(PersistenceError):
    """Credentials failed to save and the compensating source delete failed too."""

    default_step = "rollback"

    def __init__(
        self,
        source_id: str,
        *,
        cause: BaseException,
        rollback_cause: BaseException,
    ) -> None:
        super().__init__(
            f"failed to save credentials and could not remove source {source_id} "
            f"(manual cleanup required; rollback error: {rollback_cause})",
            cause=cause,
        )
        self.source_id = source_id
        self.rollback_cause = rollback_cause
