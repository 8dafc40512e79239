"""
Token endpoint client — authorization-code exchange and refresh.

One form-encoded POST per call, no internal retry.  Expiry is computed as
``now + expires_in`` only when the provider sends a positive ``expires_in``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from config.settings import config
from oauth.errors import TokenExchangeError
from utils.schemas import TokenResponse, utc_now

logger = logging.getLogger(__name__)


def parse_token_response(payload: Dict[str, Any], now: Optional[datetime] = None) -> TokenResponse:
    """Decode a success body and compute the absolute expiry."""
    access_token = payload.get("access_token") or ""
    if not access_token:
        raise TokenExchangeError("token response did not include an access_token")

    expires_in = payload.get("expires_in")
    try:
        expires_in = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        expires_in = None

    expiry = None
    if expires_in is not None and expires_in > 0:
        expiry = (now or utc_now()) + timedelta(seconds=expires_in)

    return TokenResponse(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or "",
        token_type=payload.get("token_type") or "",
        expires_in=expires_in,
        expiry=expiry,
    )


def _error_from_body(payload: Any, status_code: int) -> Optional[TokenExchangeError]:
    if not isinstance(payload, dict) or not payload.get("error"):
        return None
    error = str(payload["error"])
    description = str(payload.get("error_description") or "")
    message = f"token error: {error} - {description}" if description else f"token error: {error}"
    return TokenExchangeError(message, status_code=status_code, error_code=error)


async def _request_tokens(
    token_url: str,
    form: Dict[str, str],
    *,
    timeout: Optional[float],
    client: Optional[httpx.AsyncClient],
    now: Optional[datetime],
) -> TokenResponse:
    if timeout is None:
        timeout = config.oauth_token_timeout_seconds

    own_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout)
    try:
        resp = await http.post(
            token_url,
            data=form,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except httpx.HTTPError as exc:
        raise TokenExchangeError("token request failed", cause=exc) from exc
    finally:
        if own_client:
            await http.aclose()

    try:
        payload = resp.json()
    except ValueError:
        payload = None

    if not resp.is_success:
        err = _error_from_body(payload, resp.status_code)
        if err is None:
            err = TokenExchangeError(
                f"token request failed with status {resp.status_code}",
                status_code=resp.status_code,
            )
        logger.warning("Token endpoint %s rejected request (%d)", token_url, resp.status_code)
        raise err

    if not isinstance(payload, dict):
        raise TokenExchangeError("failed to parse token response", status_code=resp.status_code)

    # GitHub answers 200 with an error body.
    if payload.get("error") and not payload.get("access_token"):
        err = _error_from_body(payload, resp.status_code)
        logger.warning("Token endpoint %s returned error '%s'", token_url, payload.get("error"))
        raise err

    return parse_token_response(payload, now)


async def exchange_code_for_tokens(
    token_url: str,
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str,
    code_verifier: str = "",
    *,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> TokenResponse:
    """
    Exchange an authorization code for tokens.

    Raises
    ------
    TokenExchangeError
        Non-2xx status, provider error body, unparseable body or transport
        failure (including the request timeout).
    """
    form = {
        "grant_type": "authorization_code",
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
        "redirect_uri": redirect_uri,
    }
    if code_verifier:
        form["code_verifier"] = code_verifier

    tokens = await _request_tokens(token_url, form, timeout=timeout, client=client, now=now)
    logger.info("Exchanged authorization code at %s", token_url)
    return tokens


async def refresh_access_token(
    token_url: str,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    *,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> TokenResponse:
    """Use a refresh token.  ``refresh_token`` is empty when the provider did not rotate it."""
    form = {
        "grant_type": "refresh_token",
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": refresh_token,
    }
    tokens = await _request_tokens(token_url, form, timeout=timeout, client=client, now=now)
    logger.info("Refreshed access token at %s", token_url)
    return tokens
