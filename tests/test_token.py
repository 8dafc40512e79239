"""
Tests for the token endpoint client (code exchange + refresh).
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from oauth.errors import TokenExchangeError
from oauth.token import exchange_code_for_tokens, parse_token_response, refresh_access_token

_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
_TOKEN_URL = "https://provider.example/oauth/token"


def _client(status: int, body=None, *, text: str = None, seen: list = None) -> httpx.AsyncClient:
    """AsyncClient answering every request with a fixed response."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


async def _exchange(client, code_verifier="verifier-123"):
    return await exchange_code_for_tokens(
        _TOKEN_URL,
        "client-id",
        "client-secret",
        "auth-code",
        "http://localhost:18080/callback",
        code_verifier,
        client=client,
        now=_NOW,
    )


class TestParseTokenResponse:
    def test_expiry_from_expires_in(self):
        tokens = parse_token_response({"access_token": "a", "expires_in": 3600}, _NOW)
        assert tokens.expiry == _NOW + timedelta(seconds=3600)

    def test_zero_expires_in_leaves_expiry_unset(self):
        tokens = parse_token_response({"access_token": "a", "expires_in": 0}, _NOW)
        assert tokens.expiry is None

    def test_absent_expires_in_leaves_expiry_unset(self):
        tokens = parse_token_response({"access_token": "a"}, _NOW)
        assert tokens.expiry is None
        assert tokens.to_credentials().is_expired(_NOW + timedelta(days=3650)) is False

    def test_missing_access_token(self):
        with pytest.raises(TokenExchangeError):
            parse_token_response({"token_type": "bearer"}, _NOW)


class TestExchangeCodeForTokens:
    @pytest.mark.asyncio
    async def test_success_request_shape(self):
        seen = []
        client = _client(
            200,
            {"access_token": "at", "refresh_token": "rt", "token_type": "Bearer", "expires_in": 3600},
            seen=seen,
        )
        async with client:
            tokens = await _exchange(client)

        assert tokens.access_token == "at"
        assert tokens.refresh_token == "rt"
        assert tokens.token_type == "Bearer"
        assert tokens.expiry == _NOW + timedelta(seconds=3600)

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == _TOKEN_URL
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert _form(request) == {
            "grant_type": "authorization_code",
            "client_id": "client-id",
            "client_secret": "client-secret",
            "code": "auth-code",
            "redirect_uri": "http://localhost:18080/callback",
            "code_verifier": "verifier-123",
        }

    @pytest.mark.asyncio
    async def test_code_verifier_omitted_when_empty(self):
        seen = []
        async with _client(200, {"access_token": "at"}, seen=seen) as client:
            await _exchange(client, code_verifier="")
        assert "code_verifier" not in _form(seen[0])

    @pytest.mark.asyncio
    async def test_provider_error_body(self):
        async with _client(400, {"error": "invalid_grant", "error_description": "Bad code"}) as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await _exchange(client)
        assert "invalid_grant" in str(exc_info.value)
        assert "Bad code" in str(exc_info.value)
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "invalid_grant"

    @pytest.mark.asyncio
    async def test_undecodable_error_surfaces_status(self):
        async with _client(502, text="<html>Bad Gateway</html>") as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await _exchange(client)
        assert str(exc_info.value) == "token request failed with status 502"

    @pytest.mark.asyncio
    async def test_success_status_with_error_body(self):
        async with _client(200, {"error": "bad_verification_code", "error_description": "expired"}) as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await _exchange(client)
        assert exc_info.value.error_code == "bad_verification_code"

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await _exchange(client)
        assert exc_info.value.step == "token exchange"
        assert isinstance(exc_info.value.cause, httpx.ConnectTimeout)


class TestRefreshAccessToken:
    @pytest.mark.asyncio
    async def test_refresh_request(self):
        seen = []
        async with _client(200, {"access_token": "new", "expires_in": 60}, seen=seen) as client:
            tokens = await refresh_access_token(
                _TOKEN_URL, "cid", "secret", "old-refresh", client=client, now=_NOW
            )
        assert tokens.access_token == "new"
        assert tokens.refresh_token == ""
        assert tokens.expiry == _NOW + timedelta(seconds=60)
        assert _form(seen[0]) == {
            "grant_type": "refresh_token",
            "client_id": "cid",
            "client_secret": "secret",
            "refresh_token": "old-refresh",
        }
