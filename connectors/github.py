"""
GitHubOAuthHandler — OAuth app support for GitHub sources.

Classic OAuth app tokens do not expire; GitHub Apps with expiring user
tokens also return ``refresh_token`` and ``expires_in``.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from config.settings import config
from connectors.base import BaseOAuthHandler
from oauth.errors import AccountLookupError
from utils.schemas import OAuthEndpoints, ProviderType

logger = logging.getLogger(__name__)

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"


class GitHubOAuthHandler(BaseOAuthHandler):
    """OAuth handler for GitHub."""

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GITHUB

    def default_config(self) -> OAuthEndpoints:
        return OAuthEndpoints(
            auth_url=_GH_AUTH_URL,
            token_url=_GH_TOKEN_URL,
            scopes=["repo", "read:user"],
        )

    async def get_user_info(
        self,
        access_token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> str:
        """Fetch the authenticated user's login."""
        own_client = client is None
        http = client or httpx.AsyncClient(timeout=config.oauth_userinfo_timeout_seconds)
        try:
            resp = await http.get(
                f"{_GH_API}/user",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/vnd.github+json",
                },
            )
            resp.raise_for_status()
            user = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AccountLookupError("failed to get GitHub user info", cause=exc) from exc
        finally:
            if own_client:
                await http.aclose()

        login = user.get("login", "") if isinstance(user, dict) else ""
        if not login:
            raise AccountLookupError("GitHub user info did not include a login")
        return login

    def setup_hint(self) -> str:
        return "Create OAuth app at github.com/settings/developers"
