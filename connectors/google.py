"""
GoogleOAuthHandler — one OAuth client shared by Drive, Gmail and Calendar.

Google only returns a refresh token when ``access_type=offline`` and
consent is forced, so both are always requested.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from config.settings import config
from connectors.base import BaseOAuthHandler
from oauth.errors import AccountLookupError
from utils.schemas import OAuthEndpoints, ProviderType

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/drive.readonly",
    "https://www.googleapis.com/auth/gmail.readonly",
]


class GoogleOAuthHandler(BaseOAuthHandler):
    """OAuth handler for Google Workspace sources."""

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GOOGLE

    def default_config(self) -> OAuthEndpoints:
        return OAuthEndpoints(
            auth_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            scopes=list(_GOOGLE_SCOPES),
        )

    def extra_auth_params(self) -> Dict[str, str]:
        return {
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
        }

    async def get_user_info(
        self,
        access_token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> str:
        """Fetch the signed-in user's e-mail address."""
        own_client = client is None
        http = client or httpx.AsyncClient(timeout=config.oauth_userinfo_timeout_seconds)
        try:
            resp = await http.get(
                _GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            resp.raise_for_status()
            info = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AccountLookupError("failed to get Google user info", cause=exc) from exc
        finally:
            if own_client:
                await http.aclose()

        email = info.get("email", "") if isinstance(info, dict) else ""
        if not email:
            raise AccountLookupError("Google user info did not include an email")
        return email

    def setup_hint(self) -> str:
        return "Create OAuth client at console.cloud.google.com/apis/credentials"
