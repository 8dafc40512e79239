"""
BaseOAuthHandler — per-provider OAuth quirks.

Every provider type (GitHub, Google, …) subclasses this and implements
the default endpoints, the account lookup and the setup hint.  The
generic authorization-URL builder lives here because every provider
supported so far accepts the standard parameters plus PKCE.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from oauth.errors import ConfigurationError
from utils.schemas import AuthProvider, OAuthEndpoints, ProviderType


class BaseOAuthHandler(ABC):
    """Abstract base for all provider OAuth handlers."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        ...

    @abstractmethod
    def default_config(self) -> OAuthEndpoints:
        """Auth URL, token URL and scopes used when an app registration leaves them blank."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    def extra_auth_params(self) -> Dict[str, str]:
        """Provider-specific query parameters appended to the auth URL."""
        return {}

    def build_auth_url(
        self,
        auth_provider: AuthProvider,
        redirect_uri: str,
        state: str,
        code_challenge: str,
    ) -> str:
        """
        Build the provider's authorization URL.

        Parameters
        ----------
        auth_provider : AuthProvider
            The app registration supplying client id and (optionally)
            endpoint overrides.
        redirect_uri : str
            Loopback callback URI of the running listener.
        state : str
            CSRF token echoed back on the redirect.
        code_challenge : str
            PKCE S256 challenge.
        """
        if auth_provider.oauth is None or not auth_provider.oauth.client_id:
            raise ConfigurationError(f"auth provider {auth_provider.name!r} has no OAuth client id")

        oauth = auth_provider.oauth
        defaults = self.default_config()
        scopes = oauth.scopes or defaults.scopes

        params = {
            "client_id": oauth.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        params.update(self.extra_auth_params())
        return f"{oauth.auth_url or defaults.auth_url}?{urlencode(params)}"

    @abstractmethod
    async def get_user_info(
        self,
        access_token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> str:
        """
        Return the account identifier (login, e-mail) for a fresh token.

        Raises ``AccountLookupError`` on failure.
        """
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def setup_hint(self) -> str:
        """One line telling the user where to register an OAuth app."""
        return ""
