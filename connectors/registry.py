"""
ConnectorRegistry — the static catalogue of data-source types.
ProviderRegistry  — capability answers grouped by provider type.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional

import httpx

from connectors.base import BaseOAuthHandler
from connectors.github import GitHubOAuthHandler
from connectors.google import GoogleOAuthHandler
from utils.schemas import (
    AuthCapability,
    AuthMethod,
    AuthProvider,
    ConfigKey,
    ConnectorDescriptor,
    OAuthEndpoints,
    ProviderType,
)

logger = logging.getLogger(__name__)

# ── All known connectors; add new ones here ─────────────────────────────

BUILTIN_CONNECTORS: List[ConnectorDescriptor] = [
    ConnectorDescriptor(
        id="filesystem",
        name="Local Filesystem",
        description="Index files from a local directory",
        provider_type=ProviderType.LOCAL,
        auth_capability=AuthCapability.NONE,
        config_keys=[
            ConfigKey(key="path", label="Directory Path",
                      description="Path to the directory to index", required=True),
            ConfigKey(key="patterns", label="File Patterns",
                      description="Glob patterns to match (e.g., *.md,*.txt)"),
        ],
    ),
    ConnectorDescriptor(
        id="github",
        name="GitHub",
        description="Index repositories, issues, PRs, and wikis from GitHub",
        provider_type=ProviderType.GITHUB,
        auth_capability=AuthCapability.BOTH,
        config_keys=[
            ConfigKey(key="content_types", label="Content Types",
                      description="Content to index: files,issues,prs,wikis", default="files"),
            ConfigKey(key="file_patterns", label="File Patterns",
                      description="Glob patterns for files to include", default="*"),
        ],
    ),
    ConnectorDescriptor(
        id="google-drive",
        name="Google Drive",
        description="Index documents from Google Drive",
        provider_type=ProviderType.GOOGLE,
        auth_capability=AuthCapability.OAUTH,
        config_keys=[
            ConfigKey(key="content_types", label="Content Types",
                      description="Content to sync: files,docs,sheets", default="files,docs,sheets"),
            ConfigKey(key="folder_ids", label="Folder IDs",
                      description="Specific folder IDs to sync (optional)"),
            ConfigKey(key="mime_types", label="MIME Types",
                      description="Filter by MIME types (optional)"),
        ],
    ),
    ConnectorDescriptor(
        id="gmail",
        name="Gmail",
        description="Index emails from Gmail",
        provider_type=ProviderType.GOOGLE,
        auth_capability=AuthCapability.OAUTH,
        config_keys=[
            ConfigKey(key="label_ids", label="Label IDs",
                      description="Labels to sync: INBOX,SENT,etc", default="INBOX"),
            ConfigKey(key="query", label="Search Query",
                      description="Gmail search query to filter emails"),
            ConfigKey(key="include_spam_trash", label="Include Spam/Trash",
                      description="Include spam and trash (true/false)", default="false"),
        ],
    ),
    ConnectorDescriptor(
        id="google-calendar",
        name="Google Calendar",
        description="Index events from Google Calendar",
        provider_type=ProviderType.GOOGLE,
        auth_capability=AuthCapability.OAUTH,
        config_keys=[
            ConfigKey(key="calendar_ids", label="Calendar IDs",
                      description="Specific calendar IDs to sync (optional)"),
            ConfigKey(key="single_events", label="Expand Recurring",
                      description="Expand recurring events (true/false)", default="true"),
        ],
    ),
]

_BUILTIN_HANDLERS: List[BaseOAuthHandler] = [
    GitHubOAuthHandler(),
    GoogleOAuthHandler(),
]


class ConnectorRegistry:
    """Lookup for connector descriptors and their OAuth handlers."""

    def __init__(
        self,
        connectors: Optional[Iterable[ConnectorDescriptor]] = None,
        handlers: Optional[Iterable[BaseOAuthHandler]] = None,
    ) -> None:
        self._connectors: Dict[str, ConnectorDescriptor] = {}
        for descriptor in BUILTIN_CONNECTORS if connectors is None else connectors:
            self._connectors[descriptor.id] = descriptor
        self._handlers: Dict[ProviderType, BaseOAuthHandler] = {
            h.provider_type: h for h in (_BUILTIN_HANDLERS if handlers is None else handlers)
        }
        logger.debug("Connector registry loaded: %s", ", ".join(self._connectors))

    def list(self) -> List[ConnectorDescriptor]:
        """All connector types, in registration order."""
        return list(self._connectors.values())

    def get(self, connector_id: str) -> ConnectorDescriptor:
        try:
            return self._connectors[connector_id]
        except KeyError:
            raise KeyError(f"unknown connector type: {connector_id}") from None

    def validate_config(self, connector_id: str, values: Mapping[str, str]) -> List[str]:
        """Return the labels of required keys that are missing or blank."""
        descriptor = self.get(connector_id)
        return [
            key.label
            for key in descriptor.required_keys()
            if not (values.get(key.key) or "").strip()
        ]

    # ── OAuth ───────────────────────────────────────────────────────────

    def handler_for(self, connector_id: str) -> Optional[BaseOAuthHandler]:
        return self._handlers.get(self.get(connector_id).provider_type)

    def _require_handler(self, connector_id: str) -> BaseOAuthHandler:
        handler = self.handler_for(connector_id)
        if handler is None:
            raise KeyError(f"connector type {connector_id} does not support OAuth")
        return handler

    def oauth_defaults(self, connector_id: str) -> Optional[OAuthEndpoints]:
        handler = self.handler_for(connector_id)
        return handler.default_config() if handler else None

    def build_auth_url(
        self,
        connector_id: str,
        auth_provider: AuthProvider,
        redirect_uri: str,
        state: str,
        code_challenge: str,
    ) -> str:
        """Authorization URL including provider-specific parameters."""
        return self._require_handler(connector_id).build_auth_url(
            auth_provider, redirect_uri, state, code_challenge
        )

    async def get_user_info(
        self,
        connector_id: str,
        access_token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> str:
        return await self._require_handler(connector_id).get_user_info(access_token, client=client)

    def setup_hint(self, connector_id: str) -> str:
        handler = self.handler_for(connector_id)
        return handler.setup_hint() if handler else ""


class ProviderRegistry:
    """Capability resolver keyed by provider type."""

    def __init__(self, connector_registry: ConnectorRegistry) -> None:
        self._connectors = connector_registry

    def connectors_for_provider(self, provider_type: ProviderType) -> List[ConnectorDescriptor]:
        return [c for c in self._connectors.list() if c.provider_type == provider_type]

    def provider_for_connector(self, connector_id: str) -> ProviderType:
        return self._connectors.get(connector_id).provider_type

    def auth_capability(self, connector_id: str) -> AuthCapability:
        return self._connectors.get(connector_id).auth_capability

    def default_auth_method(self, connector_id: str) -> AuthMethod:
        """PAT when supported, else OAuth, else none."""
        methods = self.auth_capability(connector_id).supported_methods()
        return methods[0] if methods else AuthMethod.NONE

    def has_multiple_connectors(self, provider_type: ProviderType) -> bool:
        """True when more than one connector can share one OAuth app registration."""
        return len(self.connectors_for_provider(provider_type)) > 1

    def oauth_endpoints(self, provider_type: ProviderType) -> Optional[OAuthEndpoints]:
        for connector in self.connectors_for_provider(provider_type):
            endpoints = self._connectors.oauth_defaults(connector.id)
            if endpoints is not None:
                return endpoints
        return None
