"""
Token manager — get / refresh per-source tokens, and disconnect.

This is the single interface the indexers use to get an active token for a
source.  PAT sources return their token as-is; OAuth sources are refreshed
when the access token expires within ``token_refresh_buffer_seconds``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from config.settings import config
from connectors.registry import ConnectorRegistry
from database.stores import AuthProviderStore, CredentialsStore, SourceStore
from oauth.errors import OAuthFlowError
from oauth.token import refresh_access_token
from utils.schemas import Credentials, OAuthCredentials, utc_now

logger = logging.getLogger(__name__)


async def _refresh(
    creds: Credentials,
    auth_provider_id: str,
    source_type: str,
    *,
    credentials_store: CredentialsStore,
    auth_provider_store: AuthProviderStore,
    connector_registry: ConnectorRegistry,
    now: datetime,
    refresher=refresh_access_token,
) -> Optional[str]:
    oauth = creds.oauth
    if not auth_provider_id:
        logger.warning("Source %s has OAuth credentials but no auth provider", creds.source_id)
        return None

    try:
        provider = await auth_provider_store.get(auth_provider_id)
    except KeyError:
        logger.warning(
            "Auth provider %s for source %s no longer exists", auth_provider_id, creds.source_id
        )
        return None
    if provider.oauth is None:
        logger.warning("Auth provider %s has no OAuth config", auth_provider_id)
        return None

    token_url = provider.oauth.token_url
    if not token_url:
        defaults = connector_registry.oauth_defaults(source_type)
        token_url = defaults.token_url if defaults else ""

    try:
        refreshed = await refresher(
            token_url,
            provider.oauth.client_id,
            provider.oauth.client_secret,
            oauth.refresh_token,
            now=now,
        )
    except OAuthFlowError as exc:
        logger.warning("Token refresh failed for source %s: %s", creds.source_id, exc)
        return None

    # Some providers rotate refresh tokens, others omit them.
    creds.oauth = OAuthCredentials(
        access_token=refreshed.access_token,
        refresh_token=refreshed.refresh_token or oauth.refresh_token,
        token_type=refreshed.token_type or oauth.token_type,
        expiry=refreshed.expiry,
    )
    creds.updated_at = now
    try:
        await credentials_store.save(creds)
    except Exception as exc:
        # The new access token is still valid for this call; the next call refreshes again.
        logger.error("Failed to persist refreshed token for source %s: %s", creds.source_id, exc)
        return refreshed.access_token
    logger.info("Refreshed %s token for source %s", source_type, creds.source_id)
    return refreshed.access_token


async def get_active_token(
    source_id: str,
    *,
    source_store: Optional[SourceStore] = None,
    credentials_store: Optional[CredentialsStore] = None,
    auth_provider_store: Optional[AuthProviderStore] = None,
    connector_registry: Optional[ConnectorRegistry] = None,
    now: Optional[datetime] = None,
    refresher=refresh_access_token,
) -> Optional[str]:
    """
    Get a usable token for the source.

    1. Look up the source and its credentials.
    2. PAT: return it.
    3. OAuth: if the token expires within the buffer, refresh and persist.
    4. Return the access token, or None if not connected / not refreshable.
    """
    source_store = source_store or SourceStore()
    credentials_store = credentials_store or CredentialsStore()
    auth_provider_store = auth_provider_store or AuthProviderStore()
    connector_registry = connector_registry or ConnectorRegistry()
    now = now or utc_now()

    try:
        source = await source_store.get(source_id)
    except KeyError:
        return None

    creds = await credentials_store.get_by_source_id(source_id)
    if creds is None or not creds.is_authenticated():
        return None

    if creds.pat is not None:
        return creds.pat.token

    oauth = creds.oauth
    buffer = timedelta(seconds=config.token_refresh_buffer_seconds)
    if oauth.expiry is None or oauth.expiry > now + buffer:
        return oauth.access_token

    if not creds.has_refresh_token:
        logger.warning("Token for source %s expired and no refresh token is available", source_id)
        return None

    return await _refresh(
        creds,
        source.auth_provider_id,
        source.type,
        credentials_store=credentials_store,
        auth_provider_store=auth_provider_store,
        connector_registry=connector_registry,
        now=now,
        refresher=refresher,
    )


async def disconnect(
    source_id: str,
    *,
    source_store: Optional[SourceStore] = None,
    credentials_store: Optional[CredentialsStore] = None,
) -> bool:
    """
    Delete a source's credentials, then the source.
    Returns True if the source was deleted, False if not found.
    """
    source_store = source_store or SourceStore()
    credentials_store = credentials_store or CredentialsStore()

    creds = await credentials_store.get_by_source_id(source_id)
    if creds is not None:
        await credentials_store.delete(creds.id)

    removed = await source_store.remove(source_id)
    if removed:
        logger.info("Disconnected source %s", source_id)
    return removed
