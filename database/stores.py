"""
SQL-backed stores for sources, credentials and auth providers.

Each call opens its own session and commits before returning; the stores
have no multi-record transaction, which is why ``core.provisioner``
compensates by hand.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import decrypt_secret, encrypt_secret
from database.models import AuthProviderModel, CredentialsModel, SourceModel
from database.session import async_session_factory
from utils.schemas import (
    AuthMethod,
    AuthProvider,
    Credentials,
    OAuthCredentials,
    OAuthProviderConfig,
    PATCredentials,
    ProviderType,
    Source,
    utc_now,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything is stored in UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SQLStore:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory or async_session_factory


# ═══════════════════════════════════════════════════════════════════════════════
# Sources
# ═══════════════════════════════════════════════════════════════════════════════


def _source_from_row(row: SourceModel) -> Source:
    return Source(
        id=row.id,
        type=row.type,
        name=row.name,
        config=dict(row.config or {}),
        auth_provider_id=row.auth_provider_id or "",
        credentials_id=row.credentials_id or "",
        created_at=_aware(row.created_at) or utc_now(),
        updated_at=_aware(row.updated_at) or utc_now(),
    )


class SourceStore(_SQLStore):

    async def add(self, source: Source) -> Source:
        async with self._session_factory() as session:
            session.add(
                SourceModel(
                    id=source.id,
                    type=source.type,
                    name=source.name,
                    config=dict(source.config),
                    auth_provider_id=source.auth_provider_id,
                    credentials_id=source.credentials_id,
                    created_at=source.created_at,
                    updated_at=source.updated_at,
                )
            )
            await session.commit()
        logger.info("Source %s (%s) created", source.id, source.type)
        return source

    async def get(self, source_id: str) -> Source:
        async with self._session_factory() as session:
            row = await session.get(SourceModel, source_id)
            if row is None:
                raise KeyError(f"source not found: {source_id}")
            return _source_from_row(row)

    async def list(self) -> List[Source]:
        async with self._session_factory() as session:
            result = await session.execute(select(SourceModel).order_by(SourceModel.created_at))
            return [_source_from_row(r) for r in result.scalars().all()]

    async def update(self, source: Source) -> Source:
        async with self._session_factory() as session:
            row = await session.get(SourceModel, source.id)
            if row is None:
                raise KeyError(f"source not found: {source.id}")
            row.type = source.type
            row.name = source.name
            row.config = dict(source.config)
            row.auth_provider_id = source.auth_provider_id
            row.credentials_id = source.credentials_id
            row.updated_at = utc_now()
            await session.commit()
            return _source_from_row(row)

    async def remove(self, source_id: str) -> bool:
        """Delete a source and (by cascade) its credentials.  False if absent."""
        async with self._session_factory() as session:
            await session.execute(delete(CredentialsModel).where(CredentialsModel.source_id == source_id))
            result = await session.execute(delete(SourceModel).where(SourceModel.id == source_id))
            await session.commit()
        removed = result.rowcount > 0
        if removed:
            logger.info("Source %s removed", source_id)
        return removed


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials
# ═══════════════════════════════════════════════════════════════════════════════


def _credentials_from_row(row: CredentialsModel) -> Credentials:
    creds = Credentials(
        id=row.id,
        source_id=row.source_id,
        account_identifier=row.account_identifier or "",
        created_at=_aware(row.created_at) or utc_now(),
        updated_at=_aware(row.updated_at) or utc_now(),
    )
    if row.auth_method == AuthMethod.PAT.value:
        creds.pat = PATCredentials(token=decrypt_secret(row.pat_token))
    else:
        creds.oauth = OAuthCredentials(
            access_token=decrypt_secret(row.access_token),
            refresh_token=decrypt_secret(row.refresh_token),
            token_type=row.token_type or "",
            expiry=_aware(row.expiry),
        )
    return creds


def _apply_credentials(row: CredentialsModel, creds: Credentials) -> None:
    row.source_id = creds.source_id
    row.account_identifier = creds.account_identifier
    if creds.pat is not None:
        row.auth_method = AuthMethod.PAT.value
        row.pat_token = encrypt_secret(creds.pat.token)
        row.access_token = row.refresh_token = row.token_type = ""
        row.expiry = None
    elif creds.oauth is not None:
        row.auth_method = AuthMethod.OAUTH.value
        row.pat_token = ""
        row.access_token = encrypt_secret(creds.oauth.access_token)
        row.refresh_token = encrypt_secret(creds.oauth.refresh_token)
        row.token_type = creds.oauth.token_type
        row.expiry = creds.oauth.expiry
    else:
        raise ValueError("credentials must carry either a PAT or an OAuth token set")


class CredentialsStore(_SQLStore):

    async def save(self, creds: Credentials) -> Credentials:
        """Insert or replace by id."""
        async with self._session_factory() as session:
            row = await session.get(CredentialsModel, creds.id)
            if row is None:
                row = CredentialsModel(id=creds.id, created_at=creds.created_at)
                session.add(row)
            _apply_credentials(row, creds)
            row.updated_at = utc_now()
            await session.commit()
        logger.info("Credentials %s saved for source %s", creds.id, creds.source_id)
        return creds

    async def get(self, credentials_id: str) -> Credentials:
        async with self._session_factory() as session:
            row = await session.get(CredentialsModel, credentials_id)
            if row is None:
                raise KeyError(f"credentials not found: {credentials_id}")
            return _credentials_from_row(row)

    async def get_by_source_id(self, source_id: str) -> Optional[Credentials]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CredentialsModel).where(CredentialsModel.source_id == source_id)
            )
            row = result.scalar_one_or_none()
            return _credentials_from_row(row) if row is not None else None

    async def delete(self, credentials_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CredentialsModel).where(CredentialsModel.id == credentials_id)
            )
            await session.commit()
        return result.rowcount > 0


# ═══════════════════════════════════════════════════════════════════════════════
# Auth providers
# ═══════════════════════════════════════════════════════════════════════════════


def _auth_provider_from_row(row: AuthProviderModel) -> AuthProvider:
    oauth = None
    if row.auth_method == AuthMethod.OAUTH.value:
        oauth = OAuthProviderConfig(
            client_id=row.client_id,
            client_secret=decrypt_secret(row.client_secret),
            auth_url=row.auth_url or "",
            token_url=row.token_url or "",
            scopes=list(row.scopes or []),
        )
    return AuthProvider(
        id=row.id,
        name=row.name,
        provider_type=ProviderType(row.provider_type),
        auth_method=AuthMethod(row.auth_method),
        oauth=oauth,
        created_at=_aware(row.created_at) or utc_now(),
        updated_at=_aware(row.updated_at) or utc_now(),
    )


class AuthProviderStore(_SQLStore):

    async def save(self, provider: AuthProvider) -> AuthProvider:
        async with self._session_factory() as session:
            row = await session.get(AuthProviderModel, provider.id)
            if row is None:
                row = AuthProviderModel(id=provider.id, created_at=provider.created_at)
                session.add(row)
            row.name = provider.name
            row.provider_type = provider.provider_type.value
            row.auth_method = provider.auth_method.value
            oauth = provider.oauth
            row.client_id = oauth.client_id if oauth else ""
            row.client_secret = encrypt_secret(oauth.client_secret) if oauth else ""
            row.auth_url = oauth.auth_url if oauth else ""
            row.token_url = oauth.token_url if oauth else ""
            row.scopes = list(oauth.scopes) if oauth else []
            row.updated_at = utc_now()
            await session.commit()
        logger.info("Auth provider %s (%s) saved", provider.id, provider.provider_type.value)
        return provider

    async def get(self, provider_id: str) -> AuthProvider:
        async with self._session_factory() as session:
            row = await session.get(AuthProviderModel, provider_id)
            if row is None:
                raise KeyError(f"auth provider not found: {provider_id}")
            return _auth_provider_from_row(row)

    async def list(self) -> List[AuthProvider]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuthProviderModel).order_by(AuthProviderModel.created_at)
            )
            return [_auth_provider_from_row(r) for r in result.scalars().all()]

    async def list_by_provider(self, provider_type: ProviderType) -> List[AuthProvider]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuthProviderModel)
                .where(AuthProviderModel.provider_type == provider_type.value)
                .order_by(AuthProviderModel.created_at)
            )
            return [_auth_provider_from_row(r) for r in result.scalars().all()]

    async def delete(self, provider_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AuthProviderModel).where(AuthProviderModel.id == provider_id)
            )
            await session.commit()
        return result.rowcount > 0
