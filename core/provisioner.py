"""
CredentialProvisioner — creates a Source and its Credentials as one unit.

The stores have no multi-record transaction, so the two inserts are
ordered (source first, credentials reference it) and a failed credentials
save is compensated by deleting the source again.

    result = await provisioner.provision(connector, config, pat_token="ghp_…")
    result.source, result.credentials, result.warnings
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from database.stores import CredentialsStore, SourceStore
from oauth.errors import ConfigurationError, PersistenceError, RollbackError
from utils.schemas import (
    ConnectorDescriptor,
    Credentials,
    OAuthCredentials,
    PATCredentials,
    Source,
    utc_now,
)

logger = logging.getLogger(__name__)


class ProvisionResult(BaseModel):
    """Outcome plus the best-effort steps that did not succeed."""

    source: Source
    credentials: Optional[Credentials] = None
    warnings: List[str] = Field(default_factory=list)


def derive_source_name(
    connector: ConnectorDescriptor,
    config: Mapping[str, str],
    account_identifier: str = "",
) -> str:
    """
    Directory path, else ``owner/repo``, else the connector name.
    OAuth sources get the account in parentheses.
    """
    name = connector.name
    if config.get("path"):
        name = config["path"]
    elif config.get("owner") and config.get("repo"):
        name = f"{config['owner']}/{config['repo']}"

    if account_identifier:
        name = f"{name} ({account_identifier})"
    return name


def _new_id() -> str:
    return str(uuid.uuid4())


class CredentialProvisioner:

    def __init__(
        self,
        source_store: Optional[SourceStore] = None,
        credentials_store: Optional[CredentialsStore] = None,
    ) -> None:
        self._sources = source_store or SourceStore()
        self._credentials = credentials_store or CredentialsStore()

    async def provision(
        self,
        connector: ConnectorDescriptor,
        config: Mapping[str, str],
        *,
        pat_token: Optional[str] = None,
        oauth_tokens: Optional[OAuthCredentials] = None,
        auth_provider_id: str = "",
        account_identifier: str = "",
    ) -> ProvisionResult:
        """
        Persist the source and, for authenticated connectors, its credentials.

        Raises
        ------
        ConfigurationError
            Both or neither of ``pat_token`` / ``oauth_tokens`` for a
            connector that requires auth.
        PersistenceError
            A store call failed; nothing is left behind.
        RollbackError
            The credentials save failed and the source could not be removed.
        """
        if pat_token is not None and oauth_tokens is not None:
            raise ConfigurationError("provide either a PAT or OAuth tokens, not both")
        if connector.requires_auth and pat_token is None and oauth_tokens is None:
            raise ConfigurationError(f"{connector.name} requires credentials")
        if pat_token is not None and not pat_token.strip():
            raise ConfigurationError("token is required")

        # PAT sources never reference an app registration.
        if oauth_tokens is None:
            auth_provider_id = ""

        now = utc_now()
        values: Dict[str, str] = dict(config)
        source = Source(
            id=_new_id(),
            type=connector.id,
            name=derive_source_name(connector, values, account_identifier if oauth_tokens else ""),
            config=values,
            auth_provider_id=auth_provider_id,
            created_at=now,
            updated_at=now,
        )

        # ── 1. Source ───────────────────────────────────────────────────
        try:
            await self._sources.add(source)
        except Exception as exc:
            raise PersistenceError("failed to create source", cause=exc) from exc

        if pat_token is None and oauth_tokens is None:
            return ProvisionResult(source=source)

        # ── 2. Credentials ──────────────────────────────────────────────
        creds = Credentials(
            id=_new_id(),
            source_id=source.id,
            account_identifier=account_identifier,
            pat=PATCredentials(token=pat_token) if pat_token is not None else None,
            oauth=oauth_tokens,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._credentials.save(creds)
        except Exception as exc:
            await self._rollback(source, exc)
            raise PersistenceError("failed to save credentials", cause=exc) from exc

        # ── 3. Link (best-effort) ───────────────────────────────────────
        result = ProvisionResult(source=source, credentials=creds)
        linked = source.model_copy(update={"credentials_id": creds.id, "updated_at": utc_now()})
        try:
            result.source = await self._sources.update(linked)
        except Exception as exc:
            logger.warning("Could not link credentials %s to source %s: %s", creds.id, source.id, exc)
            result.warnings.append(f"source created but credentials link failed: {exc}")

        logger.info("Provisioned source %s (%s)", source.id, connector.id)
        return result

    async def _rollback(self, source: Source, cause: Exception) -> None:
        try:
            await self._sources.remove(source.id)
        except Exception as rollback_exc:
            logger.error(
                "Rollback failed: source %s left without credentials (save error: %s; delete error: %s)",
                source.id,
                cause,
                rollback_exc,
            )
            raise RollbackError(source.id, cause=cause, rollback_cause=rollback_exc) from cause
        logger.warning("Credentials save failed; source %s rolled back", source.id)
