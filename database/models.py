"""
SQLAlchemy ORM models for auth providers, sources and credentials.

Client secrets and tokens are written through ``connectors.encryption``
by the stores; the columns hold ciphertext when a key is configured.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AuthProviderModel(Base):
    __tablename__ = "auth_providers"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    provider_type = Column(String(32), nullable=False)
    auth_method = Column(String(16), nullable=False, default="oauth")
    client_id = Column(String(255), nullable=False, default="")
    client_secret = Column(Text, nullable=False, default="")     # encrypted
    auth_url = Column(Text, nullable=False, default="")
    token_url = Column(Text, nullable=False, default="")
    scopes = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        Index("idx_auth_providers_type", "provider_type"),
    )


class SourceModel(Base):
    __tablename__ = "sources"

    id = Column(String(64), primary_key=True)
    type = Column(String(64), nullable=False)
    name = Column(String(512), nullable=False)
    config = Column(JSON, default=dict)
    auth_provider_id = Column(String(64), nullable=False, default="")
    credentials_id = Column(String(64), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)


class CredentialsModel(Base):
    __tablename__ = "credentials"

    id = Column(String(64), primary_key=True)
    source_id = Column(String(64), ForeignKey("sources.id", ondelete="CASCADE"), nullable=False)
    account_identifier = Column(String(255), nullable=False, default="")
    auth_method = Column(String(16), nullable=False)             # "pat" | "oauth"
    pat_token = Column(Text, nullable=False, default="")         # encrypted
    access_token = Column(Text, nullable=False, default="")      # encrypted
    refresh_token = Column(Text, nullable=False, default="")     # encrypted
    token_type = Column(String(32), nullable=False, default="")
    expiry = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        Index("idx_credentials_source", "source_id", unique=True),
    )
