"""
Pydantic schemas for connectors, auth providers, credentials and sources.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntFlag
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Connector capabilities
# ═══════════════════════════════════════════════════════════════════════════════


class AuthMethod(str, Enum):
    NONE = "none"
    PAT = "pat"
    OAUTH = "oauth"


class AuthCapability(IntFlag):
    """Bitfield of the authentication methods a connector accepts."""

    NONE = 0
    PAT = 1
    OAUTH = 2
    BOTH = PAT | OAUTH

    @property
    def requires_auth(self) -> bool:
        return self != AuthCapability.NONE

    @property
    def supports_pat(self) -> bool:
        return bool(self & AuthCapability.PAT)

    @property
    def supports_oauth(self) -> bool:
        return bool(self & AuthCapability.OAUTH)

    @property
    def supports_multiple_methods(self) -> bool:
        return self.supports_pat and self.supports_oauth

    def supported_methods(self) -> List[AuthMethod]:
        """PAT first, then OAuth. Empty when no auth is required."""
        methods: List[AuthMethod] = []
        if self.supports_pat:
            methods.append(AuthMethod.PAT)
        if self.supports_oauth:
            methods.append(AuthMethod.OAUTH)
        return methods

    def __str__(self) -> str:
        if not self.requires_auth:
            return "none"
        return ",".join(m.value for m in self.supported_methods())


class ProviderType(str, Enum):
    LOCAL = "local"
    GITHUB = "github"
    GOOGLE = "google"


class ConfigKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    description: str = ""
    default: str = ""
    required: bool = False
    secret: bool = False


class ConnectorDescriptor(BaseModel):
    """Static description of a data-source type."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    provider_type: ProviderType
    auth_capability: AuthCapability = AuthCapability.NONE
    config_keys: List[ConfigKey] = Field(default_factory=list)

    @property
    def requires_auth(self) -> bool:
        return self.auth_capability.requires_auth

    def required_keys(self) -> List[ConfigKey]:
        return [k for k in self.config_keys if k.required]


class OAuthEndpoints(BaseModel):
    auth_url: str
    token_url: str
    scopes: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Persisted records
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthProviderConfig(BaseModel):
    client_id: str
    client_secret: str
    auth_url: str = ""
    token_url: str = ""
    scopes: List[str] = Field(default_factory=list)


class AuthProvider(BaseModel):
    """A named OAuth application registration, shareable across connectors."""

    id: str
    name: str
    provider_type: ProviderType
    auth_method: AuthMethod = AuthMethod.OAUTH
    oauth: Optional[OAuthProviderConfig] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_oauth(self) -> bool:
        return self.auth_method == AuthMethod.OAUTH and self.oauth is not None


class OAuthCredentials(BaseModel):
    access_token: str
    refresh_token: str = ""
    token_type: str = ""
    expiry: Optional[datetime] = None   # None = non-expiring or unknown

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry is None:
            return False
        return (now or utc_now()) >= self.expiry


class PATCredentials(BaseModel):
    token: str


class Credentials(BaseModel):
    """Per-source tokens. Exactly one of ``pat`` / ``oauth`` is populated."""

    id: str
    source_id: str
    account_identifier: str = ""
    pat: Optional[PATCredentials] = None
    oauth: Optional[OAuthCredentials] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        if self.oauth is None:
            return False
        return self.oauth.is_expired(now) and bool(self.oauth.refresh_token)

    @property
    def access_token(self) -> str:
        if self.oauth is not None and self.oauth.access_token:
            return self.oauth.access_token
        if self.pat is not None and self.pat.token:
            return self.pat.token
        return ""

    @property
    def has_refresh_token(self) -> bool:
        return self.oauth is not None and bool(self.oauth.refresh_token)


class Source(BaseModel):
    id: str
    type: str
    name: str
    config: Dict[str, str] = Field(default_factory=dict)
    auth_provider_id: str = ""      # empty for PAT and no-auth sources
    credentials_id: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def display_name(self, account_identifier: str = "") -> str:
        if account_identifier and account_identifier not in self.name:
            return f"{self.name} - {account_identifier}"
        return self.name


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth flow (ephemeral)
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthFlowState(BaseModel):
    """One authorization attempt. Never persisted."""

    model_config = ConfigDict(frozen=True)

    auth_url: str
    code_verifier: str
    state: str
    redirect_uri: str
    redirect_port: int


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str = ""
    token_type: str = ""
    expires_in: Optional[int] = None
    expiry: Optional[datetime] = None

    def to_credentials(self) -> OAuthCredentials:
        return OAuthCredentials(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type=self.token_type,
            expiry=self.expiry,
        )
