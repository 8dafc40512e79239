"""
Add-source wizard vocabulary: steps, events, effects and transitions.

User events come from the prompt loop; completion events are produced by
effects (store calls, the OAuth listener) and fed back into the wizard.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from core.provisioner import ProvisionResult
from utils.schemas import AuthProvider, OAuthCredentials, OAuthFlowState, ProviderType, TokenResponse


class WizardStep(str, Enum):
    SELECT_CONNECTOR = "select_connector"
    ENTER_CONFIG = "enter_config"
    SELECT_AUTH_METHOD = "select_auth_method"
    SELECT_EXISTING_AUTH = "select_existing_auth"
    ENTER_CREDENTIALS = "enter_credentials"
    OAUTH_IN_FLIGHT = "oauth_in_flight"
    COMPLETE = "complete"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (WizardStep.COMPLETE, WizardStep.CANCELLED)


class Move(str, Enum):
    PUSH = "push"          # forward edge
    POP = "pop"            # reverse of the last forward edge
    REPLACE = "replace"    # swap the current step, keeping the trail below it
    STAY = "stay"


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


# ═══════════════════════════════════════════════════════════════════════════════
# User events
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectorChosen(_Message):
    index: int


class ConfigSubmitted(_Message):
    values: Dict[str, str] = Field(default_factory=dict)


class AuthMethodChosen(_Message):
    index: int


class ExistingAuthChosen(_Message):
    index: int


class NewAuthRequested(_Message):
    pass


class CredentialsSubmitted(_Message):
    token: str = ""             # PAT mode
    client_id: str = ""         # OAuth mode
    client_secret: str = ""


class Back(_Message):
    pass


class Cancel(_Message):
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# Completion events
# ═══════════════════════════════════════════════════════════════════════════════


class AuthProvidersLoaded(_Message):
    providers: List[AuthProvider] = Field(default_factory=list)


class OAuthReady(_Message):
    flow: OAuthFlowState


class OAuthCompleted(_Message):
    tokens: TokenResponse
    account_identifier: str = ""


class SourceProvisioned(_Message):
    result: ProvisionResult


class EffectFailed(_Message):
    error: Exception


Event = Union[
    ConnectorChosen,
    ConfigSubmitted,
    AuthMethodChosen,
    ExistingAuthChosen,
    NewAuthRequested,
    CredentialsSubmitted,
    Back,
    Cancel,
    AuthProvidersLoaded,
    OAuthReady,
    OAuthCompleted,
    SourceProvisioned,
    EffectFailed,
]


# ═══════════════════════════════════════════════════════════════════════════════
# Effects
# ═══════════════════════════════════════════════════════════════════════════════


class LoadAuthProviders(_Message):
    provider_type: ProviderType


class RegisterAuthProvider(_Message):
    client_id: str
    client_secret: str


class PrepareOAuth(_Message):
    """Pick a port, generate PKCE + state, start the listener, build the auth URL."""


class BeginCallbackWait(_Message):
    """Open the browser and await the callback, token exchange and account lookup."""


class StopListener(_Message):
    pass


class ProvisionSource(_Message):
    pat_token: Optional[str] = None
    oauth_tokens: Optional[OAuthCredentials] = None
    account_identifier: str = ""


Effect = Union[
    LoadAuthProviders,
    RegisterAuthProvider,
    PrepareOAuth,
    BeginCallbackWait,
    StopListener,
    ProvisionSource,
]


class Transition(_Message):
    step: WizardStep
    move: Move = Move.PUSH
    effects: List[Any] = Field(default_factory=list)

    @classmethod
    def stay(cls, step: WizardStep, *effects: Any) -> "Transition":
        return cls(step=step, move=Move.STAY, effects=list(effects))
