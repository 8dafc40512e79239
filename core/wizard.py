"""
AddSourceWizard — drives connector selection through to a provisioned source.

Each non-terminal step has one handler.  A handler looks at an event and
returns a ``Transition`` (next step, how to move the trail, effects to
run) or ``None`` when the event does not apply to that step.  Effects run
in order after the transition and may yield completion events, which are
dispatched in turn.

The OAuth wait is the only background work: ``BeginCallbackWait`` starts a
task that blocks on the listener in a worker thread, exchanges the code and
looks up the account.  ``wait_for_oauth()`` awaits that task and dispatches
its completion event.

    wizard = AddSourceWizard(connectors, providers, provisioner, auth_store)
    await wizard.dispatch(ConnectorChosen(index=1))
    await wizard.dispatch(ConfigSubmitted(values={}))
    ...
    if wizard.step == WizardStep.OAUTH_IN_FLIGHT:
        await wizard.wait_for_oauth()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

from config.settings import Settings, config
from connectors.registry import ConnectorRegistry, ProviderRegistry
from core.provisioner import CredentialProvisioner
from core.wizard_state import (
    AuthMethodChosen,
    AuthProvidersLoaded,
    Back,
    BeginCallbackWait,
    Cancel,
    ConfigSubmitted,
    ConnectorChosen,
    CredentialsSubmitted,
    Effect,
    EffectFailed,
    Event,
    ExistingAuthChosen,
    LoadAuthProviders,
    Move,
    NewAuthRequested,
    OAuthCompleted,
    OAuthReady,
    PrepareOAuth,
    ProvisionSource,
    RegisterAuthProvider,
    SourceProvisioned,
    StopListener,
    Transition,
    WizardStep,
)
from database.stores import AuthProviderStore
from oauth.callback import CallbackListener, open_browser, resolve_callback_port
from oauth.errors import (
    AccountLookupError,
    ConfigurationError,
    OAuthFlowError,
    PersistenceError,
)
from oauth.pkce import generate_code_challenge, generate_code_verifier, generate_state
from oauth.token import exchange_code_for_tokens
from utils.schemas import (
    AuthMethod,
    AuthProvider,
    ConnectorDescriptor,
    OAuthFlowState,
    OAuthProviderConfig,
    TokenResponse,
)

logger = logging.getLogger(__name__)

CREATE_NEW_AUTH_LABEL = "Create new OAuth app"


class AddSourceWizard:
    """State machine for adding one source."""

    def __init__(
        self,
        connector_registry: ConnectorRegistry,
        provider_registry: ProviderRegistry,
        provisioner: CredentialProvisioner,
        auth_provider_store: AuthProviderStore,
        *,
        settings: Settings = config,
        listener_factory: Callable[..., CallbackListener] = CallbackListener,
        browser_opener: Callable[[str], bool] = open_browser,
        token_exchanger=exchange_code_for_tokens,
    ) -> None:
        self._connectors = connector_registry
        self._providers = provider_registry
        self._provisioner = provisioner
        self._auth_store = auth_provider_store
        self._settings = settings
        self._listener_factory = listener_factory
        self._open_browser = browser_opener
        self._exchange = token_exchanger

        self._handlers: Dict[WizardStep, Callable[[Event], Optional[Transition]]] = {
            WizardStep.SELECT_CONNECTOR: self._on_select_connector,
            WizardStep.ENTER_CONFIG: self._on_enter_config,
            WizardStep.SELECT_AUTH_METHOD: self._on_select_auth_method,
            WizardStep.SELECT_EXISTING_AUTH: self._on_select_existing_auth,
            WizardStep.ENTER_CREDENTIALS: self._on_enter_credentials,
            WizardStep.OAUTH_IN_FLIGHT: self._on_oauth_in_flight,
        }
        missing = [s.value for s in WizardStep if not s.terminal and s not in self._handlers]
        if missing:
            raise RuntimeError(f"wizard steps without a handler: {', '.join(missing)}")

        self._trail: List[WizardStep] = [WizardStep.SELECT_CONNECTOR]
        self.history: List[WizardStep] = [WizardStep.SELECT_CONNECTOR]
        self.warnings: List[str] = []
        self.error: Optional[str] = None

        self.connector: Optional[ConnectorDescriptor] = None
        self.config_values: Dict[str, str] = {}
        self.auth_method: AuthMethod = AuthMethod.NONE
        self.auth_providers: List[AuthProvider] = []
        self.auth_provider: Optional[AuthProvider] = None
        self.creating_new_auth = False
        self.flow: Optional[OAuthFlowState] = None
        self.result = None

        self._listener: Optional[CallbackListener] = None
        self._oauth_task: Optional[asyncio.Task] = None

    # ── Public surface ──────────────────────────────────────────────────

    @property
    def step(self) -> WizardStep:
        return self._trail[-1]

    @property
    def finished(self) -> bool:
        return self.step.terminal

    @property
    def awaiting_callback(self) -> bool:
        return self._oauth_task is not None

    def connector_options(self) -> List[str]:
        return [c.name for c in self._connectors.list()]

    def auth_method_options(self) -> List[AuthMethod]:
        if self.connector is None:
            return []
        return self.connector.auth_capability.supported_methods()

    def existing_auth_options(self) -> List[str]:
        """Existing app registrations, then "create new" at index N."""
        return [p.name for p in self.auth_providers] + [CREATE_NEW_AUTH_LABEL]

    def setup_hint(self) -> str:
        return self._connectors.setup_hint(self.connector.id) if self.connector else ""

    async def dispatch(self, event: Event) -> WizardStep:
        """Apply one user event plus every completion event it causes."""
        self.error = None
        pending: List[Event] = [event]
        while pending:
            current = pending.pop(0)
            if self.finished:
                logger.debug("Ignoring %s after wizard finished", type(current).__name__)
                continue

            transition = self._handlers[self.step](current)
            if transition is None:
                logger.debug("Ignoring %s in step %s", type(current).__name__, self.step.value)
                continue

            self._apply(transition)
            for effect in transition.effects:
                produced = await self._run_effect(effect)
                if produced is None:
                    continue
                pending.append(produced)
                if isinstance(produced, EffectFailed):
                    break
        return self.step

    async def wait_for_oauth(self) -> WizardStep:
        """Await the in-flight authorization and dispatch its outcome."""
        task = self._oauth_task
        if task is None:
            return self.step
        try:
            outcome = await task
        except asyncio.CancelledError:
            if self._oauth_task is not task:
                return self.step
            raise
        # A cancel or back while waiting discards the attempt.
        if self._oauth_task is not task:
            logger.debug("Discarding outcome of an abandoned OAuth attempt")
            return self.step
        self._oauth_task = None
        return await self.dispatch(outcome)

    async def close(self) -> None:
        """Stop any running listener; safe to call at any time."""
        await self._stop_listener()

    # ── Trail ───────────────────────────────────────────────────────────

    def _apply(self, transition: Transition) -> None:
        if transition.move == Move.STAY:
            return
        if transition.move == Move.PUSH:
            self._trail.append(transition.step)
        elif transition.move == Move.REPLACE:
            self._trail[-1] = transition.step
        elif transition.move == Move.POP:
            self._trail.pop()
        self.history.append(self.step)
        logger.debug("Wizard step -> %s", self.step.value)

    def _back(self, *effects: Effect) -> Transition:
        if len(self._trail) <= 1:
            return self._cancel(*effects)
        return Transition(step=self._trail[-2], move=Move.POP, effects=list(effects))

    def _cancel(self, *effects: Effect) -> Transition:
        return Transition(step=WizardStep.CANCELLED, move=Move.PUSH, effects=[*effects, StopListener()])

    def _fail(self, message: str) -> Transition:
        self.error = message
        return Transition.stay(self.step)

    def _back_to_credentials(self, *effects: Effect) -> Transition:
        """Leave OAUTH_IN_FLIGHT for credential entry, however it was reached."""
        if len(self._trail) >= 2 and self._trail[-2] == WizardStep.ENTER_CREDENTIALS:
            return Transition(step=WizardStep.ENTER_CREDENTIALS, move=Move.POP, effects=list(effects))
        # Reached straight from an existing app; retrying means entering new credentials.
        self.creating_new_auth = True
        self.auth_provider = None
        return Transition(step=WizardStep.ENTER_CREDENTIALS, move=Move.REPLACE, effects=list(effects))

    # ── Step handlers ───────────────────────────────────────────────────

    def _on_select_connector(self, event: Event) -> Optional[Transition]:
        if isinstance(event, ConnectorChosen):
            connectors = self._connectors.list()
            if not 0 <= event.index < len(connectors):
                return self._fail("invalid connector selection")
            self._reset_for(connectors[event.index])
            return Transition(step=WizardStep.ENTER_CONFIG)
        if isinstance(event, (Back, Cancel)):
            return self._cancel()
        return None

    def _on_enter_config(self, event: Event) -> Optional[Transition]:
        if isinstance(event, ConfigSubmitted):
            values = self._with_defaults(event.values)
            missing = self._connectors.validate_config(self.connector.id, values)
            if missing:
                return self._fail(f"required: {', '.join(missing)}")
            self.config_values = values

            if not self.connector.requires_auth:
                return Transition.stay(self.step, ProvisionSource())
            methods = self.connector.auth_capability.supported_methods()
            if len(methods) > 1:
                return Transition(step=WizardStep.SELECT_AUTH_METHOD)
            return self._after_method_chosen(methods[0])
        return self._on_shared(event)

    def _on_select_auth_method(self, event: Event) -> Optional[Transition]:
        if isinstance(event, AuthMethodChosen):
            methods = self.auth_method_options()
            if not 0 <= event.index < len(methods):
                return self._fail("invalid authentication method")
            return self._after_method_chosen(methods[event.index])
        return self._on_shared(event)

    def _on_select_existing_auth(self, event: Event) -> Optional[Transition]:
        if isinstance(event, NewAuthRequested) or (
            isinstance(event, ExistingAuthChosen) and event.index == len(self.auth_providers)
        ):
            self.creating_new_auth = True
            self.auth_provider = None
            return Transition(step=WizardStep.ENTER_CREDENTIALS)
        if isinstance(event, ExistingAuthChosen):
            if not 0 <= event.index < len(self.auth_providers):
                return self._fail("no OAuth app selected")
            self.creating_new_auth = False
            self.auth_provider = self.auth_providers[event.index]
            return Transition.stay(self.step, PrepareOAuth())
        return self._on_shared(event)

    def _on_enter_credentials(self, event: Event) -> Optional[Transition]:
        if isinstance(event, CredentialsSubmitted):
            if self.auth_method == AuthMethod.PAT:
                token = event.token.strip()
                if not token:
                    return self._fail("token is required")
                return Transition.stay(self.step, ProvisionSource(pat_token=token))

            client_id, client_secret = event.client_id.strip(), event.client_secret.strip()
            if not client_id or not client_secret:
                return self._fail("client ID and client secret are required")
            if self._reusable_provider(client_id, client_secret):
                return Transition.stay(self.step, PrepareOAuth())
            return Transition.stay(
                self.step,
                RegisterAuthProvider(client_id=client_id, client_secret=client_secret),
                PrepareOAuth(),
            )
        return self._on_shared(event)

    def _on_oauth_in_flight(self, event: Event) -> Optional[Transition]:
        if isinstance(event, OAuthCompleted):
            return Transition.stay(
                self.step,
                ProvisionSource(
                    oauth_tokens=event.tokens.to_credentials(),
                    account_identifier=event.account_identifier,
                ),
            )
        if isinstance(event, SourceProvisioned):
            return self._complete(event)
        if isinstance(event, EffectFailed):
            self.error = str(event.error)
            if isinstance(event.error, PersistenceError):
                return Transition.stay(self.step)
            return self._back_to_credentials(StopListener())
        if isinstance(event, Cancel):
            return self._back_to_credentials(StopListener())
        if isinstance(event, Back):
            return self._back(StopListener())
        return None

    def _on_shared(self, event: Event) -> Optional[Transition]:
        """Events several steps accept identically."""
        if isinstance(event, AuthProvidersLoaded):
            self.auth_providers = list(event.providers)
            if self.auth_providers:
                return Transition(step=WizardStep.SELECT_EXISTING_AUTH)
            self.creating_new_auth = True
            return Transition(step=WizardStep.ENTER_CREDENTIALS)
        if isinstance(event, OAuthReady):
            self.flow = event.flow
            return Transition(step=WizardStep.OAUTH_IN_FLIGHT, effects=[BeginCallbackWait()])
        if isinstance(event, SourceProvisioned):
            return self._complete(event)
        if isinstance(event, EffectFailed):
            self.error = str(event.error)
            return Transition.stay(self.step)
        if isinstance(event, Back):
            return self._back()
        if isinstance(event, Cancel):
            return self._cancel()
        return None

    def _complete(self, event: SourceProvisioned) -> Transition:
        self.result = event.result
        self.warnings.extend(event.result.warnings)
        return Transition(step=WizardStep.COMPLETE, effects=[StopListener()])

    # ── Handler helpers ─────────────────────────────────────────────────

    def _reset_for(self, connector: ConnectorDescriptor) -> None:
        self.connector = connector
        self.config_values = {}
        self.auth_method = AuthMethod.NONE
        self.auth_providers = []
        self.auth_provider = None
        self.creating_new_auth = False
        self.flow = None

    def _with_defaults(self, submitted: Dict[str, str]) -> Dict[str, str]:
        values = {k: v.strip() for k, v in submitted.items()}
        for key in self.connector.config_keys:
            if not values.get(key.key) and key.default:
                values[key.key] = key.default
        return values

    def _after_method_chosen(self, method: AuthMethod) -> Transition:
        self.auth_method = method
        self.auth_provider = None
        if method == AuthMethod.OAUTH:
            provider_type = self.connector.provider_type
            if self._providers.has_multiple_connectors(provider_type):
                return Transition.stay(self.step, LoadAuthProviders(provider_type=provider_type))
            self.creating_new_auth = True
        else:
            self.creating_new_auth = False
        return Transition(step=WizardStep.ENTER_CREDENTIALS)

    def _reusable_provider(self, client_id: str, client_secret: str) -> bool:
        provider = self.auth_provider
        return (
            provider is not None
            and provider.oauth is not None
            and provider.oauth.client_id == client_id
            and provider.oauth.client_secret == client_secret
        )

    # ── Effects ─────────────────────────────────────────────────────────

    async def _run_effect(self, effect: Effect) -> Optional[Event]:
        if isinstance(effect, LoadAuthProviders):
            try:
                providers = await self._auth_store.list_by_provider(effect.provider_type)
            except Exception as exc:
                return EffectFailed(error=PersistenceError("failed to load OAuth apps", cause=exc))
            return AuthProvidersLoaded(providers=providers)
        if isinstance(effect, RegisterAuthProvider):
            return await self._register_auth_provider(effect)
        if isinstance(effect, PrepareOAuth):
            return await self._prepare_oauth()
        if isinstance(effect, BeginCallbackWait):
            self._begin_callback_wait()
            return None
        if isinstance(effect, StopListener):
            await self._stop_listener()
            return None
        if isinstance(effect, ProvisionSource):
            return await self._provision(effect)
        raise TypeError(f"unknown wizard effect: {effect!r}")

    async def _register_auth_provider(self, effect: RegisterAuthProvider) -> Optional[Event]:
        endpoints = self._connectors.oauth_defaults(self.connector.id)
        if endpoints is None:
            return EffectFailed(error=ConfigurationError(f"{self.connector.name} does not support OAuth"))
        provider = AuthProvider(
            id=str(uuid.uuid4()),
            name=f"{self.connector.name} OAuth App",
            provider_type=self.connector.provider_type,
            oauth=OAuthProviderConfig(
                client_id=effect.client_id,
                client_secret=effect.client_secret,
                auth_url=endpoints.auth_url,
                token_url=endpoints.token_url,
                scopes=endpoints.scopes,
            ),
        )
        try:
            await self._auth_store.save(provider)
        except Exception as exc:
            return EffectFailed(error=PersistenceError("failed to save OAuth app", cause=exc))
        self.auth_provider = provider
        self.creating_new_auth = False
        return None

    async def _prepare_oauth(self) -> Event:
        if self.auth_provider is None or not self.auth_provider.is_oauth:
            return EffectFailed(error=ConfigurationError("no OAuth app selected"))

        await self._stop_listener()
        settings = self._settings
        try:
            port = resolve_callback_port(
                settings.oauth_callback_port,
                settings.callback_port_range(),
                host=settings.oauth_callback_host,
            )
            if settings.oauth_callback_port and port != settings.oauth_callback_port:
                self.warnings.append(
                    f"callback port {settings.oauth_callback_port} is busy; using {port} instead"
                )

            verifier = generate_code_verifier()
            state = generate_state()
            listener = self._listener_factory(
                port,
                state,
                host=settings.oauth_callback_host,
                shutdown_grace=settings.oauth_server_shutdown_grace_seconds,
            )
            listener.start()
            self._listener = listener

            auth_url = self._connectors.build_auth_url(
                self.connector.id,
                self.auth_provider,
                listener.redirect_uri,
                state,
                generate_code_challenge(verifier),
            )
        except OAuthFlowError as exc:
            await self._stop_listener()
            return EffectFailed(error=exc)

        return OAuthReady(
            flow=OAuthFlowState(
                auth_url=auth_url,
                code_verifier=verifier,
                state=state,
                redirect_uri=listener.redirect_uri,
                redirect_port=listener.port,
            )
        )

    def _begin_callback_wait(self) -> None:
        if not self._open_browser(self.flow.auth_url):
            self.warnings.append("could not open a browser; open the authorization URL manually")
        self._oauth_task = asyncio.create_task(
            self._await_authorization(self._listener, self.flow, self.auth_provider)
        )

    async def _await_authorization(
        self,
        listener: CallbackListener,
        flow: OAuthFlowState,
        provider: AuthProvider,
    ) -> Event:
        """Callback, then token exchange, then account lookup."""
        try:
            code = await asyncio.to_thread(
                listener.wait_for_code, self._settings.oauth_callback_timeout_seconds
            )
        except OAuthFlowError as exc:
            logger.warning("OAuth callback failed: %s", exc)
            return EffectFailed(error=exc)
        finally:
            await asyncio.to_thread(listener.stop)

        token_url = provider.oauth.token_url
        if not token_url:
            token_url = self._connectors.oauth_defaults(self.connector.id).token_url
        try:
            tokens: TokenResponse = await self._exchange(
                token_url,
                provider.oauth.client_id,
                provider.oauth.client_secret,
                code,
                flow.redirect_uri,
                flow.code_verifier,
                timeout=self._settings.oauth_token_timeout_seconds,
            )
        except OAuthFlowError as exc:
            logger.warning("Token exchange failed: %s", exc)
            return EffectFailed(error=exc)

        account = ""
        try:
            account = await self._connectors.get_user_info(self.connector.id, tokens.access_token)
        except AccountLookupError as exc:
            logger.warning("Account lookup failed: %s", exc)
            self.warnings.append(f"could not determine account: {exc}")

        return OAuthCompleted(tokens=tokens, account_identifier=account)

    async def _stop_listener(self) -> None:
        task, self._oauth_task = self._oauth_task, None
        listener, self._listener = self._listener, None
        if listener is not None:
            await asyncio.to_thread(listener.stop)
        if task is not None and not task.done():
            task.cancel()

    async def _provision(self, effect: ProvisionSource) -> Event:
        try:
            result = await self._provisioner.provision(
                self.connector,
                self.config_values,
                pat_token=effect.pat_token,
                oauth_tokens=effect.oauth_tokens,
                auth_provider_id=self.auth_provider.id if effect.oauth_tokens and self.auth_provider else "",
                account_identifier=effect.account_identifier,
            )
        except OAuthFlowError as exc:
            logger.warning("Provisioning failed: %s", exc)
            return EffectFailed(error=exc)
        return SourceProvisioned(result=result)
