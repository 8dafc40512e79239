"""
Tests for the add-source wizard state machine.
"""

import socket
import threading
from typing import Dict, List
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config.settings import Settings
from connectors.github import GitHubOAuthHandler
from connectors.registry import ConnectorRegistry, ProviderRegistry
from core.provisioner import CredentialProvisioner
from core.wizard import CREATE_NEW_AUTH_LABEL, AddSourceWizard
from core.wizard_state import (
    AuthMethodChosen,
    Back,
    Cancel,
    ConfigSubmitted,
    ConnectorChosen,
    CredentialsSubmitted,
    ExistingAuthChosen,
    NewAuthRequested,
    WizardStep,
)
from oauth.callback import CallbackListener
from oauth.errors import CallbackCancelledError
from utils.schemas import (
    AuthProvider,
    Credentials,
    OAuthProviderConfig,
    ProviderType,
    Source,
    TokenResponse,
)

FILESYSTEM, GITHUB, GOOGLE_DRIVE = 0, 1, 2
PAT, OAUTH = 0, 1

_AUTH_STATES = {
    WizardStep.SELECT_AUTH_METHOD,
    WizardStep.SELECT_EXISTING_AUTH,
    WizardStep.ENTER_CREDENTIALS,
    WizardStep.OAUTH_IN_FLIGHT,
}


# ── In-memory stores ─────────────────────────────────────────────────────────


class _MemorySourceStore:
    def __init__(self):
        self.sources: Dict[str, Source] = {}

    async def add(self, source):
        self.sources[source.id] = source
        return source

    async def get(self, source_id):
        return self.sources[source_id]

    async def list(self):
        return list(self.sources.values())

    async def update(self, source):
        self.sources[source.id] = source
        return source

    async def remove(self, source_id):
        return self.sources.pop(source_id, None) is not None


class _MemoryCredentialsStore:
    def __init__(self):
        self.credentials: Dict[str, Credentials] = {}

    async def save(self, creds):
        self.credentials[creds.id] = creds
        return creds

    async def get_by_source_id(self, source_id):
        return next((c for c in self.credentials.values() if c.source_id == source_id), None)


class _MemoryAuthStore:
    def __init__(self, providers: List[AuthProvider] = None):
        self.providers: List[AuthProvider] = list(providers or [])

    async def save(self, provider):
        self.providers.append(provider)
        return provider

    async def list_by_provider(self, provider_type):
        return [p for p in self.providers if p.provider_type == provider_type]


class _FakeListener:
    """Listener stand-in that never binds; ``stop()`` releases the waiter."""

    instances: List["_FakeListener"] = []

    def __init__(self, port, expected_state, **kwargs):
        self.port = port or 40000
        self.expected_state = expected_state
        self.started = False
        self.stopped = False
        self._released = threading.Event()
        _FakeListener.instances.append(self)

    @property
    def redirect_uri(self):
        return f"http://localhost:{self.port}/callback"

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True
        self._released.set()

    def wait_for_code(self, timeout=None):
        self._released.wait(timeout)
        raise CallbackCancelledError()


def _google_app(i: int) -> AuthProvider:
    return AuthProvider(
        id=f"ap-{i}",
        name=f"Google App {i}",
        provider_type=ProviderType.GOOGLE,
        oauth=OAuthProviderConfig(client_id=f"cid-{i}", client_secret=f"secret-{i}"),
    )


def _settings(**overrides) -> Settings:
    values = dict(
        oauth_callback_port=0,
        oauth_callback_timeout_seconds=5.0,
        oauth_server_shutdown_grace_seconds=1.0,
    )
    values.update(overrides)
    return Settings(**values)


def _make_wizard(*, auth_providers=None, settings=None, **kwargs):
    connectors = ConnectorRegistry()
    sources, creds = _MemorySourceStore(), _MemoryCredentialsStore()
    wizard = AddSourceWizard(
        connectors,
        ProviderRegistry(connectors),
        CredentialProvisioner(sources, creds),
        _MemoryAuthStore(auth_providers),
        settings=settings or _settings(),
        **kwargs,
    )
    return wizard, sources, creds


def _browser_hitting_callback(code: str = "the-code", state: str = None):
    """Browser stand-in that follows the auth URL straight to the redirect."""

    def _open(url: str) -> bool:
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        redirect = params["redirect_uri"].replace("localhost", "127.0.0.1")
        query = {"code": code, "state": state if state is not None else params["state"]}
        threading.Thread(target=lambda: httpx.get(redirect, params=query, timeout=5), daemon=True).start()
        return True

    return _open


class TestNoAuthConnector:
    @pytest.mark.asyncio
    async def test_goes_straight_to_complete(self):
        wizard, sources, creds = _make_wizard()

        await wizard.dispatch(ConnectorChosen(index=FILESYSTEM))
        step = await wizard.dispatch(ConfigSubmitted(values={"path": "/home/me/notes"}))

        assert step == WizardStep.COMPLETE
        assert wizard.history == [WizardStep.SELECT_CONNECTOR, WizardStep.ENTER_CONFIG, WizardStep.COMPLETE]
        assert not _AUTH_STATES & set(wizard.history)
        assert wizard.result.source.name == "/home/me/notes"
        assert wizard.result.credentials is None
        assert creds.credentials == {}

    @pytest.mark.asyncio
    async def test_required_field_blocks_advance(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=FILESYSTEM))

        step = await wizard.dispatch(ConfigSubmitted(values={"path": "  "}))

        assert step == WizardStep.ENTER_CONFIG
        assert "Directory Path" in wizard.error
        assert wizard.history == [WizardStep.SELECT_CONNECTOR, WizardStep.ENTER_CONFIG]


class TestPATConnector:
    @pytest.mark.asyncio
    async def test_pat_token_persisted_without_auth_provider(self):
        wizard, sources, creds = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={"owner": "octo", "repo": "hello"}))
        await wizard.dispatch(AuthMethodChosen(index=PAT))

        assert wizard.step == WizardStep.ENTER_CREDENTIALS
        assert await wizard.dispatch(CredentialsSubmitted(token="")) == WizardStep.ENTER_CREDENTIALS
        assert wizard.error == "token is required"

        step = await wizard.dispatch(CredentialsSubmitted(token="abc123"))

        assert step == WizardStep.COMPLETE
        result = wizard.result
        assert result.credentials.pat.token == "abc123"
        assert result.source.auth_provider_id == ""
        assert result.source.name == "octo/hello"
        assert result.source.config["content_types"] == "files"
        assert sources.sources[result.source.id].credentials_id == result.credentials.id


class TestBothMethodsConnector:
    @pytest.mark.asyncio
    async def test_select_auth_method_visited_once(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        step = await wizard.dispatch(AuthMethodChosen(index=OAUTH))

        assert step == WizardStep.ENTER_CREDENTIALS
        assert wizard.history.count(WizardStep.SELECT_AUTH_METHOD) == 1
        assert wizard.history.index(WizardStep.SELECT_AUTH_METHOD) < wizard.history.index(
            WizardStep.ENTER_CREDENTIALS
        )
        assert wizard.creating_new_auth

    @pytest.mark.asyncio
    async def test_back_follows_reverse_edges(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))

        assert await wizard.dispatch(Back()) == WizardStep.SELECT_AUTH_METHOD
        assert await wizard.dispatch(Back()) == WizardStep.ENTER_CONFIG
        assert await wizard.dispatch(Back()) == WizardStep.SELECT_CONNECTOR
        assert await wizard.dispatch(Back()) == WizardStep.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_client_secret(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))

        step = await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret=""))

        assert step == WizardStep.ENTER_CREDENTIALS
        assert "client secret" in wizard.error


class TestMultiConnectorProvider:
    @pytest.mark.asyncio
    async def test_existing_apps_plus_create_new(self):
        wizard, _, _ = _make_wizard(auth_providers=[_google_app(0), _google_app(1)])
        await wizard.dispatch(ConnectorChosen(index=GOOGLE_DRIVE))
        step = await wizard.dispatch(ConfigSubmitted(values={}))

        assert step == WizardStep.SELECT_EXISTING_AUTH
        assert WizardStep.SELECT_AUTH_METHOD not in wizard.history
        options = wizard.existing_auth_options()
        assert options == ["Google App 0", "Google App 1", CREATE_NEW_AUTH_LABEL]

        step = await wizard.dispatch(ExistingAuthChosen(index=2))

        assert step == WizardStep.ENTER_CREDENTIALS
        assert wizard.creating_new_auth
        assert await wizard.dispatch(Back()) == WizardStep.SELECT_EXISTING_AUTH

    @pytest.mark.asyncio
    async def test_new_auth_shortcut(self):
        wizard, _, _ = _make_wizard(auth_providers=[_google_app(0)])
        await wizard.dispatch(ConnectorChosen(index=GOOGLE_DRIVE))
        await wizard.dispatch(ConfigSubmitted(values={}))

        assert await wizard.dispatch(NewAuthRequested()) == WizardStep.ENTER_CREDENTIALS
        assert wizard.creating_new_auth

    @pytest.mark.asyncio
    async def test_no_existing_apps_skips_selection(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=GOOGLE_DRIVE))
        step = await wizard.dispatch(ConfigSubmitted(values={}))

        assert step == WizardStep.ENTER_CREDENTIALS
        assert WizardStep.SELECT_EXISTING_AUTH not in wizard.history
        assert wizard.creating_new_auth

    @pytest.mark.asyncio
    async def test_existing_app_skips_credentials(self):
        _FakeListener.instances.clear()
        opened = []
        wizard, _, _ = _make_wizard(
            auth_providers=[_google_app(0), _google_app(1)],
            listener_factory=_FakeListener,
            browser_opener=lambda url: opened.append(url) or True,
        )
        await wizard.dispatch(ConnectorChosen(index=GOOGLE_DRIVE))
        await wizard.dispatch(ConfigSubmitted(values={}))

        step = await wizard.dispatch(ExistingAuthChosen(index=1))

        assert step == WizardStep.OAUTH_IN_FLIGHT
        assert WizardStep.ENTER_CREDENTIALS not in wizard.history
        assert "client_id=cid-1" in opened[0]
        assert wizard.flow.redirect_uri == _FakeListener.instances[-1].redirect_uri

        # Cancelling stops the listener and falls back to entering new credentials.
        step = await wizard.dispatch(Cancel())
        assert step == WizardStep.ENTER_CREDENTIALS
        assert _FakeListener.instances[-1].stopped
        assert wizard.creating_new_auth
        assert await wizard.dispatch(Back()) == WizardStep.SELECT_EXISTING_AUTH


class TestOAuthFlow:
    @pytest.mark.asyncio
    async def test_end_to_end_with_real_listener(self):
        exchanger = AsyncMock(return_value=TokenResponse(access_token="gho_token", token_type="bearer"))
        wizard, sources, creds = _make_wizard(
            browser_opener=_browser_hitting_callback(),
            token_exchanger=exchanger,
        )
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))

        with patch.object(GitHubOAuthHandler, "get_user_info", new=AsyncMock(return_value="octocat")):
            step = await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))
            assert step == WizardStep.OAUTH_IN_FLIGHT
            flow = wizard.flow
            step = await wizard.wait_for_oauth()

        assert step == WizardStep.COMPLETE, wizard.error
        args = exchanger.call_args.args
        assert args == (
            "https://github.com/login/oauth/access_token",
            "cid",
            "csecret",
            "the-code",
            flow.redirect_uri,
            flow.code_verifier,
        )
        result = wizard.result
        assert result.source.name == "GitHub (octocat)"
        assert result.source.auth_provider_id == wizard.auth_provider.id
        assert wizard.auth_provider.name == "GitHub OAuth App"
        assert result.credentials.oauth.access_token == "gho_token"
        assert result.credentials.account_identifier == "octocat"
        assert sources.sources[result.source.id].credentials_id == result.credentials.id

    @pytest.mark.asyncio
    async def test_state_mismatch_returns_to_credentials(self):
        exchanger = AsyncMock()
        wizard, _, _ = _make_wizard(
            browser_opener=_browser_hitting_callback(state="forged"),
            token_exchanger=exchanger,
        )
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))
        await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))

        step = await wizard.wait_for_oauth()

        assert step == WizardStep.ENTER_CREDENTIALS
        assert "state mismatch" in wizard.error
        exchanger.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_returns_to_credentials(self):
        wizard, _, _ = _make_wizard(
            settings=_settings(oauth_callback_timeout_seconds=0.2),
            browser_opener=lambda url: False,
        )
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))
        await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))

        step = await wizard.wait_for_oauth()

        assert step == WizardStep.ENTER_CREDENTIALS
        assert wizard.error == "timeout waiting for authorization callback"
        assert any("browser" in w for w in wizard.warnings)

    @pytest.mark.asyncio
    async def test_retry_reuses_registered_app(self):
        _FakeListener.instances.clear()
        wizard, _, _ = _make_wizard(
            listener_factory=_FakeListener,
            browser_opener=lambda url: True,
        )
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))
        await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))
        first_app = wizard.auth_provider

        assert await wizard.dispatch(Cancel()) == WizardStep.ENTER_CREDENTIALS
        assert _FakeListener.instances[-1].stopped
        assert await wizard.dispatch(
            CredentialsSubmitted(client_id="cid", client_secret="csecret")
        ) == WizardStep.OAUTH_IN_FLIGHT
        assert wizard.auth_provider is first_app
        await wizard.close()

    @pytest.mark.asyncio
    async def test_busy_fixed_port_falls_back_with_warning(self):
        busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        spare = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        spare.bind(("127.0.0.1", 0))
        spare_port = spare.getsockname()[1]
        spare.close()
        busy_port = busy.getsockname()[1]

        _FakeListener.instances.clear()
        wizard, _, _ = _make_wizard(
            settings=_settings(
                oauth_callback_port=busy_port,
                oauth_callback_port_range_start=spare_port,
                oauth_callback_port_range_end=spare_port,
            ),
            listener_factory=_FakeListener,
            browser_opener=lambda url: True,
        )
        try:
            await wizard.dispatch(ConnectorChosen(index=GITHUB))
            await wizard.dispatch(ConfigSubmitted(values={}))
            await wizard.dispatch(AuthMethodChosen(index=OAUTH))
            step = await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))
        finally:
            busy.close()
            await wizard.close()

        assert step == WizardStep.OAUTH_IN_FLIGHT
        assert _FakeListener.instances[-1].port == spare_port
        assert any(str(busy_port) in w and str(spare_port) in w for w in wizard.warnings)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_from_any_regular_step(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        assert await wizard.dispatch(Cancel()) == WizardStep.CANCELLED
        assert wizard.finished

    @pytest.mark.asyncio
    async def test_cancel_in_flight_stops_listener_and_frees_port(self):
        reserve = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        reserve.bind(("127.0.0.1", 0))
        port = reserve.getsockname()[1]
        reserve.close()

        listeners: List[CallbackListener] = []

        def _factory(*args, **kwargs):
            listeners.append(CallbackListener(*args, **kwargs))
            return listeners[-1]

        wizard, _, _ = _make_wizard(
            settings=_settings(oauth_callback_port=port),
            listener_factory=_factory,
            browser_opener=lambda url: True,
        )
        await wizard.dispatch(ConnectorChosen(index=GITHUB))
        await wizard.dispatch(ConfigSubmitted(values={}))
        await wizard.dispatch(AuthMethodChosen(index=OAUTH))
        await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))
        assert wizard.step == WizardStep.OAUTH_IN_FLIGHT
        assert listeners[0].running

        try:
            assert await wizard.dispatch(Cancel()) == WizardStep.ENTER_CREDENTIALS
            assert not listeners[0].running
            assert not wizard.awaiting_callback

            rebind = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            rebind.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            rebind.bind(("127.0.0.1", port))
            rebind.close()

            step = await wizard.dispatch(CredentialsSubmitted(client_id="cid", client_secret="csecret"))
            assert step == WizardStep.OAUTH_IN_FLIGHT
            assert wizard.flow.redirect_port == port
            assert not any("busy" in w for w in wizard.warnings)
        finally:
            await wizard.close()
        assert not listeners[-1].running

    @pytest.mark.asyncio
    async def test_back_in_flight_returns_to_existing_apps(self):
        _FakeListener.instances.clear()
        wizard, _, _ = _make_wizard(
            auth_providers=[_google_app(0)],
            listener_factory=_FakeListener,
            browser_opener=lambda url: True,
        )
        await wizard.dispatch(ConnectorChosen(index=GOOGLE_DRIVE))
        await wizard.dispatch(ConfigSubmitted(values={}))
        assert await wizard.dispatch(ExistingAuthChosen(index=0)) == WizardStep.OAUTH_IN_FLIGHT

        step = await wizard.dispatch(Back())

        assert step == WizardStep.SELECT_EXISTING_AUTH
        assert _FakeListener.instances[-1].stopped
        assert not wizard.awaiting_callback
        assert wizard.history[-2:] == [WizardStep.OAUTH_IN_FLIGHT, WizardStep.SELECT_EXISTING_AUTH]

    @pytest.mark.asyncio
    async def test_events_after_finish_are_ignored(self):
        wizard, _, _ = _make_wizard()
        await wizard.dispatch(Cancel())
        assert await wizard.dispatch(ConnectorChosen(index=GITHUB)) == WizardStep.CANCELLED

    @pytest.mark.asyncio
    async def test_invalid_connector_index(self):
        wizard, _, _ = _make_wizard()
        assert await wizard.dispatch(ConnectorChosen(index=42)) == WizardStep.SELECT_CONNECTOR
        assert wizard.error == "invalid connector selection"
