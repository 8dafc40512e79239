"""
Tests for the SQL stores on a temporary SQLite database.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from config.settings import config
from connectors.encryption import decrypt_secret, encrypt_secret, is_encryption_enabled, reset_encryption
from database.models import AuthProviderModel, CredentialsModel
from database.session import build_engine, build_session_factory, init_db
from database.stores import AuthProviderStore, CredentialsStore, SourceStore
from utils.schemas import (
    AuthProvider,
    Credentials,
    OAuthCredentials,
    OAuthProviderConfig,
    PATCredentials,
    ProviderType,
    Source,
)


async def _factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    return engine, build_session_factory(engine)


def _source(source_id="src-1", **kwargs) -> Source:
    return Source(id=source_id, type="github", name="octo/hello", config={"content_types": "files"}, **kwargs)


class TestSourceStore:
    @pytest.mark.asyncio
    async def test_add_get_update_remove(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        store = SourceStore(factory)

        await store.add(_source())
        loaded = await store.get("src-1")
        assert loaded.name == "octo/hello"
        assert loaded.config == {"content_types": "files"}
        assert loaded.credentials_id == ""

        await store.update(loaded.model_copy(update={"credentials_id": "cred-1"}))
        assert (await store.get("src-1")).credentials_id == "cred-1"
        assert [s.id for s in await store.list()] == ["src-1"]

        assert await store.remove("src-1") is True
        assert await store.remove("src-1") is False
        with pytest.raises(KeyError):
            await store.get("src-1")
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_update_missing(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        with pytest.raises(KeyError):
            await SourceStore(factory).update(_source("nope"))
        await engine.dispose()


class TestCredentialsStore:
    @pytest.mark.asyncio
    async def test_pat_round_trip(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        await SourceStore(factory).add(_source())
        store = CredentialsStore(factory)

        await store.save(Credentials(id="cred-1", source_id="src-1", pat=PATCredentials(token="abc123")))
        loaded = await store.get_by_source_id("src-1")
        assert loaded.pat.token == "abc123"
        assert loaded.oauth is None
        assert loaded.access_token == "abc123"
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_oauth_expiry_is_timezone_aware(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        await SourceStore(factory).add(_source())
        store = CredentialsStore(factory)
        expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)

        await store.save(
            Credentials(
                id="cred-1",
                source_id="src-1",
                account_identifier="octocat",
                oauth=OAuthCredentials(access_token="at", refresh_token="rt", token_type="bearer", expiry=expiry),
            )
        )
        loaded = await store.get("cred-1")
        assert loaded.account_identifier == "octocat"
        assert loaded.oauth.expiry == expiry
        assert loaded.needs_refresh(expiry + timedelta(seconds=1))
        assert not loaded.needs_refresh(expiry - timedelta(seconds=1))
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        await SourceStore(factory).add(_source())
        store = CredentialsStore(factory)
        assert await store.get_by_source_id("src-1") is None
        with pytest.raises(KeyError):
            await store.get("cred-1")

        await store.save(Credentials(id="cred-1", source_id="src-1", pat=PATCredentials(token="t")))
        assert await store.delete("cred-1") is True
        assert await store.get_by_source_id("src-1") is None
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_removing_source_removes_credentials(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        sources = SourceStore(factory)
        await sources.add(_source())
        store = CredentialsStore(factory)
        await store.save(Credentials(id="cred-1", source_id="src-1", pat=PATCredentials(token="t")))

        await sources.remove("src-1")
        assert await store.get_by_source_id("src-1") is None
        await engine.dispose()


class TestAuthProviderStore:
    @pytest.mark.asyncio
    async def test_save_and_list_by_provider(self, tmp_path):
        engine, factory = await _factory(tmp_path)
        store = AuthProviderStore(factory)
        for i, provider_type in enumerate([ProviderType.GOOGLE, ProviderType.GOOGLE, ProviderType.GITHUB]):
            await store.save(
                AuthProvider(
                    id=f"ap-{i}",
                    name=f"App {i}",
                    provider_type=provider_type,
                    oauth=OAuthProviderConfig(client_id=f"cid-{i}", client_secret="secret", scopes=["a", "b"]),
                )
            )

        google = await store.list_by_provider(ProviderType.GOOGLE)
        assert {p.id for p in google} == {"ap-0", "ap-1"}
        assert len(await store.list()) == 3

        loaded = await store.get("ap-2")
        assert loaded.oauth.client_secret == "secret"
        assert loaded.oauth.scopes == ["a", "b"]
        assert loaded.is_oauth

        assert await store.delete("ap-2") is True
        with pytest.raises(KeyError):
            await store.get("ap-2")
        await engine.dispose()


class TestEncryptionAtRest:
    def setup_method(self):
        reset_encryption()

    def teardown_method(self):
        reset_encryption()

    def test_plaintext_when_no_key(self, monkeypatch):
        monkeypatch.setattr(config, "token_encryption_key", "")
        assert not is_encryption_enabled()
        assert encrypt_secret("tok") == "tok"
        assert decrypt_secret("tok") == "tok"

    def test_legacy_plaintext_decrypts_to_itself(self, monkeypatch):
        monkeypatch.setattr(config, "token_encryption_key", Fernet.generate_key().decode())
        assert is_encryption_enabled()
        assert decrypt_secret("not-a-fernet-token") == "not-a-fernet-token"
        assert encrypt_secret("") == ""

    @pytest.mark.asyncio
    async def test_secrets_are_encrypted_in_columns(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "token_encryption_key", Fernet.generate_key().decode())
        engine, factory = await _factory(tmp_path)
        await SourceStore(factory).add(_source())
        await CredentialsStore(factory).save(
            Credentials(id="cred-1", source_id="src-1", oauth=OAuthCredentials(access_token="at-plain"))
        )
        await AuthProviderStore(factory).save(
            AuthProvider(
                id="ap-1",
                name="App",
                provider_type=ProviderType.GITHUB,
                oauth=OAuthProviderConfig(client_id="cid", client_secret="secret-plain"),
            )
        )

        async with factory() as session:
            cred_row = (await session.execute(select(CredentialsModel))).scalar_one()
            app_row = (await session.execute(select(AuthProviderModel))).scalar_one()
        assert cred_row.access_token != "at-plain"
        assert app_row.client_secret != "secret-plain"

        assert (await CredentialsStore(factory).get("cred-1")).oauth.access_token == "at-plain"
        assert (await AuthProviderStore(factory).get("ap-1")).oauth.client_secret == "secret-plain"
        await engine.dispose()
