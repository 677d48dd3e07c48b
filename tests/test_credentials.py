"""Tests for the credential store and key store."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from mailmirror.security.backends.encrypted_file import EncryptedFileBackend
from mailmirror.security.credentials import (
    KEY_CLIENT_SECRET,
    KEY_TOKEN,
    AuthStatus,
    ClientSecret,
    CredentialStore,
    OAuthFlow,
    TokenSet,
)
from mailmirror.security.key_store import KeyStore
from mailmirror.utils.errors import (
    InvalidGrantError,
    KeyStoreError,
    MissingCredentialsError,
    ReauthRequiredError,
    TransientRemoteError,
    ValidationError,
)


def expired_tokens(refresh_token="refresh-1"):
    return TokenSet(
        access_token="stale",
        refresh_token=refresh_token,
        expiry=datetime.now(timezone.utc) - timedelta(minutes=5),
    )


class StaticFlow(OAuthFlow):
    """OAuth flow that grants a fixed token set without a browser."""

    def __init__(self):
        self.calls = []

    async def run(self, client, scopes):
        self.calls.append((client.client_id, tuple(scopes)))
        return TokenSet(
            access_token="granted",
            refresh_token="refresh-new",
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
            scopes=tuple(scopes),
        )


class TestAccessToken:
    """Token handout and refresh"""

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_refresh(self, credentials, server):
        assert await credentials.get_access_token() == "access-1"
        assert server.refresh_count == 0

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(self, key_store, server):
        near_expiry = TokenSet(
            access_token="almost",
            refresh_token="refresh-1",
            expiry=datetime.now(timezone.utc) + timedelta(seconds=30),
        )
        await key_store.store(KEY_TOKEN, near_expiry.to_json())
        credentials = CredentialStore(key_store, server, safety_margin=60)

        assert await credentials.get_access_token() == "access-2"
        assert server.refresh_count == 1

    @pytest.mark.asyncio
    async def test_refreshed_token_persisted_before_return(self, key_store, server):
        await key_store.store(KEY_TOKEN, expired_tokens().to_json())
        credentials = CredentialStore(key_store, server)

        token = await credentials.get_access_token()

        stored = TokenSet.from_json(await key_store.retrieve(KEY_TOKEN))
        assert stored.access_token == token
        # The server did not rotate the refresh token, so the old one is kept
        assert stored.refresh_token == "refresh-1"
        assert stored.expiry > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, key_store, server):
        await key_store.store(KEY_TOKEN, expired_tokens().to_json())
        server.refresh_delay = 0.05
        credentials = CredentialStore(key_store, server)

        tokens = await asyncio.gather(
            *(credentials.get_access_token() for _ in range(5))
        )

        assert set(tokens) == {"access-2"}
        assert server.refresh_count == 1

    @pytest.mark.asyncio
    async def test_invalid_grant_clears_and_requires_reauth(self, key_store, server, backend):
        await key_store.store(KEY_TOKEN, expired_tokens().to_json())
        server.fail("refresh_access_token", InvalidGrantError("invalid_grant"))
        credentials = CredentialStore(key_store, server)

        with pytest.raises(ReauthRequiredError):
            await credentials.get_access_token()

        assert backend.entries == {}
        assert await credentials.status() is AuthStatus.REAUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_keeps_credentials(self, key_store, server):
        await key_store.store(KEY_TOKEN, expired_tokens().to_json())
        server.fail("refresh_access_token", TransientRemoteError("timeout"))
        credentials = CredentialStore(key_store, server)

        with pytest.raises(TransientRemoteError):
            await credentials.get_access_token()

        assert await key_store.retrieve(KEY_TOKEN) is not None
        assert await credentials.get_access_token() == "access-3"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, key_store, server):
        await key_store.store(KEY_TOKEN, expired_tokens(refresh_token=None).to_json())
        credentials = CredentialStore(key_store, server)

        with pytest.raises(ReauthRequiredError):
            await credentials.get_access_token()
        assert server.refresh_count == 0

    @pytest.mark.asyncio
    async def test_no_tokens_requires_reauth(self, backend, server):
        credentials = CredentialStore(KeyStore(backend=backend), server)

        with pytest.raises(ReauthRequiredError):
            await credentials.get_access_token()

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, credentials, server):
        assert await credentials.get_access_token() == "access-1"

        await credentials.invalidate()

        assert await credentials.get_access_token() == "access-2"
        assert server.refresh_count == 1


class TestCredentialLifecycle:
    """Status, sign-in, import and reset"""

    @pytest.mark.asyncio
    async def test_status_authenticated(self, credentials):
        assert await credentials.status() is AuthStatus.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_status_without_client_secret(self, key_store, server):
        await key_store.delete(KEY_CLIENT_SECRET)
        credentials = CredentialStore(key_store, server)

        assert await credentials.status() is AuthStatus.REAUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, credentials, backend):
        await credentials.clear()

        assert backend.entries == {}
        assert await credentials.status() is AuthStatus.REAUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_clear_is_unconditional(self, backend, server):
        credentials = CredentialStore(KeyStore(backend=backend), server)

        await credentials.clear()
        await credentials.clear()

        assert backend.entries == {}

    @pytest.mark.asyncio
    async def test_authorize_persists_tokens(self, credentials, key_store):
        flow = StaticFlow()

        await credentials.authorize(flow)

        assert flow.calls == [("test-client.apps", ("https://mail.google.com/",))]
        stored = TokenSet.from_json(await key_store.retrieve(KEY_TOKEN))
        assert stored.access_token == "granted"
        assert await credentials.get_access_token() == "granted"

    @pytest.mark.asyncio
    async def test_authorize_needs_client_secret(self, backend, server):
        credentials = CredentialStore(KeyStore(backend=backend), server)

        with pytest.raises(MissingCredentialsError):
            await credentials.authorize(StaticFlow())

    @pytest.mark.asyncio
    async def test_import_client_secret(self, backend, server, tmp_path):
        path = tmp_path / "client_secret.json"
        path.write_text(
            json.dumps(
                {
                    "installed": {
                        "client_id": "imported.apps",
                        "client_secret": "xyz",
                        "redirect_uris": ["http://localhost"],
                    }
                }
            )
        )
        key_store = KeyStore(backend=backend)
        credentials = CredentialStore(key_store, server)

        client = await credentials.import_client_secret(path)

        assert client.client_id == "imported.apps"
        assert client.token_uri == ClientSecret.token_uri
        stored = json.loads(await key_store.retrieve(KEY_CLIENT_SECRET))
        assert stored["installed"]["client_secret"] == "xyz"

    @pytest.mark.asyncio
    async def test_import_missing_or_broken_file(self, credentials, tmp_path):
        with pytest.raises(MissingCredentialsError):
            await credentials.import_client_secret(tmp_path / "absent.json")

        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        with pytest.raises(ValidationError):
            await credentials.import_client_secret(broken)

        incomplete = tmp_path / "incomplete.json"
        incomplete.write_text(json.dumps({"installed": {"client_id": "x"}}))
        with pytest.raises(ValidationError):
            await credentials.import_client_secret(incomplete)


class TestTokenSet:
    def test_round_trip_keeps_timezone(self):
        tokens = TokenSet(
            access_token="a",
            refresh_token="r",
            expiry=datetime(2025, 1, 1, 12, tzinfo=timezone.utc),
            scopes=("s",),
        )
        assert TokenSet.from_json(tokens.to_json()) == tokens

    def test_naive_expiry_read_as_utc(self):
        raw = json.dumps({"access_token": "a", "expiry": "2025-01-01T12:00:00"})
        assert TokenSet.from_json(raw).expiry.tzinfo is timezone.utc

    def test_validity_respects_margin(self):
        now = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)
        tokens = TokenSet("a", expiry=now + timedelta(seconds=90))

        assert tokens.is_valid(now, timedelta(seconds=60))
        assert not tokens.is_valid(now, timedelta(seconds=120))
        assert not TokenSet("a").is_valid(now, timedelta(0))


class TestKeyStore:
    """Key store over the encrypted-file backend"""

    @pytest.mark.asyncio
    async def test_encrypted_file_round_trip(self, tmp_path):
        backend = EncryptedFileBackend(
            secrets_path=tmp_path / "credentials.enc",
            master_key_path=tmp_path / ".master.key",
        )
        key_store = KeyStore(backend=backend)

        await key_store.store("token", "secret-value")

        assert await key_store.retrieve("token") == "secret-value"
        assert b"secret-value" not in (tmp_path / "credentials.enc").read_bytes()

        await key_store.delete("token")
        await key_store.delete("token")
        assert await key_store.retrieve("token") is None

    @pytest.mark.asyncio
    async def test_backend_selection_falls_through(self, backend):
        class Unavailable(type(backend)):
            async def is_available(self):
                return False

        key_store = KeyStore(candidates=[Unavailable, type(backend)])
        await key_store.initialise()

        assert key_store.get_backend_info()["backend"] == "Memory"

    @pytest.mark.asyncio
    async def test_no_backend_available(self, backend):
        class Unavailable(type(backend)):
            async def is_available(self):
                return False

        key_store = KeyStore(candidates=[Unavailable])

        with pytest.raises(KeyStoreError):
            await key_store.store("token", "x")

    @pytest.mark.asyncio
    async def test_backend_failure_is_keystore_error(self, backend):
        class Broken(type(backend)):
            async def retrieve(self, service, key):
                raise OSError("dbus went away")

        key_store = KeyStore(backend=Broken())

        with pytest.raises(KeyStoreError):
            await key_store.retrieve("token")
