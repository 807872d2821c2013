"""Tests for the credential store backends.

Covers:
- typed helpers shared by every backend
- encrypted file persistence across restarts
- single-operation clear of all session keys
"""

import json
import os
import stat

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from repairdesk.storage.credentials import (
    LOCAL_IDENTITY_KEY,
    LOCAL_SESSION_KEY,
    SESSION_KEYS,
    TENANT_KEY,
    TOKEN_KEY,
    CredentialStoreError,
    FileCredentialStore,
    MemoryCredentialStore,
)
from repairdesk.storage.models import LocalIdentitySnapshot
from repairdesk.storage.redis_cache import RedisCredentialStore
from tests.fakes import FakeRedisClient


class TestTypedHelpers:
    async def test_tenant_id_round_trips_as_int(self):
        store = MemoryCredentialStore()

        await store.set_tenant_id(7)

        assert store.values[TENANT_KEY] == "7"
        assert await store.get_tenant_id() == 7

    async def test_invalid_tenant_id_reads_as_none(self):
        store = MemoryCredentialStore({TENANT_KEY: "not-a-number"})

        assert await store.get_tenant_id() is None

    async def test_setting_tenant_none_deletes_pointer(self):
        store = MemoryCredentialStore({TENANT_KEY: "3"})

        await store.set_tenant_id(None)

        assert TENANT_KEY not in store.values

    async def test_disabling_local_session_removes_snapshot(self):
        store = MemoryCredentialStore()
        await store.set_local_session(True)
        await store.set_local_identity(
            LocalIdentitySnapshot(id="local-user", email="a@x.com", display_name="A")
        )

        await store.set_local_session(False)

        assert LOCAL_SESSION_KEY not in store.values
        assert LOCAL_IDENTITY_KEY not in store.values

    async def test_corrupt_local_identity_reads_as_none(self):
        store = MemoryCredentialStore({LOCAL_IDENTITY_KEY: "{not json"})

        assert await store.get_local_identity() is None

    async def test_local_identity_uses_display_name_key(self):
        store = MemoryCredentialStore()
        snapshot = LocalIdentitySnapshot(id="local-user", email="a@x.com", display_name="Alex")

        await store.set_local_identity(snapshot)

        assert json.loads(store.values[LOCAL_IDENTITY_KEY])["displayName"] == "Alex"
        assert await store.get_local_identity() == snapshot


class TestMemoryStore:
    async def test_clear_removes_every_session_key(self):
        store = MemoryCredentialStore(
            {key: "x" for key in SESSION_KEYS} | {"unrelated": "keep"}
        )

        await store.clear()

        assert store.values == {"unrelated": "keep"}


class TestFileStore:
    async def test_values_survive_restart(self, tmp_path):
        store = FileCredentialStore(str(tmp_path), secret="s3cret")
        await store.set_token("token-abc")
        await store.set_tenant_id(4)

        reopened = FileCredentialStore(str(tmp_path), secret="s3cret")

        assert await reopened.get_token() == "token-abc"
        assert await reopened.get_tenant_id() == 4

    async def test_token_is_encrypted_at_rest(self, tmp_path):
        store = FileCredentialStore(str(tmp_path), secret="s3cret")
        await store.set_token("token-abc")

        raw = json.loads((tmp_path / "state" / "credentials.json").read_text())

        assert raw[TOKEN_KEY] != "token-abc"
        assert "token-abc" not in (tmp_path / "state" / "credentials.json").read_text()

    async def test_wrong_secret_drops_token(self, tmp_path):
        store = FileCredentialStore(str(tmp_path), secret="one")
        await store.set_token("token-abc")
        await store.set_tenant_id(2)

        reopened = FileCredentialStore(str(tmp_path), secret="two")

        assert await reopened.get_token() is None
        assert await reopened.get_tenant_id() == 2

    async def test_generated_secret_is_private(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CREDENTIAL_SECRET", raising=False)

        FileCredentialStore(str(tmp_path))

        secret_path = tmp_path / ".credential_secret"
        assert secret_path.exists()
        assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600

    async def test_clear_persists_empty_session(self, tmp_path):
        store = FileCredentialStore(str(tmp_path), secret="s3cret")
        await store.set_token("token-abc")
        await store.set_tenant_id(9)
        await store.set_local_session(True)

        await store.clear()
        reopened = FileCredentialStore(str(tmp_path), secret="s3cret")

        assert await reopened.get_token() is None
        assert await reopened.get_tenant_id() is None
        assert await reopened.is_local_session() is False

    async def test_corrupt_state_starts_empty(self, tmp_path):
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "credentials.json").write_text("{oops")

        store = FileCredentialStore(str(tmp_path), secret="s3cret")

        assert store.values == {}


class TestRedisStore:
    async def test_keys_are_namespaced(self):
        client = FakeRedisClient()
        store = RedisCredentialStore("redis://localhost:6379/0", namespace="shop", client=client)

        await store.set_token("token-abc")

        assert client.data == {"repairdesk:credentials:shop:auth_token": "token-abc"}

    async def test_clear_is_a_single_delete(self):
        client = FakeRedisClient()
        store = RedisCredentialStore("redis://localhost:6379/0", client=client)
        await store.set_token("token-abc")
        await store.set_tenant_id(1)
        client.commands.clear()

        await store.clear()

        assert len(client.commands) == 1
        command = client.commands[0]
        assert command[0] == "DEL"
        assert set(command[1:]) == {
            f"repairdesk:credentials:default:{key}" for key in SESSION_KEYS
        }
        assert client.data == {}

    async def test_connection_failure_surfaces_as_store_error(self):
        store = RedisCredentialStore(
            "redis://localhost:6379/0", client=FakeRedisClient(failing=("SET",))
        )

        with pytest.raises(CredentialStoreError) as excinfo:
            await store.set_tenant_id(2)

        assert isinstance(excinfo.value.__cause__, RedisConnectionError)
