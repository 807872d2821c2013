from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from repairdesk.logging import get_logger
from repairdesk.storage.models import LocalIdentitySnapshot

logger = get_logger(__name__)

TOKEN_KEY = "auth_token"
TENANT_KEY = "current_tenant_id"
LOCAL_SESSION_KEY = "local_session"
LOCAL_IDENTITY_KEY = "local_identity"

# Everything sign-out must remove in a single operation
SESSION_KEYS = (TOKEN_KEY, TENANT_KEY, LOCAL_SESSION_KEY, LOCAL_IDENTITY_KEY)


class CredentialStoreError(RuntimeError):
    """A backend could not read or write the credential store."""


class CredentialStore(ABC):
    """Persistent key/value area for the token, tenant pointer and local session.

    Backends implement the four primitives; the typed helpers below are shared
    so every backend encodes values the same way.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove every session key at once."""

    async def get_token(self) -> Optional[str]:
        return await self.get(TOKEN_KEY)

    async def set_token(self, token: str) -> None:
        await self.set(TOKEN_KEY, token)

    async def get_tenant_id(self) -> Optional[int]:
        raw = await self.get(TENANT_KEY)
        if raw is None or raw == "":
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("credential_tenant_id_invalid", raw=raw)
            return None

    async def set_tenant_id(self, tenant_id: Optional[int]) -> None:
        if tenant_id is None:
            await self.delete(TENANT_KEY)
        else:
            await self.set(TENANT_KEY, str(int(tenant_id)))

    async def is_local_session(self) -> bool:
        return (await self.get(LOCAL_SESSION_KEY)) == "true"

    async def set_local_session(self, enabled: bool) -> None:
        if enabled:
            await self.set(LOCAL_SESSION_KEY, "true")
        else:
            await self.delete(LOCAL_SESSION_KEY)
            await self.delete(LOCAL_IDENTITY_KEY)

    async def get_local_identity(self) -> Optional[LocalIdentitySnapshot]:
        raw = await self.get(LOCAL_IDENTITY_KEY)
        if not raw:
            return None
        try:
            return LocalIdentitySnapshot.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("local_identity_parse_failed", error=str(exc))
            return None

    async def set_local_identity(self, snapshot: LocalIdentitySnapshot) -> None:
        await self.set(LOCAL_IDENTITY_KEY, snapshot.to_json())


class MemoryCredentialStore(CredentialStore):
    """In-process credential store for tests and short-lived tools."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)

    async def clear(self) -> None:
        for key in SESSION_KEYS:
            self.values.pop(key, None)


class FileCredentialStore(CredentialStore):
    """JSON-backed credential store that survives process restarts.

    The token is encrypted at rest with a Fernet key derived from
    ``secret`` or from a generated secret kept beside the state file.
    """

    _ENCRYPTED_KEYS = frozenset({TOKEN_KEY})

    def __init__(self, state_root: str, *, secret: str | None = None) -> None:
        self.state_root = Path(state_root).expanduser()
        self.state_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._cipher = self._build_cipher(secret)
        self.values: Dict[str, str] = self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.state_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credentials.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("CREDENTIAL_SECRET")
        if not material:
            secret_path = self.state_root / ".credential_secret"
            try:
                material = secret_path.read_text().strip()
            except FileNotFoundError:
                material = None
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(generated)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise CredentialStoreError("Unable to persist credential secret") from exc
                material = generated
        return Fernet(self._derive_cipher_key(material))

    def _load_state(self) -> Dict[str, str]:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return {}
        except ValueError as exc:
            logger.warning("credential_state_corrupt", error=str(exc))
            return {}
        values: Dict[str, str] = {}
        for key, raw in data.items():
            if key in self._ENCRYPTED_KEYS:
                try:
                    values[key] = self._cipher.decrypt(raw.encode()).decode()
                except InvalidToken:
                    # Secret rotated or file copied between machines
                    logger.warning("credential_decrypt_failed", key=key)
                    continue
            else:
                values[key] = raw
        return values

    def _persist_state(self) -> None:
        payload = {
            key: (
                self._cipher.encrypt(value.encode()).decode()
                if key in self._ENCRYPTED_KEYS
                else value
            )
            for key, value in self.values.items()
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=".credentials_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(payload, handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise CredentialStoreError(f"failed to persist credential state: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        with self._lock:
            self.values[key] = value
            self._persist_state()

    async def delete(self, key: str) -> None:
        with self._lock:
            if self.values.pop(key, None) is not None:
                self._persist_state()

    async def clear(self) -> None:
        with self._lock:
            for key in SESSION_KEYS:
                self.values.pop(key, None)
            self._persist_state()
