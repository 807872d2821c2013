from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from repairdesk.logging import get_logger
from repairdesk.storage.credentials import SESSION_KEYS, CredentialStore, CredentialStoreError

logger = get_logger(__name__)


class RedisCredentialStore(CredentialStore):
    """Credential store shared by every client process pointed at one Redis.

    Connection and command failures surface as ``CredentialStoreError`` so
    callers handle every backend the same way.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "default",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"repairdesk:credentials:{self.namespace}:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before trusting it with credentials."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @asynccontextmanager
    async def _command(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error(
                "credential_store_redis_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise CredentialStoreError(f"redis {operation} failed") from exc

    async def get(self, key: str) -> Optional[str]:
        async with self._command("get"):
            return await self.client.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        async with self._command("set"):
            await self.client.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        async with self._command("delete"):
            await self.client.delete(self._key(key))

    async def clear(self) -> None:
        # Single DEL so no reader observes a partially cleared session
        async with self._command("clear"):
            await self.client.delete(*(self._key(key) for key in SESSION_KEYS))

    async def close(self) -> None:
        await self.client.aclose()
