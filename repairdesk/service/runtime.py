from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx
from redis.exceptions import RedisError

from repairdesk.config import CredentialBackend, Environment, Settings, get_settings, reset_settings_cache
from repairdesk.logging import get_logger
from repairdesk.service.backend import BackendClient
from repairdesk.service.identity import IdentityResolver, select_local_session_strategy
from repairdesk.service.provider import IdentityProvider
from repairdesk.service.settings_resolver import ConfigurationResolver
from repairdesk.service.switch import TenantSwitchCoordinator
from repairdesk.service.tenants import TenantCatalog
from repairdesk.service.tokens import Clock, Sleep, TokenLifecycleManager
from repairdesk.storage.credentials import CredentialStore, FileCredentialStore, MemoryCredentialStore
from repairdesk.storage.query_cache import QueryCache
from repairdesk.storage.redis_cache import RedisCredentialStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_credential_store(settings: Settings) -> CredentialStore:
    """Create the credential store selected by ``credential_backend``.

    An unreachable Redis falls back to the file store outside production.
    """

    backend = settings.credential_backend
    if backend == CredentialBackend.MEMORY:
        return MemoryCredentialStore()
    if backend == CredentialBackend.REDIS:
        store = RedisCredentialStore(
            settings.redis_url or "", namespace=settings.credential_namespace
        )
        try:
            store.verify_connection()
            return store
        except (RedisError, OSError) as exc:
            if settings.is_production:
                raise RuntimeError(
                    "Redis is required for the redis credential backend; "
                    "start Redis or choose CREDENTIAL_BACKEND=file."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
                mode=settings.environment.value,
            )
    return FileCredentialStore(settings.state_root, secret=settings.credential_secret)


class Runtime:
    """Holds the session services for one client process."""

    def __init__(
        self,
        provider: IdentityProvider,
        *,
        settings: Optional[Settings] = None,
        credentials: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            credential_backend=self.settings.credential_backend.value,
        )
        self.provider = provider
        self.credentials = credentials or build_credential_store(self.settings)
        self.cache = QueryCache()
        self.backend = BackendClient(self.settings, self.credentials, transport=transport)
        self.tokens = TokenLifecycleManager(
            provider, self.credentials, self.settings, clock=clock, sleep=sleep
        )
        self.tenants = TenantCatalog(self.backend, self.credentials)
        self.switcher = TenantSwitchCoordinator(
            self.tenants, self.backend, self.credentials, self.cache
        )
        self.config = ConfigurationResolver(
            self.backend, self.tenants, self.cache, self.settings
        )
        self.identity = IdentityResolver(
            provider,
            self.credentials,
            self.tokens,
            self.backend,
            self.tenants,
            self.cache,
            self.config,
            self.settings,
            local_strategy=select_local_session_strategy(self.settings),
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.credentials).__name__,
            local_strategy=self.identity.local_strategy.name,
        )

    async def aclose(self) -> None:
        self.identity.close()
        await self.backend.aclose()
        if isinstance(self.credentials, RedisCredentialStore):
            await self.credentials.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def configure_runtime(provider: IdentityProvider, **kwargs) -> Runtime:
    """Create the process-wide runtime around ``provider``."""

    global runtime
    with _runtime_lock:
        runtime = Runtime(provider, **kwargs)
        return runtime


def get_runtime() -> Runtime:
    if runtime is None:
        raise RuntimeError("runtime not configured; call configure_runtime() first")
    return runtime


def reset_runtime_for_tests(provider: IdentityProvider, **kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.identity.close()
        reset_settings_cache()
        settings = kwargs.pop("settings", None) or get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed with APP_ENV=test")
        runtime = Runtime(provider, settings=settings, **kwargs)
        return runtime
