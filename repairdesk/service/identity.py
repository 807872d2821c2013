from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, Optional, Tuple

from repairdesk.config import Settings
from repairdesk.logging import get_logger, set_correlation_id
from repairdesk.service.backend import BackendClient, make_local_token
from repairdesk.service.errors import (
    AuthenticationError,
    BackendError,
    BackendUnauthorized,
    ErrorNotice,
    LocalSessionDisabled,
    NoSession,
    ProviderConfigError,
    SessionError,
    TenantFetchFailure,
    TokenRenewalFailure,
    UserSyncFailure,
    notice_for,
)
from repairdesk.service.provider import IdentityProvider, ProviderError, classify_provider_error
from repairdesk.service.settings_resolver import ConfigurationResolver
from repairdesk.service.tenants import TenantCatalog
from repairdesk.service.tokens import TokenLifecycleManager
from repairdesk.storage.credentials import CredentialStore
from repairdesk.storage.models import LocalIdentitySnapshot, ProviderIdentity, Session, UserRecord
from repairdesk.storage.query_cache import QueryCache

logger = get_logger(__name__)

LOCAL_USER_ID = "local-user"
LOCAL_USER_EMAIL = "local@example.com"
LOCAL_USER_NAME = "Local User"


class SessionState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    ACTIVE = "active"
    LOCAL_ACTIVE = "local_active"
    ENDED = "ended"


class LocalSessionStrategy:
    """Decides whether a provider failure may fall back to a local session."""

    name = "none"

    def permits(self) -> bool:
        return False

    def should_fallback(self, error: AuthenticationError) -> bool:
        return False


class NoLocalSession(LocalSessionStrategy):
    name = "disabled"


class EnvironmentGatedLocalSession(LocalSessionStrategy):
    """Local sessions for non-production deployments with a misconfigured provider.

    Only provider configuration errors qualify; bad passwords and cancelled
    popups are reported to the user as usual.
    """

    name = "environment_gated"

    def __init__(self, environment: str) -> None:
        self.environment = environment

    def permits(self) -> bool:
        return True

    def should_fallback(self, error: AuthenticationError) -> bool:
        return isinstance(error, ProviderConfigError)


def select_local_session_strategy(settings: Settings) -> LocalSessionStrategy:
    if settings.local_session_permitted:
        return EnvironmentGatedLocalSession(settings.environment.value)
    return NoLocalSession()


class IdentityResolver:
    """Turns provider identity events into an active, tenant-bound session.

    Resolution runs token acquisition, user sync and tenant resolution
    strictly in sequence. Every sign-out or new resolution bumps an epoch;
    a resolution that finds the epoch moved on drops its results.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        credentials: CredentialStore,
        tokens: TokenLifecycleManager,
        backend: BackendClient,
        tenants: TenantCatalog,
        cache: QueryCache,
        config: ConfigurationResolver,
        settings: Settings,
        *,
        local_strategy: Optional[LocalSessionStrategy] = None,
    ) -> None:
        self.provider = provider
        self.credentials = credentials
        self.tokens = tokens
        self.backend = backend
        self.tenants = tenants
        self.cache = cache
        self.config = config
        self.local_strategy = local_strategy or select_local_session_strategy(settings)
        self.state = SessionState.UNRESOLVED
        self.identity: Optional[ProviderIdentity] = None
        self.user: Optional[UserRecord] = None
        self.last_error: Optional[SessionError] = None
        self._epoch = 0
        self._resolution: Optional[Tuple[str, asyncio.Task]] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def session(self) -> Session:
        if self.state not in (SessionState.ACTIVE, SessionState.LOCAL_ACTIVE):
            return Session()
        return Session(
            identity=self.identity,
            token=self.tokens.token,
            token_issued_at=self.tokens.issued_at,
            is_local_session=self.state == SessionState.LOCAL_ACTIVE,
        )

    @property
    def notice(self) -> Optional[ErrorNotice]:
        return notice_for(self.last_error) if self.last_error is not None else None

    async def start(self) -> SessionState:
        """Restore a persisted local session or start listening to the provider."""

        if await self.credentials.is_local_session():
            snapshot = await self.credentials.get_local_identity()
            if not self.local_strategy.permits():
                logger.warning("local_session_flag_cleared", reason="not_permitted")
                await self.credentials.set_local_session(False)
            elif snapshot is None:
                logger.warning("local_session_flag_cleared", reason="missing_identity")
                await self.credentials.set_local_session(False)
            else:
                token = await self.credentials.get_token() or make_local_token()
                await self._activate_local(snapshot, token)
                return self.state
        if self._unsubscribe is None:
            self._unsubscribe = self.provider.subscribe(self._on_provider_event)
        return self.state

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.tokens.stop_renewal_timer()

    async def _on_provider_event(self, identity: Optional[ProviderIdentity]) -> None:
        if identity is None:
            if self.state in (SessionState.ENDED, SessionState.LOCAL_ACTIVE):
                return
            await self._end("provider_signed_out", provider_sign_out=False)
            return
        try:
            await self.resolve_identity(identity)
        except SessionError as exc:
            # Already recorded on the resolver; listeners have no caller to report to
            logger.info("provider_event_resolution_failed", error_code=exc.error_code)

    async def resolve_identity(self, identity: ProviderIdentity) -> UserRecord:
        """Resolve ``identity``, sharing an in-flight resolution for the same uid."""

        if (
            self.state == SessionState.ACTIVE
            and self.identity is not None
            and self.identity.uid == identity.uid
            and self.user is not None
        ):
            return self.user
        if self._resolution is not None:
            uid, task = self._resolution
            if uid == identity.uid and not task.done():
                return await asyncio.shield(task)
        self._epoch += 1
        task = asyncio.create_task(self._resolve(identity, self._epoch))
        self._resolution = (identity.uid, task)
        return await asyncio.shield(task)

    def _check_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            raise NoSession("The sign-in was superseded")

    def _is_current(self, epoch: int) -> Callable[[], bool]:
        return lambda: epoch == self._epoch

    async def _fail(self, epoch: int, error: SessionError) -> SessionError:
        self._check_epoch(epoch)
        self.last_error = error
        logger.warning("identity_resolution_failed", error_code=error.error_code)
        await self._end("resolution_failed", provider_sign_out=True)
        return error

    async def _acquire_token(self, identity: ProviderIdentity) -> None:
        try:
            await self.tokens.acquire(identity)
        except ProviderError as exc:
            logger.warning("token_acquire_retry", provider_code=exc.code)
            await self.tokens.acquire(identity)

    async def _sync_user(self, epoch: int) -> UserRecord:
        try:
            return await self.backend.whoami()
        except BackendUnauthorized:
            logger.info("whoami_unauthorized_refreshing_token")
        self._check_epoch(epoch)
        await self.tokens.refresh()
        self._check_epoch(epoch)
        return await self.backend.whoami()

    async def _resolve(self, identity: ProviderIdentity, epoch: int) -> UserRecord:
        set_correlation_id()
        self.state = SessionState.RESOLVING
        self.identity = identity
        self.user = None
        self.last_error = None
        logger.info("identity_resolving", uid=identity.uid)

        try:
            await self._acquire_token(identity)
        except ProviderError as exc:
            raise await self._fail(
                epoch,
                TokenRenewalFailure(provider_code=exc.code, detail={"stage": "acquire"}),
            ) from exc
        self._check_epoch(epoch)

        try:
            user = await self._sync_user(epoch)
        except ProviderError as exc:
            raise await self._fail(
                epoch,
                TokenRenewalFailure(provider_code=exc.code, detail={"stage": "whoami"}),
            ) from exc
        except BackendError as exc:
            raise await self._fail(
                epoch, UserSyncFailure(detail={"status_code": exc.status_code})
            ) from exc
        self._check_epoch(epoch)

        owner = ProviderIdentity(
            uid=identity.uid,
            email=user.email or identity.email,
            display_name=user.display_name or identity.display_name,
        )
        try:
            await self.tenants.resolve(owner, still_current=self._is_current(epoch))
        except TenantFetchFailure as exc:
            self._check_epoch(epoch)
            self.tenants.last_error = exc
            self.last_error = exc
            logger.warning("session_active_without_tenants", uid=identity.uid)
        self._check_epoch(epoch)

        await self.credentials.set_local_session(False)
        self._check_epoch(epoch)
        self.user = user
        self.state = SessionState.ACTIVE
        self.tokens.start_renewal_timer(self._on_renewal_failed)
        logger.info(
            "session_active", uid=identity.uid, tenant_id=self.tenants.active_id
        )
        try:
            await self.config.prefetch()
        except SessionError as exc:
            logger.warning("settings_prefetch_failed", error_code=exc.error_code)
        return user

    async def _handle_sign_in_error(
        self,
        exc: ProviderError,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserRecord:
        error = classify_provider_error(exc)
        logger.warning(
            "sign_in_failed", provider_code=exc.code, error_code=error.error_code
        )
        if self.local_strategy.should_fallback(error):
            logger.warning(
                "local_session_fallback",
                provider_code=exc.code,
                strategy=self.local_strategy.name,
            )
            return await self.sign_in_local(email=email, display_name=display_name)
        self.last_error = error
        raise error from exc

    async def sign_in(self, email: str, password: str) -> UserRecord:
        try:
            identity = await self.provider.sign_in_with_password(email, password)
        except ProviderError as exc:
            return await self._handle_sign_in_error(exc, email=email)
        return await self.resolve_identity(identity)

    async def sign_up(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> UserRecord:
        try:
            identity = await self.provider.sign_up(email, password, display_name)
        except ProviderError as exc:
            return await self._handle_sign_in_error(
                exc, email=email, display_name=display_name
            )
        return await self.resolve_identity(identity)

    async def sign_in_with_popup(self) -> UserRecord:
        try:
            identity = await self.provider.sign_in_with_popup()
        except ProviderError as exc:
            return await self._handle_sign_in_error(exc)
        return await self.resolve_identity(identity)

    async def sign_in_local(
        self, email: Optional[str] = None, display_name: Optional[str] = None
    ) -> UserRecord:
        """Start a local session without the provider.

        Raises:
            LocalSessionDisabled: the deployment does not permit local sessions
        """

        if not self.local_strategy.permits():
            error = LocalSessionDisabled()
            self.last_error = error
            raise error
        snapshot = LocalIdentitySnapshot(
            id=LOCAL_USER_ID,
            email=email or LOCAL_USER_EMAIL,
            display_name=display_name or LOCAL_USER_NAME,
        )
        return await self._activate_local(snapshot, make_local_token())

    async def _activate_local(
        self, snapshot: LocalIdentitySnapshot, token: str
    ) -> UserRecord:
        self._epoch += 1
        epoch = self._epoch
        await self.credentials.set_local_session(True)
        await self.credentials.set_local_identity(snapshot)
        await self.tokens.begin_local(token)
        self._check_epoch(epoch)
        self.identity = snapshot.as_identity()
        user = UserRecord(
            id=snapshot.id,
            email=snapshot.email,
            display_name=snapshot.display_name,
            meta={"local": True},
        )
        self.user = user
        self.state = SessionState.LOCAL_ACTIVE
        logger.warning("local_session_active", uid=snapshot.id)
        try:
            await self.tenants.resolve(self.identity, still_current=self._is_current(epoch))
        except TenantFetchFailure as exc:
            self._check_epoch(epoch)
            self.tenants.last_error = exc
            logger.info("local_session_tenants_unavailable", error_code=exc.error_code)
        return user

    async def sign_out(self) -> None:
        logger.info("sign_out_requested", state=self.state.value)
        await self._end(
            "signed_out", provider_sign_out=self.state != SessionState.LOCAL_ACTIVE
        )
        self.last_error = None

    async def _on_renewal_failed(self, exc: TokenRenewalFailure) -> None:
        self.last_error = exc
        await self._end("token_renewal_failed", provider_sign_out=True)

    async def _end(self, reason: str, *, provider_sign_out: bool) -> None:
        """Enter ENDED. Every path clears the same state in the same order."""

        self._epoch += 1
        self.state = SessionState.ENDED
        await self.tokens.end()
        if provider_sign_out:
            try:
                await self.provider.sign_out()
            except ProviderError as exc:
                logger.warning("provider_sign_out_failed", provider_code=exc.code)
        await self.credentials.clear()
        self.tenants.reset()
        self.cache.clear()
        self.identity = None
        self.user = None
        logger.info("session_ended", reason=reason)
