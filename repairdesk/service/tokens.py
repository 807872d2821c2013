from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from repairdesk.config import Settings
from repairdesk.logging import get_logger, set_correlation_id
from repairdesk.service.errors import NoSession, TokenRenewalFailure
from repairdesk.service.provider import IdentityProvider, ProviderError
from repairdesk.storage.credentials import CredentialStore
from repairdesk.storage.models import ProviderIdentity

logger = get_logger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]
RenewalFailureHandler = Callable[[TokenRenewalFailure], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Owns acquisition, periodic renewal and invalidation of the access token.

    Each session start or stop bumps ``generation``; a renewal that was in
    flight across such a change is discarded instead of being persisted.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        credentials: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.provider = provider
        self.credentials = credentials
        self.renewal_threshold = timedelta(minutes=settings.token_renewal_minutes)
        self.renewal_interval = settings.renewal_interval_seconds
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep
        self.identity: Optional[ProviderIdentity] = None
        self.token: Optional[str] = None
        self.issued_at: Optional[datetime] = None
        self.is_local = False
        self.generation = 0
        self._renewal_task: Optional[asyncio.Task] = None
        self._on_failure: Optional[RenewalFailureHandler] = None

    def get_current_token(self) -> str:
        if not self.token:
            raise NoSession()
        return self.token

    def token_age(self) -> Optional[timedelta]:
        if self.issued_at is None:
            return None
        return self._clock() - self.issued_at

    async def acquire(self, identity: ProviderIdentity) -> str:
        """Start a session for ``identity`` with a freshly issued token.

        Provider errors propagate; the caller owns the retry policy.
        """

        self.generation += 1
        generation = self.generation
        self.identity = identity
        self.is_local = False
        token = await self.provider.get_id_token(identity, force_refresh=True)
        if generation != self.generation:
            logger.info("token_acquire_discarded", uid=identity.uid)
            raise NoSession("The session ended while signing in")
        await self._store(token)
        logger.info("token_acquired", uid=identity.uid)
        return token

    async def begin_local(self, token: str) -> None:
        self.generation += 1
        self.identity = None
        self.is_local = True
        await self._store(token)

    async def refresh(self) -> str:
        """Force one renewal with the provider and persist the new token."""

        if self.is_local:
            return self.get_current_token()
        if self.identity is None:
            raise NoSession()
        generation = self.generation
        identity = self.identity
        token = await self.provider.get_id_token(identity, force_refresh=True)
        if generation != self.generation:
            # Sign-out (or a new session) won the race
            logger.info("token_renewal_discarded", uid=identity.uid)
            raise NoSession("The session ended during token renewal")
        await self._store(token)
        logger.info("token_renewed", uid=identity.uid)
        return token

    async def ensure_fresh(self) -> str:
        """Return a token no older than the renewal threshold.

        Raises:
            NoSession: no active session
            TokenRenewalFailure: renewal failed twice in a row
        """

        token = self.get_current_token()
        if self.is_local:
            return token
        age = self.token_age()
        if age is not None and age < self.renewal_threshold:
            return token
        last_error: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                return await self.refresh()
            except ProviderError as exc:
                last_error = exc
                logger.warning(
                    "token_renewal_attempt_failed",
                    attempt=attempt,
                    provider_code=exc.code,
                )
        raise TokenRenewalFailure(
            provider_code=getattr(last_error, "code", None),
            detail={"attempts": 2},
        )

    def start_renewal_timer(self, on_failure: Optional[RenewalFailureHandler] = None) -> None:
        """Run ``ensure_fresh`` every renewal interval until the timer is stopped."""

        self.stop_renewal_timer()
        self._on_failure = on_failure
        self._renewal_task = asyncio.create_task(self._renewal_loop(self.generation))

    def stop_renewal_timer(self) -> None:
        task, self._renewal_task = self._renewal_task, None
        if task is None or task.done():
            return
        # The loop may be the caller (sign-out after a failed renewal);
        # it exits on the generation check instead of being cancelled.
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug("token_renewal_timer_stopped")

    @property
    def renewal_timer_running(self) -> bool:
        return self._renewal_task is not None and not self._renewal_task.done()

    async def _renewal_loop(self, generation: int) -> None:
        while generation == self.generation:
            await self._sleep(self.renewal_interval)
            if generation != self.generation:
                return
            set_correlation_id()
            try:
                await self.ensure_fresh()
            except NoSession:
                return
            except TokenRenewalFailure as exc:
                logger.error("token_renewal_failed", provider_code=exc.provider_code)
                if self._on_failure is not None and generation == self.generation:
                    await self._on_failure(exc)
                return

    async def end(self) -> None:
        """Invalidate the in-memory token; the credential store is cleared by the caller."""

        self.stop_renewal_timer()
        self.generation += 1
        self.identity = None
        self.token = None
        self.issued_at = None
        self.is_local = False

    async def _store(self, token: str) -> None:
        self.token = token
        self.issued_at = self._clock()
        await self.credentials.set_token(token)
