"""Tests for token acquisition, renewal and the background renewal timer."""

import asyncio
from datetime import timedelta

import pytest

from repairdesk.service.errors import NoSession, TokenRenewalFailure
from repairdesk.service.tokens import TokenLifecycleManager
from repairdesk.storage.credentials import TOKEN_KEY
from tests.fakes import IntervalSleeper, sleep_forever


def make_manager(provider, credentials, settings, clock, sleep=sleep_forever):
    return TokenLifecycleManager(provider, credentials, settings, clock=clock, sleep=sleep)


def token_writes(credentials):
    return [value for key, value in credentials.writes if key == TOKEN_KEY]


class TestCurrentToken:
    def test_no_session_raises(self, provider, credentials, settings, clock):
        manager = make_manager(provider, credentials, settings, clock)

        with pytest.raises(NoSession):
            manager.get_current_token()

    async def test_acquire_persists_token_and_issue_time(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)

        token = await manager.acquire(identity)

        assert manager.get_current_token() == token
        assert manager.issued_at == clock.now
        assert await credentials.get_token() == token


class TestEnsureFresh:
    async def test_fresh_token_is_returned_without_renewal(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)
        token = await manager.acquire(identity)
        clock.advance(49 * 60)

        assert await manager.ensure_fresh() == token
        assert provider.token_calls == 1

    async def test_stale_token_is_renewed_and_persisted(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)
        first = await manager.acquire(identity)
        clock.advance(50 * 60)

        renewed = await manager.ensure_fresh()

        assert renewed != first
        assert await credentials.get_token() == renewed
        assert manager.token_age() == timedelta(0)

    async def test_single_failure_is_retried(self, provider, credentials, settings, clock):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)
        await manager.acquire(identity)
        clock.advance(51 * 60)
        provider.token_errors = ["auth/network-request-failed"]

        renewed = await manager.ensure_fresh()

        assert await credentials.get_token() == renewed

    async def test_second_failure_raises_renewal_failure(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)
        token = await manager.acquire(identity)
        clock.advance(51 * 60)
        provider.token_errors = ["auth/network-request-failed"] * 2

        with pytest.raises(TokenRenewalFailure) as excinfo:
            await manager.ensure_fresh()

        assert excinfo.value.detail == {"attempts": 2}
        assert await credentials.get_token() == token

    async def test_local_session_never_renews(self, provider, credentials, settings, clock):
        manager = make_manager(provider, credentials, settings, clock)
        await manager.begin_local("local-token-1")
        clock.advance(120 * 60)

        assert await manager.ensure_fresh() == "local-token-1"
        assert provider.token_calls == 0


class TestRenewalRace:
    async def test_renewal_finishing_after_end_is_discarded(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)
        await manager.acquire(identity)
        writes_before = len(token_writes(credentials))
        provider.token_gate = asyncio.Event()

        pending = asyncio.create_task(manager.refresh())
        await asyncio.sleep(0)
        await manager.end()
        await credentials.clear()
        provider.token_gate.set()

        with pytest.raises(NoSession):
            await pending
        assert await credentials.get_token() is None
        assert len(token_writes(credentials)) == writes_before


class TestRenewalTimer:
    async def test_three_intervals_renew_three_times(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        sleeper = IntervalSleeper(clock, limit=3)
        manager = make_manager(provider, credentials, settings, clock, sleep=sleeper)
        await manager.acquire(identity)

        manager.start_renewal_timer()
        await asyncio.wait_for(sleeper.exhausted.wait(), timeout=5)

        writes = token_writes(credentials)
        assert len(writes) == 4
        assert len(set(writes[1:])) == 3
        assert sleeper.calls == 4
        manager.stop_renewal_timer()

    async def test_stop_is_idempotent(self, provider, credentials, settings, clock):
        identity = provider.add_account("a@x.com", "pw")
        manager = make_manager(provider, credentials, settings, clock)
        await manager.acquire(identity)
        manager.start_renewal_timer()
        assert manager.renewal_timer_running

        manager.stop_renewal_timer()
        manager.stop_renewal_timer()
        await asyncio.sleep(0)

        assert not manager.renewal_timer_running

    async def test_timer_failure_escalates_to_handler(
        self, provider, credentials, settings, clock
    ):
        identity = provider.add_account("a@x.com", "pw")
        sleeper = IntervalSleeper(clock, limit=1)
        manager = make_manager(provider, credentials, settings, clock, sleep=sleeper)
        await manager.acquire(identity)
        provider.token_errors = ["auth/internal-error"] * 2
        failures = []
        done = asyncio.Event()

        async def on_failure(exc):
            failures.append(exc)
            await manager.end()
            done.set()

        manager.start_renewal_timer(on_failure)
        await asyncio.wait_for(done.wait(), timeout=5)

        assert len(failures) == 1
        assert failures[0].provider_code == "auth/internal-error"
        assert manager.token is None
