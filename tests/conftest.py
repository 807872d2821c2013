import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="repairdesk_test_")
os.environ.setdefault("REPAIRDESK_STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("CREDENTIAL_BACKEND", "memory")
os.environ.setdefault("API_BASE_URL", "http://shop.test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from repairdesk.config import reset_settings_cache  # noqa: E402
from repairdesk.service.runtime import reset_runtime_for_tests  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeClock,
    FakeIdentityProvider,
    FakeShopBackend,
    RecordingCredentialStore,
    make_settings,
    sleep_forever,
)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def shop(provider):
    return FakeShopBackend(provider)


@pytest.fixture
def credentials():
    return RecordingCredentialStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(provider, shop, credentials, clock, settings):
    return reset_runtime_for_tests(
        provider,
        settings=settings,
        credentials=credentials,
        transport=shop.transport(),
        clock=clock,
        sleep=sleep_forever,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
