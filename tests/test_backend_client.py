"""Tests for the backend HTTP client: headers, error mapping and payload parsing."""

import json

import httpx
import pytest
import respx

from repairdesk.service.backend import LOCAL_TOKEN_PREFIX, BackendClient
from repairdesk.service.errors import BackendError, BackendUnauthorized, NoActiveTenant
from repairdesk.storage.credentials import MemoryCredentialStore
from repairdesk.storage.models import SettingKind
from tests.fakes import BASE_URL


@pytest.fixture
def store():
    return MemoryCredentialStore({"auth_token": "token-abc", "current_tenant_id": "7"})


@pytest.fixture
def client(settings, store):
    return BackendClient(settings, store)


class TestHeaders:
    async def test_authorized_request_headers(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            route = router.get("/api/me").mock(
                return_value=httpx.Response(200, json={"id": 5, "email": "a@x.com"})
            )

            user = await client.whoami()

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert request.headers["X-Client"] == "RepairDeskClient"
        assert user.id == "5"

    async def test_every_call_carries_persisted_tenant(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            routes = [
                router.get("/api/me").mock(return_value=httpx.Response(200, json={"id": 5})),
                router.get("/api/organizations").mock(return_value=httpx.Response(200, json=[])),
                router.post("/api/set-organization").mock(
                    return_value=httpx.Response(200, json={"success": True})
                ),
            ]

            await client.whoami()
            await client.list_tenants()
            await client.set_active_tenant(7)

        for route in routes:
            assert route.calls.last.request.headers["X-Organization-ID"] == "7"

    async def test_unscoped_call_without_pointer_omits_tenant_header(self, settings):
        client = BackendClient(settings, MemoryCredentialStore({"auth_token": "token-abc"}))

        with respx.mock(base_url=BASE_URL) as router:
            route = router.get("/api/organizations").mock(
                return_value=httpx.Response(200, json=[])
            )
            await client.list_tenants()

        assert "X-Organization-ID" not in route.calls.last.request.headers

    async def test_tenant_scoped_request_carries_tenant_header(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            route = router.get("/api/settings/currencies").mock(
                return_value=httpx.Response(200, json=[{"code": "USD", "symbol": "$"}])
            )

            rows = await client.list_settings(SettingKind.CURRENCY)

        assert route.calls.last.request.headers["X-Organization-ID"] == "7"
        assert rows[0].identifier == "USD"

    async def test_tenant_scoped_request_without_pointer_fails_fast(self, settings):
        client = BackendClient(settings, MemoryCredentialStore({"auth_token": "token-abc"}))

        with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            route = router.get("/api/settings/currencies")
            with pytest.raises(NoActiveTenant):
                await client.list_settings(SettingKind.CURRENCY)

        assert not route.called

    async def test_local_session_synthesizes_token(self, settings):
        store = MemoryCredentialStore({"local_session": "true"})
        client = BackendClient(settings, store)

        with respx.mock(base_url=BASE_URL) as router:
            route = router.get("/api/organizations").mock(
                return_value=httpx.Response(200, json=[])
            )
            await client.list_tenants()

        header = route.calls.last.request.headers["Authorization"]
        assert header.startswith(f"Bearer {LOCAL_TOKEN_PREFIX}")
        assert await store.get_token() == header[len("Bearer "):]

    async def test_public_settings_are_unauthenticated(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            route = router.get("/api/public-settings/tax-rates").mock(
                return_value=httpx.Response(200, json=[{"id": 1, "name": "VAT", "rate": 20}])
            )

            rows = await client.list_public_settings(SettingKind.TAX_RATE)

        assert "Authorization" not in route.calls.last.request.headers
        assert rows[0].rate == 20.0


class TestErrorMapping:
    async def test_unauthorized(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            router.get("/api/me").mock(return_value=httpx.Response(401))

            with pytest.raises(BackendUnauthorized) as excinfo:
                await client.whoami()

        assert excinfo.value.status_code == 401

    async def test_server_error_detail_is_sanitized(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            router.get("/api/organizations").mock(
                return_value=httpx.Response(500, text="failed for Bearer token-abc")
            )

            with pytest.raises(BackendError) as excinfo:
                await client.list_tenants()

        assert excinfo.value.status_code == 500
        assert "token-abc" not in excinfo.value.detail["response"]

    async def test_transport_failure_has_no_status(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            router.get("/api/organizations").mock(side_effect=httpx.ConnectError("down"))

            with pytest.raises(BackendError) as excinfo:
                await client.list_tenants()

        assert excinfo.value.status_code is None
        assert excinfo.value.message == "Could not reach the server"

    async def test_timeout(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            router.get("/api/me").mock(side_effect=httpx.ReadTimeout("slow"))

            with pytest.raises(BackendError) as excinfo:
                await client.whoami()

        assert excinfo.value.message == "The server did not respond in time"

    async def test_invalid_payload(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            router.get("/api/organizations").mock(
                return_value=httpx.Response(200, json=[{"name": "missing id"}])
            )

            with pytest.raises(BackendError):
                await client.list_tenants()


class TestTenantCalls:
    async def test_create_tenant_posts_name(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            route = router.post("/api/organizations").mock(
                return_value=httpx.Response(
                    201, json={"id": 3, "name": "Shop", "ownerId": "uid-1", "settings": None}
                )
            )

            tenant = await client.create_tenant("Shop")

        assert json.loads(route.calls.last.request.content) == {"name": "Shop"}
        assert tenant.id == 3
        assert tenant.owner_identity == "uid-1"
        assert tenant.settings == {}

    async def test_fallback_create_returns_organization_id(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            route = router.post("/api/settings/organization").mock(
                return_value=httpx.Response(200, json={"organizationId": 11})
            )

            created = await client.create_tenant_fallback("Shop", email="a@x.com")

        body = json.loads(route.calls.last.request.content)
        assert body["type"] == "company"
        assert body["settings"] == {"onboardingCompleted": False}
        assert created == 11

    async def test_set_active_tenant_body(self, client):
        with respx.mock(base_url=BASE_URL) as router:
            route = router.post("/api/set-organization").mock(
                return_value=httpx.Response(204)
            )

            await client.set_active_tenant(4)

        assert json.loads(route.calls.last.request.content) == {"organizationId": 4}
