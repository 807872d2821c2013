from __future__ import annotations

import time
from typing import Any, List, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from repairdesk.api.schemas import (
    CreateTenantRequest,
    CurrencyPayload,
    FallbackTenantRequest,
    FallbackTenantResponse,
    SetActiveTenantRequest,
    TaxRatePayload,
    TenantPayload,
    UserPayload,
)
from repairdesk.config import Settings
from repairdesk.logging import get_logger, sanitize_error_message
from repairdesk.service.errors import BackendError, BackendUnauthorized, NoActiveTenant
from repairdesk.storage.credentials import CredentialStore
from repairdesk.storage.models import SettingKind, Tenant, UserRecord

logger = get_logger(__name__)

LOCAL_TOKEN_PREFIX = "local-token-"

SettingPayload = Union[CurrencyPayload, TaxRatePayload]
_P = TypeVar("_P", bound=BaseModel)

_SETTING_PAYLOADS: dict[SettingKind, Type[BaseModel]] = {
    SettingKind.CURRENCY: CurrencyPayload,
    SettingKind.TAX_RATE: TaxRatePayload,
}


def make_local_token() -> str:
    """Placeholder bearer token used while a local session is active."""

    return f"{LOCAL_TOKEN_PREFIX}{int(time.time() * 1000)}"


class BackendClient:
    """HTTP client for the repair-shop backend.

    Every request carries the tenant header whenever an active tenant
    pointer is persisted, and authenticated requests carry the bearer token.
    Tenant-scoped requests fail with ``NoActiveTenant`` when no pointer is set.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_seconds,
            headers={"X-Client": settings.client_name},
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _headers(self, *, authenticated: bool, tenant_scoped: bool) -> dict[str, str]:
        headers: dict[str, str] = {}
        if authenticated:
            token = await self.credentials.get_token()
            if not token and await self.credentials.is_local_session():
                token = make_local_token()
                await self.credentials.set_token(token)
                logger.debug("local_token_synthesized")
            if token:
                headers["Authorization"] = f"Bearer {token}"
        tenant_id = await self.credentials.get_tenant_id()
        if tenant_id is not None:
            headers[self.settings.tenant_header] = str(tenant_id)
        elif tenant_scoped:
            raise NoActiveTenant()
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        tenant_scoped: bool = False,
        authenticated: bool = True,
    ) -> Any:
        """Make an HTTP request and map failures onto backend errors.

        Raises:
            NoActiveTenant: tenant-scoped call without an active tenant
            BackendUnauthorized: the server answered 401
            BackendError: any other non-2xx status or a transport failure
        """

        headers = await self._headers(
            authenticated=authenticated, tenant_scoped=tenant_scoped
        )
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("backend_timeout", method=method, path=path)
            raise BackendError("The server did not respond in time") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "backend_transport_error", method=method, path=path, error=str(exc)
            )
            raise BackendError("Could not reach the server") from exc

        if response.status_code == 401:
            logger.info("backend_unauthorized", method=method, path=path)
            raise BackendUnauthorized(status_code=401)
        if response.status_code >= 400:
            detail = sanitize_error_message(response.text or response.reason_phrase)
            logger.warning(
                "backend_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise BackendError(
                status_code=response.status_code, detail={"response": detail}
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                "The server sent an unreadable response",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _parse(model: Type[_P], data: Any, path: str) -> _P:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning("backend_payload_invalid", path=path, errors=exc.error_count())
            raise BackendError("The server sent an unexpected response") from exc

    @staticmethod
    def _parse_list(model: Type[_P], data: Any, path: str) -> List[_P]:
        try:
            return TypeAdapter(List[model]).validate_python(data or [])
        except ValidationError as exc:
            logger.warning("backend_payload_invalid", path=path, errors=exc.error_count())
            raise BackendError("The server sent an unexpected response") from exc

    async def whoami(self) -> UserRecord:
        """Confirm, or create on first call, the backend user for the token."""

        data = await self._request("GET", "/api/me")
        return self._parse(UserPayload, data, "/api/me").to_model()

    async def list_tenants(self) -> List[Tenant]:
        data = await self._request("GET", "/api/organizations")
        return [
            payload.to_model()
            for payload in self._parse_list(TenantPayload, data, "/api/organizations")
        ]

    async def create_tenant(self, name: str) -> Tenant:
        body = CreateTenantRequest(name=name).model_dump(by_alias=True)
        data = await self._request("POST", "/api/organizations", json=body)
        return self._parse(TenantPayload, data, "/api/organizations").to_model()

    async def create_tenant_fallback(self, name: str, email: str = "") -> Optional[int]:
        """Create a tenant through the organization-settings endpoint.

        Returns the new tenant id when the server reports one.
        """

        body = FallbackTenantRequest(name=name, email=email).model_dump(by_alias=True)
        data = await self._request("POST", "/api/settings/organization", json=body)
        if not isinstance(data, dict):
            return None
        return self._parse(
            FallbackTenantResponse, data, "/api/settings/organization"
        ).organization_id

    async def set_active_tenant(self, tenant_id: int) -> None:
        body = SetActiveTenantRequest(organization_id=tenant_id).model_dump(by_alias=True)
        await self._request("POST", "/api/set-organization", json=body)

    async def list_settings(self, kind: SettingKind) -> List[SettingPayload]:
        """Settings entries visible to the active tenant (core and its own)."""

        path = f"/api/settings/{kind.value}"
        data = await self._request("GET", path, tenant_scoped=True)
        return self._parse_list(_SETTING_PAYLOADS[kind], data, path)

    async def list_public_settings(self, kind: SettingKind) -> List[SettingPayload]:
        """Unauthenticated listing of system-wide entries."""

        path = f"/api/public-settings/{kind.value}"
        data = await self._request("GET", path, authenticated=False)
        return self._parse_list(_SETTING_PAYLOADS[kind], data, path)
