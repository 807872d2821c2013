from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from repairdesk.logging import bind_tenant, get_logger
from repairdesk.service.backend import BackendClient
from repairdesk.service.errors import (
    BackendError,
    NoSession,
    TenantFetchFailure,
    TenantProvisionFailure,
)
from repairdesk.storage.credentials import CredentialStore
from repairdesk.storage.models import ProviderIdentity, Tenant

logger = get_logger(__name__)

CurrentCheck = Callable[[], bool]


def _always() -> bool:
    return True


def _ensure_current(still_current: CurrentCheck) -> None:
    if not still_current():
        logger.info("tenant_resolution_abandoned")
        raise NoSession("The session ended while organizations were loading")


def default_tenant_name(identity: ProviderIdentity) -> str:
    owner = identity.display_name or identity.email or "My"
    return f"{owner}'s Repair Shop"


def select_active_tenant(
    tenants: Sequence[Tenant], persisted_id: Optional[int]
) -> Optional[Tenant]:
    """Pick the active tenant: the persisted one if still present, else the first."""

    if persisted_id is not None:
        for tenant in tenants:
            if tenant.id == persisted_id:
                return tenant
    return tenants[0] if tenants else None


class TenantCatalog:
    """Tenants the current identity may act within, plus the active pointer."""

    def __init__(self, backend: BackendClient, credentials: CredentialStore) -> None:
        self.backend = backend
        self.credentials = credentials
        self.tenants: List[Tenant] = []
        self.active_id: Optional[int] = None
        self.last_error: Optional[TenantFetchFailure] = None

    @property
    def active(self) -> Optional[Tenant]:
        return self.get(self.active_id) if self.active_id is not None else None

    def get(self, tenant_id: int) -> Optional[Tenant]:
        for tenant in self.tenants:
            if tenant.id == tenant_id:
                return tenant
        return None

    def contains(self, tenant_id: int) -> bool:
        return self.get(tenant_id) is not None

    def add(self, tenant: Tenant) -> None:
        self.tenants = [t for t in self.tenants if t.id != tenant.id] + [tenant]

    def reset(self) -> None:
        self.tenants = []
        self.active_id = None
        self.last_error = None
        bind_tenant(None)

    async def load(self) -> List[Tenant]:
        try:
            tenants = await self.backend.list_tenants()
        except BackendError as exc:
            logger.warning(
                "tenant_fetch_failed", status_code=exc.status_code, error=exc.message
            )
            raise TenantFetchFailure(detail={"status_code": exc.status_code}) from exc
        logger.info("tenants_loaded", count=len(tenants))
        return tenants

    async def provision_default(
        self, identity: ProviderIdentity, *, still_current: CurrentCheck = _always
    ) -> List[Tenant]:
        """Create the identity's first tenant.

        Tries the organizations endpoint, then the organization-settings
        endpoint, and returns whatever tenant list results (possibly empty).
        Backend failures are logged, never raised.

        Raises:
            NoSession: the session ended while provisioning was in flight
        """

        name = default_tenant_name(identity)
        try:
            tenant = await self.backend.create_tenant(name)
            tenant.role = "owner"
            logger.info("default_tenant_created", tenant_id=tenant.id)
            return [tenant]
        except BackendError as exc:
            logger.warning(
                "default_tenant_create_failed", status_code=exc.status_code, path="primary"
            )
        _ensure_current(still_current)

        try:
            created_id = await self.backend.create_tenant_fallback(
                name, email=identity.email or ""
            )
            logger.info("default_tenant_created_fallback", tenant_id=created_id)
            _ensure_current(still_current)
            if created_id is not None:
                await self.credentials.set_tenant_id(created_id)
            return await self.load()
        except (BackendError, TenantFetchFailure) as exc:
            failure = TenantProvisionFailure(detail={"cause": type(exc).__name__})
            logger.error("default_tenant_provision_failed", error_code=failure.error_code)
            return []

    async def resolve(
        self, identity: ProviderIdentity, *, still_current: CurrentCheck = _always
    ) -> Optional[Tenant]:
        """Load tenants, provision one if needed, select and announce the active tenant.

        ``still_current`` is checked after every backend round trip; once it
        returns False nothing more is written to the catalog, the credential
        store or the backend.

        Raises:
            TenantFetchFailure: the tenant list could not be loaded
            NoSession: the session ended while resolution was in flight
        """

        tenants = await self.load()
        _ensure_current(still_current)
        if not tenants:
            logger.info("no_tenants_for_identity", uid=identity.uid)
            tenants = await self.provision_default(identity, still_current=still_current)
            _ensure_current(still_current)
        persisted_id = await self.credentials.get_tenant_id()
        _ensure_current(still_current)
        self.tenants = list(tenants)
        self.last_error = None
        return await self._select(persisted_id, still_current=still_current)

    async def refresh(self) -> List[Tenant]:
        """Reload the list, keeping the active tenant when it still exists.

        On failure the stale list is kept and ``TenantFetchFailure`` raised.
        """

        try:
            tenants = await self.load()
        except TenantFetchFailure as exc:
            self.last_error = exc
            raise
        self.tenants = list(tenants)
        self.last_error = None
        await self._select(self.active_id)
        return self.tenants

    async def _select(
        self, preferred_id: Optional[int], *, still_current: CurrentCheck = _always
    ) -> Optional[Tenant]:
        selected = select_active_tenant(self.tenants, preferred_id)
        previous = self.active_id
        self.active_id = selected.id if selected else None
        bind_tenant(self.active_id)
        await self.credentials.set_tenant_id(self.active_id)
        _ensure_current(still_current)
        if selected is None:
            logger.warning("no_active_tenant_selected")
            return None
        if selected.id != previous:
            try:
                await self.backend.set_active_tenant(selected.id)
            except BackendError as exc:
                # Requests carry the tenant header; the server-side default is secondary
                logger.warning(
                    "set_active_tenant_failed",
                    tenant_id=selected.id,
                    status_code=exc.status_code,
                )
            _ensure_current(still_current)
        logger.info("active_tenant_selected", tenant_id=selected.id)
        return selected
