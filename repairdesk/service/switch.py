from __future__ import annotations

import asyncio
from typing import List

from repairdesk.logging import bind_tenant, get_logger, set_correlation_id
from repairdesk.service.backend import BackendClient
from repairdesk.service.errors import BackendError, BackendRejected, SessionError, UnknownTenant
from repairdesk.service.tenants import TenantCatalog
from repairdesk.storage.credentials import CredentialStore, CredentialStoreError
from repairdesk.storage.models import Tenant
from repairdesk.storage.query_cache import QueryCache

logger = get_logger(__name__)

# Cached datasets scoped to the active tenant. The cache is keyed by resource
# path only, so each of these must be dropped when the tenant changes.
TENANT_SCOPED_CACHE_KEYS = (
    "/api/repairs",
    "/api/customers",
    "/api/devices",
    "/api/technicians",
    "/api/quotes",
    "/api/invoices",
    "/api/settings",
    "/api/settings/currencies",
    "/api/settings/currencies/default",
    "/api/settings/tax-rates",
    "/api/settings/tax-rates/default",
    "/api/public-settings/currencies",
    "/api/public-settings/currencies/default",
    "/api/public-settings/tax-rates",
    "/api/public-settings/tax-rates/default",
)


class TenantSwitchCoordinator:
    """Changes the active tenant and drops every tenant-scoped cache entry.

    Switches are serialized so two overlapping calls cannot interleave their
    pointer updates and cache invalidation.
    """

    def __init__(
        self,
        catalog: TenantCatalog,
        backend: BackendClient,
        credentials: CredentialStore,
        cache: QueryCache,
    ) -> None:
        self.catalog = catalog
        self.backend = backend
        self.credentials = credentials
        self.cache = cache
        self._lock = asyncio.Lock()

    async def switch_to(self, tenant_id: int) -> Tenant:
        """Make ``tenant_id`` the active tenant.

        Every effect runs even when an earlier one fails; the first failure
        is raised afterwards.

        Raises:
            UnknownTenant: ``tenant_id`` is not in the catalog (nothing changed)
            BackendRejected: the backend did not accept the new active tenant
        """

        set_correlation_id()
        async with self._lock:
            tenant = self.catalog.get(tenant_id)
            if tenant is None:
                logger.warning("tenant_switch_unknown", tenant_id=tenant_id)
                raise UnknownTenant(detail={"tenant_id": tenant_id})

            failures: List[SessionError] = []
            previous = self.catalog.active_id
            self.catalog.active_id = tenant.id
            bind_tenant(tenant.id)

            try:
                await self.credentials.set_tenant_id(tenant.id)
            except CredentialStoreError as exc:
                logger.error("tenant_pointer_persist_failed", tenant_id=tenant.id, error=str(exc))
                failures.append(SessionError("Failed to save the selected organization"))

            try:
                await self.backend.set_active_tenant(tenant.id)
            except BackendError as exc:
                logger.warning(
                    "tenant_switch_backend_rejected",
                    tenant_id=tenant.id,
                    status_code=exc.status_code,
                )
                failures.append(BackendRejected(detail={"status_code": exc.status_code}))

            dropped = self.cache.invalidate_many(TENANT_SCOPED_CACHE_KEYS)
            logger.info(
                "tenant_switched",
                previous_tenant_id=previous,
                tenant_id=tenant.id,
                invalidated=dropped,
                failures=len(failures),
            )
            if failures:
                raise failures[0]
            return tenant

    async def create_and_switch(self, name: str) -> Tenant:
        """Create a tenant owned by the current identity and make it active."""

        try:
            tenant = await self.backend.create_tenant(name)
        except BackendError as exc:
            logger.warning("tenant_create_failed", status_code=exc.status_code)
            raise
        tenant.role = "owner"
        self.catalog.add(tenant)
        return await self.switch_to(tenant.id)
