from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from repairdesk.config import Settings
from repairdesk.logging import get_logger
from repairdesk.service.backend import BackendClient, SettingPayload
from repairdesk.service.errors import BackendError, NoActiveTenant
from repairdesk.service.tenants import TenantCatalog
from repairdesk.storage.models import ConfigEntry, CoreEntry, SettingKind, TenantEntry
from repairdesk.storage.query_cache import QueryCache

logger = get_logger(__name__)

CORE_SUFFIX = "_CORE"
_TENANT_SUFFIX = re.compile(r"^(?P<code>.+)_(?P<tenant>\d+)$")

NO_TAX_CODE = "NO_TAX"
NO_TAX_NAME = "No Tax"


def split_identifier(identifier: str) -> Tuple[str, bool]:
    """Return ``(bare_code, qualified)`` for ``USD``, ``USD_CORE`` or ``USD_7``."""

    if identifier.endswith(CORE_SUFFIX) and len(identifier) > len(CORE_SUFFIX):
        return identifier[: -len(CORE_SUFFIX)], True
    match = _TENANT_SUFFIX.match(identifier)
    if match:
        return match.group("code"), True
    return identifier, False


def normalize_entry(kind: SettingKind, payload: SettingPayload) -> ConfigEntry:
    """Build a core or tenant entry from either naming form the backend uses.

    Older rows encode ownership in the identifier (``USD_CORE``, ``USD_7``),
    newer rows keep the bare code and set ``organizationId``. A ``USD_7`` row
    flagged ``isCore`` is tenant 7's seeded copy of the core ``USD`` entry.
    """

    identifier = payload.identifier
    values = payload.entry_values()
    if identifier.endswith(CORE_SUFFIX) and len(identifier) > len(CORE_SUFFIX):
        return CoreEntry(
            kind=kind,
            code=identifier[: -len(CORE_SUFFIX)],
            name=payload.name,
            is_default=payload.is_default,
            values=values,
        )
    match = _TENANT_SUFFIX.match(identifier)
    if match and payload.is_core is True:
        return CoreEntry(
            kind=kind,
            code=match.group("code"),
            name=payload.name,
            is_default=payload.is_default,
            values=values,
            seeded_for=int(match.group("tenant")),
        )
    if match:
        return TenantEntry(
            kind=kind,
            code=match.group("code"),
            tenant_id=int(match.group("tenant")),
            name=payload.name,
            is_default=payload.is_default,
            values=values,
        )
    if payload.organization_id is not None and payload.is_core is not True:
        return TenantEntry(
            kind=kind,
            code=identifier,
            tenant_id=payload.organization_id,
            name=payload.name,
            is_default=payload.is_default,
            values=values,
        )
    return CoreEntry(
        kind=kind,
        code=identifier,
        name=payload.name,
        is_default=payload.is_default,
        values=values,
    )


@dataclass
class SettingsCatalog:
    """Core and tenant entries of one kind, in backend order."""

    kind: SettingKind
    entries: List[ConfigEntry] = field(default_factory=list)
    source: str = "none"

    @classmethod
    def build(
        cls, kind: SettingKind, entries: Iterable[ConfigEntry], source: str
    ) -> "SettingsCatalog":
        kept: List[ConfigEntry] = []
        core_keys: set[Tuple[str, Optional[int]]] = set()
        for entry in entries:
            if isinstance(entry, CoreEntry):
                key = (entry.code, entry.seeded_for)
                if key in core_keys:
                    logger.warning("duplicate_core_setting_ignored", kind=kind.value, code=entry.code)
                    continue
                core_keys.add(key)
            kept.append(entry)
        return cls(kind=kind, entries=kept, source=source)

    @property
    def available(self) -> bool:
        return self.source != "none"

    def core(self, identifier: str) -> Optional[CoreEntry]:
        for entry in self.entries:
            if (
                isinstance(entry, CoreEntry)
                and entry.seeded_for is None
                and identifier in (entry.code, f"{entry.code}{CORE_SUFFIX}")
            ):
                return entry
        return None

    def seeded_core(self, tenant_id: Optional[int], identifier: str) -> Optional[CoreEntry]:
        """The core copy seeded for ``tenant_id``, by bare code or stored identifier."""
        if tenant_id is None:
            return None
        for entry in self.entries:
            if (
                isinstance(entry, CoreEntry)
                and entry.seeded_for == tenant_id
                and identifier in (entry.code, entry.stored_identifier)
            ):
                return entry
        return None

    def owned_by(self, tenant_id: Optional[int], identifier: str) -> Optional[TenantEntry]:
        if tenant_id is None:
            return None
        for entry in self.entries:
            if (
                isinstance(entry, TenantEntry)
                and entry.tenant_id == tenant_id
                and identifier in (entry.stored_identifier, entry.code)
            ):
                return entry
        return None

    def tenant_default(self, tenant_id: Optional[int]) -> Optional[TenantEntry]:
        if tenant_id is None:
            return None
        for entry in self.entries:
            if isinstance(entry, TenantEntry) and entry.tenant_id == tenant_id and entry.is_default:
                return entry
        return None

    def core_default(self, tenant_id: Optional[int] = None) -> Optional[CoreEntry]:
        for entry in self.entries:
            if isinstance(entry, CoreEntry) and entry.is_default and entry.visible_to(tenant_id):
                return entry
        return None

    def visible_to(self, tenant_id: Optional[int]) -> List[ConfigEntry]:
        return [entry for entry in self.entries if entry.visible_to(tenant_id)]


def system_fallback(kind: SettingKind, settings: Settings) -> CoreEntry:
    if kind == SettingKind.CURRENCY:
        return CoreEntry(
            kind=kind,
            code=settings.fallback_currency_code,
            name=settings.fallback_currency_code,
            is_default=True,
            values={"symbol": settings.fallback_currency_symbol},
        )
    return CoreEntry(
        kind=kind,
        code=NO_TAX_CODE,
        name=NO_TAX_NAME,
        is_default=True,
        values={"rate": 0.0},
    )


def _lookup(
    catalog: SettingsCatalog, tenant_id: Optional[int], identifier: str
) -> Optional[ConfigEntry]:
    entry: Optional[ConfigEntry] = catalog.owned_by(tenant_id, identifier)
    if entry is None:
        entry = catalog.core(identifier)
    if entry is None:
        entry = catalog.seeded_core(tenant_id, identifier)
    return entry


def resolve_entry(
    catalog: SettingsCatalog,
    tenant_id: Optional[int],
    requested: Optional[str],
    fallback: ConfigEntry,
) -> ConfigEntry:
    """Resolve ``requested`` for ``tenant_id``; never fails.

    For each candidate identifier the tenant's own entry wins, then the core
    entry, then the core copy seeded for the tenant under ``code_<tenant_id>``.
    A qualified identifier that matches nothing is retried with its bare code.
    Without a match the tenant default, then the core default, then
    ``fallback`` is returned. Entries of other tenants are never considered.
    """

    if requested:
        candidates = [requested]
        bare, qualified = split_identifier(requested)
        if qualified:
            candidates.append(bare)
        for identifier in candidates:
            entry = _lookup(catalog, tenant_id, identifier)
            if entry is not None:
                return entry
    return catalog.tenant_default(tenant_id) or catalog.core_default(tenant_id) or fallback


class ConfigurationResolver:
    """Loads settings catalogs into the query cache and resolves entries from them."""

    def __init__(
        self,
        backend: BackendClient,
        tenants: TenantCatalog,
        cache: QueryCache,
        settings: Settings,
    ) -> None:
        self.backend = backend
        self.tenants = tenants
        self.cache = cache
        self.settings = settings

    @staticmethod
    def cache_key(kind: SettingKind) -> str:
        return f"/api/settings/{kind.value}"

    async def load(self, kind: SettingKind) -> SettingsCatalog:
        """Return the catalog for ``kind``, fetching it when not cached.

        Falls back to the public listing, then to an empty catalog. Empty
        fallbacks are not cached so the next call tries again.
        """

        return await self.cache.fetch(
            self.cache_key(kind),
            lambda: self._fetch(kind),
            store_if=lambda catalog: catalog.available,
        )

    async def _fetch(self, kind: SettingKind) -> SettingsCatalog:
        try:
            payloads = await self.backend.list_settings(kind)
            source = "tenant"
        except (BackendError, NoActiveTenant) as exc:
            logger.warning(
                "settings_fetch_failed",
                kind=kind.value,
                error_code=exc.error_code,
            )
            try:
                payloads = await self.backend.list_public_settings(kind)
                source = "public"
            except BackendError as public_exc:
                logger.warning(
                    "public_settings_fetch_failed",
                    kind=kind.value,
                    status_code=public_exc.status_code,
                )
                return SettingsCatalog(kind=kind)
        catalog = SettingsCatalog.build(
            kind, (normalize_entry(kind, payload) for payload in payloads), source
        )
        logger.info(
            "settings_loaded", kind=kind.value, source=source, count=len(catalog.entries)
        )
        return catalog

    async def prefetch(self) -> None:
        for kind in SettingKind:
            await self.load(kind)

    def catalog(self, kind: SettingKind) -> SettingsCatalog:
        return self.cache.get(self.cache_key(kind)) or SettingsCatalog(kind=kind)

    def resolve(self, kind: SettingKind, requested: Optional[str] = None) -> ConfigEntry:
        """Resolve against whatever is cached for the active tenant; no I/O."""

        return resolve_entry(
            self.catalog(kind),
            self.tenants.active_id,
            requested,
            system_fallback(kind, self.settings),
        )

    async def resolve_fresh(
        self, kind: SettingKind, requested: Optional[str] = None
    ) -> ConfigEntry:
        await self.load(kind)
        return self.resolve(kind, requested)

    def format_amount(self, amount: Any, code: Optional[str] = None) -> str:
        """Format ``amount`` in the resolved currency, ``-`` when it is not a number."""

        if amount is None or isinstance(amount, bool):
            return "-"
        try:
            value = float(amount)
        except (TypeError, ValueError):
            return "-"
        if math.isnan(value) or math.isinf(value):
            return "-"
        currency = self.resolve(SettingKind.CURRENCY, code)
        symbol = currency.values.get("symbol") or f"{currency.code} "
        sign = "-" if value < 0 else ""
        return f"{sign}{symbol}{abs(value):,.2f}"
