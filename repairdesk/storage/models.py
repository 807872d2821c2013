from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Union

TENANT_ROLES = ("owner", "admin", "member")


@dataclass(frozen=True)
class ProviderIdentity:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class UserRecord:
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    meta: Dict | None = None


@dataclass
class Session:
    identity: Optional[ProviderIdentity] = None
    token: Optional[str] = None
    token_issued_at: Optional[datetime] = None
    is_local_session: bool = False

    def is_consistent(self) -> bool:
        """A token exists exactly when there is an identity or a local session."""

        has_token = bool(self.token)
        return has_token == (self.identity is not None or self.is_local_session)


@dataclass
class Tenant:
    id: int
    name: str
    owner_identity: Optional[str] = None
    settings: Dict = field(default_factory=dict)
    role: str = "member"


@dataclass(frozen=True)
class LocalIdentitySnapshot:
    id: str
    email: str
    display_name: str

    def to_json(self) -> str:
        return json.dumps(
            {"id": self.id, "email": self.email, "displayName": self.display_name}
        )

    @classmethod
    def from_json(cls, raw: str) -> "LocalIdentitySnapshot":
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            email=str(data.get("email") or ""),
            display_name=str(data.get("displayName") or ""),
        )

    def as_identity(self) -> ProviderIdentity:
        return ProviderIdentity(
            uid=self.id, email=self.email or None, display_name=self.display_name or None
        )


class SettingKind(str, Enum):
    CURRENCY = "currencies"
    TAX_RATE = "tax-rates"


@dataclass(frozen=True)
class CoreEntry:
    """A system-wide settings entry available to every tenant.

    Some backends seed each tenant with its own copy of the core entries,
    stored as ``code_<tenant_id>`` but still flagged core; ``seeded_for``
    names that tenant.
    """

    kind: SettingKind
    code: str
    name: str = ""
    is_default: bool = False
    values: Dict = field(default_factory=dict, compare=False, hash=False)
    seeded_for: Optional[int] = None

    @property
    def tenant_id(self) -> None:
        return None

    @property
    def is_core(self) -> bool:
        return True

    @property
    def stored_identifier(self) -> str:
        if self.seeded_for is not None:
            return f"{self.code}_{self.seeded_for}"
        return self.code

    def visible_to(self, tenant_id: Optional[int]) -> bool:
        return self.seeded_for is None or self.seeded_for == tenant_id


@dataclass(frozen=True)
class TenantEntry:
    """A tenant's own copy of an entry, stored as ``code_<tenant_id>``."""

    kind: SettingKind
    code: str
    tenant_id: int
    name: str = ""
    is_default: bool = False
    values: Dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_core(self) -> bool:
        return False

    @property
    def stored_identifier(self) -> str:
        return f"{self.code}_{self.tenant_id}"

    def visible_to(self, tenant_id: Optional[int]) -> bool:
        return self.tenant_id == tenant_id


ConfigEntry = Union[CoreEntry, TenantEntry]
