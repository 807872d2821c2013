from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from repairdesk.storage.models import TENANT_ROLES, Tenant, UserRecord

# Settings payloads nest at most a few levels; anything deeper is rejected
MAX_SETTINGS_DEPTH = 20


def _validate_json_depth(obj: Any, max_depth: int = MAX_SETTINGS_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UserPayload(_Payload):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    def to_model(self, meta: Optional[dict] = None) -> UserRecord:
        return UserRecord(
            id=self.id, email=self.email, display_name=self.display_name, meta=meta
        )


class TenantPayload(_Payload):
    id: int
    name: str
    owner_id: Optional[str] = Field(None, alias="ownerId")
    settings: Dict[str, Any] = Field(default_factory=dict)
    role: str = "member"

    @field_validator("settings", mode="before")
    @classmethod
    def _default_settings(cls, value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("settings must be an object")
        _validate_json_depth(value)
        return value

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> str:
        role = str(value or "member").lower()
        return role if role in TENANT_ROLES else "member"

    def to_model(self) -> Tenant:
        return Tenant(
            id=self.id,
            name=self.name,
            owner_identity=self.owner_id,
            settings=dict(self.settings),
            role=self.role,
        )


class FallbackTenantResponse(_Payload):
    organization_id: Optional[int] = Field(None, alias="organizationId")


class CurrencyPayload(_Payload):
    code: str
    name: str = ""
    symbol: str = ""
    is_default: bool = Field(False, alias="isDefault")
    is_core: Optional[bool] = Field(None, alias="isCore")
    organization_id: Optional[int] = Field(None, alias="organizationId")

    @property
    def identifier(self) -> str:
        return self.code

    def entry_values(self) -> Dict[str, Any]:
        return {"symbol": self.symbol}


class TaxRatePayload(_Payload):
    id: Optional[int] = None
    code: Optional[str] = None
    name: str = ""
    rate: float = 0.0
    country_code: Optional[str] = Field(None, alias="countryCode")
    region_code: Optional[str] = Field(None, alias="regionCode")
    is_default: bool = Field(False, alias="isDefault")
    is_core: Optional[bool] = Field(None, alias="isCore")
    organization_id: Optional[int] = Field(None, alias="organizationId")

    @property
    def identifier(self) -> str:
        """Tax rates have no code column; derive one from country and region."""

        if self.code:
            return self.code
        if self.country_code and self.region_code:
            return f"{self.country_code}-{self.region_code}"
        if self.country_code:
            return self.country_code
        return str(self.id) if self.id is not None else self.name

    def entry_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rate": self.rate,
            "country_code": self.country_code,
            "region_code": self.region_code,
        }


class CreateTenantRequest(_Payload):
    name: str


class FallbackTenantRequest(_Payload):
    name: str
    email: str = ""
    phone: str = ""
    address: str = ""
    logo: str = ""
    type: str = "company"
    settings: Dict[str, Any] = Field(
        default_factory=lambda: {"onboardingCompleted": False}
    )


class SetActiveTenantRequest(_Payload):
    organization_id: int = Field(..., alias="organizationId")
