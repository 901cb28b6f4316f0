from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

MACHINE_STATES = {
    "created",
    "started",
    "stopped",
    "suspended",
    "failed",
    "creating",
    "starting",
    "stopping",
    "restarting",
    "suspending",
    "destroying",
    "updating",
    "replacing",
    "launch_failed",
    "destroyed",
    "replaced",
    "migrated",
}
APP_STATUSES = {"deployed", "pending", "suspended"}


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class FlyOrganization(_Loose):
    slug: str = Field(alias="Slug")


class FlyApp(_Loose):
    name: str = Field(alias="Name")
    status: str = Field(default="", alias="Status")
    organization: Optional[FlyOrganization] = Field(default=None, alias="Organization")


class FlyAppInfo(_Loose):
    name: str
    network: str = ""
    status: str = "pending"
    machine_count: Optional[int] = None
    organization: Optional[Dict[str, Any]] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> str:
        return value if value in APP_STATUSES else "pending"

    @field_validator("network", mode="before")
    @classmethod
    def _coerce_network(cls, value: Any) -> str:
        return value or ""


class FlyMachineGuest(_Loose):
    cpu_kind: str = "shared"
    cpus: int = 1
    memory_mb: int = 256


class FlyMachine(_Loose):
    id: str
    name: str = ""
    state: str = "created"
    region: str = ""
    private_ip: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> str:
        return value if value in MACHINE_STATES else "created"

    @property
    def guest(self) -> Optional[FlyMachineGuest]:
        raw = (self.config or {}).get("guest")
        if not isinstance(raw, dict):
            return None
        return FlyMachineGuest.model_validate(raw)


class FlyIpNetwork(_Loose):
    name: str = Field(alias="Name")
    organization: Optional[FlyOrganization] = Field(default=None, alias="Organization")


class FlyIp(_Loose):
    id: Optional[str] = Field(default=None, alias="ID")
    address: str = Field(alias="Address")
    type: str = Field(alias="Type")
    region: Optional[str] = Field(default=None, alias="Region")
    created_at: Optional[str] = Field(default=None, alias="CreatedAt")
    network: Optional[FlyIpNetwork] = Field(default=None, alias="Network")

    @property
    def network_name(self) -> str:
        return (self.network.name if self.network else "") or "default"


class TailscaleDevice(_Loose):
    id: str
    hostname: str = ""
    name: str = ""
    addresses: List[str] = Field(default_factory=list)
    online: Optional[bool] = None
    tags: List[str] = Field(default_factory=list)
    last_seen: Optional[str] = Field(default=None, alias="lastSeen")

    @field_validator("tags", "addresses", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> List[str]:
        return list(value or [])


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_list(model: Type[ModelT], payload: Any) -> List[ModelT]:
    """Parse a provider list payload, degrading to an empty list on shape errors."""
    if not isinstance(payload, list):
        return []
    try:
        return [model.model_validate(item) for item in payload]
    except ValidationError as exc:
        logger.warning("Discarding malformed %s list: %s", model.__name__, exc)
        return []
