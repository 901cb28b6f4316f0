from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from ..schemas import TailscaleDevice, parse_list
from ..settings import HTTP_TIMEOUT_SECONDS, TAILSCALE_API_BASE, TAILSCALE_TAILNET

logger = logging.getLogger(__name__)


class TailscaleError(RuntimeError):
    pass


@dataclass
class DeviceRoutes:
    advertised: List[str] = field(default_factory=list)
    enabled: List[str] = field(default_factory=list)

    @property
    def unapproved(self) -> List[str]:
        enabled = set(self.enabled)
        return [route for route in self.advertised if route not in enabled]


@dataclass
class AclSetResult:
    ok: bool
    status: int
    error: Optional[str] = None


@dataclass
class _ApiResponse:
    ok: bool
    status: int
    data: Any = None
    error: Optional[str] = None


def _last_seen_key(device: TailscaleDevice) -> float:
    if not device.last_seen:
        return 0.0
    try:
        return datetime.fromisoformat(device.last_seen.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def select_device_by_hostname(devices: List[TailscaleDevice], hostname: str) -> Optional[TailscaleDevice]:
    """Exact hostname match, else a `<hostname>-N` disambiguated device preferring online then most recently seen."""
    for device in devices:
        if device.hostname == hostname:
            return device
    candidates = [device for device in devices if device.hostname.startswith(f"{hostname}-")]
    candidates.sort(key=lambda d: (0 if d.online else 1, -_last_seen_key(d)))
    return candidates[0] if candidates else None


def auth_key_payload(
    *,
    reusable: bool = False,
    ephemeral: bool = False,
    preauthorized: bool = True,
    tags: Optional[List[str]] = None,
    expiry_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    create: Dict[str, Any] = {
        "reusable": reusable,
        "ephemeral": ephemeral,
        "preauthorized": preauthorized,
    }
    if tags:
        create["tags"] = list(tags)
    payload: Dict[str, Any] = {"capabilities": {"devices": {"create": create}}}
    if expiry_seconds:
        payload["expirySeconds"] = expiry_seconds
    return payload


class TailscaleProvider(ABC):
    @abstractmethod
    def validate_key(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_auth_key(self, *, tags: List[str], reusable: bool = False, ephemeral: bool = False, preauthorized: bool = True) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_devices(self) -> List[TailscaleDevice]:
        raise NotImplementedError

    def get_device_by_hostname(self, hostname: str) -> Optional[TailscaleDevice]:
        return select_device_by_hostname(self.list_devices(), hostname)

    @abstractmethod
    def delete_device(self, device_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_routes(self, device_id: str) -> Optional[DeviceRoutes]:
        raise NotImplementedError

    @abstractmethod
    def approve_routes(self, device_id: str, routes: List[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_split_dns(self) -> Dict[str, List[str]]:
        raise NotImplementedError

    @abstractmethod
    def set_split_dns(self, domain: str, nameservers: List[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_split_dns(self, domain: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_policy(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def set_policy(self, policy: Dict[str, Any]) -> AclSetResult:
        raise NotImplementedError

    @abstractmethod
    def validate_policy(self, policy: Dict[str, Any]) -> AclSetResult:
        raise NotImplementedError


class TailscaleApiProvider(TailscaleProvider):
    def __init__(self, api_key: str, tailnet: str = TAILSCALE_TAILNET, api_base: str = TAILSCALE_API_BASE, session: Optional[requests.Session] = None):
        self.tailnet = tailnet
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = (api_key, "")
        self.session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> _ApiResponse:
        try:
            response = self.session.request(
                method,
                f"{self.api_base}{path}",
                data=json.dumps(body, indent=2) if body is not None else None,
                timeout=HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            return _ApiResponse(ok=False, status=0, error=str(exc))
        if not response.ok:
            return _ApiResponse(ok=False, status=response.status_code, error=response.text or f"HTTP {response.status_code}")
        if not response.text:
            return _ApiResponse(ok=True, status=response.status_code)
        try:
            return _ApiResponse(ok=True, status=response.status_code, data=response.json())
        except ValueError:
            return _ApiResponse(ok=False, status=response.status_code, error="Invalid JSON response")

    def validate_key(self) -> bool:
        return self._request("GET", f"/tailnet/{self.tailnet}/devices").ok

    def create_auth_key(self, *, tags: List[str], reusable: bool = False, ephemeral: bool = False, preauthorized: bool = True) -> str:
        payload = auth_key_payload(reusable=reusable, ephemeral=ephemeral, preauthorized=preauthorized, tags=tags)
        result = self._request("POST", f"/tailnet/{self.tailnet}/keys", payload)
        key = (result.data or {}).get("key") if isinstance(result.data, dict) else None
        if not result.ok or not key:
            raise TailscaleError(f"Failed to Create Auth Key: {result.error}")
        logger.info("Created auth key tags=%s", ",".join(tags))
        return str(key)

    def list_devices(self) -> List[TailscaleDevice]:
        result = self._request("GET", f"/tailnet/{self.tailnet}/devices")
        if not result.ok:
            raise TailscaleError(f"Failed to List Devices: {result.error}")
        devices = (result.data or {}).get("devices") if isinstance(result.data, dict) else None
        return parse_list(TailscaleDevice, devices)

    def delete_device(self, device_id: str) -> None:
        result = self._request("DELETE", f"/device/{device_id}")
        if not result.ok:
            raise TailscaleError(f"Failed to Delete Device: {result.error}")
        logger.info("Deleted device %s", device_id)

    def get_routes(self, device_id: str) -> Optional[DeviceRoutes]:
        result = self._request("GET", f"/device/{device_id}/routes")
        if not result.ok or not isinstance(result.data, dict):
            return None
        return DeviceRoutes(
            advertised=list(result.data.get("advertisedRoutes") or []),
            enabled=list(result.data.get("enabledRoutes") or []),
        )

    def approve_routes(self, device_id: str, routes: List[str]) -> None:
        result = self._request("POST", f"/device/{device_id}/routes", {"routes": list(routes)})
        if not result.ok:
            raise TailscaleError(f"Failed to Approve Routes: {result.error}")
        logger.info("Approved routes %s on device %s", ",".join(routes), device_id)

    def get_split_dns(self) -> Dict[str, List[str]]:
        result = self._request("GET", f"/tailnet/{self.tailnet}/dns/split-dns")
        if not result.ok:
            raise TailscaleError(f"Failed to Read Split DNS: {result.error}")
        if not isinstance(result.data, dict):
            return {}
        return {str(k): list(v or []) for k, v in result.data.items()}

    def set_split_dns(self, domain: str, nameservers: List[str]) -> None:
        result = self._request("PATCH", f"/tailnet/{self.tailnet}/dns/split-dns", {domain: list(nameservers)})
        if not result.ok:
            raise TailscaleError(f"Failed to Configure Split DNS: {result.error}")
        logger.info("Configured split DNS %s -> %s", domain, ",".join(nameservers))

    def clear_split_dns(self, domain: str) -> None:
        result = self._request("PATCH", f"/tailnet/{self.tailnet}/dns/split-dns", {domain: None})
        if not result.ok:
            raise TailscaleError(f"Failed to Clear Split DNS: {result.error}")
        logger.info("Cleared split DNS for %s", domain)

    def get_policy(self) -> Optional[Dict[str, Any]]:
        result = self._request("GET", f"/tailnet/{self.tailnet}/acl")
        if not result.ok or not isinstance(result.data, dict):
            return None
        return result.data

    def set_policy(self, policy: Dict[str, Any]) -> AclSetResult:
        result = self._request("POST", f"/tailnet/{self.tailnet}/acl", policy)
        if not result.ok:
            return AclSetResult(ok=False, status=result.status, error=result.error)
        return AclSetResult(ok=True, status=result.status)

    def validate_policy(self, policy: Dict[str, Any]) -> AclSetResult:
        result = self._request("POST", f"/tailnet/{self.tailnet}/acl/validate", policy)
        if not result.ok:
            return AclSetResult(ok=False, status=result.status, error=result.error)
        # A non-empty body carries the validation failure message.
        if result.data:
            return AclSetResult(ok=False, status=result.status, error=json.dumps(result.data))
        return AclSetResult(ok=True, status=result.status)
