"""Post-deploy sweep that keeps workloads off the public internet.

Every deploy is followed by the same three passes: release anything that is
not a Flycast address on the target network, inspect the merged config for
public-only settings, and make sure one Flycast address exists on the target
network. Nothing here fails; it repairs and reports.
"""
from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .providers.fly import FlyProvider

logger = logging.getLogger(__name__)

PRIVATE_V6 = "private_v6"
NEWLY_ALLOCATED = "(newly allocated)"


@dataclass
class DeployAuditResult:
    public_ips_released: int = 0
    certs_removed: int = 0
    flycast_allocations: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return self.public_ips_released > 0 or bool(self.warnings)


@dataclass
class PreflightResult:
    scanned: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _has_tls_on_443(services: Any) -> bool:
    if not isinstance(services, list):
        return False
    for service in services:
        ports = service.get("ports") if isinstance(service, dict) else None
        for port in ports if isinstance(ports, list) else []:
            if not isinstance(port, dict):
                continue
            handlers = port.get("handlers")
            if port.get("port") == 443 and isinstance(handlers, list) and "tls" in handlers:
                return True
    return False


def _force_https(config: Dict[str, Any]) -> bool:
    http_service = config.get("http_service")
    return isinstance(http_service, dict) and bool(http_service.get("force_https"))


def scan_fly_toml(content: str) -> PreflightResult:
    """Refuse configs that only make sense with public HTTPS."""
    result = PreflightResult(scanned=True)
    try:
        parsed = tomllib.loads(content)
    except tomllib.TOMLDecodeError:
        result.errors.append("Failed to parse fly.toml")
        return result

    if _force_https(parsed):
        result.errors.append(
            "http_service.force_https is enabled. "
            "This implies public HTTPS which is incompatible with Flycast-only deployment."
        )
    services = parsed.get("services")
    if isinstance(services, list):
        result.warnings.append("fly.toml uses [[services]] blocks. Consider migrating to [http_service].")
        if _has_tls_on_443(services):
            result.errors.append(
                "Service has TLS handler on port 443. "
                "This is designed for public HTTPS and incompatible with Flycast-only deployment."
            )
    return result


def _sweep_ips(fly: FlyProvider, app: str, network: str, result: DeployAuditResult) -> None:
    for ip in fly.list_ips(app):
        ip_network = ip.network_name
        if ip.type == PRIVATE_V6 and ip_network == network:
            result.flycast_allocations.append({"address": ip.address, "network": ip_network})
        elif ip.type == PRIVATE_V6:
            fly.release_ip(app, ip.address)
            result.warnings.append(
                f"Released Flycast IP {ip.address} on wrong network '{ip_network}' (expected '{network}')"
            )
        else:
            fly.release_ip(app, ip.address)
            result.public_ips_released += 1
            logger.warning("Released public IP %s (%s) from %s", ip.address, ip.type, app)

    for hostname in fly.list_certs(app):
        fly.remove_cert(app, hostname)
        result.certs_removed += 1


def _inspect_config(config: Optional[Dict[str, Any]], result: DeployAuditResult) -> None:
    if config is None:
        result.warnings.append("Could not inspect merged config.")
        return
    if _has_tls_on_443(config.get("services")):
        result.warnings.append(
            "Merged config has TLS handler on port 443. Safe only because no public IPs are allocated."
        )
    if _force_https(config):
        result.warnings.append("http_service.force_https is enabled. Has no effect on Flycast.")


def _ensure_flycast(fly: FlyProvider, app: str, network: str, result: DeployAuditResult) -> None:
    if any(entry["network"] == network for entry in result.flycast_allocations):
        return
    fly.allocate_flycast_ip(app, network)
    address = next(
        (ip.address for ip in fly.list_ips(app) if ip.type == PRIVATE_V6 and ip.network_name == network),
        NEWLY_ALLOCATED,
    )
    result.flycast_allocations.append({"address": address, "network": network})


def audit_deploy(fly: FlyProvider, app: str, network: str) -> DeployAuditResult:
    result = DeployAuditResult()
    _sweep_ips(fly, app, network, result)
    _inspect_config(fly.get_config(app), result)
    _ensure_flycast(fly, app, network, result)
    logger.info(
        "Audit %s: released=%s certs=%s flycast=%s warnings=%s",
        app,
        result.public_ips_released,
        result.certs_removed,
        len(result.flycast_allocations),
        len(result.warnings),
    )
    return result
