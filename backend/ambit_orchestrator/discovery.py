"""Read-only views composed from app listing, machine state and tailnet devices.

Any facet that fails to load comes back as None; callers treat partial views
as normal.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from .naming import is_router_app_name, router_id_from_app_name, workload_app_name
from .providers.fly import FlyError, FlyProvider, extract_subnet, machine_size
from .providers.tailscale import TailscaleError, TailscaleProvider
from .schemas import FlyAppInfo
from .settings import DEFAULT_FLY_NETWORK, SOCKS_PROXY_PORT

logger = logging.getLogger(__name__)

MAX_DISCOVERY_WORKERS = 8


@dataclass
class RouterApp:
    app_name: str
    network: str
    org: str
    router_id: str
    status: str = "pending"


@dataclass
class WorkloadApp:
    app_name: str
    network: str
    org: str
    status: str = "pending"


@dataclass
class RouterMachineInfo:
    region: str
    state: str
    private_ip: Optional[str] = None
    subnet: Optional[str] = None

    @property
    def socks_proxy(self) -> Optional[str]:
        if not self.private_ip:
            return None
        return f"socks5://[{self.private_ip}]:{SOCKS_PROXY_PORT}"


@dataclass
class RouterTailscaleInfo:
    ip: Optional[str]
    online: bool
    hostname: str
    tags: List[str] = field(default_factory=list)


@dataclass
class RouterView:
    router: RouterApp
    machine: Optional[RouterMachineInfo] = None
    tailscale: Optional[RouterTailscaleInfo] = None

    @property
    def tag(self) -> Optional[str]:
        if self.tailscale and self.tailscale.tags:
            return self.tailscale.tags[0]
        return None


@dataclass
class WorkloadView:
    app: WorkloadApp
    region: Optional[str] = None
    state: Optional[str] = None
    size: Optional[str] = None


@dataclass
class NetworkView:
    router: RouterView
    workloads: List[WorkloadView] = field(default_factory=list)


def _org_of(app: FlyAppInfo, fallback: str) -> str:
    return str((app.organization or {}).get("slug") or fallback)


def _router_apps(apps: List[FlyAppInfo], org: str) -> List[RouterApp]:
    return [
        RouterApp(
            app_name=app.name,
            network=app.network,
            org=_org_of(app, org),
            router_id=router_id_from_app_name(app.name, app.network),
            status=app.status,
        )
        for app in apps
        if is_router_app_name(app.name) and app.network != DEFAULT_FLY_NETWORK
    ]


def _workload_apps(apps: List[FlyAppInfo], org: str) -> List[WorkloadApp]:
    return [
        WorkloadApp(app_name=app.name, network=app.network, org=_org_of(app, org), status=app.status)
        for app in apps
        if not is_router_app_name(app.name) and app.network != DEFAULT_FLY_NETWORK
    ]


def list_router_apps(fly: FlyProvider, org: str) -> List[RouterApp]:
    return _router_apps(fly.list_apps_with_network(org), org)


def find_router_app(fly: FlyProvider, org: str, network: str) -> Optional[RouterApp]:
    return next((app for app in list_router_apps(fly, org) if app.network == network), None)


def list_workload_apps_on_network(fly: FlyProvider, org: str, network: str) -> List[WorkloadApp]:
    return [app for app in _workload_apps(fly.list_apps_with_network(org), org) if app.network == network]


def find_workload_app(fly: FlyProvider, org: str, name: str, network: Optional[str] = None) -> Optional[WorkloadApp]:
    """Resolve a logical workload name; on a network the router-suffixed name wins over the bare name."""
    apps = fly.list_apps_with_network(org)
    workloads = _workload_apps(apps, org)
    if not network:
        return next((app for app in workloads if app.app_name == name), None)
    router = next((app for app in _router_apps(apps, org) if app.network == network), None)
    if router:
        suffixed = workload_app_name(name, router.router_id)
        found = next((app for app in workloads if app.app_name == suffixed and app.network == network), None)
        if found:
            return found
    return next((app for app in workloads if app.app_name == name and app.network == network), None)


def get_router_machine_info(fly: FlyProvider, app_name: str) -> Optional[RouterMachineInfo]:
    try:
        machines = fly.list_machines(app_name)
    except FlyError as exc:
        logger.debug("Machine lookup failed for %s: %s", app_name, exc)
        return None
    if not machines:
        return None
    machine = machines[0]
    return RouterMachineInfo(
        region=machine.region,
        state=machine.state,
        private_ip=machine.private_ip,
        subnet=extract_subnet(machine.private_ip) if machine.private_ip else None,
    )


def get_router_tailscale_info(tailscale: TailscaleProvider, app_name: str) -> Optional[RouterTailscaleInfo]:
    try:
        device = tailscale.get_device_by_hostname(app_name)
    except (TailscaleError, requests.RequestException) as exc:
        logger.debug("Device lookup failed for %s: %s", app_name, exc)
        return None
    if not device:
        return None
    return RouterTailscaleInfo(
        ip=device.addresses[0] if device.addresses else None,
        online=bool(device.online),
        hostname=device.hostname,
        tags=list(device.tags),
    )


def hydrate_router(fly: FlyProvider, tailscale: TailscaleProvider, router: RouterApp) -> RouterView:
    return RouterView(
        router=router,
        machine=get_router_machine_info(fly, router.app_name),
        tailscale=get_router_tailscale_info(tailscale, router.app_name),
    )


def discover_routers(fly: FlyProvider, tailscale: TailscaleProvider, org: str) -> List[RouterView]:
    routers = list_router_apps(fly, org)
    logger.info("Found %s router(s) in %s", len(routers), org)
    if not routers:
        return []
    with ThreadPoolExecutor(max_workers=min(MAX_DISCOVERY_WORKERS, len(routers))) as pool:
        return list(pool.map(lambda router: hydrate_router(fly, tailscale, router), routers))


def _workload_view(fly: FlyProvider, app: WorkloadApp) -> WorkloadView:
    try:
        machines = fly.list_machines(app.app_name)
    except FlyError as exc:
        logger.debug("Machine lookup failed for %s: %s", app.app_name, exc)
        return WorkloadView(app=app)
    if not machines:
        return WorkloadView(app=app)
    return WorkloadView(app=app, region=machines[0].region, state=machines[0].state, size=machine_size(machines[0]))


def describe_network(fly: FlyProvider, tailscale: TailscaleProvider, org: str, network: str) -> Optional[NetworkView]:
    router = find_router_app(fly, org, network)
    if not router:
        return None
    workloads = list_workload_apps_on_network(fly, org, network)
    with ThreadPoolExecutor(max_workers=MAX_DISCOVERY_WORKERS) as pool:
        view_future = pool.submit(hydrate_router, fly, tailscale, router)
        workload_views = list(pool.map(lambda app: _workload_view(fly, app), workloads))
        return NetworkView(router=view_future.result(), workloads=workload_views)
