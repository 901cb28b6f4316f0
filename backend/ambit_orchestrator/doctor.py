from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .discovery import (
    RouterApp,
    find_router_app,
    find_workload_app,
    get_router_machine_info,
    get_router_tailscale_info,
    list_router_apps,
)
from .providers.fly import FlyProvider
from .providers.tailscale import TailscaleProvider
from .tailscale_local import LocalTailscale

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    name: str
    ok: bool
    hint: Optional[str] = None


@dataclass
class Doctor:
    fly: FlyProvider
    tailscale: TailscaleProvider
    org: str
    local: LocalTailscale = field(default_factory=LocalTailscale)
    results: List[CheckResult] = field(default_factory=list)

    @property
    def issues(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    def report(self, name: str, ok: bool, hint: Optional[str] = None) -> None:
        self.results.append(CheckResult(name=name, ok=ok, hint=hint))
        if ok:
            logger.info("ok: %s", name)
        else:
            logger.warning("failed: %s (%s)", name, hint or "no hint")

    def check_local(self) -> None:
        self.report("Tailscale Installed", self.local.is_installed(), "Install from https://tailscale.com/download")
        self.report("Tailscale Connected", self.local.is_connected(), "Run: tailscale up")
        self.report(
            "Accept Routes Enabled",
            self.local.is_accept_routes_enabled(),
            "Run: sudo tailscale set --accept-routes",
        )

    def check_router(self, app: RouterApp) -> None:
        network = app.network
        self.report(f"Router Exists ({network})", True)

        machine = get_router_machine_info(self.fly, app.app_name)
        self.report(
            f"Router Running ({network})",
            bool(machine) and machine.state == "started",
            f"Machine State: {machine.state}" if machine else "No Machine Found",
        )

        info = get_router_tailscale_info(self.tailscale, app.app_name)
        self.report(f"Router in Tailnet ({network})", info is not None, "Router May Still Be Starting, or Check Router Logs")
        if info is None:
            return
        device = self.tailscale.get_device_by_hostname(app.app_name)
        if not device:
            return
        routes = self.tailscale.get_routes(device.id)
        unapproved = list(routes.unapproved) if routes else []
        if unapproved:
            # Advertised routes are approved in place, matching what create does.
            self.tailscale.approve_routes(device.id, routes.advertised)
            self.report(f"Routes Approved ({network})", True, f"Approved: {', '.join(unapproved)}")
        elif routes and routes.advertised:
            self.report(f"Routes Approved ({network})", True)
        else:
            self.report(f"Routes Approved ({network})", False, "No Routes Advertised. Router May Need Restart")

    def check_network(self, network: Optional[str] = None) -> None:
        if network:
            app = find_router_app(self.fly, self.org, network)
            if not app:
                self.report(f"Router Exists ({network})", False, f"Create with: ambit create {network}")
            else:
                self.check_router(app)
            return
        routers = list_router_apps(self.fly, self.org)
        if not routers:
            self.report("Routers Discovered", False, "Run: ambit create <network>")
        for app in routers:
            self.check_router(app)

    def check_app(self, app: str, network: str) -> None:
        label = f"{app}.{network}"
        workload = find_workload_app(self.fly, self.org, app, network)
        if not workload:
            self.report(f"App Exists ({label})", False, f"Deploy with: ambit deploy {label}")
            return
        self.report(f"App Exists ({label})", True)
        machines = self.fly.list_machines(workload.app_name)
        self.report(
            f"App Running ({label})",
            any(machine.state == "started" for machine in machines),
            f"Machine State: {machines[0].state}" if machines else "No Machines Found",
        )
        self.check_network(network)
