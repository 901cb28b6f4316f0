from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from ..discovery import WorkloadApp, find_router_app, list_workload_apps_on_network
from ..machine import Machine, RunReport, Step, execute
from ..providers.fly import FlyProvider
from ..providers.tailscale import TailscaleProvider
from ..schemas import TailscaleDevice

logger = logging.getLogger(__name__)

DestroyNetworkPhase = Literal["confirm", "clear_dns", "remove_device", "delete_app", "complete"]

DESTROY_NETWORK_PHASES: Tuple[Tuple[DestroyNetworkPhase, str], ...] = (
    ("confirm", "Confirmed"),
    ("clear_dns", "Split DNS Cleared"),
    ("remove_device", "Tailscale Device Removed"),
    ("delete_app", "Fly App Destroyed"),
)


def _decline(prompt: str) -> bool:
    return False


@dataclass
class DestroyNetworkContext:
    fly: FlyProvider
    tailscale: TailscaleProvider
    network: str
    org: str
    yes: bool = False
    confirm: Callable[[str], bool] = _decline
    app_name: Optional[str] = None
    device: Optional[TailscaleDevice] = None
    tag: Optional[str] = None
    workloads: List[WorkloadApp] = field(default_factory=list)


def hydrate_destroy_network(ctx: DestroyNetworkContext) -> Step:
    """Resume order: split DNS, then the tailnet device, then the router app."""
    router = find_router_app(ctx.fly, ctx.org, ctx.network)
    has_dns = bool(ctx.tailscale.get_split_dns().get(ctx.network))
    if router:
        ctx.app_name = router.app_name
        device = ctx.tailscale.get_device_by_hostname(router.app_name)
        if device:
            ctx.device = device
            ctx.tag = device.tags[0] if device.tags else None

    if has_dns:
        return Step.to("confirm")
    if ctx.device:
        return Step.to("remove_device")
    if router:
        return Step.to("delete_app")
    return Step.to("complete")


def _confirm(ctx: DestroyNetworkContext) -> Step:
    ctx.workloads = list_workload_apps_on_network(ctx.fly, ctx.org, ctx.network)
    if ctx.workloads:
        logger.warning(
            "%s workload app(s) still on network %s: %s",
            len(ctx.workloads),
            ctx.network,
            ", ".join(app.app_name for app in ctx.workloads),
        )
    if not ctx.yes and not ctx.confirm(f"Destroy Router for Network '{ctx.network}'?"):
        return Step.fail("Cancelled", "cancelled")
    return Step.to("clear_dns")


def _clear_dns(ctx: DestroyNetworkContext) -> Step:
    ctx.tailscale.clear_split_dns(ctx.network)
    return Step.to("remove_device")


def _remove_device(ctx: DestroyNetworkContext) -> Step:
    if ctx.device:
        ctx.tailscale.delete_device(ctx.device.id)
    else:
        logger.info("Tailscale device already removed")
    return Step.to("delete_app")


def _delete_app(ctx: DestroyNetworkContext) -> Step:
    if ctx.app_name:
        ctx.fly.delete_app(ctx.app_name)
    else:
        logger.info("Fly app already destroyed")
    return Step.to("complete")


DESTROY_NETWORK_MACHINE = Machine(
    name="destroy-network",
    phases=DESTROY_NETWORK_PHASES,
    terminal="complete",
    transitions={
        "confirm": _confirm,
        "clear_dns": _clear_dns,
        "remove_device": _remove_device,
        "delete_app": _delete_app,
    },
)


def destroy_network(ctx: DestroyNetworkContext) -> RunReport:
    return execute(DESTROY_NETWORK_MACHINE, hydrate_destroy_network, ctx)


def policy_reminder(tag: Optional[str]) -> List[str]:
    if not tag:
        return ["Remove the router's tag from tagOwners, autoApprovers and acls if you added it."]
    return [
        f"tagOwners: {tag}",
        f"autoApprovers: routes for {tag}",
        f"acls: rules referencing {tag}",
    ]


def destroy_network_summary(ctx: DestroyNetworkContext) -> Dict[str, Any]:
    return {
        "destroyed": True,
        "network": ctx.network,
        "app_name": ctx.app_name or "",
        "workload_apps_warned": len(ctx.workloads),
        "policy_reminder": policy_reminder(ctx.tag),
    }
