from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from ..discovery import find_router_app, get_router_machine_info
from ..machine import Machine, RunReport, Step, execute
from ..naming import is_public_tld, is_valid_network_name, random_id, router_app_name, router_tag
from ..policy import (
    PolicyWriteResult,
    apply_policy_patches,
    is_auto_approver_configured,
    is_tag_owner_configured,
    patch_auto_approver,
    patch_tag_owner,
)
from ..providers.fly import FlyDeployError, FlyProvider, extract_subnet
from ..providers.tailscale import TailscaleProvider
from ..schemas import TailscaleDevice
from ..settings import (
    DEFAULT_REGION,
    FLY_PRIVATE_SUBNET,
    ROUTER_DOCKER_DIR,
    SECRET_NETWORK_NAME,
    SECRET_ROUTER_ID,
    SECRET_TAILSCALE_AUTHKEY,
)
from ..tailscale_local import LocalTailscale, wait_for_device

logger = logging.getLogger(__name__)

CreatePhase = Literal[
    "create_app", "deploy_router", "await_device", "approve_routes", "configure_dns", "accept_routes", "complete"
]

CREATE_PHASES: Tuple[Tuple[CreatePhase, str], ...] = (
    ("create_app", "Fly App Created"),
    ("deploy_router", "Router Deployed"),
    ("await_device", "Router in Tailnet"),
    ("approve_routes", "Routes Approved"),
    ("configure_dns", "Split DNS Configured"),
    ("accept_routes", "Accept Routes Enabled"),
)


@dataclass
class CreateNetworkContext:
    fly: FlyProvider
    tailscale: TailscaleProvider
    network: str
    org: str
    region: str = DEFAULT_REGION
    tag: str = ""
    should_approve: bool = True
    router_docker_dir: str = ROUTER_DOCKER_DIR
    local: LocalTailscale = field(default_factory=LocalTailscale)
    wait: Callable[..., Optional[TailscaleDevice]] = wait_for_device
    app_name: str = ""
    router_id: str = ""
    device: Optional[TailscaleDevice] = None
    subnet: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.tag:
            self.tag = router_tag(self.network)


def _subnet_from_machines(ctx: CreateNetworkContext) -> Optional[str]:
    for machine in ctx.fly.list_machines(ctx.app_name):
        if machine.private_ip:
            return extract_subnet(machine.private_ip)
    return None


def hydrate_create_network(ctx: CreateNetworkContext) -> Step:
    router = find_router_app(ctx.fly, ctx.org, ctx.network)
    if not router:
        return Step.to("create_app")
    ctx.app_name = router.app_name
    ctx.router_id = router.router_id

    machine = get_router_machine_info(ctx.fly, router.app_name)
    if not machine or machine.state != "started":
        return Step.to("deploy_router")
    ctx.subnet = machine.subnet

    if not ctx.should_approve:
        return Step.to("complete")

    device = ctx.tailscale.get_device_by_hostname(router.app_name)
    if not device:
        return Step.to("await_device")
    ctx.device = device

    routes = ctx.tailscale.get_routes(device.id)
    if routes is None or routes.unapproved:
        return Step.to("approve_routes")

    if not ctx.tailscale.get_split_dns().get(ctx.network):
        return Step.to("configure_dns")

    if not ctx.local.is_accept_routes_enabled():
        return Step.to("accept_routes")
    return Step.to("complete")


def _create_app(ctx: CreateNetworkContext) -> Step:
    ctx.router_id = random_id()
    ctx.app_name = router_app_name(ctx.network, ctx.router_id)
    ctx.fly.create_app(ctx.app_name, ctx.org, network=ctx.network)
    return Step.to("deploy_router")


def _deploy_router(ctx: CreateNetworkContext) -> Step:
    if not ctx.router_docker_dir:
        return Step.fail("Router image directory is not configured (AMBIT_ROUTER_DOCKER_DIR)", "missing_state")
    auth_key = ctx.tailscale.create_auth_key(tags=[ctx.tag], reusable=False, ephemeral=False, preauthorized=True)
    ctx.fly.set_secrets(
        ctx.app_name,
        {
            SECRET_TAILSCALE_AUTHKEY: auth_key,
            SECRET_NETWORK_NAME: ctx.network,
            SECRET_ROUTER_ID: ctx.router_id,
        },
        stage=True,
    )
    try:
        ctx.fly.deploy_router(ctx.app_name, ctx.router_docker_dir, region=ctx.region)
    except FlyDeployError as exc:
        return Step.fail(str(exc), "deploy_failed", detail=exc.detail)
    ctx.subnet = _subnet_from_machines(ctx)
    if not ctx.should_approve:
        return Step.to("complete")
    return Step.to("await_device")


def _await_device(ctx: CreateNetworkContext) -> Step:
    device = ctx.wait(ctx.tailscale, ctx.app_name)
    if not device:
        return Step.fail(f"Timeout Waiting for Device '{ctx.app_name}'", "timeout")
    ctx.device = device
    logger.info("Router %s joined tailnet at %s", ctx.app_name, device.addresses[0] if device.addresses else "?")
    if not ctx.subnet:
        ctx.subnet = _subnet_from_machines(ctx)
    return Step.to("approve_routes")


def _approve_routes(ctx: CreateNetworkContext) -> Step:
    if not ctx.device or not ctx.subnet:
        return Step.fail("Missing Device or Subnet", "missing_state")
    if is_auto_approver_configured(ctx.tailscale.get_policy(), ctx.tag):
        logger.info("Routes for %s auto-approved via ACL policy", ctx.tag)
    else:
        ctx.tailscale.approve_routes(ctx.device.id, [ctx.subnet])
    return Step.to("configure_dns")


def _configure_dns(ctx: CreateNetworkContext) -> Step:
    if not ctx.device or not ctx.device.addresses:
        return Step.fail("Missing Device", "missing_state")
    ctx.tailscale.set_split_dns(ctx.network, [ctx.device.addresses[0]])
    return Step.to("accept_routes")


def _accept_routes(ctx: CreateNetworkContext) -> Step:
    if not ctx.local.is_installed():
        ctx.warnings.append("Tailscale CLI not found. Ensure accept-routes is enabled on this device.")
    elif ctx.local.is_accept_routes_enabled():
        logger.info("Accept routes already enabled")
    elif not ctx.local.enable_accept_routes():
        ctx.warnings.append("Could not enable accept-routes. Run: sudo tailscale set --accept-routes")
    return Step.to("complete")


CREATE_NETWORK_MACHINE = Machine(
    name="create-network",
    phases=CREATE_PHASES,
    terminal="complete",
    transitions={
        "create_app": _create_app,
        "deploy_router": _deploy_router,
        "await_device": _await_device,
        "approve_routes": _approve_routes,
        "configure_dns": _configure_dns,
        "accept_routes": _accept_routes,
    },
)


def ensure_router_acl(tailscale: TailscaleProvider, tag: str, *, manual: bool = False) -> PolicyWriteResult:
    """Grant the router tag an owner and auto-approval for the Fly private range."""
    if manual:
        if is_tag_owner_configured(tailscale.get_policy(), tag):
            return PolicyWriteResult(ok=True)
        return PolicyWriteResult(
            ok=False,
            error=f"Set Up {tag} in Tailscale, Then Try Again",
            hint=f'Add to the policy: "tagOwners": {{ "{tag}": ["autogroup:admin"] }}',
            kind="missing_state",
        )
    return apply_policy_patches(
        tailscale,
        [
            lambda policy: patch_tag_owner(policy, tag),
            lambda policy: policy
            if is_auto_approver_configured(policy, tag)
            else patch_auto_approver(policy, tag, FLY_PRIVATE_SUBNET),
        ],
        action=f"Adding {tag} to tagOwners and autoApprovers",
    )


def create_network(ctx: CreateNetworkContext, *, manual: bool = False) -> RunReport:
    if is_public_tld(ctx.network):
        return RunReport(
            step=Step.fail(f'"{ctx.network}" Is a Public TLD and Cannot Be Used as a Network Name', "validation_failed")
        )
    if not is_valid_network_name(ctx.network):
        return RunReport(
            step=Step.fail(
                f"Invalid Network Name '{ctx.network}'. Use Lowercase Letters, Digits and Hyphens",
                "validation_failed",
            )
        )
    acl = ensure_router_acl(ctx.tailscale, ctx.tag, manual=manual)
    if not acl.ok:
        return RunReport(step=Step.fail(acl.message, acl.kind or "validation_failed"))
    return execute(CREATE_NETWORK_MACHINE, hydrate_create_network, ctx)


def create_summary(ctx: CreateNetworkContext) -> Dict[str, Any]:
    return {
        "network": ctx.network,
        "router": {
            "app_name": ctx.app_name,
            "tailscale_ip": ctx.device.addresses[0] if ctx.device and ctx.device.addresses else None,
        },
        "subnet": ctx.subnet,
        "tag": ctx.tag,
        "warnings": list(ctx.warnings),
    }
