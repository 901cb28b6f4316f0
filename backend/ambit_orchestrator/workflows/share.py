from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..discovery import find_router_app, get_router_machine_info
from ..machine import Step
from ..naming import router_tag
from ..policy import apply_policy_patches, is_acl_rule_configured, patch_acl_rule
from ..providers.fly import FlyProvider
from ..providers.tailscale import TailscaleProvider

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MEMBER_PREFIXES = ("group:", "tag:", "autogroup:")


def parse_members(raw: List[str]) -> Tuple[List[str], List[str]]:
    members: List[str] = []
    errors: List[str] = []
    for entry in raw:
        value = str(entry).strip()
        prefix = next((p for p in _MEMBER_PREFIXES if value.startswith(p)), None)
        if (prefix and len(value) > len(prefix)) or (not prefix and _EMAIL_RE.match(value)):
            members.append(value)
        else:
            errors.append(
                f"'{entry}' Must Be a Group (\"group:team\"), Tag (\"tag:router\"), "
                "Autogroup (\"autogroup:member\"), or Email"
            )
    return members, errors


@dataclass
class ShareContext:
    fly: FlyProvider
    tailscale: TailscaleProvider
    network: str
    org: str
    members: List[str]
    app_name: str = ""
    tag: str = ""
    subnet: str = ""
    rules_added: int = 0
    skipped: List[str] = field(default_factory=list)


def _discover(ctx: ShareContext) -> Optional[Step]:
    router = find_router_app(ctx.fly, ctx.org, ctx.network)
    if not router:
        return Step.fail(
            f"No Router Found for Network '{ctx.network}'. Create It with: ambit create {ctx.network}",
            "not_found",
        )
    ctx.app_name = router.app_name
    machine = get_router_machine_info(ctx.fly, router.app_name)
    if not machine or not machine.subnet:
        return Step.fail(
            f"Router Has No Subnet Yet. Ensure the Router Is Running: ambit status network {ctx.network}",
            "missing_state",
        )
    ctx.subnet = machine.subnet
    device = ctx.tailscale.get_device_by_hostname(router.app_name)
    ctx.tag = device.tags[0] if device and device.tags else router_tag(ctx.network)
    return None


def grant_network_access(ctx: ShareContext) -> Step:
    """Add DNS and subnet accept rules for each member; members already covered are left alone."""
    failure = _discover(ctx)
    if failure:
        return failure

    dns_dst = f"{ctx.tag}:53"
    subnet_dst = f"{ctx.subnet}:*"

    def _grant(policy: Dict[str, Any]) -> Dict[str, Any]:
        ctx.rules_added = 0
        ctx.skipped = []
        for member in ctx.members:
            for dst in (dns_dst, subnet_dst):
                if is_acl_rule_configured(policy, member, dst):
                    ctx.skipped.append(f"{member} -> {dst}")
                    continue
                policy = patch_acl_rule(policy, member, dst)
                ctx.rules_added += 1
        return policy

    result = apply_policy_patches(ctx.tailscale, [_grant], action="Updating ACL Policy")
    if not result.ok:
        return Step.fail(result.message, result.kind or "validation_failed")
    logger.info("Shared %s with %s (%s rule(s) added)", ctx.network, ", ".join(ctx.members), ctx.rules_added)
    return Step.to("complete")


def share_summary(ctx: ShareContext) -> Dict[str, Any]:
    return {
        "network": ctx.network,
        "members": list(ctx.members),
        "tag": ctx.tag,
        "subnet": ctx.subnet,
        "rules_added": ctx.rules_added,
    }
