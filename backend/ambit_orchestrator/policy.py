"""Additive edits to the shared tailnet access policy.

The policy document is shared with every other resource in the tailnet, so
patches only ever append. Unknown top-level keys pass through untouched.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from jsonschema import Draft202012Validator

from .providers.tailscale import AclSetResult, TailscaleProvider

logger = logging.getLogger(__name__)

PolicyDocument = Dict[str, Any]
PolicyPatch = Callable[[PolicyDocument], PolicyDocument]

DEFAULT_TAG_OWNERS = ["autogroup:admin"]

_STRING_LIST = {"type": "array", "items": {"type": "string"}}
_POLICY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "tagOwners": {"type": "object", "additionalProperties": _STRING_LIST},
        "autoApprovers": {
            "type": "object",
            "properties": {"routes": {"type": "object", "additionalProperties": _STRING_LIST}},
        },
        "acls": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"action": {"type": "string"}, "src": _STRING_LIST, "dst": _STRING_LIST},
            },
        },
    },
}
_VALIDATOR = Draft202012Validator(_POLICY_SCHEMA)


class AdditivePatchError(RuntimeError):
    pass


@dataclass
class PolicyWriteResult:
    ok: bool
    changed: bool = False
    status: int = 0
    error: Optional[str] = None
    hint: Optional[str] = None
    kind: Optional[str] = None

    @property
    def message(self) -> str:
        parts = [self.error or f"HTTP {self.status}"]
        if self.hint:
            parts.append(self.hint)
        return ". ".join(parts)


def policy_shape_errors(policy: PolicyDocument) -> List[str]:
    errors = sorted(_VALIDATOR.iter_errors(policy), key=lambda err: [str(p) for p in err.path])
    return [f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors]


def _tag_owners(policy: Optional[PolicyDocument]) -> Dict[str, Any]:
    value = (policy or {}).get("tagOwners")
    return value if isinstance(value, dict) else {}


def _approver_routes(policy: Optional[PolicyDocument]) -> Dict[str, Any]:
    approvers = (policy or {}).get("autoApprovers")
    routes = approvers.get("routes") if isinstance(approvers, dict) else None
    return routes if isinstance(routes, dict) else {}


def _acls(policy: Optional[PolicyDocument]) -> List[Any]:
    value = (policy or {}).get("acls")
    return value if isinstance(value, list) else []


def _is_accept_rule(rule: Any, src: str, dst: str) -> bool:
    if not isinstance(rule, dict) or rule.get("action") != "accept":
        return False
    return src in (rule.get("src") or []) and dst in (rule.get("dst") or [])


def is_tag_owner_configured(policy: Optional[PolicyDocument], tag: str) -> bool:
    return tag in _tag_owners(policy)


def is_auto_approver_configured(policy: Optional[PolicyDocument], tag: str, route: Optional[str] = None) -> bool:
    routes = _approver_routes(policy)
    if route is not None:
        approvers = routes.get(route)
        return isinstance(approvers, list) and tag in approvers
    return any(isinstance(approvers, list) and tag in approvers for approvers in routes.values())


def is_acl_rule_configured(policy: Optional[PolicyDocument], src: str, dst: str) -> bool:
    return any(_is_accept_rule(rule, src, dst) for rule in _acls(policy))


def patch_tag_owner(policy: PolicyDocument, tag: str, owners: Optional[List[str]] = None) -> PolicyDocument:
    if is_tag_owner_configured(policy, tag):
        return policy
    patched = copy.deepcopy(policy)
    if not isinstance(patched.get("tagOwners"), dict):
        patched["tagOwners"] = {}
    patched["tagOwners"][tag] = list(owners or DEFAULT_TAG_OWNERS)
    return patched


def patch_auto_approver(policy: PolicyDocument, tag: str, route: str) -> PolicyDocument:
    if is_auto_approver_configured(policy, tag, route):
        return policy
    patched = copy.deepcopy(policy)
    if not isinstance(patched.get("autoApprovers"), dict):
        patched["autoApprovers"] = {}
    if not isinstance(patched["autoApprovers"].get("routes"), dict):
        patched["autoApprovers"]["routes"] = {}
    routes = patched["autoApprovers"]["routes"]
    if not isinstance(routes.get(route), list):
        routes[route] = []
    routes[route].append(tag)
    return patched


def patch_acl_rule(policy: PolicyDocument, src: str, dst: str) -> PolicyDocument:
    if is_acl_rule_configured(policy, src, dst):
        return policy
    patched = copy.deepcopy(policy)
    if not isinstance(patched.get("acls"), list):
        patched["acls"] = []
    patched["acls"].append({"action": "accept", "src": [src], "dst": [dst]})
    return patched


def unpatch_tag_owner(policy: PolicyDocument, tag: str) -> PolicyDocument:
    if not is_tag_owner_configured(policy, tag):
        return policy
    patched = copy.deepcopy(policy)
    del patched["tagOwners"][tag]
    return patched


def unpatch_auto_approver(policy: PolicyDocument, tag: str, route: str) -> PolicyDocument:
    if not is_auto_approver_configured(policy, tag, route):
        return policy
    patched = copy.deepcopy(policy)
    routes = patched["autoApprovers"]["routes"]
    routes[route] = [approver for approver in routes[route] if approver != tag]
    return patched


def unpatch_acl_rule(policy: PolicyDocument, src: str, dst: str) -> PolicyDocument:
    exact = {"action": "accept", "src": [src], "dst": [dst]}
    if exact not in _acls(policy):
        return policy
    patched = copy.deepcopy(policy)
    patched["acls"] = [rule for rule in patched["acls"] if rule != exact]
    return patched


def assert_additive_patch(original: PolicyDocument, patched: PolicyDocument, _path: str = "") -> None:
    """Raise AdditivePatchError if any key vanished or any array shrank."""
    for key, before in original.items():
        where = f"{_path}.{key}" if _path else str(key)
        if key not in patched:
            raise AdditivePatchError(f"Policy patch removed key '{where}'")
        after = patched[key]
        if isinstance(before, list) and isinstance(after, list):
            if len(after) < len(before):
                raise AdditivePatchError(
                    f"Policy patch shrank '{where}' from {len(before)} to {len(after)} entries"
                )
        elif isinstance(before, dict) and isinstance(after, dict):
            assert_additive_patch(before, after, where)


def failure_hint(status: int) -> Optional[str]:
    if status == 403:
        return "API token lacks ACL write permission (policy_file scope required)"
    if status == 401:
        return "Tailscale API key is invalid or expired"
    return None


def _failed(result: AclSetResult, action: str) -> PolicyWriteResult:
    kind = "permission_denied" if result.status in {401, 403} else "validation_failed"
    return PolicyWriteResult(
        ok=False,
        status=result.status,
        error=f"{action}: {result.error or f'HTTP {result.status}'}",
        hint=failure_hint(result.status),
        kind=kind,
    )


def commit_policy(
    tailscale: TailscaleProvider,
    original: PolicyDocument,
    patched: PolicyDocument,
    *,
    action: str = "Updating ACL Policy",
) -> PolicyWriteResult:
    """Validate then write `patched`, refusing if the remote policy moved since `original` was read."""
    if patched is original:
        return PolicyWriteResult(ok=True, changed=False)
    assert_additive_patch(original, patched)

    validation = tailscale.validate_policy(patched)
    if not validation.ok:
        logger.warning("Policy validation rejected: status=%s", validation.status)
        return _failed(validation, f"Validating {action}")

    current = tailscale.get_policy()
    if current is None:
        return PolicyWriteResult(ok=False, error=f"{action}: Could Not Re-read Tailscale ACL Policy", kind="invalid_policy")
    if current != original:
        return PolicyWriteResult(
            ok=False,
            error=f"{action}: ACL policy changed while it was being patched",
            hint="Re-run the command to apply the change on top of the latest policy",
            kind="conflict",
        )

    result = tailscale.set_policy(patched)
    if not result.ok:
        logger.warning("Policy write rejected: status=%s", result.status)
        return _failed(result, action)
    logger.info("%s: policy written", action)
    return PolicyWriteResult(ok=True, changed=True, status=result.status)


def apply_policy_patches(
    tailscale: TailscaleProvider,
    patches: Iterable[PolicyPatch],
    *,
    action: str = "Updating ACL Policy",
) -> PolicyWriteResult:
    original = tailscale.get_policy()
    if original is None:
        return PolicyWriteResult(ok=False, error="Could Not Read Tailscale ACL Policy", kind="invalid_policy")
    shape_errors = policy_shape_errors(original)
    if shape_errors:
        return PolicyWriteResult(
            ok=False,
            error=f"ACL policy has an unexpected shape: {'; '.join(shape_errors)}",
            kind="invalid_policy",
        )
    patched = original
    for patch in patches:
        patched = patch(patched)
    return commit_policy(tailscale, original, patched, action=action)
