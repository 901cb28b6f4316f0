import re
import secrets
import string
from typing import Tuple

from .settings import ROUTER_APP_PREFIX

_ROUTER_ID_ALPHABET = string.ascii_lowercase + string.digits
ROUTER_ID_LENGTH = 8

# Network names become split-DNS domains; shadowing a public TLD would hijack real lookups.
PUBLIC_TLDS = frozenset(
    {
        "ai", "app", "biz", "blog", "cloud", "co", "com", "de", "dev", "edu", "eu",
        "gov", "info", "io", "me", "mil", "net", "org", "page", "sh", "site", "tech",
        "tv", "uk", "us", "xyz",
    }
)

_NETWORK_NAME_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


class AppNameError(ValueError):
    pass


def random_id(length: int = ROUTER_ID_LENGTH) -> str:
    return "".join(secrets.choice(_ROUTER_ID_ALPHABET) for _ in range(length))


def router_app_name(network: str, router_id: str) -> str:
    return f"{ROUTER_APP_PREFIX}{network}-{router_id}"


def router_id_from_app_name(app_name: str, network: str) -> str:
    prefix = f"{ROUTER_APP_PREFIX}{network}-"
    return app_name[len(prefix):]


def workload_app_name(name: str, router_id: str) -> str:
    return f"{name}-{router_id}"


def router_tag(network: str) -> str:
    return f"tag:ambit-{network}"


def is_router_app_name(name: str) -> bool:
    return name.startswith(ROUTER_APP_PREFIX)


def is_public_tld(network: str) -> bool:
    return (network or "").strip().lower() in PUBLIC_TLDS


def is_valid_network_name(network: str) -> bool:
    return bool(_NETWORK_NAME_RE.match(network or ""))


def assert_not_router(app: str) -> None:
    if is_router_app_name(app):
        raise AppNameError(
            f"Cannot operate on ambit infrastructure apps ({ROUTER_APP_PREFIX}* prefix). "
            "Use 'ambit create' to manage routers."
        )


def split_app_target(target: str, network: str = "") -> Tuple[str, str]:
    """`app.network` or a bare `app` with the network given separately."""
    if "." in target:
        parts = target.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise AppNameError(f"'{target}' Should Have Exactly One Dot, Like my-app.my-network")
        if network:
            raise AppNameError(f"Network Is Already Part of the Name ('{target}'), --network Is Not Needed")
        return parts[0], parts[1]
    if not network:
        raise AppNameError(f"Missing Network. Use: {target}.<network>")
    return target, network
