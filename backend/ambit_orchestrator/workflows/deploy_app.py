from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from ..audit import DeployAuditResult, audit_deploy, scan_fly_toml
from ..discovery import find_router_app, get_router_machine_info
from ..machine import Machine, RunReport, Step, execute
from ..naming import assert_not_router, workload_app_name
from ..providers.fly import FlyDeployError, FlyProvider
from ..settings import SECRET_OUTBOUND_PROXY, SOCKS_PROXY_PORT

logger = logging.getLogger(__name__)

DeployPhase = Literal["create_app", "set_proxy", "deploy", "audit", "complete"]

DEPLOY_PHASES: Tuple[Tuple[DeployPhase, str], ...] = (
    ("create_app", "App Created"),
    ("set_proxy", "Outbound Proxy Set"),
    ("deploy", "Deployed"),
    ("audit", "Audit Passed"),
)

DEFAULT_MAIN_PORT = "80"


class DeployConfigError(ValueError):
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass
class DeployConfig:
    image: Optional[str] = None
    config_path: Optional[str] = None
    temp_dir: Optional[str] = None
    preflight_scanned: bool = False
    preflight_warnings: List[str] = field(default_factory=list)

    def cleanup(self) -> None:
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None


def service_toml(port: int) -> str:
    return (
        "[http_service]\n"
        f"  internal_port = {port}\n"
        '  auto_stop_machines = "stop"\n'
        "  auto_start_machines = true\n"
        "  min_machines_running = 0\n"
    )


def parse_main_port(raw: str) -> Optional[int]:
    if raw == "none":
        return None
    try:
        port = int(raw)
    except (TypeError, ValueError):
        port = 0
    if port < 1 or port > 65535:
        raise DeployConfigError(f'Invalid --main-port: "{raw}". Use a Port Number (1-65535) or "none".')
    return port


def resolve_image_mode(image: str, main_port: str = DEFAULT_MAIN_PORT) -> DeployConfig:
    port = parse_main_port(main_port)
    if port is None:
        return DeployConfig(image=image)
    temp_dir = tempfile.mkdtemp(prefix="ambit-deploy-")
    config_path = os.path.join(temp_dir, "fly.toml")
    with open(config_path, "w", encoding="utf-8") as handle:
        handle.write(service_toml(port))
    return DeployConfig(image=image, config_path=config_path, temp_dir=temp_dir)


def resolve_config_mode(explicit: Optional[str] = None, cwd: str = ".") -> DeployConfig:
    config_path = explicit
    if not config_path:
        default = os.path.join(cwd, "fly.toml")
        if not os.path.exists(default):
            logger.info("No fly.toml found; deploying without config scan")
            return DeployConfig()
        config_path = default
    if not os.path.exists(config_path):
        raise DeployConfigError(f"Config File Not Found: {config_path}")
    with open(config_path, "r", encoding="utf-8") as handle:
        scan = scan_fly_toml(handle.read())
    if scan.errors:
        raise DeployConfigError("Pre-flight Check Failed. Fix fly.toml Before Deploying.", scan.errors)
    for warning in scan.warnings:
        logger.warning("%s: %s", config_path, warning)
    return DeployConfig(config_path=config_path, preflight_scanned=scan.scanned, preflight_warnings=scan.warnings)


def _decline(prompt: str) -> bool:
    return False


@dataclass
class DeployAppContext:
    fly: FlyProvider
    app: str
    network: str
    org: str
    deploy_config: DeployConfig = field(default_factory=DeployConfig)
    region: Optional[str] = None
    yes: bool = False
    confirm: Callable[[str], bool] = _decline
    router_id: str = ""
    fly_app_name: str = ""
    router_private_ip: Optional[str] = None
    created: bool = False
    audit: Optional[DeployAuditResult] = None


def resolve_deploy_target(ctx: DeployAppContext) -> Optional[Step]:
    """Bind the workload to the network's router; a failed step when the network has none."""
    router = find_router_app(ctx.fly, ctx.org, ctx.network)
    if not router:
        return Step.fail(
            f"No Ambit Router Found on Network '{ctx.network}'. Run 'ambit create {ctx.network}' First.",
            "not_found",
        )
    ctx.router_id = router.router_id
    ctx.fly_app_name = workload_app_name(ctx.app, router.router_id)
    machine = get_router_machine_info(ctx.fly, router.app_name)
    ctx.router_private_ip = machine.private_ip if machine else None
    return None


def hydrate_deploy_app(ctx: DeployAppContext) -> Step:
    if not ctx.fly.app_exists(ctx.fly_app_name):
        return Step.to("create_app")
    return Step.to("set_proxy")


def _create_app(ctx: DeployAppContext) -> Step:
    if not ctx.yes and not ctx.confirm(f"Create App '{ctx.fly_app_name}' on Network '{ctx.network}'?"):
        return Step.fail("Cancelled", "cancelled")
    ctx.fly.create_app(ctx.fly_app_name, ctx.org, network=ctx.network)
    ctx.created = True
    return Step.to("set_proxy")


def _set_proxy(ctx: DeployAppContext) -> Step:
    if ctx.router_private_ip:
        proxy_url = f"socks5://[{ctx.router_private_ip}]:{SOCKS_PROXY_PORT}"
        ctx.fly.set_secrets(ctx.fly_app_name, {SECRET_OUTBOUND_PROXY: proxy_url}, stage=True)
    return Step.to("deploy")


def _deploy(ctx: DeployAppContext) -> Step:
    config = ctx.deploy_config
    try:
        ctx.fly.deploy_app(ctx.fly_app_name, image=config.image, config=config.config_path, region=ctx.region)
    except FlyDeployError as exc:
        return Step.fail(str(exc), "deploy_failed", detail=exc.detail)
    finally:
        config.cleanup()
    return Step.to("audit")


def _audit(ctx: DeployAppContext) -> Step:
    ctx.audit = audit_deploy(ctx.fly, ctx.fly_app_name, ctx.network)
    if ctx.audit.public_ips_released:
        logger.warning("Released %s public IP(s) from %s", ctx.audit.public_ips_released, ctx.fly_app_name)
    return Step.to("complete")


DEPLOY_MACHINE = Machine(
    name="deploy-app",
    phases=DEPLOY_PHASES,
    terminal="complete",
    transitions={
        "create_app": _create_app,
        "set_proxy": _set_proxy,
        "deploy": _deploy,
        "audit": _audit,
    },
)


def deploy_app(ctx: DeployAppContext) -> RunReport:
    try:
        assert_not_router(ctx.app)
        failure = resolve_deploy_target(ctx)
        if failure:
            return RunReport(step=failure)
        return execute(DEPLOY_MACHINE, hydrate_deploy_app, ctx)
    finally:
        ctx.deploy_config.cleanup()


def deploy_summary(ctx: DeployAppContext) -> Dict[str, Any]:
    audit = ctx.audit or DeployAuditResult()
    return {
        "app": ctx.fly_app_name,
        "network": ctx.network,
        "created": ctx.created,
        "audit": {
            "public_ips_released": audit.public_ips_released,
            "certs_removed": audit.certs_removed,
            "flycast_allocations": list(audit.flycast_allocations),
            "warnings": list(audit.warnings),
        },
        "preflight": {
            "scanned": ctx.deploy_config.preflight_scanned,
            "warnings": list(ctx.deploy_config.preflight_warnings),
        },
    }
