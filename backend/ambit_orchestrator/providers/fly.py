from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
import yaml

from ..commands import CommandResult, command_exists, redact_output, run_command
from ..schemas import FlyApp, FlyAppInfo, FlyIp, FlyMachine, parse_list
from ..settings import FLY_API_BASE, FLY_CONFIG_PATH, FLYCTL, HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

MACHINE_SIZES: Dict[str, Dict[str, int]] = {
    "shared-cpu-1x": {"cpus": 1, "memory_mb": 1024},
    "shared-cpu-2x": {"cpus": 2, "memory_mb": 2048},
    "shared-cpu-4x": {"cpus": 4, "memory_mb": 4096},
}


class FlyError(RuntimeError):
    pass


class FlyDeployError(FlyError):
    def __init__(self, app: str, stderr: str):
        super().__init__(f"Deploy Failed for '{app}'")
        self.app = app
        self.detail = extract_error_detail(redact_output(stderr))


def extract_error_detail(stderr: str) -> str:
    """Last meaningful line of flyctl stderr; fly prints progress before the real error."""
    lines = []
    for raw in (stderr or "").split("\n"):
        line = _ANSI_RE.sub("", raw).strip()
        if not line or line.startswith("-->") or line == "Error":
            continue
        lines.append(line)
    return lines[-1] if lines else "unknown error"


def extract_subnet(private_ip: str) -> str:
    # fdaa:X:XXXX::Y -> fdaa:X:XXXX::/48
    parts = private_ip.split(":")
    return f"{parts[0]}:{parts[1]}:{parts[2]}::/48"


def machine_size(machine: FlyMachine) -> str:
    guest = machine.guest
    if not guest:
        return "shared-cpu-1x"
    if guest.cpus >= 4:
        return "shared-cpu-4x"
    if guest.cpus >= 2:
        return "shared-cpu-2x"
    return "shared-cpu-1x"


class FlyProvider(ABC):
    @abstractmethod
    def list_apps(self, org: Optional[str] = None) -> List[FlyApp]:
        raise NotImplementedError

    @abstractmethod
    def list_apps_with_network(self, org: str) -> List[FlyAppInfo]:
        raise NotImplementedError

    @abstractmethod
    def create_app(self, name: str, org: str, *, network: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_app(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def app_exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_config(self, name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_machines(self, app: str) -> List[FlyMachine]:
        raise NotImplementedError

    @abstractmethod
    def clone_machine(self, app: str, *, size: str, memory_mb: Optional[int] = None, region: Optional[str] = None) -> FlyMachine:
        raise NotImplementedError

    @abstractmethod
    def destroy_machine(self, app: str, machine_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_secrets(self, app: str, secrets: Dict[str, str], *, stage: bool = False) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_ips(self, app: str) -> List[FlyIp]:
        raise NotImplementedError

    @abstractmethod
    def release_ip(self, app: str, address: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def allocate_flycast_ip(self, app: str, network: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_certs(self, app: str) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def remove_cert(self, app: str, hostname: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def deploy_router(self, app: str, docker_dir: str, *, region: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def deploy_app(
        self,
        app: str,
        *,
        image: Optional[str] = None,
        config: Optional[str] = None,
        region: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class FlyctlProvider(FlyProvider):
    """Fly.io access through the flyctl binary, plus the Machines REST API for network-aware listing."""

    def __init__(self, flyctl: str = FLYCTL, api_base: str = FLY_API_BASE, config_path: str = FLY_CONFIG_PATH):
        self.flyctl = flyctl
        self.api_base = api_base.rstrip("/")
        self.config_path = config_path

    def _run(self, *args: str, interactive: bool = False) -> CommandResult:
        return run_command([self.flyctl, *args], interactive=interactive)

    def _run_json(self, *args: str) -> Any:
        ok, data, _ = self._run(*args).json()
        return data if ok else None

    def ensure_installed(self) -> None:
        if not command_exists(self.flyctl):
            raise FlyError("Flyctl Not Found. Install from https://fly.io/docs/flyctl/install/")

    def whoami(self) -> Optional[str]:
        data = self._run_json("auth", "whoami", "--json")
        if isinstance(data, dict) and data.get("email"):
            return str(data["email"])
        return None

    def login(self) -> str:
        email = self.whoami()
        if email:
            return email
        self._run("auth", "login", interactive=True)
        email = self.whoami()
        if not email:
            raise FlyError("Fly Authentication Failed")
        return email

    def get_token(self) -> str:
        try:
            with open(self.config_path, "r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise FlyError("Fly Config Not Found. Run 'fly auth login' First") from exc
        token = str((payload or {}).get("access_token") or "").strip()
        if not token:
            raise FlyError("No Access Token Found in ~/.fly/config.yml. Run 'fly auth login' First")
        return token

    def list_orgs(self) -> Dict[str, str]:
        data = self._run_json("orgs", "list", "--json")
        if not isinstance(data, dict):
            raise FlyError("Failed to List Organizations")
        return {str(k): str(v) for k, v in data.items()}

    def list_apps(self, org: Optional[str] = None) -> List[FlyApp]:
        args = ["apps", "list", "--json"]
        if org:
            args.extend(["--org", org])
        return parse_list(FlyApp, self._run_json(*args))

    def list_apps_with_network(self, org: str) -> List[FlyAppInfo]:
        response = requests.get(
            f"{self.api_base}/apps",
            params={"org_slug": org},
            headers={"Authorization": f"Bearer {self.get_token()}", "Content-Type": "application/json"},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
        if not response.ok:
            raise FlyError(f"Failed to List Apps via REST API: HTTP {response.status_code}")
        payload = response.json()
        if not isinstance(payload, dict) or not isinstance(payload.get("apps"), list):
            raise FlyError("Failed to Parse Apps REST API Response")
        return parse_list(FlyAppInfo, payload["apps"])

    def create_app(self, name: str, org: str, *, network: Optional[str] = None) -> None:
        args = ["apps", "create", name, "--org", org, "--json"]
        if network:
            args.extend(["--network", network])
        if not self._run(*args).success:
            raise FlyError(f"Failed to Create App '{name}'")
        logger.info("Created Fly app %s network=%s", name, network or "default")

    def delete_app(self, name: str) -> None:
        if not self._run("apps", "destroy", name, "--yes").success:
            raise FlyError(f"Failed to Delete App '{name}'")
        logger.info("Deleted Fly app %s", name)

    def app_exists(self, name: str) -> bool:
        data = self._run_json("status", "-a", name, "--json")
        return isinstance(data, dict) and bool(data.get("ID"))

    def get_config(self, name: str) -> Optional[Dict[str, Any]]:
        data = self._run_json("config", "show", "-a", name)
        return data if isinstance(data, dict) else None

    def list_machines(self, app: str) -> List[FlyMachine]:
        return parse_list(FlyMachine, self._run_json("machines", "list", "-a", app, "--json"))

    def clone_machine(self, app: str, *, size: str, memory_mb: Optional[int] = None, region: Optional[str] = None) -> FlyMachine:
        existing = self.list_machines(app)
        if not existing:
            raise FlyError("No Existing Machine to Clone. Run 'fly deploy' First")
        if size not in MACHINE_SIZES:
            raise FlyError(f"Unknown machine size '{size}'")
        sizing = MACHINE_SIZES[size]
        args = [
            "machine",
            "clone",
            existing[0].id,
            "-a",
            app,
            "--vm-cpus",
            str(sizing["cpus"]),
            "--vm-memory",
            str(memory_mb or sizing["memory_mb"]),
        ]
        if region:
            args.extend(["--region", region])
        result = self._run(*args)
        if not result.success:
            raise FlyError(extract_error_detail(redact_output(result.stderr)))
        after = self.list_machines(app)
        if not after:
            raise FlyError("Created Machine Not Found")
        return after[-1]

    def destroy_machine(self, app: str, machine_id: str) -> None:
        if not self._run("machines", "destroy", machine_id, "-a", app, "--force").success:
            raise FlyError(f"Failed to Destroy Machine '{machine_id[:8]}'")

    def set_secrets(self, app: str, secrets: Dict[str, str], *, stage: bool = False) -> None:
        pairs = [f"{key}={value}" for key, value in secrets.items() if value]
        if not pairs:
            return
        args = ["secrets", "set", *pairs, "-a", app]
        if stage:
            args.append("--stage")
        if not self._run(*args).success:
            raise FlyError("Failed to Set Secrets")
        logger.info("Set secrets %s on %s stage=%s", ",".join(sorted(k for k, v in secrets.items() if v)), app, stage)

    def list_ips(self, app: str) -> List[FlyIp]:
        return parse_list(FlyIp, self._run_json("ips", "list", "-a", app, "--json"))

    def release_ip(self, app: str, address: str) -> None:
        if not self._run("ips", "release", address, "-a", app).success:
            raise FlyError(f"Failed to Release IP {address} from '{app}'")
        logger.info("Released IP %s from %s", address, app)

    def allocate_flycast_ip(self, app: str, network: str) -> None:
        if not self._run("ips", "allocate-v6", "--private", "--network", network, "-a", app).success:
            raise FlyError(f"Failed to Allocate Flycast IP on Network '{network}'")
        logger.info("Allocated Flycast IP for %s on %s", app, network)

    def list_certs(self, app: str) -> List[str]:
        data = self._run_json("certs", "list", "-a", app, "--json")
        if not isinstance(data, list):
            return []
        return [str(item["Hostname"]) for item in data if isinstance(item, dict) and isinstance(item.get("Hostname"), str)]

    def remove_cert(self, app: str, hostname: str) -> None:
        result = self._run("certs", "remove", hostname, "-a", app, "--yes")
        if not result.success:
            logger.warning("Failed to remove certificate %s from %s: %s", hostname, app, extract_error_detail(redact_output(result.stderr)))

    def deploy_router(self, app: str, docker_dir: str, *, region: Optional[str] = None) -> None:
        args = ["deploy", docker_dir, "-a", app, "--yes", "--ha=false"]
        if region:
            args.extend(["--primary-region", region])
        result = self._run(*args)
        if not result.success:
            raise FlyDeployError(app, result.stderr)

    def deploy_app(
        self,
        app: str,
        *,
        image: Optional[str] = None,
        config: Optional[str] = None,
        region: Optional[str] = None,
    ) -> None:
        args = ["deploy"]
        if config:
            # Build context is the config's directory so the Dockerfile and COPY paths resolve.
            config_abs = os.path.abspath(config)
            args.extend([os.path.dirname(config_abs), "--config", config_abs])
        args.extend(["-a", app, "--yes", "--no-public-ips"])
        if image:
            args.extend(["--image", image])
        if region:
            args.extend(["--primary-region", region])
        result = self._run(*args)
        if not result.success:
            raise FlyDeployError(app, result.stderr)
