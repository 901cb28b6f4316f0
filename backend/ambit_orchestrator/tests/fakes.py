import copy
from typing import Any, Dict, List, Optional

from ambit_orchestrator.providers.fly import FlyDeployError, FlyProvider
from ambit_orchestrator.providers.tailscale import AclSetResult, DeviceRoutes, TailscaleError, TailscaleProvider
from ambit_orchestrator.schemas import FlyApp, FlyAppInfo, FlyIp, FlyMachine, TailscaleDevice


class FakeFly(FlyProvider):
    """In-memory Fly org. `calls` records every side-effecting call."""

    def __init__(self, org: str = "acme"):
        self.org = org
        self.apps: Dict[str, Dict[str, Any]] = {}
        self.machines: Dict[str, List[FlyMachine]] = {}
        self.ips: Dict[str, List[FlyIp]] = {}
        self.certs: Dict[str, List[str]] = {}
        self.configs: Dict[str, Optional[Dict[str, Any]]] = {}
        self.secrets: Dict[str, Dict[str, str]] = {}
        self.calls: List[tuple] = []
        self.deploy_error: Optional[str] = None
        self.router_private_ip = "fdaa:0:1234:a7b:1::2"
        self.allocated_address = "fdaa:0:1234::9"
        self.public_ips_on_deploy: List[str] = []

    def add_app(self, name: str, network: str = "default", status: str = "deployed") -> None:
        self.apps[name] = {"name": name, "network": network, "status": status}

    def add_machine(self, app: str, state: str = "started", private_ip: Optional[str] = None, region: str = "iad") -> None:
        self.machines.setdefault(app, []).append(
            FlyMachine(id=f"m{len(self.machines.get(app, []))}", name=app, state=state, region=region, private_ip=private_ip)
        )

    def add_ip(self, app: str, address: str, ip_type: str, network: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"Address": address, "Type": ip_type}
        if network is not None:
            payload["Network"] = {"Name": network}
        self.ips.setdefault(app, []).append(FlyIp.model_validate(payload))

    def list_apps(self, org: Optional[str] = None) -> List[FlyApp]:
        return [FlyApp(Name=app["name"], Status=app["status"]) for app in self.apps.values()]

    def list_apps_with_network(self, org: str) -> List[FlyAppInfo]:
        return [
            FlyAppInfo(name=app["name"], network=app["network"], status=app["status"], organization={"slug": self.org})
            for app in self.apps.values()
        ]

    def create_app(self, name: str, org: str, *, network: Optional[str] = None) -> None:
        self.calls.append(("create_app", name, network))
        self.add_app(name, network or "default", status="pending")

    def delete_app(self, name: str) -> None:
        self.calls.append(("delete_app", name))
        self.apps.pop(name, None)
        self.machines.pop(name, None)

    def app_exists(self, name: str) -> bool:
        return name in self.apps

    def get_config(self, name: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.configs.get(name, {}))

    def list_machines(self, app: str) -> List[FlyMachine]:
        return list(self.machines.get(app, []))

    def clone_machine(self, app: str, *, size: str, memory_mb: Optional[int] = None, region: Optional[str] = None) -> FlyMachine:
        self.calls.append(("clone_machine", app, size))
        self.add_machine(app, region=region or "iad")
        return self.machines[app][-1]

    def destroy_machine(self, app: str, machine_id: str) -> None:
        self.calls.append(("destroy_machine", app, machine_id))
        self.machines[app] = [m for m in self.machines.get(app, []) if m.id != machine_id]

    def set_secrets(self, app: str, secrets: Dict[str, str], *, stage: bool = False) -> None:
        self.calls.append(("set_secrets", app, tuple(sorted(secrets)), stage))
        self.secrets.setdefault(app, {}).update(secrets)

    def list_ips(self, app: str) -> List[FlyIp]:
        return list(self.ips.get(app, []))

    def release_ip(self, app: str, address: str) -> None:
        self.calls.append(("release_ip", app, address))
        self.ips[app] = [ip for ip in self.ips.get(app, []) if ip.address != address]

    def allocate_flycast_ip(self, app: str, network: str) -> None:
        self.calls.append(("allocate_flycast_ip", app, network))
        self.add_ip(app, self.allocated_address, "private_v6", network)

    def list_certs(self, app: str) -> List[str]:
        return list(self.certs.get(app, []))

    def remove_cert(self, app: str, hostname: str) -> None:
        self.calls.append(("remove_cert", app, hostname))
        self.certs[app] = [cert for cert in self.certs.get(app, []) if cert != hostname]

    def deploy_router(self, app: str, docker_dir: str, *, region: Optional[str] = None) -> None:
        self.calls.append(("deploy_router", app, docker_dir))
        if self.deploy_error:
            raise FlyDeployError(app, self.deploy_error)
        self.machines[app] = []
        self.add_machine(app, state="started", private_ip=self.router_private_ip, region=region or "iad")

    def deploy_app(self, app: str, *, image: Optional[str] = None, config: Optional[str] = None, region: Optional[str] = None) -> None:
        self.calls.append(("deploy_app", app, image, config))
        if self.deploy_error:
            raise FlyDeployError(app, self.deploy_error)
        if not self.machines.get(app):
            self.add_machine(app, state="started", private_ip="fdaa:0:1234:a7b:2::5")
        for address in self.public_ips_on_deploy:
            self.add_ip(app, address, "v4")


class FakeTailscale(TailscaleProvider):
    def __init__(self, policy: Optional[Dict[str, Any]] = None):
        self.devices: List[TailscaleDevice] = []
        self.routes: Dict[str, DeviceRoutes] = {}
        self.split_dns: Dict[str, List[str]] = {}
        self.policy: Optional[Dict[str, Any]] = policy if policy is not None else {}
        self.calls: List[tuple] = []
        self.validate_result = AclSetResult(ok=True, status=200)
        self.set_result = AclSetResult(ok=True, status=200)
        self.on_validate = None
        self.split_dns_error: Optional[str] = None

    def add_device(self, hostname: str, *, device_id: str = "dev1", addresses: Optional[List[str]] = None, tags: Optional[List[str]] = None, online: bool = True, last_seen: Optional[str] = None, advertised: Optional[List[str]] = None, enabled: Optional[List[str]] = None) -> TailscaleDevice:
        device = TailscaleDevice(
            id=device_id,
            hostname=hostname,
            addresses=addresses or ["100.64.0.10"],
            tags=tags or [],
            online=online,
            lastSeen=last_seen,
        )
        self.devices.append(device)
        self.routes[device_id] = DeviceRoutes(advertised=list(advertised or []), enabled=list(enabled or []))
        return device

    def validate_key(self) -> bool:
        return True

    def create_auth_key(self, *, tags: List[str], reusable: bool = False, ephemeral: bool = False, preauthorized: bool = True) -> str:
        self.calls.append(("create_auth_key", tuple(tags), reusable, ephemeral, preauthorized))
        return "tskey-auth-fake"

    def list_devices(self) -> List[TailscaleDevice]:
        return list(self.devices)

    def delete_device(self, device_id: str) -> None:
        self.calls.append(("delete_device", device_id))
        self.devices = [d for d in self.devices if d.id != device_id]

    def get_routes(self, device_id: str) -> Optional[DeviceRoutes]:
        routes = self.routes.get(device_id)
        if routes is None:
            return None
        return DeviceRoutes(advertised=list(routes.advertised), enabled=list(routes.enabled))

    def approve_routes(self, device_id: str, routes: List[str]) -> None:
        self.calls.append(("approve_routes", device_id, tuple(routes)))
        current = self.routes.setdefault(device_id, DeviceRoutes())
        current.enabled = sorted(set(current.enabled) | set(routes))
        current.advertised = sorted(set(current.advertised) | set(routes))

    def get_split_dns(self) -> Dict[str, List[str]]:
        if self.split_dns_error:
            raise TailscaleError(self.split_dns_error)
        return {k: list(v) for k, v in self.split_dns.items()}

    def set_split_dns(self, domain: str, nameservers: List[str]) -> None:
        self.calls.append(("set_split_dns", domain, tuple(nameservers)))
        self.split_dns[domain] = list(nameservers)

    def clear_split_dns(self, domain: str) -> None:
        self.calls.append(("clear_split_dns", domain))
        self.split_dns.pop(domain, None)

    def get_policy(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.policy) if self.policy is not None else None

    def set_policy(self, policy: Dict[str, Any]) -> AclSetResult:
        self.calls.append(("set_policy",))
        if self.set_result.ok:
            self.policy = copy.deepcopy(policy)
        return self.set_result

    def validate_policy(self, policy: Dict[str, Any]) -> AclSetResult:
        self.calls.append(("validate_policy",))
        if self.on_validate:
            self.on_validate()
        return self.validate_result


class FakeLocal:
    def __init__(self, installed: bool = True, accept_routes: bool = True, connected: bool = True, can_enable: bool = True):
        self.installed = installed
        self.accept_routes = accept_routes
        self.connected = connected
        self.can_enable = can_enable
        self.enable_calls = 0

    def is_installed(self) -> bool:
        return self.installed

    def is_connected(self) -> bool:
        return self.connected

    def is_accept_routes_enabled(self) -> bool:
        return self.installed and self.accept_routes

    def enable_accept_routes(self) -> bool:
        self.enable_calls += 1
        if self.can_enable:
            self.accept_routes = True
        return self.can_enable
