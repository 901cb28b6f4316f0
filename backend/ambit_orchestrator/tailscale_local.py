import logging
import time
from typing import Any, Callable, Dict, Optional

from .commands import command_exists, run_command
from .providers.tailscale import TailscaleProvider
from .schemas import TailscaleDevice
from .settings import DEVICE_POLL_INTERVAL_SECONDS, DEVICE_WAIT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

TAILSCALE_CLI = "tailscale"


class LocalTailscale:
    """The tailscale client running on this workstation."""

    def __init__(self, binary: str = TAILSCALE_CLI):
        self.binary = binary

    def is_installed(self) -> bool:
        return command_exists(self.binary)

    def status(self) -> Optional[Dict[str, Any]]:
        ok, data, _ = run_command([self.binary, "status", "--json"]).json()
        return data if ok and isinstance(data, dict) else None

    def is_connected(self) -> bool:
        status = self.status()
        return bool(status) and status.get("BackendState") == "Running"

    def is_accept_routes_enabled(self) -> bool:
        ok, prefs, _ = run_command([self.binary, "debug", "prefs"]).json()
        return ok and isinstance(prefs, dict) and prefs.get("RouteAll") is True

    def enable_accept_routes(self) -> bool:
        return run_command([self.binary, "set", "--accept-routes"]).success


def wait_for_device(
    tailscale: TailscaleProvider,
    hostname: str,
    *,
    timeout: float = DEVICE_WAIT_TIMEOUT_SECONDS,
    interval: float = DEVICE_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[TailscaleDevice]:
    """Poll for a device at a fixed interval; None once the timeout elapses."""
    started = clock()
    while clock() - started < timeout:
        device = tailscale.get_device_by_hostname(hostname)
        if device:
            return device
        logger.debug("Device %s not in tailnet yet", hostname)
        sleep(interval)
    logger.warning("Timed out after %ss waiting for device %s", timeout, hostname)
    return None
