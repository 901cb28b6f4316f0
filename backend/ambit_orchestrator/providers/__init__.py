from .fly import FlyctlProvider, FlyDeployError, FlyError, FlyProvider
from .tailscale import AclSetResult, DeviceRoutes, TailscaleApiProvider, TailscaleError, TailscaleProvider

__all__ = [
    "AclSetResult",
    "DeviceRoutes",
    "FlyDeployError",
    "FlyError",
    "FlyProvider",
    "FlyctlProvider",
    "TailscaleApiProvider",
    "TailscaleError",
    "TailscaleProvider",
]
