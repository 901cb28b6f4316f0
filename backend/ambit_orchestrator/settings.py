import os


ROUTER_APP_PREFIX = os.environ.get("AMBIT_ROUTER_APP_PREFIX", "ambit-")
DEFAULT_FLY_NETWORK = os.environ.get("AMBIT_DEFAULT_FLY_NETWORK", "default")
DEFAULT_REGION = os.environ.get("AMBIT_DEFAULT_REGION", "iad")
FLY_PRIVATE_SUBNET = os.environ.get("AMBIT_FLY_PRIVATE_SUBNET", "fdaa::/16")
SOCKS_PROXY_PORT = int(os.environ.get("AMBIT_SOCKS_PROXY_PORT", "1080"))

TAILSCALE_API_BASE = os.environ.get("AMBIT_TAILSCALE_API_BASE", "https://api.tailscale.com/api/v2").rstrip("/")
TAILSCALE_TAILNET = os.environ.get("AMBIT_TAILSCALE_TAILNET", "-")
TAILSCALE_API_KEY_PREFIX = "tskey-api-"
ENV_TAILSCALE_API_KEY = "TAILSCALE_API_KEY"

FLY_API_BASE = os.environ.get("AMBIT_FLY_API_BASE", "https://api.machines.dev/v1").rstrip("/")
FLYCTL = os.environ.get("AMBIT_FLYCTL", "fly")
FLY_CONFIG_PATH = os.path.expanduser(os.environ.get("FLY_CONFIG_PATH", "~/.fly/config.yml"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("AMBIT_HTTP_TIMEOUT_SECONDS", "30"))

DEVICE_WAIT_TIMEOUT_SECONDS = float(os.environ.get("AMBIT_DEVICE_WAIT_TIMEOUT_SECONDS", "180"))
DEVICE_POLL_INTERVAL_SECONDS = float(os.environ.get("AMBIT_DEVICE_POLL_INTERVAL_SECONDS", "5"))

CONFIG_DIR = os.path.expanduser(os.environ.get("AMBIT_CONFIG_DIR", "~/.config/ambit"))
ROUTER_DOCKER_DIR = os.environ.get("AMBIT_ROUTER_DOCKER_DIR", "").strip()
LOG_LEVEL = os.environ.get("AMBIT_LOG_LEVEL", "INFO").upper()

# Secret names consumed by the router image and workloads.
SECRET_TAILSCALE_AUTHKEY = "TAILSCALE_AUTHKEY"
SECRET_NETWORK_NAME = "NETWORK_NAME"
SECRET_ROUTER_ID = "ROUTER_ID"
SECRET_OUTBOUND_PROXY = "AMBIT_OUTBOUND_PROXY"
