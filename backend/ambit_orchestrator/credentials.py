import json
import logging
import os
from typing import Any, Dict, Optional

from jsonschema import Draft202012Validator

from .settings import CONFIG_DIR, ENV_TAILSCALE_API_KEY, TAILSCALE_API_KEY_PREFIX

logger = logging.getLogger(__name__)

_CREDENTIALS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"apiKey": {"type": "string", "minLength": 1}},
    "required": ["apiKey"],
}
_VALIDATOR = Draft202012Validator(_CREDENTIALS_SCHEMA)


class CredentialStoreError(RuntimeError):
    pass


def is_api_key(value: str) -> bool:
    return (value or "").startswith(TAILSCALE_API_KEY_PREFIX)


class CredentialStore:
    """Tailscale API key from the environment, falling back to `<config dir>/credentials.json`."""

    def __init__(self, config_dir: str = CONFIG_DIR, environ: Optional[Dict[str, str]] = None):
        self.config_dir = config_dir
        self.environ = os.environ if environ is None else environ

    @property
    def path(self) -> str:
        return os.path.join(self.config_dir, "credentials.json")

    def get_tailscale_api_key(self) -> Optional[str]:
        env_key = self.environ.get(ENV_TAILSCALE_API_KEY)
        if env_key:
            return env_key
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable credentials file %s: %s", self.path, exc)
            return None
        if not _VALIDATOR.is_valid(payload):
            logger.warning("Ignoring malformed credentials file %s", self.path)
            return None
        return payload["apiKey"]

    def set_tailscale_api_key(self, key: str) -> None:
        if not is_api_key(key):
            raise CredentialStoreError(f"Tailscale API key must start with {TAILSCALE_API_KEY_PREFIX}")
        os.makedirs(self.config_dir, mode=0o700, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps({"apiKey": key}, indent=2) + "\n")
        # An existing file keeps its old mode through O_CREAT.
        os.chmod(self.path, 0o600)
