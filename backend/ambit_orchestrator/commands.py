import json
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"tskey-[A-Za-z0-9_-]+")
_SECRET_ENV_KEYS = ("TAILSCALE_API_KEY", "FLY_API_TOKEN", "FLY_ACCESS_TOKEN")


@dataclass
class CommandResult:
    args: List[str]
    code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.code == 0

    def json(self) -> Tuple[bool, Any, str]:
        if not self.success:
            return False, None, self.stderr or f"Command failed with code {self.code}"
        try:
            return True, json.loads(self.stdout), ""
        except json.JSONDecodeError:
            return False, None, f"Failed to parse JSON output: {self.stdout[:100]}"


def run_command(
    args: List[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    interactive: bool = False,
    timeout: Optional[float] = None,
) -> CommandResult:
    merged_env = {**os.environ, **env} if env else None
    logger.debug("Running %s", " ".join(args[:3]))
    try:
        proc = subprocess.run(
            args,
            cwd=cwd,
            env=merged_env,
            stdin=None if interactive else subprocess.DEVNULL,
            capture_output=not interactive,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return CommandResult(args=list(args), code=-1, stderr=str(exc))
    return CommandResult(args=list(args), code=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def redact_output(text: str) -> str:
    redacted = text or ""
    for env_key in _SECRET_ENV_KEYS:
        value = os.environ.get(env_key)
        if value:
            redacted = redacted.replace(value, "***REDACTED***")
    return _TOKEN_RE.sub("***REDACTED***", redacted)
