from __future__ import annotations

import re
import subprocess
from typing import Any, Callable, List, Optional

from .environments import EnvironmentContext
from .logging import get_logger
from .util.errors import SecretLookupError
from .util.redact import redact_text

LOG = get_logger(__name__)

DATABASE_SECRET = "DATABASE_MAIN_URL"
LOTUS_BIN = "lotus"


def parse_secret_output(name: str, stdout: str) -> Optional[str]:
    """
    Extract a secret value from `lotus secret get` output. Accepts `NAME=value`,
    `NAME: value` or a single bare value line.
    """
    pattern = re.compile(rf"^\s*{re.escape(name)}\s*(?:=|:)\s*(.*)$")
    lines = [line.strip() for line in (stdout or "").splitlines() if line.strip()]
    for line in lines:
        m = pattern.match(line)
        if m:
            return m.group(1).strip() or None
    if len(lines) == 1:
        return lines[0]
    return None


class LotusClient:
    """Subprocess wrapper for the `lotus` secrets CLI."""

    def __init__(
        self,
        *,
        binary: str = LOTUS_BIN,
        run: Optional[Callable[..., Any]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.binary = binary
        self._run = run or subprocess.run
        self.timeout = timeout

    def _invoke(self, args: List[str]) -> subprocess.CompletedProcess:
        return self._run(
            [self.binary] + args,
            capture_output=True,
            text=True,
            check=False,
            timeout=self.timeout,
        )

    def secret_args(self, name: str, ctx: EnvironmentContext) -> List[str]:
        args = ["secret", "get", name, "-s", ctx.space, "-e", ctx.name, "-r", ctx.region]
        if ctx.cluster:
            args += ["-c", ctx.cluster]
        else:
            args += ["-a", ctx.application]
        return args

    def get_secret(self, name: str, ctx: EnvironmentContext) -> str:
        try:
            proc = self._invoke(self.secret_args(name, ctx))
        except FileNotFoundError as e:
            raise SecretLookupError(f"'{self.binary}' not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise SecretLookupError(f"Timed out retrieving {name} for environment: {ctx.name}") from e
        if proc.returncode != 0:
            detail = redact_text((proc.stderr or "").strip())
            raise SecretLookupError(f"Failed to retrieve {name} for environment {ctx.name}: {detail}")
        value = parse_secret_output(name, proc.stdout)
        if not value:
            raise SecretLookupError(f"Failed to retrieve {name} for environment: {ctx.name}")
        return value

    def get_database_url(self, ctx: EnvironmentContext) -> str:
        return self.get_secret(DATABASE_SECRET, ctx)

    def ping(self, space: str, region: str) -> bool:
        try:
            proc = self._invoke(["ping", "-s", space, "-r", region])
        except (OSError, subprocess.TimeoutExpired) as e:
            LOG.warning("lotus ping failed for %s/%s: %s", space, region, e)
            return False
        if proc.returncode != 0:
            LOG.warning(
                "lotus ping failed for %s/%s: %s", space, region, redact_text((proc.stderr or "").strip())
            )
            return False
        return True

    def login(self) -> bool:
        try:
            proc = self._invoke(["login"])
        except (OSError, subprocess.TimeoutExpired) as e:
            LOG.warning("lotus pre-authentication failed: %s", e)
            return False
        if proc.returncode != 0:
            LOG.warning("lotus pre-authentication failed: %s", redact_text((proc.stderr or "").strip()))
            return False
        return True
