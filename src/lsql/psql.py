from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from .logging import get_logger
from .util.errors import ConfigError, SqlExecutionError
from .util.redact import redact_text

LOG = get_logger(__name__)

PSQL_BIN = "psql"

_SQL_KEYWORD_RE = re.compile(
    r"^\s*(SELECT|INSERT|UPDATE|DELETE|CREATE|DROP|ALTER|WITH|BEGIN|COMMIT|ROLLBACK)",
    re.IGNORECASE | re.MULTILINE,
)
_HOSTNAME_RE = re.compile(r"postgres(?:ql)?://(?:[^:@]+(?::[^@]*)?@)?([^:/?]+)")
_PROD_RE = re.compile(r"^prod", re.IGNORECASE)

ANSI_RED = "\033[0;31m"
ANSI_GREEN = "\033[0;32m"
ANSI_RESET = "\033[0m"

UNALIGNED_DELIMITER = "\t"


@dataclass(frozen=True)
class SqlSource:
    """A SQL command string or a path to a SQL file."""

    text: str
    path: Optional[Path] = None

    @property
    def is_file(self) -> bool:
        return self.path is not None

    def psql_args(self) -> List[str]:
        if self.path is not None:
            return ["-f", str(self.path)]
        return ["-c", self.text]

    def trailer(self) -> str:
        label = "SQL file content" if self.is_file else "SQL command"
        body = self.text if self.text.endswith("\n") else self.text + "\n"
        return f"/* {label}:\n{body}*/\n"


def looks_like_sql(content: str) -> bool:
    return bool(_SQL_KEYWORD_RE.search(content or ""))


def resolve_sql_source(sql: str) -> SqlSource:
    """
    Treat `sql` as a file when such a file exists. A file must contain at least
    one line starting with a SQL keyword.
    """
    candidate = Path(sql).expanduser()
    try:
        is_file = candidate.is_file()
    except OSError:
        is_file = False
    if not is_file:
        return SqlSource(text=sql)
    content = candidate.read_text(encoding="utf-8", errors="replace")
    if not looks_like_sql(content):
        raise ConfigError(f"The file '{sql}' does not contain valid SQL commands.")
    return SqlSource(text=content, path=candidate)


def extract_hostname(database_url: str) -> str:
    m = _HOSTNAME_RE.match(database_url or "")
    return m.group(1) if m else "unknown host"


def direct_output_flags(fmt: Optional[str]) -> List[str]:
    """Flags for a single-environment run writing straight to an output file."""
    if fmt == "csv":
        return ["-t", "-A", "-F,"]
    if fmt in {"json", "yaml", "txt"}:
        return ["-t", "-A"]
    return []


def capture_flags(unaligned: bool) -> List[str]:
    """Flags for per-environment captures that are parsed and aggregated later."""
    if unaligned:
        return ["-A", "-F", UNALIGNED_DELIMITER]
    return []


def prompt_for(env_name: str, mode_display: str = "", *, color: bool = True) -> str:
    """psql prompt: red for prod* environments, green otherwise."""
    body = f"{env_name}{mode_display}:%/%R%#"
    if not color:
        return f"{body} "
    start = ANSI_RED if _PROD_RE.match(env_name) else ANSI_GREEN
    return f"{start}{body}{ANSI_RESET} "


class PsqlRunner:
    """Subprocess wrapper for the `psql` client."""

    def __init__(self, *, binary: str = PSQL_BIN, run: Optional[Callable[..., Any]] = None) -> None:
        self.binary = binary
        self._run = run or subprocess.run

    def command(self, database_url: str, source: SqlSource, flags: Optional[List[str]] = None) -> List[str]:
        return [self.binary, "-d", database_url] + list(flags or []) + source.psql_args()

    def capture(
        self,
        database_url: str,
        source: SqlSource,
        output_path: Path,
        *,
        flags: Optional[List[str]] = None,
        append: bool = False,
    ) -> None:
        """Run `source` and write stdout to `output_path`. Raises SqlExecutionError."""
        argv = self.command(database_url, source, flags)
        try:
            with open(output_path, "a" if append else "w", encoding="utf-8") as out:
                proc = self._run(argv, stdout=out, stderr=subprocess.PIPE, text=True, check=False)
        except FileNotFoundError as e:
            raise SqlExecutionError(f"'{self.binary}' not found on PATH") from e
        if proc.returncode != 0:
            detail = redact_text((proc.stderr or "").strip()) or f"exit status {proc.returncode}"
            raise SqlExecutionError(detail)

    def stream(self, database_url: str, source: SqlSource, *, flags: Optional[List[str]] = None) -> int:
        """Run `source` with stdout inherited from this process."""
        try:
            proc = self._run(self.command(database_url, source, flags), check=False)
        except FileNotFoundError as e:
            raise SqlExecutionError(f"'{self.binary}' not found on PATH") from e
        if proc.returncode != 0:
            raise SqlExecutionError(f"psql exited with status {proc.returncode}")
        return proc.returncode

    def interactive(self, database_url: str, prompt: str) -> int:
        argv = [self.binary, database_url, f"--set=PROMPT1={prompt}", f"--set=PROMPT2={prompt}"]
        try:
            proc = self._run(argv, check=False)
        except FileNotFoundError as e:
            raise SqlExecutionError(f"'{self.binary}' not found on PATH") from e
        return proc.returncode
