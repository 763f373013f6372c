from __future__ import annotations

import re
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from .config import AUTO_OUTPUT
from .psql import SqlSource

_EXTENSION_FORMATS = {
    ".csv": "csv",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".txt": "txt",
}
_LABEL_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def default_output_dir() -> Path:
    return Path.home() / "tmp"


def format_from_extension(path: Optional[Path]) -> Optional[str]:
    if path is None:
        return None
    return _EXTENSION_FORMATS.get(path.suffix.lower())


def effective_format(requested: Optional[str], output_path: Optional[Path]) -> Optional[str]:
    """--format wins; otherwise the output file's extension decides."""
    return requested or format_from_extension(output_path)


def output_label(env: Optional[str], group: Optional[str]) -> str:
    """Label used in generated file names: the group name or the -e value."""
    raw = group or env or "lsql"
    return _LABEL_UNSAFE_RE.sub("-", raw).strip("-") or "lsql"


def _next_serial(make: Callable[[int], Path]) -> Path:
    serial = 1
    while make(serial).exists():
        serial += 1
    return make(serial)


def resolve_output_path(
    target: str,
    label: str,
    *,
    today: Optional[date] = None,
    output_dir: Optional[Path] = None,
) -> Path:
    """
    Bare -o: {output_dir}/{YYYYMMDD}_{label}_{NNNN}. Named file: {stem}_{label}_{NNNN}{ext}
    beside the requested path. The serial increments until the name is unused.
    """
    if target == AUTO_OUTPUT:
        directory = output_dir or default_output_dir()
        directory.mkdir(parents=True, exist_ok=True)
        stamp = (today or date.today()).strftime("%Y%m%d")
        return _next_serial(lambda n: directory / f"{stamp}_{label}_{n:04d}")

    requested = Path(target).expanduser()
    parent = requested.parent
    if str(parent) not in {"", "."}:
        parent.mkdir(parents=True, exist_ok=True)
    return _next_serial(lambda n: parent / f"{requested.stem}_{label}_{n:04d}{requested.suffix}")


def per_environment_path(path: Path, env: str) -> Path:
    """Split output for --no-agg: {stem}_{env}{ext} next to the resolved file."""
    return path.parent / f"{path.stem}_{env}{path.suffix}"


def append_sql_trailer(path: Path, source: SqlSource) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(source.trailer())
