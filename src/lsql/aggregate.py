from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .logging import get_logger
from .parse.table import NO_DATA_PLACEHOLDER, ParsedTable, Row, parse_capture, parse_table
from .util.errors import ExportError

LOG = get_logger(__name__)

ENV_COLUMN = "env"

Capture = Union[str, ParsedTable]


@dataclass(frozen=True)
class AggregatedReport:
    """
    Union of all environments' tables. columns is first-seen ordered; tables
    keeps the input order of environments.
    """

    columns: List[str]
    tables: Dict[str, ParsedTable] = field(default_factory=dict)

    @property
    def environments(self) -> List[str]:
        return list(self.tables.keys())

    def rows_for(self, env: str) -> List[Row]:
        return self.tables[env].rows

    def status_for(self, env: str) -> str:
        return self.tables[env].status or NO_DATA_PLACEHOLDER


def build_report(captures: Mapping[str, Capture]) -> AggregatedReport:
    tables: Dict[str, ParsedTable] = {}
    columns: List[str] = []
    seen = set()
    for env, capture in captures.items():
        table = capture if isinstance(capture, ParsedTable) else parse_table(capture or "")
        tables[env] = table
        for col in table.columns:
            if col not in seen:
                seen.add(col)
                columns.append(col)
    return AggregatedReport(columns=columns, tables=tables)


def render(report: AggregatedReport, fmt: Optional[str] = None) -> str:
    from .export.csv import render_delimited
    from .export.structured import render_json, render_yaml
    from .export.text import render_text

    if fmt is None:
        return render_text(report)
    if fmt == "csv":
        return render_delimited(report, delimiter=",")
    if fmt == "txt":
        return render_delimited(report, delimiter="\t")
    if fmt == "json":
        return render_json(report)
    if fmt == "yaml":
        return render_yaml(report)
    raise ExportError(f"Unsupported output format: {fmt}")


def aggregate(captures: Mapping[str, Capture], fmt: Optional[str] = None) -> str:
    """Merge per-environment captures (raw text or parsed tables) into one artifact."""
    return render(build_report(captures), fmt)


class CaptureSet:
    """
    Per-environment temporary capture files. Each worker writes only to its own
    path; render() consumes them and always removes them afterwards.
    """

    def __init__(self, *, unaligned: bool = False, directory: Optional[Path] = None) -> None:
        self._unaligned = unaligned
        self._directory = directory
        self._paths: Dict[str, Path] = {}

    def __enter__(self) -> CaptureSet:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.cleanup()

    @property
    def unaligned(self) -> bool:
        return self._unaligned

    def path_for(self, env: str) -> Path:
        existing = self._paths.get(env)
        if existing is not None:
            return existing
        fd, name = tempfile.mkstemp(prefix="lsql_temp_", suffix=".txt", dir=self._directory)
        os.close(fd)
        path = Path(name)
        self._paths[env] = path
        return path

    def register(self, envs: List[str]) -> None:
        """Create captures up-front, in input order, before workers start."""
        for env in envs:
            self.path_for(env)

    def tables(self) -> Dict[str, ParsedTable]:
        return {env: parse_capture(path, unaligned=self._unaligned) for env, path in self._paths.items()}

    def raw(self, env: str) -> str:
        path = self._paths.get(env)
        if path is None:
            return ""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def render(self, fmt: Optional[str] = None, *, only: Optional[List[str]] = None) -> str:
        try:
            tables = self.tables()
            if only is not None:
                tables = {env: t for env, t in tables.items() if env in only}
            return aggregate(tables, fmt)
        finally:
            self.cleanup()

    def cleanup(self) -> None:
        for env, path in list(self._paths.items()):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                LOG.warning("Failed to remove capture file %s: %s", path, e, extra={"environment": env})
        self._paths.clear()
