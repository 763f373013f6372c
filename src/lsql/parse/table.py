from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

NO_DATA_PLACEHOLDER = "(no data returned)"
FIELD_DELIMITER = "|"
SHORT_STATUS_LIMIT = 50

_SEPARATOR_RE = re.compile(r"^-+(\+-+)*$")
_ROW_COUNT_RE = re.compile(r"^\(\d+\s+rows?\)$")
_TIMING_RE = re.compile(r"^Time:")
_STATUS_VERB_RE = re.compile(
    r"^(UPDATE|INSERT|DELETE|CREATE|DROP|ALTER|SET|GRANT|REVOKE|COPY|BEGIN|COMMIT|ROLLBACK)",
    re.IGNORECASE,
)
_NO_RELATIONS_PHRASE = "No relations found"

Row = Dict[str, str]


@dataclass(frozen=True)
class ParsedTable:
    """
    One environment's capture, structured.

    rows is empty and status carries a summary when the capture is not a table.
    columns survive a zero-row result (header + separator, no data).
    """

    columns: List[str] = field(default_factory=list)
    column_widths: Dict[str, int] = field(default_factory=dict)
    rows: List[Row] = field(default_factory=list)
    status: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.columns and not self.rows and self.status is None


def status_message(lines: List[str]) -> Optional[str]:
    """Summarize non-tabular output (DML tags, notices) as a single line."""
    content = " ".join(line.strip() for line in lines if line.strip())
    if not content:
        return None
    if _STATUS_VERB_RE.match(content):
        return content
    if _NO_RELATIONS_PHRASE in content:
        return NO_DATA_PLACEHOLDER
    return content if len(content) < SHORT_STATUS_LIMIT else NO_DATA_PLACEHOLDER


def _is_separator(line: str) -> bool:
    return bool(_SEPARATOR_RE.match(line.strip()))


def _is_row_terminator(line: str) -> bool:
    return not line or bool(_ROW_COUNT_RE.match(line)) or bool(_TIMING_RE.match(line))


def _separator_widths(separator: str, columns: List[str]) -> Dict[str, int]:
    widths = [len(run) for run in separator.strip().split("+")]
    return {col: widths[idx] for idx, col in enumerate(columns) if idx < len(widths)}


def _status_table(lines: List[str]) -> ParsedTable:
    return ParsedTable(status=status_message(lines))


def parse_table(raw_text: str) -> ParsedTable:
    """
    Parse psql aligned output:

         id | name
        ----+------
          1 | foo
        (1 row)

    Text without a header/separator pair becomes a status-only table.
    """
    lines = raw_text.splitlines()
    header_index = next((i for i, line in enumerate(lines) if line.strip()), None)
    if header_index is None:
        return ParsedTable()

    columns = [c.strip() for c in lines[header_index].split(FIELD_DELIMITER)]
    columns = [c for c in columns if c]
    if not columns:
        return _status_table(lines)

    separator_index = next(
        (i for i in range(header_index + 1, len(lines)) if _is_separator(lines[i])),
        None,
    )
    if separator_index is None:
        return _status_table(lines)

    widths = _separator_widths(lines[separator_index], columns)

    rows: List[Row] = []
    for line in lines[separator_index + 1 :]:
        line = line.strip()
        if _is_row_terminator(line):
            break
        # str.split keeps trailing empty fields, so NULL cells keep their position
        values = [v.strip() for v in line.split(FIELD_DELIMITER)]
        if len(values) != len(columns):
            continue
        rows.append(dict(zip(columns, values)))

    return ParsedTable(columns=columns, column_widths=widths, rows=rows)


def _is_command_output(lines: List[str], delimiter: str) -> bool:
    """Command tags (BEGIN, UPDATE 3, COMMIT, ...) rather than a header and rows."""
    if delimiter in lines[0]:
        return False
    if len(lines) == 1:
        return True
    # Single-column results end with a "(N rows)" footer, which is no command tag.
    return all(_STATUS_VERB_RE.match(line.strip()) for line in lines)


def parse_unaligned(raw_text: str, delimiter: str = "\t") -> ParsedTable:
    """
    Parse psql unaligned output (-A -F <delimiter>): a header line, then one
    row per line, then an optional "(N rows)" footer.
    """
    lines = [line for line in raw_text.splitlines() if line.strip()]
    if not lines:
        return ParsedTable()
    if _is_command_output(lines, delimiter):
        return _status_table(lines)
    columns = [c.strip() for c in lines[0].split(delimiter)]

    rows: List[Row] = []
    for line in lines[1:]:
        if _ROW_COUNT_RE.match(line.strip()) or _TIMING_RE.match(line.strip()):
            continue
        values = line.split(delimiter)
        if len(values) != len(columns):
            continue
        rows.append(dict(zip(columns, values)))
    widths = {col: max([len(col)] + [len(r[col]) for r in rows]) for col in columns}
    return ParsedTable(columns=columns, column_widths=widths, rows=rows)


def parse_capture(path: Path, *, unaligned: bool = False) -> ParsedTable:
    """Parse a capture file; a missing or empty file is an empty table."""
    try:
        raw = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ParsedTable()
    if not raw.strip():
        return ParsedTable()
    return parse_unaligned(raw) if unaligned else parse_table(raw)
