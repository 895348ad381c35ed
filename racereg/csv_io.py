"""CSV reading and writing for payment imports and admin exports."""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from io import StringIO
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from .money import format_decimal

BOM = "\ufeff"
DEFAULT_DELIMITERS = (";", ",", "\t", "|")

_LINE_SPLIT = re.compile(r"\r?\n")


# ---------------------------
# Reading
# ---------------------------

def parse_line(text: str, delimiter: str) -> list[str]:
    """Split one CSV line into fields.

    A quote opens a quoted field only at the very start of a field; anywhere
    else it is kept as data. Inside a quoted field ``""`` stands for one quote
    and the delimiter is ordinary text. The last field is always emitted, so
    ``"a,"`` gives ``["a", ""]``.
    """
    values: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and text[i + 1] == '"':
                    current.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                current.append(ch)
        else:
            if ch == '"' and not current:
                in_quotes = True
            elif ch == delimiter:
                values.append("".join(current))
                current = []
            else:
                current.append(ch)
        i += 1
    values.append("".join(current))
    return values


def split_lines(text: str) -> list[str]:
    """Split a payload into non-blank lines.

    Drops a leading byte-order-mark and an Excel ``sep=`` directive line.
    """
    if text.startswith(BOM):
        text = text[len(BOM):]
    lines = [line for line in _LINE_SPLIT.split(text) if line.strip()]
    if lines and lines[0].lower().startswith("sep="):
        lines.pop(0)
    return lines


def _clean_header(value: str) -> str:
    return value.strip().strip('"').strip().lower()


def find_column(headers: Sequence[str], aliases: Iterable[str]) -> int:
    """Index of the first header matching an alias; earlier aliases win."""
    cleaned = [_clean_header(h) for h in headers]
    for alias in aliases:
        if alias.lower() in cleaned:
            return cleaned.index(alias.lower())
    return -1


def detect_delimiter(
    header_line: str,
    required: Sequence[Iterable[str]],
    candidates: Sequence[str] = DEFAULT_DELIMITERS,
) -> Optional[str]:
    """Return the first delimiter whose header split contains every required column.

    ``required`` is a list of alias groups; each group must match one column.
    """
    for delimiter in candidates:
        headers = parse_line(header_line, delimiter)
        if all(find_column(headers, group) != -1 for group in required):
            return delimiter
    return None


# ---------------------------
# Writing
# ---------------------------

@dataclass(frozen=True)
class CsvColumn:
    header: str
    value: Union[str, Callable[[Any], Any]]

    def extract(self, record: Any) -> Any:
        if callable(self.value):
            return self.value(record)
        if isinstance(record, dict):
            return record.get(self.value)
        return getattr(record, self.value)


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format_decimal(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _export_cell(value: Any) -> str:
    # csv.writer leaves a bare \r unquoted unless it is part of the line terminator
    return format_cell(value).replace("\r\n", "\n").replace("\r", "\n")


def export_to_csv(
    records: Iterable[Any],
    columns: Sequence[CsvColumn],
    *,
    delimiter: str = ",",
    line_terminator: str = "\n",
) -> str:
    buf = StringIO()
    w = csv.writer(buf, delimiter=delimiter, lineterminator=line_terminator, quoting=csv.QUOTE_MINIMAL)
    w.writerow([c.header for c in columns])
    for record in records:
        w.writerow([_export_cell(c.extract(record)) for c in columns])
    return buf.getvalue()


def with_bom(text: str) -> str:
    return BOM + text
