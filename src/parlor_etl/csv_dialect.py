"""parlor_etl.csv_dialect

CSV tokenizing and dialect detection for parlor exports.

The exports are hand-edited spreadsheets saved as CSV.  They are not reliably
RFC 4180: unquoted cells carry stray padding and an occasional quote is never
closed.  Tokenizing therefore never raises, and detection classifies the file
from its headers before any row is normalized.

Dialects:
  store_profile    — long format: store_id, number, element, 要素名, 情報, 大項目, 重要度
  machine_master   — flat machine rows, or long format keyed by machine_id
  event_master     — flat event rows, or long format keyed by event_id
  production_data  — store-profile-shaped rows whose element is day_N /
                     machine_day_N / top10_day_N, or flat store_id/date/production_data
  unknown          — rejected with a user-facing error
"""

from __future__ import annotations

import re
from pathlib import Path

STORE_PROFILE = "store_profile"
MACHINE_MASTER = "machine_master"
EVENT_MASTER = "event_master"
PRODUCTION_DATA = "production_data"
UNKNOWN = "unknown"

DIALECTS = (STORE_PROFILE, MACHINE_MASTER, EVENT_MASTER, PRODUCTION_DATA)

# Canonical long-format column → accepted header spellings (compared lowercased).
LONG_FORMAT_ALIASES: dict[str, tuple[str, ...]] = {
    "number": ("number", "no", "seq"),
    "element": ("element", "attribute_key"),
    "element_name": ("要素名", "attribute_label", "element_name"),
    "value": ("情報", "value", "information"),
    "category": ("大項目", "category"),
    "importance": ("重要度", "importance"),
}

_DAY_ELEMENT_RE = re.compile(r"^(?:machine_|top10_)?day_\d{1,2}$")

_FILENAME_HINTS = (
    ("store_production_info_", PRODUCTION_DATA),
    ("machines_info", MACHINE_MASTER),
    ("event_", EVENT_MASTER),
    ("store_", STORE_PROFILE),
)

_PRODUCTION_SAMPLE_ROWS = 50


class UnknownDialectError(ValueError):
    """Raised when a CSV payload matches none of the recognized dialects."""


# ---------------------------------------------------------------------------
# Line parser
# ---------------------------------------------------------------------------

def parse_csv_line(line: str) -> list[str]:
    """Tokenize one logical CSV record into fields.

    Quoted fields keep commas and newlines literally and decode ``""`` to one
    quote; their content is returned untouched.  Unquoted fields are trimmed.
    An unterminated quote swallows the rest of the record.
    """
    fields: list[str] = []
    buf: list[str] = []
    in_quotes = False
    # Length of buf when the closing quote was seen; None for unquoted fields.
    quoted_len: int | None = None
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and line[i + 1] == '"':
                    buf.append('"')
                    i += 1
                else:
                    in_quotes = False
                    quoted_len = len(buf)
            else:
                buf.append(ch)
        elif ch == '"' and quoted_len is None and not "".join(buf).strip():
            # Opening quote: padding in front of it is dropped.
            buf = []
            in_quotes = True
        elif ch == ",":
            fields.append(_finish_field(buf, quoted_len))
            buf = []
            quoted_len = None
        else:
            buf.append(ch)
        i += 1
    if in_quotes:
        quoted_len = len(buf)
    fields.append(_finish_field(buf, quoted_len))
    return fields


def _finish_field(buf: list[str], quoted_len: int | None) -> str:
    text = "".join(buf)
    if quoted_len is None:
        return text.strip()
    # Text trailing the closing quote is kept, minus its padding.
    return text[:quoted_len] + text[quoted_len:].strip()


def _ends_inside_quotes(line: str, in_quotes: bool) -> bool:
    """Scan one physical line with the parse_csv_line quoting rule.

    A quote opens a field only when nothing but padding precedes it in that
    field; elsewhere it is literal text.
    """
    field_blank = not in_quotes
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and line[i + 1] == '"':
                    i += 1
                else:
                    in_quotes = False
        elif ch == ",":
            field_blank = True
        elif ch == '"' and field_blank:
            in_quotes = True
            field_blank = False
        elif not ch.isspace():
            field_blank = False
        i += 1
    return in_quotes


def split_csv_records(text: str) -> list[str]:
    """Split raw file text into logical records.

    Newlines inside quoted fields stay inside their record; blank records are
    dropped and a leading UTF-8 BOM is removed.  A quote still open at end of
    input only claims the rest of its own line; the lines after it are split
    again as records of their own.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    lines = text.split("\n")
    records: list[str] = []
    i = 0
    while i < len(lines):
        start = i
        in_quotes = _ends_inside_quotes(lines[i], False)
        while in_quotes and i + 1 < len(lines):
            i += 1
            in_quotes = _ends_inside_quotes(lines[i], True)
        if in_quotes:
            i = start
        record = "\n".join(lines[start:i + 1]).rstrip("\r")
        if record.strip():
            records.append(record)
        i += 1
    return records


def read_csv_table(text: str) -> tuple[list[str], list[dict[str, str]]]:
    """Return (headers, rows) where each row maps header → cell.

    Ragged rows are padded with "" or truncated to the header width.
    """
    records = split_csv_records(text)
    if not records:
        return [], []
    headers = parse_csv_line(records[0])
    rows: list[dict[str, str]] = []
    for record in records[1:]:
        cells = parse_csv_line(record)
        if len(cells) < len(headers):
            cells = cells + [""] * (len(headers) - len(cells))
        rows.append(dict(zip(headers, cells)))
    return headers, rows


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

def resolve_long_columns(headers: list[str]) -> dict[str, str]:
    """Map canonical long-format column names to the header actually present."""
    lowered = {h.strip().lower(): h for h in headers}
    resolved: dict[str, str] = {}
    for canonical, aliases in LONG_FORMAT_ALIASES.items():
        for alias in aliases:
            if alias.lower() in lowered:
                resolved[canonical] = lowered[alias.lower()]
                break
    return resolved


def _is_store_long_format(header_set: set[str], long_cols: dict[str, str]) -> bool:
    return (
        "store_id" in header_set
        and "element" in long_cols
        and "element_name" in long_cols
    )


def _looks_like_production(rows: list[dict[str, str]], element_col: str) -> bool:
    for row in rows[:_PRODUCTION_SAMPLE_ROWS]:
        element = (row.get(element_col) or "").strip().lower()
        if _DAY_ELEMENT_RE.match(element):
            return True
    return False


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_dialect(
    headers: list[str],
    rows: list[dict[str, str]] | None = None,
    filename: str | None = None,
) -> str:
    """Classify a parsed CSV payload.

    Order matters: the store-only long-format combination is checked before
    the generic machine/event identifier columns, because machine and event
    long-format files share the element/情報 pair.
    """
    header_set = {h.strip().lower() for h in headers}
    long_cols = resolve_long_columns(headers)

    if _is_store_long_format(header_set, long_cols):
        if rows and _looks_like_production(rows, long_cols["element"]):
            return PRODUCTION_DATA
        return STORE_PROFILE
    if {"store_id", "date", "production_data"} <= header_set:
        return PRODUCTION_DATA
    if "machine_id" in header_set or "machine_name" in header_set:
        return MACHINE_MASTER
    if "event_id" in header_set or "event_name" in header_set:
        return EVENT_MASTER
    if filename:
        return detect_dialect_from_filename(filename)
    return UNKNOWN


def detect_dialect_from_filename(filename: str) -> str:
    name = Path(filename).name.lower()
    for prefix, dialect in _FILENAME_HINTS:
        if name.startswith(prefix):
            return dialect
    return UNKNOWN


def require_dialect(
    headers: list[str],
    rows: list[dict[str, str]] | None = None,
    filename: str | None = None,
) -> str:
    """Like detect_dialect, but raise UnknownDialectError instead of returning unknown."""
    dialect = detect_dialect(headers, rows, filename)
    if dialect == UNKNOWN:
        shown = ", ".join(headers[:10]) or "(no header row)"
        raise UnknownDialectError(
            "Unrecognized CSV format: expected a store profile, machine master, "
            f"event master or production file; got headers [{shown}]"
        )
    return dialect
