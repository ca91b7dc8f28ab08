"""Tabular splitter: parse delimited bytes, locate the address column,
and separate addresses from the rest of each row for later re-join."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import ColumnNotEmailError, EmptyTableError, InvalidColumnError, UnknownColumnError
from .models import EmailRecord, PreviewStats, Row
from .syntax import clean, contains_email_pattern, is_placeholder_address

logger = logging.getLogger("listverify.splitter")

ADDRESS_EXTRACT_HEADER = "email"
# Number of data values inspected by the content heuristic.
SAMPLE_SIZE = 5


@dataclass
class ParsedTable:
    header: Row
    rows: list[Row] = field(default_factory=list)
    # Header text -> first index carrying it.
    column_index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.column_index = {}
        for idx, name in enumerate(self.header):
            self.column_index.setdefault(name, idx)

    @property
    def has_inconsistent_columns(self) -> bool:
        width = len(self.header)
        return any(len(row) != width for row in self.rows)


@dataclass
class TableSplit:
    address_extract: list[Row]
    residual_extract: list[Row]
    has_inconsistent_columns: bool = False

    @property
    def total_emails(self) -> int:
        return max(0, len(self.address_extract) - 1)


def parse_table(
    content: bytes,
    delimiter: str = ",",
    skip_blank_rows: bool = True,
) -> ParsedTable:
    """Parse raw delimited bytes into header + data rows.

    Fields are whitespace-trimmed and empty lines skipped. A line of empty
    fields such as ``,,`` is a data row and is kept. Extracts written by
    split_table must be read with ``skip_blank_rows=False``: a residual row can
    legitimately be empty and dropping it would shift every later row.
    Calling it again on the same bytes yields the same table.
    """
    text = content.decode("utf-8-sig", errors="replace")
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
    parsed: list[Row] = []
    for raw in reader:
        if skip_blank_rows and (not raw or raw == [""]):
            continue
        parsed.append([clean(v) for v in raw])
    if not parsed:
        raise EmptyTableError()
    return ParsedTable(header=parsed[0], rows=parsed[1:])


def _column_samples(rows: Sequence[Row], index: int, limit: int = SAMPLE_SIZE) -> list[str]:
    samples: list[str] = []
    for row in rows:
        if index >= len(row) or is_placeholder_address(row[index]):
            continue
        samples.append(row[index])
        if len(samples) >= limit:
            break
    return samples


def _is_email_column(header: Row, index: int, rows: Optional[Sequence[Row]]) -> bool:
    name = header[index]
    if "email" in name.lower():
        return True
    samples = [name]
    if rows:
        samples.extend(_column_samples(rows, index))
    return contains_email_pattern(samples)


def suggest_address_columns(header: Row, rows: Optional[Sequence[Row]] = None) -> list[int]:
    return [idx for idx in range(len(header)) if _is_email_column(header, idx, rows)]


def resolve_column(table: ParsedTable, column: str) -> int:
    """Turn a column reference into an index.

    ``column`` is either a zero-based index ("1") or header text ("email");
    the first header carrying that text wins. Bounds are checked later by
    locate_address_column.
    """
    value = column.strip()
    if value.isdigit():
        return int(value)
    if value not in table.column_index:
        raise UnknownColumnError(value, table.header)
    return table.column_index[value]


def locate_address_column(
    header: Row,
    declared_index: int,
    rows: Optional[Sequence[Row]] = None,
) -> str:
    """Validate ``declared_index`` against the header and return its name.

    Accepted when the header text mentions "email" or sampled values look
    like addresses. Otherwise raises ColumnNotEmailError carrying the indices
    that would have been accepted.
    """
    if declared_index < 0 or declared_index >= len(header):
        raise InvalidColumnError(declared_index, len(header))

    if _is_email_column(header, declared_index, rows):
        return header[declared_index]

    suggestions = suggest_address_columns(header, rows)
    logger.info(
        "Column %d (%r) rejected as address column; suggestions=%s",
        declared_index, header[declared_index], suggestions,
    )
    raise ColumnNotEmailError(declared_index, header[declared_index], suggestions)


def split_table(
    table: ParsedTable,
    column_index: int,
    remove_empty: bool = False,
) -> TableSplit:
    """Split rows into an address-only extract and a residual extract.

    Both extracts keep a header row. Rows shorter than the header yield an
    empty address; the inconsistency is reported, not rejected.
    """
    address_rows: list[Row] = [[ADDRESS_EXTRACT_HEADER]]
    residual_rows: list[Row] = [
        [v for idx, v in enumerate(table.header) if idx != column_index]
    ]

    for row in table.rows:
        address = row[column_index] if column_index < len(row) else ""
        if remove_empty and is_placeholder_address(address):
            continue
        address_rows.append([address])
        residual_rows.append([v for idx, v in enumerate(row) if idx != column_index])

    inconsistent = table.has_inconsistent_columns
    if inconsistent:
        logger.warning("Table has inconsistent column counts (header width %d)", len(table.header))

    return TableSplit(
        address_extract=address_rows,
        residual_extract=residual_rows,
        has_inconsistent_columns=inconsistent,
    )


def extract_records(address_rows: Sequence[Row], has_header: bool = True) -> list[EmailRecord]:
    """Number every data row of an address extract in original order."""
    data = address_rows[1:] if has_header else address_rows
    return [
        EmailRecord(address=clean(row[0]) if row else "", source_row_index=idx)
        for idx, row in enumerate(data)
    ]


def column_records(table: ParsedTable, column_index: int) -> list[EmailRecord]:
    """Records read straight from ``column_index`` of an unsplit table."""
    return [
        EmailRecord(
            address=row[column_index] if column_index < len(row) else "",
            source_row_index=idx,
        )
        for idx, row in enumerate(table.rows)
    ]


def preview_table(content: bytes, column_index: int) -> PreviewStats:
    """Count rows, unique, empty and duplicate addresses for an upload."""
    table = parse_table(content)
    column_name = locate_address_column(table.header, column_index, table.rows)

    stats = PreviewStats(column_name=column_name, total_rows=1)
    seen: set[str] = set()
    for row in table.rows:
        stats.total_rows += 1
        address = (row[column_index] if column_index < len(row) else "").lower()
        if is_placeholder_address(address):
            stats.total_empty_emails += 1
        elif address in seen:
            stats.total_duplicate_emails += 1
        else:
            seen.add(address)
            stats.total_emails += 1
    return stats


def render_csv(rows: Sequence[Row], delimiter: str = ",") -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n")
    writer.writerows(rows)
    return buf.getvalue().encode("utf-8")
