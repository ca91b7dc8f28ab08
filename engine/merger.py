"""Result merger: thread verification outcomes back into original rows.

Outcomes are matched by ``source_row_index``, never by position in the result
list, so the output is identical however the workers interleaved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .errors import StorageError
from .models import EmailRecord, JobStats, Row, VerificationOutcome

logger = logging.getLogger("listverify.merger")

VALIDATION_HEADER = "Email_Validation"
ADDRESS_HEADER = "Email"


@dataclass
class MergedTable:
    rows: list[Row]
    stats: JobStats

    @property
    def header(self) -> Row:
        return self.rows[0]


def merge_results(
    header: Row,
    full_rows: Sequence[Row],
    records: Sequence[EmailRecord],
    outcomes: Sequence[VerificationOutcome],
    column_index: int,
    address_extracted: bool = False,
) -> MergedTable:
    """Insert validation columns into every row and recompute stats.

    With ``address_extracted`` the rows lack the address column: "Email" and
    "Email_Validation" are inserted at ``column_index``. Otherwise the address
    is still in place and "Email_Validation" goes right after it, at
    ``column_index + 1``. Either way the status lands at ``column_index + 1``.
    Rows shorter than the header are padded with empty fields first.
    """
    if len(records) != len(outcomes):
        raise ValueError(f"{len(records)} records but {len(outcomes)} outcomes")

    by_row: dict[int, tuple[EmailRecord, VerificationOutcome]] = {}
    for record, outcome in zip(records, outcomes):
        by_row[record.source_row_index] = (record, outcome)

    stats = JobStats(total=len(full_rows))

    new_header = list(header)
    if address_extracted:
        new_header[column_index:column_index] = [ADDRESS_HEADER, VALIDATION_HEADER]
    else:
        new_header[column_index + 1:column_index + 1] = [VALIDATION_HEADER]
    merged: list[Row] = [new_header]

    for row_idx, row in enumerate(full_rows):
        match = by_row.get(row_idx)
        if match is None:
            raise StorageError(
                f"No verification result for data row {row_idx}; address and full extracts are out of sync"
            )
        record, outcome = match
        new_row = list(row) + [""] * (len(header) - len(row))
        if address_extracted:
            new_row[column_index:column_index] = [record.address, outcome.to_row_value()]
        else:
            new_row[column_index + 1:column_index + 1] = [outcome.to_row_value()]
        merged.append(new_row)
        stats.record(outcome.status)

    logger.info(
        "Merged %d rows: valid=%d invalid=%d unverifiable=%d",
        stats.processed, stats.valid, stats.invalid, stats.unverifiable,
    )
    return MergedTable(rows=merged, stats=stats)


def strip_inserted_columns(rows: Sequence[Row], column_index: int) -> list[Row]:
    """Drop the validation column from merged rows.

    Restores the original table exactly for rows as wide as the header: in
    the extracted layout the address sits back at ``column_index`` once the
    status column is gone. Short rows come back padded.
    """
    position = column_index + 1
    return [row[:position] + row[position + 1:] for row in rows]
