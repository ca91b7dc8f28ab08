"""Validation pipeline: the entry point the job trigger calls.

Flow: authorize credits -> mark Validating -> fetch table -> schedule
verification -> merge -> upload augmented file -> settle (Completed).
Any failure after authorization releases the reservation and marks the job
Error before the original exception propagates.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import PurePosixPath
from typing import Callable, Optional

from store.storage import blob_store_from_settings, put_with_retry

from .config import Settings
from .errors import InvalidColumnError, RowCountMismatchError, StorageError
from .ledger import CreditLedger
from .merger import merge_results
from .models import (
    EmailRecord,
    PreparedUpload,
    Row,
    UserAccount,
    ValidationRequest,
    ValidationResult,
)
from .scheduler import DEFAULT_WORKER_COUNT, schedule
from .splitter import (
    column_records,
    extract_records,
    locate_address_column,
    parse_table,
    render_csv,
    split_table,
)
from .status import JobStatusRecorder

logger = logging.getLogger("listverify.pipeline")

INCONSISTENT_COLUMNS_WARNING = (
    "The CSV file has inconsistent column counts. The extracted emails are "
    "available, but the full file may be malformed."
)


class ValidationPipeline:
    """One configured pipeline. Clients are injected, nothing is global.

    ``blob_store`` provides get/put/delete, ``db`` the users/files operations
    used by CreditLedger and JobStatusRecorder, ``verifier`` an async
    ``verify(address)``.
    """

    def __init__(
        self,
        blob_store,
        db,
        verifier,
        *,
        worker_count: int = DEFAULT_WORKER_COUNT,
        upload_prefix: str = "uploads/",
        upload_attempts: int = 3,
        upload_retry_delay: float = 2.0,
        upload_sleep_fn=None,
    ):
        self.blob_store = blob_store
        self.db = db
        self.verifier = verifier
        self.ledger = CreditLedger(db)
        self.recorder = JobStatusRecorder(db)
        self.worker_count = worker_count
        self.upload_prefix = upload_prefix
        self.upload_attempts = upload_attempts
        self.upload_retry_delay = upload_retry_delay
        self._upload_sleep_fn = upload_sleep_fn

    @classmethod
    def from_settings(cls, settings: Settings, blob_store, db, verifier) -> "ValidationPipeline":
        return cls(
            blob_store,
            db,
            verifier,
            worker_count=settings.worker_count,
            upload_prefix=settings.upload_prefix,
            upload_attempts=settings.upload_attempts,
            upload_retry_delay=settings.upload_retry_delay_seconds,
        )

    def _path(self, filename: str) -> str:
        return f"{self.upload_prefix}{filename}"

    def put_file(self, filename: str, data: bytes) -> None:
        put_with_retry(
            self.blob_store,
            self._path(filename),
            data,
            attempts=self.upload_attempts,
            delay_seconds=self.upload_retry_delay,
            sleep_fn=self._upload_sleep_fn,
        )

    # --- upload preparation ---

    def prepare_upload(
        self,
        content: bytes,
        original_filename: str,
        column_index: int,
        remove_empty: bool = False,
    ) -> PreparedUpload:
        """Split an uploaded table into address and full extracts and store both."""
        table = parse_table(content)
        locate_address_column(table.header, column_index, table.rows)
        split = split_table(table, column_index, remove_empty=remove_empty)

        token = uuid.uuid4()
        stem = PurePosixPath(original_filename).stem or "upload"
        full_filename = f"{stem}_full_{token}.csv"
        emails_filename = f"{stem}_emails_{token}.csv"

        self.put_file(full_filename, render_csv(split.residual_extract))
        self.put_file(emails_filename, render_csv(split.address_extract))
        logger.info(
            "Stored extracts %s / %s (%d emails)",
            full_filename, emails_filename, split.total_emails,
        )

        return PreparedUpload(
            full_filename=full_filename,
            emails_filename=emails_filename,
            total_emails=split.total_emails,
            warning=INCONSISTENT_COLUMNS_WARNING if split.has_inconsistent_columns else None,
        )

    # --- run ---

    async def _load_split(self, request: ValidationRequest) -> tuple[Row, list[Row], list[EmailRecord]]:
        emails_bytes, full_bytes = await asyncio.gather(
            asyncio.to_thread(self.blob_store.get, self._path(request.emails_filename)),
            asyncio.to_thread(self.blob_store.get, self._path(request.full_filename)),
        )
        emails_table = parse_table(emails_bytes, skip_blank_rows=False)
        full_table = parse_table(full_bytes, skip_blank_rows=False)
        if request.email_column_index > len(full_table.header):
            raise InvalidColumnError(request.email_column_index, len(full_table.header) + 1)
        records = extract_records([emails_table.header] + emails_table.rows)
        if len(records) != len(full_table.rows):
            raise StorageError(
                f"Extract mismatch: {len(records)} email rows vs {len(full_table.rows)} full rows"
            )
        return full_table.header, full_table.rows, records

    async def _load_single(self, request: ValidationRequest) -> tuple[Row, list[Row], list[EmailRecord]]:
        content = await asyncio.to_thread(self.blob_store.get, self._path(request.filename))
        table = parse_table(content)
        locate_address_column(table.header, request.email_column_index, table.rows)
        if table.has_inconsistent_columns:
            logger.warning("%s: %s", request.filename, INCONSISTENT_COLUMNS_WARNING)
        return table.header, table.rows, column_records(table, request.email_column_index)

    async def run(
        self,
        request: ValidationRequest,
        progress: Optional[Callable[[int], object]] = None,
        on_outcome=None,
    ) -> ValidationResult:
        """Run one validation job to Completed, or record Error and re-raise."""
        log_prefix = f"[job {request.file_id}]"
        if progress:
            await _maybe_await(progress(0))

        user: Optional[UserAccount] = None
        try:
            user = await asyncio.to_thread(
                self.ledger.authorize, request.user_email, request.total_emails
            )
            await asyncio.to_thread(
                self.recorder.record_start, request.file_id, user, request.total_emails
            )

            if request.is_split:
                header, full_rows, records = await self._load_split(request)
            else:
                header, full_rows, records = await self._load_single(request)

            if len(records) > request.total_emails:
                raise RowCountMismatchError(request.total_emails, len(records))

            logger.info("%s verifying %d addresses", log_prefix, len(records))
            outcomes = await schedule(
                records,
                self.verifier,
                worker_count=self.worker_count,
                progress_callback=on_outcome,
            )
            merged = merge_results(
                header,
                full_rows,
                records,
                outcomes,
                request.email_column_index,
                address_extracted=request.is_split,
            )

            await asyncio.to_thread(self.put_file, request.filename, render_csv(merged.rows))

            if request.is_split:
                await asyncio.to_thread(self._delete_extracts, request)

            job = await asyncio.to_thread(
                self.recorder.completed_record,
                request.file_id,
                merged.stats,
                request.total_emails,
                self._path(request.filename),
            )
            await asyncio.to_thread(self.ledger.settle, user, request.total_emails, job)
        except (Exception, asyncio.CancelledError) as e:
            summary = "validation run was cancelled" if isinstance(e, asyncio.CancelledError) else str(e)
            logger.error("%s failed: %s", log_prefix, summary)
            if user is not None:
                await asyncio.to_thread(self.ledger.release, user, request.total_emails)
            await asyncio.to_thread(self.recorder.record_failure, request.file_id, summary)
            raise

        if progress:
            await _maybe_await(progress(100))
        logger.info("%s completed: %s", log_prefix, merged.stats.model_dump())
        return ValidationResult(
            message="Validation completed successfully",
            status="Completed",
            stats=merged.stats,
        )

    def _delete_extracts(self, request: ValidationRequest) -> None:
        paths = [self._path(request.full_filename), self._path(request.emails_filename)]
        try:
            self.blob_store.delete(paths)
        except StorageError as e:
            logger.warning("Could not delete extracts %s: %s", paths, e)


async def _maybe_await(value) -> None:
    if asyncio.iscoroutine(value):
        await value


def build_pipeline(settings: Optional[Settings] = None, verifier=None) -> ValidationPipeline:
    """Wire a pipeline from settings: blob store, relational store, verifier."""
    from .verifier import VerificationClient

    settings = settings or Settings.from_env()
    blob_store = blob_store_from_settings(settings)
    if settings.db_backend == "supabase":
        from store.supabase_io import supabase_client_from_settings

        db = supabase_client_from_settings(settings)
    else:
        from store.duckdb_io import DuckDBStore

        db = DuckDBStore(settings.duckdb_path)
    verifier = verifier or VerificationClient.from_settings(settings)
    return ValidationPipeline.from_settings(settings, blob_store, db, verifier)
