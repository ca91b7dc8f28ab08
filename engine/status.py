"""Job status recorder.

State machine: In Queue -> Validating -> {Completed, Error}. A run that fails
before validation starts may go straight from In Queue to Error. Nothing
leaves a terminal state.
"""

import logging
from typing import Optional

from .errors import InvalidTransitionError
from .models import JobRecord, JobStats, JobStatus, UserAccount

logger = logging.getLogger("listverify.status")

_ALLOWED_TRANSITIONS: dict[Optional[JobStatus], set[JobStatus]] = {
    None: {JobStatus.in_queue, JobStatus.validating, JobStatus.error},
    JobStatus.in_queue: {JobStatus.validating, JobStatus.error},
    JobStatus.validating: {JobStatus.completed, JobStatus.error},
    JobStatus.completed: set(),
    JobStatus.error: set(),
}


class JobStatusRecorder:
    def __init__(self, store):
        self._store = store

    def _current(self, file_id: str) -> Optional[JobRecord]:
        return self._store.get_job(file_id)

    @staticmethod
    def _check(file_id: str, current: Optional[JobRecord], target: JobStatus) -> None:
        current_status = current.status if current else None
        if target not in _ALLOWED_TRANSITIONS[current_status]:
            raise InvalidTransitionError(
                file_id,
                current_status.value if current_status else "<none>",
                target.value,
            )

    def record_queued(self, file_id: str, user_email: str, total_emails: int) -> JobRecord:
        """Write In Queue so status queries find a record while the job waits."""
        current = self._current(file_id)
        self._check(file_id, current, JobStatus.in_queue)
        job = JobRecord(
            file_id=file_id,
            user_email=user_email,
            status=JobStatus.in_queue,
            stats=JobStats(total=total_emails),
        )
        self._store.upsert_job(job)
        return job

    def record_start(self, file_id: str, user: UserAccount, total_emails: int) -> JobRecord:
        current = self._current(file_id)
        self._check(file_id, current, JobStatus.validating)
        base = current or JobRecord(file_id=file_id)
        job = base.model_copy(update={
            "user_id": user.user_id,
            "user_email": user.user_email,
            "status": JobStatus.validating,
            "stats": JobStats(total=total_emails),
        })
        self._store.upsert_job(job)
        logger.info("Job %s validating %d emails", file_id, total_emails)
        return job

    def completed_record(
        self,
        file_id: str,
        stats: JobStats,
        credits_consumed: int,
        object_storage_id: Optional[str] = None,
    ) -> JobRecord:
        """Build the Completed record; the ledger persists it with the debit."""
        current = self._current(file_id)
        self._check(file_id, current, JobStatus.completed)
        return current.model_copy(update={
            "status": JobStatus.completed,
            "stats": stats,
            "credits_consumed": credits_consumed,
            "object_storage_id": object_storage_id,
            "error": None,
        })

    def record_failure(self, file_id: str, error_summary: str) -> Optional[JobRecord]:
        """Best-effort Error write. Never raises, so the original error survives."""
        try:
            current = self._current(file_id)
            if current is not None and current.status.is_terminal:
                logger.warning(
                    "Job %s already %s; not recording failure: %s",
                    file_id, current.status.value, error_summary,
                )
                return current
            base = current or JobRecord(file_id=file_id)
            job = base.model_copy(update={"status": JobStatus.error, "error": error_summary})
            self._store.upsert_job(job)
            logger.info("Job %s marked Error: %s", file_id, error_summary)
            return job
        except Exception:
            logger.exception("Could not record failure for job %s", file_id)
            return None

    def get_status(self, file_id: str) -> Optional[dict]:
        job = self._current(file_id)
        if job is None:
            return None
        return job.to_status_response()
