"""Data models for the ListVerify validation pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

Row = list[str]


class VerificationStatus(str, Enum):
    """Terminal classification of one address."""
    valid = "valid"
    invalid = "invalid"
    unverifiable = "unverifiable"


class JobStatus(str, Enum):
    """Lifecycle of one validation run."""
    in_queue = "In Queue"
    validating = "Validating"
    completed = "Completed"
    error = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.error)


class EmailRecord(BaseModel):
    """One address submitted for verification."""
    address: str
    source_row_index: int


class VerificationOutcome(BaseModel):
    """Result of verifying a single address."""
    address: str
    status: VerificationStatus = VerificationStatus.invalid
    mx: str = ""
    provider: str = ""

    def to_row_value(self) -> str:
        return self.status.value


class JobStats(BaseModel):
    """Aggregate counters for one run.

    ``processed`` only grows and equals ``total`` on completion.
    """
    total: int = 0
    valid: int = 0
    invalid: int = 0
    unverifiable: int = 0
    processed: int = 0

    def record(self, status: VerificationStatus) -> None:
        if status == VerificationStatus.valid:
            self.valid += 1
        elif status == VerificationStatus.invalid:
            self.invalid += 1
        else:
            self.unverifiable += 1
        self.processed += 1

    def progress(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.processed / self.total * 100, 2)


class UserAccount(BaseModel):
    """Credit-holding user row."""
    user_id: str
    user_email: str
    credits: int = 0
    reserved_credits: int = 0

    @property
    def available_credits(self) -> int:
        return self.credits - self.reserved_credits


class JobRecord(BaseModel):
    """Durable status row for one validation run (``files`` table)."""
    file_id: str
    user_id: Optional[str] = None
    user_email: str = ""
    status: JobStatus = JobStatus.in_queue
    stats: JobStats = Field(default_factory=JobStats)
    credits_consumed: int = 0
    error: Optional[str] = None
    object_storage_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_status_response(self) -> dict:
        """Shape returned by the external status query."""
        if self.status == JobStatus.completed:
            progress = 100.0
        else:
            progress = self.stats.progress()
        response = {
            "status": self.status.value,
            "stats": self.stats.model_dump(),
            "progress": progress,
        }
        if self.error:
            response["error"] = self.error
        return response


class ValidationRequest(BaseModel):
    """Payload delivered by the job trigger to the pipeline entry point."""
    filename: str
    email_column_index: int
    user_email: str
    total_emails: int
    file_id: str
    full_filename: Optional[str] = None
    emails_filename: Optional[str] = None

    @property
    def is_split(self) -> bool:
        return bool(self.full_filename and self.emails_filename)


class ValidationResult(BaseModel):
    message: str
    status: str
    stats: Optional[JobStats] = None


class PreviewStats(BaseModel):
    """Upload preview summary for one address column."""
    total_emails: int = 0
    total_rows: int = 0
    total_empty_emails: int = 0
    total_duplicate_emails: int = 0
    column_name: str = ""


class PreparedUpload(BaseModel):
    """Names of the extracts written by the upload preparation step."""
    full_filename: str
    emails_filename: str
    total_emails: int = 0
    warning: Optional[str] = None
