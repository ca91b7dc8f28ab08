"""Exception taxonomy for the validation pipeline.

UserError subclasses are surfaced verbatim to the caller and never retried.
TransientExternalError never escapes the verification client. StorageError and
WorkerCrashedError abort a run and are recorded on the job as ``Error``.
"""

from typing import Optional


class ListVerifyError(RuntimeError):
    """Base class for all pipeline errors."""


class UserError(ListVerifyError):
    """Caller-correctable problem with the request."""


class InvalidColumnError(UserError):
    def __init__(self, index: int, column_count: int):
        super().__init__(
            f"Invalid email column index {index}. Max index allowed: {column_count - 1}"
        )
        self.index = index
        self.column_count = column_count


class ColumnNotEmailError(UserError):
    def __init__(self, index: int, column_name: str, suggestions: list[int]):
        suggested = ", ".join(str(i) for i in suggestions) or "none"
        super().__init__(
            f"Column {index} ({column_name!r}) doesn't appear to contain emails. "
            f"Suggested columns: {suggested}"
        )
        self.index = index
        self.column_name = column_name
        self.suggestions = suggestions


class UnknownColumnError(UserError):
    def __init__(self, name: str, header: list[str]):
        super().__init__(f"No column named {name!r}. Columns: {', '.join(header)}")
        self.name = name


class EmptyTableError(UserError):
    def __init__(self):
        super().__init__("The CSV file has no header row")


class UserNotFoundError(UserError):
    def __init__(self, user_email: str):
        super().__init__(f"User not found: {user_email}")
        self.user_email = user_email


class InsufficientCreditsError(UserError):
    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return self.required - self.available


class RowCountMismatchError(UserError):
    def __init__(self, declared: int, actual: int):
        super().__init__(
            f"File contains {actual} email rows but the job declared {declared}; "
            "re-run the upload preview"
        )
        self.declared = declared
        self.actual = actual


class TransientExternalError(ListVerifyError):
    """Timeout or transport failure talking to the verification service."""


class StorageError(ListVerifyError):
    """Blob store or relational store failure."""


class BlobNotFoundError(StorageError):
    def __init__(self, path: str):
        super().__init__(f"Failed to fetch file: {path}")
        self.path = path


class UploadFailedError(StorageError):
    def __init__(self, path: str, attempts: int, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to upload {path} after {attempts} attempts{detail}")
        self.path = path
        self.attempts = attempts


class CreditConflictError(StorageError):
    """Concurrent balance change detected while reserving or debiting credits."""


class WorkerCrashedError(ListVerifyError):
    def __init__(self, chunk_id: int, cause: BaseException):
        super().__init__(f"Chunk worker {chunk_id} crashed: {cause}")
        self.chunk_id = chunk_id
        self.cause = cause


class InvalidTransitionError(ListVerifyError):
    def __init__(self, file_id: str, current: str, target: str):
        super().__init__(f"Job {file_id}: cannot move from {current!r} to {target!r}")
        self.file_id = file_id


def readable_error_message(error) -> str:
    """Translate an exception or its text into caller-facing guidance."""
    if isinstance(error, InsufficientCreditsError):
        return (
            f"You need {error.required} credits but have {error.available} "
            f"({error.shortfall} short). Please add more credits and try again."
        )
    message = str(error)
    if "Failed to fetch file" in message:
        return (
            "The specified CSV file could not be found. "
            "Please ensure the file exists and try again."
        )
    if "email column index" in message or "Column index" in message:
        return (
            "The specified email column could not be found in the CSV file. "
            "Please verify the column index."
        )
    if "Insufficient credits" in message:
        return (
            "You do not have enough credits to process this many emails. "
            "Please add more credits and try again."
        )
    return message
