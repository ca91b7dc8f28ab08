"""DuckDB relational store for local runs.

Holds the ``users`` and ``files`` tables in a single file. All access goes
through one connection guarded by a lock, and credit settlement commits the
debit and the job row in one transaction.
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Optional

import duckdb

from engine.errors import InsufficientCreditsError, StorageError
from engine.models import JobRecord, JobStats, UserAccount

logger = logging.getLogger("listverify.duckdb")

DEFAULT_DB_PATH = Path(__file__).parent.parent / "listverify.duckdb"

_CREATE_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        user_email TEXT UNIQUE,
        credits INTEGER NOT NULL DEFAULT 0,
        reserved_credits INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        file_id TEXT PRIMARY KEY,
        user_id TEXT,
        user_email TEXT,
        status TEXT,
        stats TEXT,
        credits_consumed INTEGER,
        error TEXT,
        object_storage_id TEXT,
        created_at TEXT
    );
    """,
]

_UPSERT_JOB_SQL = """
INSERT OR REPLACE INTO files (
    file_id, user_id, user_email, status, stats,
    credits_consumed, error, object_storage_id, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_USER_COLUMNS = "user_id, user_email, credits, reserved_credits"


def _user_from_row(row) -> UserAccount:
    return UserAccount(
        user_id=row[0],
        user_email=row[1],
        credits=row[2],
        reserved_credits=row[3],
    )


class DuckDBStore:
    """Transactional users/files store backed by a DuckDB file."""

    supports_transactions = True

    def __init__(self, db_path: Optional[Path] = None):
        self._db_path = Path(db_path or DEFAULT_DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = duckdb.connect(str(self._db_path))
        for sql in _CREATE_TABLES_SQL:
            self._conn.execute(sql)
        logger.info("Initialized DuckDB store at %s", self._db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _transaction(self, fn):
        """Run ``fn(conn)`` inside BEGIN/COMMIT, rolling back on any error."""
        with self._lock:
            self._conn.execute("BEGIN TRANSACTION")
            try:
                result = fn(self._conn)
                self._conn.execute("COMMIT")
                return result
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

    # --- users ---

    def create_user(self, user_email: str, credits: int = 0) -> UserAccount:
        user = UserAccount(user_id=str(uuid.uuid4()), user_email=user_email, credits=credits)
        with self._lock:
            self._conn.execute(
                f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?)",
                [user.user_id, user.user_email, user.credits, user.reserved_credits],
            )
        return user

    def add_credits(self, user_email: str, amount: int) -> UserAccount:
        def apply(conn):
            conn.execute(
                "UPDATE users SET credits = credits + ? WHERE user_email = ?",
                [amount, user_email],
            )
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE user_email = ?",
                [user_email],
            ).fetchone()
            if row is None:
                raise StorageError(f"no user {user_email}")
            return _user_from_row(row)

        return self._transaction(apply)

    def get_user_by_email(self, user_email: str) -> Optional[UserAccount]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE user_email = ?",
                [user_email],
            ).fetchone()
        return _user_from_row(row) if row else None

    @staticmethod
    def _locked_user(conn, user_id: str) -> UserAccount:
        row = conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?",
            [user_id],
        ).fetchone()
        if row is None:
            raise StorageError(f"user {user_id} disappeared")
        return _user_from_row(row)

    def reserve_credits(self, user_id: str, amount: int) -> UserAccount:
        def apply(conn):
            user = self._locked_user(conn, user_id)
            if user.available_credits < amount:
                raise InsufficientCreditsError(amount, user.available_credits)
            conn.execute(
                "UPDATE users SET reserved_credits = reserved_credits + ? WHERE user_id = ?",
                [amount, user_id],
            )
            return user.model_copy(update={"reserved_credits": user.reserved_credits + amount})

        return self._transaction(apply)

    def release_credits(self, user_id: str, amount: int) -> UserAccount:
        def apply(conn):
            user = self._locked_user(conn, user_id)
            reserved = max(0, user.reserved_credits - amount)
            conn.execute(
                "UPDATE users SET reserved_credits = ? WHERE user_id = ?",
                [reserved, user_id],
            )
            return user.model_copy(update={"reserved_credits": reserved})

        return self._transaction(apply)

    def settle_job(self, user_id: str, amount: int, job: JobRecord) -> UserAccount:
        """Debit the reservation and write the completed job atomically."""
        def apply(conn):
            user = self._locked_user(conn, user_id)
            if user.credits < amount:
                raise InsufficientCreditsError(amount, user.credits)
            credits = user.credits - amount
            reserved = max(0, user.reserved_credits - amount)
            conn.execute(
                "UPDATE users SET credits = ?, reserved_credits = ? WHERE user_id = ?",
                [credits, reserved, user_id],
            )
            self._write_job(conn, job)
            return user.model_copy(update={"credits": credits, "reserved_credits": reserved})

        return self._transaction(apply)

    # --- files ---

    @staticmethod
    def _write_job(conn, job: JobRecord) -> None:
        conn.execute(_UPSERT_JOB_SQL, [
            job.file_id,
            job.user_id,
            job.user_email,
            job.status.value,
            json.dumps(job.stats.model_dump()),
            job.credits_consumed,
            job.error,
            job.object_storage_id,
            job.created_at.isoformat(),
        ])

    def upsert_job(self, job: JobRecord) -> None:
        with self._lock:
            self._write_job(self._conn, job)

    def get_job(self, file_id: str) -> Optional[JobRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT file_id, user_id, user_email, status, stats, credits_consumed, "
                "error, object_storage_id, created_at FROM files WHERE file_id = ?",
                [file_id],
            ).fetchone()
        if row is None:
            return None
        return JobRecord(
            file_id=row[0],
            user_id=row[1],
            user_email=row[2] or "",
            status=row[3],
            stats=JobStats.model_validate(json.loads(row[4])) if row[4] else JobStats(),
            credits_consumed=row[5] or 0,
            error=row[6],
            object_storage_id=row[7],
            created_at=row[8],
        )
