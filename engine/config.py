"""Runtime settings, read once from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_VERIFY_API_URL = "https://readytosend-api-production.up.railway.app/verify-email"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(f"LISTVERIFY_{name}", default)


@dataclass(frozen=True)
class Settings:
    verify_api_url: str = DEFAULT_VERIFY_API_URL
    verify_timeout_seconds: float = 10.0
    verify_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 5.0
    worker_count: int = 4

    storage_backend: str = "local"
    bucket_name: str = "csv-files"
    upload_prefix: str = "uploads/"
    upload_attempts: int = 3
    upload_retry_delay_seconds: float = 2.0
    local_blob_dir: Path = Path("blobs")

    db_backend: str = "duckdb"
    duckdb_path: Path = Path("listverify.duckdb")
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_timeout_seconds: float = 5.0

    api_key: str = ""
    queue_workers: int = 2
    queue_max_size: int = 100

    @classmethod
    def from_env(cls) -> "Settings":
        supabase_url = _env("SUPABASE_URL") or os.environ.get("SUPABASE_URL", "")
        supabase_key = _env("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get(
            "SUPABASE_SERVICE_ROLE_KEY",
            "",
        )
        # Supabase wins when configured and no backend was chosen explicitly.
        default_backend = "supabase" if supabase_url and supabase_key else ""
        return cls(
            verify_api_url=_env("VERIFY_API_URL", DEFAULT_VERIFY_API_URL),
            verify_timeout_seconds=float(_env("VERIFY_TIMEOUT_SECONDS", "10.0")),
            verify_max_attempts=int(_env("VERIFY_MAX_ATTEMPTS", "3")),
            backoff_base_seconds=float(_env("BACKOFF_BASE_SECONDS", "1.0")),
            backoff_cap_seconds=float(_env("BACKOFF_CAP_SECONDS", "5.0")),
            worker_count=int(_env("WORKER_COUNT", "4")),
            storage_backend=_env("STORAGE_BACKEND", default_backend or "local").lower(),
            bucket_name=_env("BUCKET_NAME", "csv-files"),
            upload_prefix=_env("UPLOAD_PREFIX", "uploads/"),
            upload_attempts=int(_env("UPLOAD_ATTEMPTS", "3")),
            upload_retry_delay_seconds=float(_env("UPLOAD_RETRY_DELAY_SECONDS", "2.0")),
            local_blob_dir=Path(_env("LOCAL_BLOB_DIR", "blobs")),
            db_backend=_env("DB_BACKEND", default_backend or "duckdb").lower(),
            duckdb_path=Path(_env("DUCKDB_PATH", "listverify.duckdb")),
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            supabase_timeout_seconds=float(_env("SUPABASE_TIMEOUT_SECONDS", "5.0")),
            api_key=_env("API_KEY"),
            queue_workers=int(_env("QUEUE_WORKERS", "2")),
            queue_max_size=int(_env("QUEUE_MAX_SIZE", "100")),
        )

    def blob_path(self, filename: str) -> str:
        return f"{self.upload_prefix}{filename}"
