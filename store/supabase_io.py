from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import requests

from engine.errors import CreditConflictError, InsufficientCreditsError, StorageError
from engine.models import JobRecord, UserAccount

logger = logging.getLogger("listverify.supabase")

# Compare-and-set retries before giving up on a contended user row.
CAS_MAX_ATTEMPTS = 5


class SupabaseRestError(StorageError):
    """Raised when Supabase PostgREST or Storage returns a non-2xx response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"supabase_rest_error status={status_code} {message}")
        self.status_code = status_code


class SupabaseRestClient:
    """Minimal Supabase PostgREST client for the ``users`` and ``files`` tables.

    Uses a service role key (or other privileged key) to bypass RLS for this backend.
    PostgREST offers no multi-statement transactions, so credit changes are
    compare-and-set PATCHes filtered on the values last read.
    """

    supports_transactions = False

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        users_table: str = "users",
        files_table: str = "files",
        timeout_seconds: float = 5.0,
        request_fn=None,
    ):
        self._rest_url = base_url.rstrip("/") + "/rest/v1"
        self._users_table = users_table
        self._files_table = files_table
        self._timeout_seconds = timeout_seconds
        self._request_fn = request_fn or requests.request
        self._base_headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
    ):
        merged_headers = dict(self._base_headers)
        if headers:
            merged_headers.update(headers)

        url = f"{self._rest_url}{path}"
        try:
            resp = self._request_fn(
                method,
                url,
                headers=merged_headers,
                params=params,
                json=json_body,
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as e:
            raise StorageError(f"supabase request failed: {e}") from e
        if not (200 <= resp.status_code < 300):
            # Never include headers (apikey) in error messages.
            text = getattr(resp, "text", "")
            raise SupabaseRestError(resp.status_code, text[:500])
        return resp

    @staticmethod
    def _rows(resp) -> list[dict]:
        payload = resp.json()
        if payload is None:
            return []
        if isinstance(payload, list):
            return payload
        return [payload]

    # --- users ---

    def _user_row(self, params: dict[str, str]) -> Optional[dict]:
        resp = self._request(
            "GET",
            f"/{self._users_table}",
            params={"select": "user_id,user_email,credits,reserved_credits", "limit": "1", **params},
        )
        rows = self._rows(resp)
        return dict(rows[0]) if rows else None

    @staticmethod
    def _to_account(row: dict) -> UserAccount:
        # A NULL reservation means nothing is reserved.
        return UserAccount.model_validate({**row, "reserved_credits": row.get("reserved_credits") or 0})

    def get_user_by_email(self, user_email: str) -> Optional[UserAccount]:
        row = self._user_row({"user_email": f"eq.{user_email}"})
        return self._to_account(row) if row is not None else None

    def _cas_update_user(
        self,
        user_id: str,
        mutate: Callable[[UserAccount], dict[str, int]],
    ) -> UserAccount:
        """Apply ``mutate`` to the user row with optimistic concurrency.

        The PATCH only matches if credits and reservation are unchanged since
        the read; an empty response means another writer won and we re-read.
        The filters use the raw column values, so a NULL reservation is
        matched with ``is.null``.
        """
        for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
            row = self._user_row({"user_id": f"eq.{user_id}"})
            if row is None:
                raise StorageError(f"user {user_id} disappeared")
            current = self._to_account(row)
            update = mutate(current)
            reserved = row.get("reserved_credits")
            resp = self._request(
                "PATCH",
                f"/{self._users_table}",
                headers={"Prefer": "return=representation"},
                params={
                    "user_id": f"eq.{user_id}",
                    "credits": f"eq.{row['credits']}",
                    "reserved_credits": "is.null" if reserved is None else f"eq.{reserved}",
                },
                json_body=update,
            )
            rows = self._rows(resp)
            if rows:
                return self._to_account({**current.model_dump(), **rows[0]})
            logger.info("Credit CAS conflict for user %s (attempt %d)", user_id, attempt)
        raise CreditConflictError(f"user {user_id}: credit balance kept changing")

    def reserve_credits(self, user_id: str, amount: int) -> UserAccount:
        def mutate(user: UserAccount) -> dict[str, int]:
            if user.available_credits < amount:
                raise InsufficientCreditsError(amount, user.available_credits)
            return {"reserved_credits": user.reserved_credits + amount}

        return self._cas_update_user(user_id, mutate)

    def release_credits(self, user_id: str, amount: int) -> UserAccount:
        def mutate(user: UserAccount) -> dict[str, int]:
            return {"reserved_credits": max(0, user.reserved_credits - amount)}

        return self._cas_update_user(user_id, mutate)

    def debit_credits(self, user_id: str, amount: int) -> UserAccount:
        """Turn a reservation into a debit."""
        def mutate(user: UserAccount) -> dict[str, int]:
            if user.credits < amount:
                raise InsufficientCreditsError(amount, user.credits)
            return {
                "credits": user.credits - amount,
                "reserved_credits": max(0, user.reserved_credits - amount),
            }

        return self._cas_update_user(user_id, mutate)

    def refund_credits(self, user_id: str, amount: int) -> UserAccount:
        """Undo debit_credits, restoring the reservation."""
        def mutate(user: UserAccount) -> dict[str, int]:
            return {
                "credits": user.credits + amount,
                "reserved_credits": user.reserved_credits + amount,
            }

        return self._cas_update_user(user_id, mutate)

    # --- files ---

    def get_job(self, file_id: str) -> Optional[JobRecord]:
        resp = self._request(
            "GET",
            f"/{self._files_table}",
            params={"select": "*", "file_id": f"eq.{file_id}", "limit": "1"},
        )
        rows = self._rows(resp)
        if not rows:
            return None
        return JobRecord.model_validate(rows[0])

    def upsert_job(self, job: JobRecord) -> None:
        self._request(
            "POST",
            f"/{self._files_table}",
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            params={"on_conflict": "file_id"},
            json_body=[job.model_dump(mode="json")],
        )


def supabase_client_from_settings(settings) -> SupabaseRestClient:
    if not settings.supabase_url or not settings.supabase_key:
        raise StorageError("supabase database selected but SUPABASE_URL/key not configured")
    return SupabaseRestClient(
        settings.supabase_url,
        settings.supabase_key,
        timeout_seconds=settings.supabase_timeout_seconds,
    )
