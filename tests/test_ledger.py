from __future__ import annotations

import pytest

from engine.errors import InsufficientCreditsError, StorageError, UserNotFoundError
from engine.ledger import CreditLedger
from engine.models import JobRecord, JobStats, JobStatus, UserAccount


class _RestLikeStore:
    """Non-transactional store: each credit change is its own write."""

    supports_transactions = False

    def __init__(self, credits: int = 10):
        self.user = UserAccount(user_id="u1", user_email="ops@example.com", credits=credits)
        self.jobs: dict[str, JobRecord] = {}
        self.fail_job_writes = False
        self.calls: list[str] = []

    def get_user_by_email(self, user_email):
        return self.user if user_email == self.user.user_email else None

    def _update(self, **changes):
        self.user = self.user.model_copy(update=changes)
        return self.user

    def reserve_credits(self, user_id, amount):
        self.calls.append("reserve")
        if self.user.available_credits < amount:
            raise InsufficientCreditsError(amount, self.user.available_credits)
        return self._update(reserved_credits=self.user.reserved_credits + amount)

    def release_credits(self, user_id, amount):
        self.calls.append("release")
        return self._update(reserved_credits=max(0, self.user.reserved_credits - amount))

    def debit_credits(self, user_id, amount):
        self.calls.append("debit")
        return self._update(
            credits=self.user.credits - amount,
            reserved_credits=max(0, self.user.reserved_credits - amount),
        )

    def refund_credits(self, user_id, amount):
        self.calls.append("refund")
        return self._update(
            credits=self.user.credits + amount,
            reserved_credits=self.user.reserved_credits + amount,
        )

    def upsert_job(self, job):
        self.calls.append("upsert_job")
        if self.fail_job_writes:
            raise StorageError("files table unavailable")
        self.jobs[job.file_id] = job


def _completed_job(file_id="f1", consumed=4):
    return JobRecord(
        file_id=file_id,
        user_id="u1",
        status=JobStatus.completed,
        stats=JobStats(total=consumed, valid=consumed, processed=consumed),
        credits_consumed=consumed,
    )


def test_authorize_reserves_credits(db) -> None:
    db.create_user("ops@example.com", credits=10)
    ledger = CreditLedger(db)

    user = ledger.authorize("ops@example.com", 6)

    assert user.reserved_credits == 6
    assert user.available_credits == 4
    assert db.get_user_by_email("ops@example.com").reserved_credits == 6


def test_second_authorization_sees_outstanding_reservation(db) -> None:
    db.create_user("ops@example.com", credits=10)
    ledger = CreditLedger(db)
    ledger.authorize("ops@example.com", 6)

    with pytest.raises(InsufficientCreditsError) as exc:
        ledger.authorize("ops@example.com", 6)

    assert exc.value.required == 6
    assert exc.value.available == 4
    assert exc.value.shortfall == 2


def test_authorize_unknown_user(db) -> None:
    with pytest.raises(UserNotFoundError):
        CreditLedger(db).authorize("ghost@example.com", 1)


def test_settle_debits_and_writes_completed_job_transactionally(db) -> None:
    db.create_user("ops@example.com", credits=10)
    ledger = CreditLedger(db)
    user = ledger.authorize("ops@example.com", 4)

    settled = ledger.settle(user, 4, _completed_job(consumed=4).model_copy(update={"user_id": user.user_id}))

    assert settled.credits == 6
    assert settled.reserved_credits == 0
    stored = db.get_user_by_email("ops@example.com")
    assert (stored.credits, stored.reserved_credits) == (6, 0)
    assert db.get_job("f1").status == JobStatus.completed


def test_release_returns_reservation_without_debit(db) -> None:
    db.create_user("ops@example.com", credits=10)
    ledger = CreditLedger(db)
    user = ledger.authorize("ops@example.com", 7)

    ledger.release(user, 7)

    stored = db.get_user_by_email("ops@example.com")
    assert (stored.credits, stored.reserved_credits, stored.available_credits) == (10, 0, 10)


def test_settle_without_transactions_debits_then_writes_job() -> None:
    store = _RestLikeStore(credits=10)
    ledger = CreditLedger(store)
    user = ledger.authorize("ops@example.com", 4)

    ledger.settle(user, 4, _completed_job())

    assert store.calls == ["reserve", "debit", "upsert_job"]
    assert (store.user.credits, store.user.reserved_credits) == (6, 0)
    assert store.jobs["f1"].status == JobStatus.completed


def test_settle_refunds_when_job_write_fails() -> None:
    store = _RestLikeStore(credits=10)
    ledger = CreditLedger(store)
    user = ledger.authorize("ops@example.com", 4)
    store.fail_job_writes = True

    with pytest.raises(StorageError):
        ledger.settle(user, 4, _completed_job())

    assert store.calls == ["reserve", "debit", "upsert_job", "refund"]
    assert store.user.credits == 10
    assert store.jobs == {}


def test_release_swallows_store_errors() -> None:
    store = _RestLikeStore()

    def broken_release(user_id, amount):
        raise StorageError("down")

    store.release_credits = broken_release

    CreditLedger(store).release(store.user, 3)
