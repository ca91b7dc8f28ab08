"""Credit ledger: authorize before work is dispatched, settle only on success.

Authorization reserves the required credits on the user row so two concurrent
jobs for one user cannot both pass against the same balance. Settlement turns
the reservation into a debit atomically with marking the job Completed;
failed runs release the reservation and never debit.
"""

import logging

from .errors import InsufficientCreditsError, UserNotFoundError
from .models import JobRecord, UserAccount

logger = logging.getLogger("listverify.ledger")


class CreditLedger:
    """Credit operations over a relational store.

    Stores with ``supports_transactions`` settle through ``settle_job`` in one
    transaction. Others get debit-then-write with a compensating refund when
    the job write fails.
    """

    def __init__(self, store):
        self._store = store

    def authorize(self, user_email: str, required_credits: int) -> UserAccount:
        user = self._store.get_user_by_email(user_email)
        if user is None:
            raise UserNotFoundError(user_email)
        if user.available_credits < required_credits:
            raise InsufficientCreditsError(required_credits, user.available_credits)
        # The store re-checks under its own lock / compare-and-set.
        reserved = self._store.reserve_credits(user.user_id, required_credits)
        logger.info(
            "Authorized %d credits for %s (available before=%d)",
            required_credits, user_email, user.available_credits,
        )
        return reserved

    def settle(self, user: UserAccount, consumed_credits: int, job: JobRecord) -> UserAccount:
        """Debit ``consumed_credits`` and persist the completed ``job`` together."""
        if getattr(self._store, "supports_transactions", False):
            settled = self._store.settle_job(user.user_id, consumed_credits, job)
            logger.info("Settled %d credits for %s (transactional)", consumed_credits, user.user_email)
            return settled

        settled = self._store.debit_credits(user.user_id, consumed_credits)
        try:
            self._store.upsert_job(job)
        except Exception:
            logger.error(
                "Job write failed after debiting %d credits from %s; refunding",
                consumed_credits, user.user_email,
            )
            try:
                self._store.refund_credits(user.user_id, consumed_credits)
            except Exception:
                logger.exception("Refund of %d credits for %s failed", consumed_credits, user.user_email)
            raise
        logger.info("Settled %d credits for %s", consumed_credits, user.user_email)
        return settled

    def release(self, user: UserAccount, reserved_credits: int) -> None:
        """Return a reservation after a failed run. Errors are logged, not raised."""
        try:
            self._store.release_credits(user.user_id, reserved_credits)
        except Exception:
            logger.exception(
                "Failed to release %d reserved credits for %s",
                reserved_credits, user.user_email,
            )
