import logging
from typing import NamedTuple

from billing.exceptions import AlreadyTerminal, IdempotencyConflict
from billing.models import LedgerEntry, RechargeRequest
from billing.services.ledger import BalanceLedger, validate_amount

logger = logging.getLogger(__name__)


class Settlement(NamedTuple):
    """Outcome of `RechargeGuard.settle`. `applied` is False on a replay."""

    recharge: RechargeRequest
    entry: LedgerEntry
    applied: bool


class RechargeGuard:
    """
    Applies payment settlements to the ledger at most once per transaction id.

    Payment callbacks are delivered at least once. The RechargeRequest row is
    unique per transaction id and is locked (SELECT ... FOR UPDATE) for the
    whole settle transaction, so concurrent replays of one id queue behind
    each other and only the first one credits.
    """

    def __init__(self, ledger: BalanceLedger = None):
        self.ledger = ledger or BalanceLedger()
        self.store = self.ledger.store

    def _requests(self):
        return RechargeRequest.objects.using(self.store.using)

    def _lock_or_create(self, transaction_id, user_id, amount):
        """
        Return the locked request for `transaction_id`, inserting it PENDING if
        unseen. A concurrent insert of the same id loses on the unique
        constraint and falls back to reading the winner's row.
        """
        self._requests().get_or_create(
            transaction_id=transaction_id,
            defaults={"user_id": user_id, "amount": amount},
        )
        return self._requests().select_for_update().get(transaction_id=transaction_id)

    @staticmethod
    def _check_matches(recharge, user_id, amount):
        if recharge.user_id != user_id or recharge.amount != amount:
            logger.warning(
                "Recharge conflict: transaction=%s existing_user=%s existing_amount=%d "
                "user=%s amount=%d",
                recharge.transaction_id,
                recharge.user_id,
                recharge.amount,
                user_id,
                amount,
            )
            raise IdempotencyConflict(
                f"Transaction {recharge.transaction_id} was registered with different parameters."
            )

    def open(self, transaction_id: str, user_id: int, amount: int) -> RechargeRequest:
        """
        Register a PENDING recharge when the payment order is created.

        Raises:
            AlreadyTerminal: If the transaction was already marked FAILED.
            IdempotencyConflict: If the transaction is known with another user or amount.
        """
        validate_amount(amount)
        with self.store.atomic():
            recharge = self._lock_or_create(transaction_id, user_id, amount)
            if recharge.status == RechargeRequest.Status.FAILED:
                logger.warning("Open rejected: transaction=%s is FAILED", transaction_id)
                raise AlreadyTerminal(transaction_id, recharge.status)
            self._check_matches(recharge, user_id, amount)

        logger.info(
            "Recharge opened: transaction=%s user=%s amount=%d status=%s",
            transaction_id,
            user_id,
            amount,
            recharge.status,
        )
        return recharge

    def settle(self, transaction_id: str, user_id: int, amount: int) -> Settlement:
        """
        Credit the user for a settled payment, once.

        Raises:
            InvalidAmount: If amount is not a positive integer.
            AlreadyTerminal: If the transaction was marked FAILED.
            IdempotencyConflict: If the transaction is known with another user or amount.
            StorageError: If the database failed; nothing was applied.
        """
        validate_amount(amount)

        with self.store.atomic():
            recharge = self._lock_or_create(transaction_id, user_id, amount)

            if recharge.status == RechargeRequest.Status.FAILED:
                logger.warning("Settlement rejected: transaction=%s is FAILED", transaction_id)
                raise AlreadyTerminal(transaction_id, recharge.status)

            self._check_matches(recharge, user_id, amount)

            if recharge.status == RechargeRequest.Status.SETTLED:
                logger.info(
                    "Idempotent recharge settlement: transaction=%s entry=%s",
                    transaction_id,
                    recharge.ledger_entry.entry_id,
                )
                return Settlement(recharge, recharge.ledger_entry, False)

            entry = self.ledger.credit(
                user_id, amount, reference_id=transaction_id, remark="recharge"
            )
            recharge.mark_settled(entry)

        logger.info(
            "Recharge settled: transaction=%s user=%s amount=%d balance_after=%d",
            transaction_id,
            user_id,
            amount,
            entry.balance_after,
        )
        return Settlement(recharge, entry, True)

    def mark_failed(self, transaction_id: str) -> RechargeRequest:
        """
        Mark the transaction FAILED so that it can never be settled.

        An unseen transaction id is recorded (with user 0 and amount 0, since
        the gateway did not report them) and failed right away. Marking an
        already FAILED request again is a no-op.

        Raises:
            AlreadyTerminal: If the transaction was already SETTLED.
        """
        with self.store.atomic():
            recharge = self._lock_or_create(transaction_id, user_id=0, amount=0)
            if recharge.status == RechargeRequest.Status.SETTLED:
                logger.warning("Mark failed rejected: transaction=%s is SETTLED", transaction_id)
                raise AlreadyTerminal(transaction_id, recharge.status)
            if recharge.status == RechargeRequest.Status.FAILED:
                return recharge
            recharge.mark_failed()

        logger.info("Recharge failed: transaction=%s", transaction_id)
        return recharge

    def expire_pending(self, older_than) -> int:
        """Mark PENDING requests created before `older_than` as FAILED."""
        expired = 0
        with self.store.storage_errors():
            candidates = list(
                RechargeRequest.get_expired_pending(older_than)
                .using(self.store.using)
                .values_list("transaction_id", flat=True)
            )
        for transaction_id in candidates:
            with self.store.atomic():
                recharge = self._requests().select_for_update().get(transaction_id=transaction_id)
                # Settled between the scan and the lock.
                if recharge.status != RechargeRequest.Status.PENDING:
                    continue
                recharge.mark_failed()
                expired += 1
        if expired:
            logger.info("Expired %d pending recharge(s).", expired)
        return expired
