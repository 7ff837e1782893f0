import logging
from dataclasses import dataclass, field

from billing.exceptions import InsufficientBalance, InvalidAmount
from billing.models import LedgerEntry
from billing.services.store import LedgerStore

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


@dataclass
class LedgerAudit:
    user_id: int
    balance: int
    credited: int
    debited: int
    mismatched_entries: list = field(default_factory=list)

    @property
    def derived_balance(self):
        return self.credited - self.debited

    @property
    def is_consistent(self):
        return self.derived_balance == self.balance and not self.mismatched_entries


def validate_amount(amount):
    # bool is an int subclass; True is not a sum of money.
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer number of minor units, got {amount!r}.")
    if amount <= 0:
        raise InvalidAmount("Amount must be positive.")


class BalanceLedger:
    """
    Sole owner of account balance mutations.

    Each credit or debit runs as one transaction: lock the account row, read
    the balance, compute the new balance, write it together with an immutable
    LedgerEntry, commit. Concurrent mutations for the same user queue on the
    row lock, so a debit always checks the balance left by the previous one.
    Different users never contend.

    Plain credit/debit calls are not idempotent. Retries that must not apply
    twice go through RechargeGuard or UsageMeter, which key on an external id.
    """

    def __init__(self, store: LedgerStore = None):
        self.store = store or LedgerStore.from_settings()

    def get_balance(self, user_id: int) -> int:
        """Return the current balance, creating a zero-balance account if needed."""
        with self.store.atomic():
            return self.store.get_or_create_account(user_id).balance

    def credit(self, user_id: int, amount: int, reference_id: str = "", remark: str = "") -> LedgerEntry:
        """
        Add `amount` to the user's balance and record a CREDIT entry.

        Raises:
            InvalidAmount: If amount is not a positive integer.
            StorageError: If the database failed; nothing was applied.
        """
        validate_amount(amount)

        with self.store.atomic():
            account = self.store.lock_account(user_id)
            entry = self.store.append_entry(
                account,
                LedgerEntry.Kind.CREDIT,
                amount,
                account.balance + amount,
                reference_id,
                remark,
            )

        logger.info(
            "Credit applied: user=%s amount=%d balance_after=%d reference=%s entry=%s",
            user_id,
            amount,
            entry.balance_after,
            reference_id,
            entry.entry_id,
        )
        return entry

    def debit(self, user_id: int, amount: int, reference_id: str = "", remark: str = "") -> LedgerEntry:
        """
        Subtract `amount` from the user's balance and record a DEBIT entry.

        Raises:
            InvalidAmount: If amount is not a positive integer.
            InsufficientBalance: If the balance is lower than amount; nothing changed.
            StorageError: If the database failed; nothing was applied.
        """
        validate_amount(amount)

        with self.store.atomic():
            account = self.store.lock_account(user_id)
            if account.balance < amount:
                logger.warning(
                    "Debit rejected (insufficient balance): user=%s balance=%d amount=%d reference=%s",
                    user_id,
                    account.balance,
                    amount,
                    reference_id,
                )
                raise InsufficientBalance(user_id, account.balance, amount)

            entry = self.store.append_entry(
                account,
                LedgerEntry.Kind.DEBIT,
                amount,
                account.balance - amount,
                reference_id,
                remark,
            )

        logger.info(
            "Debit applied: user=%s amount=%d balance_after=%d reference=%s entry=%s",
            user_id,
            amount,
            entry.balance_after,
            reference_id,
            entry.entry_id,
        )
        return entry

    def get_history(self, user_id: int, limit: int = 20, offset: int = 0) -> list:
        """
        Return up to `limit` entries, most recent first, skipping `offset`.

        Offset pages are stable only while no entries are written between
        page reads; a new entry shifts every later page by one.
        """
        if limit <= 0 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative.")
        limit = min(limit, MAX_HISTORY_LIMIT)
        with self.store.storage_errors():
            return list(self.store.entries(user_id)[offset : offset + limit])

    def audit(self, user_id: int) -> LedgerAudit:
        """Compare the stored balance against the fold over the user's entries."""
        with self.store.atomic():
            account = self.store.get_or_create_account(user_id)
            credited, debited = self.store.totals(user_id)
            result = LedgerAudit(
                user_id=user_id,
                balance=account.balance,
                credited=credited,
                debited=debited,
            )
            running = 0
            for entry in self.store.entries(user_id).reverse().iterator():
                running += entry.signed_amount
                if entry.balance_after != running:
                    result.mismatched_entries.append(entry.entry_id)

        if not result.is_consistent:
            logger.error(
                "Ledger drift: user=%s balance=%d derived=%d mismatched_entries=%d",
                user_id,
                result.balance,
                result.derived_balance,
                len(result.mismatched_entries),
            )
        return result
