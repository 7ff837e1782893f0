import logging
from contextlib import contextmanager

from django.conf import settings
from django.db import DatabaseError, IntegrityError, connections, transaction
from django.db.models import Sum

from billing.exceptions import StorageError
from billing.models import Account, LedgerEntry

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_MS = getattr(settings, "BILLING_LOCK_TIMEOUT_MS", 5000)
STATEMENT_TIMEOUT_MS = getattr(settings, "BILLING_STATEMENT_TIMEOUT_MS", 30000)


class LedgerStore:
    """
    Storage primitives for accounts and ledger entries on one database alias.

    Every mutation runs inside `atomic()`, which opens a transaction, bounds
    lock waits by `lock_timeout_ms` and statements by `statement_timeout_ms`,
    and turns database failures into StorageError after the rollback.
    `lock_account()` takes a row-level lock (SELECT ... FOR UPDATE) that
    lasts until the enclosing transaction ends; that lock is what serializes
    balance mutations per user.
    """

    def __init__(
        self,
        using="default",
        lock_timeout_ms=LOCK_TIMEOUT_MS,
        statement_timeout_ms=STATEMENT_TIMEOUT_MS,
    ):
        self.using = using
        self.lock_timeout_ms = lock_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms

    @classmethod
    def from_settings(cls):
        return cls(using=getattr(settings, "BILLING_DATABASE", "default"))

    @contextmanager
    def atomic(self):
        with self.storage_errors():
            with transaction.atomic(using=self.using):
                self._apply_timeouts()
                yield

    @contextmanager
    def storage_errors(self):
        try:
            yield
        except IntegrityError:
            raise
        except DatabaseError as exc:
            logger.error("Ledger storage error: using=%s error=%s", self.using, exc)
            raise StorageError(str(exc)) from exc

    def _apply_timeouts(self):
        connection = connections[self.using]
        if connection.vendor != "postgresql":
            # SQLite bounds waits with the connection's busy timeout.
            return
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT set_config('lock_timeout', %s, true), "
                "set_config('statement_timeout', %s, true)",
                [f"{self.lock_timeout_ms}ms", f"{self.statement_timeout_ms}ms"],
            )

    def get_or_create_account(self, user_id):
        account, created = Account.objects.using(self.using).get_or_create(user_id=user_id)
        if created:
            logger.info("Account created: user=%s", user_id)
        return account

    def lock_account(self, user_id):
        """Create the account if missing, then lock its row. Call inside `atomic()`."""
        self.get_or_create_account(user_id)
        return Account.objects.using(self.using).select_for_update().get(user_id=user_id)

    def append_entry(self, account, kind, amount, balance_after, reference_id, remark):
        """Persist the new balance and its ledger entry. Call inside `atomic()`."""
        account.balance = balance_after
        account.save(using=self.using, update_fields=["balance", "updated_at"])
        return LedgerEntry.objects.using(self.using).create(
            account=account,
            user_id=account.user_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            reference_id=reference_id or "",
            remark=remark or "",
        )

    def entries(self, user_id):
        """All entries for a user, most recent first."""
        return LedgerEntry.objects.using(self.using).filter(user_id=user_id).order_by(
            "-created_at", "-id"
        )

    def totals(self, user_id):
        """Return (credited, debited) sums over a user's entries."""
        rows = (
            LedgerEntry.objects.using(self.using)
            .filter(user_id=user_id)
            .values("kind")
            .annotate(total=Sum("amount"))
        )
        sums = {row["kind"]: row["total"] or 0 for row in rows}
        return sums.get(LedgerEntry.Kind.CREDIT, 0), sums.get(LedgerEntry.Kind.DEBIT, 0)

    def account_user_ids(self):
        return Account.objects.using(self.using).order_by("user_id").values_list(
            "user_id", flat=True
        )
