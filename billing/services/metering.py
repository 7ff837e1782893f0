import logging
from datetime import timezone as dt_timezone

from django.conf import settings
from django.db import IntegrityError
from django.utils import timezone

from billing.exceptions import IdempotencyConflict, UnknownAction
from billing.models import UsageRecord
from billing.services.ledger import BalanceLedger

logger = logging.getLogger(__name__)

ACTION_PRICES = getattr(settings, "BILLING_ACTION_PRICES", {"image_edit": 100})
FREE_DAILY_ACTIONS = getattr(settings, "BILLING_FREE_DAILY_ACTIONS", 3)


def utc_day_start(now=None):
    now = (now or timezone.now()).astimezone(dt_timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class UsageMeter:
    """
    Turns billable actions into ledger debits.

    A user gets `free_daily_actions` actions per UTC day without a debit;
    after that each action costs its quoted price. Counting and charging
    happen under the account row lock, so concurrent requests cannot both
    take the last free slot.

    The meter never refunds on its own. When the external work behind a
    charge fails, the caller decides whether to call `refund()`.
    """

    def __init__(self, ledger: BalanceLedger = None, prices=None, free_daily_actions=None):
        self.ledger = ledger or BalanceLedger()
        self.store = self.ledger.store
        self.prices = dict(ACTION_PRICES if prices is None else prices)
        self.free_daily_actions = (
            FREE_DAILY_ACTIONS if free_daily_actions is None else free_daily_actions
        )

    def quote(self, action_type: str) -> int:
        try:
            return self.prices[action_type]
        except KeyError:
            raise UnknownAction(f"Unknown billable action: {action_type!r}") from None

    def daily_usage_count(self, user_id: int, now=None) -> int:
        """Usages since UTC midnight that are in flight or succeeded."""
        with self.store.storage_errors():
            return UsageRecord.count_since(user_id, utc_day_start(now), using=self.store.using)

    def charge_for_action(self, user_id: int, action_type: str, reference_id: str) -> UsageRecord:
        """
        Charge the user for one action identified by `reference_id`.

        Returns the UsageRecord; `amount` is what was debited (0 when free).
        Replaying a reference id returns the original record unchanged.

        Raises:
            UnknownAction: If action_type has no configured price.
            InsufficientBalance: If the user cannot pay; nothing is recorded.
            IdempotencyConflict: If reference_id belongs to another user or action.
        """
        price = self.quote(action_type)
        records = UsageRecord.objects.using(self.store.using)

        try:
            with self.store.atomic():
                self.store.lock_account(user_id)

                existing = records.filter(reference_id=reference_id).first()
                if existing:
                    return self._replayed(existing, user_id, action_type)

                used_today = self.daily_usage_count(user_id)
                if price == 0 or used_today < self.free_daily_actions:
                    record = records.create(
                        user_id=user_id,
                        action_type=action_type,
                        reference_id=reference_id,
                        amount=0,
                        is_free=True,
                    )
                    logger.info(
                        "Free usage recorded: user=%s action=%s reference=%s used_today=%d",
                        user_id,
                        action_type,
                        reference_id,
                        used_today,
                    )
                    return record

                entry = self.ledger.debit(
                    user_id, price, reference_id=reference_id, remark=f"{action_type} usage"
                )
                record = records.create(
                    user_id=user_id,
                    action_type=action_type,
                    reference_id=reference_id,
                    amount=price,
                    ledger_entry=entry,
                )
        except IntegrityError as exc:
            # Another user's transaction took this reference id first.
            existing = records.filter(reference_id=reference_id).first()
            if existing is None:
                raise
            raise IdempotencyConflict(
                f"Reference {reference_id} is already metered for user {existing.user_id}."
            ) from exc

        logger.info(
            "Usage charged: user=%s action=%s amount=%d reference=%s",
            user_id,
            action_type,
            price,
            reference_id,
        )
        return record

    def _replayed(self, record, user_id, action_type):
        if record.user_id != user_id or record.action_type != action_type:
            logger.warning(
                "Usage reference conflict: reference=%s existing_user=%s user=%s",
                record.reference_id,
                record.user_id,
                user_id,
            )
            raise IdempotencyConflict(
                f"Reference {record.reference_id} is already metered for another action."
            )
        logger.info("Idempotent usage charge: reference=%s", record.reference_id)
        return record

    def record_outcome(self, reference_id: str, succeeded: bool) -> UsageRecord:
        """Move a PENDING usage to SUCCEEDED or FAILED. Terminal usages are left as is."""
        status = UsageRecord.Status.SUCCEEDED if succeeded else UsageRecord.Status.FAILED
        with self.store.atomic():
            record = (
                UsageRecord.objects.using(self.store.using)
                .select_for_update()
                .get(reference_id=reference_id)
            )
            if record.status == UsageRecord.Status.PENDING:
                record.status = status
                record.save(using=self.store.using, update_fields=["status", "updated_at"])
            elif record.status != status:
                logger.warning(
                    "Usage outcome ignored: reference=%s status=%s requested=%s",
                    reference_id,
                    record.status,
                    status,
                )
        return record

    def refund(self, reference_id: str, remark: str = "refund"):
        """
        Credit back the charge behind `reference_id`, at most once.

        Returns the refund LedgerEntry, or None for a free usage.
        """
        with self.store.atomic():
            record = (
                UsageRecord.objects.using(self.store.using)
                .select_for_update()
                .get(reference_id=reference_id)
            )
            if record.is_free:
                return None
            if record.is_refunded:
                logger.info("Idempotent refund: reference=%s", reference_id)
                return record.refund_entry

            entry = self.ledger.credit(
                record.user_id, record.amount, reference_id=reference_id, remark=remark
            )
            record.refund_entry = entry
            record.save(using=self.store.using, update_fields=["refund_entry", "updated_at"])

        logger.info(
            "Usage refunded: user=%s amount=%d reference=%s",
            record.user_id,
            record.amount,
            reference_id,
        )
        return entry
