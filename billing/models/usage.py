from django.db import models

from billing.models.base import BaseModel


class UsageRecord(BaseModel):
    """
    Metering record of one billable action.

    Free-tier usages carry `amount=0` and no ledger entry. Charged usages
    point at their DEBIT, and at the compensating CREDIT once refunded.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        SUCCEEDED = "SUCCEEDED", "Succeeded"
        FAILED = "FAILED", "Failed"

    user_id = models.BigIntegerField()
    action_type = models.CharField(max_length=32)
    reference_id = models.CharField(max_length=128, unique=True)
    amount = models.BigIntegerField(default=0)
    is_free = models.BooleanField(default=False)
    status = models.CharField(
        max_length=9,
        choices=Status.choices,
        default=Status.PENDING,
    )
    ledger_entry = models.OneToOneField(
        "billing.LedgerEntry",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="usage_record",
    )
    refund_entry = models.OneToOneField(
        "billing.LedgerEntry",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="refunded_usage_record",
    )

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["user_id", "created_at"], name="idx_usage_user_created"),
        ]

    def __str__(self):
        return (
            f"UsageRecord {self.reference_id} | {self.action_type} | "
            f"{self.amount} | {self.status}"
        )

    @property
    def is_refunded(self):
        return self.refund_entry_id is not None

    @classmethod
    def count_since(cls, user_id, since, using="default"):
        """Count usages since `since` that still occupy a slot (not FAILED)."""
        return (
            cls.objects.using(using)
            .filter(user_id=user_id, created_at__gte=since)
            .exclude(status=cls.Status.FAILED)
            .count()
        )
