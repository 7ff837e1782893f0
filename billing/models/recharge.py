from django.db import models
from django.utils import timezone

from billing.models.base import BaseModel


class RechargeRequest(BaseModel):
    """
    One payment transaction reported by the payment gateway.

    `transaction_id` is the idempotency key: the unique constraint guarantees a
    single row per payment, and the row lock taken during settlement
    guarantees a single CREDIT entry. SETTLED and FAILED are terminal.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        SETTLED = "SETTLED", "Settled"
        FAILED = "FAILED", "Failed"

    transaction_id = models.CharField(max_length=128, unique=True)
    user_id = models.BigIntegerField()
    amount = models.BigIntegerField()
    status = models.CharField(
        max_length=8,
        choices=Status.choices,
        default=Status.PENDING,
    )
    ledger_entry = models.OneToOneField(
        "billing.LedgerEntry",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="recharge_request",
    )
    settled_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["status", "created_at"], name="idx_recharge_status_created"),
        ]

    def __str__(self):
        return (
            f"RechargeRequest {self.transaction_id} | user={self.user_id} | "
            f"{self.amount} | {self.status}"
        )

    @property
    def is_terminal(self):
        return self.status in (self.Status.SETTLED, self.Status.FAILED)

    @classmethod
    def get_expired_pending(cls, older_than):
        """Return pending requests created before `older_than`."""
        return cls.objects.filter(status=cls.Status.PENDING, created_at__lt=older_than)

    def mark_settled(self, entry):
        self.status = self.Status.SETTLED
        self.ledger_entry = entry
        self.settled_at = timezone.now()
        self.save(update_fields=["status", "ledger_entry", "settled_at", "updated_at"])

    def mark_failed(self):
        self.status = self.Status.FAILED
        self.failed_at = timezone.now()
        self.save(update_fields=["status", "failed_at", "updated_at"])
