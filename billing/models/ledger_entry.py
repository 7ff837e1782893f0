import uuid

from django.db import models


class LedgerEntryImmutableError(Exception):
    """Raised on any attempt to change or remove a written ledger entry."""


class LedgerEntry(models.Model):
    """
    Immutable record of one balance mutation.

    `amount` is always positive; the direction comes from `kind`.
    `balance_after` is the account balance right after this entry applied, so
    for any user the entries replayed oldest-first reproduce every snapshot.
    """

    class Kind(models.TextChoices):
        CREDIT = "CREDIT", "Credit"
        DEBIT = "DEBIT", "Debit"

    entry_id = models.UUIDField(
        default=uuid.uuid4, unique=True, editable=False, db_index=True
    )
    account = models.ForeignKey(
        "billing.Account",
        on_delete=models.PROTECT,
        related_name="entries",
    )
    user_id = models.BigIntegerField()
    kind = models.CharField(max_length=6, choices=Kind.choices)
    amount = models.BigIntegerField()
    balance_after = models.BigIntegerField()
    reference_id = models.CharField(max_length=128, blank=True, default="")
    remark = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        verbose_name_plural = "ledger entries"
        indexes = [
            models.Index(fields=["user_id", "-created_at", "-id"], name="idx_entry_user_recent"),
            models.Index(fields=["reference_id"], name="idx_entry_reference"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="ledger_entry_amount_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(balance_after__gte=0),
                name="ledger_entry_balance_after_non_negative",
            ),
        ]

    def __str__(self):
        return (
            f"LedgerEntry {self.entry_id} | {self.kind} | "
            f"{self.amount} | balance_after={self.balance_after}"
        )

    @property
    def signed_amount(self):
        return self.amount if self.kind == self.Kind.CREDIT else -self.amount

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise LedgerEntryImmutableError("Ledger entries cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerEntryImmutableError("Ledger entries cannot be deleted.")
