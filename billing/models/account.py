from django.db import models

from billing.models.base import BaseModel


class Account(BaseModel):
    """
    Holds a user's current balance in minor currency units (fen).

    The balance is a snapshot of the ledger: it only changes together with a
    new LedgerEntry, inside one transaction that holds a row lock on this
    account. The check constraint is the last line against a negative balance.
    """

    user_id = models.BigIntegerField(unique=True)
    balance = models.BigIntegerField(default=0)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=models.Q(balance__gte=0),
                name="account_balance_non_negative",
            ),
        ]

    def __str__(self):
        return f"Account user={self.user_id} (balance={self.balance})"
