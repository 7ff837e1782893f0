from django.db import models


class BaseModel(models.Model):
    """
    Abstract base model providing common timestamp fields.

    Mutable billing records (accounts, recharge requests, usage records,
    edit operations) inherit from this. Ledger entries do not: they are
    written once and never updated.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at"]
