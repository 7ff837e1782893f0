import uuid

from django.db import models
from django.utils import timezone

from billing.models.base import BaseModel


class EditOperation(BaseModel):
    """
    One image-edit request forwarded to the generative API.

    Created PROCESSING after the user has been charged (or granted a free
    slot). The Celery worker calls the API and moves it to SUCCEEDED or
    FAILED. `uuid` is the reference id of the usage record and ledger debit.
    """

    class Status(models.TextChoices):
        PROCESSING = "PROCESSING", "Processing"
        SUCCEEDED = "SUCCEEDED", "Succeeded"
        FAILED = "FAILED", "Failed"

    uuid = models.UUIDField(
        default=uuid.uuid4, unique=True, editable=False, db_index=True
    )
    user_id = models.BigIntegerField()
    instruction = models.TextField()
    input_images = models.JSONField(default=list)
    output_images = models.JSONField(default=list, blank=True)
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PROCESSING,
    )
    cost = models.BigIntegerField(default=0)
    error = models.JSONField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["status", "created_at"], name="idx_edit_status_created"),
            models.Index(fields=["user_id", "created_at"], name="idx_edit_user_created"),
        ]

    def __str__(self):
        return f"EditOperation {self.uuid} | user={self.user_id} | {self.status}"

    @property
    def reference_id(self):
        return str(self.uuid)

    @classmethod
    def get_stale_processing(cls, older_than):
        """Return operations still PROCESSING that were created before `older_than`."""
        return cls.objects.filter(status=cls.Status.PROCESSING, created_at__lt=older_than)

    def finish(self, status, output_images=None, error=None):
        self.status = status
        self.output_images = output_images or []
        self.error = error
        self.completed_at = timezone.now()
        self.save(
            update_fields=["status", "output_images", "error", "completed_at", "updated_at"]
        )
