import logging

from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

from billing.models import EditOperation
from billing.services.metering import UsageMeter
from billing.utils import request_image_edit

logger = logging.getLogger(__name__)

EDIT_ACTION = "image_edit"


class EditService:
    """
    Runs image edits as billable actions.

    Submission: creates a PROCESSING EditOperation and charges for it in one
    transaction; if the user cannot pay, neither the operation nor a charge
    exists afterwards.
    Execution: calls the generative API outside any transaction, stores the
    returned images, then finishes the operation. A failed generation is
    refunded: that is this service's policy as the metering caller.
    """

    def __init__(self, meter: UsageMeter = None, storage=None):
        self.meter = meter or UsageMeter()
        self.store = self.meter.store
        self.storage = storage or default_storage

    def _operations(self):
        return EditOperation.objects.using(self.store.using)

    def submit(self, user_id: int, instruction: str, image_urls: list) -> EditOperation:
        """
        Create and pay for an edit operation.

        Raises:
            InsufficientBalance: If the user has used the free allowance and
                cannot pay; nothing is created.
        """
        self.meter.quote(EDIT_ACTION)

        with self.store.atomic():
            operation = self._operations().create(
                user_id=user_id,
                instruction=instruction,
                input_images=list(image_urls),
            )
            usage = self.meter.charge_for_action(user_id, EDIT_ACTION, operation.reference_id)
            operation.cost = usage.amount
            operation.save(using=self.store.using, update_fields=["cost", "updated_at"])

        logger.info(
            "Edit submitted: user=%s operation=%s cost=%d free=%s",
            user_id,
            operation.uuid,
            operation.cost,
            usage.is_free,
        )
        return operation

    def execute(self, operation_id: int) -> EditOperation:
        """
        Call the generative API for a PROCESSING operation and record the outcome.

        Raises:
            EditOperation.DoesNotExist: If the operation doesn't exist or is
                no longer PROCESSING.
        """
        operation = self._operations().get(id=operation_id, status=EditOperation.Status.PROCESSING)

        result = request_image_edit(operation.instruction, operation.input_images)

        stored = []
        if result["success"]:
            for index, image in enumerate(result["images"]):
                name = self.storage.save(
                    f"edits/{operation.uuid}_{index}.png", ContentFile(image)
                )
                stored.append(name)

        with self.store.atomic():
            operation = (
                self._operations()
                .select_for_update()
                .get(id=operation_id)
            )
            discarded = operation.status != EditOperation.Status.PROCESSING
            if discarded:
                # Finished by another worker or failed as stale meanwhile.
                logger.warning(
                    "Edit result discarded: operation=%s status=%s",
                    operation.uuid,
                    operation.status,
                )
            elif result["success"]:
                operation.finish(EditOperation.Status.SUCCEEDED, output_images=stored)
                self.meter.record_outcome(operation.reference_id, succeeded=True)
            else:
                self._fail(operation, result["response"])

        if discarded:
            for name in stored:
                self.storage.delete(name)
            return operation

        if operation.status == EditOperation.Status.SUCCEEDED:
            logger.info(
                "Edit completed: user=%s operation=%s images=%d",
                operation.user_id,
                operation.uuid,
                len(stored),
            )
        else:
            logger.warning(
                "Edit failed: user=%s operation=%s response=%s",
                operation.user_id,
                operation.uuid,
                result["response"],
            )
        return operation

    def _fail(self, operation, error):
        """Finish as FAILED, release the usage slot, refund the charge. Call inside `atomic()`."""
        operation.finish(EditOperation.Status.FAILED, error=error)
        self.meter.record_outcome(operation.reference_id, succeeded=False)
        self.meter.refund(operation.reference_id, remark="refund: image edit failed")

    def fail_stale(self, older_than) -> int:
        """Fail and refund operations stuck in PROCESSING since before `older_than`."""
        failed = 0
        with self.store.storage_errors():
            candidates = list(
                EditOperation.get_stale_processing(older_than)
                .using(self.store.using)
                .values_list("id", flat=True)
            )
        for operation_id in candidates:
            with self.store.atomic():
                operation = self._operations().select_for_update().get(id=operation_id)
                if operation.status != EditOperation.Status.PROCESSING:
                    continue
                self._fail(operation, {"error": "stale", "detail": "No result before timeout."})
                failed += 1
            logger.warning("Stale edit failed: operation=%s", operation.uuid)
        return failed
