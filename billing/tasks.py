import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from billing.exceptions import StorageError
from billing.models import EditOperation
from billing.services import EditService, RechargeGuard

logger = logging.getLogger(__name__)

EDIT_STALE_AFTER_MINUTES = getattr(settings, "EDIT_STALE_AFTER_MINUTES", 15)
RECHARGE_EXPIRY_HOURS = getattr(settings, "BILLING_RECHARGE_EXPIRY_HOURS", 24)


@shared_task(bind=True, acks_late=True, max_retries=3, default_retry_delay=30)
def process_edit_operation(self, operation_id: int):
    """
    Run one edit operation against the generative API.

    Uses acks_late=True so the task is not acknowledged until it completes;
    a worker crash mid-call leaves it to be redelivered, and a redelivery of
    a finished operation is a no-op.
    """
    try:
        logger.info("Processing edit operation_id=%d", operation_id)
        operation = EditService().execute(operation_id)
        return {"operation_id": operation_id, "status": operation.status}

    except EditOperation.DoesNotExist:
        logger.error("Edit operation %d not found or already finished.", operation_id)
        return {"operation_id": operation_id, "status": "NOT_FOUND"}

    except StorageError as exc:
        logger.warning("Storage error processing edit %d, retrying: %s", operation_id, exc)
        raise self.retry(exc=exc, countdown=2**self.request.retries * 10)


@shared_task
def fail_stale_edit_operations():
    """
    Periodic task: fail and refund edits that never got a result.

    Runs via Celery Beat; an operation counts as stale once it has been
    PROCESSING for EDIT_STALE_AFTER_MINUTES.
    """
    cutoff = timezone.now() - timedelta(minutes=EDIT_STALE_AFTER_MINUTES)
    count = EditService().fail_stale(cutoff)
    if count:
        logger.info("Failed %d stale edit operation(s).", count)
    return {"failed": count}


@shared_task
def expire_pending_recharges():
    """Periodic task: fail recharges left PENDING for RECHARGE_EXPIRY_HOURS."""
    cutoff = timezone.now() - timedelta(hours=RECHARGE_EXPIRY_HOURS)
    return {"expired": RechargeGuard().expire_pending(cutoff)}
