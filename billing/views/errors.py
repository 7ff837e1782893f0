from rest_framework import status
from rest_framework.response import Response

from billing.exceptions import (
    AlreadyTerminal,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidAmount,
    StorageError,
    UnknownAction,
)

STATUS_BY_ERROR = (
    (InsufficientBalance, status.HTTP_402_PAYMENT_REQUIRED),
    (AlreadyTerminal, status.HTTP_409_CONFLICT),
    (IdempotencyConflict, status.HTTP_409_CONFLICT),
    (InvalidAmount, status.HTTP_400_BAD_REQUEST),
    (UnknownAction, status.HTTP_400_BAD_REQUEST),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def ledger_error_response(exc):
    """Map a LedgerError to a response carrying its stable `code`."""
    for error_class, http_status in STATUS_BY_ERROR:
        if isinstance(exc, error_class):
            break
    else:
        http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    return Response({"error": str(exc), "code": exc.code}, status=http_status)
