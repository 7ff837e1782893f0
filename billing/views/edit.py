import logging

from django.db import transaction
from rest_framework import status
from rest_framework.generics import RetrieveAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.exceptions import LedgerError
from billing.models import EditOperation
from billing.serializers import CreateEditSerializer, EditOperationSerializer
from billing.services import EditService
from billing.tasks import process_edit_operation
from billing.views.errors import ledger_error_response

logger = logging.getLogger(__name__)


class CreateEditView(APIView):
    """
    POST /accounts/<user_id>/edits: Submit an image edit.

    Request body: {"instruction": "...", "image_urls": ["https://...", ...]}
    The user is charged (or uses a free slot) before the edit is queued.
    Responds 202 with the operation to poll, or 402 when the balance is
    insufficient.
    """

    def post(self, request, user_id, *args, **kwargs):
        serializer = CreateEditSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            operation = EditService().submit(
                user_id=user_id,
                instruction=serializer.validated_data["instruction"],
                image_urls=serializer.validated_data["image_urls"],
            )
        except LedgerError as exc:
            return ledger_error_response(exc)

        transaction.on_commit(lambda: process_edit_operation.delay(operation.id))

        return Response(
            EditOperationSerializer(operation).data,
            status=status.HTTP_202_ACCEPTED,
        )


class EditDetailView(RetrieveAPIView):
    """GET /edits/<uuid>/: Retrieve an edit operation."""

    serializer_class = EditOperationSerializer
    queryset = EditOperation.objects.all()
    lookup_field = "uuid"
