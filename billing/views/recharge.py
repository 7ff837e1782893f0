import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.exceptions import LedgerError
from billing.serializers import (
    LedgerEntrySerializer,
    RechargeRequestSerializer,
    RechargeSerializer,
)
from billing.services import RechargeGuard
from billing.views.errors import ledger_error_response

logger = logging.getLogger(__name__)


class OpenRechargeView(APIView):
    """
    POST /recharges/: Register a pending recharge when a payment order is created.

    Request body: {"transaction_id": "...", "user_id": <int>, "amount": <positive integer>}
    """

    def post(self, request, *args, **kwargs):
        serializer = RechargeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            recharge = RechargeGuard().open(**serializer.validated_data)
        except LedgerError as exc:
            return ledger_error_response(exc)

        return Response(RechargeRequestSerializer(recharge).data, status=status.HTTP_201_CREATED)


class SettleRechargeView(APIView):
    """
    POST /recharges/settle: Payment settlement callback.

    Safe to deliver more than once: a replay answers 200 with `applied: false`
    and the entry created by the first delivery.
    """

    def post(self, request, *args, **kwargs):
        serializer = RechargeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            settlement = RechargeGuard().settle(**serializer.validated_data)
        except LedgerError as exc:
            return ledger_error_response(exc)

        return Response(
            {
                "applied": settlement.applied,
                "recharge": RechargeRequestSerializer(settlement.recharge).data,
                "entry": LedgerEntrySerializer(settlement.entry).data,
            },
            status=status.HTTP_200_OK,
        )


class FailRechargeView(APIView):
    """POST /recharges/<transaction_id>/fail: Mark a payment as failed; it can never settle afterwards."""

    def post(self, request, transaction_id, *args, **kwargs):
        try:
            recharge = RechargeGuard().mark_failed(transaction_id)
        except LedgerError as exc:
            return ledger_error_response(exc)

        return Response(RechargeRequestSerializer(recharge).data, status=status.HTTP_200_OK)
