import logging

from rest_framework.response import Response
from rest_framework.views import APIView

from billing.exceptions import LedgerError
from billing.serializers import (
    DailyUsageSerializer,
    HistoryQuerySerializer,
    LedgerEntrySerializer,
)
from billing.services import BalanceLedger, UsageMeter
from billing.views.errors import ledger_error_response

logger = logging.getLogger(__name__)


class AccountBalanceView(APIView):
    """GET /accounts/<user_id>/: Current balance (the account is created on first access)."""

    def get(self, request, user_id, *args, **kwargs):
        try:
            balance = BalanceLedger().get_balance(user_id)
        except LedgerError as exc:
            return ledger_error_response(exc)
        return Response({"user_id": user_id, "balance": balance})


class LedgerEntryListView(APIView):
    """
    GET /accounts/<user_id>/entries/: Ledger history, most recent first.

    Query params:
        - limit: Page size, 1-100 (default 20)
        - offset: Number of entries to skip (default 0)
    """

    def get(self, request, user_id, *args, **kwargs):
        query = HistoryQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        try:
            entries = BalanceLedger().get_history(
                user_id,
                limit=query.validated_data["limit"],
                offset=query.validated_data["offset"],
            )
        except LedgerError as exc:
            return ledger_error_response(exc)

        return Response(
            {
                "limit": query.validated_data["limit"],
                "offset": query.validated_data["offset"],
                "results": LedgerEntrySerializer(entries, many=True).data,
            }
        )


class DailyUsageView(APIView):
    """GET /accounts/<user_id>/usage/: Billable actions used today (UTC) and the free allowance."""

    def get(self, request, user_id, *args, **kwargs):
        meter = UsageMeter()
        try:
            today_usage = meter.daily_usage_count(user_id)
        except LedgerError as exc:
            return ledger_error_response(exc)

        serializer = DailyUsageSerializer(
            {
                "user_id": user_id,
                "today_usage": today_usage,
                "free_daily_actions": meter.free_daily_actions,
            }
        )
        return Response(serializer.data)
