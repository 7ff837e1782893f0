from rest_framework.response import Response
from rest_framework.views import APIView

from billing.services import UsageMeter


class PricingView(APIView):
    """GET /pricing/: Price per billable action (minor units) and the daily free allowance."""

    def get(self, request, *args, **kwargs):
        meter = UsageMeter()
        return Response(
            {
                "prices": meter.prices,
                "free_daily_actions": meter.free_daily_actions,
            }
        )
