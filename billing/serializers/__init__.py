from billing.serializers.account import DailyUsageSerializer
from billing.serializers.edit import CreateEditSerializer, EditOperationSerializer
from billing.serializers.ledger import HistoryQuerySerializer, LedgerEntrySerializer
from billing.serializers.recharge import RechargeRequestSerializer, RechargeSerializer

__all__ = [
    "CreateEditSerializer",
    "DailyUsageSerializer",
    "EditOperationSerializer",
    "HistoryQuerySerializer",
    "LedgerEntrySerializer",
    "RechargeRequestSerializer",
    "RechargeSerializer",
]
