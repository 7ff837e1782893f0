from billing.views.account import AccountBalanceView, DailyUsageView, LedgerEntryListView
from billing.views.edit import CreateEditView, EditDetailView
from billing.views.pricing import PricingView
from billing.views.recharge import FailRechargeView, OpenRechargeView, SettleRechargeView

__all__ = [
    "AccountBalanceView",
    "CreateEditView",
    "DailyUsageView",
    "EditDetailView",
    "FailRechargeView",
    "LedgerEntryListView",
    "OpenRechargeView",
    "PricingView",
    "SettleRechargeView",
]
