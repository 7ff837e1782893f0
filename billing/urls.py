from django.urls import path

from billing.views import (
    AccountBalanceView,
    CreateEditView,
    DailyUsageView,
    EditDetailView,
    FailRechargeView,
    LedgerEntryListView,
    OpenRechargeView,
    PricingView,
    SettleRechargeView,
)

urlpatterns = [
    path("accounts/<int:user_id>/", AccountBalanceView.as_view(), name="account-balance"),
    path(
        "accounts/<int:user_id>/entries/",
        LedgerEntryListView.as_view(),
        name="account-entries",
    ),
    path("accounts/<int:user_id>/usage/", DailyUsageView.as_view(), name="account-usage"),
    path("accounts/<int:user_id>/edits", CreateEditView.as_view(), name="edit-create"),
    path("edits/<uuid:uuid>/", EditDetailView.as_view(), name="edit-detail"),
    path("pricing/", PricingView.as_view(), name="pricing"),
    path("recharges/", OpenRechargeView.as_view(), name="recharge-open"),
    path("recharges/settle", SettleRechargeView.as_view(), name="recharge-settle"),
    path(
        "recharges/<str:transaction_id>/fail",
        FailRechargeView.as_view(),
        name="recharge-fail",
    ),
]
