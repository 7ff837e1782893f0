from django.contrib import admin

from billing.models import Account, EditOperation, LedgerEntry, RechargeRequest, UsageRecord


class ReadOnlyAdminMixin:
    """
    Mixin that makes an admin model completely read-only.

    Balances only move through the ledger services; the admin is for
    browsing and support lookups.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Account)
class AccountAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "user_id", "balance", "created_at", "updated_at")


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "user_id",
        "kind",
        "amount",
        "balance_after",
        "reference_id",
        "remark",
        "created_at",
    )
    list_filter = ("kind",)
    search_fields = ("reference_id", "entry_id")


@admin.register(RechargeRequest)
class RechargeRequestAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("transaction_id", "user_id", "amount", "status", "settled_at", "failed_at")
    list_filter = ("status",)
    search_fields = ("transaction_id",)


@admin.register(UsageRecord)
class UsageRecordAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "reference_id",
        "user_id",
        "action_type",
        "amount",
        "is_free",
        "status",
        "refund_entry",
        "created_at",
    )
    list_filter = ("action_type", "status", "is_free")
    search_fields = ("reference_id",)


@admin.register(EditOperation)
class EditOperationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("uuid", "user_id", "status", "cost", "created_at", "completed_at")
    list_filter = ("status",)
    search_fields = ("uuid",)
