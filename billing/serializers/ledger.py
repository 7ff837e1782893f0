from rest_framework import serializers

from billing.models import LedgerEntry


class LedgerEntrySerializer(serializers.ModelSerializer):
    """Read-only serializer for ledger entries."""

    class Meta:
        model = LedgerEntry
        fields = (
            "entry_id",
            "user_id",
            "kind",
            "amount",
            "balance_after",
            "reference_id",
            "remark",
            "created_at",
        )
        read_only_fields = fields


class HistoryQuerySerializer(serializers.Serializer):
    """Validates `limit` / `offset` query parameters of the history endpoint."""

    limit = serializers.IntegerField(min_value=1, max_value=100, default=20)
    offset = serializers.IntegerField(min_value=0, default=0)
