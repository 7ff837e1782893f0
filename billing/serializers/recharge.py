from rest_framework import serializers

from billing.models import RechargeRequest


class RechargeSerializer(serializers.Serializer):
    """Validates recharge registration and settlement callbacks."""

    transaction_id = serializers.CharField(max_length=128)
    user_id = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Amount must be a positive integer.")
        return value


class RechargeRequestSerializer(serializers.ModelSerializer):
    entry_id = serializers.UUIDField(source="ledger_entry.entry_id", read_only=True, default=None)

    class Meta:
        model = RechargeRequest
        fields = (
            "transaction_id",
            "user_id",
            "amount",
            "status",
            "entry_id",
            "settled_at",
            "failed_at",
            "created_at",
        )
        read_only_fields = fields
