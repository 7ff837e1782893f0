from rest_framework import serializers

from billing.models import EditOperation


class CreateEditSerializer(serializers.Serializer):
    """Validates image-edit requests."""

    instruction = serializers.CharField(max_length=4000)
    image_urls = serializers.ListField(
        child=serializers.URLField(max_length=2048),
        allow_empty=False,
        max_length=8,
    )


class EditOperationSerializer(serializers.ModelSerializer):
    class Meta:
        model = EditOperation
        fields = (
            "uuid",
            "user_id",
            "instruction",
            "input_images",
            "output_images",
            "status",
            "cost",
            "error",
            "created_at",
            "completed_at",
        )
        read_only_fields = fields
