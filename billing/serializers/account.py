from rest_framework import serializers


class DailyUsageSerializer(serializers.Serializer):
    user_id = serializers.IntegerField()
    today_usage = serializers.IntegerField()
    free_daily_actions = serializers.IntegerField()
