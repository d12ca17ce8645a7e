from rest_framework import serializers
from .models import Setting


class SettingSerializer(serializers.ModelSerializer):
    class Meta:
        model = Setting
        fields = ("id", "key", "value", "description", "tenant", "created_at", "updated_at")
        read_only_fields = ("tenant", "created_at", "updated_at")
