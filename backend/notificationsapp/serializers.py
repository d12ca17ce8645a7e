from rest_framework import serializers
from .models import NotificationTemplate, NotificationDispatch


class NotificationTemplateSerializer(serializers.ModelSerializer):
    class Meta:
        model = NotificationTemplate
        fields = "__all__"
        read_only_fields = ("tenant", "created_at", "updated_at")


class NotificationDispatchSerializer(serializers.ModelSerializer):
    class Meta:
        model = NotificationDispatch
        fields = "__all__"
        read_only_fields = ("tenant", "status", "created_at", "sent_at", "provider_ref", "error_message")
