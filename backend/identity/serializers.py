from django.contrib.auth import get_user_model
from rest_framework import serializers

User = get_user_model()


class UserDetailsSerializer(serializers.ModelSerializer):
    roles = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ("id", "username", "email", "full_name", "is_staff", "roles")
        read_only_fields = fields

    def get_roles(self, obj):
        return sorted(obj.role_names())


class UserSummarySerializer(serializers.ModelSerializer):
    """Compact form embedded in tickets and comments."""
    class Meta:
        model = User
        fields = ("id", "email", "full_name")
        read_only_fields = fields
