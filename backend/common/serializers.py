from rest_framework import serializers


class TenantScopedPKField(serializers.PrimaryKeyRelatedField):
    """PK field whose choices are limited to the request's tenant."""

    def get_queryset(self):
        qs = super().get_queryset()
        tenant = self.context.get("tenant")
        return qs.filter(tenant=tenant) if tenant is not None else qs.none()


class BulkSerializer(serializers.Serializer):
    ids = serializers.ListField(child=serializers.CharField(), allow_empty=False)
    action = serializers.CharField()
    params = serializers.DictField(required=False, default=dict)
