from rest_framework import serializers
from .models import Customer, Lead


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = "__all__"
        read_only_fields = ("tenant", "created_at", "updated_at")


class LeadSerializer(serializers.ModelSerializer):
    class Meta:
        model = Lead
        fields = "__all__"
        read_only_fields = ("tenant", "created_at", "updated_at")
