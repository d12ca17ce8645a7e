from rest_framework.filters import SearchFilter, OrderingFilter
from django_filters.rest_framework import DjangoFilterBackend

from common.mixins import TenantScopedModelViewSet
from common.permissions import PrivateTenantOnly

from .models import Customer
from .serializers import CustomerSerializer


class CustomerViewSet(TenantScopedModelViewSet):
    permission_classes = [PrivateTenantOnly]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {"status": ["exact"], "type": ["exact"]}
    search_fields = ["name", "company", "email", "phone"]
    ordering_fields = ["created_at", "updated_at", "name"]
    ordering = ["-created_at"]

    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
