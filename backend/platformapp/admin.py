from django.contrib import admin
from .models import Tenant, AuditLog


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "status", "plan")
    search_fields = ("name", "slug")


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "tenant", "action", "entity", "entity_id")
    list_filter = ("action",)
    search_fields = ("entity", "entity_id")
