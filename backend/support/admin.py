from django.contrib import admin

from .models import AutomationRule, AutomationRun, KBArticle, SLAPolicy, Ticket, TicketCategory, TicketComment


class TicketCommentInline(admin.TabularInline):
    model = TicketComment
    extra = 0
    fields = ("author", "content", "is_internal", "is_system", "created_at")
    readonly_fields = ("created_at",)


@admin.register(Ticket)
class TicketAdmin(admin.ModelAdmin):
    list_display = ("reference", "title", "tenant", "status", "priority", "assigned_to", "due_date", "created_at")
    list_filter = ("status", "priority", "channel", "tenant")
    search_fields = ("title", "requester_email", "requester_name")
    readonly_fields = ("number", "response_due_at", "due_date", "escalation_due_at", "created_at", "updated_at")
    inlines = [TicketCommentInline]


@admin.register(SLAPolicy)
class SLAPolicyAdmin(admin.ModelAdmin):
    list_display = ("name", "tenant", "response_time_hours", "resolution_time_hours",
                    "escalation_time_hours", "business_hours_only", "is_active", "is_default")
    list_filter = ("is_active", "is_default", "business_hours_only")


@admin.register(AutomationRule)
class AutomationRuleAdmin(admin.ModelAdmin):
    list_display = ("name", "tenant", "trigger_event", "priority", "is_active", "run_count", "last_run_at")
    list_filter = ("trigger_event", "is_active")


@admin.register(AutomationRun)
class AutomationRunAdmin(admin.ModelAdmin):
    list_display = ("rule", "ticket", "event", "status", "created_at")
    list_filter = ("status", "event")


admin.site.register(TicketCategory)
admin.site.register(KBArticle)
