from django.apps import AppConfig


class NotificationsappConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "notificationsapp"
    verbose_name = "Notifications"
