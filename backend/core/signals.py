from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import Setting
from .settings_store import forget


@receiver(post_save, sender=Setting)
@receiver(post_delete, sender=Setting)
def _drop_cached_setting(sender, instance, **kwargs):
    forget(instance.key, instance.tenant_id)
