from django.conf import settings
from django.db.models.signals import post_save
from django.dispatch import receiver
from .models import PointBalance


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def create_point_balance(sender, instance, created, **kwargs):
    """Every new user starts with an empty balance row"""
    if created:
        PointBalance.objects.get_or_create(user=instance)
