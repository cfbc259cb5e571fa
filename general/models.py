from django.db import models
from django.utils import timezone
import uuid

class Notification(models.Model):
    """Notification model for user notifications"""
    TYPE_PURCHASE = 'purchase'
    TYPE_POINT_PURCHASE = 'point_purchase'
    TYPE_SYSTEM = 'system'
    TYPE_CHOICES = [
        (TYPE_PURCHASE, 'Purchase'),
        (TYPE_POINT_PURCHASE, 'Point purchase'),
        (TYPE_SYSTEM, 'System'),
    ]

    user = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="notifications")
    batch_id = models.UUIDField(default=uuid.uuid4, editable=False, db_index=True, help_text="Groups notifications created in the same action")
    type = models.CharField(max_length=30, choices=TYPE_CHOICES, default=TYPE_SYSTEM)
    title = models.CharField(max_length=200)
    description = models.TextField()
    link = models.CharField(max_length=500, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    is_opened = models.BooleanField(default=False)

    class Meta:
        verbose_name = "Notification"
        verbose_name_plural = "Notifications"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', '-created_at'], name='notification_user_created'),
            models.Index(fields=['user', 'is_opened'], name='notification_user_opened'),
        ]

    def __str__(self):
        return f"{self.title} - {self.user.email}"
