from django.contrib import admin
from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('title', 'user', 'type', 'is_opened', 'created_at')
    list_filter = ('type', 'is_opened')
    search_fields = ('title', 'description', 'user__email')
    readonly_fields = ('batch_id', 'created_at')
