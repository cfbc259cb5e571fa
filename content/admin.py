from django.contrib import admin
from .models import Creator, Post


@admin.register(Creator)
class CreatorAdmin(admin.ModelAdmin):
    list_display = ("username", "display_name", "user", "is_adult", "total_support", "created_at")
    list_filter = ("is_adult",)
    search_fields = ("username", "display_name", "user__email")
    readonly_fields = ("total_support", "created_at")


@admin.register(Post)
class PostAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "creator", "type", "price", "back_number_price", "is_adult", "created_at")
    list_filter = ("type", "is_adult")
    search_fields = ("title", "creator__username")
    readonly_fields = ("created_at",)
