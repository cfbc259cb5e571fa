from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/billing/", include("billing.urls", namespace="billing")),
    path("api/notifications/", include("general.urls", namespace="general")),
]
