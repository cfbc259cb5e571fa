from django.urls import path
from . import views

app_name = "billing"

urlpatterns = [
    path("purchase-options/<int:post_id>/", views.purchase_options, name="purchase_options"),
    path("purchase/points/", views.purchase_with_points, name="purchase_with_points"),
    path("purchase/stripe-checkout/", views.create_stripe_checkout, name="create_stripe_checkout"),
    path("purchase/hybrid-checkout/", views.create_hybrid_checkout, name="create_hybrid_checkout"),
    path("points/balance/", views.points_balance, name="points_balance"),
    path("points/transactions/", views.points_transactions, name="points_transactions"),
    path("points/packages/", views.point_packages, name="point_packages"),
    path("points/checkout/", views.create_point_checkout, name="create_point_checkout"),
    path("payments-status/", views.payments_status, name="payments_status"),
    path("stripe-webhook/", views.stripe_webhook, name="stripe_webhook"),
    path("admin/recovery-queue/", views.recovery_queue, name="recovery_queue"),
    path("admin/grant-points/", views.admin_grant_points, name="admin_grant_points"),
    path("admin/refund-points/", views.admin_refund_points, name="admin_refund_points"),
]
