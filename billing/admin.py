from django.contrib import admin, messages
from .models import (
    CheckoutSession,
    IdempotencyKey,
    OperatorAlert,
    PaymentAuditLog,
    PointBalance,
    PointPackage,
    PointTransaction,
    Purchase,
)
from .services import checkout_service
from .errors import PurchaseError


class ReadOnlyAdmin(admin.ModelAdmin):
    """Ledger-like rows are written by services only."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PointBalance)
class PointBalanceAdmin(ReadOnlyAdmin):
    list_display = ("user", "balance", "total_purchased", "total_spent", "updated_at")
    search_fields = ("user__email",)


@admin.register(PointTransaction)
class PointTransactionAdmin(ReadOnlyAdmin):
    list_display = ("id", "user", "amount", "type", "balance_after", "description", "created_at")
    list_filter = ("type",)
    search_fields = ("user__email", "description", "reference_id", "stripe_payment_intent_id")


@admin.register(Purchase)
class PurchaseAdmin(ReadOnlyAdmin):
    list_display = ("id", "user", "post", "price", "points_portion", "card_portion", "payment_method", "purchase_type", "created_at")
    list_filter = ("payment_method", "purchase_type")
    search_fields = ("user__email", "stripe_payment_intent_id")


@admin.register(PointPackage)
class PointPackageAdmin(admin.ModelAdmin):
    list_display = ("name", "points", "price_jpy", "is_active", "display_order")
    list_filter = ("is_active",)
    list_editable = ("is_active", "display_order")


@admin.register(CheckoutSession)
class CheckoutSessionAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "kind", "status", "total_price", "amount", "points_reserved", "created_at")
    list_filter = ("status", "kind")
    search_fields = ("stripe_session_id", "stripe_payment_intent_id", "user__email")
    readonly_fields = [f.name for f in CheckoutSession._meta.fields]
    actions = ["cancel_and_refund"]

    def has_add_permission(self, request):
        return False

    def cancel_and_refund(self, request, queryset):
        """Admin action: cancel pending sessions and refund reserved points"""
        canceled = 0
        for session in queryset.filter(status=CheckoutSession.STATUS_PENDING):
            try:
                checkout_service.cancel_checkout_session(session.id, reason="admin_cancel")
                canceled += 1
            except PurchaseError as e:
                self.message_user(request, f"Checkout {session.id}: {e.message}", level=messages.ERROR)
        self.message_user(request, f"{canceled} checkout session(s) canceled.")
    cancel_and_refund.short_description = "Cancel selected pending sessions and refund points"


@admin.register(PaymentAuditLog)
class PaymentAuditLogAdmin(admin.ModelAdmin):
    list_display = ("id", "operation_type", "status", "user", "total_amount", "requires_recovery", "recovery_attempts", "created_at")
    list_filter = ("status", "operation_type", "requires_recovery")
    search_fields = ("user__email", "stripe_session_id", "stripe_payment_intent_id", "idempotency_key")
    readonly_fields = [
        f.name for f in PaymentAuditLog._meta.fields if f.name not in ("admin_note",)
    ]


@admin.register(IdempotencyKey)
class IdempotencyKeyAdmin(ReadOnlyAdmin):
    list_display = ("key", "operation", "status", "expires_at", "created_at")
    list_filter = ("status",)
    search_fields = ("key",)


@admin.register(OperatorAlert)
class OperatorAlertAdmin(admin.ModelAdmin):
    list_display = ("name", "count", "last_raised_at", "last_message")
    readonly_fields = ("name", "last_message", "last_raised_at")
