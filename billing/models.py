"""
Billing models. Points ledger, purchases, Stripe checkout mirror, audit trail.
Stripe is the source of truth for card payments; balance_service for point balance changes.
"""
from django.db import models
from django.db.models import Q


class PointBalance(models.Model):
    """One row per user. Never update directly; use balance_service so a PointTransaction is written."""

    user = models.OneToOneField(
        "accounts.CustomUser",
        on_delete=models.CASCADE,
        related_name="point_balance",
    )
    balance = models.IntegerField(default=0)
    total_purchased = models.IntegerField(default=0)
    total_spent = models.IntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(balance__gte=0), name="point_balance_non_negative"),
        ]

    def __str__(self):
        return f"PointBalance user={self.user_id} {self.balance}pt"


class PointTransaction(models.Model):
    """Append-only ledger entry. sum(amount) per user always equals PointBalance.balance."""

    TYPE_PURCHASE = "purchase"
    TYPE_REFUND = "refund"
    TYPE_POST_PURCHASE = "post_purchase"
    TYPE_SUBSCRIPTION = "subscription"
    TYPE_TIP = "tip"
    TYPE_ADMIN_GRANT = "admin_grant"
    TYPE_CHOICES = [
        (TYPE_PURCHASE, "Point purchase"),
        (TYPE_REFUND, "Refund"),
        (TYPE_POST_PURCHASE, "Post purchase"),
        (TYPE_SUBSCRIPTION, "Subscription"),
        (TYPE_TIP, "Tip"),
        (TYPE_ADMIN_GRANT, "Admin grant"),
    ]

    user = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.CASCADE,
        related_name="point_transactions",
    )
    amount = models.IntegerField()  # positive = credit, negative = debit
    type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    balance_after = models.IntegerField()
    description = models.CharField(max_length=255, blank=True)
    reference_id = models.CharField(max_length=64, blank=True)  # purchase / checkout session / audit log id
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    idempotency_key = models.CharField(max_length=255, null=True, blank=True, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["user", "created_at"], name="point_tx_user_created"),
        ]

    def __str__(self):
        return f"PointTransaction user={self.user_id} {self.amount:+d}pt {self.type}"


class PointPackage(models.Model):
    """Point bundle sold by card. price_jpy may be lower than points (bonus packs)."""

    name = models.CharField(max_length=100)
    points = models.PositiveIntegerField()
    price_jpy = models.PositiveIntegerField()
    is_active = models.BooleanField(default=True)
    display_order = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["display_order", "id"]

    def __str__(self):
        return f"{self.name} ({self.points}pt / ¥{self.price_jpy})"


class Purchase(models.Model):
    """Entitlement to one post. Existence of this row is the only answer to 'already purchased'."""

    METHOD_CHOICES = [
        ("points", "Points"),
        ("card", "Card"),
        ("hybrid", "Points + card"),
    ]
    PURCHASE_TYPE_CHOICES = [
        ("paid", "Paid post"),
        ("back_number", "Back number"),
    ]

    user = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.CASCADE,
        related_name="purchases",
    )
    post = models.ForeignKey(
        "content.Post",
        on_delete=models.PROTECT,
        related_name="purchases",
    )
    price = models.PositiveIntegerField()
    points_portion = models.PositiveIntegerField(default=0)
    card_portion = models.PositiveIntegerField(default=0)
    payment_method = models.CharField(max_length=10, choices=METHOD_CHOICES)
    purchase_type = models.CharField(max_length=20, choices=PURCHASE_TYPE_CHOICES, default="paid")
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["user", "post"], name="purchase_unique_user_post"),
        ]

    def __str__(self):
        return f"Purchase user={self.user_id} post={self.post_id} ¥{self.price} ({self.payment_method})"


class CheckoutSession(models.Model):
    """Local mirror of a Stripe Checkout session. Not authoritative for entitlement; Purchase is."""

    KIND_POST = "post_purchase"
    KIND_POST_HYBRID = "post_purchase_hybrid"
    KIND_POINTS = "point_purchase"
    KIND_CHOICES = [
        (KIND_POST, "Post purchase (card)"),
        (KIND_POST_HYBRID, "Post purchase (points + card)"),
        (KIND_POINTS, "Point package"),
    ]

    STATUS_PENDING = "pending"
    STATUS_COMPLETED = "completed"
    STATUS_CANCELED = "canceled"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_CANCELED, "Canceled"),
    ]

    user = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.CASCADE,
        related_name="checkout_sessions",
    )
    kind = models.CharField(max_length=30, choices=KIND_CHOICES)
    post = models.ForeignKey(
        "content.Post",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="checkout_sessions",
    )
    package = models.ForeignKey(
        "billing.PointPackage",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="checkout_sessions",
    )
    purchase_type = models.CharField(max_length=20, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    total_price = models.PositiveIntegerField()
    amount = models.PositiveIntegerField()  # card leg, charged by Stripe
    points_reserved = models.PositiveIntegerField(default=0)  # hybrid leg, already debited
    stripe_session_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    checkout_url = models.URLField(max_length=1000, blank=True)
    cancel_reason = models.CharField(max_length=100, blank=True)
    compensated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="checkout_status_created"),
        ]

    def __str__(self):
        return f"CheckoutSession {self.id} {self.kind} ({self.status})"


class PaymentAuditLog(models.Model):
    """One row per payment operation. requires_recovery rows form the operator recovery queue."""

    OPERATION_CHOICES = [
        ("point_purchase", "Point purchase"),
        ("post_purchase_points", "Post purchase (points)"),
        ("post_purchase_stripe", "Post purchase (card)"),
        ("post_purchase_hybrid", "Post purchase (hybrid)"),
        ("back_number_points", "Back number (points)"),
        ("back_number_stripe", "Back number (card)"),
        ("back_number_hybrid", "Back number (hybrid)"),
        ("admin_point_grant", "Admin point grant"),
        ("admin_refund", "Admin refund"),
    ]
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("refunded", "Refunded"),
        ("cancelled", "Cancelled"),
    ]

    operation_type = models.CharField(max_length=40, choices=OPERATION_CHOICES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    user = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_audit_logs",
    )
    post = models.ForeignKey(
        "content.Post",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_audit_logs",
    )
    checkout_session = models.ForeignKey(
        "billing.CheckoutSession",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    total_amount = models.IntegerField(default=0)
    points_amount = models.IntegerField(default=0)
    card_amount = models.IntegerField(default=0)
    stripe_session_id = models.CharField(max_length=255, blank=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    idempotency_key = models.CharField(max_length=255, blank=True)
    error_code = models.CharField(max_length=50, blank=True)
    error_message = models.TextField(blank=True)
    requires_recovery = models.BooleanField(default=False, db_index=True)
    recovery_attempts = models.PositiveIntegerField(default=0)
    admin_note = models.TextField(blank=True)
    processed_by = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="processed_audit_logs",
    )
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="audit_status_created"),
        ]

    def __str__(self):
        return f"PaymentAuditLog {self.id} {self.operation_type} ({self.status})"


class IdempotencyKey(models.Model):
    """Remembers the outcome of a client request so a retried request is answered, not re-applied."""

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("completed", "Completed"),
        ("failed", "Failed"),
    ]

    key = models.CharField(max_length=255, unique=True)  # "<user_id>:<client key>"
    operation = models.CharField(max_length=50)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    result = models.JSONField(null=True, blank=True)
    expires_at = models.DateTimeField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"IdempotencyKey {self.key} {self.operation} ({self.status})"


class OperatorAlert(models.Model):
    """Operator-visible counter. Incremented, never reset by code; staff clear it after investigating."""

    name = models.CharField(max_length=100, unique=True)
    count = models.PositiveIntegerField(default=0)
    last_message = models.TextField(blank=True)
    last_raised_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.name}: {self.count}"
