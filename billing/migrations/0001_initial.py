import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("content", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="IdempotencyKey",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("key", models.CharField(max_length=255, unique=True)),
                ("operation", models.CharField(max_length=50)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=20)),
                ("result", models.JSONField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="OperatorAlert",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100, unique=True)),
                ("count", models.PositiveIntegerField(default=0)),
                ("last_message", models.TextField(blank=True)),
                ("last_raised_at", models.DateTimeField(blank=True, null=True)),
            ],
        ),
        migrations.CreateModel(
            name="PointPackage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100)),
                ("points", models.PositiveIntegerField()),
                ("price_jpy", models.PositiveIntegerField()),
                ("is_active", models.BooleanField(default=True)),
                ("display_order", models.IntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["display_order", "id"],
            },
        ),
        migrations.CreateModel(
            name="PointBalance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("balance", models.IntegerField(default=0)),
                ("total_purchased", models.IntegerField(default=0)),
                ("total_spent", models.IntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="point_balance", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("balance__gte", 0)), name="point_balance_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PointTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.IntegerField()),
                ("type", models.CharField(choices=[("purchase", "Point purchase"), ("refund", "Refund"), ("post_purchase", "Post purchase"), ("subscription", "Subscription"), ("tip", "Tip"), ("admin_grant", "Admin grant")], max_length=20)),
                ("balance_after", models.IntegerField()),
                ("description", models.CharField(blank=True, max_length=255)),
                ("reference_id", models.CharField(blank=True, max_length=64)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("idempotency_key", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="point_transactions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="point_tx_user_created"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Purchase",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("price", models.PositiveIntegerField()),
                ("points_portion", models.PositiveIntegerField(default=0)),
                ("card_portion", models.PositiveIntegerField(default=0)),
                ("payment_method", models.CharField(choices=[("points", "Points"), ("card", "Card"), ("hybrid", "Points + card")], max_length=10)),
                ("purchase_type", models.CharField(choices=[("paid", "Paid post"), ("back_number", "Back number")], default="paid", max_length=20)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("post", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="purchases", to="content.post")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="purchases", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("user", "post"), name="purchase_unique_user_post"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CheckoutSession",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("post_purchase", "Post purchase (card)"), ("post_purchase_hybrid", "Post purchase (points + card)"), ("point_purchase", "Point package")], max_length=30)),
                ("purchase_type", models.CharField(blank=True, max_length=20)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("canceled", "Canceled")], default="pending", max_length=20)),
                ("total_price", models.PositiveIntegerField()),
                ("amount", models.PositiveIntegerField()),
                ("points_reserved", models.PositiveIntegerField(default=0)),
                ("stripe_session_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("checkout_url", models.URLField(blank=True, max_length=1000)),
                ("cancel_reason", models.CharField(blank=True, max_length=100)),
                ("compensated_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("package", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="checkout_sessions", to="billing.pointpackage")),
                ("post", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="checkout_sessions", to="content.post")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="checkout_sessions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="checkout_status_created"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentAuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("operation_type", models.CharField(choices=[("point_purchase", "Point purchase"), ("post_purchase_points", "Post purchase (points)"), ("post_purchase_stripe", "Post purchase (card)"), ("post_purchase_hybrid", "Post purchase (hybrid)"), ("back_number_points", "Back number (points)"), ("back_number_stripe", "Back number (card)"), ("back_number_hybrid", "Back number (hybrid)"), ("admin_point_grant", "Admin point grant"), ("admin_refund", "Admin refund")], max_length=40)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("refunded", "Refunded"), ("cancelled", "Cancelled")], default="pending", max_length=20)),
                ("total_amount", models.IntegerField(default=0)),
                ("points_amount", models.IntegerField(default=0)),
                ("card_amount", models.IntegerField(default=0)),
                ("stripe_session_id", models.CharField(blank=True, max_length=255)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("idempotency_key", models.CharField(blank=True, max_length=255)),
                ("error_code", models.CharField(blank=True, max_length=50)),
                ("error_message", models.TextField(blank=True)),
                ("requires_recovery", models.BooleanField(db_index=True, default=False)),
                ("recovery_attempts", models.PositiveIntegerField(default=0)),
                ("admin_note", models.TextField(blank=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("checkout_session", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="billing.checkoutsession")),
                ("post", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payment_audit_logs", to="content.post")),
                ("processed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="processed_audit_logs", to=settings.AUTH_USER_MODEL)),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payment_audit_logs", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="audit_status_created"),
                ],
            },
        ),
    ]
