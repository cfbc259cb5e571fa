import django.db.models.deletion
import django.utils.timezone
import uuid
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Notification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("batch_id", models.UUIDField(db_index=True, default=uuid.uuid4, editable=False, help_text="Groups notifications created in the same action")),
                ("type", models.CharField(choices=[("purchase", "Purchase"), ("point_purchase", "Point purchase"), ("system", "System")], default="system", max_length=30)),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField()),
                ("link", models.CharField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("is_opened", models.BooleanField(default=False)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notifications", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Notification",
                "verbose_name_plural": "Notifications",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "-created_at"], name="notification_user_created"),
                    models.Index(fields=["user", "is_opened"], name="notification_user_opened"),
                ],
            },
        ),
    ]
