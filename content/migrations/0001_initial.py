import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Creator",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("username", models.SlugField(unique=True)),
                ("display_name", models.CharField(max_length=150)),
                ("is_adult", models.BooleanField(default=False, help_text="Every post of an adult creator is treated as adult content.")),
                ("total_support", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="creator_profile", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Creator",
                "verbose_name_plural": "Creators",
            },
        ),
        migrations.CreateModel(
            name="Post",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("type", models.CharField(choices=[("free", "Free"), ("paid", "Paid"), ("membership", "Membership")], default="free", max_length=20)),
                ("price", models.PositiveIntegerField(blank=True, help_text="Price in JPY for paid posts", null=True)),
                ("back_number_price", models.PositiveIntegerField(blank=True, help_text="Single-purchase price in JPY for membership posts; empty means not sold as a back number", null=True)),
                ("is_adult", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("creator", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="posts", to="content.creator")),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
