"""
Creators and their posts. Only the fields the purchase flow reads live here;
post bodies and media are served elsewhere.
"""
from django.db import models


class Creator(models.Model):
    """Creator page owned by a user. total_support is the lifetime amount fans paid this creator."""

    user = models.OneToOneField("accounts.CustomUser", on_delete=models.CASCADE, related_name="creator_profile")
    username = models.SlugField(max_length=50, unique=True)
    display_name = models.CharField(max_length=150)
    is_adult = models.BooleanField(default=False, help_text="Every post of an adult creator is treated as adult content.")
    total_support = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Creator"
        verbose_name_plural = "Creators"

    def __str__(self):
        return f"{self.display_name} (@{self.username})"


class Post(models.Model):
    TYPE_FREE = "free"
    TYPE_PAID = "paid"
    TYPE_MEMBERSHIP = "membership"
    TYPE_CHOICES = [
        (TYPE_FREE, "Free"),
        (TYPE_PAID, "Paid"),
        (TYPE_MEMBERSHIP, "Membership"),
    ]

    creator = models.ForeignKey("content.Creator", on_delete=models.CASCADE, related_name="posts")
    title = models.CharField(max_length=200)
    type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=TYPE_FREE)
    price = models.PositiveIntegerField(null=True, blank=True, help_text="Price in JPY for paid posts")
    back_number_price = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Single-purchase price in JPY for membership posts; empty means not sold as a back number",
    )
    is_adult = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Post {self.id}: {self.title} ({self.type})"

    @property
    def is_adult_content(self) -> bool:
        """Adult if the post or its creator is flagged."""
        return bool(self.is_adult or self.creator.is_adult)
