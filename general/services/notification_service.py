"""
In-app notification service.
Provides a single place to create user notifications so purchase flows do not touch the model directly.
"""
import logging
import uuid
from typing import Optional

from general.models import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates notifications. Callers decide whether a failure matters; this class never swallows errors."""

    @staticmethod
    def notify(
        user,
        type: str,
        title: str,
        description: str,
        link: str = "",
        batch_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        """
        Create one notification for one user.

        Args:
            user: Recipient CustomUser
            type: One of Notification.TYPE_CHOICES
            title: Short title (truncated to 200 chars)
            description: Body text
            link: Optional in-app path the notification points to
            batch_id: Optional group id when several notifications belong to the same action

        Returns:
            Notification: The created row
        """
        return Notification.objects.create(
            user=user,
            batch_id=batch_id or uuid.uuid4(),
            type=type,
            title=title[:200],
            description=description,
            link=(link or "")[:500],
        )

    @staticmethod
    def notify_purchase(purchase) -> Notification:
        """Tell the creator that a fan bought one of their posts."""
        post = purchase.post
        buyer = purchase.user
        buyer_name = buyer.display_name or "A fan"
        notification = NotificationService.notify(
            post.creator.user,
            Notification.TYPE_PURCHASE,
            "Your post was purchased",
            f"{buyer_name} purchased \"{post.title}\" for ¥{purchase.price:,}.",
            link=f"/posts/{post.id}",
        )
        logger.info("notify_purchase: purchase=%s creator=%s", purchase.id, post.creator_id)
        return notification

    @staticmethod
    def notify_point_purchase(user, points: int) -> Notification:
        return NotificationService.notify(
            user,
            Notification.TYPE_POINT_PURCHASE,
            "Points added",
            f"{points:,} points have been added to your balance.",
            link="/points",
        )
