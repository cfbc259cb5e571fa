from types import SimpleNamespace

from django.test import TestCase
from django.urls import reverse

from accounts.models import CustomUser
from content.models import Creator, Post
from general.models import Notification
from general.services.notification_service import NotificationService


class NotificationServiceTests(TestCase):
    def setUp(self):
        self.creator_user = CustomUser.objects.create_user(email="creator@example.com", password="pw-12345678")
        self.fan = CustomUser.objects.create_user(email="fan@example.com", password="pw-12345678", display_name="Aki")
        creator = Creator.objects.create(user=self.creator_user, username="creator", display_name="Creator")
        self.post = Post.objects.create(creator=creator, title="Sketchbook", type=Post.TYPE_PAID, price=500)

    def test_notify_purchase_goes_to_creator(self):
        purchase = SimpleNamespace(id=1, post=self.post, user=self.fan, price=1500)
        notification = NotificationService.notify_purchase(purchase)
        self.assertEqual(notification.user, self.creator_user)
        self.assertEqual(notification.type, Notification.TYPE_PURCHASE)
        self.assertIn("Aki", notification.description)
        self.assertIn("¥1,500", notification.description)
        self.assertEqual(notification.link, f"/posts/{self.post.id}")

    def test_notify_point_purchase(self):
        notification = NotificationService.notify_point_purchase(self.fan, 1100)
        self.assertEqual(notification.type, Notification.TYPE_POINT_PURCHASE)
        self.assertIn("1,100 points", notification.description)

    def test_long_title_is_truncated(self):
        notification = NotificationService.notify(self.fan, Notification.TYPE_SYSTEM, "x" * 300, "body")
        self.assertEqual(len(notification.title), 200)


class NotificationViewTests(TestCase):
    def setUp(self):
        self.user = CustomUser.objects.create_user(email="fan@example.com", password="pw-12345678")
        self.other = CustomUser.objects.create_user(email="other@example.com", password="pw-12345678")
        for i in range(3):
            NotificationService.notify(self.user, Notification.TYPE_SYSTEM, f"n{i}", "body")
        NotificationService.notify(self.other, Notification.TYPE_SYSTEM, "theirs", "body")
        self.client.force_login(self.user)

    def test_list_only_shows_own_notifications(self):
        data = self.client.get(reverse("general:notification_list")).json()
        self.assertEqual(len(data["notifications"]), 3)
        self.assertEqual(data["unread_count"], 3)

    def test_mark_read(self):
        notification = Notification.objects.filter(user=self.user).first()
        response = self.client.post(reverse("general:notification_mark_read", args=[notification.id]))
        self.assertEqual(response.status_code, 200)
        notification.refresh_from_db()
        self.assertTrue(notification.is_opened)

    def test_cannot_mark_someone_elses_notification(self):
        theirs = Notification.objects.get(user=self.other)
        response = self.client.post(reverse("general:notification_mark_read", args=[theirs.id]))
        self.assertEqual(response.status_code, 404)

    def test_mark_all_read(self):
        response = self.client.post(reverse("general:notification_mark_all_read"))
        self.assertEqual(response.json(), {"success": True, "updated": 3})
        self.assertFalse(Notification.objects.filter(user=self.other, is_opened=True).exists())
