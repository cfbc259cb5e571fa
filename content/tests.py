from django.test import TestCase

from accounts.models import CustomUser
from content.models import Creator, Post


class PostAdultFlagTests(TestCase):
    def _creator(self, is_adult):
        user = CustomUser.objects.create_user(email=f"c{CustomUser.objects.count()}@example.com", password="pw-12345678")
        return Creator.objects.create(user=user, username=f"c{user.id}", display_name="C", is_adult=is_adult)

    def test_adult_if_post_or_creator_is_flagged(self):
        regular = self._creator(False)
        adult = self._creator(True)
        self.assertFalse(Post(creator=regular, title="a").is_adult_content)
        self.assertTrue(Post(creator=regular, title="b", is_adult=True).is_adult_content)
        self.assertTrue(Post(creator=adult, title="c").is_adult_content)

    def test_user_email_is_lowercased(self):
        user = CustomUser.objects.create_user(email="Fan@Example.COM", password="pw-12345678")
        self.assertEqual(user.email, "fan@example.com")
