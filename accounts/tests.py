from io import StringIO

from django.core.management import call_command
from django.db import IntegrityError
from django.urls import reverse
from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.test import APITestCase
from django.test import TestCase

from accounts.models import User
from accounts.utils import custom_exception_handler


class UserModelTests(TestCase):
    def test_email_is_unique_identifier(self):
        User.objects.create_user(email='manager@example.com', password='pass', is_manager=True)
        with self.assertRaises(IntegrityError):
            User.objects.create_user(email='manager@example.com', password='other')

    def test_superuser_is_manager(self):
        admin = User.objects.create_superuser(email='root@example.com', password='pass')
        self.assertTrue(admin.is_manager)
        self.assertTrue(admin.is_staff)

    def test_display_name_falls_back_to_email(self):
        user = User.objects.create_user(email='tenant@example.com', password='pass')
        self.assertEqual(user.display_name, 'tenant@example.com')
        user.first_name = 'Dana'
        user.last_name = 'Levi'
        self.assertEqual(user.display_name, 'Dana Levi')


class ExceptionHandlerTests(TestCase):
    def test_validation_error_is_wrapped(self):
        response = custom_exception_handler(ValidationError({'amount': ['Too large.']}), {})
        self.assertFalse(response.data['success'])
        self.assertEqual(response.data['errors'], {'amount': ['Too large.']})

    def test_detail_becomes_message(self):
        response = custom_exception_handler(ValidationError('Charge is cancelled.'), {})
        self.assertEqual(response.data['message'], 'Charge is cancelled.')


class AuthEndpointsTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(email='tenant@example.com', password='pass', is_tenant=True)

    def test_login_returns_tokens(self):
        url = reverse('accounts:login')
        response = self.client.post(url, {'email': 'tenant@example.com', 'password': 'pass'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data['data']['tokens'])
        self.assertTrue(response.data['data']['user']['is_tenant'])

    def test_login_rejects_bad_password(self):
        url = reverse('accounts:login')
        response = self.client.post(url, {'email': 'tenant@example.com', 'password': 'nope'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data['success'])

    def test_profile_requires_authentication(self):
        url = reverse('accounts:user-profile')
        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.client.force_authenticate(self.user)
        response = self.client.get(url)
        self.assertEqual(response.data['data']['email'], 'tenant@example.com')


class MigrationStateTests(TestCase):
    def test_models_match_migrations(self):
        out = StringIO()
        try:
            call_command('makemigrations', '--check', '--dry-run', stdout=out, stderr=StringIO())
        except SystemExit:
            self.fail(f'Models have changes without migrations:\n{out.getvalue()}')
