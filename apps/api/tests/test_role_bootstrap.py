"""
Tests for the bootstrap_roles management command.
"""
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from apps.authz.models import Role, RoleChoices, User, UserRole


@pytest.mark.django_db
class TestBootstrapRoles:
    """Clinic roles are created idempotently and can be assigned by email."""

    def test_creates_all_roles(self):
        call_command('bootstrap_roles', stdout=StringIO())

        assert set(Role.objects.values_list('name', flat=True)) == set(RoleChoices.values)

    def test_idempotent(self):
        call_command('bootstrap_roles', stdout=StringIO())
        out = StringIO()
        call_command('bootstrap_roles', stdout=out)

        assert Role.objects.count() == len(RoleChoices.values)
        assert 'Role exists: odont' in out.getvalue()

    def test_assign_role(self):
        user = User.objects.create_user(email='dentist@clinic.com', password='testpass123')

        call_command('bootstrap_roles', '--assign', 'dentist@clinic.com:odont', stdout=StringIO())

        assert user.role_names == {'odont'}

    def test_assign_twice_keeps_one_row(self):
        User.objects.create_user(email='front@clinic.com', password='testpass123')

        for _ in range(2):
            call_command('bootstrap_roles', '--assign', 'front@clinic.com:recep', stdout=StringIO())

        assert UserRole.objects.filter(user__email='front@clinic.com').count() == 1

    def test_unknown_role(self):
        User.objects.create_user(email='x@clinic.com', password='testpass123')

        with pytest.raises(CommandError, match='Unknown role'):
            call_command('bootstrap_roles', '--assign', 'x@clinic.com:marketing', stdout=StringIO())

    def test_unknown_user(self):
        with pytest.raises(CommandError, match='User not found'):
            call_command('bootstrap_roles', '--assign', 'ghost@clinic.com:admin', stdout=StringIO())

    def test_assigned_role_grants_write_access(self, patient):
        from rest_framework.test import APIClient

        user = User.objects.create_user(email='new@clinic.com', password='testpass123')
        call_command('bootstrap_roles', '--assign', 'new@clinic.com:odont', stdout=StringIO())
        client = APIClient()
        client.force_authenticate(user=user)

        response = client.post('/api/v1/clinical/encounters/', {'patient_id': str(patient.pk)}, format='json')

        assert response.status_code == 201


@pytest.mark.django_db
class TestStaffModel:

    def test_full_name_falls_back_to_email(self):
        named = User.objects.create_user(email='ana@clinic.com', first_name='Ana', last_name='Ruiz')
        anonymous = User.objects.create_user(email='desk@clinic.com')

        assert named.full_name == 'Ana Ruiz'
        assert anonymous.full_name == 'desk@clinic.com'

    def test_has_any_role(self):
        user = User.objects.create_user(email='dr@clinic.com', license_number='COL-4412')
        call_command('bootstrap_roles', '--assign', 'dr@clinic.com:odont', stdout=StringIO())

        assert user.has_any_role({RoleChoices.ADMIN, RoleChoices.ODONT})
        assert not user.has_any_role({RoleChoices.RECEP})

    def test_roles_carry_descriptions(self):
        call_command('bootstrap_roles', stdout=StringIO())

        assert Role.objects.get(name=RoleChoices.RECEP).description
