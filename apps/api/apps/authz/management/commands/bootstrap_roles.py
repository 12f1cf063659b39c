"""
Seed the clinic roles and optionally grant them.

    python manage.py bootstrap_roles
    python manage.py bootstrap_roles --assign dr.lopez@clinic.com:odont

Safe to run on every deploy.
"""
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from apps.authz.models import ROLE_DESCRIPTIONS, Role, RoleChoices, UserRole


class Command(BaseCommand):
    help = 'Create the admin, odont and recep roles; --assign EMAIL:ROLE grants one'

    def add_arguments(self, parser):
        parser.add_argument(
            '--assign',
            action='append',
            default=[],
            metavar='EMAIL:ROLE',
            help='Grant ROLE to the existing staff member EMAIL (repeatable)',
        )

    def handle(self, *args, **options):
        for choice in RoleChoices:
            role, created = Role.objects.update_or_create(
                name=choice, defaults={'description': ROLE_DESCRIPTIONS[choice]}
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Created role: {role.name}'))
            else:
                self.stdout.write(f'Role exists: {role.name}')

        for assignment in options['assign']:
            self._grant(assignment)

    def _grant(self, assignment):
        email, _, role_name = assignment.partition(':')
        if role_name not in RoleChoices.values:
            raise CommandError(f'Unknown role "{role_name}" in "{assignment}"')

        staff = get_user_model().objects.filter(email=email).first()
        if staff is None:
            raise CommandError(f'User not found: {email}')

        _, created = UserRole.objects.get_or_create(user=staff, role=Role.objects.get(name=role_name))
        if created:
            self.stdout.write(self.style.SUCCESS(f'Granted {role_name} to {email}'))
        else:
            self.stdout.write(f'{email} already has {role_name}')
