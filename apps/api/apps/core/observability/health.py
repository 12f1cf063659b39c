"""
Liveness and readiness probes.

Both are plain Django views outside the API so orchestrators can call
them without a token.
"""
import logging

from django.conf import settings
from django.db import DatabaseError
from django.http import JsonResponse
from django.views import View

logger = logging.getLogger(__name__)


class HealthzView(View):
    """Process is up; touches nothing else."""

    def get(self, request):
        body = {'status': 'ok', 'version': getattr(settings, 'VERSION', 'unknown')}
        if getattr(settings, 'COMMIT_HASH', None):
            body['commit'] = settings.COMMIT_HASH
        return JsonResponse(body)


class ReadyzView(View):
    """
    Database reachable and the clinic roles seeded.

    Without the roles every clinical request is refused, so an unseeded
    database is reported as not ready.
    """

    def get(self, request):
        checks = {'database': False, 'roles': False}
        try:
            seeded = self._seeded_roles()
        except DatabaseError as exc:
            logger.error(
                'Readiness check could not reach the database',
                extra={'event': 'health_check_failed', 'check': 'database', 'error': str(exc)},
            )
        else:
            checks['database'] = True
            checks['roles'] = seeded

        ready = all(checks.values())
        return JsonResponse(
            {'status': 'ready' if ready else 'not_ready', 'checks': checks},
            status=200 if ready else 503,
        )

    @staticmethod
    def _seeded_roles():
        from apps.authz.models import Role, RoleChoices

        present = set(Role.objects.values_list('name', flat=True))
        return set(RoleChoices.values) <= present
