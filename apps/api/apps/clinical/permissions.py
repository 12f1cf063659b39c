"""
Clinical permissions for API endpoints.

Permission matrix:
- Admin: read + write
- Odontologist: read + write
- Reception: read only (agenda context; no clinical mutations)
- No role: no access
"""
from rest_framework import permissions

from apps.authz.models import CLINICAL_READ_ROLES, CLINICAL_WRITE_ROLES
from apps.core.observability.correlation import bind_user_context


class ClinicalCorePermission(permissions.BasePermission):
    """
    Role gate for every clinical-core endpoint.

    Unauthenticated requests fail with 401 (DRF NotAuthenticated);
    an authenticated user without a suitable role gets 403.
    """
    message = 'Your role does not allow this clinical operation.'

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        user_roles = request.user.role_names
        bind_user_context(request.user, user_roles)

        if request.method in permissions.SAFE_METHODS:
            return bool(user_roles & CLINICAL_READ_ROLES)

        # BUSINESS RULE: Reception never mutates clinical data
        return bool(user_roles & CLINICAL_WRITE_ROLES)
