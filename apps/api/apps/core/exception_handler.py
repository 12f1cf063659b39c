"""
DRF exception handler producing the failure envelope.

Registered as REST_FRAMEWORK['EXCEPTION_HANDLER'].
"""
import logging

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from rest_framework import exceptions, status
from rest_framework.views import exception_handler as drf_exception_handler

from apps.core.errors import DomainError
from apps.core.observability.metrics import record_conflict
from apps.core.responses import fail

logger = logging.getLogger(__name__)


def _django_validation_details(exc):
    if hasattr(exc, 'message_dict'):
        return exc.message_dict
    return {'non_field_errors': exc.messages}


def envelope_exception_handler(exc, context):
    """
    Map domain, DRF and Django exceptions to ``{ok: false, error}``.
    
    Anything unrecognised returns None so Django's 500 handling applies.
    """
    view = context.get('view')
    view_name = view.__class__.__name__ if view else None
    
    if isinstance(exc, DomainError):
        logger.info(
            "Domain error returned to caller",
            extra={
                'event': 'domain_error',
                'error_code': exc.code,
                'view': view_name,
            }
        )
        if exc.status_code == status.HTTP_409_CONFLICT:
            record_conflict(exc.details.get('entity_type'), exc.details.get('reason'))
        return fail(exc.code, exc.message, exc.details, status=exc.status_code)
    
    if isinstance(exc, DjangoValidationError):
        return fail(
            'VALIDATION_ERROR',
            'Invalid input',
            _django_validation_details(exc),
            status=status.HTTP_400_BAD_REQUEST,
        )
    
    if isinstance(exc, Http404):
        exc = exceptions.NotFound()
    elif isinstance(exc, DjangoPermissionDenied):
        exc = exceptions.PermissionDenied()
    
    response = drf_exception_handler(exc, context)
    if response is None:
        return None
    
    if isinstance(exc, (exceptions.ValidationError, exceptions.ParseError)):
        code, message = 'VALIDATION_ERROR', 'Invalid input'
        details = exc.detail if isinstance(exc.detail, dict) else {'non_field_errors': exc.detail}
    elif isinstance(exc, (exceptions.NotAuthenticated, exceptions.AuthenticationFailed)):
        code, message, details = 'UNAUTHORIZED', str(exc.detail), {}
    elif isinstance(exc, exceptions.PermissionDenied):
        code, message, details = 'FORBIDDEN', str(exc.detail), {}
    elif isinstance(exc, exceptions.NotFound):
        code, message, details = 'NOT_FOUND', str(exc.detail), {}
    else:
        code, message, details = exc.default_code.upper(), str(exc.detail), {}
    
    return fail(code, message, details, status=response.status_code, headers=_auth_headers(response))


def _auth_headers(response):
    headers = {}
    for name in ('WWW-Authenticate', 'Retry-After'):
        if name in response:
            headers[name] = response[name]
    return headers or None
