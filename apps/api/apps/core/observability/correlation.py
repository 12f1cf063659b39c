"""
Per-request correlation context.

Each request gets an ``X-Request-ID`` (taken from the caller or freshly
generated) that is echoed on the response and attached to every log line
emitted while the request is being served.
"""
import logging
import time
import uuid
from threading import local

_state = local()

_CONTEXT_FIELDS = ('request_id', 'trace_id', 'user_id', 'user_roles')

logger = logging.getLogger(__name__)


def get_request_id():
    return getattr(_state, 'request_id', None)


def get_trace_id():
    return getattr(_state, 'trace_id', None)


def get_user_id():
    return getattr(_state, 'user_id', None)


def get_user_roles():
    return getattr(_state, 'user_roles', [])


def bind_user_context(user, roles):
    """
    Attach the acting staff member to the current request context.

    Token authentication happens inside the DRF view, so the clinical
    permission class binds the user once it has resolved the roles.
    """
    _state.user_id = str(user.id)
    _state.user_roles = sorted(roles)


def clear_request_context():
    for name in _CONTEXT_FIELDS:
        _state.__dict__.pop(name, None)


class RequestCorrelationMiddleware:
    """Tag the request, echo its id back and log how long it took."""

    request_id_header = 'HTTP_X_REQUEST_ID'
    trace_id_header = 'HTTP_X_TRACE_ID'

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        self._open_context(request)
        started = time.monotonic()
        try:
            response = self.get_response(request)
            response['X-Request-ID'] = request.request_id
            if request.trace_id:
                response['X-Trace-ID'] = request.trace_id
            logger.info(
                '%s %s -> %s', request.method, request.path, response.status_code,
                extra={
                    'event': 'http_request_completed',
                    'path': request.path,
                    'method': request.method,
                    'status_code': response.status_code,
                    'duration_ms': _elapsed_ms(started),
                }
            )
            return response
        finally:
            clear_request_context()

    def process_exception(self, request, exception):
        logger.error(
            'Unhandled %s on %s %s', type(exception).__name__, request.method, request.path,
            exc_info=True,
            extra={
                'event': 'http_request_exception',
                'path': request.path,
                'method': request.method,
                'exception_type': type(exception).__name__,
            }
        )

    def _open_context(self, request):
        request.request_id = request.META.get(self.request_id_header) or str(uuid.uuid4())
        request.trace_id = request.META.get(self.trace_id_header)
        _state.request_id = request.request_id
        _state.trace_id = request.trace_id

        # Admin pages use session auth, so the user is already known here
        user = getattr(request, 'user', None)
        if user is not None and user.is_authenticated:
            bind_user_context(user, user.role_names)
        else:
            _state.user_id = None
            _state.user_roles = []


def _elapsed_ms(started):
    return round((time.monotonic() - started) * 1000, 2)
