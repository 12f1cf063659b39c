"""
JSON log output with PHI redaction.

Clinical free text (notes, reasons, labels) and patient identity never
reach a log sink: any key in ``SENSITIVE_FIELDS`` is replaced with
``[REDACTED]`` wherever it appears, including inside nested payloads.
"""
import json
import logging
from datetime import datetime, timezone

from .correlation import get_request_id, get_trace_id, get_user_id, get_user_roles

REDACTED = '[REDACTED]'

_CREDENTIALS = {'password', 'token', 'secret', 'api_key'}
_IDENTITY = {'first_name', 'last_name', 'email', 'phone', 'date_of_birth'}
_CLINICAL_TEXT = {'notes', 'reason', 'label', 'description', 'result_notes', 'session_notes'}

SENSITIVE_FIELDS = frozenset(_CREDENTIALS | _IDENTITY | _CLINICAL_TEXT)

# Standard LogRecord attributes, rendered separately or not at all
_BUILTIN_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

_CONTEXT_KEYS = ('request_id', 'trace_id', 'user_id', 'user_roles')


def _is_sensitive(key):
    return str(key).lower() in SENSITIVE_FIELDS


def sanitize_value(value):
    if isinstance(value, dict):
        return sanitize_dict(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item) for item in value]
    return value


def sanitize_dict(data):
    """Copy ``data`` with sensitive keys redacted at every depth."""
    if not isinstance(data, dict):
        return data
    return {
        key: REDACTED if _is_sensitive(key) else sanitize_value(value)
        for key, value in data.items()
    }


class CorrelationFilter(logging.Filter):
    """Stamp each record with the current request and staff context."""

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        record.trace_id = get_trace_id() or '-'
        record.user_id = get_user_id() or '-'
        record.user_roles = ','.join(get_user_roles()) or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` keys are redacted."""

    def format(self, record):
        payload = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            payload[key] = getattr(record, key, '-')

        for key, value in vars(record).items():
            if key in payload or key in _BUILTIN_ATTRS or key.startswith('_'):
                continue
            payload[key] = REDACTED if _is_sensitive(key) else sanitize_value(value)

        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_sanitized_logger(name):
    """``logging.getLogger`` with the correlation filter attached once."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())
    return logger
