"""
Response envelope helpers.

Success: {"ok": true, "data": ...}
Failure: {"ok": false, "error": {"code", "message", "details"}}
"""
from rest_framework import status as http_status
from rest_framework.response import Response


def ok(data=None, status=http_status.HTTP_200_OK, headers=None):
    """Wrap ``data`` in the success envelope."""
    return Response({'ok': True, 'data': data}, status=status, headers=headers)


def fail(code, message, details=None, status=http_status.HTTP_400_BAD_REQUEST, headers=None):
    """Build a failure envelope response."""
    return Response(
        {
            'ok': False,
            'error': {
                'code': code,
                'message': message,
                'details': details or {},
            },
        },
        status=status,
        headers=headers,
    )
