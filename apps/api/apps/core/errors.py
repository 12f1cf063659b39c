"""
Domain error taxonomy for the clinical core.

Services raise these; the DRF exception handler in
``apps.core.exception_handler`` turns them into the failure envelope.
None of them is retried server-side.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base class for errors surfaced to API callers."""
    code = 'DOMAIN_ERROR'
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details,
        }


class ValidationError(DomainError):
    """Malformed or missing input (e.g. discard without reason)."""
    code = 'VALIDATION_ERROR'
    status_code = 400


class AuthorizationError(DomainError):
    """Role lacks permission for the operation."""
    code = 'FORBIDDEN'
    status_code = 403


class NotFoundError(DomainError):
    """Referenced entity does not exist."""
    code = 'NOT_FOUND'
    status_code = 404


class ConflictError(DomainError):
    """
    Terminal-state re-entry, stale version or duplicate active plan.
    
    ``details`` carries the current persisted state so the caller can
    refetch and retry.
    """
    code = 'CONFLICT'
    status_code = 409


class EncounterFinalizedError(DomainError):
    """Mutation attempted against a FINAL encounter."""
    code = 'ENCOUNTER_FINALIZED'
    status_code = 423
