"""
Domain event logging.

Each clinical state change emits exactly one event record and bumps
``clinical_transitions_total``. A change refused by a guard emits the same
event name with ``result='blocked'`` so attempts and outcomes line up in
the logs.
"""
import logging

from .logging import get_sanitized_logger, sanitize_dict
from .metrics import record_transition

logger = get_sanitized_logger(__name__)

_LEVEL_BY_RESULT = {
    'success': logging.INFO,
    'blocked': logging.WARNING,
    'warning': logging.WARNING,
    'failure': logging.ERROR,
}


def log_domain_event(event_name, entity_type=None, entity_id=None, entity_ids=None,
                     result='success', **fields):
    """
    Emit one structured event.

    ``entity_ids`` carries related ids (patient_id, encounter_id) as
    top-level keys; ``fields`` go through the PHI redaction first.

        log_domain_event(
            'diagnosis_status_changed',
            entity_type='Diagnosis',
            entity_id=str(diagnosis.pk),
            entity_ids={'patient_id': str(diagnosis.patient_id)},
            from_status='ACTIVE',
            to_status='RESOLVED',
        )
    """
    record = {'event': event_name, 'result': result}
    if entity_type:
        record['entity_type'] = entity_type
        record_transition(entity_type, result)
    if entity_id:
        record['entity_id'] = str(entity_id)
    record.update(entity_ids or {})
    record.update(sanitize_dict(fields))

    logger.log(
        _LEVEL_BY_RESULT.get(result, logging.INFO),
        '%s [%s]', event_name, result,
        extra=record,
    )


def log_blocked_mutation(event_name, entity_type, entity_id, error, **fields):
    """Record a change that a domain guard refused, with the error code."""
    log_domain_event(
        event_name,
        entity_type=entity_type,
        entity_id=entity_id,
        result='blocked',
        error_code=error.code,
        **fields
    )
