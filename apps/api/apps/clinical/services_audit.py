"""
Clinical audit trail.

append() is the only writer of ClinicalAuditLog. Callers invoke it inside
the same transaction as the state change it records, so a failed
transition leaves no audit row behind.
"""
import logging
from typing import Any, Dict, Optional

from apps.clinical.models import AuditEntityTypeChoices, ClinicalAuditLog
from apps.core.errors import ValidationError

logger = logging.getLogger(__name__)


def append(
    entity_type: str,
    entity_id,
    new_state: str,
    actor=None,
    previous_state: Optional[str] = None,
    reason: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    patient=None,
) -> ClinicalAuditLog:
    """
    Record one transition of a clinical entity.

    Args:
        entity_type: AuditEntityTypeChoices value
        entity_id: UUID of the entity
        new_state: status after the transition
        actor: User performing the change (None for system transitions)
        previous_state: status before the transition (None on creation)
        reason: free-text justification
        context: JSON-serialisable extra data (session numbers, encounter id...)
        patient: owning patient, for per-patient queries

    Returns:
        The created ClinicalAuditLog row
    """
    entry = ClinicalAuditLog.objects.create(
        actor_user=actor,
        entity_type=entity_type,
        entity_id=entity_id,
        patient=patient,
        previous_state=previous_state,
        new_state=new_state,
        reason=reason,
        context=context or {},
    )
    logger.debug(
        "Clinical audit entry appended",
        extra={
            'event': 'clinical_audit_appended',
            'entity_type': entity_type,
            'entity_id': str(entity_id),
            'previous_state': previous_state,
            'new_state': new_state,
        }
    )
    return entry


def query(entity_type: str, entity_id):
    """
    Audit entries for one entity, oldest first.

    Returns a queryset; ties on timestamp are broken by insertion order.
    """
    if entity_type not in AuditEntityTypeChoices.values:
        raise ValidationError(
            f'Unknown entity type "{entity_type}"',
            details={'entity_type': entity_type, 'allowed': AuditEntityTypeChoices.values},
        )
    return (
        ClinicalAuditLog.objects
        .filter(entity_type=entity_type, entity_id=entity_id)
        .select_related('actor_user')
        .order_by('created_at', 'id')
    )
