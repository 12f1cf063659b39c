"""
Diagnosis registry.

Status machine:
    ACTIVE <-> UNDER_FOLLOW_UP -> RESOLVED | DISCARDED   (the last two are terminal)

Every change_status() call appends exactly one DiagnosisStatusHistory row
and one audit entry, including ACTIVE -> ACTIVE note edits.
"""
import logging
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from apps.clinical import services_audit as audit
from apps.clinical.models import (
    AuditEntityTypeChoices,
    DIAGNOSIS_CLOSED_STATUSES,
    DIAGNOSIS_STATUS_ALIASES,
    Diagnosis,
    DiagnosisStatusChoices,
    DiagnosisStatusHistory,
    Encounter,
    Procedure,
)
from apps.clinical.services import (
    MALFORMED_ID_ERRORS,
    assert_mutable,
    bump_row_version,
    check_row_version,
    get_for_update,
)
from apps.core.errors import ConflictError, NotFoundError, ValidationError
from apps.core.observability.events import log_blocked_mutation, log_domain_event

logger = logging.getLogger(__name__)

LABEL_MAX_LENGTH = 200
CODE_MAX_LENGTH = 50
NOTES_MAX_LENGTH = 1000


def normalize_status(value) -> str:
    """
    Map an incoming status (any case, legacy aliases) to the canonical value.

    Raises:
        ValidationError: unknown status
    """
    candidate = str(value or '').strip().upper()
    candidate = DIAGNOSIS_STATUS_ALIASES.get(candidate, candidate)
    if candidate not in DiagnosisStatusChoices.values:
        raise ValidationError(
            f'Unknown diagnosis status "{value}"',
            details={'status': value, 'allowed': DiagnosisStatusChoices.values},
        )
    return candidate


def _validate_text_fields(label=None, code=None, notes=None, require_label=False):
    errors = {}
    if require_label or label is not None:
        if not label or not label.strip():
            errors['label'] = 'Label is required'
        elif len(label.strip()) > LABEL_MAX_LENGTH:
            errors['label'] = f'Label must be at most {LABEL_MAX_LENGTH} characters'
    if code is not None and len(code) > CODE_MAX_LENGTH:
        errors['code'] = f'Code must be at most {CODE_MAX_LENGTH} characters'
    if notes is not None and len(notes) > NOTES_MAX_LENGTH:
        errors['notes'] = f'Notes must be at most {NOTES_MAX_LENGTH} characters'
    if errors:
        raise ValidationError('Invalid diagnosis data', details=errors)


def _check_same_patient(encounter, patient_id):
    if str(encounter.patient_id) != str(patient_id):
        raise ValidationError(
            'Encounter belongs to a different patient',
            details={'encounter_id': str(encounter.pk)},
        )
    return encounter


def create_diagnosis(
    patient_id,
    encounter_id,
    label: str,
    code: Optional[str] = None,
    catalog_ref: Optional[str] = None,
    notes: Optional[str] = None,
    actor=None,
) -> Diagnosis:
    """
    Record a new ACTIVE diagnosis in a DRAFT encounter.

    Raises:
        NotFoundError: encounter missing
        EncounterFinalizedError: encounter is FINAL
        ValidationError: bad label/code/notes or patient mismatch
    """
    _validate_text_fields(label=label, code=code, notes=notes, require_label=True)

    with transaction.atomic():
        encounter = assert_mutable(encounter_id)
        _check_same_patient(encounter, patient_id)

        diagnosis = Diagnosis.objects.create(
            patient_id=encounter.patient_id,
            encounter=encounter,
            label=label.strip(),
            code=code or None,
            catalog_ref=catalog_ref or None,
            notes=notes or None,
            status=DiagnosisStatusChoices.ACTIVE,
            noted_at=timezone.now(),
            created_by_user=actor,
        )
        audit.append(
            AuditEntityTypeChoices.DIAGNOSIS,
            diagnosis.pk,
            new_state=DiagnosisStatusChoices.ACTIVE,
            actor=actor,
            patient=encounter.patient,
            context={'encounter_id': str(encounter.pk), 'code': diagnosis.code},
        )

    log_domain_event(
        'diagnosis_created',
        entity_type='Diagnosis',
        entity_id=str(diagnosis.pk),
        entity_ids={'patient_id': str(diagnosis.patient_id), 'encounter_id': str(encounter.pk)},
    )
    return diagnosis


def change_status(
    diagnosis_id,
    new_status: str,
    reason: Optional[str] = None,
    actor=None,
    encounter_id=None,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Diagnosis:
    """
    Move a diagnosis to ``new_status``.

    Args:
        diagnosis_id: UUID of the diagnosis
        new_status: target status (legacy aliases accepted)
        reason: required (non-blank) for DISCARDED
        actor: User making the change
        encounter_id: encounter in which the change is made; must be DRAFT
        notes: replaces the diagnosis notes when given
        expected_version: row_version the caller last saw

    Raises:
        NotFoundError: diagnosis or encounter missing
        ConflictError: diagnosis already RESOLVED/DISCARDED, or stale version
        ValidationError: DISCARDED without reason, unknown status, bad notes
        EncounterFinalizedError: encounter context is FINAL
    """
    new_status = normalize_status(new_status)
    _validate_text_fields(notes=notes)

    with transaction.atomic():
        # Encounter before diagnosis: same lock order as record_procedure
        encounter = assert_mutable(encounter_id) if encounter_id else None
        diagnosis = get_for_update(Diagnosis, diagnosis_id, 'Diagnosis')
        if encounter is not None:
            _check_same_patient(encounter, diagnosis.patient_id)

        if diagnosis.status in DIAGNOSIS_CLOSED_STATUSES:
            error = ConflictError(
                f'Diagnosis is {diagnosis.status} and cannot change status',
                details={
                    'entity_type': 'Diagnosis',
                    'entity_id': str(diagnosis.pk),
                    'reason': 'terminal_state',
                    'status': diagnosis.status,
                    'resolved_at': diagnosis.resolved_at.isoformat() if diagnosis.resolved_at else None,
                    'row_version': diagnosis.row_version,
                },
            )
            log_blocked_mutation('diagnosis_status_changed', 'Diagnosis', diagnosis.pk, error)
            raise error

        check_row_version(diagnosis, expected_version, 'Diagnosis')

        reason = (reason or '').strip() or None
        if new_status == DiagnosisStatusChoices.DISCARDED and not reason:
            raise ValidationError(
                'A reason is required to discard a diagnosis',
                details={'reason': 'This field is required when discarding.'},
            )

        previous_status = diagnosis.status
        now = timezone.now()
        diagnosis.status = new_status
        if new_status in DIAGNOSIS_CLOSED_STATUSES and diagnosis.resolved_at is None:
            diagnosis.resolved_at = now
        if notes is not None:
            diagnosis.notes = notes or None
        bump_row_version(diagnosis)
        diagnosis.save(update_fields=['status', 'resolved_at', 'notes', 'row_version', 'updated_at'])

        DiagnosisStatusHistory.objects.create(
            diagnosis=diagnosis,
            previous_status=previous_status,
            new_status=new_status,
            reason=reason,
            changed_at=now,
            changed_by=actor,
            encounter=encounter,
        )
        audit.append(
            AuditEntityTypeChoices.DIAGNOSIS,
            diagnosis.pk,
            previous_state=previous_status,
            new_state=new_status,
            actor=actor,
            reason=reason,
            patient=diagnosis.patient,
            context={'encounter_id': str(encounter.pk) if encounter else None},
        )

    log_domain_event(
        'diagnosis_status_changed',
        entity_type='Diagnosis',
        entity_id=str(diagnosis.pk),
        entity_ids={'patient_id': str(diagnosis.patient_id)},
        from_status=previous_status,
        to_status=new_status,
    )
    return diagnosis


def delete_diagnosis(diagnosis_id, actor=None, encounter_id=None) -> None:
    """
    Hard-delete an ACTIVE diagnosis with no status history and no
    referencing procedure.

    Without an explicit encounter context the originating encounter is
    used, so a diagnosis recorded in a finalized visit cannot be removed.

    Raises:
        NotFoundError, ConflictError, EncounterFinalizedError
    """
    with transaction.atomic():
        try:
            origin_id = Diagnosis.objects.filter(pk=diagnosis_id).values_list('encounter_id', flat=True).first()
        except MALFORMED_ID_ERRORS:
            origin_id = None
        if origin_id is None:
            raise NotFoundError('Diagnosis not found', details={'id': str(diagnosis_id)})
        encounter = assert_mutable(encounter_id or origin_id)
        diagnosis = get_for_update(Diagnosis, diagnosis_id, 'Diagnosis')
        _check_same_patient(encounter, diagnosis.patient_id)

        if diagnosis.status != DiagnosisStatusChoices.ACTIVE:
            raise ConflictError(
                f'Only ACTIVE diagnoses can be deleted (current: {diagnosis.status})',
                details={
                    'entity_type': 'Diagnosis',
                    'entity_id': str(diagnosis.pk),
                    'reason': 'not_active',
                    'status': diagnosis.status,
                    'row_version': diagnosis.row_version,
                },
            )

        if diagnosis.status_history.exists():
            raise ConflictError(
                'Diagnosis has status history and can no longer be deleted',
                details={
                    'entity_type': 'Diagnosis',
                    'entity_id': str(diagnosis.pk),
                    'reason': 'has_history',
                    'history_count': diagnosis.status_history.count(),
                },
            )

        linked = Procedure.objects.filter(diagnosis=diagnosis).count()
        if linked:
            raise ConflictError(
                'Diagnosis is referenced by recorded procedures',
                details={
                    'entity_type': 'Diagnosis',
                    'entity_id': str(diagnosis.pk),
                    'reason': 'has_procedures',
                    'procedures_count': linked,
                },
            )

        audit.append(
            AuditEntityTypeChoices.DIAGNOSIS,
            diagnosis.pk,
            previous_state=diagnosis.status,
            new_state='DELETED',
            actor=actor,
            patient=diagnosis.patient,
            context={'encounter_id': str(diagnosis.encounter_id)},
        )
        patient_id = diagnosis.patient_id
        diagnosis.delete()

    log_domain_event(
        'diagnosis_deleted',
        entity_type='Diagnosis',
        entity_id=str(diagnosis_id),
        entity_ids={'patient_id': str(patient_id)},
    )


def get_history(diagnosis_id) -> Dict[str, Any]:
    """
    Read-only aggregation of a diagnosis and everything that touched it.

    Returns:
        {
            'diagnosis': Diagnosis,
            'status_history': [DiagnosisStatusHistory, ...]  (changed_at asc),
            'linked_encounters': [Encounter, ...]             (created_at asc),
            'linked_procedures': [Procedure, ...]             (created_at asc),
        }
    """
    try:
        diagnosis = Diagnosis.objects.select_related('encounter').get(pk=diagnosis_id)
    except (Diagnosis.DoesNotExist,) + MALFORMED_ID_ERRORS:
        raise NotFoundError('Diagnosis not found', details={'id': str(diagnosis_id)})

    status_history = list(
        diagnosis.status_history.select_related('changed_by', 'encounter').order_by('changed_at', 'id')
    )
    linked_procedures = list(
        Procedure.objects.filter(diagnosis=diagnosis)
        .select_related('encounter', 'treatment_step', 'procedure_catalog')
        .order_by('created_at')
    )

    encounter_ids = {diagnosis.encounter_id}
    encounter_ids.update(h.encounter_id for h in status_history if h.encounter_id)
    encounter_ids.update(p.encounter_id for p in linked_procedures)
    linked_encounters = list(Encounter.objects.filter(pk__in=encounter_ids).order_by('created_at'))

    return {
        'diagnosis': diagnosis,
        'status_history': status_history,
        'linked_encounters': linked_encounters,
        'linked_procedures': linked_procedures,
    }
