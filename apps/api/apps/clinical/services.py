"""
Encounter lifecycle services.

An encounter moves DRAFT -> FINAL exactly once. Every other clinical
service calls assert_mutable() before writing anything scoped to an
encounter; a FINAL encounter freezes those writes.
"""
import logging
from typing import Optional, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.clinical import services_audit as audit
from apps.clinical.models import (
    AuditEntityTypeChoices,
    Encounter,
    EncounterStatusChoices,
    Patient,
)
from apps.core.errors import (
    ConflictError,
    EncounterFinalizedError,
    NotFoundError,
    ValidationError,
)
from apps.core.observability.events import log_blocked_mutation, log_domain_event

logger = logging.getLogger(__name__)

# Raised by the ORM for ids that are not valid UUIDs
MALFORMED_ID_ERRORS = (ValueError, TypeError, DjangoValidationError)


# ============================================================================
# Shared helpers
# ============================================================================

def get_for_update(model, pk, label: Optional[str] = None):
    """
    Lock and return ``model`` row ``pk``; raise NotFoundError if absent.

    Must be called inside transaction.atomic().
    """
    try:
        return model.objects.select_for_update().get(pk=pk)
    except (model.DoesNotExist,) + MALFORMED_ID_ERRORS:
        raise NotFoundError(
            f'{label or model.__name__} not found',
            details={'id': str(pk)},
        )


def check_row_version(instance, expected_version: Optional[int], entity_type: str):
    """Reject a mutation made against a stale copy of ``instance``."""
    if expected_version is None:
        return
    if int(expected_version) != instance.row_version:
        raise ConflictError(
            f'{entity_type} was modified by another request; reload and retry',
            details={
                'entity_type': entity_type,
                'entity_id': str(instance.pk),
                'reason': 'stale_version',
                'expected_version': int(expected_version),
                'row_version': instance.row_version,
                'status': getattr(instance, 'status', None),
            },
        )


def bump_row_version(instance):
    instance.row_version = instance.row_version + 1


# ============================================================================
# Encounter lifecycle
# ============================================================================

def assert_mutable(encounter, lock: bool = True) -> Encounter:
    """
    Ensure the encounter is still DRAFT.

    Args:
        encounter: Encounter instance or id
        lock: re-read the row FOR UPDATE so a concurrent finalize is serialized
            against the caller's write (requires an open transaction)

    Returns:
        The (freshly read) Encounter

    Raises:
        NotFoundError: encounter does not exist
        EncounterFinalizedError: encounter is FINAL
    """
    encounter_id = encounter.pk if isinstance(encounter, Encounter) else encounter
    if lock:
        encounter = get_for_update(Encounter, encounter_id, 'Encounter')
    elif not isinstance(encounter, Encounter):
        try:
            encounter = Encounter.objects.get(pk=encounter_id)
        except (Encounter.DoesNotExist,) + MALFORMED_ID_ERRORS:
            raise NotFoundError('Encounter not found', details={'id': str(encounter_id)})

    if encounter.status == EncounterStatusChoices.FINAL:
        raise EncounterFinalizedError(
            'Encounter is finalized; clinical data can no longer be changed',
            details={
                'encounter_id': str(encounter.pk),
                'finished_at': encounter.finished_at.isoformat() if encounter.finished_at else None,
            },
        )
    return encounter


def find_by_appointment(appointment_ref: str) -> Optional[Encounter]:
    return Encounter.objects.select_for_update().filter(appointment_ref=appointment_ref).first()


def _reuse_encounter(existing: Encounter, patient: Patient, appointment_ref: str) -> Encounter:
    if existing.patient_id != patient.pk:
        raise ValidationError(
            'Appointment already has an encounter for a different patient',
            details={'appointment_ref': appointment_ref},
        )
    return existing


def ensure_encounter(patient_id, appointment_ref: Optional[str] = None, actor=None) -> Tuple[Encounter, bool]:
    """
    Return the encounter for an appointment, creating it on first use.

    Without ``appointment_ref`` a new walk-in encounter is always created.
    An existing FINAL encounter is returned as-is; it stays frozen.

    Two first calls for the same appointment may both miss the lookup;
    the unique appointment_ref lets only one insert win and the other
    returns the winner's encounter.

    Returns:
        (encounter, created)
    """
    with transaction.atomic():
        try:
            patient = Patient.objects.get(pk=patient_id)
        except (Patient.DoesNotExist,) + MALFORMED_ID_ERRORS:
            raise NotFoundError('Patient not found', details={'id': str(patient_id)})

        if appointment_ref:
            existing = find_by_appointment(appointment_ref)
            if existing is not None:
                return _reuse_encounter(existing, patient, appointment_ref), False

        try:
            with transaction.atomic():
                encounter = Encounter.objects.create(
                    patient=patient,
                    appointment_ref=appointment_ref or None,
                    status=EncounterStatusChoices.DRAFT,
                    performed_by=actor,
                )
        except IntegrityError:
            if not appointment_ref:
                raise
            logger.info(
                'Encounter for appointment created concurrently; reusing it',
                extra={'event': 'encounter_create_race', 'patient_id': str(patient.pk)},
            )
            existing = Encounter.objects.get(appointment_ref=appointment_ref)
            return _reuse_encounter(existing, patient, appointment_ref), False

        audit.append(
            AuditEntityTypeChoices.ENCOUNTER,
            encounter.pk,
            new_state=EncounterStatusChoices.DRAFT,
            actor=actor,
            patient=patient,
            context={'appointment_ref': appointment_ref},
        )

    log_domain_event(
        'encounter_created',
        entity_type='Encounter',
        entity_id=str(encounter.pk),
        entity_ids={'patient_id': str(patient.pk)},
    )
    return encounter, True


def finalize(encounter_id, finished_at=None, actor=None, expected_version: Optional[int] = None) -> Encounter:
    """
    Close an encounter: DRAFT -> FINAL.

    There is no way back. Re-finalizing raises ConflictError.

    Args:
        encounter_id: UUID of the encounter
        finished_at: end of the visit (defaults to now)
        actor: User finalizing the encounter
        expected_version: row_version the caller last saw (optional)

    Raises:
        NotFoundError, ConflictError, ValidationError
    """
    finished_at = finished_at or timezone.now()

    with transaction.atomic():
        encounter = get_for_update(Encounter, encounter_id, 'Encounter')

        if encounter.status == EncounterStatusChoices.FINAL:
            error = ConflictError(
                'Encounter is already finalized',
                details={
                    'entity_type': 'Encounter',
                    'entity_id': str(encounter.pk),
                    'reason': 'already_final',
                    'status': encounter.status,
                    'finished_at': encounter.finished_at.isoformat() if encounter.finished_at else None,
                    'row_version': encounter.row_version,
                },
            )
            log_blocked_mutation('encounter_finalized', 'Encounter', encounter.pk, error)
            raise error

        check_row_version(encounter, expected_version, 'Encounter')

        if finished_at < encounter.created_at:
            raise ValidationError(
                'finished_at cannot be earlier than the encounter start',
                details={'finished_at': finished_at.isoformat()},
            )

        encounter.status = EncounterStatusChoices.FINAL
        encounter.finished_at = finished_at
        bump_row_version(encounter)
        encounter.save(update_fields=['status', 'finished_at', 'row_version', 'updated_at'])

        audit.append(
            AuditEntityTypeChoices.ENCOUNTER,
            encounter.pk,
            previous_state=EncounterStatusChoices.DRAFT,
            new_state=EncounterStatusChoices.FINAL,
            actor=actor,
            patient=encounter.patient,
            context={
                'finished_at': finished_at.isoformat(),
                'procedures_count': encounter.procedures.count(),
            },
        )

    log_domain_event(
        'encounter_finalized',
        entity_type='Encounter',
        entity_id=str(encounter.pk),
        entity_ids={'patient_id': str(encounter.patient_id)},
    )
    return encounter
