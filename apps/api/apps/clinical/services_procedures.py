"""
Procedure linker.

Records performed procedures inside a DRAFT encounter and forwards the
linkage side effects:

- single-session step linked while open  -> step COMPLETED
- multi-session step linked while PENDING/SCHEDULED -> step IN_PROGRESS
  (the session counter only moves through complete_session)
- diagnosis linked -> no status change

Deleting a procedure does not undo those side effects.
"""
import logging
from typing import Optional

from django.db import transaction
from django.utils import timezone

from apps.clinical import services_audit as audit
from apps.clinical.models import (
    AuditEntityTypeChoices,
    DIAGNOSIS_OPEN_STATUSES,
    Diagnosis,
    Procedure,
    TreatmentPlanStatusChoices,
    TreatmentStep,
    TreatmentStepStatusChoices,
)
from apps.clinical.services import (
    MALFORMED_ID_ERRORS,
    assert_mutable,
    bump_row_version,
    get_for_update,
)
from apps.clinical.services_treatment import complete_plan_if_done, lock_step
from apps.clinical.validators import resolve_catalog_entry, validate_tooth_placement
from apps.core.errors import NotFoundError, ValidationError
from apps.core.observability.events import log_domain_event

logger = logging.getLogger(__name__)

SERVICE_TYPE_MAX_LENGTH = 200
RESULT_NOTES_MAX_LENGTH = 2000

# Fields that may be edited after recording (while the encounter is DRAFT)
EDITABLE_FIELDS = ('quantity', 'unit_price_cents', 'result_notes', 'tooth_number', 'tooth_surface')
LINKAGE_FIELDS = ('treatment_step', 'treatment_step_id', 'diagnosis', 'diagnosis_id', 'encounter', 'encounter_id')


def _validate_amounts(quantity=None, unit_price_cents=None, result_notes=None):
    errors = {}
    if quantity is not None and (not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1):
        errors['quantity'] = 'Quantity must be an integer of at least 1'
    if unit_price_cents is not None and unit_price_cents < 0:
        errors['unit_price_cents'] = 'Price cannot be negative'
    if result_notes is not None and len(result_notes) > RESULT_NOTES_MAX_LENGTH:
        errors['result_notes'] = f'Must be at most {RESULT_NOTES_MAX_LENGTH} characters'
    if errors:
        raise ValidationError('Invalid procedure data', details=errors)


def _total(unit_price_cents, quantity):
    if unit_price_cents is None:
        return None
    return unit_price_cents * quantity


def _link_step(step_id, encounter):
    plan, step = lock_step(step_id)
    if plan.patient_id != encounter.patient_id or plan.status != TreatmentPlanStatusChoices.ACTIVE:
        raise ValidationError(
            "Treatment step is not part of the patient's active plan",
            details={'treatment_step_id': str(step.pk)},
        )
    if step.status not in TreatmentStep.LINKABLE_STATUSES:
        raise ValidationError(
            f'Cannot link a procedure to a {step.status} step',
            details={
                'treatment_step_id': str(step.pk),
                'status': step.status,
                'allowed': sorted(TreatmentStep.LINKABLE_STATUSES),
            },
        )
    return plan, step


def _link_diagnosis(diagnosis_id, encounter):
    diagnosis = get_for_update(Diagnosis, diagnosis_id, 'Diagnosis')
    if diagnosis.patient_id != encounter.patient_id:
        raise ValidationError(
            'Diagnosis belongs to a different patient',
            details={'diagnosis_id': str(diagnosis.pk)},
        )
    if diagnosis.status not in DIAGNOSIS_OPEN_STATUSES:
        raise ValidationError(
            f'Cannot link a procedure to a {diagnosis.status} diagnosis',
            details={'diagnosis_id': str(diagnosis.pk), 'status': diagnosis.status},
        )
    return diagnosis


def _apply_step_side_effect(plan, step, procedure, actor):
    """Advance the linked step's status as a consequence of the procedure."""
    previous = step.status
    if not step.requires_multiple_sessions:
        step.status = TreatmentStepStatusChoices.COMPLETED
        step.completed_at = timezone.now()
    elif previous in (TreatmentStepStatusChoices.PENDING, TreatmentStepStatusChoices.SCHEDULED):
        step.status = TreatmentStepStatusChoices.IN_PROGRESS
        step.current_session = step.current_session or 1
    else:
        return False

    bump_row_version(step)
    step.save(update_fields=['status', 'completed_at', 'current_session', 'row_version', 'updated_at'])
    audit.append(
        AuditEntityTypeChoices.TREATMENT_STEP,
        step.pk,
        previous_state=previous,
        new_state=step.status,
        actor=actor,
        patient=plan.patient,
        context={
            'trigger': 'procedure_linked',
            'procedure_id': str(procedure.pk),
            'encounter_id': str(procedure.encounter_id),
        },
    )
    if step.status == TreatmentStepStatusChoices.COMPLETED:
        complete_plan_if_done(plan, actor)
    return True


def record_procedure(
    encounter_id,
    service_type: Optional[str] = None,
    procedure_catalog=None,
    quantity: int = 1,
    tooth_number: Optional[int] = None,
    tooth_surface: Optional[str] = None,
    unit_price_cents: Optional[int] = None,
    result_notes: Optional[str] = None,
    treatment_step_id=None,
    diagnosis_id=None,
    actor=None,
) -> Procedure:
    """
    Record a performed procedure in a DRAFT encounter.

    A catalog entry, when given, supplies the canonical name and default
    price and decides whether tooth/surface are allowed; free text
    ``service_type`` is ignored in that case.

    Raises:
        NotFoundError: encounter, catalog entry, step or diagnosis missing
        EncounterFinalizedError: encounter is FINAL
        ValidationError: bad amounts, placement or linkage
    """
    _validate_amounts(quantity=quantity, unit_price_cents=unit_price_cents, result_notes=result_notes)

    with transaction.atomic():
        encounter = assert_mutable(encounter_id)

        catalog_entry = resolve_catalog_entry(procedure_catalog)
        if catalog_entry is not None:
            service_type = catalog_entry.name
            if unit_price_cents is None:
                unit_price_cents = catalog_entry.default_price_cents
        else:
            service_type = (service_type or '').strip()
            if not service_type:
                raise ValidationError(
                    'Either a catalog procedure or a service type is required',
                    details={'service_type': 'This field is required without procedure_catalog.'},
                )
            if len(service_type) > SERVICE_TYPE_MAX_LENGTH:
                raise ValidationError(
                    'Service type too long',
                    details={'service_type': f'Must be at most {SERVICE_TYPE_MAX_LENGTH} characters'},
                )

        validate_tooth_placement(catalog_entry, tooth_number, tooth_surface)

        plan = step = diagnosis = None
        if treatment_step_id:
            plan, step = _link_step(treatment_step_id, encounter)
        if diagnosis_id:
            diagnosis = _link_diagnosis(diagnosis_id, encounter)

        procedure = Procedure.objects.create(
            encounter=encounter,
            treatment_step=step,
            diagnosis=diagnosis,
            procedure_catalog=catalog_entry,
            service_type=service_type,
            quantity=quantity,
            tooth_number=tooth_number,
            tooth_surface=tooth_surface or None,
            unit_price_cents=unit_price_cents,
            total_cents=_total(unit_price_cents, quantity),
            result_notes=result_notes or None,
            created_by_user=actor,
        )
        audit.append(
            AuditEntityTypeChoices.PROCEDURE,
            procedure.pk,
            new_state='RECORDED',
            actor=actor,
            patient=encounter.patient,
            context={
                'encounter_id': str(encounter.pk),
                'treatment_step_id': str(step.pk) if step else None,
                'diagnosis_id': str(diagnosis.pk) if diagnosis else None,
                'quantity': quantity,
            },
        )

        step_changed = False
        if step is not None:
            step_changed = _apply_step_side_effect(plan, step, procedure, actor)

    log_domain_event(
        'procedure_recorded',
        entity_type='Procedure',
        entity_id=str(procedure.pk),
        entity_ids={
            'encounter_id': str(encounter.pk),
            'patient_id': str(encounter.patient_id),
        },
        linked_step=bool(step),
        linked_diagnosis=bool(diagnosis),
        step_status=step.status if step else None,
        step_changed=step_changed,
    )
    return procedure


def _owning_encounter_id(procedure_id):
    try:
        encounter_id = Procedure.objects.filter(pk=procedure_id).values_list('encounter_id', flat=True).first()
    except MALFORMED_ID_ERRORS:
        encounter_id = None
    if encounter_id is None:
        raise NotFoundError('Procedure not found', details={'id': str(procedure_id)})
    return encounter_id


def update_procedure(procedure_id, changes, actor=None) -> Procedure:
    """
    Edit quantity, price, notes or tooth placement of a recorded procedure.

    ``changes`` maps field names to new values; any key outside the
    editable fields is rejected.

    Linkage (encounter, step, diagnosis) is fixed at creation.

    Raises:
        NotFoundError, EncounterFinalizedError, ValidationError
    """
    linkage = sorted(set(changes) & set(LINKAGE_FIELDS))
    if linkage:
        raise ValidationError(
            'Procedure linkage cannot be changed',
            details={field: 'Read-only after creation.' for field in linkage},
        )
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(
            'Unknown procedure fields',
            details={field: 'Not editable.' for field in unknown},
        )
    _validate_amounts(
        quantity=changes.get('quantity'),
        unit_price_cents=changes.get('unit_price_cents'),
        result_notes=changes.get('result_notes'),
    )

    with transaction.atomic():
        assert_mutable(_owning_encounter_id(procedure_id))
        procedure = get_for_update(Procedure, procedure_id, 'Procedure')

        for field, value in changes.items():
            setattr(procedure, field, value)
        validate_tooth_placement(procedure.procedure_catalog, procedure.tooth_number, procedure.tooth_surface)
        procedure.total_cents = _total(procedure.unit_price_cents, procedure.quantity)
        procedure.save()

        audit.append(
            AuditEntityTypeChoices.PROCEDURE,
            procedure.pk,
            previous_state='RECORDED',
            new_state='RECORDED',
            actor=actor,
            patient=procedure.encounter.patient,
            context={'changed_fields': sorted(changes)},
        )

    log_domain_event(
        'procedure_updated',
        entity_type='Procedure',
        entity_id=str(procedure.pk),
        entity_ids={'encounter_id': str(procedure.encounter_id)},
        changed_fields=sorted(changes),
    )
    return procedure


def delete_procedure(procedure_id, actor=None) -> None:
    """
    Remove a procedure from a DRAFT encounter.

    Status changes it triggered on a step are left in place.

    Raises:
        NotFoundError, EncounterFinalizedError
    """
    with transaction.atomic():
        encounter = assert_mutable(_owning_encounter_id(procedure_id))
        procedure = get_for_update(Procedure, procedure_id, 'Procedure')

        audit.append(
            AuditEntityTypeChoices.PROCEDURE,
            procedure.pk,
            previous_state='RECORDED',
            new_state='DELETED',
            actor=actor,
            patient=encounter.patient,
            context={
                'encounter_id': str(encounter.pk),
                'treatment_step_id': str(procedure.treatment_step_id) if procedure.treatment_step_id else None,
                'diagnosis_id': str(procedure.diagnosis_id) if procedure.diagnosis_id else None,
            },
        )
        procedure.delete()

    log_domain_event(
        'procedure_deleted',
        entity_type='Procedure',
        entity_id=str(procedure_id),
        entity_ids={'encounter_id': str(encounter.pk)},
    )
