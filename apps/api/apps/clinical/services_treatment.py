"""
Treatment plan and step tracking.

Step status machine (single-session):
    PENDING -> SCHEDULED -> IN_PROGRESS -> COMPLETED
    CANCELLED / DEFERRED reachable from any non-terminal state
    COMPLETED and CANCELLED are terminal

Multi-session steps only reach COMPLETED through complete_session(),
which advances ``current_session`` one step at a time under an
optimistic check on the session number the caller last saw.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.clinical import services_audit as audit
from apps.clinical.models import (
    AuditEntityTypeChoices,
    Patient,
    TreatmentPlan,
    TreatmentPlanStatusChoices,
    TreatmentStep,
    TreatmentStepStatusChoices,
)
from apps.clinical.services import (
    MALFORMED_ID_ERRORS,
    assert_mutable,
    bump_row_version,
    check_row_version,
    get_for_update,
)
from apps.clinical.validators import resolve_catalog_entry, validate_tooth_placement
from apps.core.errors import ConflictError, NotFoundError, ValidationError
from apps.core.observability.events import log_blocked_mutation, log_domain_event

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
SERVICE_TYPE_MAX_LENGTH = 200
STEP_NOTES_MAX_LENGTH = 1000
PRIORITY_RANGE = range(1, 6)

# Step fields fixed once a step has left PENDING/SCHEDULED
LOCKED_STEP_FIELDS = (
    'procedure_catalog',
    'service_type',
    'tooth_number',
    'tooth_surface',
    'requires_multiple_sessions',
)

# Step states that do not block plan completion
PLAN_NEUTRAL_STEP_STATUSES = frozenset({
    TreatmentStepStatusChoices.CANCELLED,
    TreatmentStepStatusChoices.DEFERRED,
})

# Large enough to move every kept step out of the 1..n range during a reorder
_ORDER_SHIFT = 100000


def session_bounds():
    """(min, max) allowed total_sessions for multi-session steps."""
    return (
        getattr(settings, 'CLINICAL_MIN_TOTAL_SESSIONS', 2),
        getattr(settings, 'CLINICAL_MAX_TOTAL_SESSIONS', 10),
    )


# ============================================================================
# Validation
# ============================================================================

def _validate_title(title, required=True):
    if title is None and not required:
        return None
    if not title or not str(title).strip():
        raise ValidationError('Title is required', details={'title': 'This field is required.'})
    title = str(title).strip()
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(
            'Title too long',
            details={'title': f'Must be at most {TITLE_MAX_LENGTH} characters'},
        )
    return title


def _clean_step(data: Dict[str, Any], index: int, existing: Optional[TreatmentStep] = None) -> Dict[str, Any]:
    """
    Validate one incoming step definition and return normalized field values.

    ``existing`` is the persisted step being replaced (update_plan), used to
    keep the session counter within the new bounds.
    """
    prefix = f'steps[{index}].'
    errors = {}

    catalog_entry = resolve_catalog_entry(
        data.get('procedure_catalog'),
        # An already-linked catalog entry may since have been deactivated
        require_active=not (existing and existing.procedure_catalog_id == data.get('procedure_catalog')),
    )
    service_type = (data.get('service_type') or '').strip() or None

    if catalog_entry is None and not service_type:
        errors[f'{prefix}service_type'] = 'Either a catalog procedure or a service type is required'
    if service_type and len(service_type) > SERVICE_TYPE_MAX_LENGTH:
        errors[f'{prefix}service_type'] = f'Must be at most {SERVICE_TYPE_MAX_LENGTH} characters'

    priority = data.get('priority')
    if priority is not None and priority not in PRIORITY_RANGE:
        errors[f'{prefix}priority'] = 'Priority must be between 1 and 5'

    notes = data.get('notes')
    if notes is not None and len(notes) > STEP_NOTES_MAX_LENGTH:
        errors[f'{prefix}notes'] = f'Must be at most {STEP_NOTES_MAX_LENGTH} characters'

    for field in ('estimated_duration_min', 'estimated_cost_cents'):
        value = data.get(field)
        if value is not None and value < 0:
            errors[f'{prefix}{field}'] = 'Must be zero or positive'

    requires_multiple = bool(data.get('requires_multiple_sessions', False))
    total_sessions = data.get('total_sessions') if requires_multiple else None
    current_session = None
    if requires_multiple:
        min_sessions, max_sessions = session_bounds()
        if total_sessions is None or not (min_sessions <= total_sessions <= max_sessions):
            errors[f'{prefix}total_sessions'] = (
                f'Multi-session steps need between {min_sessions} and {max_sessions} sessions'
            )
        current_session = 1
        if existing is not None and existing.requires_multiple_sessions and existing.current_session:
            current_session = existing.current_session
            if total_sessions is not None and total_sessions < current_session:
                errors[f'{prefix}total_sessions'] = (
                    f'Cannot be lower than the session in progress ({current_session})'
                )

    if errors:
        raise ValidationError('Invalid treatment step', details=errors)

    validate_tooth_placement(
        catalog_entry,
        data.get('tooth_number'),
        data.get('tooth_surface'),
        field_prefix=prefix,
    )

    return {
        'procedure_catalog': catalog_entry,
        'service_type': service_type,
        'tooth_number': data.get('tooth_number'),
        'tooth_surface': data.get('tooth_surface'),
        'priority': priority,
        'requires_multiple_sessions': requires_multiple,
        'total_sessions': total_sessions,
        'current_session': current_session,
        'estimated_duration_min': data.get('estimated_duration_min'),
        'estimated_cost_cents': data.get('estimated_cost_cents'),
        'notes': notes or None,
    }


def _step_conflict(step, message, reason, **extra):
    details = {
        'entity_type': 'TreatmentStep',
        'entity_id': str(step.pk),
        'reason': reason,
        'status': step.status,
        'current_session': step.current_session,
        'total_sessions': step.total_sessions,
        'row_version': step.row_version,
    }
    details.update(extra)
    return ConflictError(message, details=details)


def _require_active_plan(plan):
    if plan.status != TreatmentPlanStatusChoices.ACTIVE:
        raise ConflictError(
            f'Treatment plan is {plan.status}',
            details={
                'entity_type': 'TreatmentPlan',
                'entity_id': str(plan.pk),
                'reason': 'plan_not_active',
                'status': plan.status,
                'row_version': plan.row_version,
            },
        )


def _active_plan_conflict(patient_id, existing_plan_id):
    return ConflictError(
        'Patient already has an active treatment plan',
        details={
            'entity_type': 'TreatmentPlan',
            'reason': 'active_plan_exists',
            'patient_id': str(patient_id),
            'active_plan_id': str(existing_plan_id) if existing_plan_id else None,
        },
    )


def lock_step(step_id):
    """
    Lock a step and its plan, plan first.

    Every writer that touches both takes the plan lock before the step lock.
    """
    try:
        plan_id = TreatmentStep.objects.filter(pk=step_id).values_list('plan_id', flat=True).first()
    except MALFORMED_ID_ERRORS:
        plan_id = None
    if plan_id is None:
        raise NotFoundError('Treatment step not found', details={'id': str(step_id)})
    plan = get_for_update(TreatmentPlan, plan_id, 'Treatment plan')
    step = get_for_update(TreatmentStep, step_id, 'Treatment step')
    return plan, step


def _lock_step_in_encounter(step_id, encounter_id):
    """
    Lock an optional encounter context, then the step and its plan.

    The encounter must be DRAFT and belong to the plan's patient.
    """
    encounter = assert_mutable(encounter_id) if encounter_id else None
    plan, step = lock_step(step_id)
    if encounter is not None and encounter.patient_id != plan.patient_id:
        raise ValidationError(
            'Encounter belongs to a different patient',
            details={'encounter_id': str(encounter.pk)},
        )
    return plan, step


# ============================================================================
# Plans
# ============================================================================

def create_plan(
    patient_id,
    title: str,
    description: Optional[str] = None,
    steps: Iterable[Dict[str, Any]] = (),
    actor=None,
) -> TreatmentPlan:
    """
    Create the patient's ACTIVE treatment plan.

    Steps are numbered 1..n in the order given. Multi-session steps start at
    session 1.

    Raises:
        NotFoundError: patient or catalog entry missing
        ConflictError: patient already has an ACTIVE plan
        ValidationError: invalid title or step
    """
    title = _validate_title(title)
    cleaned_steps = [_clean_step(step, index) for index, step in enumerate(steps)]

    with transaction.atomic():
        try:
            # Row lock serializes concurrent plan creation for the same patient
            patient = Patient.objects.select_for_update().get(pk=patient_id)
        except (Patient.DoesNotExist,) + MALFORMED_ID_ERRORS:
            raise NotFoundError('Patient not found', details={'id': str(patient_id)})

        existing_id = (
            TreatmentPlan.objects
            .filter(patient=patient, status=TreatmentPlanStatusChoices.ACTIVE)
            .values_list('id', flat=True)
            .first()
        )
        if existing_id:
            error = _active_plan_conflict(patient.pk, existing_id)
            log_blocked_mutation('treatment_plan_created', 'TreatmentPlan', None, error,
                                 patient_id=str(patient.pk))
            raise error

        try:
            with transaction.atomic():
                plan = TreatmentPlan.objects.create(
                    patient=patient,
                    title=title,
                    description=description or None,
                    status=TreatmentPlanStatusChoices.ACTIVE,
                    created_by_user=actor,
                )
        except IntegrityError:
            raise _active_plan_conflict(patient.pk, None)

        TreatmentStep.objects.bulk_create([
            TreatmentStep(plan=plan, order=position, **values)
            for position, values in enumerate(cleaned_steps, start=1)
        ])

        audit.append(
            AuditEntityTypeChoices.TREATMENT_PLAN,
            plan.pk,
            new_state=TreatmentPlanStatusChoices.ACTIVE,
            actor=actor,
            patient=patient,
            context={'steps_count': len(cleaned_steps)},
        )

    log_domain_event(
        'treatment_plan_created',
        entity_type='TreatmentPlan',
        entity_id=str(plan.pk),
        entity_ids={'patient_id': str(patient.pk)},
        steps_count=len(cleaned_steps),
    )
    return plan


def update_plan(
    plan_id,
    title: Optional[str] = None,
    description: Optional[str] = None,
    steps: Optional[List[Dict[str, Any]]] = None,
    actor=None,
    expected_version: Optional[int] = None,
) -> TreatmentPlan:
    """
    Replace-style update of an ACTIVE plan.

    ``steps`` is the complete new step list, in order. Items carrying an
    ``id`` update that existing step; items without one are created.
    Existing steps missing from the list are hard-deleted, which is only
    allowed while they are PENDING or SCHEDULED. Steps that have started
    keep their clinical identity (catalog, service, tooth, session mode).

    Raises:
        NotFoundError, ConflictError, ValidationError
    """
    title = _validate_title(title, required=False)

    with transaction.atomic():
        plan = get_for_update(TreatmentPlan, plan_id, 'Treatment plan')
        _require_active_plan(plan)
        check_row_version(plan, expected_version, 'TreatmentPlan')

        summary = {'steps_added': 0, 'steps_updated': 0, 'steps_removed': 0}

        if steps is not None:
            existing = {step.pk: step for step in plan.steps.select_for_update()}
            summary = _replace_steps(plan, existing, steps)

        if title is not None:
            plan.title = title
        if description is not None:
            plan.description = description or None
        bump_row_version(plan)
        plan.save(update_fields=['title', 'description', 'row_version', 'updated_at'])

        audit.append(
            AuditEntityTypeChoices.TREATMENT_PLAN,
            plan.pk,
            previous_state=plan.status,
            new_state=plan.status,
            actor=actor,
            patient=plan.patient,
            context=summary,
        )
        complete_plan_if_done(plan, actor)

    log_domain_event(
        'treatment_plan_updated',
        entity_type='TreatmentPlan',
        entity_id=str(plan.pk),
        entity_ids={'patient_id': str(plan.patient_id)},
        **summary
    )
    return plan


def _replace_steps(plan, existing: Dict[Any, TreatmentStep], incoming: List[Dict[str, Any]]) -> Dict[str, int]:
    seen = set()
    prepared = []
    for index, data in enumerate(incoming):
        step_id = data.get('id')
        current = None
        if step_id is not None:
            current = existing.get(step_id)
            if current is None:
                raise ValidationError(
                    'Step does not belong to this plan',
                    details={f'steps[{index}].id': str(step_id)},
                )
            if step_id in seen:
                raise ValidationError(
                    'Step listed twice',
                    details={f'steps[{index}].id': str(step_id)},
                )
            seen.add(step_id)
        values = _clean_step(data, index, existing=current)
        if current is not None and current.status not in TreatmentStep.REMOVABLE_STATUSES:
            _check_locked_fields(current, values, index)
        prepared.append((current, values))

    removed = [step for pk, step in existing.items() if pk not in seen]
    for step in removed:
        if step.status not in TreatmentStep.REMOVABLE_STATUSES:
            raise _step_conflict(
                step,
                f'Step #{step.order} is {step.status} and cannot be removed',
                'step_not_removable',
            )
        if step.procedures.exists():
            raise _step_conflict(
                step,
                f'Step #{step.order} has recorded procedures and cannot be removed',
                'step_has_procedures',
            )

    if removed:
        TreatmentStep.objects.filter(pk__in=[s.pk for s in removed]).delete()

    # Move kept steps out of the way so the (plan, order) constraint holds mid-update
    TreatmentStep.objects.filter(plan=plan, pk__in=seen).update(order=F('order') + _ORDER_SHIFT)

    added = updated = 0
    for position, (current, values) in enumerate(prepared, start=1):
        if current is None:
            TreatmentStep.objects.create(plan=plan, order=position, **values)
            added += 1
            continue
        if current.status in TreatmentStep.REMOVABLE_STATUSES or not current.is_terminal:
            for field, value in values.items():
                setattr(current, field, value)
        else:
            # Terminal steps: only planning metadata may change
            for field in ('priority', 'estimated_duration_min', 'estimated_cost_cents', 'notes'):
                setattr(current, field, values[field])
        current.order = position
        bump_row_version(current)
        current.save()
        updated += 1

    return {'steps_added': added, 'steps_updated': updated, 'steps_removed': len(removed)}


def _check_locked_fields(step, values, index):
    changed = []
    for field in LOCKED_STEP_FIELDS:
        if field == 'procedure_catalog':
            new_value = values[field].pk if values[field] else None
            old_value = step.procedure_catalog_id
        else:
            new_value = values[field]
            old_value = getattr(step, field)
        if new_value != old_value:
            changed.append(field)
    if step.is_terminal and values['total_sessions'] != step.total_sessions:
        changed.append('total_sessions')
    if changed:
        raise _step_conflict(
            step,
            f'Step #{step.order} is {step.status}; its procedure definition cannot change',
            'step_locked',
            fields=[f'steps[{index}].{field}' for field in changed],
        )


def _set_plan_status(plan, new_status, actor=None, reason=None, context=None):
    previous = plan.status
    plan.status = new_status
    plan.closed_at = None if new_status == TreatmentPlanStatusChoices.ACTIVE else timezone.now()
    bump_row_version(plan)
    plan.save(update_fields=['status', 'closed_at', 'row_version', 'updated_at'])
    audit.append(
        AuditEntityTypeChoices.TREATMENT_PLAN,
        plan.pk,
        previous_state=previous,
        new_state=new_status,
        actor=actor,
        reason=reason,
        patient=plan.patient,
        context=context or {},
    )
    log_domain_event(
        'treatment_plan_status_changed',
        entity_type='TreatmentPlan',
        entity_id=str(plan.pk),
        entity_ids={'patient_id': str(plan.patient_id)},
        from_status=previous,
        to_status=new_status,
    )


def is_plan_completed(steps: Iterable[TreatmentStep]) -> bool:
    """
    True when the plan has steps and every step that still counts is COMPLETED.

    Cancelled and deferred steps do not count; a plan made only of those is
    considered done. An empty plan is never completed.
    """
    steps = list(steps)
    if not steps:
        return False
    return all(
        step.status == TreatmentStepStatusChoices.COMPLETED
        for step in steps
        if step.status not in PLAN_NEUTRAL_STEP_STATUSES
    )


def complete_plan_if_done(plan, actor=None) -> bool:
    """Auto-complete an ACTIVE plan whose steps are all done. Caller holds the plan lock."""
    if plan.status != TreatmentPlanStatusChoices.ACTIVE:
        return False
    if not is_plan_completed(plan.steps.all()):
        return False
    _set_plan_status(
        plan,
        TreatmentPlanStatusChoices.COMPLETED,
        actor=actor,
        context={'trigger': 'all_steps_completed'},
    )
    return True


def transition_plan(plan_id, new_status: str, actor=None, reason: Optional[str] = None,
                    expected_version: Optional[int] = None) -> TreatmentPlan:
    """
    Manual plan lifecycle: complete, cancel or reactivate.

    Allowed: ACTIVE -> COMPLETED | CANCELLED, COMPLETED | CANCELLED -> ACTIVE.
    Reactivation fails with ConflictError while another plan is active.
    """
    with transaction.atomic():
        plan = get_for_update(TreatmentPlan, plan_id, 'Treatment plan')
        check_row_version(plan, expected_version, 'TreatmentPlan')

        if not plan.can_transition_to(new_status):
            raise ValidationError(
                f'Cannot move plan from {plan.status} to {new_status}',
                details={
                    'from_status': plan.status,
                    'to_status': new_status,
                    'allowed': sorted(TreatmentPlan.ALLOWED_TRANSITIONS.get(plan.status, ())),
                },
            )

        if new_status == TreatmentPlanStatusChoices.ACTIVE:
            Patient.objects.select_for_update().get(pk=plan.patient_id)
            other = (
                TreatmentPlan.objects
                .filter(patient_id=plan.patient_id, status=TreatmentPlanStatusChoices.ACTIVE)
                .exclude(pk=plan.pk)
                .values_list('id', flat=True)
                .first()
            )
            if other:
                raise _active_plan_conflict(plan.patient_id, other)

        try:
            with transaction.atomic():
                _set_plan_status(plan, new_status, actor=actor, reason=reason)
        except IntegrityError:
            raise _active_plan_conflict(plan.patient_id, None)

    return plan


def complete_plan(plan_id, actor=None, expected_version=None):
    return transition_plan(plan_id, TreatmentPlanStatusChoices.COMPLETED, actor=actor,
                           expected_version=expected_version)


def cancel_plan(plan_id, actor=None, reason=None, expected_version=None):
    return transition_plan(plan_id, TreatmentPlanStatusChoices.CANCELLED, actor=actor,
                           reason=reason, expected_version=expected_version)


def reactivate_plan(plan_id, actor=None, expected_version=None):
    return transition_plan(plan_id, TreatmentPlanStatusChoices.ACTIVE, actor=actor,
                           expected_version=expected_version)


# ============================================================================
# Steps
# ============================================================================

def complete_session(
    step_id,
    expected_session: int,
    session_notes: Optional[str] = None,
    actor=None,
    encounter_id=None,
) -> TreatmentStep:
    """
    Close the session in progress of a multi-session step.

    - current_session < total_sessions: advance by one, stay IN_PROGRESS
    - current_session == total_sessions: mark COMPLETED

    ``expected_session`` must equal the persisted current_session; a
    mismatch means someone else completed it first.

    Raises:
        NotFoundError: step missing
        ValidationError: not a multi-session step, notes too long
        ConflictError: plan not ACTIVE, step not IN_PROGRESS (including
            already COMPLETED) or stale session
        EncounterFinalizedError: encounter context is FINAL
    """
    if session_notes is not None and len(session_notes) > STEP_NOTES_MAX_LENGTH:
        raise ValidationError(
            'Session notes too long',
            details={'session_notes': f'Must be at most {STEP_NOTES_MAX_LENGTH} characters'},
        )

    with transaction.atomic():
        plan, step = _lock_step_in_encounter(step_id, encounter_id)

        if not step.requires_multiple_sessions:
            raise ValidationError(
                'Step does not use multiple sessions; use a status transition instead',
                details={'step_id': str(step.pk)},
            )

        if step.status != TreatmentStepStatusChoices.IN_PROGRESS:
            error = _step_conflict(step, f'Step is {step.status}, not IN_PROGRESS', 'not_in_progress')
            log_blocked_mutation('treatment_step_session_completed', 'TreatmentStep', step.pk, error)
            raise error

        _require_active_plan(plan)

        if step.current_session != expected_session:
            error = _step_conflict(
                step,
                f'Session {expected_session} is not the session in progress ({step.current_session})',
                'stale_session',
                expected_session=expected_session,
            )
            log_blocked_mutation('treatment_step_session_completed', 'TreatmentStep', step.pk, error)
            raise error

        total = step.total_sessions
        is_last_session = step.current_session >= total
        now = timezone.now()

        new_status = TreatmentStepStatusChoices.COMPLETED if is_last_session else step.status
        new_session = step.current_session if is_last_session else step.current_session + 1

        notes = step.notes
        if session_notes and session_notes.strip():
            block = f'--- Session {expected_session} of {total} ---\n{session_notes.strip()}'
            notes = f'{notes}\n\n{block}' if notes else block

        # Compare-and-set on the session number; the row lock above makes this
        # redundant on PostgreSQL but keeps lock-less backends honest.
        updated = TreatmentStep.objects.filter(
            pk=step.pk,
            status=TreatmentStepStatusChoices.IN_PROGRESS,
            current_session=expected_session,
        ).update(
            current_session=new_session,
            status=new_status,
            notes=notes,
            completed_at=now if is_last_session else None,
            row_version=F('row_version') + 1,
            updated_at=now,
        )
        if updated != 1:
            step.refresh_from_db()
            raise _step_conflict(
                step,
                'Session was completed by another request',
                'stale_session',
                expected_session=expected_session,
            )
        step.refresh_from_db()

        audit.append(
            AuditEntityTypeChoices.TREATMENT_STEP,
            step.pk,
            previous_state=TreatmentStepStatusChoices.IN_PROGRESS,
            new_state=new_status,
            actor=actor,
            reason=session_notes or None,
            patient=plan.patient,
            context={
                'event': 'session_completed',
                'previous_session': expected_session,
                'new_session': new_session,
                'total_sessions': total,
                'is_last_session': is_last_session,
                'new_status': new_status,
                'encounter_id': str(encounter_id) if encounter_id else None,
            },
        )

        if is_last_session:
            complete_plan_if_done(plan, actor)

    log_domain_event(
        'treatment_step_session_completed',
        entity_type='TreatmentStep',
        entity_id=str(step.pk),
        entity_ids={'plan_id': str(plan.pk), 'patient_id': str(plan.patient_id)},
        completed_session=expected_session,
        total_sessions=total,
        to_status=new_status,
    )
    return step


def normalize_step_status(value) -> str:
    candidate = str(value or '').strip().upper()
    if candidate not in TreatmentStepStatusChoices.values:
        raise ValidationError(
            f'Unknown step status "{value}"',
            details={'status': value, 'allowed': TreatmentStepStatusChoices.values},
        )
    return candidate


def transition_status(
    step_id,
    new_status: str,
    actor=None,
    reason: Optional[str] = None,
    encounter_id=None,
    expected_version: Optional[int] = None,
) -> TreatmentStep:
    """
    Direct status change of a step (scheduling, starting, cancelling, deferring).

    Multi-session steps cannot be moved to COMPLETED here; they finish
    through complete_session().

    Raises:
        NotFoundError, ConflictError (plan not active, stale version),
        ValidationError (disallowed transition), EncounterFinalizedError
    """
    new_status = normalize_step_status(new_status)

    with transaction.atomic():
        plan, step = _lock_step_in_encounter(step_id, encounter_id)
        _require_active_plan(plan)
        check_row_version(step, expected_version, 'TreatmentStep')

        if not step.can_transition_to(new_status):
            raise ValidationError(
                f'Cannot move step from {step.status} to {new_status}',
                details={
                    'from_status': step.status,
                    'to_status': new_status,
                    'allowed': sorted(TreatmentStep.ALLOWED_TRANSITIONS.get(step.status, ())),
                },
            )

        if new_status == TreatmentStepStatusChoices.COMPLETED and step.requires_multiple_sessions:
            raise ValidationError(
                'Multi-session steps are completed session by session',
                details={
                    'current_session': step.current_session,
                    'total_sessions': step.total_sessions,
                },
            )

        previous_status = step.status
        step.status = new_status
        if new_status == TreatmentStepStatusChoices.COMPLETED:
            step.completed_at = timezone.now()
        if step.requires_multiple_sessions and not step.current_session:
            step.current_session = 1
        bump_row_version(step)
        step.save(update_fields=['status', 'completed_at', 'current_session', 'row_version', 'updated_at'])

        audit.append(
            AuditEntityTypeChoices.TREATMENT_STEP,
            step.pk,
            previous_state=previous_status,
            new_state=new_status,
            actor=actor,
            reason=reason,
            patient=plan.patient,
            context={'encounter_id': str(encounter_id) if encounter_id else None},
        )

        if new_status in PLAN_NEUTRAL_STEP_STATUSES or new_status == TreatmentStepStatusChoices.COMPLETED:
            complete_plan_if_done(plan, actor)

    log_domain_event(
        'treatment_step_status_changed',
        entity_type='TreatmentStep',
        entity_id=str(step.pk),
        entity_ids={'plan_id': str(plan.pk), 'patient_id': str(plan.patient_id)},
        from_status=previous_status,
        to_status=new_status,
    )
    return step
