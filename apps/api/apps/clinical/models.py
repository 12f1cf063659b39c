"""
Clinical models: patient, procedure catalog, encounter, diagnosis,
treatment plan/steps, performed procedures and the clinical audit trail.

Status values are stored upper-case; they are the wire values too.
"""
import uuid
from django.db import models
from django.db.models import Q
from django.conf import settings
from django.core.exceptions import ValidationError
from django.utils import timezone


# ============================================================================
# Enums
# ============================================================================

class EncounterStatusChoices(models.TextChoices):
    """Encounter status. FINAL is terminal."""
    DRAFT = 'DRAFT', 'Draft'
    FINAL = 'FINAL', 'Final'


class DiagnosisStatusChoices(models.TextChoices):
    """Diagnosis status"""
    ACTIVE = 'ACTIVE', 'Active'
    UNDER_FOLLOW_UP = 'UNDER_FOLLOW_UP', 'Under follow-up'
    RESOLVED = 'RESOLVED', 'Resolved'
    DISCARDED = 'DISCARDED', 'Discarded'


# Legacy status names accepted at the API boundary
DIAGNOSIS_STATUS_ALIASES = {
    'RULED_OUT': DiagnosisStatusChoices.DISCARDED,
}

DIAGNOSIS_OPEN_STATUSES = frozenset({
    DiagnosisStatusChoices.ACTIVE,
    DiagnosisStatusChoices.UNDER_FOLLOW_UP,
})

DIAGNOSIS_CLOSED_STATUSES = frozenset({
    DiagnosisStatusChoices.RESOLVED,
    DiagnosisStatusChoices.DISCARDED,
})


class TreatmentPlanStatusChoices(models.TextChoices):
    """Treatment plan status"""
    ACTIVE = 'ACTIVE', 'Active'
    COMPLETED = 'COMPLETED', 'Completed'
    CANCELLED = 'CANCELLED', 'Cancelled'


class TreatmentStepStatusChoices(models.TextChoices):
    """Treatment step status. COMPLETED and CANCELLED are terminal."""
    PENDING = 'PENDING', 'Pending'
    SCHEDULED = 'SCHEDULED', 'Scheduled'
    IN_PROGRESS = 'IN_PROGRESS', 'In progress'
    COMPLETED = 'COMPLETED', 'Completed'
    CANCELLED = 'CANCELLED', 'Cancelled'
    DEFERRED = 'DEFERRED', 'Deferred'


class ToothSurfaceChoices(models.TextChoices):
    """Tooth surfaces and common combinations"""
    O = 'O', 'Occlusal'
    M = 'M', 'Mesial'
    D = 'D', 'Distal'
    V = 'V', 'Vestibular'
    L = 'L', 'Lingual/Palatal'
    MO = 'MO', 'Mesio-occlusal'
    DO = 'DO', 'Disto-occlusal'
    VO = 'VO', 'Vestibulo-occlusal'
    LO = 'LO', 'Linguo-occlusal'
    MOD = 'MOD', 'Mesio-occluso-distal'
    MV = 'MV', 'Mesio-vestibular'
    DL = 'DL', 'Disto-lingual'


class AuditEntityTypeChoices(models.TextChoices):
    """Entities recorded in the clinical audit trail"""
    ENCOUNTER = 'ENCOUNTER', 'Encounter'
    DIAGNOSIS = 'DIAGNOSIS', 'Diagnosis'
    TREATMENT_PLAN = 'TREATMENT_PLAN', 'Treatment Plan'
    TREATMENT_STEP = 'TREATMENT_STEP', 'Treatment Step'
    PROCEDURE = 'PROCEDURE', 'Procedure'


# ============================================================================
# Reference data
# ============================================================================

class Patient(models.Model):
    """
    Patient reference record.

    Demographics live in the surrounding registry; the clinical core only
    needs identity for ownership of diagnoses, plans and encounters.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    date_of_birth = models.DateField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patient'
        verbose_name = 'Patient'
        verbose_name_plural = 'Patients'
        indexes = [
            models.Index(fields=['last_name', 'first_name'], name='idx_patient_name'),
        ]

    def __str__(self):
        return f"{self.first_name} {self.last_name}"


class ProcedureCatalog(models.Model):
    """
    Catalog of billable dental procedures.

    - applies_to_tooth: steps/procedures may carry a tooth number
    - applies_to_surface: steps/procedures may carry a surface (implies applies_to_tooth)
    - default_price_cents: used when a procedure is recorded without a price
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)
    default_price_cents = models.PositiveIntegerField(blank=True, null=True)
    applies_to_tooth = models.BooleanField(default=False)
    applies_to_surface = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'procedure_catalog'
        verbose_name = 'Procedure Catalog Entry'
        verbose_name_plural = 'Procedure Catalog'
        ordering = ['code']
        indexes = [
            models.Index(fields=['is_active'], name='idx_proc_catalog_active'),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"

    def clean(self):
        if self.applies_to_surface and not self.applies_to_tooth:
            raise ValidationError({
                'applies_to_surface': 'A surface-level procedure must also apply to a tooth.'
            })

    def save(self, *args, **kwargs):
        self.clean()
        super().save(*args, **kwargs)


# ============================================================================
# Encounter
# ============================================================================

class Encounter(models.Model):
    """
    One clinical visit.

    Created DRAFT on the first clinical action for an appointment and moved
    to FINAL exactly once. A FINAL encounter freezes every diagnosis, step
    and procedure mutation scoped to it.

    Fields:
    - patient: FK -> patient
    - appointment_ref: external appointment id (unique, nullable)
    - status: DRAFT|FINAL
    - finished_at: set on finalize
    - performed_by: clinician who owns the visit
    - row_version: optimistic concurrency counter
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(
        'Patient',
        on_delete=models.CASCADE,
        related_name='encounters'
    )
    appointment_ref = models.CharField(
        max_length=64,
        unique=True,
        blank=True,
        null=True,
        help_text='Identifier of the appointment this encounter belongs to'
    )
    status = models.CharField(
        max_length=10,
        choices=EncounterStatusChoices.choices,
        default=EncounterStatusChoices.DRAFT
    )
    finished_at = models.DateTimeField(blank=True, null=True)
    performed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='performed_encounters'
    )

    # Concurrency control
    row_version = models.IntegerField(default=1)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'encounter'
        verbose_name = 'Encounter'
        verbose_name_plural = 'Encounters'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['patient'], name='idx_encounter_patient'),
            models.Index(fields=['status'], name='idx_encounter_status'),
        ]

    def __str__(self):
        return f"Encounter {self.status} - {self.patient_id} ({self.created_at:%Y-%m-%d})"

    @property
    def is_final(self):
        return self.status == EncounterStatusChoices.FINAL


# ============================================================================
# Diagnoses
# ============================================================================

class Diagnosis(models.Model):
    """
    A clinically identified condition tracked across encounters.

    Owned by the patient; ``encounter`` is the originating visit only.
    ``resolved_at`` is written once, on entry into RESOLVED or DISCARDED.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(
        'Patient',
        on_delete=models.CASCADE,
        related_name='diagnoses'
    )
    encounter = models.ForeignKey(
        'Encounter',
        on_delete=models.PROTECT,
        related_name='diagnoses',
        help_text='Encounter where the diagnosis was first recorded'
    )
    label = models.CharField(max_length=200)
    code = models.CharField(max_length=50, blank=True, null=True)
    catalog_ref = models.CharField(max_length=64, blank=True, null=True)
    status = models.CharField(
        max_length=20,
        choices=DiagnosisStatusChoices.choices,
        default=DiagnosisStatusChoices.ACTIVE
    )
    noted_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(blank=True, null=True)
    notes = models.TextField(blank=True, null=True)

    row_version = models.IntegerField(default=1)

    created_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='created_diagnoses'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'diagnosis'
        verbose_name = 'Diagnosis'
        verbose_name_plural = 'Diagnoses'
        ordering = ['-noted_at']
        indexes = [
            models.Index(fields=['patient', 'status'], name='idx_diagnosis_patient_status'),
            models.Index(fields=['encounter'], name='idx_diagnosis_encounter'),
        ]

    def __str__(self):
        return f"{self.label} ({self.status})"

    @property
    def is_closed(self):
        return self.status in DIAGNOSIS_CLOSED_STATUSES


class DiagnosisStatusHistory(models.Model):
    """
    Append-only status history of a diagnosis. One row per changeStatus call.
    """
    diagnosis = models.ForeignKey(
        'Diagnosis',
        on_delete=models.PROTECT,
        related_name='status_history'
    )
    previous_status = models.CharField(
        max_length=20,
        choices=DiagnosisStatusChoices.choices,
        blank=True,
        null=True
    )
    new_status = models.CharField(
        max_length=20,
        choices=DiagnosisStatusChoices.choices
    )
    reason = models.TextField(blank=True, null=True)
    changed_at = models.DateTimeField(default=timezone.now)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='diagnosis_status_changes'
    )
    encounter = models.ForeignKey(
        'Encounter',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='diagnosis_status_changes',
        help_text='Encounter in which the change was made, if any'
    )

    class Meta:
        db_table = 'diagnosis_status_history'
        verbose_name = 'Diagnosis Status History'
        verbose_name_plural = 'Diagnosis Status History'
        ordering = ['changed_at', 'id']
        indexes = [
            models.Index(fields=['diagnosis', 'changed_at'], name='idx_dx_history_diagnosis'),
        ]

    def __str__(self):
        return f"{self.previous_status or '-'} -> {self.new_status}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Diagnosis status history is append-only.')
        super().save(*args, **kwargs)


# ============================================================================
# Treatment plans
# ============================================================================

class TreatmentPlan(models.Model):
    """
    Ordered set of planned treatment steps for a patient.

    BUSINESS RULE: at most one ACTIVE plan per patient, enforced by a
    partial unique constraint.
    """
    ALLOWED_TRANSITIONS = {
        TreatmentPlanStatusChoices.ACTIVE: {
            TreatmentPlanStatusChoices.COMPLETED,
            TreatmentPlanStatusChoices.CANCELLED,
        },
        TreatmentPlanStatusChoices.COMPLETED: {TreatmentPlanStatusChoices.ACTIVE},
        TreatmentPlanStatusChoices.CANCELLED: {TreatmentPlanStatusChoices.ACTIVE},
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(
        'Patient',
        on_delete=models.CASCADE,
        related_name='treatment_plans'
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, null=True)
    status = models.CharField(
        max_length=20,
        choices=TreatmentPlanStatusChoices.choices,
        default=TreatmentPlanStatusChoices.ACTIVE
    )
    closed_at = models.DateTimeField(blank=True, null=True)

    row_version = models.IntegerField(default=1)

    created_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='created_treatment_plans'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'treatment_plan'
        verbose_name = 'Treatment Plan'
        verbose_name_plural = 'Treatment Plans'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['patient'],
                condition=Q(status='ACTIVE'),
                name='uniq_active_treatment_plan_per_patient',
            ),
        ]
        indexes = [
            models.Index(fields=['patient', 'status'], name='idx_plan_patient_status'),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"

    def can_transition_to(self, new_status):
        return new_status in self.ALLOWED_TRANSITIONS.get(self.status, set())


class TreatmentStep(models.Model):
    """
    One planned unit of treatment, possibly spanning several sessions.

    Invariants:
    - order is unique and dense (1..n) within the plan
    - requires_multiple_sessions => total_sessions >= 2 and
      1 <= current_session <= total_sessions
    - tooth_number / tooth_surface only when the catalog entry allows them
    """
    ALLOWED_TRANSITIONS = {
        TreatmentStepStatusChoices.PENDING: {
            TreatmentStepStatusChoices.SCHEDULED,
            TreatmentStepStatusChoices.IN_PROGRESS,
            TreatmentStepStatusChoices.CANCELLED,
            TreatmentStepStatusChoices.DEFERRED,
        },
        TreatmentStepStatusChoices.SCHEDULED: {
            TreatmentStepStatusChoices.IN_PROGRESS,
            TreatmentStepStatusChoices.CANCELLED,
            TreatmentStepStatusChoices.DEFERRED,
        },
        TreatmentStepStatusChoices.IN_PROGRESS: {
            TreatmentStepStatusChoices.COMPLETED,
            TreatmentStepStatusChoices.CANCELLED,
            TreatmentStepStatusChoices.DEFERRED,
        },
        TreatmentStepStatusChoices.DEFERRED: {
            TreatmentStepStatusChoices.PENDING,
            TreatmentStepStatusChoices.SCHEDULED,
            TreatmentStepStatusChoices.IN_PROGRESS,
            TreatmentStepStatusChoices.CANCELLED,
        },
        TreatmentStepStatusChoices.COMPLETED: set(),
        TreatmentStepStatusChoices.CANCELLED: set(),
    }

    # Steps that may still be removed from a plan on update
    REMOVABLE_STATUSES = frozenset({
        TreatmentStepStatusChoices.PENDING,
        TreatmentStepStatusChoices.SCHEDULED,
    })

    # Steps a procedure may be linked to
    LINKABLE_STATUSES = frozenset({
        TreatmentStepStatusChoices.PENDING,
        TreatmentStepStatusChoices.SCHEDULED,
        TreatmentStepStatusChoices.IN_PROGRESS,
    })

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    plan = models.ForeignKey(
        'TreatmentPlan',
        on_delete=models.CASCADE,
        related_name='steps'
    )
    order = models.PositiveIntegerField()
    procedure_catalog = models.ForeignKey(
        'ProcedureCatalog',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='treatment_steps'
    )
    service_type = models.CharField(max_length=200, blank=True, null=True)
    tooth_number = models.PositiveSmallIntegerField(blank=True, null=True)
    tooth_surface = models.CharField(
        max_length=3,
        choices=ToothSurfaceChoices.choices,
        blank=True,
        null=True
    )
    status = models.CharField(
        max_length=20,
        choices=TreatmentStepStatusChoices.choices,
        default=TreatmentStepStatusChoices.PENDING
    )
    priority = models.PositiveSmallIntegerField(blank=True, null=True)

    # Multi-session tracking
    requires_multiple_sessions = models.BooleanField(default=False)
    total_sessions = models.PositiveSmallIntegerField(blank=True, null=True)
    current_session = models.PositiveSmallIntegerField(blank=True, null=True)

    estimated_duration_min = models.PositiveIntegerField(blank=True, null=True)
    estimated_cost_cents = models.PositiveIntegerField(blank=True, null=True)
    notes = models.TextField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    row_version = models.IntegerField(default=1)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'treatment_step'
        verbose_name = 'Treatment Step'
        verbose_name_plural = 'Treatment Steps'
        ordering = ['plan', 'order']
        constraints = [
            models.UniqueConstraint(
                fields=['plan', 'order'],
                name='uniq_treatment_step_order',
            ),
        ]
        indexes = [
            models.Index(fields=['status'], name='idx_treatment_step_status'),
        ]

    def __str__(self):
        return f"#{self.order} {self.display_name} ({self.status})"

    @property
    def display_name(self):
        if self.procedure_catalog_id:
            return self.procedure_catalog.name
        return self.service_type or ''

    @property
    def is_terminal(self):
        return not self.ALLOWED_TRANSITIONS.get(self.status)

    def can_transition_to(self, new_status):
        return new_status in self.ALLOWED_TRANSITIONS.get(self.status, set())


# ============================================================================
# Performed procedures
# ============================================================================

class Procedure(models.Model):
    """
    A performed procedure recorded during an encounter.

    Linkage (treatment_step, diagnosis) is fixed at creation. The row is
    immutable once the owning encounter is FINAL.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    encounter = models.ForeignKey(
        'Encounter',
        on_delete=models.CASCADE,
        related_name='procedures'
    )
    treatment_step = models.ForeignKey(
        'TreatmentStep',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='procedures'
    )
    diagnosis = models.ForeignKey(
        'Diagnosis',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='procedures'
    )
    procedure_catalog = models.ForeignKey(
        'ProcedureCatalog',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='procedures'
    )
    service_type = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField(default=1)
    tooth_number = models.PositiveSmallIntegerField(blank=True, null=True)
    tooth_surface = models.CharField(
        max_length=3,
        choices=ToothSurfaceChoices.choices,
        blank=True,
        null=True
    )
    unit_price_cents = models.PositiveIntegerField(blank=True, null=True)
    total_cents = models.PositiveIntegerField(blank=True, null=True)
    result_notes = models.TextField(blank=True, null=True)

    created_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='recorded_procedures'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'procedure'
        verbose_name = 'Procedure'
        verbose_name_plural = 'Procedures'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['encounter'], name='idx_procedure_encounter'),
            models.Index(fields=['treatment_step'], name='idx_procedure_step'),
            models.Index(fields=['diagnosis'], name='idx_procedure_diagnosis'),
        ]

    def __str__(self):
        return f"{self.service_type} x{self.quantity}"


# ============================================================================
# Audit trail
# ============================================================================

class ClinicalAuditLog(models.Model):
    """
    Append-only trail of clinical status transitions.

    Who (actor_user), when (created_at), why (reason), from/to
    (previous_state/new_state) plus free-form ``context``. Rows are never
    updated or deleted.
    """
    created_at = models.DateTimeField(default=timezone.now)
    actor_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='clinical_audit_logs',
        help_text='User who performed the action (null for system actions)'
    )
    entity_type = models.CharField(
        max_length=20,
        choices=AuditEntityTypeChoices.choices
    )
    entity_id = models.UUIDField()
    patient = models.ForeignKey(
        'Patient',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='audit_logs'
    )
    previous_state = models.CharField(max_length=30, blank=True, null=True)
    new_state = models.CharField(max_length=30)
    reason = models.TextField(blank=True, null=True)
    context = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'clinical_audit_log'
        verbose_name = 'Clinical Audit Log'
        verbose_name_plural = 'Clinical Audit Logs'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['entity_type', 'entity_id'], name='idx_audit_entity'),
            models.Index(fields=['patient'], name='idx_audit_patient'),
            models.Index(fields=['created_at'], name='idx_audit_created_at'),
        ]

    def __str__(self):
        actor = self.actor_user.email if self.actor_user else 'system'
        return f"{self.entity_type}[{str(self.entity_id)[:8]}] {self.previous_state or '-'} -> {self.new_state} by {actor}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Clinical audit log entries are immutable.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Clinical audit log entries cannot be deleted.')
