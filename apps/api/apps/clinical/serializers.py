"""
Clinical serializers.

Output serializers render model state (including ``row_version`` so
clients can send it back as ``expected_version``). Input serializers only
check shape and types; business rules live in the service modules and
surface as domain errors.
"""
from rest_framework import serializers

from apps.clinical.models import (
    ClinicalAuditLog,
    Diagnosis,
    DiagnosisStatusHistory,
    Encounter,
    Patient,
    Procedure,
    ProcedureCatalog,
    TreatmentPlan,
    TreatmentStep,
    ToothSurfaceChoices,
)


# ============================================================================
# Reference data
# ============================================================================

class PatientSerializer(serializers.ModelSerializer):
    full_name = serializers.SerializerMethodField()

    class Meta:
        model = Patient
        fields = ['id', 'first_name', 'last_name', 'full_name', 'date_of_birth', 'created_at']
        read_only_fields = fields

    def get_full_name(self, obj):
        return f"{obj.first_name} {obj.last_name}"


class ProcedureCatalogSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProcedureCatalog
        fields = [
            'id',
            'code',
            'name',
            'default_price_cents',
            'applies_to_tooth',
            'applies_to_surface',
            'is_active',
        ]
        read_only_fields = fields


# ============================================================================
# Encounters
# ============================================================================

class EncounterSerializer(serializers.ModelSerializer):
    """
    Encounter state with a procedure count.

    ``procedures_count`` is annotated by the viewset queryset when
    available and counted otherwise.
    """
    procedures_count = serializers.SerializerMethodField()

    class Meta:
        model = Encounter
        fields = [
            'id',
            'patient',
            'appointment_ref',
            'status',
            'finished_at',
            'performed_by',
            'procedures_count',
            'row_version',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_procedures_count(self, obj):
        annotated = getattr(obj, 'procedures_total', None)
        if annotated is not None:
            return annotated
        return obj.procedures.count()


class EnsureEncounterSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    appointment_ref = serializers.CharField(max_length=64, required=False, allow_null=True, allow_blank=True)


class FinalizeEncounterSerializer(serializers.Serializer):
    finished_at = serializers.DateTimeField(required=False, allow_null=True)
    expected_version = serializers.IntegerField(required=False, allow_null=True, min_value=1)


# ============================================================================
# Diagnoses
# ============================================================================

class DiagnosisSerializer(serializers.ModelSerializer):
    class Meta:
        model = Diagnosis
        fields = [
            'id',
            'patient',
            'encounter',
            'label',
            'code',
            'catalog_ref',
            'status',
            'noted_at',
            'resolved_at',
            'notes',
            'row_version',
            'created_by_user',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class DiagnosisStatusHistorySerializer(serializers.ModelSerializer):
    changed_by_email = serializers.SerializerMethodField()

    class Meta:
        model = DiagnosisStatusHistory
        fields = [
            'id',
            'previous_status',
            'new_status',
            'reason',
            'changed_at',
            'changed_by',
            'changed_by_email',
            'encounter',
        ]
        read_only_fields = fields

    def get_changed_by_email(self, obj):
        return obj.changed_by.email if obj.changed_by else None


class DiagnosisCreateSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    encounter_id = serializers.UUIDField()
    label = serializers.CharField()
    code = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    catalog_ref = serializers.CharField(max_length=64, required=False, allow_null=True, allow_blank=True)
    notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class DiagnosisChangeStatusSerializer(serializers.Serializer):
    """Status is validated (and aliases mapped) by the service."""
    status = serializers.CharField()
    reason = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    encounter_id = serializers.UUIDField(required=False, allow_null=True)
    expected_version = serializers.IntegerField(required=False, allow_null=True, min_value=1)


class DiagnosisDeleteSerializer(serializers.Serializer):
    encounter_id = serializers.UUIDField(required=False, allow_null=True)


# ============================================================================
# Treatment plans
# ============================================================================

class TreatmentStepSerializer(serializers.ModelSerializer):
    display_name = serializers.CharField(read_only=True)

    class Meta:
        model = TreatmentStep
        fields = [
            'id',
            'plan',
            'order',
            'procedure_catalog',
            'service_type',
            'display_name',
            'tooth_number',
            'tooth_surface',
            'status',
            'priority',
            'requires_multiple_sessions',
            'total_sessions',
            'current_session',
            'estimated_duration_min',
            'estimated_cost_cents',
            'notes',
            'completed_at',
            'row_version',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class TreatmentPlanSerializer(serializers.ModelSerializer):
    steps = serializers.SerializerMethodField()

    class Meta:
        model = TreatmentPlan
        fields = [
            'id',
            'patient',
            'title',
            'description',
            'status',
            'closed_at',
            'steps',
            'row_version',
            'created_by_user',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_steps(self, obj):
        steps = obj.steps.select_related('procedure_catalog').order_by('order')
        return TreatmentStepSerializer(steps, many=True).data


class TreatmentStepInputSerializer(serializers.Serializer):
    """
    One step in a create/update payload.

    ``id`` is only meaningful on update, where it identifies the existing
    step being kept.
    """
    id = serializers.UUIDField(required=False, allow_null=True)
    procedure_catalog = serializers.UUIDField(required=False, allow_null=True)
    service_type = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    tooth_number = serializers.IntegerField(required=False, allow_null=True)
    tooth_surface = serializers.ChoiceField(choices=ToothSurfaceChoices.choices, required=False, allow_null=True)
    priority = serializers.IntegerField(required=False, allow_null=True)
    requires_multiple_sessions = serializers.BooleanField(required=False, default=False)
    total_sessions = serializers.IntegerField(required=False, allow_null=True)
    estimated_duration_min = serializers.IntegerField(required=False, allow_null=True)
    estimated_cost_cents = serializers.IntegerField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class TreatmentPlanCreateSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    title = serializers.CharField()
    description = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    steps = TreatmentStepInputSerializer(many=True, required=False)


class TreatmentPlanUpdateSerializer(serializers.Serializer):
    title = serializers.CharField(required=False)
    description = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    steps = TreatmentStepInputSerializer(many=True, required=False)
    expected_version = serializers.IntegerField(required=False, allow_null=True, min_value=1)


class TreatmentPlanTransitionSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    expected_version = serializers.IntegerField(required=False, allow_null=True, min_value=1)


class CompleteSessionSerializer(serializers.Serializer):
    expected_session = serializers.IntegerField(min_value=1)
    session_notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    encounter_id = serializers.UUIDField(required=False, allow_null=True)


class StepTransitionSerializer(serializers.Serializer):
    """Status is validated by the service."""
    status = serializers.CharField()
    reason = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    encounter_id = serializers.UUIDField(required=False, allow_null=True)
    expected_version = serializers.IntegerField(required=False, allow_null=True, min_value=1)


# ============================================================================
# Procedures
# ============================================================================

class ProcedureSerializer(serializers.ModelSerializer):
    class Meta:
        model = Procedure
        fields = [
            'id',
            'encounter',
            'treatment_step',
            'diagnosis',
            'procedure_catalog',
            'service_type',
            'quantity',
            'tooth_number',
            'tooth_surface',
            'unit_price_cents',
            'total_cents',
            'result_notes',
            'created_by_user',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class ProcedureCreateSerializer(serializers.Serializer):
    encounter_id = serializers.UUIDField()
    procedure_catalog = serializers.UUIDField(required=False, allow_null=True)
    service_type = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    quantity = serializers.IntegerField(required=False, default=1)
    tooth_number = serializers.IntegerField(required=False, allow_null=True)
    tooth_surface = serializers.ChoiceField(choices=ToothSurfaceChoices.choices, required=False, allow_null=True)
    unit_price_cents = serializers.IntegerField(required=False, allow_null=True)
    result_notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    treatment_step_id = serializers.UUIDField(required=False, allow_null=True)
    diagnosis_id = serializers.UUIDField(required=False, allow_null=True)


class ProcedureUpdateSerializer(serializers.Serializer):
    """PATCH payload. Only keys present in the request are applied."""
    quantity = serializers.IntegerField(required=False)
    unit_price_cents = serializers.IntegerField(required=False, allow_null=True)
    result_notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    tooth_number = serializers.IntegerField(required=False, allow_null=True)
    tooth_surface = serializers.ChoiceField(choices=ToothSurfaceChoices.choices, required=False, allow_null=True)


# ============================================================================
# Audit
# ============================================================================

class ClinicalAuditLogSerializer(serializers.ModelSerializer):
    actor_email = serializers.SerializerMethodField()

    class Meta:
        model = ClinicalAuditLog
        fields = [
            'id',
            'created_at',
            'actor_user',
            'actor_email',
            'entity_type',
            'entity_id',
            'patient',
            'previous_state',
            'new_state',
            'reason',
            'context',
        ]
        read_only_fields = fields

    def get_actor_email(self, obj):
        return obj.actor_user.email if obj.actor_user else None


class AuditQuerySerializer(serializers.Serializer):
    entity_type = serializers.CharField()
    entity_id = serializers.UUIDField()
