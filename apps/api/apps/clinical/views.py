"""
Clinical core API views.

Every response uses the {ok, data} / {ok, error} envelope. Views parse
and type-check input, call the service layer and serialize the result;
they hold no business rules.
"""
import logging

from django.db.models import Count
from rest_framework import status, viewsets
from rest_framework.decorators import action

from apps.authz.models import RoleChoices
from apps.clinical import services
from apps.clinical import services_audit
from apps.clinical import services_diagnoses
from apps.clinical import services_procedures
from apps.clinical import services_treatment
from apps.clinical.models import (
    ClinicalAuditLog,
    Diagnosis,
    Encounter,
    Patient,
    Procedure,
    ProcedureCatalog,
    TreatmentPlan,
    TreatmentStep,
)
from apps.clinical.permissions import ClinicalCorePermission
from apps.clinical.serializers import (
    AuditQuerySerializer,
    ClinicalAuditLogSerializer,
    CompleteSessionSerializer,
    DiagnosisChangeStatusSerializer,
    DiagnosisCreateSerializer,
    DiagnosisDeleteSerializer,
    DiagnosisSerializer,
    DiagnosisStatusHistorySerializer,
    EncounterSerializer,
    EnsureEncounterSerializer,
    FinalizeEncounterSerializer,
    PatientSerializer,
    ProcedureCatalogSerializer,
    ProcedureCreateSerializer,
    ProcedureSerializer,
    ProcedureUpdateSerializer,
    StepTransitionSerializer,
    TreatmentPlanCreateSerializer,
    TreatmentPlanSerializer,
    TreatmentPlanTransitionSerializer,
    TreatmentPlanUpdateSerializer,
    TreatmentStepSerializer,
)
from apps.core.errors import AuthorizationError, NotFoundError
from apps.core.responses import ok

logger = logging.getLogger(__name__)


def _validated(serializer_class, data):
    serializer = serializer_class(data=data)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


class ClinicalViewSet(viewsets.GenericViewSet):
    """
    Base viewset: role permission, envelope responses, domain 404s.

    Subclasses declare ``queryset``, ``serializer_class``, ``entity_label``
    and the query parameters accepted as list filters.
    """
    permission_classes = [ClinicalCorePermission]
    pagination_class = None
    entity_label = 'Object'
    filter_params = ()

    def filter_queryset(self, queryset):
        for param in self.filter_params:
            value = self.request.query_params.get(param)
            if value:
                queryset = queryset.filter(**{param: value})
        return queryset

    def get_object(self):
        try:
            return self.get_queryset().get(pk=self.kwargs['pk'])
        except (self.get_queryset().model.DoesNotExist,) + services.MALFORMED_ID_ERRORS:
            raise NotFoundError(f'{self.entity_label} not found', details={'id': str(self.kwargs['pk'])})

    def list(self, request):
        queryset = self.filter_queryset(self.get_queryset())
        return ok(self.get_serializer(queryset, many=True).data)

    def retrieve(self, request, pk=None):
        return ok(self.get_serializer(self.get_object()).data)


# ============================================================================
# Reference data (read-only)
# ============================================================================

class PatientViewSet(ClinicalViewSet):
    """
    GET /api/v1/clinical/patients/
    GET /api/v1/clinical/patients/{id}/
    """
    queryset = Patient.objects.order_by('last_name', 'first_name')
    serializer_class = PatientSerializer
    entity_label = 'Patient'


class ProcedureCatalogViewSet(ClinicalViewSet):
    """
    GET /api/v1/clinical/procedure-catalog/?is_active=true|false

    Only active entries are listed unless ``is_active=false`` is passed.
    """
    queryset = ProcedureCatalog.objects.all()
    serializer_class = ProcedureCatalogSerializer
    entity_label = 'Procedure catalog entry'

    def filter_queryset(self, queryset):
        is_active = self.request.query_params.get('is_active', 'true').lower()
        return queryset.filter(is_active=is_active != 'false')


# ============================================================================
# Encounters
# ============================================================================

class EncounterViewSet(ClinicalViewSet):
    """
    Encounter lifecycle.

    Endpoints:
    - GET  /api/v1/clinical/encounters/?patient_id=&status=
    - GET  /api/v1/clinical/encounters/{id}/
    - POST /api/v1/clinical/encounters/            ensure (201 created / 200 existing)
    - POST /api/v1/clinical/encounters/{id}/finalize/
    """
    serializer_class = EncounterSerializer
    entity_label = 'Encounter'
    filter_params = ('patient_id', 'status')

    def get_queryset(self):
        return Encounter.objects.annotate(procedures_total=Count('procedures'))

    def create(self, request):
        data = _validated(EnsureEncounterSerializer, request.data)
        encounter, created = services.ensure_encounter(
            data['patient_id'],
            appointment_ref=data.get('appointment_ref'),
            actor=request.user,
        )
        return ok(
            EncounterSerializer(encounter).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )

    @action(detail=True, methods=['post'], url_path='finalize')
    def finalize(self, request, pk=None):
        """
        POST /api/v1/clinical/encounters/{id}/finalize/

        Body: {"finished_at": "<iso>"?, "expected_version": <int>?}
        409 when already FINAL.
        """
        data = _validated(FinalizeEncounterSerializer, request.data)
        encounter = services.finalize(
            pk,
            finished_at=data.get('finished_at'),
            actor=request.user,
            expected_version=data.get('expected_version'),
        )
        return ok(EncounterSerializer(encounter).data)


# ============================================================================
# Diagnoses
# ============================================================================

class DiagnosisViewSet(ClinicalViewSet):
    """
    Diagnosis registry.

    Endpoints:
    - GET    /api/v1/clinical/diagnoses/?patient_id=&status=&encounter_id=
    - GET    /api/v1/clinical/diagnoses/{id}/
    - POST   /api/v1/clinical/diagnoses/
    - DELETE /api/v1/clinical/diagnoses/{id}/?encounter_id=   (admin only)
    - POST   /api/v1/clinical/diagnoses/{id}/change-status/
    - GET    /api/v1/clinical/diagnoses/{id}/history/
    """
    queryset = Diagnosis.objects.all()
    serializer_class = DiagnosisSerializer
    entity_label = 'Diagnosis'
    filter_params = ('patient_id', 'status', 'encounter_id')

    def create(self, request):
        data = _validated(DiagnosisCreateSerializer, request.data)
        diagnosis = services_diagnoses.create_diagnosis(
            data['patient_id'],
            data['encounter_id'],
            data['label'],
            code=data.get('code'),
            catalog_ref=data.get('catalog_ref'),
            notes=data.get('notes'),
            actor=request.user,
        )
        return ok(DiagnosisSerializer(diagnosis).data, status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        if not request.user.has_any_role({RoleChoices.ADMIN}):
            raise AuthorizationError(
                'Only an administrator can delete diagnoses',
                details={'required_role': RoleChoices.ADMIN.value},
            )
        data = _validated(DiagnosisDeleteSerializer, request.query_params)
        services_diagnoses.delete_diagnosis(pk, actor=request.user, encounter_id=data.get('encounter_id'))
        return ok({'id': pk, 'deleted': True})

    @action(detail=True, methods=['post'], url_path='change-status')
    def change_status(self, request, pk=None):
        """
        POST /api/v1/clinical/diagnoses/{id}/change-status/

        Body:
        {
            "status": "UNDER_FOLLOW_UP",
            "reason": "required for DISCARDED",
            "encounter_id": "<uuid>"?,
            "notes": "..."?,
            "expected_version": <int>?
        }
        """
        data = _validated(DiagnosisChangeStatusSerializer, request.data)
        diagnosis = services_diagnoses.change_status(
            pk,
            data['status'],
            reason=data.get('reason'),
            actor=request.user,
            encounter_id=data.get('encounter_id'),
            notes=data.get('notes'),
            expected_version=data.get('expected_version'),
        )
        return ok(DiagnosisSerializer(diagnosis).data)

    @action(detail=True, methods=['get'], url_path='history')
    def history(self, request, pk=None):
        history = services_diagnoses.get_history(pk)
        return ok({
            'diagnosis': DiagnosisSerializer(history['diagnosis']).data,
            'status_history': DiagnosisStatusHistorySerializer(history['status_history'], many=True).data,
            'linked_encounters': EncounterSerializer(history['linked_encounters'], many=True).data,
            'linked_procedures': ProcedureSerializer(history['linked_procedures'], many=True).data,
        })


# ============================================================================
# Treatment plans and steps
# ============================================================================

class TreatmentPlanViewSet(ClinicalViewSet):
    """
    Treatment plans.

    Endpoints:
    - GET  /api/v1/clinical/treatment-plans/?patient_id=&status=
    - GET  /api/v1/clinical/treatment-plans/{id}/
    - POST /api/v1/clinical/treatment-plans/
    - PUT  /api/v1/clinical/treatment-plans/{id}/      (steps list replaces the current one)
    - POST /api/v1/clinical/treatment-plans/{id}/complete/
    - POST /api/v1/clinical/treatment-plans/{id}/cancel/
    - POST /api/v1/clinical/treatment-plans/{id}/reactivate/
    """
    queryset = TreatmentPlan.objects.all()
    serializer_class = TreatmentPlanSerializer
    entity_label = 'Treatment plan'
    filter_params = ('patient_id', 'status')

    def create(self, request):
        data = _validated(TreatmentPlanCreateSerializer, request.data)
        plan = services_treatment.create_plan(
            data['patient_id'],
            data['title'],
            description=data.get('description'),
            steps=data.get('steps', []),
            actor=request.user,
        )
        return ok(TreatmentPlanSerializer(plan).data, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None):
        data = _validated(TreatmentPlanUpdateSerializer, request.data)
        plan = services_treatment.update_plan(
            pk,
            title=data.get('title'),
            description=data.get('description'),
            steps=data.get('steps'),
            actor=request.user,
            expected_version=data.get('expected_version'),
        )
        return ok(TreatmentPlanSerializer(plan).data)

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk)

    @action(detail=True, methods=['post'], url_path='complete')
    def complete(self, request, pk=None):
        data = _validated(TreatmentPlanTransitionSerializer, request.data)
        plan = services_treatment.complete_plan(
            pk, actor=request.user, expected_version=data.get('expected_version'),
        )
        return ok(TreatmentPlanSerializer(plan).data)

    @action(detail=True, methods=['post'], url_path='cancel')
    def cancel(self, request, pk=None):
        data = _validated(TreatmentPlanTransitionSerializer, request.data)
        plan = services_treatment.cancel_plan(
            pk,
            actor=request.user,
            reason=data.get('reason'),
            expected_version=data.get('expected_version'),
        )
        return ok(TreatmentPlanSerializer(plan).data)

    @action(detail=True, methods=['post'], url_path='reactivate')
    def reactivate(self, request, pk=None):
        data = _validated(TreatmentPlanTransitionSerializer, request.data)
        plan = services_treatment.reactivate_plan(
            pk, actor=request.user, expected_version=data.get('expected_version'),
        )
        return ok(TreatmentPlanSerializer(plan).data)


class TreatmentStepViewSet(ClinicalViewSet):
    """
    Treatment steps. Steps are created and removed through their plan.

    Endpoints:
    - GET  /api/v1/clinical/treatment-steps/?plan_id=&status=
    - GET  /api/v1/clinical/treatment-steps/{id}/
    - POST /api/v1/clinical/treatment-steps/{id}/complete-session/
    - POST /api/v1/clinical/treatment-steps/{id}/transition/
    """
    queryset = TreatmentStep.objects.select_related('procedure_catalog')
    serializer_class = TreatmentStepSerializer
    entity_label = 'Treatment step'
    filter_params = ('plan_id', 'status')

    @action(detail=True, methods=['post'], url_path='complete-session')
    def complete_session(self, request, pk=None):
        """
        POST /api/v1/clinical/treatment-steps/{id}/complete-session/

        Body: {"expected_session": 2, "session_notes": "..."?, "encounter_id": "<uuid>"?}
        409 when the session was already completed by someone else.
        """
        data = _validated(CompleteSessionSerializer, request.data)
        step = services_treatment.complete_session(
            pk,
            data['expected_session'],
            session_notes=data.get('session_notes'),
            actor=request.user,
            encounter_id=data.get('encounter_id'),
        )
        return ok(TreatmentStepSerializer(step).data)

    @action(detail=True, methods=['post'], url_path='transition')
    def transition(self, request, pk=None):
        data = _validated(StepTransitionSerializer, request.data)
        step = services_treatment.transition_status(
            pk,
            data['status'],
            actor=request.user,
            reason=data.get('reason'),
            encounter_id=data.get('encounter_id'),
            expected_version=data.get('expected_version'),
        )
        return ok(TreatmentStepSerializer(step).data)


# ============================================================================
# Procedures
# ============================================================================

class ProcedureViewSet(ClinicalViewSet):
    """
    Performed procedures.

    Endpoints:
    - GET    /api/v1/clinical/procedures/?encounter_id=&treatment_step_id=&diagnosis_id=
    - GET    /api/v1/clinical/procedures/{id}/
    - POST   /api/v1/clinical/procedures/
    - PATCH  /api/v1/clinical/procedures/{id}/
    - DELETE /api/v1/clinical/procedures/{id}/
    """
    queryset = Procedure.objects.all()
    serializer_class = ProcedureSerializer
    entity_label = 'Procedure'
    filter_params = ('encounter_id', 'treatment_step_id', 'diagnosis_id')

    def create(self, request):
        data = _validated(ProcedureCreateSerializer, request.data)
        encounter_id = data.pop('encounter_id')
        procedure = services_procedures.record_procedure(encounter_id, actor=request.user, **data)
        return ok(ProcedureSerializer(procedure).data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, pk=None):
        serializer = ProcedureUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        # Non-editable keys go through untouched so the service can reject them by name
        rejected = {key: request.data[key] for key in request.data if key not in serializer.fields}
        changes = {**rejected, **serializer.validated_data}
        procedure = services_procedures.update_procedure(pk, changes, actor=request.user)
        return ok(ProcedureSerializer(procedure).data)

    def destroy(self, request, pk=None):
        services_procedures.delete_procedure(pk, actor=request.user)
        return ok({'id': pk, 'deleted': True})


# ============================================================================
# Audit trail
# ============================================================================

class ClinicalAuditViewSet(ClinicalViewSet):
    """
    GET /api/v1/clinical/audit/?entity_type=DIAGNOSIS&entity_id=<uuid>

    Entries for one entity, oldest first.
    """
    queryset = ClinicalAuditLog.objects.select_related('actor_user')
    serializer_class = ClinicalAuditLogSerializer
    entity_label = 'Audit entry'

    def list(self, request):
        data = _validated(AuditQuerySerializer, request.query_params)
        entries = services_audit.query(data['entity_type'].upper(), data['entity_id'])
        return ok(ClinicalAuditLogSerializer(entries, many=True).data)
