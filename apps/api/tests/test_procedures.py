"""
Tests for recording procedures and their linkage side effects.
"""
import pytest

from apps.clinical import services
from apps.clinical import services_diagnoses
from apps.clinical import services_procedures
from apps.clinical import services_treatment
from apps.clinical.models import (
    ClinicalAuditLog,
    DiagnosisStatusChoices,
    Procedure,
    TreatmentPlanStatusChoices,
    TreatmentStepStatusChoices,
)
from apps.core.errors import EncounterFinalizedError, NotFoundError, ValidationError


@pytest.mark.django_db
class TestRecordProcedure:

    def test_catalog_entry_supplies_name_and_price(self, encounter, filling):
        procedure = services_procedures.record_procedure(
            encounter.pk,
            procedure_catalog=filling.pk,
            quantity=2,
            tooth_number=26,
            tooth_surface='MO',
        )

        assert procedure.service_type == 'Composite filling'
        assert procedure.unit_price_cents == 8000
        assert procedure.total_cents == 16000

    def test_explicit_price_overrides_catalog(self, encounter, filling):
        procedure = services_procedures.record_procedure(
            encounter.pk, procedure_catalog=filling.pk, tooth_number=11, unit_price_cents=7000,
        )
        assert procedure.total_cents == 7000

    def test_free_text_without_price(self, encounter):
        procedure = services_procedures.record_procedure(encounter.pk, service_type='Consultation')

        assert procedure.service_type == 'Consultation'
        assert procedure.unit_price_cents is None
        assert procedure.total_cents is None

    def test_service_type_required_without_catalog(self, encounter):
        with pytest.raises(ValidationError) as exc_info:
            services_procedures.record_procedure(encounter.pk, service_type='  ')
        assert 'service_type' in exc_info.value.details

    @pytest.mark.parametrize('quantity', [0, -1])
    def test_quantity_must_be_positive(self, encounter, quantity):
        with pytest.raises(ValidationError):
            services_procedures.record_procedure(encounter.pk, service_type='X-ray', quantity=quantity)

    def test_tooth_not_allowed_for_whole_mouth_procedure(self, encounter, cleaning):
        with pytest.raises(ValidationError) as exc_info:
            services_procedures.record_procedure(encounter.pk, procedure_catalog=cleaning.pk, tooth_number=11)
        assert 'tooth_number' in exc_info.value.details

    def test_unknown_catalog_entry(self, encounter):
        with pytest.raises(NotFoundError):
            services_procedures.record_procedure(
                encounter.pk, procedure_catalog='00000000-0000-0000-0000-000000000000',
            )

    def test_finalized_encounter_rejected(self, encounter):
        services.finalize(encounter.pk)

        with pytest.raises(EncounterFinalizedError):
            services_procedures.record_procedure(encounter.pk, service_type='X-ray')

        assert not Procedure.objects.filter(encounter=encounter).exists()

    def test_recording_audited(self, encounter, odont_user):
        procedure = services_procedures.record_procedure(encounter.pk, service_type='X-ray', actor=odont_user)

        entry = ClinicalAuditLog.objects.get(entity_type='PROCEDURE', entity_id=procedure.pk)
        assert entry.new_state == 'RECORDED'
        assert entry.context['encounter_id'] == str(encounter.pk)


@pytest.mark.django_db
class TestProcedureLinkage:

    def test_single_session_step_completed(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}, {'service_type': 'Polish'}])
        step = plan.steps.get(order=1)

        services_procedures.record_procedure(encounter.pk, service_type='Scaling', treatment_step_id=step.pk)

        step.refresh_from_db()
        assert step.status == TreatmentStepStatusChoices.COMPLETED
        assert step.completed_at is not None
        plan.refresh_from_db()
        assert plan.status == TreatmentPlanStatusChoices.ACTIVE

    def test_last_step_completes_plan(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}])

        services_procedures.record_procedure(
            encounter.pk, service_type='Scaling', treatment_step_id=plan.steps.get().pk,
        )

        plan.refresh_from_db()
        assert plan.status == TreatmentPlanStatusChoices.COMPLETED

    def test_multi_session_step_started_not_advanced(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[
            {'service_type': 'Root canal', 'requires_multiple_sessions': True, 'total_sessions': 3},
        ])
        step = plan.steps.get()

        services_procedures.record_procedure(encounter.pk, service_type='Root canal', treatment_step_id=step.pk)

        step.refresh_from_db()
        assert step.status == TreatmentStepStatusChoices.IN_PROGRESS
        assert step.current_session == 1

    def test_multi_session_in_progress_unchanged(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[
            {'service_type': 'Root canal', 'requires_multiple_sessions': True, 'total_sessions': 3},
        ])
        step = services_treatment.transition_status(plan.steps.get().pk, 'IN_PROGRESS')
        version = step.row_version

        services_procedures.record_procedure(encounter.pk, service_type='Root canal', treatment_step_id=step.pk)

        step.refresh_from_db()
        assert step.status == TreatmentStepStatusChoices.IN_PROGRESS
        assert step.row_version == version

    def test_completed_step_cannot_be_linked(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}, {'service_type': 'Polish'}])
        step = plan.steps.get(order=1)
        services_procedures.record_procedure(encounter.pk, service_type='Scaling', treatment_step_id=step.pk)

        with pytest.raises(ValidationError):
            services_procedures.record_procedure(encounter.pk, service_type='Scaling', treatment_step_id=step.pk)

    def test_step_of_other_patient_rejected(self, encounter, patient_factory, plan_factory):
        other_plan = plan_factory(patient_factory(), steps=[{'service_type': 'Scaling'}])

        with pytest.raises(ValidationError):
            services_procedures.record_procedure(
                encounter.pk, service_type='Scaling', treatment_step_id=other_plan.steps.get().pk,
            )

    def test_step_of_cancelled_plan_rejected(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}])
        services_treatment.cancel_plan(plan.pk)

        with pytest.raises(ValidationError):
            services_procedures.record_procedure(
                encounter.pk, service_type='Scaling', treatment_step_id=plan.steps.get().pk,
            )

    def test_unknown_step(self, encounter):
        with pytest.raises(NotFoundError):
            services_procedures.record_procedure(
                encounter.pk, service_type='Scaling', treatment_step_id='00000000-0000-0000-0000-000000000000',
            )

    def test_diagnosis_link_keeps_status(self, patient, encounter):
        diagnosis = services_diagnoses.create_diagnosis(patient.pk, encounter.pk, 'Caries 36')

        procedure = services_procedures.record_procedure(
            encounter.pk, service_type='Filling', diagnosis_id=diagnosis.pk,
        )

        diagnosis.refresh_from_db()
        assert procedure.diagnosis_id == diagnosis.pk
        assert diagnosis.status == DiagnosisStatusChoices.ACTIVE

    def test_closed_diagnosis_cannot_be_linked(self, patient, encounter):
        diagnosis = services_diagnoses.create_diagnosis(patient.pk, encounter.pk, 'Gingivitis')
        services_diagnoses.change_status(diagnosis.pk, 'RESOLVED')

        with pytest.raises(ValidationError):
            services_procedures.record_procedure(encounter.pk, service_type='Cleaning', diagnosis_id=diagnosis.pk)

    def test_failed_link_records_nothing(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}])
        services_treatment.cancel_plan(plan.pk)

        with pytest.raises(ValidationError):
            services_procedures.record_procedure(
                encounter.pk, service_type='Scaling', treatment_step_id=plan.steps.get().pk,
            )

        assert not Procedure.objects.filter(encounter=encounter).exists()


@pytest.mark.django_db
class TestUpdateAndDeleteProcedure:

    @pytest.fixture
    def procedure(self, encounter, filling):
        return services_procedures.record_procedure(
            encounter.pk, procedure_catalog=filling.pk, tooth_number=26, tooth_surface='O',
        )

    def test_quantity_recomputes_total(self, procedure):
        updated = services_procedures.update_procedure(procedure.pk, {'quantity': 3})

        assert updated.total_cents == 24000

    def test_notes_and_price(self, procedure):
        updated = services_procedures.update_procedure(
            procedure.pk, {'unit_price_cents': 5000, 'result_notes': 'Good seal'},
        )

        assert updated.total_cents == 5000
        assert updated.result_notes == 'Good seal'

    @pytest.mark.parametrize('field', ['treatment_step_id', 'diagnosis_id', 'encounter_id'])
    def test_linkage_is_read_only(self, procedure, field):
        with pytest.raises(ValidationError) as exc_info:
            services_procedures.update_procedure(procedure.pk, {field: None})
        assert field in exc_info.value.details

    def test_unknown_field(self, procedure):
        with pytest.raises(ValidationError):
            services_procedures.update_procedure(procedure.pk, {'service_type': 'Other'})

    def test_update_after_finalize(self, procedure, encounter):
        services.finalize(encounter.pk)

        with pytest.raises(EncounterFinalizedError):
            services_procedures.update_procedure(procedure.pk, {'quantity': 2})

    def test_delete(self, procedure):
        services_procedures.delete_procedure(procedure.pk)

        assert not Procedure.objects.filter(pk=procedure.pk).exists()
        entry = ClinicalAuditLog.objects.filter(entity_type='PROCEDURE', entity_id=procedure.pk).last()
        assert entry.new_state == 'DELETED'

    def test_delete_keeps_step_status(self, patient, encounter, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}, {'service_type': 'Polish'}])
        step = plan.steps.get(order=1)
        procedure = services_procedures.record_procedure(
            encounter.pk, service_type='Scaling', treatment_step_id=step.pk,
        )

        services_procedures.delete_procedure(procedure.pk)

        step.refresh_from_db()
        assert step.status == TreatmentStepStatusChoices.COMPLETED

    def test_delete_after_finalize(self, procedure, encounter):
        services.finalize(encounter.pk)

        with pytest.raises(EncounterFinalizedError):
            services_procedures.delete_procedure(procedure.pk)

    def test_delete_unknown(self, db):
        with pytest.raises(NotFoundError):
            services_procedures.delete_procedure('00000000-0000-0000-0000-000000000000')


@pytest.mark.django_db
class TestProcedureAPI:

    def test_record(self, odont_client, encounter, filling):
        response = odont_client.post(
            '/api/v1/clinical/procedures/',
            {
                'encounter_id': str(encounter.pk),
                'procedure_catalog': str(filling.pk),
                'tooth_number': 14,
                'tooth_surface': 'DO',
            },
            format='json',
        )

        assert response.status_code == 201
        assert response.data['data']['total_cents'] == 8000
        assert response.data['data']['quantity'] == 1

    def test_record_in_finalized_encounter_is_423(self, odont_client, encounter):
        services.finalize(encounter.pk)

        response = odont_client.post(
            '/api/v1/clinical/procedures/',
            {'encounter_id': str(encounter.pk), 'service_type': 'X-ray'},
            format='json',
        )

        assert response.status_code == 423
        assert response.data['error']['code'] == 'ENCOUNTER_FINALIZED'

    def test_patch_linkage_rejected(self, odont_client, encounter, patient):
        procedure = services_procedures.record_procedure(encounter.pk, service_type='X-ray')
        diagnosis = services_diagnoses.create_diagnosis(patient.pk, encounter.pk, 'Caries')

        response = odont_client.patch(
            f'/api/v1/clinical/procedures/{procedure.pk}/',
            {'diagnosis_id': str(diagnosis.pk)},
            format='json',
        )

        assert response.status_code == 400
        assert 'diagnosis_id' in response.data['error']['details']

    @pytest.mark.parametrize('key', ['actor', 'procedure_id', 'changes'])
    def test_patch_reserved_key_rejected(self, odont_client, encounter, key):
        procedure = services_procedures.record_procedure(encounter.pk, service_type='X-ray')

        response = odont_client.patch(
            f'/api/v1/clinical/procedures/{procedure.pk}/', {key: 1}, format='json',
        )

        assert response.status_code == 400
        assert response.data['error']['code'] == 'VALIDATION_ERROR'
        assert key in response.data['error']['details']

    def test_patch_quantity(self, odont_client, encounter):
        procedure = services_procedures.record_procedure(encounter.pk, service_type='X-ray', unit_price_cents=1500)

        response = odont_client.patch(
            f'/api/v1/clinical/procedures/{procedure.pk}/', {'quantity': 2}, format='json',
        )

        assert response.status_code == 200
        assert response.data['data']['total_cents'] == 3000

    def test_delete(self, odont_client, encounter):
        procedure = services_procedures.record_procedure(encounter.pk, service_type='X-ray')

        response = odont_client.delete(f'/api/v1/clinical/procedures/{procedure.pk}/')

        assert response.status_code == 200
        assert response.data['data']['deleted'] is True

    def test_list_by_encounter(self, recep_client, encounter, encounter_factory, patient_factory):
        services_procedures.record_procedure(encounter.pk, service_type='X-ray')
        other = encounter_factory(patient_factory())
        services_procedures.record_procedure(other.pk, service_type='Consultation')

        response = recep_client.get('/api/v1/clinical/procedures/', {'encounter_id': str(encounter.pk)})

        assert response.status_code == 200
        assert [p['service_type'] for p in response.data['data']] == ['X-ray']
