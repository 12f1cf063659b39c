"""
Tests for multi-session step progression (complete_session).
"""
import pytest

from apps.clinical import services
from apps.clinical import services_treatment
from apps.clinical.models import (
    ClinicalAuditLog,
    TreatmentPlanStatusChoices,
    TreatmentStep,
    TreatmentStepStatusChoices,
)
from apps.core.errors import ConflictError, EncounterFinalizedError, ValidationError


@pytest.fixture
def root_canal(patient, plan_factory):
    """Three-session step already started."""
    plan = plan_factory(patient, steps=[
        {'service_type': 'Root canal', 'tooth_number': 19, 'requires_multiple_sessions': True, 'total_sessions': 3},
    ])
    return services_treatment.transition_status(plan.steps.get().pk, 'IN_PROGRESS')


@pytest.mark.django_db
class TestCompleteSession:

    def test_advances_until_last_session(self, root_canal):
        step = services_treatment.complete_session(root_canal.pk, expected_session=1)
        assert step.current_session == 2
        assert step.status == TreatmentStepStatusChoices.IN_PROGRESS

        step = services_treatment.complete_session(root_canal.pk, expected_session=2)
        assert step.current_session == 3
        assert step.status == TreatmentStepStatusChoices.IN_PROGRESS
        assert step.completed_at is None

        step = services_treatment.complete_session(root_canal.pk, expected_session=3)
        assert step.current_session == 3
        assert step.status == TreatmentStepStatusChoices.COMPLETED
        assert step.completed_at is not None

    def test_last_session_completes_plan(self, root_canal):
        for session in (1, 2, 3):
            services_treatment.complete_session(root_canal.pk, expected_session=session)

        root_canal.plan.refresh_from_db()
        assert root_canal.plan.status == TreatmentPlanStatusChoices.COMPLETED

    def test_sequential_duplicate_is_conflict(self, root_canal):
        services_treatment.complete_session(root_canal.pk, expected_session=1)

        with pytest.raises(ConflictError) as exc_info:
            services_treatment.complete_session(root_canal.pk, expected_session=1)

        details = exc_info.value.details
        assert details['reason'] == 'stale_session'
        assert details['current_session'] == 2
        assert details['total_sessions'] == 3

        root_canal.refresh_from_db()
        assert root_canal.current_session == 2

    def test_lost_race_detected_by_conditional_update(self, root_canal, monkeypatch):
        # The loser read the step before the winner committed
        stale = TreatmentStep.objects.get(pk=root_canal.pk)
        plan = stale.plan
        services_treatment.complete_session(root_canal.pk, expected_session=1)
        monkeypatch.setattr(services_treatment, 'lock_step', lambda step_id: (plan, stale))

        with pytest.raises(ConflictError) as exc_info:
            services_treatment.complete_session(root_canal.pk, expected_session=1)

        assert exc_info.value.details['reason'] == 'stale_session'
        assert exc_info.value.details['current_session'] == 2
        root_canal.refresh_from_db()
        assert root_canal.current_session == 2

    def test_future_session_is_conflict(self, root_canal):
        with pytest.raises(ConflictError):
            services_treatment.complete_session(root_canal.pk, expected_session=2)

    def test_completed_step_is_conflict(self, root_canal):
        for session in (1, 2, 3):
            services_treatment.complete_session(root_canal.pk, expected_session=session)

        with pytest.raises(ConflictError) as exc_info:
            services_treatment.complete_session(root_canal.pk, expected_session=3)

        assert exc_info.value.details['status'] == TreatmentStepStatusChoices.COMPLETED

    def test_cancelled_plan_freezes_sessions(self, root_canal):
        services_treatment.cancel_plan(root_canal.plan_id)

        with pytest.raises(ConflictError) as exc_info:
            services_treatment.complete_session(root_canal.pk, expected_session=1)

        assert exc_info.value.details['reason'] == 'plan_not_active'
        root_canal.refresh_from_db()
        assert root_canal.current_session == 1
        assert root_canal.status == TreatmentStepStatusChoices.IN_PROGRESS

    def test_step_not_started_is_conflict(self, patient, plan_factory):
        plan = plan_factory(patient, steps=[
            {'service_type': 'Orthodontics', 'requires_multiple_sessions': True, 'total_sessions': 4},
        ])

        with pytest.raises(ConflictError) as exc_info:
            services_treatment.complete_session(plan.steps.get().pk, expected_session=1)

        assert exc_info.value.details['reason'] == 'not_in_progress'

    def test_single_session_step_rejected(self, patient, plan_factory):
        plan = plan_factory(patient, steps=[{'service_type': 'Scaling'}])
        step = services_treatment.transition_status(plan.steps.get().pk, 'IN_PROGRESS')

        with pytest.raises(ValidationError):
            services_treatment.complete_session(step.pk, expected_session=1)

    def test_session_notes_appended(self, root_canal):
        services_treatment.complete_session(root_canal.pk, expected_session=1, session_notes='Canals located')
        step = services_treatment.complete_session(root_canal.pk, expected_session=2, session_notes='  Shaping  ')

        assert step.notes == (
            '--- Session 1 of 3 ---\nCanals located'
            '\n\n'
            '--- Session 2 of 3 ---\nShaping'
        )

    def test_notes_keep_existing_text(self, patient, plan_factory):
        plan = plan_factory(patient, steps=[{
            'service_type': 'Implant',
            'requires_multiple_sessions': True,
            'total_sessions': 2,
            'notes': 'Check bone density',
        }])
        step = services_treatment.transition_status(plan.steps.get().pk, 'IN_PROGRESS')

        step = services_treatment.complete_session(step.pk, expected_session=1, session_notes='Fixture placed')

        assert step.notes.startswith('Check bone density\n\n--- Session 1 of 2 ---')

    def test_blank_notes_leave_notes_untouched(self, root_canal):
        step = services_treatment.complete_session(root_canal.pk, expected_session=1, session_notes='   ')
        assert step.notes is None

    def test_session_counter_stays_in_bounds(self, root_canal):
        for session in (1, 2, 3):
            step = services_treatment.complete_session(root_canal.pk, expected_session=session)
            assert 1 <= step.current_session <= step.total_sessions

    def test_each_session_audited(self, root_canal, odont_user):
        services_treatment.complete_session(root_canal.pk, expected_session=1, actor=odont_user)

        entry = ClinicalAuditLog.objects.filter(
            entity_type='TREATMENT_STEP', entity_id=root_canal.pk
        ).last()
        assert entry.actor_user == odont_user
        assert entry.context['event'] == 'session_completed'
        assert entry.context['previous_session'] == 1
        assert entry.context['new_session'] == 2
        assert entry.context['is_last_session'] is False

    def test_finalized_encounter_context_blocks(self, root_canal, encounter):
        services.finalize(encounter.pk)

        with pytest.raises(EncounterFinalizedError):
            services_treatment.complete_session(root_canal.pk, expected_session=1, encounter_id=encounter.pk)

        root_canal.refresh_from_db()
        assert root_canal.current_session == 1

    def test_draft_encounter_context_accepted(self, root_canal, encounter):
        step = services_treatment.complete_session(root_canal.pk, expected_session=1, encounter_id=encounter.pk)
        assert step.current_session == 2

    def test_notes_too_long(self, root_canal):
        with pytest.raises(ValidationError):
            services_treatment.complete_session(root_canal.pk, expected_session=1, session_notes='x' * 1001)


@pytest.mark.django_db
class TestCompleteSessionAPI:

    def url(self, step):
        return f'/api/v1/clinical/treatment-steps/{step.pk}/complete-session/'

    def test_complete_session(self, odont_client, root_canal):
        response = odont_client.post(self.url(root_canal), {'expected_session': 1}, format='json')

        assert response.status_code == 200
        assert response.data['ok'] is True
        assert response.data['data']['current_session'] == 2

    def test_duplicate_submit_is_409(self, odont_client, root_canal):
        odont_client.post(self.url(root_canal), {'expected_session': 1}, format='json')
        response = odont_client.post(self.url(root_canal), {'expected_session': 1}, format='json')

        assert response.status_code == 409
        assert response.data['ok'] is False
        assert response.data['error']['code'] == 'CONFLICT'
        assert response.data['error']['details']['current_session'] == 2

    def test_missing_expected_session_is_400(self, odont_client, root_canal):
        response = odont_client.post(self.url(root_canal), {}, format='json')

        assert response.status_code == 400
        assert response.data['error']['code'] == 'VALIDATION_ERROR'

    def test_reception_cannot_complete_sessions(self, recep_client, root_canal):
        response = recep_client.post(self.url(root_canal), {'expected_session': 1}, format='json')

        assert response.status_code == 403
        root_canal.refresh_from_db()
        assert root_canal.current_session == 1
