"""
Tests for the clinical audit trail.
"""
import uuid

import pytest

from apps.clinical import services_audit
from apps.clinical import services_diagnoses
from apps.clinical import services_treatment
from apps.clinical.models import ClinicalAuditLog
from apps.core.errors import ValidationError


@pytest.mark.django_db
class TestAuditAppend:

    def test_append_and_query(self, patient, odont_user):
        entity_id = uuid.uuid4()

        services_audit.append('ENCOUNTER', entity_id, new_state='DRAFT', actor=odont_user, patient=patient)
        services_audit.append(
            'ENCOUNTER', entity_id, new_state='FINAL', previous_state='DRAFT',
            reason='visit over', context={'procedures': 2},
        )

        entries = list(services_audit.query('ENCOUNTER', entity_id))
        assert [(e.previous_state, e.new_state) for e in entries] == [(None, 'DRAFT'), ('DRAFT', 'FINAL')]
        assert entries[0].actor_user == odont_user
        assert entries[1].reason == 'visit over'
        assert entries[1].context == {'procedures': 2}

    def test_query_is_scoped_to_entity(self):
        first, second = uuid.uuid4(), uuid.uuid4()
        services_audit.append('DIAGNOSIS', first, new_state='ACTIVE')
        services_audit.append('DIAGNOSIS', second, new_state='ACTIVE')
        services_audit.append('PROCEDURE', first, new_state='RECORDED')

        assert services_audit.query('DIAGNOSIS', first).count() == 1

    def test_unknown_entity_type(self):
        with pytest.raises(ValidationError):
            services_audit.query('INVOICE', uuid.uuid4())

    def test_empty_context_defaults_to_dict(self):
        entry = services_audit.append('TREATMENT_PLAN', uuid.uuid4(), new_state='ACTIVE')
        assert entry.context == {}

    def test_failed_transition_leaves_no_entry(self, patient, encounter):
        diagnosis = services_diagnoses.create_diagnosis(patient.pk, encounter.pk, 'Caries 16')
        before = ClinicalAuditLog.objects.count()

        with pytest.raises(ValidationError):
            services_diagnoses.change_status(diagnosis.pk, 'DISCARDED')

        assert ClinicalAuditLog.objects.count() == before

    def test_plan_history_in_order(self, patient, plan_factory):
        plan = plan_factory(patient)
        services_treatment.cancel_plan(plan.pk, reason='second opinion')
        services_treatment.reactivate_plan(plan.pk)

        states = [e.new_state for e in services_audit.query('TREATMENT_PLAN', plan.pk)]
        assert states == ['ACTIVE', 'CANCELLED', 'ACTIVE']


@pytest.mark.django_db
class TestAuditAPI:

    endpoint = '/api/v1/clinical/audit/'

    def test_entries_for_entity(self, recep_client, patient, encounter):
        diagnosis = services_diagnoses.create_diagnosis(patient.pk, encounter.pk, 'Caries 16')
        services_diagnoses.change_status(diagnosis.pk, 'UNDER_FOLLOW_UP')

        response = recep_client.get(self.endpoint, {'entity_type': 'diagnosis', 'entity_id': str(diagnosis.pk)})

        assert response.status_code == 200
        assert response.data['ok'] is True
        assert [e['new_state'] for e in response.data['data']] == ['ACTIVE', 'UNDER_FOLLOW_UP']

    def test_actor_email_rendered(self, odont_client, patient, encounter, odont_user):
        diagnosis = services_diagnoses.create_diagnosis(patient.pk, encounter.pk, 'Caries 16', actor=odont_user)

        response = odont_client.get(self.endpoint, {'entity_type': 'DIAGNOSIS', 'entity_id': str(diagnosis.pk)})

        assert response.data['data'][0]['actor_email'] == 'odont@test.com'

    def test_missing_parameters(self, odont_client):
        response = odont_client.get(self.endpoint)

        assert response.status_code == 400
        assert response.data['error']['code'] == 'VALIDATION_ERROR'

    def test_unknown_entity_type(self, odont_client):
        response = odont_client.get(self.endpoint, {'entity_type': 'INVOICE', 'entity_id': str(uuid.uuid4())})

        assert response.status_code == 400

    def test_audit_is_read_only(self, admin_client):
        response = admin_client.post(self.endpoint, {'entity_type': 'ENCOUNTER'}, format='json')

        assert response.status_code == 405


@pytest.mark.django_db
class TestAuditAdmin:

    def test_admin_cannot_edit_entries(self, admin_user):
        from django.contrib.admin.sites import site
        from django.test import RequestFactory

        model_admin = site._registry[ClinicalAuditLog]
        request = RequestFactory().get('/admin/')
        request.user = admin_user

        assert model_admin.has_add_permission(request) is False
        assert model_admin.has_change_permission(request) is False
        assert model_admin.has_delete_permission(request) is False
