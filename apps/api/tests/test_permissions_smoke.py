"""
Smoke tests for API permissions by role.

Fast HTTP status code validation without deep content checks.
Validates that role-based permissions and the response envelope work
across clinical endpoints.
"""
import pytest
from rest_framework import status


READ_ENDPOINTS = [
    '/api/v1/clinical/patients/',
    '/api/v1/clinical/procedure-catalog/',
    '/api/v1/clinical/encounters/',
    '/api/v1/clinical/diagnoses/',
    '/api/v1/clinical/treatment-plans/',
    '/api/v1/clinical/treatment-steps/',
    '/api/v1/clinical/procedures/',
]


@pytest.mark.django_db
class TestReadPermissions:
    """GET is open to every clinic role."""

    @pytest.mark.parametrize('endpoint', READ_ENDPOINTS)
    @pytest.mark.parametrize('client_fixture,expected_status', [
        ('admin_client', status.HTTP_200_OK),
        ('odont_client', status.HTTP_200_OK),
        ('recep_client', status.HTTP_200_OK),
        ('no_role_client', status.HTTP_403_FORBIDDEN),
        ('api_client', status.HTTP_401_UNAUTHORIZED),
    ])
    def test_list_by_role(self, endpoint, client_fixture, expected_status, request):
        client = request.getfixturevalue(client_fixture)
        response = client.get(endpoint)
        assert response.status_code == expected_status


@pytest.mark.django_db
class TestWritePermissions:
    """Reception reads clinical data but never mutates it."""

    @pytest.mark.parametrize('client_fixture,expected_status', [
        ('admin_client', status.HTTP_201_CREATED),
        ('odont_client', status.HTTP_201_CREATED),
        ('recep_client', status.HTTP_403_FORBIDDEN),
        ('no_role_client', status.HTTP_403_FORBIDDEN),
        ('api_client', status.HTTP_401_UNAUTHORIZED),
    ])
    def test_ensure_encounter_by_role(self, client_fixture, expected_status, request, patient):
        client = request.getfixturevalue(client_fixture)
        response = client.post(
            '/api/v1/clinical/encounters/',
            {'patient_id': str(patient.pk), 'appointment_ref': 'APT-9'},
            format='json',
        )
        assert response.status_code == expected_status

    @pytest.mark.parametrize('client_fixture,expected_status', [
        ('admin_client', status.HTTP_201_CREATED),
        ('odont_client', status.HTTP_201_CREATED),
        ('recep_client', status.HTTP_403_FORBIDDEN),
    ])
    def test_create_diagnosis_by_role(self, client_fixture, expected_status, request, patient, encounter):
        client = request.getfixturevalue(client_fixture)
        response = client.post(
            '/api/v1/clinical/diagnoses/',
            {'patient_id': str(patient.pk), 'encounter_id': str(encounter.pk), 'label': 'Caries 46'},
            format='json',
        )
        assert response.status_code == expected_status

    def test_reception_cannot_finalize(self, recep_client, encounter):
        response = recep_client.post(f'/api/v1/clinical/encounters/{encounter.pk}/finalize/', {}, format='json')

        assert response.status_code == status.HTTP_403_FORBIDDEN
        encounter.refresh_from_db()
        assert encounter.status == 'DRAFT'

    def test_reception_cannot_record_procedures(self, recep_client, encounter):
        response = recep_client.post(
            '/api/v1/clinical/procedures/',
            {'encounter_id': str(encounter.pk), 'service_type': 'X-ray'},
            format='json',
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_reception_cannot_create_plans(self, recep_client, patient):
        response = recep_client.post(
            '/api/v1/clinical/treatment-plans/',
            {'patient_id': str(patient.pk), 'title': 'Plan'},
            format='json',
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.django_db
class TestResponseEnvelope:

    def test_success_shape(self, odont_client, encounter):
        response = odont_client.get(f'/api/v1/clinical/encounters/{encounter.pk}/')

        assert response.status_code == status.HTTP_200_OK
        assert set(response.data) == {'ok', 'data'}
        assert response.data['ok'] is True
        assert response.data['data']['id'] == str(encounter.pk)

    def test_forbidden_shape(self, recep_client, patient):
        response = recep_client.post(
            '/api/v1/clinical/encounters/', {'patient_id': str(patient.pk)}, format='json'
        )

        assert response.data['ok'] is False
        assert response.data['error']['code'] == 'FORBIDDEN'
        assert set(response.data['error']) == {'code', 'message', 'details'}

    def test_unauthenticated_shape(self, api_client):
        response = api_client.get('/api/v1/clinical/encounters/')

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.data['error']['code'] == 'UNAUTHORIZED'

    def test_not_found_shape(self, odont_client):
        response = odont_client.get('/api/v1/clinical/encounters/00000000-0000-0000-0000-000000000000/')

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data['ok'] is False
        assert response.data['error']['code'] == 'NOT_FOUND'

    def test_malformed_id_is_not_found(self, odont_client):
        response = odont_client.get('/api/v1/clinical/diagnoses/not-a-uuid/')

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_validation_shape(self, odont_client):
        response = odont_client.post('/api/v1/clinical/encounters/', {}, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data['error']['code'] == 'VALIDATION_ERROR'
        assert 'patient_id' in response.data['error']['details']
