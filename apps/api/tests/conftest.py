"""
Global test fixtures for pytest.

Provides reusable fixtures for API testing:
- Authenticated API clients by role (admin, odont, recep)
- Model instances (Patient, ProcedureCatalog, Encounter, TreatmentPlan)
"""
import pytest
from rest_framework.test import APIClient

from apps.authz.models import User, Role, UserRole, RoleChoices
from apps.clinical import services
from apps.clinical import services_treatment
from apps.clinical.models import Patient, ProcedureCatalog


def _create_user_with_role(email, role_name, **extra):
    user = User.objects.create_user(
        email=email,
        password='testpass123',
        is_active=True,
        **extra
    )
    role, _ = Role.objects.get_or_create(name=role_name)
    UserRole.objects.create(user=user, role=role)
    return user


def _client_for(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


# ============================================================================
# Users & API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def admin_user(db):
    return _create_user_with_role('admin@test.com', RoleChoices.ADMIN, is_staff=True)


@pytest.fixture
def odont_user(db):
    return _create_user_with_role('odont@test.com', RoleChoices.ODONT)


@pytest.fixture
def recep_user(db):
    return _create_user_with_role('recep@test.com', RoleChoices.RECEP)


@pytest.fixture
def admin_client(admin_user):
    """Admin: full clinical access."""
    return _client_for(admin_user)


@pytest.fixture
def odont_client(odont_user):
    """Odontologist: full clinical access."""
    return _client_for(odont_user)


@pytest.fixture
def recep_client(recep_user):
    """Reception: read-only clinical access."""
    return _client_for(recep_user)


@pytest.fixture
def no_role_client(db):
    """Authenticated user without any clinic role."""
    user = User.objects.create_user(email='norole@test.com', password='testpass123')
    return _client_for(user)


# ============================================================================
# Clinical data
# ============================================================================

@pytest.fixture
def patient_factory(db):
    """Factory fixture for creating multiple patients."""
    counter = {'n': 0}

    def _create_patient(**kwargs):
        counter['n'] += 1
        defaults = {
            'first_name': 'Patient',
            'last_name': f'Test{counter["n"]}',
        }
        defaults.update(kwargs)
        return Patient.objects.create(**defaults)

    return _create_patient


@pytest.fixture
def patient(patient_factory):
    return patient_factory(first_name='Ana', last_name='Lopez')


@pytest.fixture
def catalog_factory(db):
    """Factory fixture for procedure catalog entries."""
    counter = {'n': 0}

    def _create_entry(**kwargs):
        counter['n'] += 1
        defaults = {
            'code': f'PROC-{counter["n"]:03d}',
            'name': f'Procedure {counter["n"]}',
            'default_price_cents': 5000,
            'applies_to_tooth': True,
            'applies_to_surface': True,
        }
        defaults.update(kwargs)
        return ProcedureCatalog.objects.create(**defaults)

    return _create_entry


@pytest.fixture
def filling(catalog_factory):
    """Tooth + surface procedure."""
    return catalog_factory(code='FILL', name='Composite filling', default_price_cents=8000)


@pytest.fixture
def cleaning(catalog_factory):
    """Whole-mouth procedure; no tooth, no surface."""
    return catalog_factory(
        code='CLEAN',
        name='Dental cleaning',
        default_price_cents=4500,
        applies_to_tooth=False,
        applies_to_surface=False,
    )


@pytest.fixture
def encounter_factory(db, odont_user):
    """Factory fixture for DRAFT encounters."""
    def _create_encounter(patient, appointment_ref=None):
        encounter, _ = services.ensure_encounter(patient.pk, appointment_ref=appointment_ref, actor=odont_user)
        return encounter

    return _create_encounter


@pytest.fixture
def encounter(encounter_factory, patient):
    return encounter_factory(patient, appointment_ref='APT-1')


@pytest.fixture
def plan_factory(db, odont_user):
    """Factory fixture for ACTIVE treatment plans."""
    def _create_plan(patient, steps=(), title='Treatment plan'):
        return services_treatment.create_plan(patient.pk, title, steps=list(steps), actor=odont_user)

    return _create_plan
