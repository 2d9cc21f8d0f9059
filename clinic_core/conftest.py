# clinic_core/conftest.py
from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from clinic_core.appointments.models import Appointment
from clinic_core.billing.services import InvoiceService
from clinic_core.catalog.services import ServiceCatalogService
from clinic_core.iam.models import PermissionCode, Role, RoleCode, UserProfile
from clinic_core.iam.services import RoleService
from clinic_core.patients.models import Patient

DEFAULT_ITEMS = [
    {"description": "Consultation", "quantity": 2, "unit_price": "150.00"},
    {"description": "Blood panel", "quantity": 1, "unit_price": "75.50"},
]


def client_for(user) -> APIClient:
    c = APIClient()
    c.force_authenticate(user=user)
    return c


@pytest.fixture
def roles(db):
    """
    Built-in roles. Staff get process_payments here so the default staff
    user can bill; `unprofiled_user` covers staff without it.
    """
    RoleService.ensure_defaults()
    staff = Role.objects.get(code=RoleCode.STAFF)
    RoleService.grant(role=staff, permission_code=PermissionCode.PROCESS_PAYMENTS)
    return {r.code: r for r in Role.objects.all()}


@pytest.fixture
def make_user(db, roles):
    User = get_user_model()

    def _make(username: str, role_code: str | None = None, **extra):
        user = User.objects.create_user(username=username, password="testpass", is_active=True, **extra)
        if role_code:
            UserProfile.objects.create(user=user, role=roles[role_code], is_active=True)
        return user

    return _make


@pytest.fixture
def admin_user(make_user):
    return make_user("admin", RoleCode.ADMIN)


@pytest.fixture
def staff_user(make_user):
    return make_user("cashier", RoleCode.STAFF)


@pytest.fixture
def unprofiled_user(make_user):
    """Authenticated, but no clinic profile: staff with no permissions."""
    return make_user("visitor")


@pytest.fixture
def patient_user(make_user):
    return make_user("patient.one", RoleCode.PATIENT)


@pytest.fixture
def other_patient_user(make_user):
    return make_user("patient.two", RoleCode.PATIENT)


@pytest.fixture
def patient(db, patient_user):
    return Patient.objects.create(
        user=patient_user,
        full_name="Asha Menon",
        phone="+91-9000000001",
        email="asha@example.com",
        mrn="MRN-0001",
    )


@pytest.fixture
def other_patient(db, other_patient_user):
    return Patient.objects.create(
        user=other_patient_user,
        full_name="Ravi Kumar",
        mrn="MRN-0002",
    )


@pytest.fixture
def appointment(db, patient):
    return Appointment.objects.create(
        patient=patient,
        scheduled_at=timezone.now() + timedelta(days=1),
        reason="Follow-up",
    )


@pytest.fixture
def catalog_service(db):
    return ServiceCatalogService.upsert(code="xray-chest", name="Chest X-Ray", price="420.00", category="radiology")


@pytest.fixture
def make_invoice(db, patient, admin_user):
    def _make(**overrides):
        data = {
            "patient": patient.id,
            "invoice_type": "opd",
            "payment_method": "cash",
            "items": [dict(i) for i in DEFAULT_ITEMS],
        }
        data.update(overrides)
        return InvoiceService.create_invoice(data=data, actor_user_id=admin_user.id)

    return _make


@pytest.fixture
def invoice(make_invoice):
    """375.50 = 2 x 150.00 + 1 x 75.50"""
    return make_invoice()


@pytest.fixture
def admin_client(admin_user):
    return client_for(admin_user)


@pytest.fixture
def staff_client(staff_user):
    return client_for(staff_user)


@pytest.fixture
def unprofiled_client(unprofiled_user):
    return client_for(unprofiled_user)


@pytest.fixture
def patient_client(patient_user, patient):
    return client_for(patient_user)


@pytest.fixture
def other_patient_client(other_patient_user, other_patient):
    return client_for(other_patient_user)
