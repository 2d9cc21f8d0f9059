from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from clinic_core.billing.models import Invoice
from clinic_core.billing.services import PaymentService

pytestmark = pytest.mark.django_db

BASE = "/api/v1/billing/invoices/"


def create_payload(for_patient, **overrides):
    payload = {
        "patient": str(for_patient.id),
        "invoice_type": "opd",
        "payment_method": "cash",
        "items": [
            {"description": "Consultation", "quantity": 2, "unit_price": "150.00"},
            {"description": "Blood panel", "quantity": 1, "unit_price": "75.50"},
        ],
    }
    payload.update(overrides)
    return payload


def pay(invoice, amount):
    return PaymentService.record_payment(
        data={"invoice": invoice.id, "amount": amount, "payment_method": "cash"},
        recorded_by_user_id=None,
    )


# -------------------------------------------------------------------
# Create
# -------------------------------------------------------------------

def test_staff_creates_invoice(staff_client, staff_user, patient):
    res = staff_client.post(BASE, create_payload(patient), format="json")
    assert res.status_code == 201, res.data

    body = res.data
    year = timezone.localdate().year
    assert body["invoice_number"] == f"WC-{year}-0001"
    assert body["total_amount"] == "375.50"
    assert body["status"] == "pending"
    assert body["created_by"] == staff_user.id
    assert body["patient_name"] == "Asha Menon"
    assert [i["total_price"] for i in body["items"]] == ["300.00", "75.50"]
    assert body["payments"] == []
    assert body["balance"] == {
        "total_amount": "375.50",
        "paid_amount": "0.00",
        "pending_amount": "0.00",
        "remaining_balance": "375.50",
        "available_balance": "375.50",
    }


def test_create_validation_error_envelope(staff_client, patient):
    res = staff_client.post(BASE, create_payload(patient, items=[]), format="json")
    assert res.status_code == 400

    err = res.json()["error"]
    assert err["code"] == "validation_error"
    assert "items" in err["details"]
    assert err["request_id"]


def test_create_rejects_insurance_credit_without_due_date(staff_client, patient):
    res = staff_client.post(BASE, create_payload(patient, payment_method="insurance_credit"), format="json")
    assert res.status_code == 400
    # service field errors come out as lists, like serializer errors
    assert res.json()["error"]["details"] == {
        "due_date": ["Due date is required for insurance credit payments."]
    }


def test_create_for_unknown_patient_is_404(staff_client, patient):
    payload = create_payload(patient, patient=str(uuid4()))
    res = staff_client.post(BASE, payload, format="json")
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "not_found"


def test_create_from_catalog_service(staff_client, patient, catalog_service):
    payload = create_payload(patient, items=[{"service": str(catalog_service.id), "quantity": 1}])
    res = staff_client.post(BASE, payload, format="json")
    assert res.status_code == 201, res.data
    assert res.data["items"][0]["description"] == "Chest X-Ray"
    assert res.data["total_amount"] == "420.00"


@pytest.mark.parametrize("client_name", ["patient_client", "unprofiled_client"])
def test_create_forbidden_without_process_payments(request, client_name, patient):
    client = request.getfixturevalue(client_name)
    res = client.post(BASE, create_payload(patient), format="json")
    assert res.status_code == 403
    err = res.json()["error"]
    assert err["code"] == "permission_denied"
    assert err["message"] == "Access denied: Insufficient permissions."
    assert Invoice.objects.count() == 0


def test_unauthenticated_is_401(patient):
    res = APIClient().get(BASE)
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "not_authenticated"


def test_access_token_cookie_authenticates(staff_user, invoice, settings):
    client = APIClient()
    client.cookies[settings.SIMPLE_JWT["AUTH_COOKIE"]] = str(AccessToken.for_user(staff_user))
    res = client.get(f"{BASE}{invoice.id}/")
    assert res.status_code == 200


def test_bearer_header_authenticates(staff_user, invoice):
    client = APIClient()
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {AccessToken.for_user(staff_user)}")
    res = client.get(f"{BASE}{invoice.id}/")
    assert res.status_code == 200


# -------------------------------------------------------------------
# Read
# -------------------------------------------------------------------

def test_patient_retrieves_own_invoice(patient_client, invoice):
    res = patient_client.get(f"{BASE}{invoice.id}/")
    assert res.status_code == 200
    assert res.data["invoice_number"] == invoice.invoice_number


def test_other_patient_gets_403(other_patient_client, invoice):
    res = other_patient_client.get(f"{BASE}{invoice.id}/")
    assert res.status_code == 403
    assert res.json()["error"]["message"] == "Access denied: You can only view your own invoices."


def test_unprofiled_user_cannot_read(unprofiled_client, invoice):
    res = unprofiled_client.get(f"{BASE}{invoice.id}/")
    assert res.status_code == 403


def test_retrieve_unknown_and_malformed_ids(admin_client):
    assert admin_client.get(f"{BASE}{uuid4()}/").status_code == 404
    res = admin_client.get(f"{BASE}not-a-uuid/")
    assert res.status_code == 400
    assert "invoice" in res.json()["error"]["details"]


def test_patient_list_is_scoped_to_self(patient_client, invoice, make_invoice, other_patient):
    make_invoice(patient=other_patient.id)

    res = patient_client.get(BASE, {"patient": str(other_patient.id)})
    assert res.status_code == 200
    assert res.data["count"] == 1
    assert res.data["results"][0]["id"] == str(invoice.id)


def test_staff_list_filters(staff_client, invoice, make_invoice, other_patient):
    make_invoice(patient=other_patient.id, invoice_type="admission")
    pay(invoice, "375.50")

    assert staff_client.get(BASE).data["count"] == 2
    assert staff_client.get(BASE, {"patient": str(other_patient.id)}).data["count"] == 1
    assert staff_client.get(BASE, {"status": "paid"}).data["count"] == 1
    assert staff_client.get(BASE, {"invoice_type": "admission"}).data["count"] == 1

    today = timezone.localdate()
    assert staff_client.get(BASE, {"start_date": today.isoformat()}).data["count"] == 2
    tomorrow = (today + timedelta(days=1)).isoformat()
    assert staff_client.get(BASE, {"start_date": tomorrow}).data["count"] == 0


def test_list_rejects_bad_filters(staff_client):
    assert staff_client.get(BASE, {"status": "void"}).status_code == 400
    assert staff_client.get(BASE, {"start_date": "31-12-2025"}).status_code == 400
    res = staff_client.get(BASE, {"start_date": "2025-02-01", "end_date": "2025-01-01"})
    assert res.status_code == 400
    assert "end_date" in res.json()["error"]["details"]


def test_list_pagination_limit_is_capped(staff_client, make_invoice):
    for _ in range(3):
        make_invoice()

    res = staff_client.get(BASE, {"limit": 2})
    assert res.data["count"] == 3
    assert len(res.data["results"]) == 2
    assert res.data["next"]

    res = staff_client.get(BASE, {"limit": 1000})
    assert len(res.data["results"]) == 3


def test_list_is_newest_first(staff_client, make_invoice):
    first = make_invoice()
    second = make_invoice()
    Invoice.objects.filter(id=first.id).update(created_at=timezone.now() - timedelta(days=1))

    ids = [row["id"] for row in staff_client.get(BASE).data["results"]]
    assert ids == [str(second.id), str(first.id)]


# -------------------------------------------------------------------
# Update + items
# -------------------------------------------------------------------

def test_partial_update_total_override(staff_client, invoice):
    res = staff_client.patch(f"{BASE}{invoice.id}/", {"total_amount": "400.00"}, format="json")
    assert res.status_code == 200, res.data
    assert res.data["total_amount"] == "400.00"
    assert res.data["balance"]["remaining_balance"] == "400.00"


def test_partial_update_rejects_unknown_fields(staff_client, invoice):
    res = staff_client.patch(f"{BASE}{invoice.id}/", {"invoice_number": "X-1"}, format="json")
    assert res.status_code == 400
    assert "invoice_number" in res.json()["error"]["details"]


def test_partial_update_paid_invoice_rejected(staff_client, invoice):
    pay(invoice, "375.50")
    res = staff_client.patch(f"{BASE}{invoice.id}/", {"status": "pending"}, format="json")
    assert res.status_code == 400


def test_patient_cannot_update(patient_client, invoice):
    res = patient_client.patch(f"{BASE}{invoice.id}/", {"total_amount": "1.00"}, format="json")
    assert res.status_code == 403


def test_add_and_remove_items(staff_client, invoice):
    res = staff_client.post(
        f"{BASE}{invoice.id}/items/",
        {"description": "Dressing", "quantity": 3, "unit_price": "12.50"},
        format="json",
    )
    assert res.status_code == 201, res.data
    assert res.data["total_amount"] == "413.00"
    added = res.data["items"][-1]
    assert added["position"] == 3

    res = staff_client.delete(f"{BASE}{invoice.id}/items/{added['id']}/")
    assert res.status_code == 200
    assert res.data["total_amount"] == "375.50"
    assert len(res.data["items"]) == 2


def test_add_item_validation(staff_client, invoice):
    res = staff_client.post(
        f"{BASE}{invoice.id}/items/",
        {"description": "Bad", "quantity": 0, "unit_price": "5.00"},
        format="json",
    )
    assert res.status_code == 400
    assert "quantity" in res.json()["error"]["details"]


def test_remove_unknown_item_is_404(staff_client, invoice):
    res = staff_client.delete(f"{BASE}{invoice.id}/items/{uuid4()}/")
    assert res.status_code == 404


# -------------------------------------------------------------------
# Payments, receipt, stats
# -------------------------------------------------------------------

def test_invoice_payments_endpoint(patient_client, other_patient_client, invoice):
    pay(invoice, "100.00")

    res = patient_client.get(f"{BASE}{invoice.id}/payments/")
    assert res.status_code == 200
    assert [p["amount"] for p in res.data] == ["100.00"]
    assert res.data[0]["invoice_number"] == invoice.invoice_number

    assert other_patient_client.get(f"{BASE}{invoice.id}/payments/").status_code == 403


def test_receipt_contains_everything(patient_client, invoice):
    pay(invoice, "200.00")

    res = patient_client.get(f"{BASE}{invoice.id}/receipt/")
    assert res.status_code == 200
    body = res.data
    assert body["patient_mrn"] == "MRN-0001"
    assert body["patient_email"] == "asha@example.com"
    assert len(body["items"]) == 2
    assert len(body["payments"]) == 1
    assert body["status"] == "partially_paid"
    assert body["balance"]["remaining_balance"] == "175.50"


def test_stats_for_staff_only(staff_client, patient_client, invoice):
    res = staff_client.get(f"{BASE}stats/")
    assert res.status_code == 200
    assert res.data["total_invoices"] == 1
    assert res.data["total_billed"] == "375.50"

    assert patient_client.get(f"{BASE}stats/").status_code == 403


def test_my_stats_for_patient(patient_client, staff_client, invoice, make_invoice, other_patient):
    make_invoice(patient=other_patient.id)
    pay(invoice, "75.50")

    res = patient_client.get(f"{BASE}my/stats/")
    assert res.status_code == 200
    assert res.data["total_invoices"] == 1
    assert res.data["total_collected"] == "75.50"
    assert res.data["total_outstanding"] == "300.00"

    assert staff_client.get(f"{BASE}my/stats/").status_code == 403


def test_response_carries_request_id(staff_client, invoice):
    res = staff_client.get(f"{BASE}{invoice.id}/", HTTP_X_REQUEST_ID="rid-abc")
    assert res["X-Request-Id"] == "rid-abc"


def test_unversioned_alias_routes(staff_client, invoice):
    assert staff_client.get(f"/api/billing/invoices/{invoice.id}/").status_code == 200


def test_oversized_total_is_400_not_500(staff_client, patient):
    line = {"description": "Implant", "quantity": 1000, "unit_price": "999999.99"}
    res = staff_client.post(BASE, create_payload(patient, items=[dict(line) for _ in range(11)]), format="json")
    assert res.status_code == 400
    err = res.json()["error"]
    assert err["code"] == "validation_error"
    assert "items" in err["details"]
