# clinic_core/billing/tests/test_invoice_services.py
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from clinic_core.appointments.models import Appointment
from clinic_core.billing.models import Invoice, InvoiceItem, InvoiceStatus
from clinic_core.billing.services import InvoiceService, PaymentService
from clinic_core.common.api.exceptions import NotAuthorizedError, NotFoundError
from clinic_core.iam.models import PermissionCode, RoleCode


def _pay(invoice, amount, **extra):
    data = {"invoice": invoice.id, "amount": amount, "payment_method": "cash", **extra}
    return PaymentService.record_payment(data=data, recorded_by_user_id=None)


# -------------------------------------------------------------------
# Creation
# -------------------------------------------------------------------

@pytest.mark.django_db
def test_create_invoice_computes_total_items_and_number(invoice, patient, admin_user):
    year = timezone.localdate().year

    assert invoice.invoice_number == f"WC-{year}-0001"
    assert invoice.patient_id == patient.id
    assert invoice.created_by_id == admin_user.id
    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.total_amount == Decimal("375.50")

    items = list(invoice.items.all())
    assert [i.description for i in items] == ["Consultation", "Blood panel"]
    assert [i.position for i in items] == [1, 2]
    assert [i.total_price for i in items] == [Decimal("300.00"), Decimal("75.50")]

    assert invoice.balance.remaining == Decimal("375.50")
    assert invoice.balance.available == Decimal("375.50")


@pytest.mark.django_db
def test_second_invoice_gets_next_number(invoice, make_invoice):
    year = timezone.localdate().year
    second = make_invoice()
    assert second.invoice_number == f"WC-{year}-0002"


@pytest.mark.django_db
def test_invoice_sequence_is_scoped_per_year():
    with transaction.atomic():
        assert InvoiceService._next_invoice_number_locked(year=2025) == "WC-2025-0001"
        assert InvoiceService._next_invoice_number_locked(year=2025) == "WC-2025-0002"
        assert InvoiceService._next_invoice_number_locked(year=2026) == "WC-2026-0001"
        assert InvoiceService._next_invoice_number_locked(year=2025) == "WC-2025-0003"


@pytest.mark.django_db
def test_invoice_prefix_comes_from_settings(settings):
    settings.BILLING_INVOICE_PREFIX = "RX"
    with transaction.atomic():
        assert InvoiceService._next_invoice_number_locked(year=2025) == "RX-2025-0001"


@pytest.mark.django_db
def test_create_requires_items(make_invoice):
    with pytest.raises(ValidationError) as exc:
        make_invoice(items=[])
    assert "items" in exc.value.detail
    assert Invoice.objects.count() == 0


@pytest.mark.django_db
def test_insurance_credit_requires_due_date(make_invoice):
    with pytest.raises(ValidationError) as exc:
        make_invoice(payment_method="insurance_credit")
    assert "due_date" in exc.value.detail

    due = timezone.localdate() + timedelta(days=30)
    inv = make_invoice(payment_method="insurance_credit", due_date=due)
    assert inv.due_date == due


@pytest.mark.django_db
def test_due_date_cannot_be_in_the_past(make_invoice):
    yesterday = timezone.localdate() - timedelta(days=1)
    with pytest.raises(ValidationError) as exc:
        make_invoice(due_date=yesterday.isoformat())
    assert "due_date" in exc.value.detail


@pytest.mark.django_db
@pytest.mark.parametrize(
    "item, field",
    [
        ({"description": "X", "quantity": 1, "unit_price": "10.001"}, "items[0].unit_price"),
        ({"description": "X", "quantity": 1, "unit_price": "0.00"}, "items[0].unit_price"),
        ({"description": "X", "quantity": 1, "unit_price": "1000000.00"}, "items[0].unit_price"),
        ({"description": "X", "quantity": 0, "unit_price": "10.00"}, "items[0].quantity"),
        ({"description": "X", "quantity": 1001, "unit_price": "10.00"}, "items[0].quantity"),
        ({"description": "X", "quantity": "1.5", "unit_price": "10.00"}, "items[0].quantity"),
        ({"description": "   ", "quantity": 1, "unit_price": "10.00"}, "items[0].description"),
        ({"description": "x" * 501, "quantity": 1, "unit_price": "10.00"}, "items[0].description"),
    ],
)
def test_malformed_items_are_rejected(make_invoice, item, field):
    with pytest.raises(ValidationError) as exc:
        make_invoice(items=[item])
    assert field in exc.value.detail
    assert Invoice.objects.count() == 0


@pytest.mark.django_db
def test_invalid_enums_are_rejected(make_invoice):
    with pytest.raises(ValidationError) as exc:
        make_invoice(invoice_type="surgery")
    assert "invoice_type" in exc.value.detail

    with pytest.raises(ValidationError) as exc:
        make_invoice(payment_method="cheque")
    assert "payment_method" in exc.value.detail


@pytest.mark.django_db
def test_missing_patient_is_not_found(make_invoice):
    with pytest.raises(NotFoundError):
        make_invoice(patient=uuid4())


@pytest.mark.django_db
def test_appointment_must_exist_and_belong_to_patient(make_invoice, appointment, other_patient):
    inv = make_invoice(appointment=appointment.id)
    assert inv.appointment_id == appointment.id

    with pytest.raises(NotFoundError):
        make_invoice(appointment=uuid4())

    foreign = Appointment.objects.create(patient=other_patient, scheduled_at=timezone.now())
    with pytest.raises(ValidationError) as exc:
        make_invoice(appointment=foreign.id)
    assert "appointment" in exc.value.detail


@pytest.mark.django_db
def test_catalog_price_is_copied_when_unit_price_omitted(make_invoice, catalog_service):
    inv = make_invoice(items=[{"service": catalog_service.id, "quantity": 2}])
    item = inv.items.get()

    assert item.service_id == catalog_service.id
    assert item.description == "Chest X-Ray"
    assert item.unit_price == Decimal("420.00")
    assert inv.total_amount == Decimal("840.00")

    # later catalog changes do not touch billed items
    catalog_service.price = Decimal("999.00")
    catalog_service.save()
    item.refresh_from_db()
    assert item.unit_price == Decimal("420.00")


@pytest.mark.django_db
def test_unknown_catalog_service_is_not_found(make_invoice):
    with pytest.raises(NotFoundError):
        make_invoice(items=[{"service": uuid4(), "description": "X", "quantity": 1, "unit_price": "5.00"}])


# -------------------------------------------------------------------
# Items
# -------------------------------------------------------------------

@pytest.mark.django_db
def test_add_item_recomputes_total(invoice):
    inv = InvoiceService.add_invoice_item(
        invoice_id=invoice.id,
        item={"description": "Dressing", "quantity": 2, "unit_price": "10.00"},
    )
    assert inv.total_amount == Decimal("395.50")
    assert [i.position for i in inv.items.all()] == [1, 2, 3]
    assert inv.items.all()[2].total_price == Decimal("20.00")


@pytest.mark.django_db
def test_remove_item_recomputes_total(invoice):
    lab = invoice.items.get(description="Blood panel")
    inv = InvoiceService.remove_invoice_item(invoice_id=invoice.id, item_id=lab.id)

    assert inv.total_amount == Decimal("300.00")
    assert not InvoiceItem.objects.filter(id=lab.id).exists()


@pytest.mark.django_db
def test_cannot_remove_last_item(make_invoice):
    inv = make_invoice(items=[{"description": "Consultation", "quantity": 1, "unit_price": "150.00"}])
    with pytest.raises(ValidationError):
        InvoiceService.remove_invoice_item(invoice_id=inv.id, item_id=inv.items.get().id)


@pytest.mark.django_db
def test_remove_item_from_other_invoice_is_not_found(invoice, make_invoice):
    other = make_invoice()
    with pytest.raises(NotFoundError):
        InvoiceService.remove_invoice_item(invoice_id=invoice.id, item_id=other.items.first().id)


@pytest.mark.django_db
def test_remove_item_cannot_drop_total_below_collected(invoice):
    _pay(invoice, "350.00")
    consult = invoice.items.get(description="Consultation")

    with pytest.raises(ValidationError):
        InvoiceService.remove_invoice_item(invoice_id=invoice.id, item_id=consult.id)

    invoice.refresh_from_db()
    assert invoice.total_amount == Decimal("375.50")


@pytest.mark.django_db
def test_items_locked_once_paid(invoice):
    _pay(invoice, "375.50")
    with pytest.raises(ValidationError):
        InvoiceService.add_invoice_item(
            invoice_id=invoice.id,
            item={"description": "Late fee", "quantity": 1, "unit_price": "5.00"},
        )


@pytest.mark.django_db
def test_items_locked_when_overdue(invoice):
    Invoice.objects.filter(id=invoice.id).update(status=InvoiceStatus.OVERDUE)
    with pytest.raises(ValidationError):
        InvoiceService.remove_invoice_item(invoice_id=invoice.id, item_id=invoice.items.first().id)


@pytest.mark.django_db
def test_adding_item_to_partially_paid_invoice_keeps_it_partially_paid(invoice):
    _pay(invoice, "100.00")
    inv = InvoiceService.add_invoice_item(
        invoice_id=invoice.id,
        item={"description": "Injection", "quantity": 1, "unit_price": "50.00"},
    )
    assert inv.status == InvoiceStatus.PARTIALLY_PAID
    assert inv.balance.remaining == Decimal("325.50")


# -------------------------------------------------------------------
# Administrative update
# -------------------------------------------------------------------

@pytest.mark.django_db
def test_update_total_is_an_override(invoice, admin_user):
    inv = InvoiceService.update_invoice(
        invoice_id=invoice.id,
        patch={"total_amount": "500.00"},
        actor_user_id=admin_user.id,
    )
    assert inv.total_amount == Decimal("500.00")
    # items untouched
    assert sum(i.total_price for i in inv.items.all()) == Decimal("375.50")


@pytest.mark.django_db
def test_update_total_below_collected_rejected(invoice, admin_user):
    _pay(invoice, "200.00")
    _pay(invoice, "100.00", payment_status="pending")

    with pytest.raises(ValidationError) as exc:
        InvoiceService.update_invoice(
            invoice_id=invoice.id,
            patch={"total_amount": "250.00"},
            actor_user_id=admin_user.id,
        )
    assert "total_amount" in exc.value.detail


@pytest.mark.django_db
def test_update_total_down_to_paid_amount_settles_invoice(invoice, admin_user):
    _pay(invoice, "300.00")
    inv = InvoiceService.update_invoice(
        invoice_id=invoice.id,
        patch={"total_amount": "300.00"},
        actor_user_id=admin_user.id,
    )
    assert inv.status == InvoiceStatus.PAID


@pytest.mark.django_db
def test_paid_invoice_cannot_be_updated(invoice, admin_user):
    _pay(invoice, "375.50")
    with pytest.raises(ValidationError):
        InvoiceService.update_invoice(
            invoice_id=invoice.id,
            patch={"payment_method": "card"},
            actor_user_id=admin_user.id,
        )


@pytest.mark.django_db
def test_update_rejects_unknown_fields_and_bad_enums(invoice, admin_user):
    with pytest.raises(ValidationError) as exc:
        InvoiceService.update_invoice(invoice_id=invoice.id, patch={"invoice_number": "X"}, actor_user_id=None)
    assert "invoice_number" in exc.value.detail

    with pytest.raises(ValidationError):
        InvoiceService.update_invoice(invoice_id=invoice.id, patch={"status": "void"}, actor_user_id=None)

    with pytest.raises(ValidationError):
        InvoiceService.update_invoice(invoice_id=invoice.id, patch={"payment_method": "barter"}, actor_user_id=None)


@pytest.mark.django_db
def test_update_to_insurance_credit_needs_due_date(invoice, admin_user):
    with pytest.raises(ValidationError) as exc:
        InvoiceService.update_invoice(
            invoice_id=invoice.id,
            patch={"payment_method": "insurance_credit"},
            actor_user_id=admin_user.id,
        )
    assert "due_date" in exc.value.detail

    due = timezone.localdate() + timedelta(days=45)
    inv = InvoiceService.update_invoice(
        invoice_id=invoice.id,
        patch={"payment_method": "insurance_credit", "due_date": due},
        actor_user_id=admin_user.id,
    )
    assert inv.payment_method == "insurance_credit"
    assert inv.due_date == due


@pytest.mark.django_db
def test_status_override_is_stored_as_given(invoice, admin_user):
    inv = InvoiceService.update_invoice(
        invoice_id=invoice.id,
        patch={"status": "overdue"},
        actor_user_id=admin_user.id,
    )
    assert inv.status == InvoiceStatus.OVERDUE


@pytest.mark.django_db
def test_update_missing_invoice_is_not_found(admin_user):
    with pytest.raises(NotFoundError):
        InvoiceService.update_invoice(invoice_id=uuid4(), patch={"status": "pending"}, actor_user_id=None)


# -------------------------------------------------------------------
# Reads + access
# -------------------------------------------------------------------

@pytest.mark.django_db
def test_patient_reads_own_invoice_only(invoice, patient_user, other_patient_user):
    inv = InvoiceService.get_invoice_by_id(
        invoice_id=invoice.id,
        requester_id=patient_user.id,
        requester_role=RoleCode.PATIENT,
        requester_permissions=(),
    )
    assert inv.id == invoice.id

    with pytest.raises(NotAuthorizedError) as exc:
        InvoiceService.get_invoice_by_id(
            invoice_id=invoice.id,
            requester_id=other_patient_user.id,
            requester_role=RoleCode.PATIENT,
            requester_permissions=(),
        )
    assert "your own invoices" in str(exc.value.detail)


@pytest.mark.django_db
def test_staff_needs_process_payments(invoice, staff_user):
    inv = InvoiceService.get_invoice_by_id(
        invoice_id=invoice.id,
        requester_id=staff_user.id,
        requester_role=RoleCode.STAFF,
        requester_permissions={PermissionCode.PROCESS_PAYMENTS},
    )
    assert inv.id == invoice.id

    with pytest.raises(NotAuthorizedError):
        InvoiceService.get_invoice_by_id(
            invoice_id=invoice.id,
            requester_id=staff_user.id,
            requester_role=RoleCode.STAFF,
            requester_permissions=(),
        )


@pytest.mark.django_db
def test_admin_reads_any_invoice_with_payments_ascending(invoice, admin_user):
    now = timezone.now()
    _pay(invoice, "50.00", paid_at=now)
    _pay(invoice, "25.00", paid_at=now - timedelta(days=2))

    inv = InvoiceService.get_invoice_by_id(
        invoice_id=invoice.id,
        requester_id=admin_user.id,
        requester_role=RoleCode.ADMIN,
    )
    assert [p.amount for p in inv.payments.all()] == [Decimal("25.00"), Decimal("50.00")]
    assert inv.balance.paid == Decimal("75.00")


@pytest.mark.django_db
def test_get_missing_invoice_is_not_found(admin_user):
    with pytest.raises(NotFoundError):
        InvoiceService.get_invoice_by_id(
            invoice_id=uuid4(),
            requester_id=admin_user.id,
            requester_role=RoleCode.ADMIN,
        )


# -------------------------------------------------------------------
# Status derivation
# -------------------------------------------------------------------

@pytest.mark.django_db
def test_update_invoice_status_is_idempotent(invoice):
    _pay(invoice, "100.00")
    first = InvoiceService.update_invoice_status(invoice_id=invoice.id)
    second = InvoiceService.update_invoice_status(invoice_id=invoice.id)
    assert first == second == InvoiceStatus.PARTIALLY_PAID


@pytest.mark.django_db
def test_overdue_is_clock_driven_and_not_terminal(make_invoice):
    due = timezone.localdate() + timedelta(days=1)
    inv = make_invoice(due_date=due)

    assert InvoiceService.update_invoice_status(invoice_id=inv.id, today=due) == InvoiceStatus.PENDING
    assert InvoiceService.update_invoice_status(invoice_id=inv.id, today=due + timedelta(days=1)) == "overdue"

    inv.refresh_from_db()
    assert inv.status == InvoiceStatus.OVERDUE

    # overdue invoices still accept payment and settle to paid
    result = _pay(inv, "375.50")
    assert result.invoice_status == InvoiceStatus.PAID


@pytest.mark.django_db
def test_refresh_statuses_marks_past_due_invoices(make_invoice):
    due = timezone.localdate() + timedelta(days=3)
    make_invoice(due_date=due)
    make_invoice()

    later = due + timedelta(days=1)
    assert InvoiceService.refresh_statuses(today=later) == 1
    assert InvoiceService.refresh_statuses(today=later) == 0
    assert Invoice.objects.filter(status=InvoiceStatus.OVERDUE).count() == 1


# -------------------------------------------------------------------
# Stats
# -------------------------------------------------------------------

@pytest.mark.django_db
def test_invoice_stats(invoice, make_invoice, other_patient):
    make_invoice(invoice_type="admission")
    make_invoice(patient=other_patient.id)
    _pay(invoice, "375.50")

    stats = InvoiceService.get_invoice_stats()
    assert stats["total_invoices"] == 3
    assert stats["invoices_by_status"] == {"pending": 2, "partially_paid": 0, "paid": 1, "overdue": 0}
    assert stats["invoices_by_type"] == {"opd": 2, "admission": 1, "running_bill": 0}
    assert stats["total_billed"] == "1126.50"
    assert stats["total_collected"] == "375.50"
    assert stats["total_outstanding"] == "751.00"

    mine = InvoiceService.get_invoice_stats(patient_id=invoice.patient_id)
    assert mine["total_invoices"] == 2
    assert mine["total_outstanding"] == "375.50"


# -------------------------------------------------------------------
# Total column bound
# -------------------------------------------------------------------

MAX_LINE = {"description": "Implant", "quantity": 1000, "unit_price": "999999.99"}


@pytest.mark.django_db
def test_create_rejects_total_beyond_column_limit(make_invoice):
    # each line is valid on its own: 1000 x 999999.99
    with pytest.raises(ValidationError) as exc:
        make_invoice(items=[dict(MAX_LINE) for _ in range(11)])
    assert "items" in exc.value.detail
    assert Invoice.objects.count() == 0

    inv = make_invoice(items=[dict(MAX_LINE) for _ in range(10)])
    assert inv.total_amount == Decimal("9999999900.00")


@pytest.mark.django_db
def test_add_item_rejects_total_beyond_column_limit(make_invoice):
    inv = make_invoice(items=[dict(MAX_LINE) for _ in range(10)])

    with pytest.raises(ValidationError) as exc:
        InvoiceService.add_invoice_item(invoice_id=inv.id, item=dict(MAX_LINE))
    assert "items" in exc.value.detail

    inv.refresh_from_db()
    assert inv.items.count() == 10
    assert inv.total_amount == Decimal("9999999900.00")
