# clinic_core/billing/selectors.py
from __future__ import annotations

from datetime import date
from uuid import UUID

from django.db.models import Prefetch, QuerySet

from clinic_core.billing.models import Invoice, InvoiceItem, Payment


# -------------------------------------------------------------------
# Invoices
# -------------------------------------------------------------------

def invoices_qs() -> QuerySet[Invoice]:
    return Invoice.objects.select_related("patient", "appointment")


def invoice_detail_qs() -> QuerySet[Invoice]:
    """
    Invoice with items in insertion order and payments ascending by paid_at,
    the shape receipt renderers expect.
    """
    return invoices_qs().prefetch_related(
        Prefetch("items", queryset=InvoiceItem.objects.order_by("position", "created_at")),
        Prefetch("payments", queryset=Payment.objects.order_by("paid_at", "created_at")),
    )


def get_invoice_or_none(*, invoice_id: UUID) -> Invoice | None:
    return invoice_detail_qs().filter(id=invoice_id).first()


def invoices_filtered(
    *,
    patient_id: UUID | None = None,
    status: str | None = None,
    invoice_type: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> QuerySet[Invoice]:
    qs = invoices_qs().order_by("-created_at")

    if patient_id:
        qs = qs.filter(patient_id=patient_id)

    if status:
        qs = qs.filter(status=status)

    if invoice_type:
        qs = qs.filter(invoice_type=invoice_type)

    if start_date:
        qs = qs.filter(created_at__date__gte=start_date)

    if end_date:
        qs = qs.filter(created_at__date__lte=end_date)

    return qs


# -------------------------------------------------------------------
# Payments
# -------------------------------------------------------------------

def payments_qs() -> QuerySet[Payment]:
    return Payment.objects.select_related("invoice", "invoice__patient")


def get_payment_or_none(*, payment_id: UUID) -> Payment | None:
    return payments_qs().filter(id=payment_id).first()


def payments_filtered(
    *,
    invoice_id: UUID | None = None,
    patient_id: UUID | None = None,
    payment_method: str | None = None,
    payment_status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> QuerySet[Payment]:
    qs = payments_qs().order_by("-paid_at", "-created_at")

    if invoice_id:
        qs = qs.filter(invoice_id=invoice_id)

    if patient_id:
        qs = qs.filter(invoice__patient_id=patient_id)

    if payment_method:
        qs = qs.filter(payment_method=payment_method)

    if payment_status:
        qs = qs.filter(payment_status=payment_status)

    if start_date:
        qs = qs.filter(paid_at__date__gte=start_date)

    if end_date:
        qs = qs.filter(paid_at__date__lte=end_date)

    return qs
