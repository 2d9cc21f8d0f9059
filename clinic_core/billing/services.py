# clinic_core/billing/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable
from uuid import UUID

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Max, Q, QuerySet
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework.exceptions import ValidationError

from clinic_core.appointments.selectors import get_appointment_or_none
from clinic_core.billing.balances import (
    balance_from_payments,
    decimal_sum,
    derive_status,
    invoice_balance,
    items_total,
)
from clinic_core.billing.models import (
    ITEM_MUTABLE_STATUSES,
    METHODS_REQUIRING_TRANSACTION_ID,
    Invoice,
    InvoiceItem,
    InvoiceSequence,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from clinic_core.billing.money import INVOICE_TOTAL_MAX, ZERO, round2, validate_money
from clinic_core.billing.selectors import get_invoice_or_none, get_payment_or_none, payments_filtered
from clinic_core.catalog.selectors import get_service_or_none
from clinic_core.common.api.exceptions import NotFoundError, OverpaymentError
from clinic_core.iam.requester import check_record_access
from clinic_core.patients.selectors import get_patient_or_none

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 500
QUANTITY_MAX = 1000
TRANSACTION_ID_MAX_LENGTH = 255
NOTES_MAX_LENGTH = 1000

UPDATABLE_INVOICE_FIELDS = frozenset({"total_amount", "status", "due_date", "payment_method"})


# -------------------------------------------------------------------
# Input cleaning
# -------------------------------------------------------------------

def _clean_uuid(value, field: str) -> UUID:
    if value in (None, ""):
        raise ValidationError({field: "This field is required."})
    try:
        return UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise ValidationError({field: "Invalid UUID"})


def _clean_choice(value, choices, field: str, *, label: str) -> str:
    if value not in choices.values:
        raise ValidationError({field: f"Invalid {label}. Must be one of: {', '.join(choices.values)}"})
    return str(value)


def _clean_date(value, field: str) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = parse_date(str(value).strip())
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError({field: "Invalid date. Use YYYY-MM-DD."})
    return parsed


def _clean_paid_at(value) -> datetime:
    if value in (None, ""):
        return timezone.now()

    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = parse_datetime(str(value).strip())
        except ValueError:
            raise ValidationError({"paid_at": "Invalid datetime."})
        if dt is None:
            dt = datetime.combine(_clean_date(value, "paid_at"), time.min)

    if timezone.is_naive(dt):
        dt = timezone.make_aware(dt)
    return dt


def _clean_quantity(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError({field: "Quantity must be a whole number."})
    if isinstance(value, int):
        quantity = value
    else:
        try:
            dec = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError({field: "Quantity must be a whole number."})
        if not dec.is_finite() or dec != dec.to_integral_value():
            raise ValidationError({field: "Quantity must be a whole number."})
        quantity = int(dec)

    if quantity < 1 or quantity > QUANTITY_MAX:
        raise ValidationError({field: f"Quantity must be between 1 and {QUANTITY_MAX}."})
    return quantity


def _clean_item(raw, *, prefix: str = "") -> dict[str, Any]:
    """
    Normalises one item payload: {service?, description, quantity, unit_price}.
    When unit_price is omitted the catalog price is copied.
    """
    if not isinstance(raw, dict):
        raise ValidationError({prefix.rstrip(".") or "item": "Each item must be an object."})

    service = None
    if raw.get("service"):
        service = get_service_or_none(service_id=_clean_uuid(raw["service"], f"{prefix}service"))
        if service is None:
            raise NotFoundError("Service not found.")

    description = str(raw.get("description") or "").strip()
    if not description and service is not None:
        description = service.name
    if not description:
        raise ValidationError({f"{prefix}description": "Description is required."})
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            {f"{prefix}description": f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters."}
        )

    quantity = _clean_quantity(raw.get("quantity", 1), f"{prefix}quantity")

    unit_price = raw.get("unit_price")
    if unit_price in (None, "") and service is not None:
        unit_price = service.price
    if unit_price in (None, ""):
        raise ValidationError({f"{prefix}unit_price": "Unit price is required."})
    unit_price = validate_money(unit_price, field=f"{prefix}unit_price")

    return {
        "service": service,
        "description": description,
        "quantity": quantity,
        "unit_price": unit_price,
    }


def _check_invoice_total(total: Decimal) -> Decimal:
    # items are bounded individually; their sum must still fit total_amount
    if total > INVOICE_TOTAL_MAX:
        raise ValidationError({"items": f"Invoice total cannot exceed {INVOICE_TOTAL_MAX}."})
    return total


def _require_due_date(*, payment_method: str, due_date: date | None) -> None:
    if payment_method == PaymentMethod.INSURANCE_CREDIT and due_date is None:
        raise ValidationError({"due_date": "Due date is required for insurance credit payments."})


# -------------------------------------------------------------------
# Invoices
# -------------------------------------------------------------------

class InvoiceService:
    @staticmethod
    def _lock(invoice_id) -> Invoice:
        invoice = (
            Invoice.objects.select_for_update()
            .filter(id=_clean_uuid(invoice_id, "invoice"))
            .first()
        )
        if invoice is None:
            raise NotFoundError("Invoice not found.")
        return invoice

    @staticmethod
    def _detail(invoice_id: UUID) -> Invoice:
        invoice = get_invoice_or_none(invoice_id=invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found.")
        invoice.balance = balance_from_payments(total=invoice.total_amount, payments=invoice.payments.all())
        return invoice

    @staticmethod
    def _ensure_items_mutable(invoice: Invoice) -> None:
        if invoice.status not in ITEM_MUTABLE_STATUSES:
            raise ValidationError(
                {"invoice": f"Items cannot be changed on an invoice with status '{invoice.status}'."}
            )

    @staticmethod
    def _recalc_total(invoice: Invoice) -> None:
        rows = InvoiceItem.objects.filter(invoice=invoice).values_list("quantity", "unit_price")
        invoice.total_amount = items_total(rows)
        invoice.save(update_fields=["total_amount", "updated_at"])

    @staticmethod
    def _apply_status(invoice: Invoice, *, today: date | None = None) -> tuple[str, str]:
        """
        Re-derive and persist status on a locked invoice. Returns (previous, current).
        """
        today = today or timezone.localdate()
        previous = invoice.status

        invoice.status = derive_status(
            balance=invoice_balance(invoice),
            due_date=invoice.due_date,
            today=today,
        )
        invoice.save(update_fields=["status", "updated_at"])

        if previous != invoice.status:
            logger.info("Invoice %s status %s -> %s", invoice.invoice_number, previous, invoice.status)
        return previous, invoice.status

    @staticmethod
    def _next_invoice_number_locked(*, year: int) -> str:
        """
        Must run inside the invoice-creation transaction: the year's counter
        row stays locked until commit, so concurrent creators queue up.
        """
        seq = InvoiceSequence.objects.select_for_update().filter(year=year).first()
        if seq is None:
            try:
                with transaction.atomic():
                    InvoiceSequence.objects.create(year=year, last_sequence=0)
            except IntegrityError:
                # another transaction created the row first
                pass
            seq = InvoiceSequence.objects.select_for_update().get(year=year)

        seq.last_sequence += 1
        seq.save(update_fields=["last_sequence", "updated_at"])

        prefix = getattr(settings, "BILLING_INVOICE_PREFIX", "WC")
        return f"{prefix}-{year}-{seq.last_sequence:04d}"

    @staticmethod
    @transaction.atomic
    def create_invoice(*, data: dict, actor_user_id: int | None) -> Invoice:
        today = timezone.localdate()

        invoice_type = _clean_choice(data.get("invoice_type"), InvoiceType, "invoice_type", label="invoice type")
        payment_method = _clean_choice(
            data.get("payment_method"), PaymentMethod, "payment_method", label="payment method"
        )

        due_date = _clean_date(data.get("due_date"), "due_date")
        _require_due_date(payment_method=payment_method, due_date=due_date)
        if due_date is not None and due_date < today:
            raise ValidationError({"due_date": "Due date cannot be in the past."})

        raw_items = data.get("items")
        if not isinstance(raw_items, (list, tuple)) or not raw_items:
            raise ValidationError({"items": "At least one item is required."})

        patient = get_patient_or_none(patient_id=_clean_uuid(data.get("patient"), "patient"))
        if patient is None:
            raise NotFoundError("Patient not found.")

        appointment = None
        if data.get("appointment"):
            appointment = get_appointment_or_none(
                appointment_id=_clean_uuid(data["appointment"], "appointment")
            )
            if appointment is None:
                raise NotFoundError("Appointment not found.")
            if appointment.patient_id != patient.id:
                raise ValidationError({"appointment": "Appointment does not belong to this patient."})

        items = [_clean_item(raw, prefix=f"items[{i}].") for i, raw in enumerate(raw_items)]
        total = _check_invoice_total(items_total((i["quantity"], i["unit_price"]) for i in items))

        invoice = Invoice.objects.create(
            invoice_number=InvoiceService._next_invoice_number_locked(year=today.year),
            patient=patient,
            appointment=appointment,
            invoice_type=invoice_type,
            payment_method=payment_method,
            total_amount=total,
            status=InvoiceStatus.PENDING,
            due_date=due_date,
            created_by_id=actor_user_id,
        )

        for position, item in enumerate(items, start=1):
            InvoiceItem.objects.create(invoice=invoice, position=position, **item)

        logger.info(
            "Invoice created number=%s patient=%s total=%s items=%d actor=%s",
            invoice.invoice_number,
            patient.id,
            invoice.total_amount,
            len(items),
            actor_user_id,
        )
        return InvoiceService._detail(invoice.id)

    @staticmethod
    @transaction.atomic
    def update_invoice(*, invoice_id, patch: dict, actor_user_id: int | None) -> Invoice:
        """
        Administrative edit of total_amount / status / due_date / payment_method.

        total_amount is taken as given (items are not re-summed). An explicit
        status is stored as given; otherwise status is re-derived when the
        total or due date moves.
        """
        unknown = sorted(set(patch) - UPDATABLE_INVOICE_FIELDS)
        if unknown:
            raise ValidationError({field: "This field cannot be updated." for field in unknown})

        invoice = InvoiceService._lock(invoice_id)

        if invoice.status == InvoiceStatus.PAID:
            raise ValidationError({"invoice": "Cannot update a paid invoice."})

        changed: list[str] = []

        if "payment_method" in patch:
            invoice.payment_method = _clean_choice(
                patch["payment_method"], PaymentMethod, "payment_method", label="payment method"
            )
            changed.append("payment_method")

        if "status" in patch:
            invoice.status = _clean_choice(patch["status"], InvoiceStatus, "status", label="status")
            changed.append("status")

        if "due_date" in patch:
            invoice.due_date = _clean_date(patch["due_date"], "due_date")
            changed.append("due_date")

        if "total_amount" in patch:
            total = validate_money(patch["total_amount"], field="total_amount", max_value=INVOICE_TOTAL_MAX)
            collected = invoice_balance(invoice).collected
            if total < collected:
                raise ValidationError(
                    {"total_amount": f"Total amount cannot be lower than the amount already collected ({collected})."}
                )
            invoice.total_amount = total
            changed.append("total_amount")

        _require_due_date(payment_method=invoice.payment_method, due_date=invoice.due_date)

        if changed:
            invoice.save(update_fields=[*changed, "updated_at"])

        if "status" not in patch and ("total_amount" in patch or "due_date" in patch):
            InvoiceService._apply_status(invoice)

        logger.info(
            "Invoice updated number=%s fields=%s actor=%s",
            invoice.invoice_number,
            ",".join(changed) or "-",
            actor_user_id,
        )
        return InvoiceService._detail(invoice.id)

    @staticmethod
    @transaction.atomic
    def add_invoice_item(*, invoice_id, item: dict, actor_user_id: int | None = None) -> Invoice:
        invoice = InvoiceService._lock(invoice_id)
        InvoiceService._ensure_items_mutable(invoice)

        cleaned = _clean_item(item)
        rows = list(InvoiceItem.objects.filter(invoice=invoice).values_list("quantity", "unit_price"))
        _check_invoice_total(items_total([*rows, (cleaned["quantity"], cleaned["unit_price"])]))

        last = InvoiceItem.objects.filter(invoice=invoice).aggregate(m=Max("position"))["m"] or 0
        InvoiceItem.objects.create(invoice=invoice, position=last + 1, **cleaned)

        InvoiceService._recalc_total(invoice)
        InvoiceService._apply_status(invoice)

        logger.info(
            "Invoice item added number=%s total=%s actor=%s",
            invoice.invoice_number,
            invoice.total_amount,
            actor_user_id,
        )
        return InvoiceService._detail(invoice.id)

    @staticmethod
    @transaction.atomic
    def remove_invoice_item(*, invoice_id, item_id, actor_user_id: int | None = None) -> Invoice:
        invoice = InvoiceService._lock(invoice_id)
        InvoiceService._ensure_items_mutable(invoice)

        items = list(InvoiceItem.objects.filter(invoice=invoice))
        item_uuid = _clean_uuid(item_id, "item")
        target = next((i for i in items if i.id == item_uuid), None)
        if target is None:
            raise NotFoundError("Item not found in this invoice.")
        if len(items) <= 1:
            raise ValidationError({"items": "Cannot remove the last item from an invoice."})

        new_total = items_total((i.quantity, i.unit_price) for i in items if i.id != target.id)
        collected = invoice_balance(invoice).collected
        if new_total < collected:
            raise ValidationError(
                {"items": f"Removing this item would drop the total below the amount already collected ({collected})."}
            )

        target.delete()
        InvoiceService._recalc_total(invoice)
        InvoiceService._apply_status(invoice)

        logger.info(
            "Invoice item removed number=%s item=%s total=%s actor=%s",
            invoice.invoice_number,
            item_uuid,
            invoice.total_amount,
            actor_user_id,
        )
        return InvoiceService._detail(invoice.id)

    @staticmethod
    def get_invoice_by_id(
        *,
        invoice_id,
        requester_id: int | None,
        requester_role: str,
        requester_permissions: Iterable[str] = (),
    ) -> Invoice:
        invoice = InvoiceService._detail(_clean_uuid(invoice_id, "invoice"))
        check_record_access(
            owner_user_id=invoice.patient.user_id,
            requester_id=requester_id,
            requester_role=requester_role,
            requester_permissions=requester_permissions,
            noun="invoices",
        )
        return invoice

    @staticmethod
    @transaction.atomic
    def update_invoice_status(*, invoice_id, today: date | None = None) -> str:
        """
        Idempotent: re-derives status from the current balance and due date
        and always writes it back.
        """
        invoice = InvoiceService._lock(invoice_id)
        _, current = InvoiceService._apply_status(invoice, today=today)
        return current

    @staticmethod
    def refresh_statuses(*, today: date | None = None) -> int:
        """
        Clock-driven pass (overdue transitions). Each invoice is handled in its
        own short transaction. Returns how many statuses changed.
        """
        today = today or timezone.localdate()
        changed = 0

        ids = list(Invoice.objects.exclude(status=InvoiceStatus.PAID).values_list("id", flat=True))
        for invoice_id in ids:
            with transaction.atomic():
                invoice = InvoiceService._lock(invoice_id)
                previous, current = InvoiceService._apply_status(invoice, today=today)
            if previous != current:
                changed += 1

        logger.info("Invoice status refresh checked=%d changed=%d today=%s", len(ids), changed, today)
        return changed

    @staticmethod
    def get_invoice_stats(*, patient_id: UUID | None = None) -> dict[str, Any]:
        qs = Invoice.objects.all()
        if patient_id:
            qs = qs.filter(patient_id=patient_id)

        by_status = dict.fromkeys(InvoiceStatus.values, 0)
        for row in qs.values("status").annotate(n=Count("id")).order_by():
            by_status[row["status"]] = row["n"]

        by_type = dict.fromkeys(InvoiceType.values, 0)
        for row in qs.values("invoice_type").annotate(n=Count("id")).order_by():
            by_type[row["invoice_type"]] = row["n"]

        billed = round2(qs.aggregate(t=decimal_sum("total_amount"))["t"])
        collected = round2(
            Payment.objects.filter(invoice__in=qs, payment_status=PaymentStatus.COMPLETED)
            .aggregate(t=decimal_sum("amount"))["t"]
        )
        outstanding = max(round2(billed - collected), ZERO)

        return {
            "total_invoices": sum(by_status.values()),
            "invoices_by_status": by_status,
            "invoices_by_type": by_type,
            "total_billed": str(billed),
            "total_collected": str(collected),
            "total_outstanding": str(outstanding),
        }


# -------------------------------------------------------------------
# Payments
# -------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentResult:
    payment: Payment
    invoice_status: str


class PaymentService:
    @staticmethod
    @transaction.atomic
    def record_payment(*, data: dict, recorded_by_user_id: int | None) -> PaymentResult:
        """
        The invoice row is locked before the balance is read, so a second
        payment against the same invoice waits here until this one commits
        and then sees the new balance.
        """
        amount = validate_money(data.get("amount"), field="amount")
        payment_method = _clean_choice(
            data.get("payment_method"), PaymentMethod, "payment_method", label="payment method"
        )

        transaction_id = str(data.get("transaction_id") or "").strip()
        if payment_method in METHODS_REQUIRING_TRANSACTION_ID and not transaction_id:
            raise ValidationError(
                {"transaction_id": "Transaction ID is required for card and bank transfer payments."}
            )
        if len(transaction_id) > TRANSACTION_ID_MAX_LENGTH:
            raise ValidationError(
                {"transaction_id": f"Transaction ID must be at most {TRANSACTION_ID_MAX_LENGTH} characters."}
            )

        payment_status = _clean_choice(
            data.get("payment_status") or PaymentStatus.COMPLETED,
            PaymentStatus,
            "payment_status",
            label="payment status",
        )

        notes = str(data.get("notes") or "").strip()
        if len(notes) > NOTES_MAX_LENGTH:
            raise ValidationError({"notes": f"Notes must be at most {NOTES_MAX_LENGTH} characters."})

        paid_at = _clean_paid_at(data.get("paid_at"))

        invoice = InvoiceService._lock(data.get("invoice"))

        balance = invoice_balance(invoice)
        if amount > balance.available:
            logger.warning(
                "Overpayment rejected invoice=%s amount=%s remaining=%s pending=%s available=%s",
                invoice.invoice_number,
                amount,
                balance.remaining,
                balance.pending,
                balance.available,
            )
            raise OverpaymentError(
                amount=amount,
                remaining_balance=balance.remaining,
                pending_amount=balance.pending,
                available_balance=balance.available,
            )

        payment = Payment.objects.create(
            invoice=invoice,
            amount=amount,
            payment_method=payment_method,
            transaction_id=transaction_id,
            payment_status=payment_status,
            notes=notes,
            paid_at=paid_at,
            recorded_by_id=recorded_by_user_id,
        )

        invoice_status = InvoiceService.update_invoice_status(invoice_id=invoice.id)

        logger.info(
            "Payment recorded invoice=%s amount=%s method=%s status=%s invoice_status=%s by=%s",
            invoice.invoice_number,
            amount,
            payment_method,
            payment_status,
            invoice_status,
            recorded_by_user_id,
        )
        return PaymentResult(payment=payment, invoice_status=invoice_status)

    @staticmethod
    def get_payments_by_invoice(
        *,
        invoice_id,
        requester_id: int | None,
        requester_role: str,
        requester_permissions: Iterable[str] = (),
    ) -> list[Payment]:
        invoice = (
            Invoice.objects.select_related("patient")
            .filter(id=_clean_uuid(invoice_id, "invoice"))
            .first()
        )
        if invoice is None:
            raise NotFoundError("Invoice not found.")

        check_record_access(
            owner_user_id=invoice.patient.user_id,
            requester_id=requester_id,
            requester_role=requester_role,
            requester_permissions=requester_permissions,
            noun="payments",
        )
        return list(invoice.payments.order_by("paid_at", "created_at"))

    @staticmethod
    def get_payment_by_id(
        *,
        payment_id,
        requester_id: int | None,
        requester_role: str,
        requester_permissions: Iterable[str] = (),
    ) -> Payment:
        payment = get_payment_or_none(payment_id=_clean_uuid(payment_id, "payment"))
        if payment is None:
            raise NotFoundError("Payment not found.")

        check_record_access(
            owner_user_id=payment.invoice.patient.user_id,
            requester_id=requester_id,
            requester_role=requester_role,
            requester_permissions=requester_permissions,
            noun="payments",
        )
        return payment

    @staticmethod
    def get_payments_by_patient(
        *,
        patient_id,
        requester_id: int | None,
        requester_role: str,
        requester_permissions: Iterable[str] = (),
        filters: dict | None = None,
    ) -> QuerySet[Payment]:
        patient = get_patient_or_none(patient_id=_clean_uuid(patient_id, "patient"))
        if patient is None:
            raise NotFoundError("Patient not found.")

        check_record_access(
            owner_user_id=patient.user_id,
            requester_id=requester_id,
            requester_role=requester_role,
            requester_permissions=requester_permissions,
            noun="payments",
        )
        filters = {k: v for k, v in (filters or {}).items() if k != "patient_id"}
        return payments_filtered(patient_id=patient.id, **filters)

    @staticmethod
    def get_all_payments(*, filters: dict | None = None) -> QuerySet[Payment]:
        return payments_filtered(**(filters or {}))

    @staticmethod
    def get_payment_stats() -> dict[str, Any]:
        now = timezone.now()
        today = timezone.localdate()

        completed = Payment.objects.filter(payment_status=PaymentStatus.COMPLETED)

        def revenue(qs) -> str:
            return str(round2(qs.aggregate(t=decimal_sum("amount"))["t"]))

        by_method = {m: {"count": 0, "total": "0.00"} for m in PaymentMethod.values}
        rows = completed.values("payment_method").annotate(n=Count("id"), total=decimal_sum("amount")).order_by()
        for row in rows:
            by_method[row["payment_method"]] = {"count": row["n"], "total": str(round2(row["total"]))}

        counts = Payment.objects.aggregate(
            total=Count("id"),
            completed=Count("id", filter=Q(payment_status=PaymentStatus.COMPLETED)),
            pending=Count("id", filter=Q(payment_status=PaymentStatus.PENDING)),
            failed=Count("id", filter=Q(payment_status=PaymentStatus.FAILED)),
        )

        return {
            "total_payments": counts["total"],
            "completed_payments": counts["completed"],
            "pending_payments": counts["pending"],
            "failed_payments": counts["failed"],
            "total_revenue": revenue(completed),
            "revenue_by_method": by_method,
            "revenue_today": revenue(completed.filter(paid_at__date=today)),
            "revenue_last_7_days": revenue(completed.filter(paid_at__gte=now - timedelta(days=7))),
            "revenue_this_month": revenue(completed.filter(paid_at__date__gte=today.replace(day=1))),
        }
