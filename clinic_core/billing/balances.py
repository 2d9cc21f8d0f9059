# clinic_core/billing/balances.py
"""
Derived invoice values: paid / pending / remaining / available and status.

Pure functions take plain values so every read and write boundary derives
them the same way. `invoice_balance()` is the one place that aggregates
payments from the database.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable

from django.db.models import DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce

from clinic_core.billing.models import Invoice, InvoiceStatus, Payment, PaymentStatus
from clinic_core.billing.money import ZERO, is_settled, line_total, money_sum, round2


@dataclass(frozen=True)
class InvoiceBalance:
    total: Decimal
    paid: Decimal
    pending: Decimal
    remaining: Decimal
    available: Decimal

    @property
    def is_settled(self) -> bool:
        return is_settled(self.remaining)

    @property
    def collected(self) -> Decimal:
        """Completed plus reserved (pending) amounts."""
        return round2(self.paid + self.pending)


def items_total(items: Iterable[tuple[int, Decimal]]) -> Decimal:
    """
    Sum of per-line totals; each line is rounded to cents before summing.
    """
    return money_sum(line_total(quantity, unit_price) for quantity, unit_price in items)


def compute_balance(*, total: Decimal, paid: Decimal, pending: Decimal) -> InvoiceBalance:
    total = round2(total)
    paid = round2(paid)
    pending = round2(pending)

    remaining = round2(total - paid)
    if remaining < ZERO:
        remaining = ZERO

    return InvoiceBalance(
        total=total,
        paid=paid,
        pending=pending,
        remaining=remaining,
        available=round2(remaining - pending),
    )


def derive_status(*, balance: InvoiceBalance, due_date: date | None, today: date) -> str:
    """
    paid            -> remaining is zero within half a cent
    overdue         -> due date passed and something is still owed
    partially_paid  -> some completed payment exists
    pending         -> nothing paid yet
    """
    if balance.is_settled:
        return InvoiceStatus.PAID
    if due_date is not None and due_date < today:
        return InvoiceStatus.OVERDUE
    if balance.paid > ZERO:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.PENDING


def decimal_sum(field: str = "amount", *, condition: Q | None = None):
    """
    SUM(field) that yields 0.00 instead of NULL over an empty set.
    """
    return Coalesce(
        Sum(field, filter=condition),
        Value(ZERO),
        output_field=DecimalField(max_digits=14, decimal_places=2),
    )


def payment_totals(*, invoice_id) -> tuple[Decimal, Decimal]:
    """
    (completed sum, pending sum) for one invoice. Failed payments count for nothing.
    """
    agg = Payment.objects.filter(invoice_id=invoice_id).aggregate(
        paid=decimal_sum(condition=Q(payment_status=PaymentStatus.COMPLETED)),
        pending=decimal_sum(condition=Q(payment_status=PaymentStatus.PENDING)),
    )
    return Decimal(agg["paid"]), Decimal(agg["pending"])


def invoice_balance(invoice: Invoice) -> InvoiceBalance:
    paid, pending = payment_totals(invoice_id=invoice.id)
    return compute_balance(total=invoice.total_amount, paid=paid, pending=pending)


def balance_from_payments(*, total: Decimal, payments: Iterable[Payment]) -> InvoiceBalance:
    """
    Same derivation over already-loaded payment rows (prefetched detail reads).
    """
    payments = list(payments)
    return compute_balance(
        total=total,
        paid=money_sum(p.amount for p in payments if p.payment_status == PaymentStatus.COMPLETED),
        pending=money_sum(p.amount for p in payments if p.payment_status == PaymentStatus.PENDING),
    )
