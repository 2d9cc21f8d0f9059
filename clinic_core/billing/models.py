# clinic_core/billing/models.py
from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone

from clinic_core.appointments.models import Appointment
from clinic_core.billing.money import MONEY_MAX, MONEY_MIN, line_total
from clinic_core.catalog.models import Service
from clinic_core.common.models import UUIDModel
from clinic_core.patients.models import Patient


class InvoiceType(models.TextChoices):
    OPD = "opd", "Outpatient"
    ADMISSION = "admission", "Admission"
    RUNNING_BILL = "running_bill", "Running Bill"


class PaymentMethod(models.TextChoices):
    CASH = "cash", "Cash"
    CARD = "card", "Card"
    BANK_TRANSFER = "bank_transfer", "Bank Transfer"
    INSURANCE = "insurance", "Insurance"
    INSURANCE_CREDIT = "insurance_credit", "Insurance Credit"


# Methods that must carry an external transaction reference.
METHODS_REQUIRING_TRANSACTION_ID = frozenset({PaymentMethod.CARD, PaymentMethod.BANK_TRANSFER})


class InvoiceStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PARTIALLY_PAID = "partially_paid", "Partially Paid"
    PAID = "paid", "Paid"
    OVERDUE = "overdue", "Overdue"


# Items may only be added/removed while the invoice is still collecting.
ITEM_MUTABLE_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.PARTIALLY_PAID})


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class InvoiceSequence(models.Model):
    """
    One counter row per calendar year backing WC-YYYY-NNNN numbers.
    Incremented under row lock inside the invoice-creation transaction.
    """
    year = models.PositiveIntegerField(primary_key=True)
    last_sequence = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_invoice_sequence"

    def __str__(self) -> str:
        return f"{self.year}:{self.last_sequence}"


class Invoice(UUIDModel):
    """
    Billing document for services rendered to a patient.

    total_amount is the sum of item line totals, rewritten whenever items
    change. status is derived from payments and due date (see
    InvoiceService.update_invoice_status) except for admin overrides.
    """
    invoice_number = models.CharField(max_length=32, unique=True)

    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name="invoices")
    appointment = models.ForeignKey(
        Appointment,
        on_delete=models.SET_NULL,
        related_name="invoices",
        null=True,
        blank=True,
    )

    invoice_type = models.CharField(max_length=32, choices=InvoiceType.choices)
    payment_method = models.CharField(max_length=32, choices=PaymentMethod.choices)

    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    status = models.CharField(
        max_length=32,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.PENDING,
        db_index=True,
    )

    due_date = models.DateField(null=True, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="prepared_invoices",
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "billing_invoice"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["patient", "status"], name="inv_patient_status_idx"),
            models.Index(fields=["status", "due_date"], name="inv_status_due_idx"),
            models.Index(fields=["patient", "created_at"], name="inv_patient_created_idx"),
            models.Index(fields=["invoice_type", "created_at"], name="inv_type_created_idx"),
        ]

    def __str__(self) -> str:
        return self.invoice_number


class InvoiceItem(UUIDModel):
    """
    Snapshot billing line. unit_price is copied at billing time;
    total_price is always quantity * unit_price rounded to cents.
    """
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    service = models.ForeignKey(
        Service,
        on_delete=models.SET_NULL,
        related_name="invoice_items",
        null=True,
        blank=True,
    )

    # 1-based insertion order within the invoice
    position = models.PositiveIntegerField(default=1)

    description = models.CharField(max_length=500)
    quantity = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(1000)],
    )
    unit_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(MONEY_MIN), MaxValueValidator(MONEY_MAX)],
    )
    total_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        db_table = "billing_invoice_item"
        ordering = ["position", "created_at"]
        indexes = [
            models.Index(fields=["invoice", "position"], name="inv_item_invoice_pos_idx"),
        ]

    def save(self, *args, **kwargs):
        self.total_price = line_total(self.quantity, self.unit_price)
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and ("quantity" in update_fields or "unit_price" in update_fields):
            kwargs["update_fields"] = {*update_fields, "total_price"}
        super().save(*args, **kwargs)


class Payment(UUIDModel):
    """
    Funds recorded against an invoice. Append-only: there is no update or
    delete path; corrections are new records or admin invoice edits.
    """
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="payments")
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(MONEY_MIN), MaxValueValidator(MONEY_MAX)],
    )
    payment_method = models.CharField(max_length=32, choices=PaymentMethod.choices)
    transaction_id = models.CharField(max_length=255, blank=True, db_index=True)
    payment_status = models.CharField(
        max_length=16,
        choices=PaymentStatus.choices,
        default=PaymentStatus.COMPLETED,
        db_index=True,
    )
    notes = models.TextField(blank=True)

    paid_at = models.DateTimeField(default=timezone.now)
    recorded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="recorded_payments",
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "billing_payment"
        ordering = ["paid_at", "created_at"]
        indexes = [
            models.Index(fields=["invoice", "payment_status"], name="pay_invoice_status_idx"),
            models.Index(fields=["payment_method", "paid_at"], name="pay_method_paid_at_idx"),
        ]

    def __str__(self) -> str:
        return f"Payment({self.invoice_id}, {self.amount}, {self.payment_status})"
