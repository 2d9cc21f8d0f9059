# clinic_core/billing/admin.py
from __future__ import annotations

from django.contrib import admin

from clinic_core.billing.models import Invoice, InvoiceItem, InvoiceSequence, Payment


class ReadOnlyAdminMixin:
    """
    Billing rows change only through the services (locks, totals, status).
    """

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class InvoiceItemInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = InvoiceItem
    extra = 0
    fields = ("position", "description", "service", "quantity", "unit_price", "total_price")
    readonly_fields = fields


@admin.register(Invoice)
class InvoiceAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "invoice_number",
        "patient",
        "invoice_type",
        "payment_method",
        "total_amount",
        "status",
        "due_date",
        "created_at",
    )
    list_filter = ("status", "invoice_type", "payment_method", "created_at")
    search_fields = ("invoice_number", "patient__full_name", "patient__mrn")
    ordering = ("-created_at",)
    inlines = (InvoiceItemInline,)


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "invoice",
        "amount",
        "payment_method",
        "payment_status",
        "transaction_id",
        "paid_at",
        "recorded_by",
    )
    list_filter = ("payment_status", "payment_method", "paid_at")
    search_fields = ("id", "transaction_id", "invoice__invoice_number")
    ordering = ("-paid_at",)


@admin.register(InvoiceSequence)
class InvoiceSequenceAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("year", "last_sequence", "updated_at")
    ordering = ("-year",)
