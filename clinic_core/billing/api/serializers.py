# clinic_core/billing/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from clinic_core.billing.balances import balance_from_payments
from clinic_core.billing.models import (
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from clinic_core.billing.money import INVOICE_TOTAL_MAX, MONEY_MAX, MONEY_MIN


class InvoiceItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceItem
        fields = [
            "id",
            "invoice",
            "service",
            "position",
            "description",
            "quantity",
            "unit_price",
            "total_price",
            "created_at",
        ]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source="invoice.invoice_number", read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "invoice",
            "invoice_number",
            "amount",
            "payment_method",
            "transaction_id",
            "payment_status",
            "notes",
            "paid_at",
            "recorded_by",
            "created_at",
        ]
        read_only_fields = fields


class InvoiceBalanceSerializer(serializers.Serializer):
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2, source="total")
    paid_amount = serializers.DecimalField(max_digits=14, decimal_places=2, source="paid")
    pending_amount = serializers.DecimalField(max_digits=14, decimal_places=2, source="pending")
    remaining_balance = serializers.DecimalField(max_digits=14, decimal_places=2, source="remaining")
    available_balance = serializers.DecimalField(max_digits=14, decimal_places=2, source="available")


class InvoiceSerializer(serializers.ModelSerializer):
    """
    List shape: header only.
    """
    patient_name = serializers.CharField(source="patient.full_name", read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "patient",
            "patient_name",
            "appointment",
            "invoice_type",
            "payment_method",
            "total_amount",
            "status",
            "due_date",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InvoiceDetailSerializer(InvoiceSerializer):
    items = InvoiceItemSerializer(many=True, read_only=True)
    payments = PaymentSerializer(many=True, read_only=True)
    balance = serializers.SerializerMethodField()

    class Meta(InvoiceSerializer.Meta):
        fields = InvoiceSerializer.Meta.fields + ["items", "payments", "balance"]
        read_only_fields = fields

    def get_balance(self, obj) -> dict:
        balance = getattr(obj, "balance", None)
        if balance is None:
            balance = balance_from_payments(total=obj.total_amount, payments=obj.payments.all())
        return InvoiceBalanceSerializer(balance).data


class InvoiceReceiptSerializer(InvoiceDetailSerializer):
    """
    Fully assembled invoice handed to the receipt renderer.
    """
    patient_mrn = serializers.CharField(source="patient.mrn", read_only=True)
    patient_phone = serializers.CharField(source="patient.phone", read_only=True)
    patient_email = serializers.CharField(source="patient.email", read_only=True)

    class Meta(InvoiceDetailSerializer.Meta):
        fields = InvoiceDetailSerializer.Meta.fields + ["patient_mrn", "patient_phone", "patient_email"]
        read_only_fields = fields


class InvoiceItemInputSerializer(serializers.Serializer):
    """
    unit_price may be omitted when service is given; the catalog price is copied.
    """
    service = serializers.UUIDField(required=False, allow_null=True)
    description = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")
    quantity = serializers.IntegerField(min_value=1, max_value=1000, default=1)
    unit_price = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=MONEY_MIN,
        max_value=MONEY_MAX,
        required=False,
        allow_null=True,
    )


class InvoiceCreateSerializer(serializers.Serializer):
    patient = serializers.UUIDField()
    appointment = serializers.UUIDField(required=False, allow_null=True)
    invoice_type = serializers.ChoiceField(choices=InvoiceType.choices)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    due_date = serializers.DateField(required=False, allow_null=True)
    items = InvoiceItemInputSerializer(many=True, allow_empty=False)


class InvoiceUpdateSerializer(serializers.Serializer):
    total_amount = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=MONEY_MIN,
        max_value=INVOICE_TOTAL_MAX,
        required=False,
    )
    status = serializers.ChoiceField(choices=InvoiceStatus.choices, required=False)
    due_date = serializers.DateField(required=False, allow_null=True)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices, required=False)

    def validate(self, attrs):
        initial = getattr(self, "initial_data", None) or {}
        unknown = sorted(set(initial) - set(self.fields))
        if unknown:
            raise serializers.ValidationError({field: "This field cannot be updated." for field in unknown})
        if not attrs:
            raise serializers.ValidationError("Provide at least one field to update.")
        return attrs


class PaymentCreateSerializer(serializers.Serializer):
    invoice = serializers.UUIDField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=MONEY_MIN, max_value=MONEY_MAX)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    transaction_id = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    payment_status = serializers.ChoiceField(choices=PaymentStatus.choices, default=PaymentStatus.COMPLETED)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default="")
    paid_at = serializers.DateTimeField(required=False, allow_null=True)


class PaymentResultSerializer(serializers.Serializer):
    payment = PaymentSerializer()
    invoice_status = serializers.ChoiceField(choices=InvoiceStatus.choices)
