from __future__ import annotations

from datetime import date
from uuid import UUID

from django.utils.dateparse import parse_date
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic_core.billing.api.serializers import (
    InvoiceCreateSerializer,
    InvoiceDetailSerializer,
    InvoiceItemInputSerializer,
    InvoiceReceiptSerializer,
    InvoiceSerializer,
    InvoiceUpdateSerializer,
    PaymentCreateSerializer,
    PaymentResultSerializer,
    PaymentSerializer,
)
from clinic_core.billing.models import Invoice, InvoiceStatus, InvoiceType, Payment, PaymentMethod, PaymentStatus
from clinic_core.billing.selectors import invoices_filtered
from clinic_core.billing.services import InvoiceService, PaymentService
from clinic_core.common.api.exceptions import NotFoundError
from clinic_core.common.api.pagination import paginate
from clinic_core.common.permissions import InvoicePermission, PaymentPermission
from clinic_core.iam.requester import Requester, get_requester


def _uuid_or_none(value: str | None, field_name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        raise DRFValidationError({field_name: "Invalid UUID"})


def _date_or_none(value: str | None, field_name: str) -> date | None:
    if not value:
        return None
    try:
        parsed = parse_date(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise DRFValidationError({field_name: "Invalid date. Use YYYY-MM-DD."})
    return parsed


def _choice_or_none(value: str | None, choices, field_name: str) -> str | None:
    if not value:
        return None
    if value not in choices.values:
        raise DRFValidationError({field_name: f"Must be one of: {', '.join(choices.values)}"})
    return value


def _requester_kwargs(requester: Requester) -> dict:
    return {
        "requester_id": requester.user_id,
        "requester_role": requester.role,
        "requester_permissions": requester.permissions,
    }


def _date_range(request) -> dict:
    start_date = _date_or_none(request.query_params.get("start_date"), "start_date")
    end_date = _date_or_none(request.query_params.get("end_date"), "end_date")
    if start_date and end_date and start_date > end_date:
        raise DRFValidationError({"end_date": "end_date must be on or after start_date."})
    return {"start_date": start_date, "end_date": end_date}


DATE_RANGE_PARAMETERS = [
    OpenApiParameter(name="start_date", type=OpenApiTypes.DATE, location=OpenApiParameter.QUERY, required=False),
    OpenApiParameter(name="end_date", type=OpenApiTypes.DATE, location=OpenApiParameter.QUERY, required=False),
    OpenApiParameter(name="page", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
    OpenApiParameter(
        name="limit",
        type=OpenApiTypes.INT,
        location=OpenApiParameter.QUERY,
        required=False,
        description="Page size (max 100).",
    ),
]


class InvoiceViewSet(viewsets.GenericViewSet):
    """
    Billing v1 invoices:
    - list/retrieve (patients see their own only)
    - create with items
    - partial_update (administrative override)
    - items: POST add, DELETE remove
    - payments / receipt for one invoice
    - stats (staff) and my/stats (patient)
    """
    serializer_class = InvoiceSerializer
    queryset = Invoice.objects.none()
    permission_classes = [IsAuthenticated, InvoicePermission]

    @extend_schema(
        tags=["Billing"],
        responses={200: InvoiceSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="patient", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(
                name="invoice_type", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False
            ),
            *DATE_RANGE_PARAMETERS,
        ],
    )
    def list(self, request):
        requester = get_requester(request)

        patient_id = _uuid_or_none(request.query_params.get("patient"), "patient")
        if requester.is_patient:
            if requester.patient_id is None:
                return paginate(request, Invoice.objects.none(), InvoiceSerializer)
            patient_id = requester.patient_id

        qs = invoices_filtered(
            patient_id=patient_id,
            status=_choice_or_none(request.query_params.get("status"), InvoiceStatus, "status"),
            invoice_type=_choice_or_none(request.query_params.get("invoice_type"), InvoiceType, "invoice_type"),
            **_date_range(request),
        )
        return paginate(request, qs, InvoiceSerializer)

    @extend_schema(
        tags=["Billing"],
        responses={200: InvoiceDetailSerializer},
    )
    def retrieve(self, request, pk=None):
        inv = InvoiceService.get_invoice_by_id(invoice_id=pk, **_requester_kwargs(get_requester(request)))
        return Response(InvoiceDetailSerializer(inv).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        request=InvoiceCreateSerializer,
        responses={201: InvoiceDetailSerializer},
    )
    def create(self, request):
        ser = InvoiceCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        inv = InvoiceService.create_invoice(data=ser.validated_data, actor_user_id=request.user.id)
        return Response(InvoiceDetailSerializer(inv).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        tags=["Billing"],
        request=InvoiceUpdateSerializer,
        responses={200: InvoiceDetailSerializer},
    )
    def partial_update(self, request, pk=None):
        ser = InvoiceUpdateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        inv = InvoiceService.update_invoice(
            invoice_id=pk,
            patch=dict(ser.validated_data),
            actor_user_id=request.user.id,
        )
        return Response(InvoiceDetailSerializer(inv).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        responses={200: OpenApiTypes.OBJECT},
    )
    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request):
        return Response(InvoiceService.get_invoice_stats(), status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        responses={200: OpenApiTypes.OBJECT},
    )
    @action(detail=False, methods=["get"], url_path="my/stats")
    def my_stats(self, request):
        requester = get_requester(request)
        if requester.patient_id is None:
            raise NotFoundError("No patient record is linked to this account.")
        return Response(
            InvoiceService.get_invoice_stats(patient_id=requester.patient_id),
            status=status.HTTP_200_OK,
        )

    @extend_schema(
        tags=["Billing"],
        request=InvoiceItemInputSerializer,
        responses={201: InvoiceDetailSerializer},
    )
    @action(detail=True, methods=["post"], url_path="items")
    def items(self, request, pk=None):
        """
        /billing/invoices/<invoice_id>/items/
        Adds a line and returns the invoice with its recomputed total.
        """
        ser = InvoiceItemInputSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        inv = InvoiceService.add_invoice_item(
            invoice_id=pk,
            item=dict(ser.validated_data),
            actor_user_id=request.user.id,
        )
        return Response(InvoiceDetailSerializer(inv).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        tags=["Billing"],
        responses={200: InvoiceDetailSerializer},
    )
    @action(detail=True, methods=["delete"], url_path=r"items/(?P<item_id>[^/.]+)")
    def remove_item(self, request, pk=None, item_id=None):
        inv = InvoiceService.remove_invoice_item(
            invoice_id=pk,
            item_id=item_id,
            actor_user_id=request.user.id,
        )
        return Response(InvoiceDetailSerializer(inv).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        responses={200: PaymentSerializer(many=True)},
    )
    @action(detail=True, methods=["get"], url_path="payments")
    def payments(self, request, pk=None):
        payments = PaymentService.get_payments_by_invoice(
            invoice_id=pk,
            **_requester_kwargs(get_requester(request)),
        )
        return Response(PaymentSerializer(payments, many=True).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        responses={200: InvoiceReceiptSerializer},
    )
    @action(detail=True, methods=["get"], url_path="receipt")
    def receipt(self, request, pk=None):
        inv = InvoiceService.get_invoice_by_id(invoice_id=pk, **_requester_kwargs(get_requester(request)))
        return Response(InvoiceReceiptSerializer(inv).data, status=status.HTTP_200_OK)


class PaymentViewSet(viewsets.GenericViewSet):
    """
    Billing v1 payments (append-only):
    - list/retrieve (patients see their own only)
    - create = record payment against an invoice
    - invoice/<invoice_id> alias
    - stats
    """
    serializer_class = PaymentSerializer
    queryset = Payment.objects.none()
    permission_classes = [IsAuthenticated, PaymentPermission]

    @extend_schema(
        tags=["Billing"],
        responses={200: PaymentSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="invoice", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="patient", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(
                name="payment_method", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False
            ),
            OpenApiParameter(
                name="payment_status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False
            ),
            *DATE_RANGE_PARAMETERS,
        ],
    )
    def list(self, request):
        requester = get_requester(request)

        filters = {
            "invoice_id": _uuid_or_none(request.query_params.get("invoice"), "invoice"),
            "payment_method": _choice_or_none(
                request.query_params.get("payment_method"), PaymentMethod, "payment_method"
            ),
            "payment_status": _choice_or_none(
                request.query_params.get("payment_status"), PaymentStatus, "payment_status"
            ),
            **_date_range(request),
        }

        if requester.is_patient:
            if requester.patient_id is None:
                return paginate(request, Payment.objects.none(), PaymentSerializer)
            qs = PaymentService.get_payments_by_patient(
                patient_id=requester.patient_id,
                filters=filters,
                **_requester_kwargs(requester),
            )
        else:
            filters["patient_id"] = _uuid_or_none(request.query_params.get("patient"), "patient")
            qs = PaymentService.get_all_payments(filters=filters)

        return paginate(request, qs, PaymentSerializer)

    @extend_schema(
        tags=["Billing"],
        responses={200: PaymentSerializer},
    )
    def retrieve(self, request, pk=None):
        pay = PaymentService.get_payment_by_id(payment_id=pk, **_requester_kwargs(get_requester(request)))
        return Response(PaymentSerializer(pay).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        request=PaymentCreateSerializer,
        responses={201: PaymentResultSerializer},
    )
    def create(self, request):
        ser = PaymentCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        result = PaymentService.record_payment(data=ser.validated_data, recorded_by_user_id=request.user.id)
        return Response(
            {
                "payment": PaymentSerializer(result.payment).data,
                "invoice_status": result.invoice_status,
            },
            status=status.HTTP_201_CREATED,
        )

    @extend_schema(
        tags=["Billing"],
        responses={200: OpenApiTypes.OBJECT},
    )
    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request):
        return Response(PaymentService.get_payment_stats(), status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        responses={200: PaymentSerializer(many=True)},
    )
    @action(detail=False, methods=["get"], url_path=r"invoice/(?P<invoice_id>[^/.]+)")
    def by_invoice(self, request, invoice_id=None):
        payments = PaymentService.get_payments_by_invoice(
            invoice_id=invoice_id,
            **_requester_kwargs(get_requester(request)),
        )
        return Response(PaymentSerializer(payments, many=True).data, status=status.HTTP_200_OK)
