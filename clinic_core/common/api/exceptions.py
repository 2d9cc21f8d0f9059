# clinic_core/common/api/exceptions.py
from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any

from django.db import DatabaseError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException, NotAuthenticated, PermissionDenied, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


def ensure_request_id(request) -> str:
    """
    Returns request.request_id, generating one on first use.
    Middleware and the exception handler share the same id through this.
    """
    if request is None:
        return uuid.uuid4().hex

    rid = getattr(request, "request_id", None)
    if not rid:
        rid = uuid.uuid4().hex
        request.request_id = rid
    return rid


def build_error_envelope(*, request=None, code: str, message: str, details: Any = None) -> dict[str, Any]:
    """{"error": {code, message, details, request_id}} for every non-2xx API response."""
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": ensure_request_id(request),
        }
    }


class NotFoundError(APIException):
    """
    Referenced invoice / payment / patient / appointment / service does not exist.
    """
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."
    default_code = "not_found"


class NotAuthorizedError(PermissionDenied):
    """
    Requester lacks role, permission or ownership for the target record.
    """
    default_detail = "You do not have permission to access this record."


class ConflictError(APIException):
    """
    409 Conflict that still flows through the global exception handler.
    Use when business rules block an action.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict."
    default_code = "conflict"

    def __init__(self, detail=None, code=None):
        super().__init__(detail=detail or self.default_detail, code=code or self.default_code)


class OverpaymentError(ConflictError):
    """
    Payment amount exceeds the invoice's available balance.

    Carries the numbers the caller needs to explain the rejection; the payment
    is never clamped to the available balance.
    """
    default_detail = "Payment amount exceeds the available balance."
    default_code = "overpayment"

    def __init__(
        self,
        *,
        amount: Decimal,
        remaining_balance: Decimal,
        pending_amount: Decimal,
        available_balance: Decimal,
    ):
        self.amount = amount
        self.remaining_balance = remaining_balance
        self.pending_amount = pending_amount
        self.available_balance = available_balance
        super().__init__(
            detail=(
                f"Payment amount ({amount}) exceeds available balance ({available_balance}). "
                f"Remaining: {remaining_balance}, Pending: {pending_amount}"
            )
        )

    def as_details(self) -> dict[str, str]:
        return {
            "amount": str(self.amount),
            "remaining_balance": str(self.remaining_balance),
            "pending_amount": str(self.pending_amount),
            "available_balance": str(self.available_balance),
        }


# First match wins; order matters (NotAuthorizedError is a PermissionDenied).
ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (ValidationError, "validation_error"),
    (NotAuthenticated, "not_authenticated"),
    (PermissionDenied, "permission_denied"),
    (Http404, "not_found"),
)


def _code_for(exc: Exception) -> str:
    for exc_class, code in ERROR_CODES:
        if isinstance(exc, exc_class):
            return code
    if isinstance(exc, APIException):
        return exc.default_code or "api_error"
    return "error"


def _message_and_details(exc: Exception, data: Any) -> tuple[str, Any]:
    """
    {"detail": "..."}        -> message=detail, details=None
    {"detail": "...", ...}   -> message=detail, details=the remaining keys
    anything else            -> generic message, details=data (field errors)

    Field errors are always lists, whether raised by a serializer or a service.
    """
    if isinstance(exc, OverpaymentError):
        return str(exc.detail), exc.as_details()

    if isinstance(data, dict) and "detail" in data:
        rest = {k: v for k, v in data.items() if k != "detail"}
        return str(data["detail"]), rest or None

    if isinstance(exc, ValidationError) and isinstance(data, dict):
        data = {k: v if isinstance(v, (list, dict)) else [v] for k, v in data.items()}

    return "Request failed.", data


def api_exception_handler(exc: Exception, context: dict[str, Any]):
    request = context.get("request")
    response = drf_exception_handler(exc, context)

    if response is None:
        # DatabaseError lands here too; the atomic block has already rolled back.
        label = "Database failure" if isinstance(exc, DatabaseError) else "Unhandled error"
        logger.exception("%s rid=%s", label, ensure_request_id(request))
        return Response(
            build_error_envelope(request=request, code="server_error", message="Unexpected server error."),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    message, details = _message_and_details(exc, response.data)
    return Response(
        build_error_envelope(request=request, code=_code_for(exc), message=message, details=details),
        status=response.status_code,
        headers=response.headers,
    )
