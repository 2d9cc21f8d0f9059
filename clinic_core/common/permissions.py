# clinic_core/common/permissions.py

from __future__ import annotations

from rest_framework.permissions import SAFE_METHODS, BasePermission

from clinic_core.iam.models import PermissionCode, RoleCode
from clinic_core.iam.requester import get_requester

# Audience markers used in allowed_per_action.
# A requester matches an entry by role code or by a granted permission code.
PATIENT = RoleCode.PATIENT.value
PROCESS_PAYMENTS = PermissionCode.PROCESS_PAYMENTS.value


class BaseRolePermission(BasePermission):
    """
    Action-level gate for billing endpoints.

    Key behavior:
    - Requires authentication.
    - admin / super_admin (and Django superusers) bypass.
    - Everyone else must match one entry of allowed_per_action[action],
      either by role code (e.g. "patient") or by permission code
      (e.g. "process_payments").
    - Unknown SAFE actions fall back to list/retrieve; unknown writes are denied.

    Ownership (patient reads only their own records) is enforced by the
    services once the record is loaded.
    """
    message = "Access denied: Insufficient permissions."

    # Override in subclasses: action -> set of role / permission codes
    allowed_per_action: dict[str, set[str]] = {
        "list": {PROCESS_PAYMENTS},
        "retrieve": {PROCESS_PAYMENTS},
    }

    def _infer_action(self, request, view) -> str | None:
        action = getattr(view, "action", None)
        if action:
            return action

        kwargs = getattr(view, "kwargs", {}) or {}
        is_detail = "pk" in kwargs
        method = request.method.upper()
        if method in SAFE_METHODS:
            return "retrieve" if is_detail else "list"
        if method == "POST":
            return "create"
        if method == "PATCH":
            return "partial_update"
        if method == "DELETE":
            return "destroy"
        return None

    def has_permission(self, request, view) -> bool:
        user = request.user
        if not user or not getattr(user, "is_authenticated", False):
            return False

        requester = get_requester(request)
        if requester.is_admin:
            return True

        action = self._infer_action(request, view)
        allowed = self.allowed_per_action.get(action)

        if allowed is None and request.method in SAFE_METHODS:
            is_detail = "pk" in (getattr(view, "kwargs", {}) or {})
            allowed = self.allowed_per_action.get("retrieve" if is_detail else "list")

        if allowed is None:
            return False

        if requester.role in allowed:
            return True
        return any(requester.has_permission(code) for code in allowed)


class InvoicePermission(BaseRolePermission):
    """Permissions for invoice endpoints"""
    allowed_per_action = {
        "list": {PATIENT, PROCESS_PAYMENTS},
        "retrieve": {PATIENT, PROCESS_PAYMENTS},
        "payments": {PATIENT, PROCESS_PAYMENTS},
        "receipt": {PATIENT, PROCESS_PAYMENTS},
        "my_stats": {PATIENT},
        "create": {PROCESS_PAYMENTS},
        "partial_update": {PROCESS_PAYMENTS},
        "items": {PROCESS_PAYMENTS},
        "remove_item": {PROCESS_PAYMENTS},
        "stats": {PROCESS_PAYMENTS},
    }


class PaymentPermission(BaseRolePermission):
    """Permissions for payment endpoints"""
    allowed_per_action = {
        "list": {PATIENT, PROCESS_PAYMENTS},
        "retrieve": {PATIENT, PROCESS_PAYMENTS},
        "by_invoice": {PATIENT, PROCESS_PAYMENTS},
        "create": {PROCESS_PAYMENTS},
        "stats": {PROCESS_PAYMENTS},
    }
