# clinic_core/iam/requester.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

from clinic_core.common.api.exceptions import NotAuthorizedError
from clinic_core.iam.models import ADMIN_ROLES, Permission, PermissionCode, RoleCode, UserProfile


@dataclass(frozen=True)
class Requester:
    """
    Who is asking: identity, role and granted permission codes.
    Resolved once per request and passed down to the billing services.
    """
    user_id: int | None
    role: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    patient_id: UUID | None = None

    @property
    def is_patient(self) -> bool:
        return self.role == RoleCode.PATIENT

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def has_permission(self, code: str) -> bool:
        return code in self.permissions

    @property
    def can_process_payments(self) -> bool:
        return self.is_admin or self.has_permission(PermissionCode.PROCESS_PAYMENTS)


def requester_for_user(user) -> Requester:
    """
    Superusers are treated as admin.
    Users without an active profile resolve to staff with no permissions,
    which grants nothing on billing records.
    """
    if not user or not getattr(user, "is_authenticated", False):
        return Requester(user_id=None, role="", permissions=frozenset())

    if getattr(user, "is_superuser", False):
        return Requester(user_id=user.id, role=RoleCode.SUPER_ADMIN, permissions=frozenset())

    profile = (
        UserProfile.objects.select_related("role")
        .filter(user_id=user.id, is_active=True, role__is_active=True)
        .first()
    )
    if profile is None:
        return Requester(user_id=user.id, role=RoleCode.STAFF, permissions=frozenset())

    codes = Permission.objects.filter(permission_roles__role=profile.role).values_list("code", flat=True)

    patient_id = None
    if profile.role.code == RoleCode.PATIENT:
        from clinic_core.patients.models import Patient

        patient_id = Patient.objects.filter(user_id=user.id).values_list("id", flat=True).first()

    return Requester(
        user_id=user.id,
        role=profile.role.code,
        permissions=frozenset(codes),
        patient_id=patient_id,
    )


def get_requester(request) -> Requester:
    """
    Cached on the request so permission classes and views share one lookup.
    """
    cached = getattr(request, "requester", None)
    if isinstance(cached, Requester):
        return cached
    requester = requester_for_user(getattr(request, "user", None))
    setattr(request, "requester", requester)
    return requester


def check_record_access(
    *,
    owner_user_id: int | None,
    requester_id: int | None,
    requester_role: str,
    requester_permissions: Iterable[str] = (),
    noun: str = "records",
) -> None:
    """
    Shared read rule for invoices and payments:
    - patients may only read records billed to themselves
    - everyone else needs admin role or the process_payments permission
    """
    if requester_role == RoleCode.PATIENT:
        if owner_user_id is None or owner_user_id != requester_id:
            raise NotAuthorizedError(f"Access denied: You can only view your own {noun}.")
        return

    if requester_role in ADMIN_ROLES:
        return

    if PermissionCode.PROCESS_PAYMENTS not in set(requester_permissions or ()):
        raise NotAuthorizedError("Access denied: Insufficient permissions.")
