# clinic_core/iam/services.py
from __future__ import annotations

from django.db import transaction

from clinic_core.iam.models import Permission, PermissionCode, Role, RoleCode, RolePermission

DEFAULT_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    RoleCode.PATIENT: (),
    RoleCode.STAFF: (),
    RoleCode.ADMIN: (PermissionCode.PROCESS_PAYMENTS, PermissionCode.VIEW_REPORTS),
    RoleCode.SUPER_ADMIN: (PermissionCode.PROCESS_PAYMENTS, PermissionCode.VIEW_REPORTS),
}


class RoleService:
    @staticmethod
    @transaction.atomic
    def ensure_defaults() -> int:
        """
        Idempotently create the built-in roles and permission codes.
        Returns how many rows were newly created.
        """
        created = 0

        perms = {}
        for code, label in PermissionCode.choices:
            perm, was_created = Permission.objects.get_or_create(code=code, defaults={"description": label})
            perms[code] = perm
            created += 1 if was_created else 0

        for code, label in RoleCode.choices:
            role, was_created = Role.objects.get_or_create(code=code, defaults={"name": label, "is_active": True})
            created += 1 if was_created else 0

            for perm_code in DEFAULT_ROLE_PERMISSIONS.get(code, ()):
                _, was_created = RolePermission.objects.get_or_create(role=role, permission=perms[perm_code])
                created += 1 if was_created else 0

        return created

    @staticmethod
    def grant(*, role: Role, permission_code: str) -> RolePermission:
        perm, _ = Permission.objects.get_or_create(code=permission_code)
        rp, _ = RolePermission.objects.get_or_create(role=role, permission=perm)
        return rp
