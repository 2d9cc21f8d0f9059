# clinic_core/iam/models.py
import uuid

from django.conf import settings
from django.db import models


class RoleCode(models.TextChoices):
    PATIENT = "patient", "Patient"
    STAFF = "staff", "Staff"
    ADMIN = "admin", "Administrator"
    SUPER_ADMIN = "super_admin", "Super Administrator"


ADMIN_ROLES = frozenset({RoleCode.ADMIN, RoleCode.SUPER_ADMIN})


class PermissionCode(models.TextChoices):
    PROCESS_PAYMENTS = "process_payments", "Process payments and invoices"
    VIEW_REPORTS = "view_reports", "View financial reports"


class Permission(models.Model):
    """
    Atomic capability: e.g. "process_payments".
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    code = models.CharField(max_length=128, unique=True)
    description = models.CharField(max_length=255, blank=True)

    class Meta:
        db_table = "iam_permission"

    def __str__(self) -> str:
        return self.code


class Role(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    name = models.CharField(max_length=128)
    code = models.SlugField(max_length=64, unique=True, choices=RoleCode.choices)

    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "iam_role"
        indexes = [
            models.Index(fields=["code", "is_active"], name="iam_role_code_active_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.code}"


class RolePermission(models.Model):
    """
    Many-to-many Role <-> Permission.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    role = models.ForeignKey(Role, on_delete=models.CASCADE, related_name="role_permissions")
    permission = models.ForeignKey(Permission, on_delete=models.PROTECT, related_name="permission_roles")

    class Meta:
        db_table = "iam_role_permission"
        constraints = [
            models.UniqueConstraint(fields=["role", "permission"], name="uq_role_permission"),
        ]


class UserProfile(models.Model):
    """
    Clinic identity wrapper anchored to Django's AUTH_USER_MODEL.
    The role decides which billing records a user may see.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="clinic_profile")
    role = models.ForeignKey(Role, on_delete=models.PROTECT, related_name="profiles")
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "iam_user_profile"
        indexes = [
            models.Index(fields=["role", "is_active"], name="iam_profile_role_active_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.user.username} ({self.role.code})"
