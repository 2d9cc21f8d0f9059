# clinic_core/iam/management/commands/ensure_roles.py

from django.core.management.base import BaseCommand

from clinic_core.iam.services import RoleService


class Command(BaseCommand):
    help = "Ensure default roles and permission codes exist (idempotent)."

    def handle(self, *args, **options):
        created = RoleService.ensure_defaults()
        self.stdout.write(self.style.SUCCESS(f"Roles ensured. Newly created: {created}"))
