# clinic_core/billing/management/commands/refresh_invoice_statuses.py

from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from clinic_core.billing.services import InvoiceService


class Command(BaseCommand):
    help = "Re-derive status for every unpaid invoice (marks past-due invoices overdue)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--today",
            help="Evaluate due dates as of this date (YYYY-MM-DD). Defaults to the local date.",
        )

    def handle(self, *args, **options):
        today = None
        if options.get("today"):
            try:
                today = parse_date(options["today"])
            except ValueError:
                today = None
            if today is None:
                raise CommandError("--today must be a date in YYYY-MM-DD format.")

        changed = InvoiceService.refresh_statuses(today=today)
        self.stdout.write(self.style.SUCCESS(f"Invoice statuses refreshed. Changed: {changed}"))
