from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from billing.charges import mark_overdue_charges


class Command(BaseCommand):
    help = "Mark unpaid charges past their due date as overdue."

    def add_arguments(self, parser):
        parser.add_argument("--date", help="Reference date as YYYY-MM-DD. Defaults to today.")

    def handle(self, *args, **options):
        today = None
        if options.get("date"):
            today = parse_date(options["date"])
            if today is None:
                raise CommandError("Date must be formatted as YYYY-MM-DD.")
        updated = mark_overdue_charges(today=today)
        self.stdout.write(self.style.SUCCESS(f"Marked {updated} charges overdue."))
