import signal

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from billing.scheduler import RecurringBillingScheduler, run_recurring_billing


class Command(BaseCommand):
    help = "Charge saved default cards for outstanding charges (once per day)."

    def add_arguments(self, parser):
        parser.add_argument("--date", help="Run date as YYYY-MM-DD. Defaults to today.")
        parser.add_argument("--loop", action="store_true", help="Keep running, one pass per interval.")
        parser.add_argument("--interval", type=int, help="Seconds between passes when looping.")

    def handle(self, *args, **options):
        if options.get("loop"):
            if not getattr(settings, "BILLING_RECURRING_ENABLED", False):
                raise CommandError("Recurring billing is disabled (BILLING_RECURRING_ENABLED).")
            scheduler = RecurringBillingScheduler(interval_seconds=options.get("interval"))
            signal.signal(signal.SIGTERM, lambda *_: scheduler.stop())
            try:
                scheduler.run_forever()
            except KeyboardInterrupt:
                scheduler.stop()
            self.stdout.write(self.style.SUCCESS("Recurring billing scheduler stopped."))
            return

        run_date = None
        if options.get("date"):
            run_date = parse_date(options["date"])
            if run_date is None:
                raise CommandError("Date must be formatted as YYYY-MM-DD.")

        result = run_recurring_billing(run_date)
        if result.already_ran:
            self.stdout.write(self.style.WARNING(f"Recurring billing already ran for {result.run_date}."))
            return
        self.stdout.write(
            self.style.SUCCESS(
                f"Recurring billing for {result.run_date}: {result.attempted} attempted, "
                f"{result.succeeded} succeeded, {result.failed} failed, {result.pending} pending."
            )
        )
