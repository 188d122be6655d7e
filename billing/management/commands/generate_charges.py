from django.core.management.base import BaseCommand, CommandError

from billing.charges import generate_charges
from billing.models import FeePlan


class Command(BaseCommand):
    help = "Generate HOA charges for every active unit of a fee plan's building."

    def add_arguments(self, parser):
        parser.add_argument("--plan", required=True, help="Fee plan id.")
        parser.add_argument("--period", required=True, help="Billing period as YYYY-MM.")

    def handle(self, *args, **options):
        plan = FeePlan.objects.select_related("building").filter(id=options["plan"]).first()
        if plan is None:
            raise CommandError(f"Fee plan {options['plan']} not found.")

        result = generate_charges(building=plan.building, plan=plan, period=options["period"])
        if result.already_generated:
            self.stdout.write(self.style.WARNING(result.message))
            return
        self.stdout.write(self.style.SUCCESS(result.message))
