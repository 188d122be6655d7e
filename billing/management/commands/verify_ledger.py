from django.core.management.base import BaseCommand

from billing.ledger import replay_balances
from properties.models import Building, Unit


class Command(BaseCommand):
    help = "Replay ledger balances and report entries whose stored balance disagrees."

    def add_arguments(self, parser):
        parser.add_argument("--unit", type=int, help="Limit the check to a specific unit id.")

    def handle(self, *args, **options):
        unit_id = options.get("unit")
        scopes = []
        if unit_id:
            scopes.extend((f"unit {unit.id}", replay_balances(unit)) for unit in Unit.objects.filter(id=unit_id))
        else:
            scopes.extend((f"unit {unit.id}", replay_balances(unit)) for unit in Unit.objects.order_by("id"))
            scopes.extend(
                (f"building {building.id}", replay_balances(building=building))
                for building in Building.objects.order_by("id")
            )

        mismatched = 0
        for label, entries in scopes:
            for entry in entries:
                mismatched += 1
                self.stdout.write(
                    self.style.ERROR(f"{label} entry {entry.id}: stored balance {entry.balance_after} does not replay.")
                )

        if mismatched:
            self.stdout.write(self.style.ERROR(f"{mismatched} ledger entries are inconsistent."))
            return
        self.stdout.write(self.style.SUCCESS(f"Ledger consistent across {len(scopes)} scopes."))
