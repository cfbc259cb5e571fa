from django.core.management.base import BaseCommand, CommandError

from testing.financial.runner import AVAILABLE_SCENARIOS, run_all, run_scenario


class Command(BaseCommand):
    help = "Replay the purchase settlement scenarios (points, hybrid cancel, adult card, repeat purchase) on this database."

    def add_arguments(self, parser):
        parser.add_argument(
            "--scenario",
            choices=sorted(AVAILABLE_SCENARIOS),
            help="Replay a single scenario instead of all of them.",
        )

    def handle(self, *args, **options):
        name = options.get("scenario")
        names = [name] if name else list(AVAILABLE_SCENARIOS)
        self.stdout.write(self.style.WARNING(f"Settlement scenarios: {', '.join(names)}"))
        try:
            if name:
                run_scenario(name)
            else:
                run_all()
        except Exception as exc:
            raise CommandError(f"Scenario run failed: {exc}") from exc
        self.stdout.write(self.style.SUCCESS("All requested scenarios passed."))
