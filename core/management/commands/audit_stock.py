from django.core.management.base import BaseCommand, CommandError

from inventory.reconciliation import audit_stock_accounts


class Command(BaseCommand):
    help = "Compare each material's cached stock with the sum of its movement log."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fail-on-drift",
            action="store_true",
            help="Exit with an error when any material disagrees with its movement log.",
        )

    def handle(self, *args, **options):
        mismatches = audit_stock_accounts()
        self.stdout.write(self.style.MIGRATE_HEADING("Stock account audit"))

        if not mismatches:
            self.stdout.write(self.style.SUCCESS("No stock drift detected."))
            return

        for row in mismatches:
            self.stdout.write(
                self.style.WARNING(
                    f"{row['material_name']}: stock={row['current_stock']} log={row['log_balance']} drift={row['drift']}"
                )
            )
        self.stdout.write("Run repair_stock to backfill missing movements, or post an adjustment after review.")

        if options["fail_on_drift"]:
            raise CommandError(f"Detected stock drift on {len(mismatches)} material(s).")
