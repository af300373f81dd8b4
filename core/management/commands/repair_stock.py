from django.core.management.base import BaseCommand, CommandError
from rest_framework.exceptions import APIException

from inventory.reconciliation import REPAIR_SOURCES, run_stock_repair


class Command(BaseCommand):
    help = "Backfill movements missing for production records or deliveries. Dry run unless --apply is given."

    def add_arguments(self, parser):
        parser.add_argument("--source", required=True, choices=REPAIR_SOURCES, help="Source records to check.")
        parser.add_argument(
            "--material",
            default=None,
            help="Material UUID. Limits the run to it; production records without an output material post to it.",
        )
        parser.add_argument("--apply", action="store_true", help="Post the missing movements.")

    def handle(self, *args, **options):
        apply_changes = options["apply"]
        try:
            result = run_stock_repair(options["source"], material_id=options["material"], dry_run=not apply_changes)
        except APIException as exc:
            raise CommandError(str(exc.detail)) from exc

        for line in result.log:
            self.stdout.write(f"- {line}")

        if not result.fixed_count:
            self.stdout.write(self.style.SUCCESS("No missing movements found."))
            return

        if not apply_changes:
            self.stdout.write(
                self.style.WARNING(
                    f"Dry run only. {result.fixed_count} movement(s) totalling {result.total_adjusted} would be posted. "
                    "Re-run with --apply to post them."
                )
            )
            return

        self.stdout.write(
            self.style.SUCCESS(f"Posted {result.fixed_count} movement(s). Total adjusted: {result.total_adjusted}.")
        )
