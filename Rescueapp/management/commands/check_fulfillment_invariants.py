import logging

from django.core.management.base import BaseCommand, CommandError

from Rescueapp.invariants import find_invariant_violations

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Reports service requests, quotations and workers whose stored state breaks a fulfillment invariant."

    def add_arguments(self, parser):
        parser.add_argument(
            "--strict",
            action="store_true",
            help="Exit with an error when any violation is found.",
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.NOTICE("Checking fulfillment invariants..."))
        violations = find_invariant_violations()
        for violation in violations:
            self.stdout.write(
                self.style.ERROR(f"FAIL: [{violation.rule}] request {violation.service_request_id}: {violation.detail}")
            )

        if not violations:
            self.stdout.write(self.style.SUCCESS("All fulfillment invariants hold."))
            return

        logger.warning("%s fulfillment invariant violations found", len(violations))
        summary = f"{len(violations)} invariant violations found."
        if options["strict"]:
            raise CommandError(summary)
        self.stdout.write(self.style.WARNING(summary))
