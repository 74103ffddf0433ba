from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from inventory import rules
from inventory.services.sweeper import ExpirySweeper
from inventory.services.unit_store import UnitStore


class Command(BaseCommand):
    help = "Mark available blood units past their expiry date as expired."

    def add_arguments(self, parser):
        parser.add_argument(
            "--as-of",
            dest="as_of",
            default=None,
            help="ISO 8601 timestamp to sweep against (defaults to now).",
        )
        parser.add_argument(
            "--actor",
            default=rules.SYSTEM_ACTOR,
            help="Actor id recorded on the expired units.",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        if options["as_of"]:
            now = parse_datetime(options["as_of"])
            if now is None:
                raise CommandError(f"Invalid --as-of value: {options['as_of']}")
            if timezone.is_naive(now):
                now = timezone.make_aware(now)

        count = ExpirySweeper(UnitStore()).sweep_expired(now=now, actor=options["actor"])
        self.stdout.write(self.style.SUCCESS(f"Expired {count} blood unit(s) as of {now.isoformat()}."))
