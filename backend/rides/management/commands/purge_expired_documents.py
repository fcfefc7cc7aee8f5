from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from datetime import timedelta

from realtime.exceptions import StoreUnavailable
from realtime.store import get_document_store


class Command(BaseCommand):
    help = "Hard-delete presence and request documents whose expiresAt has passed."

    def add_arguments(self, parser):
        parser.add_argument(
            "--grace",
            type=int,
            default=0,
            help="Only purge documents that expired at least this many seconds ago (default: 0).",
        )

    def handle(self, *args, **options):
        cutoff = timezone.now() - timedelta(seconds=options["grace"])
        try:
            purged = get_document_store().purge_expired(cutoff)
        except StoreUnavailable as e:
            raise CommandError(f"Document store unavailable: {e}")

        self.stdout.write(self.style.SUCCESS(f"Purged {purged} expired document(s)."))
