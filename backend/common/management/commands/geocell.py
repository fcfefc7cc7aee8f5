from django.core.management.base import BaseCommand, CommandError

from common.utils.geo import (
    DEFAULT_STEP_SECONDS,
    InvalidCoordinate,
    canonical_of,
    cell_id_of,
    neighbors_of,
)

# Reference points every client implementation must bucket identically.
GOLDEN_VECTORS = [
    (4.7410, -74.0721, "N04_44_00_W074_04_00_s30"),
    (0.5, 0.5, "N00_30_00_E000_30_00_s30"),
    (-34.6037, -58.3816, "S34_36_00_W058_22_30_s30"),
    (40.4168, -3.7038, "N40_25_00_W003_42_00_s30"),
]


class Command(BaseCommand):
    help = "Print the canonical cell, cell id and neighbors for a coordinate."

    def add_arguments(self, parser):
        parser.add_argument("lat", type=float, nargs="?")
        parser.add_argument("lng", type=float, nargs="?")
        parser.add_argument(
            "--step",
            type=int,
            default=DEFAULT_STEP_SECONDS,
            help=f"Cell size in arc-seconds (default: {DEFAULT_STEP_SECONDS}).",
        )
        parser.add_argument(
            "--neighbors",
            action="store_true",
            help="Also print the 8 neighboring cells.",
        )
        parser.add_argument(
            "--vectors",
            action="store_true",
            help="Check the built-in golden vectors instead of a coordinate.",
        )

    def handle(self, *args, **options):
        if options["vectors"]:
            return self._check_vectors()

        lat, lng, step = options["lat"], options["lng"], options["step"]
        if lat is None or lng is None:
            raise CommandError("lat and lng are required unless --vectors is given.")

        try:
            canonical = canonical_of(lat, lng, step)
            neighbors = neighbors_of(lat, lng, step) if options["neighbors"] else []
        except (InvalidCoordinate, ValueError) as e:
            raise CommandError(str(e))

        self.stdout.write(f"{canonical} {cell_id_of(canonical)}")
        for neighbor in neighbors:
            self.stdout.write(f"  {neighbor} {cell_id_of(neighbor)}")

    def _check_vectors(self):
        failures = 0
        for lat, lng, expected in GOLDEN_VECTORS:
            actual = canonical_of(lat, lng)
            if actual == expected:
                self.stdout.write(f"ok   ({lat}, {lng}) -> {actual}")
            else:
                failures += 1
                self.stdout.write(self.style.ERROR(f"FAIL ({lat}, {lng}) -> {actual}, expected {expected}"))

        if failures:
            raise CommandError(f"{failures} golden vector(s) failed.")
        self.stdout.write(self.style.SUCCESS(f"All {len(GOLDEN_VECTORS)} golden vectors match."))
