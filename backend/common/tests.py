import math
import re
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase

from common.utils.geo import (
    InvalidCoordinate,
    calculate_distance,
    canonical_of,
    canonical_to_origin,
    cell_id_for,
    cell_id_of,
    cell_ids_around,
    decode_cell_id,
    neighbors_of,
)

GOLDEN_VECTORS = [
    (4.7410, -74.0721, "N04_44_00_W074_04_00_s30"),
    (0.5, 0.5, "N00_30_00_E000_30_00_s30"),
    (-34.6037, -58.3816, "S34_36_00_W058_22_30_s30"),
    (40.4168, -3.7038, "N40_25_00_W003_42_00_s30"),
]

# SW, S, SE, W, E, NW, N, NE
NEIGHBOR_OFFSETS = [(-30, -30), (-30, 0), (-30, 30), (0, -30), (0, 30), (30, -30), (30, 0), (30, 30)]


class CanonicalCellTests(SimpleTestCase):
    def test_golden_vectors(self):
        for lat, lng, expected in GOLDEN_VECTORS:
            with self.subTest(lat=lat, lng=lng):
                self.assertEqual(canonical_of(lat, lng), expected)

    def test_same_input_same_output(self):
        self.assertEqual(canonical_of(4.7410, -74.0721), canonical_of(4.7410, -74.0721))
        self.assertEqual(cell_id_for(4.7410, -74.0721), cell_id_for(4.7410, -74.0721))

    def test_bucketing_floors_instead_of_rounding(self):
        # 29.99 arc-seconds past the corner still belongs to the lower cell
        self.assertEqual(canonical_of(29.99 / 3600, 0.0), "N00_00_00_E000_00_00_s30")
        self.assertEqual(canonical_of(10.0, 0.0), "N10_00_00_E000_00_00_s30")
        self.assertEqual(canonical_of(10.0 - 1 / 3600, 0.0), "N09_59_30_E000_00_00_s30")

    def test_hemispheres_use_absolute_values(self):
        self.assertEqual(canonical_of(-0.0001, -0.0001), "S00_00_00_W000_00_00_s30")
        self.assertEqual(canonical_of(0.0, 0.0), "N00_00_00_E000_00_00_s30")

    def test_range_edges_are_valid(self):
        self.assertEqual(canonical_of(90.0, 180.0), "N90_00_00_E180_00_00_s30")
        self.assertEqual(canonical_of(-90.0, -180.0), "S90_00_00_W180_00_00_s30")

    def test_custom_step(self):
        self.assertEqual(canonical_of(0.5, 0.5, 60), "N00_30_00_E000_30_00_s60")
        self.assertEqual(canonical_of(0.5 + 7 / 3600, 0.5, 5), "N00_30_05_E000_30_00_s05")

    def test_invalid_coordinates_raise(self):
        for lat, lng in [(math.nan, 0.0), (0.0, math.inf), (90.0001, 0.0), (0.0, -180.5), ("1", 0.0), (None, 0.0)]:
            with self.subTest(lat=lat, lng=lng):
                with self.assertRaises(InvalidCoordinate):
                    canonical_of(lat, lng)

    def test_invalid_step_raises(self):
        with self.assertRaises(ValueError):
            canonical_of(0.5, 0.5, 0)


class CellIdTests(SimpleTestCase):
    def test_cell_id_is_url_safe_without_padding(self):
        for lat, lng, canonical in GOLDEN_VECTORS:
            cell_id = cell_id_of(canonical)
            self.assertRegex(cell_id, r"^[A-Za-z0-9_-]+$")
            self.assertNotIn("=", cell_id)

    def test_cell_id_decodes_to_canonical(self):
        canonical = canonical_of(-34.6037, -58.3816)
        self.assertEqual(decode_cell_id(cell_id_of(canonical)), canonical)

    def test_distinct_cells_have_distinct_ids(self):
        ids = {cell_id_of(canonical) for _, _, canonical in GOLDEN_VECTORS}
        self.assertEqual(len(ids), len(GOLDEN_VECTORS))


class NeighborTests(SimpleTestCase):
    def test_neighbors_in_fixed_order(self):
        self.assertEqual(
            neighbors_of(0.5, 0.5),
            [
                "N00_29_30_E000_29_30_s30",
                "N00_29_30_E000_30_00_s30",
                "N00_29_30_E000_30_30_s30",
                "N00_30_00_E000_29_30_s30",
                "N00_30_00_E000_30_30_s30",
                "N00_30_30_E000_29_30_s30",
                "N00_30_30_E000_30_00_s30",
                "N00_30_30_E000_30_30_s30",
            ],
        )

    def test_neighbor_origins_differ_by_one_step(self):
        center = canonical_to_origin(canonical_of(4.7410, -74.0721))
        offsets = []
        for canonical in neighbors_of(4.7410, -74.0721):
            origin = canonical_to_origin(canonical)
            offsets.append((origin.lat_seconds - center.lat_seconds, origin.lng_seconds - center.lng_seconds))
        self.assertEqual(offsets, NEIGHBOR_OFFSETS)

    def test_neighbors_exclude_center_and_are_distinct(self):
        center = canonical_of(40.4168, -3.7038)
        neighbors = neighbors_of(40.4168, -3.7038)
        self.assertEqual(len(set(neighbors)), 8)
        self.assertNotIn(center, neighbors)

    def test_neighbors_cross_the_equator(self):
        neighbors = neighbors_of(0.0041, 0.5)
        self.assertTrue(all(n.startswith("S00_00_00") for n in neighbors[:3]))
        self.assertTrue(all(n.startswith("N00_00_30") for n in neighbors[5:]))

    def test_cell_ids_around_puts_center_first(self):
        ids = cell_ids_around(0.5, 0.5)
        self.assertEqual(len(ids), 9)
        self.assertEqual(ids[0], cell_id_for(0.5, 0.5))
        self.assertEqual(ids[1:], [cell_id_of(c) for c in neighbors_of(0.5, 0.5)])

    def test_invalid_coordinates_raise(self):
        with self.assertRaises(InvalidCoordinate):
            neighbors_of(math.nan, 0.0)


class CanonicalParsingTests(SimpleTestCase):
    def test_origin_is_signed(self):
        origin = canonical_to_origin("S34_36_00_W058_22_30_s30")
        self.assertEqual(origin.lat_seconds, -124560)
        self.assertEqual(origin.lng_seconds, -210150)
        self.assertEqual(origin.step_seconds, 30)
        self.assertEqual(origin.canonical, "S34_36_00_W058_22_30_s30")

    def test_rejects_garbage(self):
        with self.assertRaises(ValueError):
            canonical_to_origin("N4_44_00_W074_04_00_s30")


class DistanceTests(SimpleTestCase):
    def test_one_arc_minute_of_latitude(self):
        meters = calculate_distance(0.0, 0.0, 1 / 60, 0.0)
        self.assertAlmostEqual(meters, 1853.2, delta=1.0)

    def test_same_point_is_zero(self):
        self.assertEqual(calculate_distance(4.7410, -74.0721, 4.7410, -74.0721), 0.0)


class GeocellCommandTests(SimpleTestCase):
    def test_prints_canonical_and_id(self):
        out = StringIO()
        call_command("geocell", "4.7410", "-74.0721", stdout=out)
        canonical, cell_id = out.getvalue().split()[:2]
        self.assertEqual(canonical, "N04_44_00_W074_04_00_s30")
        self.assertEqual(cell_id, cell_id_of(canonical))

    def test_neighbors_flag(self):
        out = StringIO()
        call_command("geocell", "0.5", "0.5", "--neighbors", stdout=out)
        self.assertEqual(len(re.findall(r"_s30", out.getvalue())), 9)

    def test_vectors_pass(self):
        out = StringIO()
        call_command("geocell", "--vectors", stdout=out)
        self.assertIn("All 4 golden vectors match", out.getvalue())

    def test_invalid_coordinate_is_command_error(self):
        with self.assertRaises(CommandError):
            call_command("geocell", "91", "0", stdout=StringIO())
