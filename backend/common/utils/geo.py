"""
Geographic utility functions.

This module provides the deterministic geo-cell grid shared by every client:
- Canonical cell strings (south-west corner in degrees/minutes/seconds + step)
- URL-safe cell identifiers used as store bucket keys
- 3x3 neighborhood enumeration
- Haversine distance

The canonical string and cell id must be byte-identical across independent
implementations. Bucketing is floor-based on whole arc-seconds, never rounded.

Known limitation: neighbors are computed by perturbing the cell's reference
point, so near the poles or the +/-180 meridian a neighbor can fall outside
the valid range or repeat another cell. The service area never crosses those
boundaries.
"""

from __future__ import annotations

import base64
import math
import re
from dataclasses import dataclass
from math import radians, cos, sin, asin, sqrt
from typing import List

DEFAULT_STEP_SECONDS = 30

_SECONDS_PER_DEGREE = 3600

# (lat_delta, lng_delta) in steps: SW, S, SE, W, E, NW, N, NE
_NEIGHBOR_DELTAS = (
    (-1, -1),
    (-1, 0),
    (-1, 1),
    (0, -1),
    (0, 1),
    (1, -1),
    (1, 0),
    (1, 1),
)

_CANONICAL_RE = re.compile(
    r"^(?P<lat_hemi>[NS])(?P<lat_deg>\d{2})_(?P<lat_min>\d{2})_(?P<lat_sec>\d{2})_"
    r"(?P<lng_hemi>[EW])(?P<lng_deg>\d{3})_(?P<lng_min>\d{2})_(?P<lng_sec>\d{2})_"
    r"s(?P<step>\d{2,})$"
)


class InvalidCoordinate(ValueError):
    """Raised when a latitude/longitude is NaN, infinite or out of range."""
    pass


@dataclass(frozen=True)
class CellOrigin:
    """South-west corner of a cell as signed arc-seconds."""
    lat_seconds: int
    lng_seconds: int
    lat_hemi: str
    lng_hemi: str
    step_seconds: int

    @property
    def canonical(self) -> str:
        return _format_canonical(
            self.lat_hemi, abs(self.lat_seconds),
            self.lng_hemi, abs(self.lng_seconds),
            self.step_seconds,
        )


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    r = 6371000  # Earth's radius in meters
    return c * r


# ---------------------- Validation ----------------------

def validate_coordinates(lat, lng) -> None:
    """Raise InvalidCoordinate unless lat/lng are finite and in range."""
    for name, value, limit in (("latitude", lat, 90.0), ("longitude", lng, 180.0)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCoordinate(f"{name} must be a number, got {value!r}")
        if math.isnan(value) or math.isinf(value):
            raise InvalidCoordinate(f"{name} must be finite, got {value!r}")
        if not -limit <= value <= limit:
            raise InvalidCoordinate(f"{name} {value!r} outside [-{limit:g}, {limit:g}]")


def _validate_step(step_seconds: int) -> None:
    if isinstance(step_seconds, bool) or not isinstance(step_seconds, int) or step_seconds <= 0:
        raise ValueError(f"step_seconds must be a positive integer, got {step_seconds!r}")


# ---------------------- Canonical Strings ----------------------

def _bucket_seconds(value: float, step_seconds: int) -> int:
    total_seconds = math.floor(abs(value) * _SECONDS_PER_DEGREE)
    return (total_seconds // step_seconds) * step_seconds


def _dms(seconds: int):
    return seconds // 3600, (seconds % 3600) // 60, seconds % 60


def _format_canonical(lat_hemi: str, lat_seconds: int, lng_hemi: str, lng_seconds: int, step_seconds: int) -> str:
    lat_deg, lat_min, lat_sec = _dms(lat_seconds)
    lng_deg, lng_min, lng_sec = _dms(lng_seconds)
    return (
        f"{lat_hemi}{lat_deg:02d}_{lat_min:02d}_{lat_sec:02d}_"
        f"{lng_hemi}{lng_deg:03d}_{lng_min:02d}_{lng_sec:02d}_s{step_seconds:02d}"
    )


def _canonical(lat: float, lng: float, step_seconds: int) -> str:
    lat_hemi = "N" if lat >= 0 else "S"
    lng_hemi = "E" if lng >= 0 else "W"
    return _format_canonical(
        lat_hemi, _bucket_seconds(lat, step_seconds),
        lng_hemi, _bucket_seconds(lng, step_seconds),
        step_seconds,
    )


def canonical_of(lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS) -> str:
    """
    Compute the canonical string of the cell containing (lat, lng).

    Example: canonical_of(4.7410, -74.0721) == "N04_44_00_W074_04_00_s30"

    Raises:
        InvalidCoordinate: lat/lng is NaN, infinite or out of range
    """
    validate_coordinates(lat, lng)
    _validate_step(step_seconds)
    return _canonical(lat, lng, step_seconds)


def cell_id_of(canonical: str) -> str:
    """URL-safe base64 of the canonical string, without '=' padding."""
    encoded = base64.urlsafe_b64encode(canonical.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=")


def cell_id_for(lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS) -> str:
    """Cell id of the cell containing (lat, lng)."""
    return cell_id_of(canonical_of(lat, lng, step_seconds))


# ---------------------- Neighborhoods ----------------------

def _reference_point(lat: float, lng: float, step_seconds: int):
    """Center of the cell containing (lat, lng), in signed degrees."""
    half = step_seconds / 2.0
    lat_center = (_bucket_seconds(lat, step_seconds) + half) / _SECONDS_PER_DEGREE
    lng_center = (_bucket_seconds(lng, step_seconds) + half) / _SECONDS_PER_DEGREE
    return (
        lat_center if lat >= 0 else -lat_center,
        lng_center if lng >= 0 else -lng_center,
    )


def neighbors_of(lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS) -> List[str]:
    """
    Canonical strings of the 8 cells adjacent to the cell containing (lat, lng).

    Returned in the order SW, S, SE, W, E, NW, N, NE. Combine with
    canonical_of() for the full 3x3 neighborhood.
    """
    validate_coordinates(lat, lng)
    _validate_step(step_seconds)

    ref_lat, ref_lng = _reference_point(lat, lng, step_seconds)
    step_degrees = step_seconds / _SECONDS_PER_DEGREE

    return [
        _canonical(ref_lat + d_lat * step_degrees, ref_lng + d_lng * step_degrees, step_seconds)
        for d_lat, d_lng in _NEIGHBOR_DELTAS
    ]


def cell_ids_around(lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS) -> List[str]:
    """Cell ids of the 3x3 neighborhood, center cell first."""
    canonicals = [canonical_of(lat, lng, step_seconds)] + neighbors_of(lat, lng, step_seconds)
    return [cell_id_of(c) for c in canonicals]


# ---------------------- Parsing ----------------------

def canonical_to_origin(canonical: str) -> CellOrigin:
    """Parse a canonical string back into its south-west corner."""
    match = _CANONICAL_RE.match(canonical)
    if not match:
        raise ValueError(f"Not a canonical cell string: {canonical!r}")

    parts = match.groupdict()
    lat_seconds = int(parts["lat_deg"]) * 3600 + int(parts["lat_min"]) * 60 + int(parts["lat_sec"])
    lng_seconds = int(parts["lng_deg"]) * 3600 + int(parts["lng_min"]) * 60 + int(parts["lng_sec"])

    return CellOrigin(
        lat_seconds=lat_seconds if parts["lat_hemi"] == "N" else -lat_seconds,
        lng_seconds=lng_seconds if parts["lng_hemi"] == "E" else -lng_seconds,
        lat_hemi=parts["lat_hemi"],
        lng_hemi=parts["lng_hemi"],
        step_seconds=int(parts["step"]),
    )


def decode_cell_id(cell_id: str) -> str:
    """Recover the canonical string from a cell id."""
    padded = cell_id + "=" * (-len(cell_id) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
