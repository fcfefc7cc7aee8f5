"""Common utility functions."""

from .geo import (
    DEFAULT_STEP_SECONDS,
    CellOrigin,
    InvalidCoordinate,
    calculate_distance,
    canonical_of,
    canonical_to_origin,
    cell_id_for,
    cell_id_of,
    cell_ids_around,
    decode_cell_id,
    neighbors_of,
    validate_coordinates,
)
from .scheduler import ManualScheduler, ThreadScheduler, TimerHandle

__all__ = [
    # Geo cells
    "DEFAULT_STEP_SECONDS",
    "CellOrigin",
    "InvalidCoordinate",
    "calculate_distance",
    "canonical_of",
    "canonical_to_origin",
    "cell_id_for",
    "cell_id_of",
    "cell_ids_around",
    "decode_cell_id",
    "neighbors_of",
    "validate_coordinates",
    # Timers
    "ManualScheduler",
    "ThreadScheduler",
    "TimerHandle",
]
