"""
Distance and score helpers

Scores must stay comparable with guesses already stored, so the 50 m perfect-hit
threshold and the 2,000 km decay constant are fixed.
"""
from math import atan2, cos, exp, floor, radians, sin, sqrt
from typing import Tuple

from schemas import GeoPoint

EARTH_RADIUS_M = 6_371_000.0
MAX_SCORE = 5000
PERFECT_HIT_M = 50.0
DECAY_M = 2_000_000.0


def _round_half_up(x: float) -> int:
    return int(floor(x + 0.5))


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle (haversine) distance in meters."""
    phi1 = radians(a.lat)
    phi2 = radians(b.lat)
    dphi = radians(b.lat - a.lat)
    dlmb = radians(b.lng - a.lng)

    h = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlmb / 2) ** 2
    # Rounding can push h a hair outside [0, 1] for antipodal points
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_M * 2 * atan2(sqrt(h), sqrt(1 - h))


def score_from_distance(d: float) -> int:
    if d < PERFECT_HIT_M:
        return MAX_SCORE
    return _round_half_up(MAX_SCORE * exp(-d / DECAY_M))


def score_guess(truth: GeoPoint, guess: GeoPoint) -> Tuple[float, int]:
    d = distance_meters(truth, guess)
    return d, score_from_distance(d)


def format_distance(d: float) -> str:
    if d < 1000:
        return f"{_round_half_up(d)}m"
    return f"{d / 1000:.1f}km"
