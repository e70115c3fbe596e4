"""
Coordinate frames for map rendering

Stored and scored coordinates are always geodetic (WGS84). Some regional tile
vendors draw their maps in a deliberately shifted frame (GCJ-02), so every marker,
line and click on such a map has to be converted at the rendering boundary. A frame
is chosen once per render context and used for everything drawn in it.
"""
import logging
from enum import Enum
from math import cos, pi, sin, sqrt
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from schemas import GeoPoint

logger = logging.getLogger(__name__)


class Frame(str, Enum):
    GEODETIC = "geodetic"
    REGIONAL_SHIFTED = "regional_shifted"


class ShiftParameters(BaseModel):
    """Published GCJ-02 constants (Krasovsky ellipsoid, China bounding box)."""
    model_config = ConfigDict(frozen=True)

    semi_major_axis: float = 6378245.0
    eccentricity_sq: float = 0.00669342162296594323
    origin_lng: float = 105.0
    origin_lat: float = 35.0
    min_lng: float = 72.004
    max_lng: float = 137.8347
    min_lat: float = 0.8293
    max_lat: float = 55.8271


GCJ02 = ShiftParameters()


def _shift_lat(x: float, y: float) -> float:
    ret = -100.0 + 2.0 * x + 3.0 * y + 0.2 * y * y + 0.1 * x * y + 0.2 * sqrt(abs(x))
    ret += (20.0 * sin(6.0 * x * pi) + 20.0 * sin(2.0 * x * pi)) * 2.0 / 3.0
    ret += (20.0 * sin(y * pi) + 40.0 * sin(y / 3.0 * pi)) * 2.0 / 3.0
    ret += (160.0 * sin(y / 12.0 * pi) + 320.0 * sin(y * pi / 30.0)) * 2.0 / 3.0
    return ret


def _shift_lng(x: float, y: float) -> float:
    ret = 300.0 + x + 2.0 * y + 0.1 * x * x + 0.1 * x * y + 0.1 * sqrt(abs(x))
    ret += (20.0 * sin(6.0 * x * pi) + 20.0 * sin(2.0 * x * pi)) * 2.0 / 3.0
    ret += (20.0 * sin(x * pi) + 40.0 * sin(x / 3.0 * pi)) * 2.0 / 3.0
    ret += (150.0 * sin(x / 12.0 * pi) + 300.0 * sin(x / 30.0 * pi)) * 2.0 / 3.0
    return ret


class CoordSpace:
    """Converts between the geodetic frame and the regional shifted frame."""

    max_iterations = 30
    tolerance_deg = 1e-10

    def __init__(self, params: ShiftParameters = GCJ02):
        self.params = params

    def in_region(self, p: GeoPoint) -> bool:
        prm = self.params
        return prm.min_lng <= p.lng <= prm.max_lng and prm.min_lat <= p.lat <= prm.max_lat

    def pick_frame(self, p: GeoPoint) -> Frame:
        return Frame.REGIONAL_SHIFTED if self.in_region(p) else Frame.GEODETIC

    def _offset(self, lat: float, lng: float) -> Tuple[float, float]:
        prm = self.params
        x = lng - prm.origin_lng
        y = lat - prm.origin_lat
        d_lat = _shift_lat(x, y)
        d_lng = _shift_lng(x, y)

        rad_lat = lat / 180.0 * pi
        magic = 1 - prm.eccentricity_sq * sin(rad_lat) ** 2
        sqrt_magic = sqrt(magic)
        a = prm.semi_major_axis
        d_lat = (d_lat * 180.0) / ((a * (1 - prm.eccentricity_sq)) / (magic * sqrt_magic) * pi)
        d_lng = (d_lng * 180.0) / (a / sqrt_magic * cos(rad_lat) * pi)
        return d_lat, d_lng

    def to_display(self, p: GeoPoint, frame: Frame) -> GeoPoint:
        if frame is Frame.GEODETIC or not self.in_region(p):
            return p
        d_lat, d_lng = self._offset(p.lat, p.lng)
        return GeoPoint(lat=p.lat + d_lat, lng=p.lng + d_lng)

    def to_geodetic(self, p: GeoPoint, frame: Frame) -> GeoPoint:
        """Invert `to_display` by fixed-point iteration (the shift has no closed-form inverse)."""
        if frame is Frame.GEODETIC or not self.in_region(p):
            return p

        lat, lng = p.lat, p.lng
        for _ in range(self.max_iterations):
            d_lat, d_lng = self._offset(lat, lng)
            err_lat = (lat + d_lat) - p.lat
            err_lng = (lng + d_lng) - p.lng
            lat -= err_lat
            lng -= err_lng
            if abs(err_lat) < self.tolerance_deg and abs(err_lng) < self.tolerance_deg:
                break
        else:
            logger.debug("shift inverse did not converge for %s", p)
        return GeoPoint(lat=lat, lng=lng)


class ViewportFrame:
    """Keeps the frame of a live map view; re-evaluated only when the centre crosses the region edge."""

    def __init__(self, space: CoordSpace, center: GeoPoint):
        self.space = space
        self.center = center
        self.frame = space.pick_frame(center)

    def update_center(self, center: GeoPoint) -> bool:
        """Record a new geodetic centre. Returns True when the frame changed."""
        self.center = center
        frame = self.space.pick_frame(center)
        if frame is self.frame:
            return False
        logger.debug("viewport frame %s -> %s at %s", self.frame.value, frame.value, center)
        self.frame = frame
        return True

    def context(self) -> "RenderContext":
        return RenderContext(self.space, self.frame)


class Bounds(BaseModel):
    south_west: GeoPoint
    north_east: GeoPoint


class Line(BaseModel):
    start: GeoPoint
    end: GeoPoint


class RenderContext:
    """A frame fixed for one drawing pass; converts everything drawn in it."""

    def __init__(self, space: CoordSpace, frame: Frame):
        self.space = space
        self.frame = frame

    def marker(self, p: GeoPoint) -> GeoPoint:
        return self.space.to_display(p, self.frame)

    def line(self, guess: GeoPoint, truth: GeoPoint) -> Line:
        return Line(start=self.marker(guess), end=self.marker(truth))

    def click(self, p: GeoPoint) -> GeoPoint:
        """Raw map click (display frame) back to geodetic before it reaches the engine."""
        return self.space.to_geodetic(p, self.frame)

    def fit_bounds(self, points: Iterable[GeoPoint]) -> Optional[Bounds]:
        shown: List[GeoPoint] = [self.marker(p) for p in points]
        if not shown:
            return None
        return Bounds(
            south_west=GeoPoint(lat=min(p.lat for p in shown), lng=min(p.lng for p in shown)),
            north_east=GeoPoint(lat=max(p.lat for p in shown), lng=max(p.lng for p in shown)),
        )
