import pytest

from coordspace import CoordSpace, Frame, RenderContext, ShiftParameters, ViewportFrame
from geoscore import distance_meters
from schemas import GeoPoint

BEIJING = GeoPoint(lat=39.9042, lng=116.4074)
SHANGHAI = GeoPoint(lat=31.2304, lng=121.4737)
CHENGDU = GeoPoint(lat=30.5728, lng=104.0668)
PARIS = GeoPoint(lat=48.8566, lng=2.3522)
SYDNEY = GeoPoint(lat=-33.8688, lng=151.2093)


@pytest.fixture
def space():
    return CoordSpace()


def test_pick_frame(space):
    assert space.pick_frame(BEIJING) is Frame.REGIONAL_SHIFTED
    assert space.pick_frame(SHANGHAI) is Frame.REGIONAL_SHIFTED
    assert space.pick_frame(PARIS) is Frame.GEODETIC
    assert space.pick_frame(SYDNEY) is Frame.GEODETIC


def test_shift_moves_points_a_few_hundred_meters(space):
    for p in (BEIJING, SHANGHAI, CHENGDU):
        shown = space.to_display(p, Frame.REGIONAL_SHIFTED)
        assert 100 < distance_meters(p, shown) < 1500


@pytest.mark.parametrize("p", [BEIJING, SHANGHAI, CHENGDU, GeoPoint(lat=22.3, lng=114.17)])
def test_round_trip_inside_region(space, p):
    back = space.to_geodetic(space.to_display(p, Frame.REGIONAL_SHIFTED), Frame.REGIONAL_SHIFTED)
    assert back.lat == pytest.approx(p.lat, abs=1e-7)
    assert back.lng == pytest.approx(p.lng, abs=1e-7)


@pytest.mark.parametrize("p", [PARIS, SYDNEY])
def test_identity_outside_region(space, p):
    assert space.to_display(p, Frame.REGIONAL_SHIFTED) == p
    assert space.to_geodetic(p, Frame.REGIONAL_SHIFTED) == p


def test_geodetic_frame_is_identity(space):
    assert space.to_display(BEIJING, Frame.GEODETIC) == BEIJING
    assert space.to_geodetic(BEIJING, Frame.GEODETIC) == BEIJING


def test_custom_region_bounds():
    nowhere = CoordSpace(ShiftParameters(min_lng=0, max_lng=1, min_lat=0, max_lat=1))
    assert nowhere.pick_frame(BEIJING) is Frame.GEODETIC
    assert nowhere.to_display(BEIJING, Frame.REGIONAL_SHIFTED) == BEIJING


def test_viewport_reevaluates_only_on_crossing(space):
    view = ViewportFrame(space, PARIS)
    assert view.frame is Frame.GEODETIC
    assert view.update_center(GeoPoint(lat=48.0, lng=3.0)) is False
    assert view.update_center(BEIJING) is True
    assert view.frame is Frame.REGIONAL_SHIFTED
    assert view.update_center(SHANGHAI) is False
    assert view.update_center(SYDNEY) is True
    assert view.context().frame is Frame.GEODETIC


def test_render_context_converts_consistently(space):
    ctx = RenderContext(space, Frame.REGIONAL_SHIFTED)
    guess = GeoPoint(lat=39.95, lng=116.30)

    line = ctx.line(guess, BEIJING)
    assert line.start == ctx.marker(guess)
    assert line.end == ctx.marker(BEIJING)

    clicked = ctx.click(ctx.marker(guess))
    assert clicked.lat == pytest.approx(guess.lat, abs=1e-7)
    assert clicked.lng == pytest.approx(guess.lng, abs=1e-7)


def test_fit_bounds(space):
    ctx = RenderContext(space, Frame.GEODETIC)
    assert ctx.fit_bounds([]) is None
    bounds = ctx.fit_bounds([PARIS, SYDNEY])
    assert bounds.south_west == GeoPoint(lat=SYDNEY.lat, lng=PARIS.lng)
    assert bounds.north_east == GeoPoint(lat=PARIS.lat, lng=SYDNEY.lng)
