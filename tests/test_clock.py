from datetime import time, timedelta, timezone

import pytest

from core.clock import Clock, SLOT_SECONDS
from core.exceptions import BadTimeFormat, InvalidRoundId
from tests.conftest import ist


@pytest.fixture
def wall():
    return Clock()


def test_floor_to_slot_in_operating_zone(wall):
    t = ist("2026-03-10 12:04:59")
    assert wall.floor_to_slot(t) == ist("2026-03-10 12:00:00")
    assert wall.floor_to_slot(ist("2026-03-10 12:05:00")) == ist("2026-03-10 12:05:00")


def test_floor_to_slot_accepts_utc_input(wall):
    # 06:37 UTC == 12:07 IST
    t = ist("2026-03-10 12:07:30").astimezone(timezone.utc)
    assert wall.format_round_id(t) == "202603101205"


def test_round_id_round_trip_and_slot_grid(wall):
    t = ist("2026-12-31 23:55:00")
    round_id = wall.format_round_id(t)
    assert round_id == "202612312355"
    assert wall.parse_round_id(round_id) == t
    assert (wall.slot_end(round_id) - wall.slot_start(round_id)).total_seconds() == SLOT_SECONDS
    assert wall.civil_string(wall.slot_end(round_id)) == "2027-01-01 00:00:00"


@pytest.mark.parametrize("bad", ["", "20260310120", "2026031012000", "20261310 1200", "202602301200", "abcdefghijkl", None])
def test_parse_round_id_rejects_malformed(wall, bad):
    with pytest.raises(InvalidRoundId):
        wall.parse_round_id(bad)


def test_civil_string_round_trip(wall):
    t = ist("2026-03-10 08:00:07")
    text = wall.civil_string(t.astimezone(timezone.utc))
    assert text == "2026-03-10 08:00:07"
    assert wall.parse_civil(text) == t


@pytest.mark.parametrize("bad", ["2026-03-10T08:00:07", "2026-03-10 8:00:07", "2026-02-30 08:00:00", ""])
def test_parse_civil_rejects_bad_format(wall, bad):
    with pytest.raises(BadTimeFormat):
        wall.parse_civil(bad)


def test_parse_hhmm():
    assert Clock.parse_hhmm("08:30") == time(8, 30)
    for bad in ("8:30", "24:00", "12:60", "noon"):
        with pytest.raises(BadTimeFormat):
            Clock.parse_hhmm(bad)


def test_operating_window(wall):
    start, end = time(8, 0), time(22, 0)
    assert wall.window_start(ist("2026-03-10 12:00:00"), start, end) == ist("2026-03-10 08:00:00")
    assert wall.in_window(ist("2026-03-10 08:00:00"), start, end)
    assert not wall.in_window(ist("2026-03-10 22:00:00"), start, end)
    assert not wall.in_window(ist("2026-03-10 07:55:00"), start, end)


def test_operating_window_wraps_past_midnight(wall):
    start, end = time(18, 0), time(2, 0)
    assert wall.window_start(ist("2026-03-11 01:30:00"), start, end) == ist("2026-03-10 18:00:00")
    assert wall.window_start(ist("2026-03-10 19:00:00"), start, end) == ist("2026-03-10 18:00:00")
    assert not wall.in_window(ist("2026-03-10 12:00:00"), start, end)


def test_day_bounds(wall):
    assert wall.day_bounds("2026-03-10") == ("2026-03-10 00:00:00", "2026-03-11 00:00:00")
    with pytest.raises(BadTimeFormat):
        wall.day_bounds("10/03/2026")


def test_every_slot_of_a_day_maps_back_to_its_start(wall):
    t = ist("2026-03-10 00:00:00")
    for _ in range(288):
        round_id = wall.format_round_id(t)
        assert wall.parse_round_id(round_id) == t
        t += timedelta(seconds=SLOT_SECONDS)
