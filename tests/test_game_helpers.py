import pytest

from core import simulation
from core.models import CONSTRUCTION_TICKS, MAX_PASSENGERS_PER_TRAIN, GridPoint, IdCounters
from tests._support.sim_helpers import ALWAYS_SPAWN, make_shuttle, make_stations
from ui import game


def test_pixel_to_grid_clamps_to_board():
    assert game.pixel_to_grid(45, 85) == (1, 2)
    assert game.pixel_to_grid(-5, -5) == (0, 0)
    assert game.pixel_to_grid(10_000, 10_000) == (game.GRID_W - 1, game.GRID_H - 1)


def test_grid_to_pixel_uses_cell_centres():
    assert game.grid_to_pixel(0, 0) == (game.CELL // 2, game.CELL // 2)
    assert game.grid_to_pixel(2, 1) == (2 * game.CELL + game.CELL // 2, game.CELL + game.CELL // 2)


def test_station_at_pixel():
    ids = IdCounters()
    state = make_stations(ids, (0, 0), (3, 3))
    centre = game.grid_to_pixel(3, 3)

    assert game.station_at_pixel(state, centre).id == state.stations[1].id
    assert game.station_at_pixel(state, (centre[0] + 5, centre[1] - 5)).id == state.stations[1].id
    assert game.station_at_pixel(state, game.grid_to_pixel(6, 6)) is None


def test_tick_clock_catches_up():
    clock = game.TickClock(interval_ms=200)

    assert clock.advance(450) == 2
    assert clock.fraction == pytest.approx(0.25)
    assert clock.advance(150) == 1
    assert clock.advance(10) == 0

    clock.reset()
    assert clock.fraction == 0


def test_extend_drag_path_skips_repeated_cells():
    path = game.extend_drag_path([], (1, 1))
    path = game.extend_drag_path(path, (1, 1))
    path = game.extend_drag_path(path, (2, 1))

    assert path == [GridPoint(1, 1), GridPoint(2, 1)]


def test_build_progress_interpolates_between_ticks():
    assert game.build_progress(CONSTRUCTION_TICKS) == 0.0
    assert game.build_progress(0) == 1.0
    assert game.build_progress(25, 0.5) == pytest.approx(1 - 24.5 / CONSTRUCTION_TICKS)
    assert game.build_progress(CONSTRUCTION_TICKS + 10) == 0.0


def test_split_path_by_progress():
    pieces = game.split_path_by_progress([(0, 0), (10, 0), (20, 0)], 0.25)

    assert pieces == [
        ((0, 0), (5.0, 0.0), True),
        ((5.0, 0.0), (10, 0), False),
        ((10, 0), (20, 0), False),
    ]
    assert game.split_path_by_progress([(1, 1), (1, 1)], 0.5) == []


def test_button_at_position():
    assert game.button_at_position((15, 60)) == "station"
    assert game.button_at_position((165, 70)) == "play"
    assert game.button_at_position((500, 500)) is None


def test_link_stations_opens_new_line():
    ids = IdCounters()
    state = make_stations(ids, (0, 0), (2, 0))
    a, b = state.stations

    state = game.link_stations(state, a, b)

    assert len(state.lines) == 1
    assert len(state.trains) == 1


def test_link_stations_extends_line_ending_at_start():
    ids = IdCounters()
    state = make_shuttle(ids)
    state = simulation.place_station(state, 4, 0, ids=ids)
    _, b, c = state.stations

    state = game.link_stations(state, b, c)

    assert len(state.lines) == 1
    assert len(state.lines[0].segment_ids) == 2
    assert game.line_ending_at_station(state, c).id == state.lines[0].id


def test_station_panel_lists_waiting_lines_and_trains_present():
    ids = IdCounters()
    state = make_shuttle(ids)
    state = simulation.place_station(state, 5, 5, ids=ids)
    a, b, lonely = state.stations
    state = simulation.spawn_passengers(state, ALWAYS_SPAWN, ids)
    train_id = state.trains[0].id

    rows = game.station_panel_lines(state, a)

    assert rows[0] == f"{a.id} @ 0,0"
    assert rows[1] == "waiting  1"
    assert rows[2] == f"lines    {state.lines[0].id}"
    assert rows[3] == f"{train_id:<8} 0/{MAX_PASSENGERS_PER_TRAIN}"

    assert game.station_panel_lines(state, b)[3:] == []
    assert game.station_panel_lines(state, lonely)[2] == "lines    none"
