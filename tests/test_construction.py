import pytest

from core import simulation
from core.models import CONSTRUCTION_TICKS, TRAIN_SPEED, GridPoint, IdCounters, Segment, create_initial_state
from tests._support.sim_helpers import make_stations, run


def plan(state, ids, *points):
    return simulation.add_planned_line(state, [GridPoint(x, y) for x, y in points], ids=ids)


def node_at(state, x, y):
    matches = [node for node in state.nodes if (node.x, node.y) == (x, y)]
    assert len(matches) == 1
    return matches[0]


def test_planned_line_still_pending_one_tick_before_completion():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0), (2, 0))

    state = run(state, CONSTRUCTION_TICKS - 1, ids)

    assert len(state.planned_lines) == 1
    assert state.planned_lines[0].construction_remaining_ticks == 1
    assert state.lines == ()
    assert state.trains == ()


def test_planned_line_becomes_line_after_construction_ticks():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0), (2, 0))

    state = run(state, CONSTRUCTION_TICKS, ids)

    assert state.planned_lines == ()
    assert len(state.lines) == 1
    assert len(state.trains) == 1
    assert len(state.nodes) == 3
    assert len(state.stations) == 2

    line = state.lines[0]
    assert len(line.segment_ids) == 2
    first, second = (state.segments[segment_id] for segment_id in line.segment_ids)
    assert first == Segment(node_at(state, 0, 0).id, node_at(state, 1, 0).id)
    assert second == Segment(node_at(state, 1, 0).id, node_at(state, 2, 0).id)

    station_nodes = {station.node_id for station in state.stations}
    assert station_nodes == {node_at(state, 0, 0).id, node_at(state, 2, 0).id}


def test_new_train_moves_in_the_tick_its_line_is_built():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0))

    state = run(state, CONSTRUCTION_TICKS, ids)

    train = state.trains[0]
    assert train.line_id == state.lines[0].id
    assert train.segment_index == 0
    assert train.progress == pytest.approx(TRAIN_SPEED)
    assert train.direction == 1


def test_train_passes_plain_waypoints_without_stopping():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0), (2, 0))
    state = run(state, CONSTRUCTION_TICKS, ids)

    state = run(state, round(1 / TRAIN_SPEED) - 1, ids)

    train = state.trains[0]
    assert train.segment_index == 1
    assert train.progress == pytest.approx(0.0, abs=1e-9)
    assert train.dwell_ticks_remaining == 0


def test_construction_reuses_existing_nodes_and_stations():
    ids = IdCounters()
    state = make_stations(ids, (0, 0))
    existing = state.stations[0]

    state = plan(state, ids, (0, 0), (1, 0))
    state = run(state, CONSTRUCTION_TICKS, ids)

    assert len(state.nodes) == 2
    assert len(state.stations) == 2
    segment = state.segments[state.lines[0].segment_ids[0]]
    assert segment.from_node_id == existing.node_id


def test_intermediate_point_on_existing_station_is_reused_not_duplicated():
    ids = IdCounters()
    state = make_stations(ids, (1, 0))
    middle = state.stations[0]

    state = plan(state, ids, (0, 0), (1, 0), (2, 0))
    state = run(state, CONSTRUCTION_TICKS, ids)

    assert len(state.stations) == 3
    first, second = (state.segments[s] for s in state.lines[0].segment_ids)
    assert first.to_node_id == middle.node_id
    assert second.from_node_id == middle.node_id


def test_repeated_cells_do_not_create_segments():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0), (1, 0), (2, 0))

    state = run(state, CONSTRUCTION_TICKS, ids)

    assert len(state.lines[0].segment_ids) == 2
    assert len(state.nodes) == 3


def test_degenerate_path_builds_nothing_and_is_dropped():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (3, 3), (3, 3))

    state = run(state, CONSTRUCTION_TICKS, ids)

    assert state.planned_lines == ()
    assert state.nodes == ()
    assert state.stations == ()
    assert state.segments == {}
    assert state.lines == ()
    assert state.trains == ()


def test_loop_path_gets_a_single_station_at_its_shared_endpoint():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0), (0, 0))

    state = run(state, CONSTRUCTION_TICKS, ids)

    assert len(state.nodes) == 2
    assert len(state.stations) == 1
    assert len(state.lines[0].segment_ids) == 2


def test_planned_lines_complete_independently():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0))
    state = run(state, 10, ids)
    state = plan(state, ids, (5, 5), (5, 6))

    state = run(state, CONSTRUCTION_TICKS - 10, ids)
    assert len(state.lines) == 1
    assert len(state.planned_lines) == 1
    assert state.planned_lines[0].construction_remaining_ticks == 10

    state = run(state, 10, ids)
    assert len(state.lines) == 2
    assert state.planned_lines == ()


def test_no_two_stations_share_a_node_after_overlapping_routes():
    ids = IdCounters()
    state = plan(create_initial_state(), ids, (0, 0), (1, 0), (2, 0))
    state = plan(state, ids, (2, 0), (2, 1), (0, 0))
    state = plan(state, ids, (0, 0), (2, 0))

    state = run(state, CONSTRUCTION_TICKS, ids)

    node_ids = [station.node_id for station in state.stations]
    assert len(node_ids) == len(set(node_ids))
    assert len(state.lines) == 3
    assert len(state.stations) == 2
