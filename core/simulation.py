from __future__ import annotations

import logging
import random
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import (
    AT_NODE_EPSILON,
    CONSTRUCTION_TICKS,
    DEFAULT_IDS,
    DWELL_TICKS,
    MAX_PASSENGERS_PER_TRAIN,
    SPAWN_CHANCE,
    TRAIN_SPEED,
    GridPoint,
    IdCounters,
    Line,
    Node,
    Passenger,
    PassengerState,
    PlannedLine,
    Segment,
    SimState,
    Station,
    Train,
)

logger = logging.getLogger(__name__)


class SimulationError(ValueError):
    """Raised by validated edits that would break the network's invariants."""


class UnknownReferenceError(SimulationError):
    pass


class ContiguityError(SimulationError):
    pass


def _resolve_ids(ids: IdCounters | None) -> IdCounters:
    return ids if ids is not None else DEFAULT_IDS


def find_station(state: SimState, station_id: str) -> Optional[Station]:
    for station in state.stations:
        if station.id == station_id:
            return station
    return None


def find_line(state: SimState, line_id: str) -> Optional[Line]:
    for line in state.lines:
        if line.id == line_id:
            return line
    return None


def node_by_id(state: SimState, node_id: str) -> Optional[Node]:
    for node in state.nodes:
        if node.id == node_id:
            return node
    return None


def station_at_node(state: SimState, node_id: str) -> Optional[Station]:
    for station in state.stations:
        if station.node_id == node_id:
            return station
    return None


def _idle_train(ids: IdCounters, line_id: str) -> Train:
    return Train(id=ids.train(), line_id=line_id)


def place_station(state: SimState, x: int, y: int, ids: IdCounters | None = None) -> SimState:
    """Add a new node with a station on it at (x, y)."""
    ids = _resolve_ids(ids)
    node = Node(id=ids.node(), x=x, y=y)
    station = Station(id=ids.station(), node_id=node.id, x=x, y=y)
    return replace(
        state,
        nodes=state.nodes + (node,),
        stations=state.stations + (station,),
    )


def add_segment(
    state: SimState,
    from_station_id: str,
    to_station_id: str,
    ids: IdCounters | None = None,
) -> Tuple[SimState, str]:
    """Connect two stations with a brand-new single-segment line and its train.

    Returns ``(state, segment_id)``. If either station is unknown the input
    state comes back untouched together with an empty segment id.
    """
    from_station = find_station(state, from_station_id)
    to_station = find_station(state, to_station_id)
    if from_station is None or to_station is None:
        return state, ""

    ids = _resolve_ids(ids)
    segment_id = ids.segment()
    segments = dict(state.segments)
    segments[segment_id] = Segment(from_node_id=from_station.node_id, to_node_id=to_station.node_id)

    line = Line(id=ids.line(), segment_ids=(segment_id,))
    train = _idle_train(ids, line.id)
    logger.debug("Line %s created between %s and %s", line.id, from_station_id, to_station_id)

    new_state = replace(
        state,
        segments=segments,
        lines=state.lines + (line,),
        trains=state.trains + (train,),
    )
    return new_state, segment_id


def append_segment_to_line(
    state: SimState,
    line_id: str,
    from_station_id: str,
    to_station_id: str,
    ids: IdCounters | None = None,
) -> SimState:
    """Append one segment to the end of a line.

    Contiguity with the line's last segment is not checked here; use
    ``extend_line`` for a validated extension.
    """
    from_station = find_station(state, from_station_id)
    to_station = find_station(state, to_station_id)
    if from_station is None or to_station is None:
        return state
    if find_line(state, line_id) is None:
        return state

    ids = _resolve_ids(ids)
    segment_id = ids.segment()
    segments = dict(state.segments)
    segments[segment_id] = Segment(from_node_id=from_station.node_id, to_node_id=to_station.node_id)

    lines = tuple(
        replace(line, segment_ids=line.segment_ids + (segment_id,)) if line.id == line_id else line
        for line in state.lines
    )
    return replace(state, segments=segments, lines=lines)


def extend_line(
    state: SimState,
    line_id: str,
    from_station_id: str,
    to_station_id: str,
    ids: IdCounters | None = None,
) -> SimState:
    """Extend a line past its terminal station, rejecting edits that would break the chain."""
    line = find_line(state, line_id)
    if line is None:
        raise UnknownReferenceError(f"Unknown line id: {line_id}")

    from_station = find_station(state, from_station_id)
    to_station = find_station(state, to_station_id)
    for station_id, station in ((from_station_id, from_station), (to_station_id, to_station)):
        if station is None:
            raise UnknownReferenceError(f"Unknown station id: {station_id}")

    if from_station.node_id == to_station.node_id:
        raise ContiguityError("Cannot extend a line onto the node it already ends at")

    if line.segment_ids:
        last = state.segments.get(line.segment_ids[-1])
        if last is None:
            raise UnknownReferenceError(f"Unknown segment id: {line.segment_ids[-1]}")
        if last.to_node_id != from_station.node_id:
            raise ContiguityError(
                f"Line {line_id} ends at {last.to_node_id}, cannot extend from {from_station.node_id}"
            )

    return append_segment_to_line(state, line_id, from_station_id, to_station_id, ids=ids)


def _as_grid_point(point) -> GridPoint:
    if isinstance(point, GridPoint):
        return point
    if isinstance(point, Mapping):
        return GridPoint(x=point["x"], y=point["y"])
    if isinstance(point, Sequence) and not isinstance(point, str) and len(point) == 2:
        x, y = point
        return GridPoint(x=x, y=y)
    raise TypeError(f"Path point must be a GridPoint, an (x, y) pair or an x/y mapping, got {point!r}")


def add_planned_line(state: SimState, path: Iterable, ids: IdCounters | None = None) -> SimState:
    """Queue a drawn route for construction. Paths shorter than two points are ignored."""
    points = tuple(_as_grid_point(point) for point in path)
    if len(points) < 2:
        return state

    ids = _resolve_ids(ids)
    planned = PlannedLine(
        id=ids.planned_line(),
        path=points,
        construction_remaining_ticks=CONSTRUCTION_TICKS,
    )
    return replace(state, planned_lines=state.planned_lines + (planned,))


def tick(state: SimState, rng=None, ids: IdCounters | None = None) -> SimState:
    """Advance the simulation by one tick. State in, state out."""
    rng = rng if rng is not None else random
    ids = _resolve_ids(ids)

    next_state = replace(state, tick=state.tick + 1)
    next_state = progress_construction(next_state, ids)
    next_state = move_trains(next_state)
    next_state = update_passengers(next_state)
    next_state = spawn_passengers(next_state, rng, ids)
    return next_state


def run_ticks(state: SimState, count: int, rng=None, ids: IdCounters | None = None) -> SimState:
    for _ in range(count):
        state = tick(state, rng=rng, ids=ids)
    return state


def progress_construction(state: SimState, ids: IdCounters) -> SimState:
    if not state.planned_lines:
        return state

    remaining: List[PlannedLine] = []
    for planned in state.planned_lines:
        ticks_left = planned.construction_remaining_ticks - 1
        if ticks_left > 0:
            remaining.append(replace(planned, construction_remaining_ticks=ticks_left))
            continue
        state = build_planned_line(state, planned, ids)

    return replace(state, planned_lines=tuple(remaining))


def build_planned_line(state: SimState, planned: PlannedLine, ids: IdCounters) -> SimState:
    """Turn a finished planned route into nodes, stations, segments, a line and a train.

    Existing nodes are reused by exact coordinate match. Consecutive points
    that land on the same node produce no segment. A route that collapses to
    a single node builds nothing at all.
    """
    if len({(point.x, point.y) for point in planned.path}) < 2:
        logger.warning("Planned line %s has no usable segments; dropping it", planned.id)
        return state

    nodes = list(state.nodes)
    node_at: Dict[Tuple[int, int], Node] = {}
    for node in nodes:
        node_at.setdefault((node.x, node.y), node)

    path_nodes: List[Node] = []
    for point in planned.path:
        key = (point.x, point.y)
        node = node_at.get(key)
        if node is None:
            node = Node(id=ids.node(), x=point.x, y=point.y)
            node_at[key] = node
            nodes.append(node)
        path_nodes.append(node)

    segments = dict(state.segments)
    segment_ids: List[str] = []
    for start, end in zip(path_nodes, path_nodes[1:]):
        if start.id == end.id:
            continue
        segment_id = ids.segment()
        segments[segment_id] = Segment(from_node_id=start.id, to_node_id=end.id)
        segment_ids.append(segment_id)

    stations = list(state.stations)
    occupied = {station.node_id for station in stations}
    for node in (path_nodes[0], path_nodes[-1]):
        if node.id in occupied:
            continue
        stations.append(Station(id=ids.station(), node_id=node.id, x=node.x, y=node.y))
        occupied.add(node.id)

    line = Line(id=ids.line(), segment_ids=tuple(segment_ids))
    train = _idle_train(ids, line.id)
    logger.debug("Planned line %s built as %s with %d segments", planned.id, line.id, len(segment_ids))

    return replace(
        state,
        nodes=tuple(nodes),
        stations=tuple(stations),
        segments=segments,
        lines=state.lines + (line,),
        trains=state.trains + (train,),
    )


def _line_segments(
    line: Optional[Line], segments: Mapping[str, Segment]
) -> Optional[List[Segment]]:
    if line is None or not line.segment_ids:
        return None
    resolved = [segments.get(segment_id) for segment_id in line.segment_ids]
    if any(segment is None for segment in resolved):
        return None
    return resolved


def _dwell(train: Train, segment_index: int, progress: float, direction: int, node_id: str) -> Train:
    return replace(
        train,
        segment_index=segment_index,
        progress=progress,
        direction=direction,
        dwell_ticks_remaining=DWELL_TICKS,
        dwell_at_node_id=node_id,
    )


def _move_train(train: Train, line_segments: Optional[List[Segment]], station_nodes: set) -> Train:
    if line_segments is None:
        return train
    if train.dwell_ticks_remaining > 0:
        return replace(train, dwell_ticks_remaining=train.dwell_ticks_remaining - 1)

    last_index = len(line_segments) - 1
    index = train.segment_index
    if not 0 <= index <= last_index:
        return train

    direction = train.direction
    progress = train.progress + TRAIN_SPEED * direction

    if direction > 0:
        while progress >= 1 - AT_NODE_EPSILON:
            if index == last_index:
                return _dwell(train, index, 1.0, -1, line_segments[index].to_node_id)
            index += 1
            progress = max(0.0, progress - 1)
            entered = line_segments[index].from_node_id
            if entered in station_nodes:
                return _dwell(train, index, 0.0, direction, entered)
    else:
        while progress <= AT_NODE_EPSILON:
            if index == 0:
                return _dwell(train, 0, 0.0, 1, line_segments[0].from_node_id)
            index -= 1
            progress = min(1.0, progress + 1)
            entered = line_segments[index].to_node_id
            if entered in station_nodes:
                return _dwell(train, index, 1.0, direction, entered)

    return replace(train, segment_index=index, progress=progress, dwell_at_node_id=None)


def move_trains(state: SimState) -> SimState:
    if not state.trains:
        return state
    lines = {line.id: line for line in state.lines}
    station_nodes = {station.node_id for station in state.stations}
    trains = tuple(
        _move_train(train, _line_segments(lines.get(train.line_id), state.segments), station_nodes)
        for train in state.trains
    )
    return replace(state, trains=trains)


def _train_at_node(train: Train, node_id: str, lines: Dict[str, Line], segments: Mapping[str, Segment]) -> bool:
    if train.dwell_ticks_remaining > 0:
        return train.dwell_at_node_id == node_id

    line = lines.get(train.line_id)
    if line is None or not 0 <= train.segment_index < len(line.segment_ids):
        return False
    segment = segments.get(line.segment_ids[train.segment_index])
    if segment is None:
        return False

    if train.progress <= AT_NODE_EPSILON and segment.from_node_id == node_id:
        return True
    return train.progress >= 1 - AT_NODE_EPSILON and segment.to_node_id == node_id


def train_at_node(state: SimState, train: Train, node_id: str) -> bool:
    """True when the train is stopped at, or exactly on, the given node this tick."""
    lines = {line.id: line for line in state.lines}
    return _train_at_node(train, node_id, lines, state.segments)


def update_passengers(state: SimState) -> SimState:
    if not state.passengers:
        return state

    stations = {station.id: station for station in state.stations}
    trains = {train.id: train for train in state.trains}
    lines = {line.id: line for line in state.lines}

    load: Dict[str, int] = {}
    for passenger in state.passengers:
        if passenger.state == PassengerState.ON_TRAIN and passenger.train_id:
            load[passenger.train_id] = load.get(passenger.train_id, 0) + 1

    served_count = state.served_count
    passengers: List[Passenger] = []
    for passenger in state.passengers:
        if passenger.state == PassengerState.ARRIVED:
            continue

        if passenger.state == PassengerState.ON_TRAIN:
            train = trains.get(passenger.train_id)
            destination = stations.get(passenger.destination_station_id)
            if train is not None and destination is not None and _train_at_node(
                train, destination.node_id, lines, state.segments
            ):
                served_count += 1
                load[train.id] -= 1
                passenger = replace(passenger, state=PassengerState.ARRIVED, train_id=None)
            passengers.append(passenger)
            continue

        origin = stations.get(passenger.origin_station_id)
        if origin is not None:
            for train in state.trains:
                if load.get(train.id, 0) >= MAX_PASSENGERS_PER_TRAIN:
                    continue
                if not _train_at_node(train, origin.node_id, lines, state.segments):
                    continue
                load[train.id] = load.get(train.id, 0) + 1
                passenger = replace(passenger, state=PassengerState.ON_TRAIN, train_id=train.id)
                break
        passengers.append(passenger)

    return replace(state, passengers=tuple(passengers), served_count=served_count)


def spawn_passengers(state: SimState, rng=None, ids: IdCounters | None = None) -> SimState:
    if len(state.stations) < 2:
        return state
    rng = rng if rng is not None else random
    ids = _resolve_ids(ids)

    spawned: List[Passenger] = []
    for origin in state.stations:
        if rng.random() >= SPAWN_CHANCE:
            continue
        others = [station for station in state.stations if station.id != origin.id]
        destination = rng.choice(others)
        spawned.append(
            Passenger(
                id=ids.passenger(),
                origin_station_id=origin.id,
                destination_station_id=destination.id,
            )
        )

    if not spawned:
        return state
    return replace(state, passengers=state.passengers + tuple(spawned))


def waiting_count(state: SimState, station_id: str) -> int:
    return sum(
        1
        for passenger in state.passengers
        if passenger.state == PassengerState.WAITING and passenger.origin_station_id == station_id
    )


def train_load(state: SimState, train_id: str) -> int:
    return sum(
        1
        for passenger in state.passengers
        if passenger.state == PassengerState.ON_TRAIN and passenger.train_id == train_id
    )


def train_grid_position(state: SimState, train: Train) -> Optional[Tuple[float, float]]:
    """Interpolated (x, y) of a train in grid units, or None if it cannot be placed."""
    line = find_line(state, train.line_id)
    if line is None or not 0 <= train.segment_index < len(line.segment_ids):
        return None
    segment = state.segments.get(line.segment_ids[train.segment_index])
    if segment is None:
        return None
    start = node_by_id(state, segment.from_node_id)
    end = node_by_id(state, segment.to_node_id)
    if start is None or end is None:
        return None
    return (
        start.x + (end.x - start.x) * train.progress,
        start.y + (end.y - start.y) * train.progress,
    )
