from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple
import itertools

CONSTRUCTION_TICKS = 50  # 10s at 200ms per tick
TICK_INTERVAL_MS = 200

TRAIN_SPEED = 0.05  # progress per tick along a segment
DWELL_TICKS = 5
SPAWN_CHANCE = 0.15  # per station, per tick
MAX_PASSENGERS_PER_TRAIN = 50
AT_NODE_EPSILON = 1e-6


@dataclass(frozen=True)
class GridPoint:
    x: int
    y: int


@dataclass(frozen=True)
class Node:
    """A point on the network. Only some nodes are stations."""
    id: str
    x: int
    y: int


@dataclass(frozen=True)
class Station:
    id: str
    node_id: str
    x: int
    y: int


@dataclass(frozen=True)
class Segment:
    from_node_id: str
    to_node_id: str


@dataclass(frozen=True)
class Line:
    id: str
    # ordered: segment 0, 1, 2...
    segment_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Train:
    id: str
    line_id: str
    segment_index: int = 0
    # 0..1 along the current segment, measured from its from_node_id
    progress: float = 0.0
    # 1 = toward higher segment index, -1 = toward lower
    direction: int = 1
    dwell_ticks_remaining: int = 0
    dwell_at_node_id: Optional[str] = None

    @property
    def dwelling(self) -> bool:
        return self.dwell_ticks_remaining > 0


class PassengerState(str, Enum):
    WAITING = "waiting"
    ON_TRAIN = "on_train"
    ARRIVED = "arrived"


@dataclass(frozen=True)
class Passenger:
    id: str
    origin_station_id: str
    destination_station_id: str
    state: PassengerState = PassengerState.WAITING
    train_id: Optional[str] = None


@dataclass(frozen=True)
class PlannedLine:
    """Drawn route that becomes a real line once construction finishes."""
    id: str
    path: Tuple[GridPoint, ...]
    construction_remaining_ticks: int = CONSTRUCTION_TICKS


@dataclass(frozen=True)
class SimState:
    tick: int = 0
    nodes: Tuple[Node, ...] = ()
    stations: Tuple[Station, ...] = ()
    # read-only view; actions copy it into a new dict before adding segments
    segments: Mapping[str, Segment] = field(default_factory=dict)
    lines: Tuple[Line, ...] = ()
    trains: Tuple[Train, ...] = ()
    passengers: Tuple[Passenger, ...] = ()
    served_count: int = 0
    planned_lines: Tuple[PlannedLine, ...] = ()

    def __post_init__(self):
        if not isinstance(self.segments, MappingProxyType):
            object.__setattr__(self, "segments", MappingProxyType(dict(self.segments)))


class IdCounters:
    """One monotonically increasing counter per entity kind.

    Ids are never reused, so a single bundle must outlive every snapshot it
    has minted ids for. The module-level default lives for the whole process;
    pass a private bundle to keep a run isolated (tests, embedding).
    """

    PREFIXES = {
        "node": "node_",
        "station": "st_",
        "segment": "seg_",
        "line": "line_",
        "train": "train_",
        "passenger": "pax_",
        "planned_line": "planned_",
    }

    def __init__(self):
        self._counters = {kind: itertools.count(1) for kind in self.PREFIXES}

    def next(self, kind: str) -> str:
        if kind not in self._counters:
            raise KeyError(f"Unknown id kind: {kind}")
        return f"{self.PREFIXES[kind]}{next(self._counters[kind])}"

    def node(self) -> str:
        return self.next("node")

    def station(self) -> str:
        return self.next("station")

    def segment(self) -> str:
        return self.next("segment")

    def line(self) -> str:
        return self.next("line")

    def train(self) -> str:
        return self.next("train")

    def passenger(self) -> str:
        return self.next("passenger")

    def planned_line(self) -> str:
        return self.next("planned_line")


DEFAULT_IDS = IdCounters()


def next_node_id() -> str:
    return DEFAULT_IDS.node()


def next_station_id() -> str:
    return DEFAULT_IDS.station()


def next_segment_id() -> str:
    return DEFAULT_IDS.segment()


def next_line_id() -> str:
    return DEFAULT_IDS.line()


def next_train_id() -> str:
    return DEFAULT_IDS.train()


def next_passenger_id() -> str:
    return DEFAULT_IDS.passenger()


def next_planned_line_id() -> str:
    return DEFAULT_IDS.planned_line()


def create_initial_state() -> SimState:
    return SimState()
