from __future__ import annotations

import logging
import math
import sys

from core import simulation
from core.models import (
    CONSTRUCTION_TICKS,
    MAX_PASSENGERS_PER_TRAIN,
    TICK_INTERVAL_MS,
    GridPoint,
    SimState,
    Station,
    create_initial_state,
)

logger = logging.getLogger(__name__)

GRID_W = 20
GRID_H = 15
CELL = 40
WINDOW_SIZE = (GRID_W * CELL, GRID_H * CELL + 40)

LINE_WIDTH = 4
STATION_DRAW_RADIUS = 12
STATION_SELECT_RADIUS = STATION_DRAW_RADIUS + 4
TRAIN_DRAW_RADIUS = 6

BACKGROUND_COLOR = (26, 26, 46)
GRID_COLOR = (42, 42, 74)
CONSTRUCTED_COLOR = (78, 205, 196)
PLANNED_COLOR = (108, 117, 125)
TRAIN_COLOR = (255, 230, 109)
HOVER_COLOR = (255, 255, 255)
BUTTON_COLOR = (51, 51, 102)
BUTTON_HOVER_COLOR = (68, 68, 119)

MODES = ("station", "line", "play")
MODE_LABELS = {
    "station": "Place station",
    "line": "Draw line (drag route, shift+drag to link stations now)",
    "play": "Play",
}
BUTTONS = [
    ("station", "Station", (10, 58, 70, 24)),
    ("line", "Line", (90, 58, 60, 24)),
    ("play", "Play", (160, 58, 60, 24)),
]


class TickClock:
    """Turns frame deltas into a number of due simulation ticks (catch-up loop)."""

    def __init__(self, interval_ms: int = TICK_INTERVAL_MS):
        self.interval_ms = interval_ms
        self.elapsed_ms = 0.0

    def advance(self, delta_ms: float) -> int:
        self.elapsed_ms += delta_ms
        due = 0
        while self.elapsed_ms >= self.interval_ms:
            self.elapsed_ms -= self.interval_ms
            due += 1
        return due

    @property
    def fraction(self) -> float:
        return self.elapsed_ms / self.interval_ms

    def reset(self):
        self.elapsed_ms = 0.0


def grid_to_pixel(gx: float, gy: float) -> tuple[int, int]:
    return int(round(gx * CELL + CELL / 2)), int(round(gy * CELL + CELL / 2))


def pixel_to_grid(px: float, py: float) -> tuple[int, int]:
    gx = int(math.floor(px / CELL))
    gy = int(math.floor(py / CELL))
    return min(max(gx, 0), GRID_W - 1), min(max(gy, 0), GRID_H - 1)


def station_at_pixel(state: SimState, pos: tuple[int, int], radius: int = STATION_SELECT_RADIUS) -> Station | None:
    px, py = pos
    radius_sq = radius * radius
    for station in state.stations:
        sx, sy = grid_to_pixel(station.x, station.y)
        dx = sx - px
        dy = sy - py
        if dx * dx + dy * dy <= radius_sq:
            return station
    return None


def button_at_position(pos: tuple[int, int]) -> str | None:
    px, py = pos
    for mode, _label, (x, y, w, h) in BUTTONS:
        if x <= px < x + w and y <= py < y + h:
            return mode
    return None


def extend_drag_path(path: list[GridPoint], cell: tuple[int, int]) -> list[GridPoint]:
    """Append a grid cell to a route being dragged, ignoring repeats of the last cell."""
    gx, gy = cell
    if path and path[-1].x == gx and path[-1].y == gy:
        return path
    return path + [GridPoint(x=gx, y=gy)]


def build_progress(remaining_ticks: int, tick_fraction: float = 0.0) -> float:
    """Share of a planned line that is built, interpolated between ticks."""
    effective_remaining = remaining_ticks - tick_fraction
    return max(0.0, min(1.0, 1 - effective_remaining / CONSTRUCTION_TICKS))


def split_path_by_progress(points, progress: float):
    """Split a polyline into (start, end, built) pieces at ``progress`` of its length."""
    lengths = [math.dist(a, b) for a, b in zip(points, points[1:])]
    total = sum(lengths)
    if total <= 0:
        return []

    built_length = progress * total
    pieces = []
    acc = 0.0
    for (a, b), length in zip(zip(points, points[1:]), lengths):
        if acc + length <= built_length:
            pieces.append((a, b, True))
        elif acc < built_length:
            t = (built_length - acc) / length
            mid = (a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t)
            pieces.append((a, mid, True))
            pieces.append((mid, b, False))
        else:
            pieces.append((a, b, False))
        acc += length
    return pieces


def line_ending_at_station(state: SimState, station: Station):
    """The first line whose last segment ends at the station's node, if any."""
    for line in state.lines:
        if not line.segment_ids:
            continue
        last = state.segments.get(line.segment_ids[-1])
        if last is not None and last.to_node_id == station.node_id:
            return line
    return None


def link_stations(state: SimState, start: Station, end: Station) -> SimState:
    """Immediately connect two stations: extend a line ending at ``start`` or open a new one."""
    line = line_ending_at_station(state, start)
    if line is not None:
        try:
            return simulation.extend_line(state, line.id, start.id, end.id)
        except ValueError as exc:
            logger.warning("Could not extend line: %s", exc)
            return state

    new_state, segment_id = simulation.add_segment(state, start.id, end.id)
    if not segment_id:
        logger.warning("Could not link %s to %s", start.id, end.id)
    return new_state


def lines_serving_station(state: SimState, station: Station) -> list[str]:
    served = []
    for line in state.lines:
        for segment_id in line.segment_ids:
            segment = state.segments.get(segment_id)
            if segment is not None and station.node_id in (segment.from_node_id, segment.to_node_id):
                served.append(line.id)
                break
    return served


def station_panel_lines(state: SimState, station: Station) -> list[str]:
    """Text rows for the selected-station panel: title, then one row per fact."""
    rows = [
        f"{station.id} @ {station.x},{station.y}",
        f"waiting  {simulation.waiting_count(state, station.id)}",
    ]
    line_ids = lines_serving_station(state, station)
    rows.append("lines    " + (", ".join(line_ids) if line_ids else "none"))
    for train in state.trains:
        if simulation.train_at_node(state, train, station.node_id):
            load = simulation.train_load(state, train.id)
            rows.append(f"{train.id:<8} {load}/{MAX_PASSENGERS_PER_TRAIN}")
    return rows


def draw_station_panel(surface, state: SimState, station: Station, font):
    import pygame

    rows = station_panel_lines(state, station)
    line_height = font.get_linesize()
    width = max(font.size(row)[0] for row in rows) + 24
    height = line_height * (len(rows) + 1)
    panel = pygame.Rect(16, surface.get_height() - height - 16, width, height)

    pygame.draw.rect(surface, BUTTON_COLOR, panel)
    header = pygame.Rect(panel.left, panel.top, panel.width, line_height + 4)
    pygame.draw.rect(surface, CONSTRUCTED_COLOR, header)

    surface.blit(font.render(rows[0], True, BACKGROUND_COLOR), (panel.left + 12, panel.top + 2))
    for index, row in enumerate(rows[1:], start=1):
        surface.blit(font.render(row, True, HOVER_COLOR), (panel.left + 12, panel.top + 4 + index * line_height))


def draw_buttons(surface, font, cursor_pos):
    import pygame

    hovered = button_at_position(cursor_pos)
    for mode, label, rect in BUTTONS:
        color = BUTTON_HOVER_COLOR if mode == hovered else BUTTON_COLOR
        pygame.draw.rect(surface, color, pygame.Rect(rect))
        surface.blit(font.render(label, True, HOVER_COLOR), (rect[0] + 10, rect[1] + 4))


def draw_grid(surface):
    import pygame

    for x in range(GRID_W + 1):
        pygame.draw.line(surface, GRID_COLOR, (x * CELL, 0), (x * CELL, GRID_H * CELL))
    for y in range(GRID_H + 1):
        pygame.draw.line(surface, GRID_COLOR, (0, y * CELL), (GRID_W * CELL, y * CELL))


def draw_planned_line(surface, path, progress: float):
    import pygame

    pixels = [grid_to_pixel(point.x, point.y) for point in path]
    for a, b, built in split_path_by_progress(pixels, progress):
        color = CONSTRUCTED_COLOR if built else PLANNED_COLOR
        pygame.draw.line(surface, color, a, b, LINE_WIDTH)


def draw_state(surface, state: SimState, tick_fraction: float):
    import pygame

    for planned in state.planned_lines:
        draw_planned_line(surface, planned.path, build_progress(planned.construction_remaining_ticks, tick_fraction))

    nodes = {node.id: node for node in state.nodes}
    for line in state.lines:
        for segment_id in line.segment_ids:
            segment = state.segments.get(segment_id)
            if segment is None:
                continue
            start = nodes.get(segment.from_node_id)
            end = nodes.get(segment.to_node_id)
            if start is None or end is None:
                continue
            pygame.draw.line(
                surface, CONSTRUCTED_COLOR, grid_to_pixel(start.x, start.y), grid_to_pixel(end.x, end.y), LINE_WIDTH
            )

    for station in state.stations:
        pos = grid_to_pixel(station.x, station.y)
        pygame.draw.circle(surface, CONSTRUCTED_COLOR, pos, STATION_DRAW_RADIUS)
        pygame.draw.circle(surface, GRID_COLOR, pos, STATION_DRAW_RADIUS, 2)

    for train in state.trains:
        position = simulation.train_grid_position(state, train)
        if position is None:
            continue
        pygame.draw.circle(surface, TRAIN_COLOR, grid_to_pixel(*position), TRAIN_DRAW_RADIUS)


def run_game():
    try:
        import pygame
    except Exception:
        print("pygame not installed. Install with: pip install pygame")
        return

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    pygame.init()
    screen = pygame.display.set_mode(WINDOW_SIZE)
    pygame.display.set_caption("Tube")
    clock = pygame.time.Clock()
    font = pygame.font.SysFont("monospace", 16)
    small_font = pygame.font.SysFont("monospace", 14)

    state = create_initial_state()
    tick_clock = TickClock()
    mode = "station"
    cursor_pos = (0, 0)
    drag_path: list[GridPoint] = []
    dragging = False
    link_start: Station | None = None
    selected_station_id: str | None = None

    def set_mode(new_mode: str):
        nonlocal mode, drag_path, dragging, link_start
        mode = new_mode
        drag_path = []
        dragging = False
        link_start = None
        tick_clock.reset()
        logger.info("Mode: %s", MODE_LABELS[mode])

    running = True
    while running:
        dt = clock.tick(60)

        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                running = False
            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    drag_path = []
                    dragging = False
                    link_start = None
                    selected_station_id = None
                elif event.key in (pygame.K_1, pygame.K_2, pygame.K_3):
                    set_mode(MODES[event.key - pygame.K_1])
            elif event.type == pygame.MOUSEBUTTONDOWN and event.button == 1:
                cursor_pos = event.pos
                button_mode = button_at_position(event.pos)
                if button_mode:
                    set_mode(button_mode)
                    continue

                station = station_at_pixel(state, event.pos)
                selected_station_id = station.id if station else None

                if mode == "station":
                    gx, gy = pixel_to_grid(*event.pos)
                    state = simulation.place_station(state, gx, gy)
                elif mode == "line":
                    dragging = True
                    drag_path = extend_drag_path([], pixel_to_grid(*event.pos))
                    link_start = station if pygame.key.get_mods() & pygame.KMOD_SHIFT else None
            elif event.type == pygame.MOUSEMOTION:
                cursor_pos = event.pos
                if mode == "line" and dragging:
                    drag_path = extend_drag_path(drag_path, pixel_to_grid(*event.pos))
            elif event.type == pygame.MOUSEBUTTONUP and event.button == 1:
                if mode == "line" and dragging:
                    end_station = station_at_pixel(state, event.pos)
                    if link_start is not None and end_station is not None and end_station.id != link_start.id:
                        state = link_stations(state, link_start, end_station)
                    elif len(drag_path) >= 2:
                        state = simulation.add_planned_line(state, drag_path)
                        logger.info("Planned line with %d points queued", len(drag_path))
                    drag_path = []
                    dragging = False
                    link_start = None

        if mode == "play":
            due = tick_clock.advance(dt)
            if due:
                state = simulation.run_ticks(state, due)

        screen.fill(BACKGROUND_COLOR)
        draw_grid(screen)
        draw_state(screen, state, tick_clock.fraction if mode == "play" else 0.0)

        if len(drag_path) >= 2:
            pixels = [grid_to_pixel(point.x, point.y) for point in drag_path]
            pygame.draw.lines(screen, PLANNED_COLOR, False, pixels, LINE_WIDTH)

        hover = station_at_pixel(state, cursor_pos)
        if hover is not None:
            pygame.draw.circle(screen, HOVER_COLOR, grid_to_pixel(hover.x, hover.y), STATION_DRAW_RADIUS + 6, 2)

        screen.blit(font.render(f"Served: {state.served_count}", True, (238, 238, 238)), (10, 10))
        screen.blit(small_font.render(f"Mode: {MODE_LABELS[mode]}", True, (170, 170, 170)), (10, 34))
        draw_buttons(screen, small_font, cursor_pos)

        if selected_station_id:
            station = simulation.find_station(state, selected_station_id)
            if station:
                draw_station_panel(screen, state, station, small_font)
            else:
                selected_station_id = None

        pygame.display.flip()

    pygame.quit()
    sys.exit(0)
