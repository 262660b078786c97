from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from vyuha.sim.mutations import clamp_position
from vyuha.sim.state import Entity, Grid, Position, WorldState, is_finite_number, numeric_property


DEFAULT_MOBILITY = 2

# N, E, S, W, then the diagonals clockwise from NE.
NEIGHBOR_OFFSETS = (
    (0, -1),
    (1, 0),
    (0, 1),
    (-1, 0),
    (1, -1),
    (1, 1),
    (-1, 1),
    (-1, -1),
)


@dataclass
class MoveOutcome:
    position: Position
    requested: Position
    moved: bool
    redirected: bool = False
    stuck: bool = False


def _to_step(value: Any) -> int:
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if not is_finite_number(value):
        return 0
    return int(round(value))


def mobility_of(agent: Entity) -> int:
    raw = numeric_property(agent.properties, "mobility", DEFAULT_MOBILITY)
    return abs(int(round(raw)))


def clamp_delta(dx: Any, dy: Any, mobility: int) -> tuple[int, int]:
    limit = abs(int(mobility))
    step_x = max(-limit, min(limit, _to_step(dx)))
    step_y = max(-limit, min(limit, _to_step(dy)))
    return step_x, step_y


def occupied_by_agents(state: WorldState, exclude_id: str) -> set[tuple[int, int]]:
    return {
        (entity.position.x, entity.position.y)
        for entity in state.entities
        if entity.is_agent and entity.id != exclude_id
    }


def _within_mobility(current: Position, candidate: Position, mobility: int) -> bool:
    return abs(candidate.x - current.x) <= mobility and abs(candidate.y - current.y) <= mobility


def _in_bounds(x: int, y: int, grid: Grid) -> bool:
    return 0 <= x < grid.width and 0 <= y < grid.height


def resolve_move(state: WorldState, agent: Entity, dx: Any, dy: Any) -> MoveOutcome:
    mobility = mobility_of(agent)
    step_x, step_y = clamp_delta(dx, dy, mobility)
    current = agent.position
    target = clamp_position(Position(x=current.x + step_x, y=current.y + step_y), state.grid)

    blocked = occupied_by_agents(state, exclude_id=agent.id)
    if (target.x, target.y) not in blocked:
        return MoveOutcome(position=target, requested=target, moved=target != current)

    for offset_x, offset_y in NEIGHBOR_OFFSETS:
        x, y = target.x + offset_x, target.y + offset_y
        if not _in_bounds(x, y, state.grid):
            continue
        candidate = Position(x=x, y=y)
        if candidate == current or (x, y) in blocked:
            continue
        if not _within_mobility(current, candidate, mobility):
            continue
        return MoveOutcome(position=candidate, requested=target, moved=True, redirected=True)

    return MoveOutcome(position=current, requested=target, moved=False, stuck=True)
