from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from vyuha.sim.state import (
    LOG_LIMIT,
    MEMORY_LIMIT,
    Entity,
    Grid,
    LogEntry,
    LogType,
    Position,
    StructuredRule,
    WorldState,
    is_finite_number,
)


LOGGER = logging.getLogger("vyuha.sim.mutations")

MUTATION_TYPES = (
    "add_entity",
    "remove_entity",
    "modify_entity",
    "add_global_rule",
    "remove_global_rule",
    "modify_grid",
    "modify_environment",
    "fill_area",
    "add_structured_rule",
    "remove_structured_rule",
)


def clamp_position(position: Position, grid: Grid) -> Position:
    return Position(
        x=max(0, min(grid.width - 1, position.x)),
        y=max(0, min(grid.height - 1, position.y)),
    )


def find_entity(state: WorldState, entity_id: str) -> Entity | None:
    for entity in state.entities:
        if entity.id == entity_id:
            return entity
    return None


def append_memory(memory: list[str] | None, text: str) -> list[str]:
    items = list(memory or [])
    items.append(text)
    return items[-MEMORY_LIMIT:]


def _with_agent_defaults(entity: Entity) -> Entity:
    if entity.is_agent:
        entity.status = entity.status or "idle"
        entity.memory = list(entity.memory or [])[-MEMORY_LIMIT:]
        entity.delay = entity.delay if entity.delay is not None else 0
    return entity


def update_entity(state: WorldState, entity_id: str, changes: Mapping[str, Any]) -> Entity | None:
    for index, entity in enumerate(state.entities):
        if entity.id != entity_id:
            continue
        merged = entity.model_dump(by_alias=True)
        merged.update({key: value for key, value in changes.items() if key != "id"})
        updated = Entity.model_validate(merged)
        updated.position = clamp_position(updated.position, state.grid)
        if updated.memory is not None and len(updated.memory) > MEMORY_LIMIT:
            updated.memory = updated.memory[-MEMORY_LIMIT:]
        state.entities[index] = updated
        return updated
    return None


def remove_entity(state: WorldState, entity_id: str) -> Entity | None:
    for index, entity in enumerate(state.entities):
        if entity.id == entity_id:
            return state.entities.pop(index)
    return None


def _elapsed_seconds(started: str) -> float | None:
    try:
        started_at = datetime.fromisoformat(started)
    except ValueError:
        return None
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=UTC)
    return round(max(0.0, (datetime.now(UTC) - started_at).total_seconds()), 3)


def append_log(
    state: WorldState,
    message: str,
    log_type: LogType = "system",
    agent_id: str | None = None,
) -> LogEntry:
    entry = LogEntry(message=message, type=log_type, agent_id=agent_id)
    state.log.append(entry)
    if len(state.log) > LOG_LIMIT:
        del state.log[:-LOG_LIMIT]
    state.action_count += 1
    elapsed = _elapsed_seconds(state.time.started)
    if elapsed is not None:
        state.time.elapsed = elapsed
    return entry


def enforce_invariants(state: WorldState) -> None:
    for entity in state.entities:
        clamped = clamp_position(entity.position, state.grid)
        if clamped != entity.position:
            entity.position = clamped
        if entity.memory is not None and len(entity.memory) > MEMORY_LIMIT:
            entity.memory = entity.memory[-MEMORY_LIMIT:]
    if len(state.log) > LOG_LIMIT:
        del state.log[:-LOG_LIMIT]


def _coordinate(payload: Mapping[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, str):
        value = float(value.strip())
    if not is_finite_number(value):
        raise ValueError(f"{key} must be a finite number")
    return int(round(value))


def _add_entity(state: WorldState, payload: dict[str, Any]) -> None:
    entity = Entity.model_validate(payload)
    if find_entity(state, entity.id) is not None:
        LOGGER.warning("add_entity ignored: duplicate entity id=%s", entity.id)
        return
    entity.position = clamp_position(entity.position, state.grid)
    state.entities.append(_with_agent_defaults(entity))


def _remove_entity(state: WorldState, payload: dict[str, Any]) -> None:
    entity_id = payload.get("id")
    if isinstance(entity_id, str):
        remove_entity(state, entity_id)


def _modify_entity(state: WorldState, payload: dict[str, Any]) -> None:
    entity_id = payload.get("id")
    if not isinstance(entity_id, str) or not entity_id:
        raise ValueError("modify_entity requires an id")
    if update_entity(state, entity_id, payload) is None:
        LOGGER.debug("modify_entity ignored: unknown entity id=%s", entity_id)


def _add_global_rule(state: WorldState, payload: dict[str, Any]) -> None:
    rule = payload.get("rule")
    if not isinstance(rule, str) or not rule.strip():
        raise ValueError("add_global_rule requires a non-empty rule")
    state.global_rules.append(rule)


def _remove_global_rule(state: WorldState, payload: dict[str, Any]) -> None:
    rule = payload.get("rule")
    state.global_rules = [existing for existing in state.global_rules if existing != rule]


def _modify_grid(state: WorldState, payload: dict[str, Any]) -> None:
    merged = state.grid.model_dump()
    merged.update({key: payload[key] for key in ("width", "height") if key in payload})
    state.grid = Grid.model_validate(merged)


def _modify_environment(state: WorldState, payload: dict[str, Any]) -> None:
    state.environment.update(payload)


def _fill_area(state: WorldState, payload: dict[str, Any]) -> None:
    x1, y1 = _coordinate(payload, "x1"), _coordinate(payload, "y1")
    x2, y2 = _coordinate(payload, "x2"), _coordinate(payload, "y2")
    entity_type = payload.get("entityType") or payload.get("entity_type")
    if not isinstance(entity_type, str) or not entity_type:
        raise ValueError("fill_area requires an entityType")
    properties = payload.get("properties") or {}
    if not isinstance(properties, Mapping):
        raise ValueError("fill_area properties must be an object")

    min_x, max_x = max(0, min(x1, x2)), min(state.grid.width - 1, max(x1, x2))
    min_y, max_y = max(0, min(y1, y2)), min(state.grid.height - 1, max(y1, y2))
    existing_ids = {entity.id for entity in state.entities}
    created = 0
    for x in range(min_x, max_x + 1):
        for y in range(min_y, max_y + 1):
            entity_id = f"{entity_type}-{x}-{y}"
            if entity_id in existing_ids:
                continue
            entity = Entity(
                id=entity_id,
                type=entity_type,
                name=str(payload.get("name") or entity_type),
                position=Position(x=x, y=y),
                emoji=str(payload.get("emoji") or ""),
                color=str(payload.get("color") or ""),
                properties=dict(properties),
            )
            state.entities.append(_with_agent_defaults(entity))
            existing_ids.add(entity_id)
            created += 1
    LOGGER.debug("fill_area created=%s type=%s", created, entity_type)


def _add_structured_rule(state: WorldState, payload: dict[str, Any]) -> None:
    rule = StructuredRule.model_validate(payload)
    if any(existing.id == rule.id for existing in state.structured_rules):
        LOGGER.warning("add_structured_rule ignored: duplicate rule id=%s", rule.id)
        return
    state.structured_rules.append(rule)


def _remove_structured_rule(state: WorldState, payload: dict[str, Any]) -> None:
    rule_id = payload.get("id")
    state.structured_rules = [rule for rule in state.structured_rules if rule.id != rule_id]


_HANDLERS: dict[str, Callable[[WorldState, dict[str, Any]], None]] = {
    "add_entity": _add_entity,
    "remove_entity": _remove_entity,
    "modify_entity": _modify_entity,
    "add_global_rule": _add_global_rule,
    "remove_global_rule": _remove_global_rule,
    "modify_grid": _modify_grid,
    "modify_environment": _modify_environment,
    "fill_area": _fill_area,
    "add_structured_rule": _add_structured_rule,
    "remove_structured_rule": _remove_structured_rule,
    # older clients still send the pre-"structured" names
    "add_rule": _add_structured_rule,
    "remove_rule": _remove_structured_rule,
}


def apply_mutation(state: WorldState, mutation: Any, index: int = 0) -> bool:
    """Apply one wire mutation in place. Returns False when it was skipped."""
    if not isinstance(mutation, Mapping):
        LOGGER.warning("Skipping mutation index=%s: expected an object, got %s", index, type(mutation).__name__)
        return False

    kind = mutation.get("type")
    handler = _HANDLERS.get(kind) if isinstance(kind, str) else None
    if handler is None:
        LOGGER.debug("Ignoring unknown mutation type=%r index=%s", kind, index)
        return False

    payload = mutation.get("payload")
    if not isinstance(payload, Mapping):
        LOGGER.warning("Skipping %s mutation index=%s: payload is not an object", kind, index)
        return False

    try:
        handler(state, dict(payload))
    except (ValueError, TypeError) as exc:
        LOGGER.warning("Skipping malformed %s mutation index=%s detail=%s", kind, index, exc)
        return False

    enforce_invariants(state)
    return True


def apply_mutations(state: WorldState, mutations: Any) -> WorldState:
    updated = state.model_copy(deep=True)
    if not isinstance(mutations, list):
        LOGGER.warning("Mutation batch is not a list (got %s); applying nothing", type(mutations).__name__)
        return updated

    applied = 0
    for index, mutation in enumerate(mutations):
        if apply_mutation(updated, mutation, index=index):
            applied += 1
    LOGGER.debug("Applied %s/%s mutations", applied, len(mutations))
    return updated
