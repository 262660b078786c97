from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from vyuha.sim.state import ABSORBABLE_TYPES, AGENT_TYPE, Entity, WorldState, is_number, numeric_property


INTERACTION_RANGE = 2
DEFAULT_SCORE = 0
DEFAULT_HEALTH = 100

# label -> (actor property, actor delta, target property, target delta)
PAYOFFS: dict[str, tuple[str, int, str, int]] = {
    "cooperate": ("score", 3, "score", 3),
    "defect": ("score", 5, "score", -2),
    "betray": ("score", 5, "score", -2),
    "attack": ("score", 2, "health", -10),
    "trade": ("score", 1, "score", 1),
    "defend": ("health", 5, "health", 5),
    "protect": ("health", 5, "health", 5),
}
GENERIC_PAYOFF = ("score", 1, "score", 1)

_DEFAULTS = {"score": DEFAULT_SCORE, "health": DEFAULT_HEALTH}


@dataclass
class InteractionResult:
    valid: bool
    message: str
    actor_updates: dict[str, Any] = field(default_factory=dict)
    target_updates: dict[str, Any] | None = None
    consumes_target: bool = False


def is_nearby(actor: Entity, target: Entity, radius: int = INTERACTION_RANGE) -> bool:
    return (
        abs(actor.position.x - target.position.x) <= radius
        and abs(actor.position.y - target.position.y) <= radius
    )


def resolve_target(state: WorldState, ref: str, exclude_id: str | None = None) -> Entity | None:
    needle = ref.strip()
    if not needle:
        return None
    candidates = [entity for entity in state.entities if entity.id != exclude_id]
    lowered = needle.lower()
    for entity in candidates:
        if entity.id == needle:
            return entity
    for entity in candidates:
        if entity.name.lower() == lowered:
            return entity
    for entity in candidates:
        if lowered in entity.name.lower():
            return entity
    return None


def _bumped(properties: dict[str, Any], key: str, delta: int) -> dict[str, Any]:
    updated = dict(properties)
    updated[key] = numeric_property(properties, key, _DEFAULTS.get(key, 0)) + delta
    return updated


def _signed(value: int) -> str:
    return f"+{value}" if value >= 0 else str(value)


def _agent_payoff(actor: Entity, target: Entity, label: str, raw_label: str) -> InteractionResult:
    actor_key, actor_delta, target_key, target_delta = PAYOFFS.get(label, GENERIC_PAYOFF)
    verb = label if label in PAYOFFS else raw_label.strip() or "interact"
    message = (
        f"{actor.label} → {verb} with {target.label}: "
        f"{actor.label} {actor_key} {_signed(actor_delta)}, {target.label} {target_key} {_signed(target_delta)}"
    )
    return InteractionResult(
        valid=True,
        message=message,
        actor_updates={"properties": _bumped(actor.properties, actor_key, actor_delta)},
        target_updates={"properties": _bumped(target.properties, target_key, target_delta)},
    )


def absorb_properties(actor_properties: dict[str, Any], target_properties: dict[str, Any]) -> dict[str, Any]:
    merged = dict(actor_properties)
    for key, value in target_properties.items():
        if is_number(value) and is_number(merged.get(key)):
            merged[key] = merged[key] + value
        elif key == "value" and is_number(value):
            merged["score"] = numeric_property(merged, "score", DEFAULT_SCORE) + value
        else:
            merged[key] = value
    return merged


def process_interaction(actor: Entity, target: Entity, interaction: str) -> InteractionResult:
    if not is_nearby(actor, target):
        return InteractionResult(
            valid=False,
            message=(
                f"{actor.label} tried to {interaction} with {target.label} but is too far away "
                f"({actor.position.x},{actor.position.y}) → ({target.position.x},{target.position.y})"
            ),
        )

    label = interaction.strip().lower()

    if target.type == AGENT_TYPE:
        return _agent_payoff(actor, target, label, interaction)

    if target.type in ABSORBABLE_TYPES:
        gained = ", ".join(target.properties.keys()) or "nothing"
        return InteractionResult(
            valid=True,
            message=f"{actor.label} used {target.label}, gained: {gained}",
            actor_updates={"properties": absorb_properties(actor.properties, target.properties)},
            consumes_target=True,
        )

    return InteractionResult(
        valid=True,
        message=f"{actor.label} interacted with {target.label}",
        actor_updates={"properties": _bumped(actor.properties, "score", 1)},
    )
