from __future__ import annotations

import logging
import operator
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from vyuha.sim.mutations import append_log, find_entity, remove_entity
from vyuha.sim.state import Entity, RuleCheck, RulePenalty, StructuredRule, WorldState, numeric_property


LOGGER = logging.getLogger("vyuha.sim.rules")

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<=": operator.le,
    ">=": operator.ge,
    "<": operator.lt,
    ">": operator.gt,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass
class RuleEffect:
    entity_id: str
    entity_name: str
    effect: Literal["eliminate", "penalize"]
    rule: StructuredRule
    penalty: RulePenalty | None = None


def rule_applies_to(rule: StructuredRule, entity: Entity) -> bool:
    return rule.applies_to == "all" or rule.applies_to == entity.type


def check_condition(entity: Entity, check: RuleCheck) -> bool:
    value = numeric_property(entity.properties, check.property)
    if value is None:
        return False
    compare = _OPERATORS.get(check.operator)
    if compare is None:
        return False
    return compare(value, check.value)


def evaluate_structured_rules(state: WorldState) -> list[RuleEffect]:
    effects: list[RuleEffect] = []
    for rule in state.structured_rules:
        for entity in state.entities:
            if not rule_applies_to(rule, entity):
                continue
            if not check_condition(entity, rule.check):
                continue
            if rule.effect == "eliminate":
                effects.append(RuleEffect(entity.id, entity.label, "eliminate", rule))
            elif rule.effect == "penalize" and rule.penalty is not None:
                effects.append(RuleEffect(entity.id, entity.label, "penalize", rule, penalty=rule.penalty))
    return effects


def apply_rule_effects(state: WorldState, effects: list[RuleEffect]) -> list[str]:
    """Apply effects in emission order, in place. Returns the log messages written."""
    messages: list[str] = []
    for effect in effects:
        entity = find_entity(state, effect.entity_id)
        if entity is None:
            continue

        if effect.effect == "eliminate":
            remove_entity(state, effect.entity_id)
            message = f"{effect.entity_name} was eliminated: {effect.rule.description or effect.rule.id}"
        else:
            penalty = effect.penalty
            if penalty is None:
                continue
            current = numeric_property(entity.properties, penalty.property, 0)
            amount = int(penalty.amount) if float(penalty.amount).is_integer() else penalty.amount
            entity.properties = {**entity.properties, penalty.property: current - amount}
            message = (
                f"{effect.entity_name} penalized {penalty.property} -{penalty.amount:g}: "
                f"{effect.rule.description or effect.rule.id}"
            )

        append_log(state, message, "rule-violation", agent_id=effect.entity_id if entity.is_agent else None)
        messages.append(message)

    if messages:
        LOGGER.debug("Applied %s rule effects", len(messages))
    return messages


def enforce_structured_rules(state: WorldState) -> list[str]:
    return apply_rule_effects(state, evaluate_structured_rules(state))
