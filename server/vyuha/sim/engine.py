from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from vyuha.llm.client import DecisionOracle
from vyuha.sim.errors import AgentNotFoundError, DecisionParseError
from vyuha.sim.interactions import process_interaction, resolve_target
from vyuha.sim.llm_decider import AgentDecider, AgentDecision
from vyuha.sim.movement import resolve_move
from vyuha.sim.mutations import append_log, append_memory, find_entity, remove_entity, update_entity
from vyuha.sim.rules import enforce_structured_rules
from vyuha.sim.state import Entity, EntityStatus, WorldState, is_finite_number
from vyuha.world.store import WorldStateStore


LOGGER = logging.getLogger("vyuha.sim.engine")


@dataclass
class TurnResult:
    agent_id: str
    decision: AgentDecision
    delay_ms: float
    rest_time_ms: float | None
    message: str
    state: WorldState
    rule_messages: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "decision": self.decision.to_payload(),
            "delay": self.delay_ms,
            "restTime": self.rest_time_ms,
            "message": self.message,
            "ruleEffects": list(self.rule_messages),
            "state": self.state.to_payload(),
        }


@dataclass
class _AppliedTurn:
    message: str = ""
    delay_ms: float = 0.0
    rule_messages: list[str] = field(default_factory=list)
    missing: bool = False


def _require_agent(state: WorldState, agent_id: str) -> Entity:
    agent = find_entity(state, agent_id)
    if agent is None:
        raise AgentNotFoundError(agent_id)
    if not agent.is_agent:
        raise AgentNotFoundError(agent_id, reason=f"entity is a {agent.type}, not an agent")
    return agent


def _first_str(data: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class AgentActionController:
    def __init__(self, store: WorldStateStore, decider: AgentDecider) -> None:
        self.store = store
        self.decider = decider

    @classmethod
    def from_env(cls, store: WorldStateStore, oracle: DecisionOracle) -> "AgentActionController":
        return cls(store=store, decider=AgentDecider.from_env(oracle))

    async def _set_status(self, agent_id: str, status: EntityStatus) -> WorldState:
        def mutate(state: WorldState) -> WorldState:
            _require_agent(state, agent_id)
            update_entity(state, agent_id, {"status": status})
            return state

        return await self.store.update(mutate)

    async def _restore_idle(self, agent_id: str, note: str | None = None) -> None:
        def mutate(state: WorldState) -> WorldState:
            agent = find_entity(state, agent_id)
            if agent is not None and agent.status != "idle":
                update_entity(state, agent_id, {"status": "idle"})
            if note:
                append_log(state, note, "system", agent_id=agent_id)
            return state

        try:
            await asyncio.shield(self.store.update(mutate))
        except Exception as exc:
            LOGGER.warning("Failed to restore idle status agent=%s type=%s detail=%r", agent_id, type(exc).__name__, exc)

    async def run_turn(self, agent_id: str) -> TurnResult:
        state = await self.store.read()
        _require_agent(state, agent_id)

        thinking_state = await self._set_status(agent_id, "thinking")
        agent = _require_agent(thinking_state, agent_id)

        try:
            decision = await asyncio.to_thread(self.decider.decide, thinking_state, agent)
        except DecisionParseError as exc:
            LOGGER.warning("Agent %s decision rejected: %s raw=%r", agent_id, exc.detail, exc.raw[:280])
            await self._restore_idle(agent_id)
            raise
        except BaseException:
            await self._restore_idle(agent_id)
            raise

        applied = _AppliedTurn()

        def mutate(current: WorldState) -> WorldState:
            nonlocal applied
            applied = self._apply_decision(current, agent_id, decision)
            return current

        try:
            final_state = await self.store.update(mutate)
        except BaseException as exc:
            LOGGER.warning(
                "Agent %s turn failed while applying action=%s type=%s detail=%r",
                agent_id,
                decision.action,
                type(exc).__name__,
                exc,
            )
            await self._restore_idle(agent_id, note=f"{agent_id} turn aborted: {type(exc).__name__}")
            raise
        if applied.missing:
            raise AgentNotFoundError(agent_id, reason="agent was removed while thinking")

        LOGGER.debug("Agent %s turn applied action=%s message=%s", agent_id, decision.action, applied.message)
        return TurnResult(
            agent_id=agent_id,
            decision=decision,
            delay_ms=applied.delay_ms,
            rest_time_ms=decision.rest_time,
            message=applied.message,
            state=final_state,
            rule_messages=applied.rule_messages,
        )

    def _apply_decision(self, state: WorldState, agent_id: str, decision: AgentDecision) -> _AppliedTurn:
        agent = find_entity(state, agent_id)
        if agent is None or not agent.is_agent:
            append_log(state, f"{agent_id} disappeared before acting", "system", agent_id=agent_id)
            return _AppliedTurn(message="agent removed", missing=True)

        changes: dict[str, Any] = {"status": "idle"}
        if decision.thought:
            changes["memory"] = append_memory(agent.memory, decision.thought)

        if decision.action == "move":
            message = self._apply_move(state, agent, decision.data, changes)
        elif decision.action == "interact":
            message = self._apply_interact(state, agent, decision.data, changes)
        elif decision.action == "speak":
            spoken = _first_str(decision.data, ("message", "text"))
            message = f'{agent.label} says: "{spoken}"' if spoken else f"{agent.label} stays silent"
        else:
            message = f"{agent.label} waits"

        update_entity(state, agent_id, changes)
        append_log(state, message, "action", agent_id=agent_id)
        rule_messages = enforce_structured_rules(state)

        delay = agent.delay if is_finite_number(agent.delay) else 0
        return _AppliedTurn(message=message, delay_ms=float(max(0, delay)), rule_messages=rule_messages)

    def _apply_move(self, state: WorldState, agent: Entity, data: dict[str, Any], changes: dict[str, Any]) -> str:
        outcome = resolve_move(state, agent, data.get("dx"), data.get("dy"))
        if outcome.stuck:
            return (
                f"{agent.label} is stuck at ({agent.position.x},{agent.position.y}): "
                f"({outcome.requested.x},{outcome.requested.y}) and every cell around it is occupied"
            )

        changes["position"] = outcome.position.model_dump()
        if outcome.redirected:
            return (
                f"{agent.label} moved to ({outcome.position.x},{outcome.position.y}) "
                f"instead of occupied ({outcome.requested.x},{outcome.requested.y})"
            )
        if not outcome.moved:
            return f"{agent.label} stayed at ({agent.position.x},{agent.position.y})"
        return f"{agent.label} moved to ({outcome.position.x},{outcome.position.y})"

    def _apply_interact(self, state: WorldState, agent: Entity, data: dict[str, Any], changes: dict[str, Any]) -> str:
        target_ref = _first_str(data, ("targetId", "target_id", "target"))
        label = _first_str(data, ("interaction", "type")) or "interact"
        if target_ref is None:
            return f"{agent.label} tried to {label} but named no target"

        target = resolve_target(state, target_ref, exclude_id=agent.id)
        if target is None:
            return f"{agent.label} tried to {label} with {target_ref} but found nothing by that name"

        result = process_interaction(agent, target, label)
        if not result.valid:
            return result.message

        changes.update(result.actor_updates)
        if result.target_updates:
            update_entity(state, target.id, result.target_updates)
        if result.consumes_target:
            remove_entity(state, target.id)
        return result.message
