from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from vyuha.env import env_bool
from vyuha.llm.client import DecisionOracle
from vyuha.sim.llm_decider import GodModeTranslator
from vyuha.sim.mutations import append_log, apply_mutations
from vyuha.sim.rules import enforce_structured_rules
from vyuha.sim.state import WorldState
from vyuha.world.store import WorldStateStore


LOGGER = logging.getLogger("vyuha.sim.god_mode")


@dataclass
class GodModeResult:
    message: str
    mutations: list[Any]
    state: WorldState
    rule_messages: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "mutations": self.mutations,
            "ruleEffects": list(self.rule_messages),
            "state": self.state.to_payload(),
        }


class GodMode:
    def __init__(self, store: WorldStateStore, translator: GodModeTranslator, apply_rules: bool = False) -> None:
        self.store = store
        self.translator = translator
        self.apply_rules = apply_rules

    @classmethod
    def from_env(cls, store: WorldStateStore, oracle: DecisionOracle) -> "GodMode":
        return cls(
            store=store,
            translator=GodModeTranslator.from_env(oracle),
            apply_rules=env_bool("GOD_MODE_APPLY_RULES", False),
        )

    async def handle_command(self, command: str) -> GodModeResult:
        state = await self.store.read()
        response = await asyncio.to_thread(self.translator.translate, state, command)
        rule_messages: list[str] = []

        def mutate(current: WorldState) -> WorldState:
            nonlocal rule_messages
            updated = apply_mutations(current, response.mutations)
            append_log(updated, f"God Mode: {command} → {response.message}", "god-mode")
            rule_messages = enforce_structured_rules(updated) if self.apply_rules else []
            return updated

        final_state = await self.store.update(mutate)
        LOGGER.info(
            "God Mode command applied mutations=%s rule_effects=%s version=%s",
            len(response.mutations),
            len(rule_messages),
            final_state.version,
        )
        return GodModeResult(
            message=response.message,
            mutations=response.mutations,
            state=final_state,
            rule_messages=rule_messages,
        )
