from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from vyuha.env import env_float, env_int
from vyuha.llm.client import DecisionOracle, extract_json_object
from vyuha.sim.errors import DecisionParseError, GodModeParseError
from vyuha.sim.prompts import AGENT_SYSTEM_PROMPT, DEFAULT_NEARBY_RADIUS, build_agent_prompt, build_god_mode_prompt
from vyuha.sim.state import Entity, WorldState, is_finite_number


LOGGER = logging.getLogger("vyuha.sim.llm_decider")

ACTION_ALIASES = {
    "move": "move",
    "walk": "move",
    "go": "move",
    "interact": "interact",
    "use": "interact",
    "act": "interact",
    "speak": "speak",
    "say": "speak",
    "talk": "speak",
    "wait": "wait",
    "idle": "wait",
    "noop": "wait",
    "none": "wait",
}
THOUGHT_MAX_LEN = 500


class AgentDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = Field(min_length=1, max_length=64, validation_alias=AliasChoices("action", "act"))
    data: dict[str, Any] = Field(default_factory=dict)
    thought: str = ""
    rest_time: float | None = Field(
        default=None,
        validation_alias=AliasChoices("restTime", "rest_time"),
        serialization_alias="restTime",
    )

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        normalized = value.strip().lower()
        return ACTION_ALIASES.get(normalized, normalized)

    @field_validator("data", mode="before")
    @classmethod
    def default_data(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("thought", mode="before")
    @classmethod
    def coerce_thought(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()[:THOUGHT_MAX_LEN]

    @field_validator("rest_time", mode="before")
    @classmethod
    def coerce_rest_time(cls, value: Any) -> float | None:
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                return None
        if not is_finite_number(value) or value < 0:
            return None
        return float(value)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class GodModeResponse(BaseModel):
    mutations: list[Any] = Field(default_factory=list)
    message: str = ""

    @field_validator("mutations", mode="before")
    @classmethod
    def default_mutations(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            if value is not None:
                LOGGER.warning("God Mode mutations is not a list (got %s); using []", type(value).__name__)
            return []
        return value

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, value: Any) -> str:
        return "" if value is None else str(value)


def parse_agent_decision(agent_id: str, raw: str | None) -> AgentDecision:
    payload = extract_json_object(raw)
    if payload is None:
        raise DecisionParseError(agent_id, raw, "oracle output is not a JSON object")

    nested = payload.get("decision")
    if "action" not in payload and "act" not in payload and isinstance(nested, Mapping):
        payload = dict(nested)

    try:
        return AgentDecision.model_validate(payload)
    except ValidationError as exc:
        raise DecisionParseError(agent_id, raw, f"decision schema mismatch: {exc.errors()}") from None


def parse_god_mode_response(raw: str | None) -> GodModeResponse:
    payload = extract_json_object(raw)
    if payload is None:
        raise GodModeParseError(raw, "oracle output is not a JSON object")
    return GodModeResponse.model_validate(payload)


@dataclass
class AgentDecider:
    oracle: DecisionOracle
    temperature: float = 0.9
    max_tokens: int = 1024
    nearby_radius: int = DEFAULT_NEARBY_RADIUS

    @classmethod
    def from_env(cls, oracle: DecisionOracle) -> "AgentDecider":
        return cls(
            oracle=oracle,
            temperature=env_float("LLM_AGENT_TEMPERATURE", 0.9, 0.0, 2.0),
            max_tokens=env_int("LLM_AGENT_MAX_TOKENS", 1024, 64, 16000),
            nearby_radius=env_int("AGENT_NEARBY_RADIUS", DEFAULT_NEARBY_RADIUS, 1, 100),
        )

    def decide(self, state: WorldState, agent: Entity) -> AgentDecision:
        raw = self.oracle.complete(
            AGENT_SYSTEM_PROMPT,
            build_agent_prompt(state, agent, radius=self.nearby_radius),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not raw:
            raise DecisionParseError(agent.id, raw, "oracle returned no text")
        return parse_agent_decision(agent.id, raw)


@dataclass
class GodModeTranslator:
    oracle: DecisionOracle
    temperature: float = 0.7
    max_tokens: int = 4096

    @classmethod
    def from_env(cls, oracle: DecisionOracle) -> "GodModeTranslator":
        return cls(
            oracle=oracle,
            temperature=env_float("LLM_GOD_MODE_TEMPERATURE", 0.7, 0.0, 2.0),
            max_tokens=env_int("LLM_GOD_MODE_MAX_TOKENS", 4096, 256, 32000),
        )

    def translate(self, state: WorldState, command: str) -> GodModeResponse:
        raw = self.oracle.complete(
            build_god_mode_prompt(state),
            command,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not raw:
            raise GodModeParseError(raw, "oracle returned no text")
        return parse_god_mode_response(raw)
