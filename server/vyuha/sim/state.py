from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


LOG_LIMIT = 100
MEMORY_LIMIT = 20
DEFAULT_GRID_SIZE = 20

AGENT_TYPE = "agent"
ABSORBABLE_TYPES = frozenset({"resource", "object", "item"})

EntityStatus = Literal["idle", "thinking", "acting"]
LogType = Literal["action", "god-mode", "system", "rule-violation"]
RuleOperator = Literal["<=", ">=", "<", ">", "==", "!="]


def utc_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_finite_number(value: Any) -> bool:
    return is_number(value) and math.isfinite(value)


def numeric_property(properties: dict[str, Any], key: str, default: float | None = None) -> float | None:
    value = properties.get(key)
    if is_finite_number(value):
        return value
    return default


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Position(_Document):
    x: int = 0
    y: int = 0

    @field_validator("x", "y", mode="before")
    @classmethod
    def round_coordinate(cls, value: Any) -> Any:
        if is_finite_number(value):
            return int(round(value))
        return value


class Grid(_Document):
    width: int = Field(default=DEFAULT_GRID_SIZE, ge=1)
    height: int = Field(default=DEFAULT_GRID_SIZE, ge=1)


class Entity(_Document):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: str = ""
    position: Position = Field(default_factory=Position)
    emoji: str = ""
    color: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)
    status: EntityStatus | None = None
    rules: str | None = None
    memory: list[str] | None = None
    delay: float | None = None

    @property
    def is_agent(self) -> bool:
        return self.type == AGENT_TYPE

    @property
    def label(self) -> str:
        return self.name or self.id


class RuleCheck(_Document):
    property: str = Field(min_length=1)
    operator: RuleOperator
    value: float


class RulePenalty(_Document):
    property: str = Field(min_length=1)
    amount: float


class StructuredRule(_Document):
    id: str = Field(min_length=1)
    type: Literal["hard", "soft"] = "hard"
    description: str = ""
    check: RuleCheck
    effect: Literal["eliminate", "penalize"]
    penalty: RulePenalty | None = None
    applies_to: str = "all"

    @model_validator(mode="after")
    def validate_penalty(self) -> "StructuredRule":
        if self.effect == "penalize" and self.penalty is None:
            raise ValueError("penalty is required for penalize rules")
        return self


class LogEntry(_Document):
    timestamp: str = Field(default_factory=utc_iso)
    agent_id: str | None = None
    message: str
    type: LogType = "system"


class SimulationTime(_Document):
    started: str = Field(default_factory=utc_iso)
    elapsed: float = 0.0


class WorldState(_Document):
    grid: Grid = Field(default_factory=Grid)
    entities: list[Entity] = Field(default_factory=list)
    global_rules: list[str] = Field(default_factory=list)
    structured_rules: list[StructuredRule] = Field(default_factory=list)
    environment: dict[str, Any] = Field(default_factory=dict)
    log: list[LogEntry] = Field(default_factory=list)
    time: SimulationTime = Field(default_factory=SimulationTime)
    action_count: int = 0
    running: bool = False
    version: int = 0

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def agents(self) -> list[Entity]:
        return [entity for entity in self.entities if entity.is_agent]


def fresh_world(width: int = DEFAULT_GRID_SIZE, height: int = DEFAULT_GRID_SIZE) -> WorldState:
    return WorldState(grid=Grid(width=max(1, width), height=max(1, height)))
