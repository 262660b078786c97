from __future__ import annotations


class AgentNotFoundError(KeyError):
    def __init__(self, agent_id: str, reason: str = "agent not found") -> None:
        super().__init__(agent_id)
        self.agent_id = agent_id
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.reason}: {self.agent_id}"


class DecisionParseError(ValueError):
    def __init__(self, agent_id: str, raw: str | None, detail: str = "") -> None:
        super().__init__(detail or "failed to parse agent decision")
        self.agent_id = agent_id
        self.raw = raw or ""
        self.detail = detail


class GodModeParseError(ValueError):
    def __init__(self, raw: str | None, detail: str = "") -> None:
        super().__init__(detail or "failed to parse god mode response")
        self.raw = raw or ""
        self.detail = detail


class StaleStateError(RuntimeError):
    def __init__(self, expected_version: int, actual_version: int) -> None:
        super().__init__(f"stale world state: expected version {expected_version}, found {actual_version}")
        self.expected_version = expected_version
        self.actual_version = actual_version
