"""Shared fixtures for the world server tests."""

import json

import pytest

from vyuha.sim.state import Entity, WorldState, fresh_world


class ScriptedOracle:
    """Replays canned completions in order; the last one keeps repeating."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def complete(self, system_prompt, user_prompt, *, temperature=0.7, max_tokens=1024):
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if not self.responses:
            return None
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def decision(action, data=None, thought="", **extra):
    payload = {"action": action, "data": data or {}, "thought": thought}
    payload.update(extra)
    return json.dumps(payload)


def build_agent(agent_id, x=0, y=0, **fields):
    payload = {
        "id": agent_id,
        "type": "agent",
        "name": agent_id.title(),
        "position": {"x": x, "y": y},
        "status": "idle",
        "memory": [],
        "delay": 0,
        "properties": {"health": 100, "score": 0, "mobility": 2},
    }
    payload.update(fields)
    return Entity.model_validate(payload)


def build_entity(entity_id, entity_type, x=0, y=0, **fields):
    payload = {
        "id": entity_id,
        "type": entity_type,
        "name": fields.pop("name", entity_id.title()),
        "position": {"x": x, "y": y},
        "properties": {},
    }
    payload.update(fields)
    return Entity.model_validate(payload)


def build_world(*entities, width=10, height=10, **fields) -> WorldState:
    state = fresh_world(width, height)
    state.entities = list(entities)
    for key, value in fields.items():
        setattr(state, key, value)
    return state


@pytest.fixture
def oracle_factory():
    return ScriptedOracle


@pytest.fixture
def make_decision():
    return decision


@pytest.fixture
def make_agent():
    return build_agent


@pytest.fixture
def make_entity():
    return build_entity


@pytest.fixture
def make_world():
    return build_world
