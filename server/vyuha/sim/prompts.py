from __future__ import annotations

import json
from typing import Any

from vyuha.sim.interactions import INTERACTION_RANGE, PAYOFFS, is_nearby
from vyuha.sim.movement import mobility_of
from vyuha.sim.state import Entity, WorldState


MEMORY_TAIL = 10
DEFAULT_NEARBY_RADIUS = 5

AGENT_SYSTEM_PROMPT = (
    "You are an autonomous agent living in a shared 2D grid simulation.\n"
    "Respond with ONE valid JSON object only. No markdown, no code fences, no trailing text."
)


def nearby_entities(state: WorldState, agent: Entity, radius: int = DEFAULT_NEARBY_RADIUS) -> list[Entity]:
    return [
        entity
        for entity in state.entities
        if entity.id != agent.id and is_nearby(agent, entity, radius=radius)
    ]


def _describe_entity(agent: Entity, entity: Entity) -> str:
    reach = "in reach" if is_nearby(agent, entity, radius=INTERACTION_RANGE) else "out of reach"
    properties = json.dumps(entity.properties, ensure_ascii=False)
    return (
        f"- {entity.label} [id={entity.id}] ({entity.type}) at ({entity.position.x},{entity.position.y}) "
        f"{entity.emoji} {reach} properties:{properties}"
    )


def agent_context(state: WorldState, agent: Entity, radius: int = DEFAULT_NEARBY_RADIUS) -> dict[str, Any]:
    nearby = nearby_entities(state, agent, radius=radius)
    return {
        "agent": agent,
        "memory": list(agent.memory or [])[-MEMORY_TAIL:],
        "nearby": nearby,
        "global_rules": list(state.global_rules),
        "environment": dict(state.environment),
        "grid": state.grid,
    }


def build_agent_prompt(state: WorldState, agent: Entity, radius: int = DEFAULT_NEARBY_RADIUS) -> str:
    context = agent_context(state, agent, radius=radius)
    grid = state.grid
    mobility = mobility_of(agent)
    memory = "\n".join(context["memory"]) or "No memories yet."
    nearby = "\n".join(_describe_entity(agent, entity) for entity in context["nearby"]) or "Nothing nearby."
    global_rules = "; ".join(context["global_rules"]) or "None"
    interactions = "|".join(sorted(PAYOFFS))

    return (
        f'You are "{agent.label}", an agent in a {grid.width}x{grid.height} grid world.\n'
        "\n"
        "## Identity\n"
        f"- Id: {agent.id}\n"
        f"- Position: ({agent.position.x}, {agent.position.y})\n"
        f"- Personal rules: {agent.rules or 'No specific rules'}\n"
        f"- Properties: {json.dumps(agent.properties, ensure_ascii=False)}\n"
        f"- Mobility: up to {mobility} cells per axis per move\n"
        "\n"
        "## Memory (most recent last)\n"
        f"{memory}\n"
        "\n"
        "## World\n"
        f"- Valid coordinates: x 0..{grid.width - 1}, y 0..{grid.height - 1}\n"
        f"- Global rules: {global_rules}\n"
        f"- Environment: {json.dumps(context['environment'], ensure_ascii=False)}\n"
        "\n"
        f"## Nearby entities (within {radius} cells; interactions need {INTERACTION_RANGE} cells or less)\n"
        f"{nearby}\n"
        "\n"
        "## Response\n"
        "Reply with exactly one JSON object:\n"
        "{\n"
        '  "action": "move" | "interact" | "wait" | "speak",\n'
        '  "data": {},\n'
        '  "thought": "short reasoning, stored in your memory",\n'
        '  "restTime": optional milliseconds to rest before your next turn\n'
        "}\n"
        f'- move: {{"dx": int, "dy": int}} with |dx|,|dy| <= {mobility}\n'
        f'- interact: {{"targetId": "entity id or name", "interaction": "{interactions}|..."}}\n'
        '- speak: {"message": "text"}\n'
        "- wait: {}\n"
        "Consider your rules, the global rules, your surroundings and your memory before deciding."
    )


MUTATION_CATALOGUE = """\
### add_entity (payload is the entity itself)
{"type": "add_entity", "payload": {"id": "agent-alpha", "type": "agent", "name": "Alpha",
 "position": {"x": 5, "y": 3}, "emoji": "🤖", "color": "#3b82f6", "rules": "Cooperate unless betrayed twice",
 "delay": 0, "properties": {"health": 100, "score": 0, "mobility": 2}}}
{"type": "add_entity", "payload": {"id": "resource-1234", "type": "resource", "name": "Gold Mine",
 "position": {"x": 10, "y": 10}, "emoji": "💎", "color": "#22c55e", "properties": {"value": 50}}}

### remove_entity
{"type": "remove_entity", "payload": {"id": "agent-alpha"}}

### modify_entity (only the changed fields plus the id)
{"type": "modify_entity", "payload": {"id": "agent-alpha", "rules": "New rules", "color": "#ef4444"}}

### add_global_rule / remove_global_rule (advisory text every agent reads)
{"type": "add_global_rule", "payload": {"rule": "Stay near the shelter during storms"}}
{"type": "remove_global_rule", "payload": {"rule": "exact text of the rule"}}

### modify_grid
{"type": "modify_grid", "payload": {"width": 30, "height": 30}}

### modify_environment
{"type": "modify_environment", "payload": {"weather": "storm", "visibility": 2}}

### fill_area (one entity per cell of the inclusive rectangle)
{"type": "fill_area", "payload": {"x1": 0, "y1": 0, "x2": 4, "y2": 0, "entityType": "obstacle",
 "name": "Wall", "emoji": "🧱", "color": "#78716c", "properties": {}}}

### add_structured_rule / remove_structured_rule (enforced after every agent action)
{"type": "add_structured_rule", "payload": {"id": "rule-death", "type": "hard",
 "description": "Agents with no health are eliminated",
 "check": {"property": "health", "operator": "<=", "value": 0},
 "effect": "eliminate", "appliesTo": "agent"}}
{"type": "add_structured_rule", "payload": {"id": "rule-greed", "type": "soft",
 "description": "Hoarders lose health", "check": {"property": "score", "operator": ">", "value": 50},
 "effect": "penalize", "penalty": {"property": "health", "amount": 5}, "appliesTo": "agent"}}
{"type": "remove_structured_rule", "payload": {"id": "rule-greed"}}
"""


def build_god_mode_prompt(state: WorldState) -> str:
    snapshot = state.to_payload()
    snapshot.pop("log", None)
    return (
        "You are the God Mode controller of a sandbox where LLM agents live on a 2D grid.\n"
        "Translate the user's natural language command into structured world mutations.\n"
        "\n"
        "## Guidelines\n"
        "- Be creative: give new agents distinct names, personalities (rules), colors, emojis and delays.\n"
        "- When the command is vague, implement your best interpretation and explain it in the message.\n"
        "- Model complex concepts (weather, economy, hazards) with entities, environment flags and rules.\n"
        '- Entity ids must be unique: "agent-{lowercase-name}" or "{type}-{random 4 digits}".\n'
        f"- Positions must be inside the grid: x 0..{state.grid.width - 1}, y 0..{state.grid.height - 1}.\n"
        "- delay is the pause in milliseconds an agent takes after each turn (slow thinkers: 3000-5000).\n"
        "- Mechanical consequences (death, penalties) need structured rules; global rules are advice only.\n"
        "\n"
        "## Mutation types (exact JSON)\n"
        f"{MUTATION_CATALOGUE}\n"
        "## Current world state\n"
        f"{json.dumps(snapshot, ensure_ascii=False, indent=2)}\n"
        "\n"
        "## Response\n"
        "Reply with ONE JSON object only, no markdown:\n"
        '{"mutations": [{"type": "...", "payload": {...}}], "message": "what you did"}'
    )
