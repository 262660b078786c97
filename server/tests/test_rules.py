from vyuha.sim.rules import check_condition, enforce_structured_rules, evaluate_structured_rules
from vyuha.sim.state import RuleCheck, StructuredRule


def _rule(rule_id, prop, op, value, effect="eliminate", applies_to="all", penalty=None):
    payload = {
        "id": rule_id,
        "description": f"{rule_id} description",
        "check": {"property": prop, "operator": op, "value": value},
        "effect": effect,
        "appliesTo": applies_to,
    }
    if penalty is not None:
        payload["penalty"] = penalty
    return StructuredRule.model_validate(payload)


def test_check_condition_operators(make_agent):
    agent = make_agent("alpha", properties={"health": 3})

    assert check_condition(agent, RuleCheck(property="health", operator="==", value=3.0))
    assert check_condition(agent, RuleCheck(property="health", operator="!=", value=4))
    assert check_condition(agent, RuleCheck(property="health", operator="<", value=4))
    assert not check_condition(agent, RuleCheck(property="health", operator=">", value=3))
    assert not check_condition(agent, RuleCheck(property="mana", operator="<=", value=100))


def test_non_numeric_property_never_matches(make_agent):
    agent = make_agent("alpha", properties={"health": "full"})

    assert not check_condition(agent, RuleCheck(property="health", operator="!=", value=0))


def test_eliminate_rule_removes_matching_agents_only(make_world, make_agent, make_entity):
    state = make_world(
        make_agent("alpha", properties={"health": 0}),
        make_agent("beta", properties={"health": 40}),
        make_entity("rock", "resource", properties={"health": 0}),
        structured_rules=[_rule("rule-death", "health", "<=", 0, applies_to="agent")],
    )

    messages = enforce_structured_rules(state)

    assert sorted(entity.id for entity in state.entities) == ["beta", "rock"]
    assert len(messages) == 1
    entry = state.log[-1]
    assert entry.type == "rule-violation"
    assert entry.agent_id == "alpha"
    assert "eliminated" in entry.message


def test_penalize_rule_subtracts_amount(make_world, make_agent, make_entity):
    state = make_world(
        make_agent("alpha", properties={"score": 60, "health": 100}),
        make_entity("vault", "resource", properties={"score": 99}),
        structured_rules=[
            _rule("rule-greed", "score", ">", 50, effect="penalize", penalty={"property": "health", "amount": 5}),
        ],
    )

    messages = enforce_structured_rules(state)

    alpha, vault = state.entities
    assert alpha.properties["health"] == 95
    assert vault.properties == {"score": 99, "health": -5}
    assert len(messages) == 2
    assert [entry.agent_id for entry in state.log] == ["alpha", None]


def test_effects_are_evaluated_before_any_is_applied(make_world, make_agent):
    state = make_world(
        make_agent("alpha", properties={"health": 10}),
        structured_rules=[
            _rule("rule-drain", "health", ">", 0, effect="penalize", penalty={"property": "health", "amount": 50}),
            _rule("rule-death", "health", "<=", 0),
        ],
    )

    effects = evaluate_structured_rules(state)
    assert [effect.rule.id for effect in effects] == ["rule-drain"]

    enforce_structured_rules(state)
    assert state.entities[0].properties["health"] == -40


def test_effects_on_removed_entities_are_skipped(make_world, make_agent):
    state = make_world(
        make_agent("alpha", properties={"score": 20}),
        structured_rules=[
            _rule("rule-cap", "score", ">", 10),
            _rule("rule-tax", "score", ">", 10, effect="penalize", penalty={"property": "score", "amount": 1}),
        ],
    )

    messages = enforce_structured_rules(state)

    assert state.entities == []
    assert len(messages) == 1
    assert state.action_count == 1
