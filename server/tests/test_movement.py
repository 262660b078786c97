from vyuha.sim.movement import DEFAULT_MOBILITY, clamp_delta, mobility_of, resolve_move


def test_clamp_delta_caps_each_axis():
    assert clamp_delta(5, -7, 2) == (2, -2)
    assert clamp_delta("1", 0.6, 2) == (1, 1)
    assert clamp_delta("left", None, 2) == (0, 0)
    assert clamp_delta(True, 1, 2) == (0, 1)


def test_mobility_comes_from_properties(make_agent):
    assert mobility_of(make_agent("alpha", properties={"mobility": 1})) == 1
    assert mobility_of(make_agent("alpha", properties={})) == DEFAULT_MOBILITY


def test_free_move(make_world, make_agent):
    agent = make_agent("alpha", 5, 5)
    state = make_world(agent)

    outcome = resolve_move(state, agent, 1, -2)

    assert (outcome.position.x, outcome.position.y) == (6, 3)
    assert outcome.moved
    assert not outcome.redirected


def test_move_is_limited_by_mobility(make_world, make_agent):
    agent = make_agent("alpha", 5, 5, properties={"mobility": 1})
    state = make_world(agent)

    outcome = resolve_move(state, agent, 3, 0)

    assert (outcome.position.x, outcome.position.y) == (6, 5)


def test_move_is_clamped_to_grid(make_world, make_agent):
    agent = make_agent("alpha", 9, 9)
    state = make_world(agent)

    outcome = resolve_move(state, agent, 2, 2)

    assert (outcome.position.x, outcome.position.y) == (9, 9)
    assert not outcome.moved
    assert not outcome.stuck


def test_occupied_target_redirects_to_first_free_neighbour(make_world, make_agent):
    agent = make_agent("alpha", 5, 5)
    state = make_world(agent, make_agent("beta", 6, 5))

    outcome = resolve_move(state, agent, 1, 0)

    assert outcome.redirected
    assert (outcome.requested.x, outcome.requested.y) == (6, 5)
    assert (outcome.position.x, outcome.position.y) == (6, 4)


def test_redirect_respects_mobility(make_world, make_agent):
    agent = make_agent("alpha", 5, 5, properties={"mobility": 1})
    state = make_world(
        agent,
        make_agent("beta", 6, 5),
        make_agent("gamma", 6, 4),
        make_agent("delta", 6, 6),
    )

    outcome = resolve_move(state, agent, 1, 0)

    # every free neighbour of (6,5) other than (5,4) and (5,6) is two columns away
    assert outcome.redirected
    assert (outcome.position.x, outcome.position.y) == (5, 6)


def test_non_agent_entities_do_not_block(make_world, make_agent, make_entity):
    agent = make_agent("alpha", 5, 5)
    state = make_world(agent, make_entity("rock", "obstacle", 6, 5))

    outcome = resolve_move(state, agent, 1, 0)

    assert (outcome.position.x, outcome.position.y) == (6, 5)


def test_agent_with_no_free_cell_is_stuck(make_world, make_agent):
    agent = make_agent("alpha", 0, 0)
    state = make_world(agent, make_agent("beta", 1, 0), width=2, height=1)

    outcome = resolve_move(state, agent, 1, 0)

    assert outcome.stuck
    assert not outcome.moved
    assert (outcome.position.x, outcome.position.y) == (0, 0)


def test_non_finite_values_never_reach_the_grid(make_agent):
    assert clamp_delta(float("nan"), float("-inf"), 2) == (0, 0)
    assert mobility_of(make_agent("alpha", properties={"mobility": float("inf")})) == DEFAULT_MOBILITY
    assert mobility_of(make_agent("alpha", properties={"mobility": float("nan")})) == DEFAULT_MOBILITY
