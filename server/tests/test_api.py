import json

from fastapi.testclient import TestClient

from vyuha.main import create_app
from vyuha.world.store import InMemoryWorldStore


def _create_client(state, oracle) -> TestClient:
    app = create_app(store=InMemoryWorldStore(initial=state), oracle=oracle)
    return TestClient(app)


def test_health_and_state(make_world, make_agent, oracle_factory):
    client = _create_client(make_world(make_agent("alpha")), oracle_factory())
    with client:
        health = client.get("/api/health")
        assert health.status_code == 200
        assert health.json()["store"] == "memory"

        response = client.get("/api/simulation")
        assert response.status_code == 200
        body = response.json()
        assert body["version"] == 0
        assert body["state"]["entities"][0]["id"] == "alpha"
        assert body["state"]["grid"] == {"width": 10, "height": 10}


def test_agent_action_endpoint(make_world, make_agent, make_decision, oracle_factory):
    oracle = oracle_factory(make_decision("move", {"dx": 1, "dy": 1}, thought="exploring"))
    client = _create_client(make_world(make_agent("alpha", 2, 2)), oracle)
    with client:
        response = client.post("/api/agent-action", json={"agentId": "alpha"})
        assert response.status_code == 200
        body = response.json()
        assert body["agentId"] == "alpha"
        assert body["decision"]["action"] == "move"
        assert body["message"] == "Alpha moved to (3,3)"
        assert body["state"]["entities"][0]["position"] == {"x": 3, "y": 3}

        snake_case = client.post("/api/agent-action", json={"agent_id": "alpha"})
        assert snake_case.status_code == 200


def test_agent_action_errors(make_world, make_agent, oracle_factory):
    client = _create_client(make_world(make_agent("alpha")), oracle_factory("not json"))
    with client:
        missing = client.post("/api/agent-action", json={"agentId": "ghost"})
        assert missing.status_code == 404

        unparsable = client.post("/api/agent-action", json={"agentId": "alpha"})
        assert unparsable.status_code == 502
        assert unparsable.json()["detail"]["raw"] == "not json"

        invalid = client.post("/api/agent-action", json={})
        assert invalid.status_code == 422


def test_god_mode_endpoint(make_world, oracle_factory):
    reply = json.dumps(
        {
            "mutations": [{"type": "add_global_rule", "payload": {"rule": "Be kind"}}],
            "message": "Kindness is now the law",
        }
    )
    client = _create_client(make_world(), oracle_factory(reply, "garbage"))
    with client:
        response = client.post("/api/god-mode", json={"message": "make everyone kind"})
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Kindness is now the law"
        assert body["state"]["globalRules"] == ["Be kind"]
        assert body["state"]["log"][-1]["type"] == "god-mode"

        failed = client.post("/api/god-mode", json={"message": "again"})
        assert failed.status_code == 502
        assert failed.json()["detail"]["raw"] == "garbage"

        empty = client.post("/api/god-mode", json={"message": ""})
        assert empty.status_code == 422


def test_simulation_control(make_world, make_agent, make_decision, oracle_factory):
    client = _create_client(make_world(make_agent("alpha")), oracle_factory(make_decision("wait")))
    with client:
        started = client.post("/api/simulation", json={"action": "start"})
        assert started.status_code == 200
        assert started.json()["state"]["running"] is True

        stopped = client.post("/api/simulation", json={"action": "stop"})
        assert stopped.status_code == 200
        assert stopped.json()["state"]["running"] is False

        reset = client.post("/api/simulation", json={"action": "reset"})
        assert reset.status_code == 200
        assert reset.json()["state"]["entities"] == []

        invalid = client.post("/api/simulation", json={"action": "explode"})
        assert invalid.status_code == 400


def test_running_world_resumes_on_startup(make_world, make_agent, make_decision, oracle_factory):
    client = _create_client(make_world(make_agent("alpha"), running=True), oracle_factory(make_decision("wait")))
    with client:
        assert client.app.state.runner.active
    assert not client.app.state.runner.active


def test_websocket_sends_current_state(make_world, make_agent, oracle_factory):
    client = _create_client(make_world(make_agent("alpha")), oracle_factory())
    with client:
        with client.websocket_connect("/ws/stream") as ws:
            message = ws.receive_json()
        assert message["type"] == "world_state"
        assert message["payload"]["entities"][0]["id"] == "alpha"
