from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from vyuha.db.models import ControlAgentActionIn, ControlGodModeIn, ControlSimulationIn
from vyuha.env import env_float, env_int, env_str, load_env_file
from vyuha.llm.client import DecisionOracle, LLMClient
from vyuha.sim.engine import AgentActionController
from vyuha.sim.errors import AgentNotFoundError, DecisionParseError, GodModeParseError
from vyuha.sim.god_mode import GodMode
from vyuha.sim.runner import SimulationRunner
from vyuha.sim.state import WorldState
from vyuha.world.store import WorldStateStore, create_store_from_env


# server/vyuha/main.py -> repo root is 2 levels up from "server"
load_env_file(Path(__file__).resolve().parents[2] / ".env")

LOGGER = logging.getLogger("vyuha.main")


class WorldStreamHub:
    """Pushes world snapshots to websocket clients, at most once per stored version."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._last_version = -1

    @property
    def has_clients(self) -> bool:
        return bool(self._clients)

    @staticmethod
    def frame(state: WorldState) -> str:
        return json.dumps({"type": "world_state", "payload": state.to_payload()}, ensure_ascii=False)

    async def connect(self, ws: WebSocket, state: WorldState) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)
        await ws.send_text(self.frame(state))

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    async def publish(self, state: WorldState) -> int:
        """Returns the clients reached; 0 when this version or a newer one already went out."""
        async with self._lock:
            if state.version <= self._last_version:
                return 0
            self._last_version = state.version
            clients = list(self._clients)
        if not clients:
            return 0

        serialized = self.frame(state)
        results = await asyncio.gather(*(ws.send_text(serialized) for ws in clients), return_exceptions=True)
        stale = [ws for ws, result in zip(clients, results) if isinstance(result, Exception)]
        if stale:
            LOGGER.debug("Dropping %s stale websocket clients", len(stale))
            async with self._lock:
                self._clients.difference_update(stale)
        return len(clients) - len(stale)


def create_app(store: WorldStateStore | None = None, oracle: DecisionOracle | None = None) -> FastAPI:
    world_store = store if store is not None else create_store_from_env()
    llm = oracle if oracle is not None else LLMClient.from_env()
    controller = AgentActionController.from_env(world_store, llm)
    god_mode = GodMode.from_env(world_store, llm)
    runner = SimulationRunner.from_env(world_store, controller)
    hub = WorldStreamHub()
    publish_interval_sec = env_float("STATE_PUBLISH_INTERVAL_SEC", 0.5, 0.05, 30.0)

    async def publish_loop() -> None:
        while True:
            await asyncio.sleep(publish_interval_sec)
            if not hub.has_clients:
                continue
            try:
                state = await world_store.read()
            except Exception as exc:
                LOGGER.warning("State publisher read failed type=%s detail=%r", type(exc).__name__, exc)
                continue
            await hub.publish(state)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.publish_task = asyncio.create_task(publish_loop())
        state = await world_store.read()
        if state.running:
            LOGGER.info("Stored world is marked running; resuming agent loops")
            await runner.start()
        try:
            yield
        finally:
            app.state.publish_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await app.state.publish_task
            await runner.shutdown()
            await world_store.close()

    app = FastAPI(title="Vyuha World Server", version="0.1.0", lifespan=lifespan)
    app.state.store = world_store
    app.state.controller = controller
    app.state.god_mode = god_mode
    app.state.runner = runner
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "store": world_store.backend, "agent_loops": runner.active_agent_ids()}

    @app.get("/api/simulation")
    async def simulation_state() -> dict:
        state = await world_store.read()
        return {"state": state.to_payload(), "version": state.version}

    @app.post("/api/simulation")
    async def simulation_control(payload: ControlSimulationIn) -> dict:
        action = payload.action.strip().lower()
        if action == "start":
            state = await runner.start()
            message = "Simulation started"
        elif action == "stop":
            state = await runner.stop()
            message = "Simulation stopped"
        elif action == "reset":
            state = await runner.reset()
            message = "World reset"
        else:
            raise HTTPException(status_code=400, detail="Invalid action")

        await hub.publish(state)
        return {"state": state.to_payload(), "message": message}

    @app.post("/api/god-mode")
    async def god_mode_command(payload: ControlGodModeIn) -> dict:
        try:
            result = await god_mode.handle_command(payload.message)
        except GodModeParseError as exc:
            raise HTTPException(
                status_code=502,
                detail={"error": "Failed to parse LLM response", "reason": exc.detail, "raw": exc.raw},
            ) from None

        await hub.publish(result.state)
        return result.to_payload()

    @app.post("/api/agent-action")
    async def agent_action(payload: ControlAgentActionIn) -> dict:
        try:
            result = await controller.run_turn(payload.agent_id)
        except AgentNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from None
        except DecisionParseError as exc:
            raise HTTPException(
                status_code=502,
                detail={"error": "Failed to parse agent response", "reason": exc.detail, "raw": exc.raw},
            ) from None

        await hub.publish(result.state)
        return result.to_payload()

    @app.websocket("/ws/stream")
    async def ws_stream(ws: WebSocket) -> None:
        try:
            await hub.connect(ws, await world_store.read())
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    return app


app = create_app()


def main() -> None:
    logging.basicConfig(
        level=env_str("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    import uvicorn

    uvicorn.run(
        "vyuha.main:app",
        host=env_str("VYUHA_HOST", "0.0.0.0"),
        port=env_int("VYUHA_PORT", 8000, 1, 65535),
        log_level=env_str("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
