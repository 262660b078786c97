from __future__ import annotations

import asyncio
import contextlib
import logging

from vyuha.env import env_float, env_int
from vyuha.sim.engine import AgentActionController
from vyuha.sim.errors import AgentNotFoundError, DecisionParseError
from vyuha.sim.state import WorldState
from vyuha.world.store import WorldStateStore


LOGGER = logging.getLogger("vyuha.sim.runner")


class SimulationRunner:
    """Drives one independent asyncio loop per agent.

    Loops share nothing but the store. Each loop checks its stop event and the
    stored ``running`` flag at the loop head, so a stop issued by another
    process sharing the store is honoured too.
    """

    def __init__(
        self,
        store: WorldStateStore,
        controller: AgentActionController,
        *,
        base_interval_ms: float = 200.0,
        max_rest_ms: float = 30_000.0,
        error_backoff_ms: float = 2_000.0,
        max_backoff_ms: float = 30_000.0,
        supervise_interval_sec: float = 1.0,
        stop_grace_sec: float = 30.0,
    ) -> None:
        self.store = store
        self.controller = controller
        self.base_interval_ms = max(0.0, base_interval_ms)
        self.max_rest_ms = max(0.0, max_rest_ms)
        self.error_backoff_ms = max(1.0, error_backoff_ms)
        self.max_backoff_ms = max(self.error_backoff_ms, max_backoff_ms)
        self.supervise_interval_sec = max(0.01, supervise_interval_sec)
        self.stop_grace_sec = max(0.0, stop_grace_sec)

        self._stop_event = asyncio.Event()
        self._agent_tasks: dict[str, asyncio.Task[None]] = {}
        self._supervisor: asyncio.Task[None] | None = None
        self.turns_completed = 0
        self.turn_failures = 0

    @classmethod
    def from_env(cls, store: WorldStateStore, controller: AgentActionController) -> "SimulationRunner":
        return cls(
            store=store,
            controller=controller,
            base_interval_ms=env_float("AGENT_BASE_INTERVAL_MS", 200.0, 0.0, 60_000.0),
            max_rest_ms=env_float("AGENT_MAX_REST_MS", 30_000.0, 0.0, 600_000.0),
            error_backoff_ms=env_float("AGENT_ERROR_BACKOFF_MS", 2_000.0, 10.0, 60_000.0),
            max_backoff_ms=env_float("AGENT_MAX_BACKOFF_MS", 30_000.0, 10.0, 600_000.0),
            supervise_interval_sec=env_float("RUNNER_SUPERVISE_INTERVAL_SEC", 1.0, 0.05, 60.0),
            stop_grace_sec=float(env_int("RUNNER_STOP_GRACE_SEC", 30, 0, 600)),
        )

    @property
    def active(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    def active_agent_ids(self) -> list[str]:
        return sorted(agent_id for agent_id, task in self._agent_tasks.items() if not task.done())

    async def start(self) -> WorldState:
        state = await self.store.set_running(True)
        if self.active:
            return state
        self._stop_event = asyncio.Event()
        self._supervisor = asyncio.create_task(self._supervise(), name="vyuha-supervisor")
        LOGGER.info("Simulation started agents=%s", len(state.agents()))
        return state

    async def stop(self) -> WorldState:
        state = await self.store.set_running(False)
        await self._shutdown_loops()
        LOGGER.info("Simulation stopped turns=%s failures=%s", self.turns_completed, self.turn_failures)
        return state

    async def reset(self) -> WorldState:
        await self._shutdown_loops()
        state = await self.store.reset()
        LOGGER.info("World reset version=%s", state.version)
        return state

    async def shutdown(self) -> None:
        """Stop local loops but leave the stored ``running`` flag alone, so a restart resumes."""
        await self._shutdown_loops()

    async def _shutdown_loops(self) -> None:
        self._stop_event.set()
        tasks = [task for task in self._agent_tasks.values() if not task.done()]
        if self._supervisor is not None and not self._supervisor.done():
            tasks.append(self._supervisor)
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=self.stop_grace_sec)
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._agent_tasks.clear()
        self._supervisor = None

    async def _supervise(self) -> None:
        while not self._stop_event.is_set():
            try:
                state = await self.store.read()
            except Exception as exc:
                LOGGER.warning("Supervisor failed to read world type=%s detail=%r", type(exc).__name__, exc)
                state = None

            if state is not None:
                if not state.running:
                    LOGGER.info("World is no longer running; supervisor exits")
                    break
                self._sync_agent_loops(state)

            if await self._sleep(self.supervise_interval_sec):
                break

    def _sync_agent_loops(self, state: WorldState) -> None:
        for agent_id, task in list(self._agent_tasks.items()):
            if task.done():
                del self._agent_tasks[agent_id]
        for agent in state.agents():
            if agent.id not in self._agent_tasks:
                self._agent_tasks[agent.id] = asyncio.create_task(
                    self._agent_loop(agent.id),
                    name=f"vyuha-agent-{agent.id}",
                )
                LOGGER.debug("Spawned loop for agent=%s", agent.id)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when the stop event fired."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return False
        return True

    def pacing_ms(self, delay_ms: float, rest_time_ms: float | None) -> float:
        rest = min(max(rest_time_ms or 0.0, 0.0), self.max_rest_ms)
        return max(delay_ms, 0.0) + rest + self.base_interval_ms

    async def _agent_loop(self, agent_id: str) -> None:
        failures = 0
        while not self._stop_event.is_set():
            try:
                state = await self.store.read()
                if not state.running:
                    break
                result = await self.controller.run_turn(agent_id)
            except AgentNotFoundError as exc:
                LOGGER.info("Agent loop exits agent=%s reason=%s", agent_id, exc.reason)
                break
            except DecisionParseError:
                self.turn_failures += 1
                failures = 0
                if await self._sleep(self.pacing_ms(0.0, None) / 1000.0):
                    break
                continue
            except Exception as exc:
                self.turn_failures += 1
                failures += 1
                backoff_ms = min(self.error_backoff_ms * (2 ** (failures - 1)), self.max_backoff_ms)
                LOGGER.warning(
                    "Agent loop error agent=%s type=%s detail=%r; retrying in %.0fms",
                    agent_id,
                    type(exc).__name__,
                    exc,
                    backoff_ms,
                )
                if await self._sleep(backoff_ms / 1000.0):
                    break
                continue

            failures = 0
            self.turns_completed += 1
            if await self._sleep(self.pacing_ms(result.delay_ms, result.rest_time_ms) / 1000.0):
                break
