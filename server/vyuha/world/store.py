from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from vyuha.env import env_int, env_str
from vyuha.sim.errors import StaleStateError
from vyuha.sim.state import DEFAULT_GRID_SIZE, WorldState, fresh_world


LOGGER = logging.getLogger("vyuha.world.store")

WorldMutator = Callable[[WorldState], WorldState]


class WorldStateStore:
    """Read/modify/write access to the single shared world document.

    Every backend stamps ``version`` on write. ``write`` with an
    ``expected_version`` is a compare-and-swap; ``update`` builds the
    retrying read-modify-write cycle on top of it.
    """

    backend = "abstract"

    def __init__(
        self,
        *,
        update_attempts: int = 8,
        default_width: int = DEFAULT_GRID_SIZE,
        default_height: int = DEFAULT_GRID_SIZE,
    ) -> None:
        self.update_attempts = max(1, update_attempts)
        self.default_width = max(1, default_width)
        self.default_height = max(1, default_height)
        self.conflicts = 0

    def fresh_state(self) -> WorldState:
        return fresh_world(self.default_width, self.default_height)

    async def read(self) -> WorldState:
        raise NotImplementedError

    async def write(self, state: WorldState, expected_version: int | None = None) -> WorldState:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    async def reset(self) -> WorldState:
        return await self.write(self.fresh_state())

    async def set_running(self, running: bool) -> WorldState:
        def mutate(state: WorldState) -> WorldState:
            state.running = running
            return state

        return await self.update(mutate)

    async def update(self, mutate: WorldMutator) -> WorldState:
        attempt = 0
        while True:
            attempt += 1
            current = await self.read()
            expected_version = current.version
            updated = mutate(current)
            try:
                return await self.write(updated, expected_version=expected_version)
            except StaleStateError as exc:
                self.conflicts += 1
                if attempt >= self.update_attempts:
                    LOGGER.warning("World update gave up after %s conflicting attempts", attempt)
                    raise
                LOGGER.debug("World update conflict attempt=%s detail=%s", attempt, exc)
            await asyncio.sleep(0)


class InMemoryWorldStore(WorldStateStore):
    backend = "memory"

    def __init__(self, initial: WorldState | None = None, **kwargs: int) -> None:
        super().__init__(**kwargs)
        self._state = initial.model_copy(deep=True) if initial is not None else self.fresh_state()
        self._lock = asyncio.Lock()

    async def read(self) -> WorldState:
        async with self._lock:
            return self._state.model_copy(deep=True)

    async def write(self, state: WorldState, expected_version: int | None = None) -> WorldState:
        async with self._lock:
            if expected_version is not None and expected_version != self._state.version:
                raise StaleStateError(expected_version, self._state.version)
            stored = state.model_copy(deep=True)
            stored.version = self._state.version + 1
            self._state = stored
            return stored.model_copy(deep=True)


def create_store_from_env() -> WorldStateStore:
    backend = env_str("WORLD_STORE_BACKEND", "auto").lower()
    database_url = env_str("WORLD_DATABASE_URL") or env_str("DATABASE_URL")
    if backend == "auto":
        backend = "postgres" if database_url else "memory"

    options = {
        "update_attempts": env_int("STORE_UPDATE_ATTEMPTS", 8, 1, 64),
        "default_width": env_int("WORLD_DEFAULT_WIDTH", DEFAULT_GRID_SIZE, 1, 500),
        "default_height": env_int("WORLD_DEFAULT_HEIGHT", DEFAULT_GRID_SIZE, 1, 500),
    }

    if backend == "postgres":
        if not database_url:
            LOGGER.warning("WORLD_STORE_BACKEND=postgres requested, but WORLD_DATABASE_URL/DATABASE_URL is empty.")
            return InMemoryWorldStore(**options)

        from vyuha.world.postgres import PostgresWorldStore

        try:
            return PostgresWorldStore.connect(
                database_url,
                table_name=env_str("WORLD_TABLE_NAME", "world_state") or "world_state",
                state_key=env_str("WORLD_STATE_KEY", "vyuha:state") or "vyuha:state",
                **options,
            )
        except Exception as exc:
            LOGGER.warning(
                "Failed to init postgres world store type=%s detail=%r; falling back to memory backend",
                type(exc).__name__,
                exc,
            )
            return InMemoryWorldStore(**options)

    if backend != "memory":
        LOGGER.warning("Unknown WORLD_STORE_BACKEND=%r, using memory backend", backend)
    return InMemoryWorldStore(**options)
