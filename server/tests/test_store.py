import asyncio
import os
import uuid

import pytest

from vyuha.sim.errors import StaleStateError
from vyuha.sim.mutations import append_log
from vyuha.world.store import InMemoryWorldStore, create_store_from_env


class InterferingStore(InMemoryWorldStore):
    """Lets another writer land between every read and the next conditional write."""

    def __init__(self, interferences, **kwargs):
        super().__init__(**kwargs)
        self.interferences = interferences

    async def write(self, state, expected_version=None):
        if expected_version is not None and self.interferences > 0:
            self.interferences -= 1
            await super().write(await self.read())
        return await super().write(state, expected_version)


def test_write_stamps_version_and_read_returns_a_copy(make_world):
    async def scenario():
        store = InMemoryWorldStore(initial=make_world())
        first = await store.read()
        assert first.version == 0

        first.global_rules.append("local edit")
        assert (await store.read()).global_rules == []

        written = await store.write(first)
        assert written.version == 1
        assert (await store.read()).global_rules == ["local edit"]

    asyncio.run(scenario())


def test_conditional_write_rejects_stale_version(make_world):
    async def scenario():
        store = InMemoryWorldStore(initial=make_world())
        snapshot = await store.read()
        await store.write(snapshot, expected_version=snapshot.version)

        with pytest.raises(StaleStateError) as excinfo:
            await store.write(snapshot, expected_version=snapshot.version)
        assert excinfo.value.expected_version == 0
        assert excinfo.value.actual_version == 1

    asyncio.run(scenario())


def test_update_retries_after_conflicts(make_world):
    async def scenario():
        store = InterferingStore(2, initial=make_world())

        def mutate(state):
            append_log(state, "counted once")
            return state

        final = await store.update(mutate)
        assert store.conflicts == 2
        assert final.version == 3
        assert [entry.message for entry in final.log] == ["counted once"]

    asyncio.run(scenario())


def test_update_gives_up_after_attempt_budget(make_world):
    async def scenario():
        store = InterferingStore(5, initial=make_world(), update_attempts=2)
        with pytest.raises(StaleStateError) as excinfo:
            await store.update(lambda state: state)
        assert store.conflicts == 2
        assert (excinfo.value.expected_version, excinfo.value.actual_version) == (1, 2)

    asyncio.run(scenario())


def test_concurrent_updates_are_all_kept(make_world):
    async def scenario():
        store = InMemoryWorldStore(initial=make_world(environment={"counter": 0}))

        def bump(state):
            state.environment["counter"] += 1
            return state

        await asyncio.gather(*(store.update(bump) for _ in range(25)))
        final = await store.read()
        assert final.environment["counter"] == 25
        assert final.version == 25

    asyncio.run(scenario())


def test_reset_and_running_flag(make_world, make_agent):
    async def scenario():
        store = InMemoryWorldStore(initial=make_world(make_agent("alpha")), default_width=12, default_height=7)

        running = await store.set_running(True)
        assert running.running

        fresh = await store.reset()
        assert fresh.entities == []
        assert not fresh.running
        assert (fresh.grid.width, fresh.grid.height) == (12, 7)
        assert fresh.version == running.version + 1

    asyncio.run(scenario())


def test_store_factory_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("WORLD_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("WORLD_STORE_BACKEND", "auto")
    monkeypatch.setenv("WORLD_DEFAULT_WIDTH", "30")

    store = create_store_from_env()

    assert isinstance(store, InMemoryWorldStore)
    assert store.default_width == 30


def test_store_factory_falls_back_without_database_url(monkeypatch):
    monkeypatch.delenv("WORLD_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("WORLD_STORE_BACKEND", "postgres")

    assert isinstance(create_store_from_env(), InMemoryWorldStore)


@pytest.mark.skipif(not os.getenv("VYUHA_TEST_DATABASE_URL"), reason="VYUHA_TEST_DATABASE_URL is not set")
def test_postgres_store_compare_and_swap(make_world, make_agent):
    from vyuha.world.postgres import PostgresWorldStore

    table = f"world_state_test_{uuid.uuid4().hex[:8]}"
    store = PostgresWorldStore.connect(os.environ["VYUHA_TEST_DATABASE_URL"], table_name=table)

    async def scenario():
        seeded = await store.read()
        assert seeded.version == 0

        world = make_world(make_agent("alpha", 3, 4))
        written = await store.write(world, expected_version=0)
        assert written.version == 1

        loaded = await store.read()
        assert loaded.version == 1
        assert loaded.entities[0].id == "alpha"
        assert (loaded.entities[0].position.x, loaded.entities[0].position.y) == (3, 4)

        with pytest.raises(StaleStateError):
            await store.write(world, expected_version=0)

        final = await store.set_running(True)
        assert final.running
        assert final.version == 2

    try:
        asyncio.run(scenario())
    finally:
        with store._conn.cursor() as cur:
            cur.execute(f'DROP TABLE IF EXISTS "{table}"')
        store._conn.close()
