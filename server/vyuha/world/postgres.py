from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from vyuha.sim.errors import StaleStateError
from vyuha.sim.state import WorldState
from vyuha.world.store import WorldStateStore


LOGGER = logging.getLogger("vyuha.world.postgres")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _safe_identifier(raw: str, fallback: str) -> str:
    name = (raw or "").strip()
    if not name:
        return fallback
    return name if _IDENTIFIER_RE.match(name) else fallback


class PostgresWorldStore(WorldStateStore):
    backend = "postgres"

    def __init__(
        self,
        conn: Any,
        *,
        table_name: str = "world_state",
        state_key: str = "vyuha:state",
        **kwargs: int,
    ) -> None:
        super().__init__(**kwargs)
        self._conn = conn
        self.table_name = _safe_identifier(table_name, "world_state")
        self._table_ident = f'"{self.table_name}"'
        self.state_key = state_key
        self._conn_lock = threading.Lock()
        self._ensure_schema()

    @classmethod
    def connect(cls, database_url: str, **kwargs: Any) -> "PostgresWorldStore":
        conn = psycopg.connect(database_url, autocommit=True, row_factory=dict_row)
        return cls(conn, **kwargs)

    def _ensure_schema(self) -> None:
        with self._conn_lock, self._conn.cursor() as cur:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_ident} (
                    key TEXT PRIMARY KEY,
                    version BIGINT NOT NULL DEFAULT 0,
                    document JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            cur.execute(
                f"""
                INSERT INTO {self._table_ident} (key, version, document)
                VALUES (%s, 0, %s)
                ON CONFLICT (key) DO NOTHING
                """,
                (self.state_key, Jsonb(self.fresh_state().to_payload())),
            )

    def _read_sync(self) -> WorldState:
        with self._conn_lock, self._conn.cursor() as cur:
            cur.execute(
                f"SELECT version, document FROM {self._table_ident} WHERE key = %s",
                (self.state_key,),
            )
            row = cur.fetchone()
        if row is None:
            LOGGER.warning("World state row key=%s is missing; serving a fresh world", self.state_key)
            return self.fresh_state()
        state = WorldState.model_validate(row["document"])
        state.version = int(row["version"])
        return state

    def _write_sync(self, state: WorldState, expected_version: int | None) -> WorldState:
        stored = state.model_copy(deep=True)
        with self._conn_lock, self._conn.cursor() as cur:
            if expected_version is None:
                cur.execute(
                    f"""
                    INSERT INTO {self._table_ident} (key, version, document)
                    VALUES (%s, 1, %s)
                    ON CONFLICT (key) DO UPDATE SET
                        version = {self._table_ident}.version + 1,
                        document = EXCLUDED.document,
                        updated_at = now()
                    RETURNING version
                    """,
                    (self.state_key, Jsonb(stored.to_payload())),
                )
            else:
                cur.execute(
                    f"""
                    UPDATE {self._table_ident}
                    SET version = version + 1, document = %s, updated_at = now()
                    WHERE key = %s AND version = %s
                    RETURNING version
                    """,
                    (Jsonb(stored.to_payload()), self.state_key, expected_version),
                )
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    f"SELECT version FROM {self._table_ident} WHERE key = %s",
                    (self.state_key,),
                )
                current = cur.fetchone()
                raise StaleStateError(expected_version or 0, int(current["version"]) if current else -1)

        stored.version = int(row["version"])
        return stored

    async def read(self) -> WorldState:
        return await asyncio.to_thread(self._read_sync)

    async def write(self, state: WorldState, expected_version: int | None = None) -> WorldState:
        return await asyncio.to_thread(self._write_sync, state, expected_version)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
