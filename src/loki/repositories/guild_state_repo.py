"""
Persistent storage for per-guild feature records and event subscriptions.

Each guild's :class:`GuildFeatureState` is stored as one JSON document in
the ``guild_state`` table. Replacing a record is a single UPSERT, so it
is atomic whenever it runs inside ``ConnectionManager.transaction()``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List

import aiosqlite

from loki.util.logger import get_logger

logger = get_logger("guild_state_repo")


@dataclass
class GuildStateRow:
    """A single row from the ``guild_state`` table."""
    guild_id: int
    record: Dict[str, Any]


class GuildStateRepo:
    """Low-level CRUD for the ``guild_state`` and ``event_subscriptions`` tables."""

    # ------------------------------------------------------------------
    # Guild records
    # ------------------------------------------------------------------

    @staticmethod
    async def upsert_record(
        conn: aiosqlite.Connection,
        guild_id: int,
        record: Dict[str, Any],
    ) -> None:
        """Insert or replace the JSON record of one guild."""
        await conn.execute(
            """
            INSERT INTO guild_state (guild_id, record)
            VALUES (?, ?)
            ON CONFLICT(guild_id) DO UPDATE SET
                record = excluded.record
            """,
            (guild_id, json.dumps(record, sort_keys=True)),
        )

    @staticmethod
    async def get_record(
        conn: aiosqlite.Connection,
        guild_id: int,
    ) -> Dict[str, Any] | None:
        """Return the decoded record of one guild, or None when absent."""
        cursor = await conn.execute(
            "SELECT record FROM guild_state WHERE guild_id = ?",
            (guild_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    @staticmethod
    async def all_records(conn: aiosqlite.Connection) -> List[GuildStateRow]:
        """Return every stored guild record."""
        cursor = await conn.execute("SELECT guild_id, record FROM guild_state ORDER BY guild_id")
        rows = await cursor.fetchall()
        return [GuildStateRow(guild_id=row[0], record=json.loads(row[1])) for row in rows]

    # ------------------------------------------------------------------
    # Event subscriptions
    # ------------------------------------------------------------------

    @staticmethod
    async def get_subscriptions(conn: aiosqlite.Connection) -> Dict[str, List[str]]:
        """Return ``{user_id: [event_kind, ...]}`` for all subscribers."""
        cursor = await conn.execute(
            "SELECT user_id, event_kind FROM event_subscriptions ORDER BY user_id, event_kind"
        )
        rows = await cursor.fetchall()
        result: Dict[str, List[str]] = {}
        for row in rows:
            result.setdefault(str(row[0]), []).append(row[1])
        return result

    @staticmethod
    async def replace_subscriptions(
        conn: aiosqlite.Connection,
        subscriptions: Dict[str, List[str]],
    ) -> None:
        """Replace the whole subscription table with the given mapping."""
        await conn.execute("DELETE FROM event_subscriptions")
        await conn.executemany(
            "INSERT INTO event_subscriptions (user_id, event_kind) VALUES (?, ?)",
            [
                (int(user_id), kind)
                for user_id, kinds in subscriptions.items()
                for kind in kinds
            ],
        )
