"""
Durable store of per-guild feature state.

The scheduler talks to the store only through :class:`StateStore`, so the
backing can be swapped: :class:`SqliteStateStore` in production and
:class:`MemoryStateStore` in tests. Every ``save_*`` call replaces the
whole record atomically; a failure raises :class:`PersistenceFailure` and
leaves the previously stored value in place.
"""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from loki.database.db_connection import ConnectionManager
from loki.datatypes.discord_datatypes import GuildID
from loki.datatypes.errors import PersistenceFailure
from loki.datatypes.feature_state import (
    GuildFeatureState,
    SubscriptionMap,
    subscriptions_from_dict,
    subscriptions_to_dict,
)
from loki.repositories.guild_state_repo import GuildStateRepo
from loki.util.logger import get_logger

logger = get_logger("state_store")


class StateStore(ABC):
    """Atomic read/replace access to guild records and the subscription map."""

    async def open(self) -> None:
        """Prepare the backing storage. No-op by default."""

    async def close(self) -> None:
        """Release the backing storage. No-op by default."""

    @abstractmethod
    async def load_guild(self, guild_id: GuildID) -> Optional[GuildFeatureState]:
        """Return the stored record for a guild, or None if it was never configured."""

    @abstractmethod
    async def save_guild(self, state: GuildFeatureState) -> None:
        """Atomically replace the stored record of ``state.guild_id``."""

    @abstractmethod
    async def load_all(self) -> List[GuildFeatureState]:
        """Return every stored guild record."""

    @abstractmethod
    async def load_subscriptions(self) -> SubscriptionMap:
        """Return the global event subscription map."""

    @abstractmethod
    async def save_subscriptions(self, subscriptions: SubscriptionMap) -> None:
        """Atomically replace the global event subscription map."""


class MemoryStateStore(StateStore):
    """In-process store. Records are deep-copied in and out."""

    def __init__(self) -> None:
        self._guilds: Dict[GuildID, dict] = {}
        self._subscriptions: Dict[str, List[str]] = {}
        # Set to an exception to make the next saves fail.
        self.fail_writes: Exception | None = None

    async def load_guild(self, guild_id: GuildID) -> Optional[GuildFeatureState]:
        data = self._guilds.get(guild_id)
        return GuildFeatureState.from_dict(data) if data is not None else None

    async def save_guild(self, state: GuildFeatureState) -> None:
        if self.fail_writes is not None:
            raise PersistenceFailure(f"could not save guild {state.guild_id}") from self.fail_writes
        self._guilds[state.guild_id] = state.to_dict()

    async def load_all(self) -> List[GuildFeatureState]:
        return [GuildFeatureState.from_dict(data) for data in self._guilds.values()]

    async def load_subscriptions(self) -> SubscriptionMap:
        return subscriptions_from_dict(self._subscriptions)

    async def save_subscriptions(self, subscriptions: SubscriptionMap) -> None:
        if self.fail_writes is not None:
            raise PersistenceFailure("could not save subscriptions") from self.fail_writes
        self._subscriptions = subscriptions_to_dict(subscriptions)


class SqliteStateStore(StateStore):
    """aiosqlite-backed store, one JSON document per guild."""

    def __init__(self, path: Path, connection: ConnectionManager | None = None) -> None:
        self.path = path
        self.db = connection or ConnectionManager()

    async def open(self) -> None:
        try:
            await self.db.open(self.path)
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceFailure(f"could not open state database {self.path}: {exc}") from exc

    async def close(self) -> None:
        await self.db.close()

    async def load_guild(self, guild_id: GuildID) -> Optional[GuildFeatureState]:
        try:
            async with self.db.read() as conn:
                data = await GuildStateRepo.get_record(conn, guild_id.to_int())
        except (sqlite3.Error, ValueError) as exc:
            raise PersistenceFailure(f"could not load guild {guild_id}: {exc}") from exc
        return GuildFeatureState.from_dict(data) if data is not None else None

    async def save_guild(self, state: GuildFeatureState) -> None:
        try:
            async with self.db.transaction() as conn:
                await GuildStateRepo.upsert_record(conn, state.guild_id.to_int(), state.to_dict())
        except sqlite3.Error as exc:
            logger.error("[STATE STORE] Failed to save guild %s: %s", state.guild_id, exc)
            raise PersistenceFailure(f"could not save guild {state.guild_id}: {exc}") from exc
        logger.debug("[STATE STORE] Saved record for guild %s", state.guild_id)

    async def load_all(self) -> List[GuildFeatureState]:
        try:
            async with self.db.read() as conn:
                rows = await GuildStateRepo.all_records(conn)
        except (sqlite3.Error, ValueError) as exc:
            raise PersistenceFailure(f"could not load guild records: {exc}") from exc

        states: List[GuildFeatureState] = []
        for row in rows:
            try:
                states.append(GuildFeatureState.from_dict(row.record))
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("[STATE STORE] Skipping unreadable record for guild %s: %s", row.guild_id, exc)
        return states

    async def load_subscriptions(self) -> SubscriptionMap:
        try:
            async with self.db.read() as conn:
                data = await GuildStateRepo.get_subscriptions(conn)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not load subscriptions: {exc}") from exc
        return subscriptions_from_dict(data)

    async def save_subscriptions(self, subscriptions: SubscriptionMap) -> None:
        try:
            async with self.db.transaction() as conn:
                await GuildStateRepo.replace_subscriptions(conn, subscriptions_to_dict(subscriptions))
        except sqlite3.Error as exc:
            logger.error("[STATE STORE] Failed to save subscriptions: %s", exc)
            raise PersistenceFailure(f"could not save subscriptions: {exc}") from exc
