"""MemoryStore: categorised, tagged notes in two SQLite partitions (global, local)."""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

import aiosqlite

from kestrel.extensions.errors import KestrelError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    category    TEXT NOT NULL,
    tags        TEXT NOT NULL DEFAULT '[]',
    content     TEXT NOT NULL,
    created_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(category);
"""


class MemoryStoreError(KestrelError):
    """Base class for memory store failures."""


class InvalidCategory(MemoryStoreError):
    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(f"Invalid category {category!r}: must be a non-empty string")


class MemoryNotFound(MemoryStoreError):
    def __init__(self, category: str, content_match: str) -> None:
        self.category = category
        self.content_match = content_match
        super().__init__(f"No memory in category {category!r} matches {content_match!r}")


class MemoryScope(str, Enum):
    GLOBAL = "global"
    LOCAL = "local"


@dataclass(frozen=True)
class MemoryEntry:
    category: str
    tags: frozenset[str]
    scope: MemoryScope
    content: str
    created_at: datetime
    id: int = 0

    def matches(self, needle: str) -> bool:
        """Case-insensitive substring match over content, category and tags. needle is lower-case."""
        if needle in self.content.lower() or needle in self.category.lower():
            return True
        return any(needle in tag for tag in self.tags)


def normalize_tags(tags: Iterable[str] | str | None) -> frozenset[str]:
    """Lower-case, strip and de-duplicate. A string is split on commas."""
    if tags is None:
        return frozenset()
    if isinstance(tags, str):
        tags = tags.split(",")
    return frozenset(t.strip().lower() for t in tags if t and str(t).strip())


def _validate_category(category: str) -> str:
    if not isinstance(category, str) or not category.strip():
        raise InvalidCategory(str(category) if category is not None else "")
    return category.strip()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Partition:
    """One scope's database. Opened on first use; writes serialised by a lock."""

    def __init__(self, scope: MemoryScope, db_path: Path) -> None:
        self.scope = scope
        self.db_path = db_path
        self.write_lock = asyncio.Lock()
        self._open_lock = asyncio.Lock()
        self._conn: aiosqlite.Connection | None = None

    async def conn(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        async with self._open_lock:
            if self._conn is None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self.db_path))
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.executescript(_SCHEMA)
                await conn.commit()
                self._conn = conn
                logger.info("Memory partition %s opened: %s", self.scope.value, self.db_path)
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    def to_entry(self, row: aiosqlite.Row) -> MemoryEntry:
        try:
            tags = json.loads(row["tags"])
        except (TypeError, json.JSONDecodeError):
            tags = []
        return MemoryEntry(
            category=row["category"],
            tags=frozenset(tags),
            scope=self.scope,
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
            id=row["id"],
        )


class MemoryStore:
    """Global partition lives under the data dir, Local under the working dir.

    A scope is the only access boundary: nothing written to one partition is
    visible through the other.
    """

    def __init__(
        self,
        global_db: Path,
        local_db: Path,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._partitions = {
            MemoryScope.GLOBAL: _Partition(MemoryScope.GLOBAL, global_db),
            MemoryScope.LOCAL: _Partition(MemoryScope.LOCAL, local_db),
        }
        self._clock = clock

    def _partitions_for(self, scope: MemoryScope | str | None) -> list[_Partition]:
        if scope is None:
            return list(self._partitions.values())
        return [self._partitions[MemoryScope(scope)]]

    async def remember(
        self,
        category: str,
        tags: Iterable[str] | str | None,
        scope: MemoryScope | str,
        content: str,
    ) -> MemoryEntry:
        category = _validate_category(category)
        partition = self._partitions[MemoryScope(scope)]
        normalized = normalize_tags(tags)
        created_at = self._clock()
        conn = await partition.conn()
        async with partition.write_lock:
            cursor = await conn.execute(
                "INSERT INTO memories (category, tags, content, created_at) VALUES (?, ?, ?, ?)",
                (category, json.dumps(sorted(normalized)), content, created_at.isoformat()),
            )
            await conn.commit()
            entry_id = cursor.lastrowid or 0
        return MemoryEntry(
            category=category,
            tags=normalized,
            scope=partition.scope,
            content=content,
            created_at=created_at,
            id=entry_id,
        )

    async def retrieve(self, category: str, scope: MemoryScope | str) -> list[MemoryEntry]:
        """Entries of one category in one scope, in insertion order."""
        category = _validate_category(category)
        partition = self._partitions[MemoryScope(scope)]
        conn = await partition.conn()
        async with conn.execute(
            "SELECT * FROM memories WHERE category = ? ORDER BY id", (category,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [partition.to_entry(r) for r in rows]

    async def search(self, query: str, scope: MemoryScope | str | None = None) -> list[MemoryEntry]:
        """Substring search, newest first. scope=None searches both partitions."""
        needle = (query or "").strip().lower()
        found: list[MemoryEntry] = []
        for partition in self._partitions_for(scope):
            conn = await partition.conn()
            async with conn.execute("SELECT * FROM memories") as cursor:
                rows = await cursor.fetchall()
            found.extend(e for e in map(partition.to_entry, rows) if e.matches(needle))
        found.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return found

    async def forget(
        self,
        category: str,
        content_match: str,
        scope: MemoryScope | str | None = None,
    ) -> int:
        """Remove every entry of the category whose content equals content_match exactly.

        Returns the number removed. Raises MemoryNotFound when nothing matched.
        """
        category = _validate_category(category)
        removed = 0
        for partition in self._partitions_for(scope):
            conn = await partition.conn()
            async with partition.write_lock:
                cursor = await conn.execute(
                    "DELETE FROM memories WHERE category = ? AND content = ?",
                    (category, content_match),
                )
                await conn.commit()
                removed += max(cursor.rowcount, 0)
        if removed == 0:
            raise MemoryNotFound(category, content_match)
        return removed

    async def clear(self, scope: MemoryScope | str) -> None:
        partition = self._partitions[MemoryScope(scope)]
        conn = await partition.conn()
        async with partition.write_lock:
            await conn.execute("DELETE FROM memories")
            await conn.commit()
        logger.info("Memory partition %s cleared", partition.scope.value)

    async def categories(self, scope: MemoryScope | str | None = None) -> list[str]:
        names: set[str] = set()
        for partition in self._partitions_for(scope):
            conn = await partition.conn()
            async with conn.execute("SELECT DISTINCT category FROM memories") as cursor:
                rows = await cursor.fetchall()
            names.update(r["category"] for r in rows)
        return sorted(names)

    async def close(self) -> None:
        for partition in self._partitions.values():
            await partition.close()
