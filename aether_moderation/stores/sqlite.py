"""SQLite-backed collaborators, a durable local stand-in for the ledger."""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Sequence
from uuid import uuid4

from ..errors import RevisionConflict, StoreError
from ..records import BlockFollowRecord, BlockRecord, StoredFilter
from .base import MAX_IN_VALUES


class SQLiteLedger:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        if str(path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._init_schema()
        self.records = SQLiteBlockRecordStore(self._conn)
        self.filters = SQLiteFilterStore(self._conn)
        self.follows = SQLiteBlockFollowStore(self._conn)

    def close(self) -> None:
        self._conn.close()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS blocks (
                record_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                blocked_id TEXT NOT NULL,
                message TEXT,
                created_at INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                UNIQUE (owner_id, blocked_id)
            );
            CREATE INDEX IF NOT EXISTS idx_blocks_owner ON blocks (owner_id, seq);
            CREATE TABLE IF NOT EXISTS counters (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS block_filters (
                owner_id TEXT PRIMARY KEY,
                data BLOB NOT NULL,
                item_count INTEGER NOT NULL,
                version INTEGER NOT NULL,
                revision INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS block_follows (
                viewer_id TEXT PRIMARY KEY,
                followed_ids TEXT NOT NULL,
                revision INTEGER NOT NULL
            );
            """
        )
        self._conn.commit()


class SQLiteBlockRecordStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def create(self, owner_id: str, blocked_id: str, message: str | None = None) -> BlockRecord:
        try:
            with self._conn:
                seq = self._next_seq()
                record = BlockRecord(
                    record_id=uuid4().hex,
                    owner_id=owner_id,
                    blocked_id=blocked_id,
                    created_at=time.time_ns() // 1_000_000,
                    message=message,
                    seq=seq,
                )
                self._conn.execute(
                    "INSERT INTO blocks (record_id, owner_id, blocked_id, message, created_at, seq) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (record.record_id, owner_id, blocked_id, message, record.created_at, seq),
                )
        except sqlite3.IntegrityError as exc:
            raise StoreError("block record already exists") from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return record

    async def delete(self, record_id: str, owner_id: str) -> bool:
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM blocks WHERE record_id = ? AND owner_id = ?",
                    (record_id, owner_id),
                )
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return cursor.rowcount > 0

    async def get(self, owner_id: str, blocked_id: str) -> BlockRecord | None:
        rows = self._select("owner_id = ? AND blocked_id = ?", [owner_id, blocked_id], limit=1)
        return rows[0] if rows else None

    async def query_in(self, owner_id: str, blocked_ids: Sequence[str]) -> list[BlockRecord]:
        wanted = sorted(set(blocked_ids))
        if len(wanted) > MAX_IN_VALUES:
            raise StoreError(f"'in' predicate accepts at most {MAX_IN_VALUES} values")
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        return self._select(
            f"owner_id = ? AND blocked_id IN ({placeholders})",
            [owner_id, *wanted],
            limit=MAX_IN_VALUES,
        )

    async def list_by_owner(
        self,
        owner_id: str,
        *,
        limit: int = MAX_IN_VALUES,
        start_after: int | None = None,
    ) -> list[BlockRecord]:
        if not 0 < limit <= MAX_IN_VALUES:
            raise StoreError(f"limit must be between 1 and {MAX_IN_VALUES}")
        return self._select("owner_id = ? AND seq > ?", [owner_id, start_after or 0], limit=limit)

    def _next_seq(self) -> int:
        # Never reuses a deleted record's seq, so paging cursors stay valid.
        self._conn.execute(
            "INSERT INTO counters (name, value) SELECT 'blocks', COALESCE(MAX(seq), 0) + 1 FROM blocks "
            "WHERE 1 ON CONFLICT (name) DO UPDATE SET value = value + 1"
        )
        return self._conn.execute("SELECT value FROM counters WHERE name = 'blocks'").fetchone()[0]

    def _select(self, where: str, params: list[object], *, limit: int) -> list[BlockRecord]:
        query = (
            "SELECT record_id, owner_id, blocked_id, created_at, message, seq FROM blocks "
            f"WHERE {where} ORDER BY seq LIMIT ?"
        )
        try:
            rows = self._conn.execute(query, [*params, limit]).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [
            BlockRecord(
                record_id=row[0],
                owner_id=row[1],
                blocked_id=row[2],
                created_at=row[3],
                message=row[4],
                seq=row[5],
            )
            for row in rows
        ]


class SQLiteFilterStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def get(self, owner_id: str) -> StoredFilter | None:
        try:
            row = self._conn.execute(
                "SELECT data, item_count, revision, version FROM block_filters WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if row is None:
            return None
        return StoredFilter(owner_id=owner_id, data=bytes(row[0]), item_count=row[1], revision=row[2], version=row[3])

    async def put(
        self,
        owner_id: str,
        data: bytes,
        item_count: int,
        revision: int | None = None,
    ) -> int:
        try:
            with self._conn:
                if revision is None:
                    self._conn.execute(
                        "INSERT INTO block_filters (owner_id, data, item_count, version, revision) "
                        "VALUES (?, ?, ?, 1, 1)",
                        (owner_id, bytes(data), item_count),
                    )
                    return 1
                cursor = self._conn.execute(
                    "UPDATE block_filters SET data = ?, item_count = ?, revision = revision + 1 "
                    "WHERE owner_id = ? AND revision = ?",
                    (bytes(data), item_count, owner_id, revision),
                )
        except sqlite3.IntegrityError as exc:
            raise RevisionConflict("document already exists") from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if cursor.rowcount == 0:
            raise RevisionConflict(f"stale revision {revision}")
        return revision + 1


class SQLiteBlockFollowStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def get(self, viewer_id: str) -> BlockFollowRecord | None:
        try:
            row = self._conn.execute(
                "SELECT followed_ids, revision FROM block_follows WHERE viewer_id = ?",
                (viewer_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if row is None:
            return None
        followed = tuple(item for item in row[0].split(",") if item)
        return BlockFollowRecord(viewer_id=viewer_id, followed_ids=followed, revision=row[1])

    async def put(
        self,
        viewer_id: str,
        followed_ids: Sequence[str],
        revision: int | None = None,
    ) -> int:
        # base58 ids never contain commas
        encoded = ",".join(followed_ids)
        try:
            with self._conn:
                if revision is None:
                    self._conn.execute(
                        "INSERT INTO block_follows (viewer_id, followed_ids, revision) VALUES (?, ?, 1)",
                        (viewer_id, encoded),
                    )
                    return 1
                cursor = self._conn.execute(
                    "UPDATE block_follows SET followed_ids = ?, revision = revision + 1 "
                    "WHERE viewer_id = ? AND revision = ?",
                    (encoded, viewer_id, revision),
                )
        except sqlite3.IntegrityError as exc:
            raise RevisionConflict("document already exists") from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if cursor.rowcount == 0:
            raise RevisionConflict(f"stale revision {revision}")
        return revision + 1

    async def delete(self, viewer_id: str, revision: int) -> bool:
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM block_follows WHERE viewer_id = ? AND revision = ?",
                    (viewer_id, revision),
                )
                if cursor.rowcount:
                    return True
                exists = self._conn.execute(
                    "SELECT 1 FROM block_follows WHERE viewer_id = ?",
                    (viewer_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if exists:
            raise RevisionConflict("block follow list changed concurrently")
        return False
