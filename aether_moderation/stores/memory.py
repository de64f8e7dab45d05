"""In-memory collaborators with the backing store's query limits."""

from __future__ import annotations

import time
from collections import Counter
from typing import Callable, Sequence
from uuid import uuid4

from ..errors import RevisionConflict, StoreError
from ..records import BlockFollowRecord, BlockRecord, StoredFilter
from .base import MAX_IN_VALUES


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class InMemoryBlockRecordStore:
    def __init__(self, *, now_ms: Callable[[], int] = _now_ms) -> None:
        self._records: dict[str, BlockRecord] = {}
        self._by_edge: dict[tuple[str, str], str] = {}
        self._now_ms = now_ms
        self._seq = 0
        self.calls: Counter[str] = Counter()

    async def create(self, owner_id: str, blocked_id: str, message: str | None = None) -> BlockRecord:
        self.calls["create"] += 1
        edge = (owner_id, blocked_id)
        if edge in self._by_edge:
            raise StoreError("block record already exists")
        self._seq += 1
        record = BlockRecord(
            record_id=uuid4().hex,
            owner_id=owner_id,
            blocked_id=blocked_id,
            created_at=self._now_ms(),
            message=message,
            seq=self._seq,
        )
        self._records[record.record_id] = record
        self._by_edge[edge] = record.record_id
        return record

    async def delete(self, record_id: str, owner_id: str) -> bool:
        self.calls["delete"] += 1
        record = self._records.get(record_id)
        if record is None or record.owner_id != owner_id:
            return False
        del self._records[record_id]
        self._by_edge.pop((record.owner_id, record.blocked_id), None)
        return True

    async def get(self, owner_id: str, blocked_id: str) -> BlockRecord | None:
        self.calls["get"] += 1
        record_id = self._by_edge.get((owner_id, blocked_id))
        return self._records.get(record_id) if record_id else None

    async def query_in(self, owner_id: str, blocked_ids: Sequence[str]) -> list[BlockRecord]:
        self.calls["query_in"] += 1
        wanted = set(blocked_ids)
        if len(wanted) > MAX_IN_VALUES:
            raise StoreError(f"'in' predicate accepts at most {MAX_IN_VALUES} values")
        out: list[BlockRecord] = []
        for blocked_id in wanted:
            record_id = self._by_edge.get((owner_id, blocked_id))
            if record_id:
                out.append(self._records[record_id])
        return out

    async def list_by_owner(
        self,
        owner_id: str,
        *,
        limit: int = MAX_IN_VALUES,
        start_after: int | None = None,
    ) -> list[BlockRecord]:
        self.calls["list_by_owner"] += 1
        if not 0 < limit <= MAX_IN_VALUES:
            raise StoreError(f"limit must be between 1 and {MAX_IN_VALUES}")
        cursor = start_after or 0
        owned = sorted(
            (record for record in self._records.values() if record.owner_id == owner_id and record.seq > cursor),
            key=lambda record: record.seq,
        )
        return owned[:limit]


class InMemoryFilterStore:
    def __init__(self) -> None:
        self._filters: dict[str, StoredFilter] = {}
        self.calls: Counter[str] = Counter()

    async def get(self, owner_id: str) -> StoredFilter | None:
        self.calls["get"] += 1
        return self._filters.get(owner_id)

    async def put(
        self,
        owner_id: str,
        data: bytes,
        item_count: int,
        revision: int | None = None,
    ) -> int:
        self.calls["put"] += 1
        existing = self._filters.get(owner_id)
        next_revision = _check_revision(existing.revision if existing else None, revision)
        self._filters[owner_id] = StoredFilter(
            owner_id=owner_id,
            data=bytes(data),
            item_count=item_count,
            revision=next_revision,
        )
        return next_revision


class InMemoryBlockFollowStore:
    def __init__(self) -> None:
        self._follows: dict[str, BlockFollowRecord] = {}
        self.calls: Counter[str] = Counter()

    async def get(self, viewer_id: str) -> BlockFollowRecord | None:
        self.calls["get"] += 1
        return self._follows.get(viewer_id)

    async def put(
        self,
        viewer_id: str,
        followed_ids: Sequence[str],
        revision: int | None = None,
    ) -> int:
        self.calls["put"] += 1
        existing = self._follows.get(viewer_id)
        next_revision = _check_revision(existing.revision if existing else None, revision)
        self._follows[viewer_id] = BlockFollowRecord(
            viewer_id=viewer_id,
            followed_ids=tuple(followed_ids),
            revision=next_revision,
        )
        return next_revision

    async def delete(self, viewer_id: str, revision: int) -> bool:
        self.calls["delete"] += 1
        existing = self._follows.get(viewer_id)
        if existing is None:
            return False
        if existing.revision != revision:
            raise RevisionConflict("block follow list changed concurrently")
        del self._follows[viewer_id]
        return True


def _check_revision(current: int | None, expected: int | None) -> int:
    """Validate an optimistic-concurrency write and return the next revision."""

    if expected is None:
        if current is not None:
            raise RevisionConflict("document already exists")
        return 1
    if current is None:
        raise RevisionConflict("document does not exist")
    if current != expected:
        raise RevisionConflict(f"stale revision {expected}, current is {current}")
    return current + 1
