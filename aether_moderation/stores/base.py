"""Collaborator interfaces for the ledger-backed document store."""

from __future__ import annotations

from typing import Protocol, Sequence

from ..records import BlockFollowRecord, BlockRecord, StoredFilter

# The backing store caps result sets and "in" predicates at 100 values.
MAX_IN_VALUES = 100


class BlockRecordStore(Protocol):
    async def create(self, owner_id: str, blocked_id: str, message: str | None = None) -> BlockRecord: ...
    async def delete(self, record_id: str, owner_id: str) -> bool: ...
    async def get(self, owner_id: str, blocked_id: str) -> BlockRecord | None: ...
    async def query_in(self, owner_id: str, blocked_ids: Sequence[str]) -> list[BlockRecord]: ...
    async def list_by_owner(
        self,
        owner_id: str,
        *,
        limit: int = MAX_IN_VALUES,
        start_after: int | None = None,
    ) -> list[BlockRecord]:
        """Page owned records in insertion order, after the record whose ``seq`` is ``start_after``."""
        ...


class FilterStore(Protocol):
    async def get(self, owner_id: str) -> StoredFilter | None: ...
    async def put(
        self,
        owner_id: str,
        data: bytes,
        item_count: int,
        revision: int | None = None,
    ) -> int: ...


class BlockFollowStore(Protocol):
    async def get(self, viewer_id: str) -> BlockFollowRecord | None: ...
    async def put(
        self,
        viewer_id: str,
        followed_ids: Sequence[str],
        revision: int | None = None,
    ) -> int: ...
    async def delete(self, viewer_id: str, revision: int) -> bool: ...
