from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from aether_moderation.errors import RevisionConflict, StoreError
from aether_moderation.stores import SQLiteLedger


def test_records_survive_reopen(tmp_path: Path) -> None:
    path = tmp_path / "ledger.db"

    async def write() -> str:
        ledger = SQLiteLedger(path)
        try:
            record = await ledger.records.create("alice", "bob", "spam")
            return record.record_id
        finally:
            ledger.close()

    async def read(record_id: str) -> None:
        ledger = SQLiteLedger(path)
        try:
            record = await ledger.records.get("alice", "bob")
            assert record is not None
            assert record.record_id == record_id
            assert record.message == "spam"
        finally:
            ledger.close()

    asyncio.run(read(asyncio.run(write())))


def test_record_queries(tmp_path: Path) -> None:
    async def run() -> None:
        ledger = SQLiteLedger(tmp_path / "ledger.db")
        try:
            records = ledger.records
            for i in range(5):
                await records.create("alice", f"t-{i}")
            with pytest.raises(StoreError, match="already exists"):
                await records.create("alice", "t-0")

            found = await records.query_in("alice", ["t-1", "t-3", "t-7"])
            assert sorted(record.blocked_id for record in found) == ["t-1", "t-3"]
            assert await records.query_in("alice", []) == []
            with pytest.raises(StoreError, match="at most 100"):
                await records.query_in("alice", [f"x-{i}" for i in range(101)])

            first = await records.list_by_owner("alice", limit=3)
            rest = await records.list_by_owner("alice", limit=3, start_after=first[-1].seq)
            assert [r.blocked_id for r in first + rest] == [f"t-{i}" for i in range(5)]

            assert await records.delete(first[0].record_id, "alice") is True
            assert await records.get("alice", "t-0") is None
        finally:
            ledger.close()

    asyncio.run(run())


def test_paging_survives_deleted_cursor(tmp_path: Path) -> None:
    async def run() -> None:
        ledger = SQLiteLedger(tmp_path / "ledger.db")
        try:
            records = ledger.records
            for i in range(4):
                await records.create("alice", f"t-{i}")
            first = await records.list_by_owner("alice", limit=2)
            assert await records.delete(first[-1].record_id, "alice") is True

            rest = await records.list_by_owner("alice", limit=2, start_after=first[-1].seq)
            assert [r.blocked_id for r in rest] == ["t-2", "t-3"]

            # The deleted tail seq is not handed out again.
            assert await records.delete(rest[-1].record_id, "alice") is True
            fresh = await records.create("alice", "t-4")
            assert fresh.seq > rest[-1].seq
            tail = await records.list_by_owner("alice", limit=2, start_after=rest[-1].seq)
            assert [r.blocked_id for r in tail] == ["t-4"]
        finally:
            ledger.close()

    asyncio.run(run())


def test_filter_and_follow_revisions(tmp_path: Path) -> None:
    async def run() -> None:
        ledger = SQLiteLedger(tmp_path / "ledger.db")
        try:
            assert await ledger.filters.put("alice", b"\x01" * 4, 1) == 1
            with pytest.raises(RevisionConflict):
                await ledger.filters.put("alice", b"\x02" * 4, 1)
            assert await ledger.filters.put("alice", b"\x03" * 4, 2, revision=1) == 2
            with pytest.raises(RevisionConflict):
                await ledger.filters.put("alice", b"\x04" * 4, 3, revision=1)
            stored = await ledger.filters.get("alice")
            assert stored is not None
            assert (stored.data, stored.item_count, stored.revision, stored.version) == (b"\x03" * 4, 2, 2, 1)

            revision = await ledger.follows.put("alice", ["bob", "carol"])
            follow = await ledger.follows.get("alice")
            assert follow is not None
            assert follow.followed_ids == ("bob", "carol")
            with pytest.raises(RevisionConflict):
                await ledger.follows.delete("alice", revision + 1)
            assert await ledger.follows.delete("alice", revision) is True
            assert await ledger.follows.delete("alice", revision) is False
        finally:
            ledger.close()

    asyncio.run(run())
