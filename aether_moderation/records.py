"""Value types exchanged with the ledger collaborators."""

from __future__ import annotations

from dataclasses import dataclass

from .bloom import FILTER_VERSION, MembershipFilter


@dataclass(frozen=True)
class BlockRecord:
    record_id: str
    owner_id: str
    blocked_id: str
    created_at: int
    message: str | None = None
    # Store-assigned insertion order, used as the paging cursor.
    seq: int = 0


@dataclass(frozen=True)
class BlockFollowRecord:
    viewer_id: str
    followed_ids: tuple[str, ...]
    revision: int


@dataclass(frozen=True)
class StoredFilter:
    owner_id: str
    data: bytes
    item_count: int
    revision: int
    version: int = FILTER_VERSION

    def to_filter(self) -> MembershipFilter:
        if self.version != FILTER_VERSION:
            raise ValueError(f"unsupported filter version {self.version}")
        return MembershipFilter.deserialize(self.data, self.item_count)
