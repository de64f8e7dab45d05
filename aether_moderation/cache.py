"""Session-scoped block cache.

One entry per viewer holds four facets (own blocks, followed block lists,
merged filter, confirmed verdicts) and is stored as a single JSON document.
The facets are one consistency unit: every writer reads the whole entry,
changes it and writes it back, and the entry expires as a whole. Any storage
failure degrades to a cache miss.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, Mapping, Protocol

from .bloom import MembershipFilter
from .errors import CacheUnavailable

logger = logging.getLogger(__name__)


class CacheStorage(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


class MemoryCacheStorage:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._values)


class FileCacheStorage:
    """One JSON file per key, for processes that outlive a single command."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _path(self, key: str) -> Path:
        return self._directory / f"{key.replace(':', '_')}.json"


class DisabledCacheStorage:
    def get(self, key: str) -> str | None:
        raise CacheUnavailable("cache storage disabled")

    def set(self, key: str, value: str) -> None:
        raise CacheUnavailable("cache storage disabled")

    def delete(self, key: str) -> None:
        raise CacheUnavailable("cache storage disabled")


@dataclass
class IdFacet:
    ids: list[str]
    ts: int


@dataclass
class MergedFilter:
    data: bytes
    item_count: int
    source_ids: list[str]
    ts: int

    def to_filter(self) -> MembershipFilter:
        return MembershipFilter.deserialize(self.data, self.item_count)


@dataclass
class ConfirmedBlock:
    is_blocked: bool
    blocked_by: str | None = None
    message: str | None = None
    ts: int = 0


@dataclass
class CacheEntry:
    own_blocks: IdFacet
    block_follows: IdFacet
    merged_filter: MergedFilter | None
    confirmed_blocks: dict[str, ConfirmedBlock] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        merged: dict[str, object] | None = None
        if self.merged_filter is not None:
            merged = {
                "bytes": self.merged_filter.to_filter().to_base64(),
                "itemCount": self.merged_filter.item_count,
                "sourceIds": list(self.merged_filter.source_ids),
                "ts": self.merged_filter.ts,
            }
        confirmed: dict[str, object] = {}
        for target_id, verdict in self.confirmed_blocks.items():
            item: dict[str, object] = {
                "isBlocked": verdict.is_blocked,
                "blockedBy": verdict.blocked_by,
                "ts": verdict.ts,
            }
            if verdict.message is not None:
                item["message"] = verdict.message
            confirmed[target_id] = item
        return {
            "ownBlocks": {"ids": list(self.own_blocks.ids), "ts": self.own_blocks.ts},
            "blockFollows": {"ids": list(self.block_follows.ids), "ts": self.block_follows.ts},
            "mergedFilter": merged,
            "confirmedBlocks": confirmed,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> CacheEntry:
        own = payload["ownBlocks"]
        follows = payload["blockFollows"]
        raw_merged = payload.get("mergedFilter")
        merged = None
        if raw_merged is not None:
            item_count = int(raw_merged["itemCount"])
            merged = MergedFilter(
                data=MembershipFilter.from_base64(raw_merged["bytes"], item_count).serialize(),
                item_count=item_count,
                source_ids=[str(value) for value in raw_merged.get("sourceIds", [])],
                ts=int(raw_merged["ts"]),
            )
        confirmed = {
            str(target_id): ConfirmedBlock(
                is_blocked=bool(item["isBlocked"]),
                blocked_by=item.get("blockedBy"),
                message=item.get("message"),
                ts=int(item["ts"]),
            )
            for target_id, item in dict(payload.get("confirmedBlocks") or {}).items()
        }
        return cls(
            own_blocks=IdFacet(ids=[str(value) for value in own["ids"]], ts=int(own["ts"])),
            block_follows=IdFacet(ids=[str(value) for value in follows["ids"]], ts=int(follows["ts"])),
            merged_filter=merged,
            confirmed_blocks=confirmed,
        )


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class LocalCache:
    def __init__(
        self,
        storage: CacheStorage,
        *,
        ttl_ms: int = 5 * 60 * 1000,
        namespace: str = "aether_moderation:blocks",
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._storage = storage
        self._ttl_ms = ttl_ms
        self._namespace = namespace
        self._now_ms = now_ms

    def get(self, viewer_id: str) -> CacheEntry | None:
        """Return the viewer's entry, or None when absent, expired or unreadable."""

        key = self._key(viewer_id)
        try:
            raw = self._storage.get(key)
        except (CacheUnavailable, OSError) as exc:
            logger.debug("cache read failed for %s: %s", viewer_id, exc)
            return None
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.debug("dropping corrupt cache entry for %s: %s", viewer_id, exc)
            self._delete(key)
            return None
        if self._now_ms() - entry.block_follows.ts >= self._ttl_ms:
            self._delete(key)
            return None
        return entry

    def initialize(
        self,
        viewer_id: str,
        own_blocked_ids: Iterable[str],
        followed_ids: Iterable[str],
        merged_filter: MembershipFilter | None,
        source_ids: Iterable[str] = (),
    ) -> CacheEntry:
        existing = self.get(viewer_id)
        if existing is not None:
            return existing
        now = self._now_ms()
        own_ids = list(dict.fromkeys(own_blocked_ids))
        merged = None
        if merged_filter is not None:
            merged = MergedFilter(
                data=merged_filter.serialize(),
                item_count=merged_filter.item_count,
                source_ids=list(source_ids),
                ts=now,
            )
        entry = CacheEntry(
            own_blocks=IdFacet(ids=own_ids, ts=now),
            block_follows=IdFacet(ids=list(dict.fromkeys(followed_ids)), ts=now),
            merged_filter=merged,
            confirmed_blocks={
                target_id: ConfirmedBlock(is_blocked=True, blocked_by=viewer_id, ts=now) for target_id in own_ids
            },
        )
        self._write(viewer_id, entry)
        return entry

    def add_own_block(self, viewer_id: str, target_id: str, message: str | None = None) -> None:
        # The merged filter is left as is until the next initialize.
        def mutate(entry: CacheEntry, now: int) -> None:
            if target_id not in entry.own_blocks.ids:
                entry.own_blocks.ids.append(target_id)
            entry.own_blocks.ts = now
            entry.confirmed_blocks[target_id] = ConfirmedBlock(
                is_blocked=True,
                blocked_by=viewer_id,
                message=message,
                ts=now,
            )

        self._update(viewer_id, mutate)

    def remove_own_block(self, viewer_id: str, target_id: str) -> None:
        def mutate(entry: CacheEntry, now: int) -> None:
            if target_id in entry.own_blocks.ids:
                entry.own_blocks.ids.remove(target_id)
            entry.own_blocks.ts = now
            entry.confirmed_blocks.pop(target_id, None)

        self._update(viewer_id, mutate)

    def get_confirmed_block(self, viewer_id: str, target_id: str) -> ConfirmedBlock | None:
        entry = self.get(viewer_id)
        if entry is None:
            return None
        return entry.confirmed_blocks.get(target_id)

    def add_confirmed_block(
        self,
        viewer_id: str,
        target_id: str,
        is_blocked: bool,
        blocked_by: str | None = None,
        message: str | None = None,
    ) -> None:
        self.add_confirmed_blocks_batch(
            viewer_id,
            {target_id: ConfirmedBlock(is_blocked=is_blocked, blocked_by=blocked_by, message=message)},
        )

    def add_confirmed_blocks_batch(self, viewer_id: str, verdicts: Mapping[str, ConfirmedBlock]) -> None:
        if not verdicts:
            return

        def mutate(entry: CacheEntry, now: int) -> None:
            for target_id, verdict in verdicts.items():
                entry.confirmed_blocks[target_id] = replace(verdict, ts=now)

        self._update(viewer_id, mutate)

    def get_merged_filter(self, viewer_id: str) -> MembershipFilter | None:
        entry = self.get(viewer_id)
        if entry is None or entry.merged_filter is None:
            return None
        return entry.merged_filter.to_filter()

    def invalidate(self, viewer_id: str) -> None:
        self._delete(self._key(viewer_id))

    def _update(self, viewer_id: str, mutate: Callable[[CacheEntry, int], None]) -> None:
        # Writes never create an entry; a partial entry would make initialize skip the bootstrap.
        entry = self.get(viewer_id)
        if entry is None:
            return
        mutate(entry, self._now_ms())
        self._write(viewer_id, entry)

    def _write(self, viewer_id: str, entry: CacheEntry) -> None:
        try:
            self._storage.set(self._key(viewer_id), json.dumps(entry.to_payload(), separators=(",", ":")))
        except (CacheUnavailable, OSError) as exc:
            logger.debug("cache write dropped for %s: %s", viewer_id, exc)

    def _delete(self, key: str) -> None:
        try:
            self._storage.delete(key)
        except (CacheUnavailable, OSError) as exc:
            logger.debug("cache delete dropped for %s: %s", key, exc)

    def _key(self, viewer_id: str) -> str:
        return f"{self._namespace}:{viewer_id}"
