"""Block coordinator: block/unblock, block-list follows and verdict resolution.

Verdicts are resolved cheapest first: the viewer's own blocks, memoized
verdicts, the merged filter as a negative screen, and only then authoritative
record queries against the viewer and every followed block list.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Hashable, Iterable, Sequence, TypeVar

from .bloom import MembershipFilter
from .cache import CacheEntry, ConfirmedBlock, LocalCache, MemoryCacheStorage
from .config import FAIL_CLOSED, ModerationConfig
from .errors import OperationResult, RevisionConflict, StoreError, ValidationError
from .identifiers import identifier_bytes, require_id
from .records import BlockRecord
from .stores.base import BlockFollowStore, BlockRecordStore, FilterStore

logger = logging.getLogger(__name__)

BLOCKED = "blocked"
NOT_BLOCKED = "not_blocked"
UNVERIFIABLE = "unverifiable"

T = TypeVar("T")


@dataclass(frozen=True)
class BlockVerdict:
    state: str
    blocked_by: str | None = None
    message: str | None = None
    resolved_by: str = ""

    @property
    def blocked(self) -> bool:
        return self.state == BLOCKED

    def to_confirmed(self) -> ConfirmedBlock:
        return ConfirmedBlock(is_blocked=self.blocked, blocked_by=self.blocked_by, message=self.message)


class BlockCoordinator:
    def __init__(
        self,
        records: BlockRecordStore,
        filters: FilterStore,
        follows: BlockFollowStore,
        *,
        cache: LocalCache | None = None,
        config: ModerationConfig | None = None,
    ) -> None:
        self._records = records
        self._filters = filters
        self._follows = follows
        self._config = config or ModerationConfig()
        self._cache = cache or LocalCache(
            MemoryCacheStorage(),
            ttl_ms=self._config.cache_ttl_ms,
            namespace=self._config.cache_namespace,
        )
        self._inflight: dict[Hashable, asyncio.Future] = {}

    @property
    def cache(self) -> LocalCache:
        return self._cache

    async def block(self, viewer_id: str, target_id: str, message: str | None = None) -> OperationResult:
        if not viewer_id or not target_id:
            return OperationResult.failed(ValidationError("viewer_id and target_id are required"))
        if viewer_id == target_id:
            return OperationResult.failed(ValidationError("cannot block yourself"))
        invalid = _invalid_ids(viewer_id, target_id)
        if invalid is not None:
            return OperationResult.failed(invalid)

        try:
            record = await self._records.get(viewer_id, target_id)
            if record is None:
                record = await self._records.create(viewer_id, target_id, message)
                logger.info("%s blocked %s", viewer_id, target_id)
        except StoreError as exc:
            logger.warning("block %s -> %s failed: %s", viewer_id, target_id, exc)
            return OperationResult.failed(exc)

        filter_error: StoreError | None = None
        try:
            await self._add_to_filter(viewer_id, target_id)
        except StoreError as exc:
            logger.warning("filter update for %s failed: %s", viewer_id, exc)
            filter_error = exc

        self._cache.add_own_block(viewer_id, target_id, record.message)
        if filter_error is not None:
            return OperationResult.failed(StoreError(f"block recorded but filter update failed: {filter_error}"))
        return OperationResult.ok()

    async def unblock(self, viewer_id: str, target_id: str) -> OperationResult:
        if not viewer_id or not target_id:
            return OperationResult.failed(ValidationError("viewer_id and target_id are required"))

        try:
            record = await self._records.get(viewer_id, target_id)
            if record is not None:
                await self._records.delete(record.record_id, viewer_id)
                logger.info("%s unblocked %s", viewer_id, target_id)
        except StoreError as exc:
            logger.warning("unblock %s -> %s failed: %s", viewer_id, target_id, exc)
            return OperationResult.failed(exc)

        # Filter bits stay set; the missing record wins during confirmation.
        self._cache.remove_own_block(viewer_id, target_id)
        return OperationResult.ok()

    async def follow_block_list(self, viewer_id: str, source_id: str) -> OperationResult:
        if not viewer_id or not source_id:
            return OperationResult.failed(ValidationError("viewer_id and source_id are required"))
        if viewer_id == source_id:
            return OperationResult.failed(ValidationError("cannot follow your own block list"))
        invalid = _invalid_ids(viewer_id, source_id)
        if invalid is not None:
            return OperationResult.failed(invalid)

        try:
            current = await self._follows.get(viewer_id)
            followed = list(current.followed_ids) if current else []
            if source_id in followed:
                return OperationResult.ok()
            if len(followed) >= self._config.max_follows:
                return OperationResult.failed(
                    ValidationError(f"block follow list is full ({self._config.max_follows} sources)")
                )
            followed.append(source_id)
            await self._follows.put(viewer_id, followed, current.revision if current else None)
        except StoreError as exc:
            logger.warning("follow %s -> %s failed: %s", viewer_id, source_id, exc)
            return OperationResult.failed(exc)

        logger.info("%s follows block list of %s", viewer_id, source_id)
        self._cache.invalidate(viewer_id)
        return OperationResult.ok()

    async def unfollow_block_list(self, viewer_id: str, source_id: str) -> OperationResult:
        if not viewer_id or not source_id:
            return OperationResult.failed(ValidationError("viewer_id and source_id are required"))

        try:
            current = await self._follows.get(viewer_id)
            if current is None or source_id not in current.followed_ids:
                return OperationResult.ok()
            followed = [item for item in current.followed_ids if item != source_id]
            if followed:
                await self._follows.put(viewer_id, followed, current.revision)
            else:
                await self._follows.delete(viewer_id, current.revision)
        except StoreError as exc:
            logger.warning("unfollow %s -> %s failed: %s", viewer_id, source_id, exc)
            return OperationResult.failed(exc)

        logger.info("%s unfollowed block list of %s", viewer_id, source_id)
        self._cache.invalidate(viewer_id)
        return OperationResult.ok()

    async def initialize_block_data(self, viewer_id: str) -> OperationResult:
        if not viewer_id:
            return OperationResult.failed(ValidationError("viewer_id is required"))
        try:
            await self._ensure_entry(viewer_id)
        except StoreError as exc:
            logger.warning("bootstrap for %s failed: %s", viewer_id, exc)
            return OperationResult.failed(exc)
        return OperationResult.ok()

    async def is_blocked(self, target_id: str, viewer_id: str) -> bool:
        return self.hides(await self.resolve(target_id, viewer_id))

    def hides(self, verdict: BlockVerdict) -> bool:
        """Map a verdict to show/hide, applying the configured fail mode to unverifiable ones."""

        if verdict.state == UNVERIFIABLE:
            return self._config.fail_mode == FAIL_CLOSED
        return verdict.blocked

    async def resolve(self, target_id: str, viewer_id: str) -> BlockVerdict:
        if not viewer_id or not target_id:
            return BlockVerdict(NOT_BLOCKED)
        return await self._dedupe(("single", viewer_id, target_id), lambda: self._resolve(target_id, viewer_id))

    async def check_blocked_batch(self, viewer_id: str, target_ids: Iterable[str]) -> dict[str, bool]:
        verdicts = await self.resolve_batch(viewer_id, target_ids)
        return {target_id: self.hides(verdict) for target_id, verdict in verdicts.items()}

    async def resolve_batch(self, viewer_id: str, target_ids: Iterable[str]) -> dict[str, BlockVerdict]:
        requested = list(dict.fromkeys(target_ids))
        out = {target_id: BlockVerdict(NOT_BLOCKED) for target_id in requested}
        targets = [target_id for target_id in requested if target_id]
        if not viewer_id or not targets:
            return out
        key = ("batch", viewer_id, frozenset(targets))
        out.update(await self._dedupe(key, lambda: self._resolve_batch(viewer_id, targets)))
        return out

    async def get_block_details(self, target_id: str, viewer_id: str) -> ConfirmedBlock | None:
        if not viewer_id or not target_id:
            return None
        return self._cache.get_confirmed_block(viewer_id, target_id)

    async def get_user_blocks(self, owner_id: str) -> list[BlockRecord]:
        if not owner_id:
            return []
        try:
            return await self._fetch_user_blocks(owner_id)
        except StoreError as exc:
            logger.warning("listing blocks of %s failed: %s", owner_id, exc)
            return []

    async def get_blocked_ids(self, owner_id: str) -> list[str]:
        return [record.blocked_id for record in await self.get_user_blocks(owner_id)]

    async def count_user_blocks(self, owner_id: str) -> int:
        return len(await self.get_user_blocks(owner_id))

    async def get_block_follows(self, viewer_id: str) -> list[str]:
        if not viewer_id:
            return []
        try:
            current = await self._follows.get(viewer_id)
        except StoreError as exc:
            logger.warning("reading block follows of %s failed: %s", viewer_id, exc)
            return []
        return list(current.followed_ids) if current else []

    async def _resolve(self, target_id: str, viewer_id: str) -> BlockVerdict:
        try:
            entry = await self._ensure_entry(viewer_id)
        except StoreError as exc:
            logger.warning("bootstrap for %s failed: %s", viewer_id, exc)
            return BlockVerdict(UNVERIFIABLE, resolved_by="bootstrap")

        cached = _screen(entry, viewer_id, target_id, _merged_filter(entry))
        if cached is not None:
            if cached.resolved_by == "filter":
                self._cache.add_confirmed_block(viewer_id, target_id, False)
            return cached

        verdict = await self._query_target(viewer_id, target_id, entry.block_follows.ids)
        if verdict.state != UNVERIFIABLE:
            self._cache.add_confirmed_block(
                viewer_id,
                target_id,
                verdict.blocked,
                blocked_by=verdict.blocked_by,
                message=verdict.message,
            )
        return verdict

    async def _resolve_batch(self, viewer_id: str, targets: Sequence[str]) -> dict[str, BlockVerdict]:
        try:
            entry = await self._ensure_entry(viewer_id)
        except StoreError as exc:
            logger.warning("bootstrap for %s failed: %s", viewer_id, exc)
            return {target_id: BlockVerdict(UNVERIFIABLE, resolved_by="bootstrap") for target_id in targets}

        merged = _merged_filter(entry)
        verdicts: dict[str, BlockVerdict] = {}
        memo: dict[str, ConfirmedBlock] = {}
        unresolved: list[str] = []
        for target_id in targets:
            cached = _screen(entry, viewer_id, target_id, merged)
            if cached is None:
                unresolved.append(target_id)
                continue
            verdicts[target_id] = cached
            if cached.resolved_by == "filter":
                memo[target_id] = cached.to_confirmed()

        if unresolved:
            found, failed = await self._query_batch(viewer_id, unresolved, entry.block_follows.ids)
            for target_id in unresolved:
                record = found.get(target_id)
                if record is not None:
                    verdict = BlockVerdict(BLOCKED, record.owner_id, record.message, resolved_by="query")
                elif target_id in failed:
                    verdicts[target_id] = BlockVerdict(UNVERIFIABLE, resolved_by="query")
                    continue
                else:
                    verdict = BlockVerdict(NOT_BLOCKED, resolved_by="query")
                verdicts[target_id] = verdict
                memo[target_id] = verdict.to_confirmed()

        self._cache.add_confirmed_blocks_batch(viewer_id, memo)
        return verdicts

    async def _query_target(self, viewer_id: str, target_id: str, sources: Sequence[str]) -> BlockVerdict:
        own_failed = False
        try:
            record = await self._records.get(viewer_id, target_id)
        except StoreError as exc:
            logger.warning("block lookup %s -> %s failed: %s", viewer_id, target_id, exc)
            own_failed = True
        else:
            if record is not None:
                return BlockVerdict(BLOCKED, viewer_id, record.message, resolved_by="query")

        hits: list[BlockRecord] = []

        def collect(record: BlockRecord | None) -> bool:
            if record is None:
                return False
            hits.append(record)
            return True

        # First inherited hit wins; there is no precedence among sources.
        failed = await _first_hit(
            [self._records.get(source_id, target_id) for source_id in sources if source_id != viewer_id],
            collect,
        )
        if hits:
            return BlockVerdict(BLOCKED, hits[0].owner_id, hits[0].message, resolved_by="query")
        if own_failed or failed:
            return BlockVerdict(UNVERIFIABLE, resolved_by="query")
        return BlockVerdict(NOT_BLOCKED, resolved_by="query")

    async def _query_batch(
        self,
        viewer_id: str,
        targets: Sequence[str],
        sources: Sequence[str],
    ) -> tuple[dict[str, BlockRecord], set[str]]:
        found: dict[str, BlockRecord] = {}
        failed: set[str] = set()
        try:
            for record in await self._query_owner(viewer_id, targets):
                found.setdefault(record.blocked_id, record)
        except StoreError as exc:
            logger.warning("batch block lookup for %s failed: %s", viewer_id, exc)
            failed.update(targets)

        remaining = [target_id for target_id in targets if target_id not in found]
        if not remaining:
            return found, failed

        # One "in" predicate per query: batch across targets, fan out across sources.
        def collect(records: list[BlockRecord]) -> bool:
            for record in records:
                found.setdefault(record.blocked_id, record)
            return all(target_id in found for target_id in remaining)

        if await _first_hit(
            [self._query_owner(source_id, remaining) for source_id in sources if source_id != viewer_id],
            collect,
        ):
            failed.update(remaining)
        return found, failed

    async def _query_owner(self, owner_id: str, targets: Sequence[str]) -> list[BlockRecord]:
        limit = self._config.query_limit
        chunks = [targets[i : i + limit] for i in range(0, len(targets), limit)]
        tasks = [asyncio.ensure_future(self._records.query_in(owner_id, chunk)) for chunk in chunks]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [record for chunk in results for record in chunk]

    async def _ensure_entry(self, viewer_id: str) -> CacheEntry:
        require_id(viewer_id, "viewer_id")
        entry = self._cache.get(viewer_id)
        if entry is not None:
            return entry
        return await self._bootstrap(viewer_id)

    async def _bootstrap(self, viewer_id: str) -> CacheEntry:
        follow_record, own_records = await asyncio.gather(
            self._follows.get(viewer_id),
            self._fetch_user_blocks(viewer_id),
        )
        followed_ids = follow_record.followed_ids if follow_record else ()
        followed = [source_id for source_id in followed_ids if source_id != viewer_id]
        owners = [viewer_id, *followed]
        stored_filters = await asyncio.gather(*(self._filters.get(owner_id) for owner_id in owners))

        merged = MembershipFilter()
        source_ids: list[str] = []
        unscreenable: list[str] = []
        for owner_id, stored in zip(owners, stored_filters):
            if stored is None:
                if owner_id != viewer_id:
                    unscreenable.append(owner_id)
                continue
            try:
                merged.merge(stored.to_filter())
            except ValueError as exc:
                logger.warning("ignoring filter of %s: %s", owner_id, exc)
                unscreenable.append(owner_id)
                continue
            source_ids.append(owner_id)

        if unscreenable:
            logger.debug("no usable filter for %s; merged filter disabled for %s", unscreenable, viewer_id)
        return self._cache.initialize(
            viewer_id,
            [record.blocked_id for record in own_records],
            followed,
            None if unscreenable else merged,
            source_ids,
        )

    async def _fetch_user_blocks(self, owner_id: str) -> list[BlockRecord]:
        limit = self._config.query_limit
        out: list[BlockRecord] = []
        start_after: int | None = None
        while True:
            page = await self._records.list_by_owner(owner_id, limit=limit, start_after=start_after)
            out.extend(page)
            if len(page) < limit:
                return out
            start_after = page[-1].seq

    async def _add_to_filter(self, owner_id: str, target_id: str) -> None:
        for _attempt in range(self._config.filter_write_attempts):
            stored = await self._filters.get(owner_id)
            if stored is None:
                flt = MembershipFilter()
                revision = None
            else:
                try:
                    flt = stored.to_filter()
                except ValueError as exc:
                    raise StoreError(f"unreadable filter for {owner_id}: {exc}") from exc
                if flt.might_contain(target_id):
                    return
                revision = stored.revision
            flt.add(target_id)
            try:
                await self._filters.put(owner_id, flt.serialize(), flt.item_count, revision)
                return
            except RevisionConflict:
                logger.debug("filter write conflict for %s, retrying", owner_id)
        raise StoreError(f"filter for {owner_id} kept changing concurrently")

    async def _dedupe(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            self._inflight[key] = future
            future.add_done_callback(lambda _done: self._inflight.pop(key, None))
        return await asyncio.shield(future)


def _screen(
    entry: CacheEntry,
    viewer_id: str,
    target_id: str,
    merged: MembershipFilter | None,
) -> BlockVerdict | None:
    if target_id in entry.own_blocks.ids:
        return BlockVerdict(BLOCKED, viewer_id, resolved_by="own")
    confirmed = entry.confirmed_blocks.get(target_id)
    if confirmed is not None:
        state = BLOCKED if confirmed.is_blocked else NOT_BLOCKED
        return BlockVerdict(state, confirmed.blocked_by, confirmed.message, resolved_by="confirmed")
    if merged is not None and not merged.might_contain(target_id):
        return BlockVerdict(NOT_BLOCKED, resolved_by="filter")
    return None


def _invalid_ids(*identifiers: str) -> ValidationError | None:
    # Checked before any write so a rejected id never leaves a record behind.
    for identifier in identifiers:
        try:
            identifier_bytes(identifier)
        except ValueError as exc:
            return ValidationError(f"{identifier!r}: {exc}")
    return None


def _merged_filter(entry: CacheEntry) -> MembershipFilter | None:
    if entry.merged_filter is None:
        return None
    return entry.merged_filter.to_filter()


async def _first_hit(calls: Sequence[Awaitable[T]], accept: Callable[[T], bool]) -> bool:
    """Run ``calls`` concurrently until ``accept`` returns True for a result.

    Returns True when at least one call failed with StoreError before that point.
    """

    if not calls:
        return False
    tasks = [asyncio.ensure_future(call) for call in calls]
    failed = False
    try:
        for next_done in asyncio.as_completed(tasks):
            try:
                result = await next_done
            except StoreError as exc:
                logger.warning("block list lookup failed: %s", exc)
                failed = True
                continue
            if accept(result):
                return failed
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    return failed
