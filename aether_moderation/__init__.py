"""Block-list membership checks with inherited moderation."""

from .bloom import FILTER_SIZE_BITS, FILTER_SIZE_BYTES, FILTER_VERSION, NUM_HASH_FUNCTIONS, MembershipFilter
from .cache import CacheEntry, ConfirmedBlock, DisabledCacheStorage, FileCacheStorage, LocalCache, MemoryCacheStorage
from .config import ModerationConfig, load_config
from .coordinator import BLOCKED, NOT_BLOCKED, UNVERIFIABLE, BlockCoordinator, BlockVerdict
from .errors import (
    CacheUnavailable,
    ModerationError,
    NotFoundError,
    OperationResult,
    RevisionConflict,
    StoreError,
    ValidationError,
)
from .records import BlockFollowRecord, BlockRecord, StoredFilter

__all__ = [
    "BLOCKED",
    "NOT_BLOCKED",
    "UNVERIFIABLE",
    "FILTER_SIZE_BITS",
    "FILTER_SIZE_BYTES",
    "FILTER_VERSION",
    "NUM_HASH_FUNCTIONS",
    "BlockCoordinator",
    "BlockFollowRecord",
    "BlockRecord",
    "BlockVerdict",
    "CacheEntry",
    "CacheUnavailable",
    "ConfirmedBlock",
    "DisabledCacheStorage",
    "FileCacheStorage",
    "LocalCache",
    "MembershipFilter",
    "MemoryCacheStorage",
    "ModerationConfig",
    "ModerationError",
    "NotFoundError",
    "OperationResult",
    "RevisionConflict",
    "StoreError",
    "StoredFilter",
    "ValidationError",
    "load_config",
    "__version__",
]

__version__ = "0.1.0"
