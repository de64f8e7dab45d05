"""Ledger collaborators for block records, filters and follow lists."""

from .base import MAX_IN_VALUES, BlockFollowStore, BlockRecordStore, FilterStore
from .memory import InMemoryBlockFollowStore, InMemoryBlockRecordStore, InMemoryFilterStore
from .sqlite import SQLiteBlockFollowStore, SQLiteBlockRecordStore, SQLiteFilterStore, SQLiteLedger

__all__ = [
    "MAX_IN_VALUES",
    "BlockFollowStore",
    "BlockRecordStore",
    "FilterStore",
    "InMemoryBlockFollowStore",
    "InMemoryBlockRecordStore",
    "InMemoryFilterStore",
    "SQLiteBlockFollowStore",
    "SQLiteBlockRecordStore",
    "SQLiteFilterStore",
    "SQLiteLedger",
]
