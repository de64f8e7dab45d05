"""Fixed-size Bloom filter over identity ids.

The persisted wire format is a bare 5000-byte bit array (40,000 bits, 10 hash
rounds, version 1). The item count cannot be recovered from the bits and has
to travel next to them.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import math
from dataclasses import dataclass
from typing import Iterable

from .identifiers import identifier_bytes

FILTER_SIZE_BYTES = 5000
FILTER_SIZE_BITS = FILTER_SIZE_BYTES * 8
NUM_HASH_FUNCTIONS = 10
FILTER_VERSION = 1

# sha256 yields 32 bytes; 4 bytes per position.
_POSITIONS_PER_DIGEST = 8


def false_positive_rate(item_count: int, size_bits: int, hash_count: int) -> float:
    """Estimate (1 - e^(-k*n/m))^k for n items in an m-bit filter."""

    if item_count <= 0:
        return 0.0
    return (1.0 - math.exp(-hash_count * item_count / size_bits)) ** hash_count


def optimal_hash_count(size_bits: int, expected_items: int) -> int:
    if expected_items <= 0:
        raise ValueError("expected_items must be positive")
    return max(1, round(size_bits / expected_items * math.log(2)))


@dataclass(eq=False)
class MembershipFilter:
    size_bits: int = FILTER_SIZE_BITS
    hash_count: int = NUM_HASH_FUNCTIONS
    item_count: int = 0

    def __post_init__(self) -> None:
        if self.size_bits <= 0 or self.size_bits % 8 != 0:
            raise ValueError("size_bits must be a positive multiple of 8")
        if self.hash_count <= 0:
            raise ValueError("hash_count must be positive")
        if self.item_count < 0:
            raise ValueError("item_count must not be negative")
        self._bits = bytearray(self.size_bits // 8)

    @property
    def size_bytes(self) -> int:
        return len(self._bits)

    def add(self, identifier: str | bytes) -> None:
        for index in self._indices(identifier_bytes(identifier)):
            self._set_bit(index)
        self.item_count += 1

    def might_contain(self, identifier: str | bytes) -> bool:
        return all(self._get_bit(index) for index in self._indices(identifier_bytes(identifier)))

    def merge(self, other: MembershipFilter) -> None:
        """OR ``other`` into this filter; the item count becomes an estimate."""

        if other.size_bits != self.size_bits or other.hash_count != self.hash_count:
            raise ValueError("cannot merge filters with different parameters")
        for i, byte in enumerate(other._bits):
            self._bits[i] |= byte
        self.item_count += other.item_count

    @classmethod
    def union(
        cls,
        filters: Iterable[MembershipFilter],
        *,
        size_bits: int = FILTER_SIZE_BITS,
        hash_count: int = NUM_HASH_FUNCTIONS,
    ) -> MembershipFilter:
        merged = cls(size_bits=size_bits, hash_count=hash_count)
        for flt in filters:
            merged.merge(flt)
        return merged

    def is_empty(self) -> bool:
        return not any(self._bits)

    def estimate_false_positive_rate(self) -> float:
        return false_positive_rate(self.item_count, self.size_bits, self.hash_count)

    def serialize(self) -> bytes:
        return bytes(self._bits)

    @classmethod
    def deserialize(
        cls,
        data: bytes,
        item_count: int = 0,
        *,
        size_bits: int = FILTER_SIZE_BITS,
        hash_count: int = NUM_HASH_FUNCTIONS,
    ) -> MembershipFilter:
        flt = cls(size_bits=size_bits, hash_count=hash_count, item_count=item_count)
        chunk = bytes(data[: flt.size_bytes])
        flt._bits[: len(chunk)] = chunk
        return flt

    def to_base64(self) -> str:
        return base64.b64encode(self._bits).decode("ascii")

    @classmethod
    def from_base64(cls, text: str, item_count: int = 0) -> MembershipFilter:
        try:
            data = base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValueError("filter payload must be base64") from exc
        return cls.deserialize(data, item_count)

    def _indices(self, data: bytes) -> list[int]:
        indices: list[int] = []
        digest = hashlib.sha256(data).digest()
        for i in range(self.hash_count):
            if i > 0 and i % _POSITIONS_PER_DIGEST == 0:
                digest = hashlib.sha256(digest).digest()
            offset = (i % _POSITIONS_PER_DIGEST) * 4
            value = int.from_bytes(digest[offset : offset + 4], "big")
            indices.append(value % self.size_bits)
        return indices

    def _set_bit(self, index: int) -> None:
        byte_index, bit_index = divmod(index, 8)
        self._bits[byte_index] |= 1 << bit_index

    def _get_bit(self, index: int) -> bool:
        byte_index, bit_index = divmod(index, 8)
        return bool(self._bits[byte_index] & (1 << bit_index))
