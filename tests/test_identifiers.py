from __future__ import annotations

import base58
import pytest

from aether_moderation.identifiers import identifier_bytes, require_id


def test_base58_strings_decode_to_raw_bytes() -> None:
    raw = b"\x07" * 32
    encoded = base58.b58encode(raw).decode("ascii")
    assert identifier_bytes(encoded) == raw
    assert identifier_bytes(raw) == raw


@pytest.mark.parametrize("value", ["", b"", "0OIl", 12])
def test_invalid_identifiers_raise(value: object) -> None:
    with pytest.raises(ValueError):
        identifier_bytes(value)  # type: ignore[arg-type]


def test_require_id() -> None:
    assert require_id("abc", "viewer_id") == "abc"
    with pytest.raises(ValueError, match="viewer_id is required"):
        require_id("", "viewer_id")
