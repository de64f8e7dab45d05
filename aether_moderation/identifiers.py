"""Identity id coercion."""

from __future__ import annotations

import base58


def identifier_bytes(identifier: str | bytes) -> bytes:
    if isinstance(identifier, bytes):
        if not identifier:
            raise ValueError("identifier must not be empty")
        return identifier
    if not isinstance(identifier, str):
        raise ValueError("identifier must be bytes or base58 string")
    if not identifier:
        raise ValueError("identifier must not be empty")
    try:
        return base58.b58decode(identifier)
    except ValueError as exc:
        raise ValueError("identifier must be base58") from exc


def require_id(value: str | None, field: str) -> str:
    if not value:
        raise ValueError(f"{field} is required")
    return value
