"""Runtime configuration for the moderation subsystem."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


@dataclass
class ModerationConfig:
    cache_ttl_seconds: float = 300.0
    max_follows: int = 100
    query_limit: int = 100
    fail_mode: str = FAIL_OPEN
    filter_write_attempts: int = 3
    cache_namespace: str = "aether_moderation:blocks"

    def __post_init__(self) -> None:
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be positive")
        if self.max_follows <= 0:
            raise ValueError("max_follows must be positive")
        if not 0 < self.query_limit <= 100:
            raise ValueError("query_limit must be between 1 and 100")
        if self.fail_mode not in (FAIL_OPEN, FAIL_CLOSED):
            raise ValueError("fail_mode must be 'open' or 'closed'")
        if self.filter_write_attempts <= 0:
            raise ValueError("filter_write_attempts must be positive")
        if not self.cache_namespace:
            raise ValueError("cache_namespace must not be empty")

    @property
    def cache_ttl_ms(self) -> int:
        return int(self.cache_ttl_seconds * 1000)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ModerationConfig:
        known = {field.name for field in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        return cls(**dict(raw))


def load_config(path: str | Path | None) -> ModerationConfig:
    if path is None:
        return ModerationConfig()
    config_path = Path(path)
    if not config_path.exists():
        return ModerationConfig()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if raw is None:
        return ModerationConfig()
    if not isinstance(raw, dict):
        raise ValueError("config file must contain a mapping")
    return ModerationConfig.from_mapping(raw)
