from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import base58
import pytest

from aether_moderation.cli import main


def _identity(seed: int) -> str:
    return base58.b58encode(bytes([seed]) * 32).decode("ascii")


VIEWER = _identity(1)
SOURCE = _identity(2)
TARGET = _identity(3)


def _run(capsys: pytest.CaptureFixture[str], tmp_path: Path, *args: str) -> tuple[int, dict[str, object]]:
    code = main(["--db", str(tmp_path / "ledger.db"), "--cache-dir", str(tmp_path / "cache"), *args])
    return code, json.loads(capsys.readouterr().out)


def test_block_check_and_list(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(capsys, tmp_path, "block", VIEWER, TARGET, "--message", "spam")
    assert code == 0
    assert payload == {"success": True}

    code, payload = _run(capsys, tmp_path, "check", VIEWER, TARGET)
    assert code == 0
    assert payload["blocked"] is True
    assert payload["state"] == "blocked"

    code, payload = _run(capsys, tmp_path, "list", VIEWER)
    assert payload["follows"] == []
    assert [item["blocked_id"] for item in payload["blocks"]] == [TARGET]  # type: ignore[index]

    code, payload = _run(capsys, tmp_path, "stats", VIEWER)
    assert payload["filter"]["item_count"] == 1  # type: ignore[index]


def test_inherited_batch_check(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(capsys, tmp_path, "follow", VIEWER, SOURCE)[0] == 0
    assert _run(capsys, tmp_path, "block", SOURCE, TARGET)[0] == 0

    code, payload = _run(capsys, tmp_path, "check", VIEWER, TARGET, _identity(9))
    assert code == 0
    assert payload == {"blocked": {TARGET: True, _identity(9): False}}

    assert _run(capsys, tmp_path, "unfollow", VIEWER, SOURCE)[0] == 0
    code, payload = _run(capsys, tmp_path, "check", VIEWER, TARGET)
    assert payload["blocked"] is False


def test_self_block_exits_nonzero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(capsys, tmp_path, "block", VIEWER, VIEWER)
    assert code == 1
    assert payload["code"] == "validation"


def test_stats_without_filter(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(capsys, tmp_path, "stats", VIEWER)
    assert code == 0
    assert payload == {"filter": None}


def test_stats_with_unsupported_filter_version(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(capsys, tmp_path, "block", VIEWER, TARGET)[0] == 0
    with sqlite3.connect(str(tmp_path / "ledger.db")) as conn:
        conn.execute("UPDATE block_filters SET version = 2 WHERE owner_id = ?", (VIEWER,))
    conn.close()

    code, payload = _run(capsys, tmp_path, "stats", VIEWER)
    assert code == 1
    assert payload["filter"] is None
    assert "unsupported filter version 2" in payload["error"]  # type: ignore[operator]
