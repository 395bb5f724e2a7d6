from __future__ import annotations

import json
from pathlib import Path

import pytest

from devquest.filesystem import serialize_tree, write_file
from devquest.git_engine import GitEngine
from devquest.session_store import (
    GENESIS_ID,
    SESSION_FORMAT_VERSION,
    CommandLedger,
    SessionStoreError,
    load_session,
    save_session,
)
from devquest.state import DetachedHead, initial_state


def test_session_round_trip(tmp_path: Path) -> None:
    engine = GitEngine(clock=lambda: 1_700_000_000.0)
    state = engine.init(initial_state()).state
    state = engine.add(state, ["readme.md"]).state
    state = engine.commit(state, "first").state
    state = engine.remote_add(state, "origin", "https://example.com/repo.git").state
    state = engine.push(state, "origin", "main", set_upstream=True).state
    state = engine.checkout(state, state.git.head_commit_id()).state
    write_file(state.file_system, "/project/notes.txt", "later")
    state.command_history = ["git init", "git add readme.md"]

    path = save_session(state, tmp_path / "nested" / "session.json")
    restored = load_session(path)

    assert json.loads(path.read_text(encoding="utf-8"))["format_version"] == SESSION_FORMAT_VERSION
    assert restored.to_dict() == state.to_dict()
    assert isinstance(restored.git.head, DetachedHead)
    assert serialize_tree(restored.file_system) == serialize_tree(state.file_system)
    assert restored.git.remotes["origin"].branches == {"main": state.git.branches["main"]}


def test_load_missing_session(tmp_path: Path) -> None:
    with pytest.raises(SessionStoreError, match="missing"):
        load_session(tmp_path / "absent.json")


def test_load_corrupt_session(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(SessionStoreError, match="corrupt"):
        load_session(path)


def test_load_rejects_unknown_version(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"format_version": 99, "session": {}}), encoding="utf-8")

    with pytest.raises(SessionStoreError, match="Unsupported session format version"):
        load_session(path)


def test_load_rejects_wrong_shape(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text(json.dumps(["not", "a", "session"]), encoding="utf-8")

    with pytest.raises(SessionStoreError, match="invalid format"):
        load_session(path)


def test_ledger_chains_entries(tmp_path: Path) -> None:
    ledger = CommandLedger(tmp_path / "ledger.jsonl")

    first = ledger.record("git init", "success", cwd="/project")
    second = ledger.record("git status", "status", cwd="/project")

    assert first["previous_id"] == GENESIS_ID
    assert second["previous_id"] == first["event_id"]
    assert [entry.sequence for entry in ledger.entries()] == [1, 2]
    assert ledger.commands() == ["git init", "git status"]
    assert ledger.verify()


def test_ledger_detects_tampering(tmp_path: Path) -> None:
    path = tmp_path / "ledger.jsonl"
    ledger = CommandLedger(path)
    ledger.record("git init", "success")
    ledger.record("git add .", "success")

    lines = path.read_text(encoding="utf-8").splitlines()
    event = json.loads(lines[0])
    event["command"] = "rm -r /"
    lines[0] = json.dumps(event)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert not ledger.verify()


def test_ledger_skips_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "ledger.jsonl"
    ledger = CommandLedger(path)
    ledger.record("pwd", "success")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n[1, 2]\n")

    assert ledger.commands() == ["pwd"]


def test_ledger_read_only_toggle(tmp_path: Path) -> None:
    ledger = CommandLedger(tmp_path / "ledger.jsonl")
    ledger.set_read_only(True)

    assert ledger.is_read_only()
    with pytest.raises(SessionStoreError, match="read-only"):
        ledger.record("pwd", "success")

    ledger.set_read_only(False)
    ledger.record("pwd", "success")
    assert ledger.commands() == ["pwd"]


def test_reopened_ledger_continues_chain(tmp_path: Path) -> None:
    path = tmp_path / "ledger.jsonl"
    CommandLedger(path).record("git init", "success")

    reopened = CommandLedger(path)
    event = reopened.record("git status", "status")

    assert event["sequence"] == 2
    assert reopened.verify()
