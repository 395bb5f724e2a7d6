"""Persistence for session snapshots and the executed-command ledger."""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .state import SessionState

SESSION_FORMAT_VERSION = 1
GENESIS_ID = "0" * 64


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat_utc(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class SessionStoreError(RuntimeError):
    """Raised when a session file or the command ledger cannot be used."""


# ---------------------------------------------------------------------------
# Session snapshots
# ---------------------------------------------------------------------------


def save_session(state: SessionState, path: Path) -> Path:
    payload = {"format_version": SESSION_FORMAT_VERSION, "session": state.to_dict()}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        raise SessionStoreError(f"Cannot write session to {path}: {exc}") from exc
    return path


def load_session(path: Path) -> SessionState:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise SessionStoreError(f"Session file missing at {path}") from exc
    except json.JSONDecodeError as exc:
        raise SessionStoreError(f"Session file corrupt at {path}") from exc
    if not isinstance(raw, dict) or not isinstance(raw.get("session"), dict):
        raise SessionStoreError(f"Session file invalid format at {path}")
    version = raw.get("format_version")
    if version != SESSION_FORMAT_VERSION:
        raise SessionStoreError(f"Unsupported session format version: {version!r}")
    try:
        return SessionState.from_dict(raw["session"])
    except (KeyError, TypeError, ValueError) as exc:
        raise SessionStoreError(f"Session file invalid format at {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Command ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntry:
    sequence: int
    event_id: str
    previous_id: str
    command: str
    classification: str
    timestamp: Optional[str]
    payload: Dict[str, object]


def _event_id(previous_id: str, event: Dict[str, object]) -> str:
    body = json.dumps(event, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256((previous_id + body).encode("utf-8")).hexdigest()


class CommandLedger:
    """Append-only JSONL record of executed commands, chained by SHA-256."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._read_only = False
        entries = self.entries()
        self._sequence = entries[-1].sequence if entries else 0
        self._last_id = entries[-1].event_id if entries else GENESIS_ID

    @property
    def path(self) -> Path:
        return self._path

    def record(self, command: str, classification: str, *, cwd: str = "") -> Dict[str, object]:
        """Append one executed command and return the stored event."""

        with self._lock:
            if self._read_only:
                raise SessionStoreError("Command ledger is read-only")
            event: Dict[str, object] = {
                "sequence": self._sequence + 1,
                "previous_id": self._last_id,
                "command": command,
                "classification": classification,
                "cwd": cwd,
                "ts": _isoformat_utc(_now_utc()),
            }
            event_id = _event_id(self._last_id, event)
            event["event_id"] = event_id
            try:
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event, ensure_ascii=False) + "\n")
            except OSError as exc:  # pragma: no cover
                raise SessionStoreError(str(exc)) from exc
            self._sequence += 1
            self._last_id = event_id
            return event

    def entries(self) -> List[LedgerEntry]:
        if not self._path.exists():
            return []
        entries: List[LedgerEntry] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload, dict):
                continue
            timestamp = payload.get("ts")
            entries.append(
                LedgerEntry(
                    sequence=int(payload.get("sequence", 0)),
                    event_id=str(payload.get("event_id", "")),
                    previous_id=str(payload.get("previous_id", "")),
                    command=str(payload.get("command", "")),
                    classification=str(payload.get("classification", "")),
                    timestamp=str(timestamp) if timestamp is not None else None,
                    payload=payload,
                )
            )
        return entries

    def commands(self) -> List[str]:
        """Executed command lines in order, ready to feed a replay."""

        return [entry.command for entry in self.entries()]

    def verify(self) -> bool:
        """Return ``True`` when every entry links to its predecessor's hash."""

        previous = GENESIS_ID
        for entry in self.entries():
            event = {key: value for key, value in entry.payload.items() if key != "event_id"}
            if entry.previous_id != previous or _event_id(previous, event) != entry.event_id:
                return False
            previous = entry.event_id
        return True

    def set_read_only(self, value: bool) -> None:
        """Toggle the in-memory read-only guard for subsequent records."""

        with self._lock:
            self._read_only = bool(value)

    def is_read_only(self) -> bool:
        with self._lock:
            return self._read_only


__all__ = [
    "CommandLedger",
    "GENESIS_ID",
    "LedgerEntry",
    "SESSION_FORMAT_VERSION",
    "SessionStoreError",
    "load_session",
    "save_session",
]
