"""Deterministic replay of a recorded command history.

The controller is a small state machine advanced by :meth:`ReplayController.tick`:
each tick either types one more character of the current command or
executes it. Drivers ask :meth:`ReplayController.delay` how long to wait
before the next tick, which keeps pacing (speed, pause) out of the
execution path and makes the controller testable without sleeping.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from .state import SessionState

if TYPE_CHECKING:  # pragma: no cover
    from .command_shell import CommandResult

SPEEDS = (1, 2, 4)
BASE_DELAY = 1.0
PAUSE_POLL_INTERVAL = 0.1

Executor = Callable[[SessionState, str], "CommandResult"]


class ReplayError(RuntimeError):
    """Raised when the replay controller is driven incorrectly."""


class ReplayPhase(str, enum.Enum):
    IDLE = "idle"
    TYPING = "typing"
    EXECUTING = "executing"
    PAUSED = "paused"
    FINISHED = "finished"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReplayFrame:
    """What a single tick produced: a typing update or an executed command."""

    index: int
    command: str
    typed: str
    result: Optional["CommandResult"] = None

    @property
    def executed(self) -> bool:
        return self.result is not None


class ReplayController:
    def __init__(
        self,
        commands: Sequence[str],
        initial_state: SessionState,
        execute: Executor,
        *,
        speed: int = 1,
        on_finish: Optional[Callable[["ReplayController"], None]] = None,
    ) -> None:
        if speed not in SPEEDS:
            raise ReplayError(f"Unsupported replay speed: {speed}")
        self.commands: List[str] = list(commands)
        self.state = initial_state
        self.results: List["CommandResult"] = []
        self.speed = speed
        self.index = 0
        self._typed = 0
        self._execute = execute
        self._on_finish = on_finish
        self._phase = ReplayPhase.IDLE
        self._resume_phase = ReplayPhase.TYPING
        self._lock = threading.RLock()
        self.logger = logging.getLogger("devquest.replay")

    # -------------------- properties --------------------------
    @property
    def phase(self) -> ReplayPhase:
        return self._phase

    @property
    def active(self) -> bool:
        return self._phase in (ReplayPhase.TYPING, ReplayPhase.EXECUTING, ReplayPhase.PAUSED)

    @property
    def done(self) -> bool:
        return self._phase in (ReplayPhase.FINISHED, ReplayPhase.CANCELLED)

    @property
    def current_command(self) -> Optional[str]:
        if self.index < len(self.commands):
            return self.commands[self.index]
        return None

    @property
    def typed(self) -> str:
        command = self.current_command or ""
        return command[: self._typed]

    @property
    def progress(self) -> str:
        step = min(self.index + 1, len(self.commands))
        return f"{step}/{len(self.commands)}"

    # -------------------- controls ----------------------------
    def start(self) -> None:
        with self._lock:
            if self._phase is not ReplayPhase.IDLE:
                raise ReplayError(f"Replay already {self._phase.value}")
            self.logger.info("Replaying %d commands at %dx", len(self.commands), self.speed)
            self._begin_command()

    def pause(self) -> None:
        with self._lock:
            if self._phase in (ReplayPhase.TYPING, ReplayPhase.EXECUTING):
                self._resume_phase = self._phase
                self._phase = ReplayPhase.PAUSED

    def resume(self) -> None:
        with self._lock:
            if self._phase is ReplayPhase.PAUSED:
                self._phase = self._resume_phase

    def toggle_pause(self) -> None:
        with self._lock:
            if self._phase is ReplayPhase.PAUSED:
                self.resume()
            else:
                self.pause()

    def skip(self) -> None:
        """Jump past the typing animation of the current command."""

        with self._lock:
            command = self.current_command
            if command is None:
                return
            if self._phase is ReplayPhase.TYPING:
                self._typed = len(command)
                self._phase = ReplayPhase.EXECUTING
            elif self._phase is ReplayPhase.PAUSED and self._resume_phase is ReplayPhase.TYPING:
                self._typed = len(command)
                self._resume_phase = ReplayPhase.EXECUTING

    def cancel(self) -> None:
        with self._lock:
            if not self.done:
                self._phase = ReplayPhase.CANCELLED
                self.logger.info("Replay cancelled at step %s", self.progress)

    def cycle_speed(self) -> int:
        with self._lock:
            self.speed = SPEEDS[(SPEEDS.index(self.speed) + 1) % len(SPEEDS)]
            return self.speed

    # -------------------- stepping ----------------------------
    def _begin_command(self) -> None:
        self._typed = 0
        if self.index >= len(self.commands):
            self._phase = ReplayPhase.FINISHED
            self.logger.info("Replay finished after %d commands", len(self.results))
            if self._on_finish is not None:
                self._on_finish(self)
            return
        self._phase = ReplayPhase.TYPING if self.commands[self.index] else ReplayPhase.EXECUTING

    def tick(self) -> Optional[ReplayFrame]:
        """Advance one step; returns ``None`` when nothing can progress."""

        with self._lock:
            command = self.current_command
            if command is None or self._phase not in (ReplayPhase.TYPING, ReplayPhase.EXECUTING):
                return None
            if self._phase is ReplayPhase.TYPING:
                self._typed += 1
                if self._typed >= len(command):
                    self._phase = ReplayPhase.EXECUTING
                return ReplayFrame(index=self.index, command=command, typed=command[: self._typed])
            result = self._execute(self.state, command)
            self.state = result.state
            self.results.append(result)
            frame = ReplayFrame(index=self.index, command=command, typed=command, result=result)
            self.index += 1
            self._begin_command()
            return frame

    def delay(self) -> float:
        """Seconds a driver should wait before the next :meth:`tick`."""

        if self._phase is ReplayPhase.TYPING:
            return BASE_DELAY / self.speed / 10
        if self._phase is ReplayPhase.EXECUTING:
            return BASE_DELAY / self.speed / 2
        if self._phase is ReplayPhase.PAUSED:
            return PAUSE_POLL_INTERVAL
        return 0.0

    def run(
        self,
        sleep: Callable[[float], None] = time.sleep,
        on_frame: Optional[Callable[[ReplayFrame], None]] = None,
    ) -> SessionState:
        """Drive the replay to completion, honouring speed and pause."""

        if self._phase is ReplayPhase.IDLE:
            self.start()
        while not self.done:
            wait = self.delay()
            if wait:
                sleep(wait)
            frame = self.tick()
            if frame is not None and on_frame is not None:
                on_frame(frame)
        return self.state


__all__ = [
    "BASE_DELAY",
    "PAUSE_POLL_INTERVAL",
    "ReplayController",
    "ReplayError",
    "ReplayFrame",
    "ReplayPhase",
    "SPEEDS",
]
