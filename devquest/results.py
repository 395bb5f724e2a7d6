"""Output classifications shared by the engine, renderer and dispatcher."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class OutputKind(str, enum.Enum):
    """Authoritative classification of a command result."""

    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    STATUS = "status"
    BRANCH_LIST = "branch-list"


class LineKind(str, enum.Enum):
    """Semantic kind of a rendered line, used purely for presentation."""

    HEADER = "header"
    HINT = "hint"
    STAGED = "staged"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNTRACKED = "untracked"
    BRANCH = "branch"
    BRANCH_CURRENT = "branch-current"
    NORMAL = "normal"


@dataclass(frozen=True)
class OutputLine:
    text: str
    kind: LineKind = LineKind.NORMAL
    tooltip: Optional[str] = None


@dataclass
class RenderedOutput:
    """Ordered, classified lines plus their plain-text rendering."""

    lines: List[OutputLine] = field(default_factory=list)

    def add(self, text: str, kind: LineKind = LineKind.NORMAL, tooltip: Optional[str] = None) -> None:
        self.lines.append(OutputLine(text=text, kind=kind, tooltip=tooltip))

    def blank(self) -> None:
        self.lines.append(OutputLine(text=""))

    @property
    def raw(self) -> str:
        return "\n".join(line.text for line in self.lines)


__all__ = ["LineKind", "OutputKind", "OutputLine", "RenderedOutput"]
