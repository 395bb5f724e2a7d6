"""Session snapshot: filesystem tree plus the version-control data model."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

from .filesystem import FileNode, make_directory, new_root, write_file

DEFAULT_BRANCH = "main"
DEFAULT_CWD = "/project"


@dataclass(frozen=True)
class Commit:
    """Immutable commit; ``tree_snapshot`` is a serialized copy of the tree."""

    id: str
    message: str
    parent_id: Optional[str]
    timestamp: float
    author: str
    tree_snapshot: str
    merge_parent_id: Optional[str] = None
    tracked_paths: tuple = ()

    @property
    def is_merge(self) -> bool:
        return self.merge_parent_id is not None

    @property
    def parents(self) -> List[str]:
        return [pid for pid in (self.parent_id, self.merge_parent_id) if pid]

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "message": self.message,
            "parent_id": self.parent_id,
            "merge_parent_id": self.merge_parent_id,
            "timestamp": self.timestamp,
            "author": self.author,
            "tree_snapshot": self.tree_snapshot,
            "tracked_paths": list(self.tracked_paths),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "Commit":
        return cls(
            id=str(payload["id"]),
            message=str(payload.get("message", "")),
            parent_id=payload.get("parent_id") or None,  # type: ignore[arg-type]
            merge_parent_id=payload.get("merge_parent_id") or None,  # type: ignore[arg-type]
            timestamp=float(payload.get("timestamp", 0.0)),
            author=str(payload.get("author", "")),
            tree_snapshot=str(payload.get("tree_snapshot", "")),
            tracked_paths=tuple(str(path) for path in payload.get("tracked_paths") or ()),
        )


@dataclass(frozen=True)
class BranchHead:
    name: str


@dataclass(frozen=True)
class DetachedHead:
    commit_id: str


Head = Union[BranchHead, DetachedHead]


def head_to_dict(head: Head) -> Dict[str, str]:
    if isinstance(head, BranchHead):
        return {"type": "branch", "ref": head.name}
    return {"type": "commit", "ref": head.commit_id}


def head_from_dict(payload: Dict[str, object]) -> Head:
    if payload.get("type") == "commit":
        return DetachedHead(str(payload.get("ref", "")))
    return BranchHead(str(payload.get("ref", DEFAULT_BRANCH)))


@dataclass
class WorkingChanges:
    """Divergence of tracked files from the last commit, outside the index."""

    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    def clear(self) -> None:
        self.modified.clear()
        self.deleted.clear()

    def discard(self, path: str) -> None:
        if path in self.modified:
            self.modified.remove(path)
        if path in self.deleted:
            self.deleted.remove(path)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"modified": list(self.modified), "deleted": list(self.deleted)}

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "WorkingChanges":
        return cls(
            modified=[str(p) for p in payload.get("modified") or []],
            deleted=[str(p) for p in payload.get("deleted") or []],
        )


@dataclass
class StashEntry:
    id: str
    staging: List[str]
    tree_snapshot: str
    message: str
    timestamp: float
    working: WorkingChanges = field(default_factory=WorkingChanges)
    tracked: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "staging": list(self.staging),
            "tree_snapshot": self.tree_snapshot,
            "message": self.message,
            "timestamp": self.timestamp,
            "working": self.working.to_dict(),
            "tracked": list(self.tracked),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "StashEntry":
        return cls(
            id=str(payload.get("id", "")),
            staging=[str(p) for p in payload.get("staging") or []],
            tree_snapshot=str(payload.get("tree_snapshot", "")),
            message=str(payload.get("message", "")),
            timestamp=float(payload.get("timestamp", 0.0)),
            working=WorkingChanges.from_dict(dict(payload.get("working") or {})),
            tracked=[str(p) for p in payload.get("tracked") or []],
        )


@dataclass
class RemoteRepo:
    """Independent commit/branch store reachable only through push and fetch."""

    url: str
    commits: Dict[str, Commit] = field(default_factory=dict)
    branches: Dict[str, str] = field(default_factory=dict)

    def clone(self) -> "RemoteRepo":
        return RemoteRepo(url=self.url, commits=dict(self.commits), branches=dict(self.branches))

    def to_dict(self) -> Dict[str, object]:
        return {
            "url": self.url,
            "commits": [commit.to_dict() for commit in self.commits.values()],
            "branches": dict(self.branches),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "RemoteRepo":
        commits = [Commit.from_dict(item) for item in payload.get("commits") or []]
        return cls(
            url=str(payload.get("url", "")),
            commits={commit.id: commit for commit in commits},
            branches={str(k): str(v) for k, v in dict(payload.get("branches") or {}).items()},
        )


@dataclass
class GitState:
    initialized: bool = False
    work_tree: str = DEFAULT_CWD
    commits: Dict[str, Commit] = field(default_factory=dict)
    branches: Dict[str, str] = field(default_factory=lambda: {DEFAULT_BRANCH: ""})
    head: Head = field(default_factory=lambda: BranchHead(DEFAULT_BRANCH))
    staging: List[str] = field(default_factory=list)
    working: WorkingChanges = field(default_factory=WorkingChanges)
    tracked: Set[str] = field(default_factory=set)
    stash: List[StashEntry] = field(default_factory=list)
    remotes: Dict[str, RemoteRepo] = field(default_factory=dict)
    upstreams: Dict[str, str] = field(default_factory=dict)
    config: Dict[str, str] = field(default_factory=dict)
    sequence: int = 0

    # -------------------- queries -----------------------------
    @property
    def current_branch(self) -> Optional[str]:
        return self.head.name if isinstance(self.head, BranchHead) else None

    @property
    def is_detached(self) -> bool:
        return isinstance(self.head, DetachedHead)

    def head_commit_id(self) -> Optional[str]:
        if isinstance(self.head, DetachedHead):
            return self.head.commit_id
        return self.branches.get(self.head.name) or None

    def head_commit(self) -> Optional[Commit]:
        commit_id = self.head_commit_id()
        return self.commits.get(commit_id) if commit_id else None

    def stage(self, paths: Iterable[str]) -> None:
        for path in paths:
            if path not in self.staging:
                self.staging.append(path)

    def unstage(self, path: str) -> None:
        if path in self.staging:
            self.staging.remove(path)

    # -------------------- copying -----------------------------
    def clone(self) -> "GitState":
        # Commits are frozen, so the id-indexed tables are copied shallowly.
        return GitState(
            initialized=self.initialized,
            work_tree=self.work_tree,
            commits=dict(self.commits),
            branches=dict(self.branches),
            head=self.head,
            staging=list(self.staging),
            working=WorkingChanges(list(self.working.modified), list(self.working.deleted)),
            tracked=set(self.tracked),
            stash=copy.deepcopy(self.stash),
            remotes={name: remote.clone() for name, remote in self.remotes.items()},
            upstreams=dict(self.upstreams),
            config=dict(self.config),
            sequence=self.sequence,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "repo_initialized": self.initialized,
            "work_tree": self.work_tree,
            "commits": [commit.to_dict() for commit in self.commits.values()],
            "branches": dict(self.branches),
            "HEAD": head_to_dict(self.head),
            "staging": list(self.staging),
            "working_directory": self.working.to_dict(),
            "tracked_files": sorted(self.tracked),
            "stash": [entry.to_dict() for entry in self.stash],
            "remotes": {name: remote.to_dict() for name, remote in self.remotes.items()},
            "upstreams": dict(self.upstreams),
            "config": dict(self.config),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "GitState":
        commits = [Commit.from_dict(item) for item in payload.get("commits") or []]
        return cls(
            initialized=bool(payload.get("repo_initialized", False)),
            work_tree=str(payload.get("work_tree", DEFAULT_CWD)),
            commits={commit.id: commit for commit in commits},
            branches={str(k): str(v) for k, v in dict(payload.get("branches") or {DEFAULT_BRANCH: ""}).items()},
            head=head_from_dict(dict(payload.get("HEAD") or {})),
            staging=[str(p) for p in payload.get("staging") or []],
            working=WorkingChanges.from_dict(dict(payload.get("working_directory") or {})),
            tracked={str(p) for p in payload.get("tracked_files") or []},
            stash=[StashEntry.from_dict(item) for item in payload.get("stash") or []],
            remotes={
                str(name): RemoteRepo.from_dict(remote)
                for name, remote in dict(payload.get("remotes") or {}).items()
            },
            upstreams={str(k): str(v) for k, v in dict(payload.get("upstreams") or {}).items()},
            config={str(k): str(v) for k, v in dict(payload.get("config") or {}).items()},
            sequence=int(payload.get("sequence", 0)),
        )


@dataclass
class SessionState:
    """One complete, replaceable snapshot of the simulated machine."""

    file_system: FileNode = field(default_factory=new_root)
    git: GitState = field(default_factory=GitState)
    cwd: str = DEFAULT_CWD
    env: Dict[str, str] = field(default_factory=dict)
    command_history: List[str] = field(default_factory=list)
    last_output: str = ""

    def clone(self) -> "SessionState":
        return SessionState(
            file_system=copy.deepcopy(self.file_system),
            git=self.git.clone(),
            cwd=self.cwd,
            env=dict(self.env),
            command_history=list(self.command_history),
            last_output=self.last_output,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "file_system": self.file_system.to_dict(),
            "git": self.git.to_dict(),
            "cwd": self.cwd,
            "env": dict(self.env),
            "command_history": list(self.command_history),
            "last_output": self.last_output,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "SessionState":
        raw_fs = payload.get("file_system")
        return cls(
            file_system=FileNode.from_dict(raw_fs) if raw_fs else new_root(),
            git=GitState.from_dict(dict(payload.get("git") or {})),
            cwd=str(payload.get("cwd", DEFAULT_CWD)),
            env={str(k): str(v) for k, v in dict(payload.get("env") or {}).items()},
            command_history=[str(line) for line in payload.get("command_history") or []],
            last_output=str(payload.get("last_output", "")),
        )


def collect_ancestors(start: Optional[str], commits: Mapping[str, Commit]) -> Set[str]:
    """Return *start* and every commit reachable through either parent edge.

    Ids are marked visited before they are expanded, so malformed graphs that
    contain cycles or dangling parents still terminate.
    """

    visited: Set[str] = set()
    stack = [start] if start else []
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        commit = commits.get(current)
        if commit is None:
            continue
        for parent in commit.parents:
            if parent not in visited:
                stack.append(parent)
    return visited


def initial_state(
    files: Optional[Dict[str, str]] = None,
    *,
    cwd: str = DEFAULT_CWD,
    now: float = 0.0,
) -> SessionState:
    """Fresh session with a project directory at *cwd*.

    *files* maps paths relative to the project directory to file contents;
    by default the project holds a single ``readme.md``.
    """

    root = new_root()
    make_directory(root, cwd, parents=True, now=now)
    contents = {"readme.md": "# My Project"} if files is None else files
    for path, content in contents.items():
        parent = path.rsplit("/", 1)[0] if "/" in path else ""
        if parent:
            make_directory(root, parent, cwd, parents=True, now=now)
        write_file(root, path, content, cwd, now=now)
    return SessionState(file_system=root, git=GitState(work_tree=cwd), cwd=cwd)


__all__ = [
    "BranchHead",
    "Commit",
    "DEFAULT_BRANCH",
    "DEFAULT_CWD",
    "DetachedHead",
    "GitState",
    "Head",
    "RemoteRepo",
    "SessionState",
    "StashEntry",
    "WorkingChanges",
    "collect_ancestors",
    "head_from_dict",
    "head_to_dict",
    "initial_state",
]
