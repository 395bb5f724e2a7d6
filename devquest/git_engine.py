"""Simulated version-control engine.

Every public operation takes the current :class:`SessionState` and returns a
:class:`Transition` holding the next snapshot and the command output.
State-changing operations work on a clone, so the snapshot passed in is never
mutated; when an operation fails the transition carries the original
snapshot back unchanged.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .filesystem import (
    NoSuchFileError,
    deserialize_tree,
    iter_files,
    make_directory,
    normalize_path,
    relative_to,
    remove,
    resolve_path,
    serialize_tree,
    snapshot_files,
    write_file,
)
from .renderer import render_branches, render_log, render_status, tracking_ref, working_tree_files
from .results import OutputKind, OutputLine
from .state import (
    BranchHead,
    Commit,
    DetachedHead,
    RemoteRepo,
    SessionState,
    StashEntry,
    WorkingChanges,
    collect_ancestors,
)

DEFAULT_REMOTE = "origin"
DEFAULT_REMOTE_URL = "https://github.com/user/repo.git"
NOT_A_REPOSITORY = "fatal: not a git repository (or any of the parent directories): .git"

_REVISION_RE = re.compile(r"^(?P<base>.+?)(?P<suffix>(?:[~^]\d*)*)$")
_BRANCH_NAME_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


class GitError(RuntimeError):
    """Raised inside an operation; converted into a failed transition."""

    def __init__(self, message: str, kind: OutputKind = OutputKind.ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind


@dataclass
class Transition:
    state: SessionState
    text: str = ""
    kind: OutputKind = OutputKind.SUCCESS
    lines: List[OutputLine] = field(default_factory=list)


Outcome = Tuple[str, OutputKind]


def operation(requires_repo: bool = True) -> Callable[[Callable[..., object]], Callable[..., Transition]]:
    """Run an engine method copy-on-transition and trap :class:`GitError`."""

    def decorator(func: Callable[..., object]) -> Callable[..., Transition]:
        @functools.wraps(func)
        def wrapper(self: "GitEngine", state: SessionState, *args: object, **kwargs: object) -> Transition:
            if requires_repo and not state.git.initialized:
                return Transition(state=state, text=NOT_A_REPOSITORY, kind=OutputKind.ERROR)
            working = state.clone()
            try:
                outcome = func(self, working, *args, **kwargs)
            except GitError as exc:
                self.logger.debug("git %s rejected: %s", func.__name__, exc.message)
                return Transition(state=state, text=exc.message, kind=exc.kind)
            if isinstance(outcome, tuple):
                text, kind = outcome
            else:
                text, kind = str(outcome or ""), OutputKind.SUCCESS
            return Transition(state=working, text=text, kind=kind)

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Working-tree change tracking
# ---------------------------------------------------------------------------


def repo_path(state: SessionState, path: str) -> Optional[str]:
    """Translate a shell path into a work-tree-relative path."""

    return relative_to(normalize_path(path, state.cwd), state.git.work_tree)


def record_write(state: SessionState, path: str) -> None:
    """Note that the file at *path* was written in the working tree."""

    git = state.git
    if not git.initialized:
        return
    rel = repo_path(state, path)
    if rel is None or rel not in git.tracked:
        return
    if rel in git.working.deleted:
        git.working.deleted.remove(rel)
    if rel not in git.staging and rel not in git.working.modified:
        git.working.modified.append(rel)


def record_removal(state: SessionState, paths: Iterable[str]) -> None:
    """Note that the files at *paths* (absolute) were removed."""

    git = state.git
    if not git.initialized:
        return
    for path in paths:
        rel = relative_to(path, git.work_tree)
        if rel is None:
            continue
        if rel in git.tracked:
            if rel in git.working.modified:
                git.working.modified.remove(rel)
            if rel not in git.working.deleted:
                git.working.deleted.append(rel)
        else:
            git.unstage(rel)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class GitEngine:
    """Commit graph, branches, HEAD, index, stash and remotes as transitions."""

    def __init__(self, *, clock: Callable[[], float] = time.time, author: str = "User") -> None:
        self._clock = clock
        self._author = author
        self.logger = logging.getLogger("devquest.engine")

    # -------------------- helpers -----------------------------
    def _now(self) -> float:
        return float(self._clock())

    def author_for(self, state: SessionState) -> str:
        name = state.git.config.get("user.name") or self._author
        email = state.git.config.get("user.email")
        return f"{name} <{email}>" if email else name

    def _new_id(self, state: SessionState, *parts: Optional[str]) -> str:
        git = state.git
        git.sequence += 1
        known = set(git.commits)
        for remote in git.remotes.values():
            known.update(remote.commits)
        salt = 0
        while True:
            material = "\0".join([str(git.sequence), str(salt), *(part or "" for part in parts)])
            candidate = hashlib.sha1(material.encode("utf-8")).hexdigest()[:7]
            if candidate not in known:
                return candidate
            salt += 1

    def _work_tree_paths(self, state: SessionState) -> List[str]:
        return working_tree_files(state)

    def _commit_files(self, state: SessionState, commit: Optional[Commit]) -> Dict[str, str]:
        if commit is None:
            return {}
        return snapshot_files(commit.tree_snapshot, state.git.work_tree)

    def _tracked_for(self, state: SessionState, commit: Commit) -> List[str]:
        if commit.tracked_paths:
            return list(commit.tracked_paths)
        return sorted(self._commit_files(state, commit))

    def _restore_commit(self, state: SessionState, commit: Commit) -> None:
        """Replace the working tree wholesale with *commit*'s snapshot."""

        git = state.git
        state.file_system = deserialize_tree(commit.tree_snapshot)
        git.tracked = set(self._tracked_for(state, commit))
        git.staging = []
        git.working.clear()
        if resolve_path(state.file_system, state.cwd).node is None:
            state.cwd = git.work_tree if resolve_path(state.file_system, git.work_tree).node else "/"

    def _record_commit(
        self,
        state: SessionState,
        message: str,
        *,
        parent_id: Optional[str],
        merge_parent_id: Optional[str] = None,
    ) -> Commit:
        git = state.git
        existing = set(self._work_tree_paths(state))
        author = self.author_for(state)
        commit = Commit(
            id=self._new_id(state, parent_id, merge_parent_id, message, author),
            message=message,
            parent_id=parent_id,
            merge_parent_id=merge_parent_id,
            timestamp=self._now(),
            author=author,
            tree_snapshot=serialize_tree(state.file_system),
            tracked_paths=tuple(sorted(git.tracked & existing)),
        )
        git.commits[commit.id] = commit
        if isinstance(git.head, BranchHead):
            git.branches[git.head.name] = commit.id
        else:
            git.head = DetachedHead(commit.id)
        return commit

    def _head_label(self, state: SessionState) -> str:
        return state.git.current_branch or "detached HEAD"

    def resolve_revision(self, state: SessionState, ref: str) -> Optional[str]:
        """Resolve ``HEAD``, branches, remote branches or id prefixes with ``~N``/``^N``."""

        git = state.git
        match = _REVISION_RE.match(ref.strip())
        if not match:
            return None
        base, suffix = match.group("base"), match.group("suffix")
        commit_id: Optional[str]
        if base in ("HEAD", "@"):
            commit_id = git.head_commit_id()
        elif base in git.branches:
            commit_id = git.branches[base] or None
        elif "/" in base and base.split("/", 1)[0] in git.remotes:
            remote_name, remote_branch = base.split("/", 1)
            commit_id = git.remotes[remote_name].branches.get(remote_branch) or None
        else:
            matches = [cid for cid in git.commits if len(base) >= 4 and cid.startswith(base)]
            commit_id = matches[0] if len(matches) == 1 else None
        if commit_id is None or commit_id not in git.commits:
            return None
        for operator, count in re.findall(r"([~^])(\d*)", suffix):
            if operator == "~":
                steps = int(count) if count else 1
                for _ in range(steps):
                    parent = git.commits[commit_id].parent_id
                    if not parent or parent not in git.commits:
                        return None
                    commit_id = parent
            else:
                which = int(count) if count else 1
                if which == 0:
                    continue
                commit = git.commits[commit_id]
                parent = commit.parent_id if which == 1 else commit.merge_parent_id if which == 2 else None
                if not parent or parent not in git.commits:
                    return None
                commit_id = parent
        return commit_id

    def merge_base(self, state: SessionState, left: str, right: str) -> Optional[Commit]:
        commits = state.git.commits
        common = collect_ancestors(left, commits) & collect_ancestors(right, commits)
        order = {cid: index for index, cid in enumerate(commits)}
        candidates = [cid for cid in common if cid in commits]
        if not candidates:
            return None
        best = max(candidates, key=lambda cid: (commits[cid].timestamp, order[cid]))
        return commits[best]

    # -------------------- repository setup --------------------
    @operation(requires_repo=False)
    def init(self, state: SessionState) -> Outcome:
        git = state.git
        if git.initialized:
            return f"Reinitialized existing Git repository in {git.work_tree.rstrip('/')}/.git/", OutputKind.SUCCESS
        git.initialized = True
        git.work_tree = state.cwd
        self.logger.info("Initialized repository at %s", state.cwd)
        return f"Initialized empty Git repository in {state.cwd.rstrip('/')}/.git/", OutputKind.SUCCESS

    @operation()
    def config(self, state: SessionState, key: str, value: Optional[str] = None) -> Outcome:
        if "." not in key:
            raise GitError(f"error: key does not contain a section: {key}")
        if value is None:
            return state.git.config.get(key, ""), OutputKind.INFO
        state.git.config[key] = value
        return "", OutputKind.SUCCESS

    # -------------------- index -------------------------------
    @operation()
    def add(self, state: SessionState, paths: Sequence[str]) -> Outcome:
        git = state.git
        if not paths:
            raise GitError(
                "Nothing specified, nothing added.\nhint: Maybe you wanted to say 'git add .'?",
                OutputKind.INFO,
            )
        to_stage: List[str] = []
        for raw in paths:
            if raw in ("-A", "--all"):
                target = git.work_tree
            else:
                target = normalize_path(raw, state.cwd)
            node = resolve_path(state.file_system, target).node
            if node is not None and node.is_directory:
                whole_tree = target == git.work_tree
                prefix = relative_to(target, git.work_tree)
                if not whole_tree and prefix is None:
                    continue
                to_stage.extend(rel for rel, _ in iter_files(node, prefix or ""))
                for rel in list(git.working.deleted):
                    if whole_tree or rel.startswith(f"{prefix}/"):
                        to_stage.append(rel)
                continue
            rel = relative_to(target, git.work_tree)
            if rel is None:
                continue
            if node is not None:
                to_stage.append(rel)
            elif rel in git.tracked or rel in git.working.deleted:
                # Staging a tracked path that is gone records its deletion.
                to_stage.append(rel)
        for rel in to_stage:
            git.stage([rel])
            git.working.discard(rel)
        return "", OutputKind.SUCCESS

    @operation()
    def unstage(self, state: SessionState, paths: Sequence[str]) -> Outcome:
        git = state.git
        existing = set(self._work_tree_paths(state))
        lines: List[str] = []
        for raw in paths:
            rel = repo_path(state, raw)
            if rel is None or rel not in git.staging:
                continue
            git.unstage(rel)
            if rel in git.tracked:
                if rel in existing:
                    if rel not in git.working.modified:
                        git.working.modified.append(rel)
                    lines.append(f"M\t{rel}")
                elif rel not in git.working.deleted:
                    git.working.deleted.append(rel)
                    lines.append(f"D\t{rel}")
        if not lines:
            return "", OutputKind.SUCCESS
        return "Unstaged changes after reset:\n" + "\n".join(lines), OutputKind.SUCCESS

    @operation()
    def restore(self, state: SessionState, paths: Sequence[str], *, staged: bool = False) -> Outcome:
        git = state.git
        if not paths:
            raise GitError("fatal: you must specify path(s) to restore")
        head_files = self._commit_files(state, git.head_commit())
        for raw in paths:
            rel = repo_path(state, raw)
            if rel is None:
                raise GitError(f"error: pathspec '{raw}' did not match any file(s) known to git")
            if staged:
                if rel in git.staging:
                    git.unstage(rel)
                    if rel in git.tracked and rel in head_files:
                        exists = rel in set(self._work_tree_paths(state))
                        target = git.working.modified if exists else git.working.deleted
                        if rel not in target:
                            target.append(rel)
                continue
            if rel not in head_files:
                raise GitError(f"error: pathspec '{raw}' did not match any file(s) known to git")
            absolute = normalize_path(rel, git.work_tree)
            parent = absolute.rsplit("/", 1)[0] or "/"
            make_directory(state.file_system, parent, parents=True, now=self._now())
            write_file(state.file_system, absolute, head_files[rel], now=self._now())
            git.working.discard(rel)
        return "", OutputKind.SUCCESS

    # -------------------- commits -----------------------------
    @operation()
    def commit(self, state: SessionState, message: Optional[str], *, stage_all: bool = False) -> Outcome:
        git = state.git
        if not message:
            raise GitError("error: switch `m' requires a value")
        if stage_all:
            git.stage(list(git.working.modified) + list(git.working.deleted))
        if not git.staging:
            raise GitError("nothing to commit, working tree clean", OutputKind.INFO)
        existing = set(self._work_tree_paths(state))
        for path in git.staging:
            if path in existing:
                git.tracked.add(path)
            else:
                git.tracked.discard(path)
            git.working.discard(path)
        parent_id = git.head_commit_id()
        label = self._head_label(state)
        count = len(git.staging)
        commit = self._record_commit(state, message, parent_id=parent_id)
        git.staging = []
        root_marker = " (root-commit)" if parent_id is None else ""
        summary = f"[{label}{root_marker} {commit.id}] {message}"
        return f"{summary}\n {count} file{'s' if count != 1 else ''} changed", OutputKind.SUCCESS

    # -------------------- branches ----------------------------
    def branches(self, state: SessionState) -> Transition:
        if not state.git.initialized:
            return Transition(state=state, text=NOT_A_REPOSITORY, kind=OutputKind.ERROR)
        rendered = render_branches(state.git)
        return Transition(
            state=state,
            text=rendered.raw,
            kind=OutputKind.BRANCH_LIST,
            lines=list(rendered.lines),
        )

    @operation()
    def create_branch(self, state: SessionState, name: str, start: Optional[str] = None) -> Outcome:
        git = state.git
        if not _BRANCH_NAME_RE.match(name) or name.startswith("-") or name == "HEAD":
            raise GitError(f"fatal: '{name}' is not a valid branch name.")
        if name in git.branches:
            raise GitError(f"fatal: A branch named '{name}' already exists.")
        if start is not None:
            target = self.resolve_revision(state, start)
            if target is None:
                raise GitError(f"fatal: not a valid object name: '{start}'")
        else:
            target = git.head_commit_id() or ""
        git.branches[name] = target
        return "", OutputKind.SUCCESS

    @operation()
    def delete_branch(self, state: SessionState, name: str) -> Outcome:
        git = state.git
        if name not in git.branches:
            raise GitError(f"error: branch '{name}' not found.")
        if git.current_branch == name:
            raise GitError(f"error: Cannot delete branch '{name}' checked out at '{git.work_tree}'")
        commit_id = git.branches.pop(name)
        git.upstreams.pop(name, None)
        if commit_id:
            return f"Deleted branch {name} (was {commit_id}).", OutputKind.SUCCESS
        return f"Deleted branch {name}.", OutputKind.SUCCESS

    @operation()
    def rename_branch(
        self,
        state: SessionState,
        new_name: str,
        old_name: Optional[str] = None,
        *,
        force: bool = False,
    ) -> Outcome:
        git = state.git
        source = old_name or git.current_branch
        if source is None:
            raise GitError("fatal: cannot rename the current branch while not on any.")
        if source not in git.branches:
            raise GitError(f"error: refname refs/heads/{source} not found")
        if not _BRANCH_NAME_RE.match(new_name) or new_name.startswith("-"):
            raise GitError(f"fatal: '{new_name}' is not a valid branch name.")
        if new_name == source:
            return "", OutputKind.SUCCESS
        if new_name in git.branches and not force:
            raise GitError(f"fatal: A branch named '{new_name}' already exists.")
        branches = {}
        for name, commit_id in git.branches.items():
            if name == new_name:
                continue
            branches[new_name if name == source else name] = commit_id
        git.branches = branches
        git.upstreams.pop(new_name, None)
        if source in git.upstreams:
            git.upstreams[new_name] = git.upstreams.pop(source)
        if git.current_branch == source:
            git.head = BranchHead(new_name)
        return "", OutputKind.SUCCESS

    @operation()
    def checkout(self, state: SessionState, target: Optional[str], *, create: bool = False, switch: bool = False) -> Outcome:
        git = state.git
        if not target:
            raise GitError("fatal: missing branch or commit argument" if switch else "error: you must specify a branch to checkout")
        if create:
            if target in git.branches:
                raise GitError(f"fatal: A branch named '{target}' already exists.")
            if not _BRANCH_NAME_RE.match(target) or target.startswith("-"):
                raise GitError(f"fatal: '{target}' is not a valid branch name.")
            git.branches[target] = git.head_commit_id() or ""
            git.head = BranchHead(target)
            return f"Switched to a new branch '{target}'", OutputKind.SUCCESS
        if target in git.branches:
            if git.current_branch == target:
                return f"Already on '{target}'", OutputKind.SUCCESS
            git.head = BranchHead(target)
            commit_id = git.branches[target]
            if commit_id and commit_id in git.commits:
                self._restore_commit(state, git.commits[commit_id])
            return f"Switched to branch '{target}'", OutputKind.SUCCESS
        commit_id = None if switch else self.resolve_revision(state, target)
        if commit_id is None:
            raise GitError(f"error: pathspec '{target}' did not match any file(s) known to git")
        commit = git.commits[commit_id]
        git.head = DetachedHead(commit_id)
        self._restore_commit(state, commit)
        return (
            f"Note: switching to '{target}'.\n\n"
            "You are in 'detached HEAD' state. You can look around, make experimental\n"
            "changes and commit them, and you can discard any commits you make in this\n"
            "state without impacting any branches by switching back to a branch.\n\n"
            f"HEAD is now at {commit.id} {commit.message}"
        ), OutputKind.SUCCESS

    # -------------------- merge -------------------------------
    def _merge_into_head(self, state: SessionState, their_id: str, message: str) -> Commit:
        git = state.git
        dirty = sorted(set(git.staging) | set(git.working.modified) | set(git.working.deleted))
        if dirty:
            listing = "\n".join(f"\t{path}" for path in dirty)
            raise GitError(
                "error: Your local changes to the following files would be overwritten by merge:\n"
                f"{listing}\n"
                "Please commit your changes or stash them before you merge.\n"
                "Aborting"
            )
        our_id = git.head_commit_id()
        assert our_id is not None
        base = self.merge_base(state, our_id, their_id)
        theirs = git.commits[their_id]
        base_files = self._commit_files(state, base)
        their_files = self._commit_files(state, theirs)
        now = self._now()
        for rel, content in sorted(their_files.items()):
            if base_files.get(rel) == content:
                continue
            absolute = normalize_path(rel, git.work_tree)
            parent = absolute.rsplit("/", 1)[0] or "/"
            make_directory(state.file_system, parent, parents=True, now=now)
            write_file(state.file_system, absolute, content, now=now)
            git.tracked.add(rel)
            git.working.discard(rel)
        for rel in sorted(set(base_files) - set(their_files)):
            try:
                remove(state.file_system, normalize_path(rel, git.work_tree))
            except NoSuchFileError:
                pass
            git.tracked.discard(rel)
            git.working.discard(rel)
        git.tracked.update(self._tracked_for(state, theirs))
        git.tracked &= set(self._work_tree_paths(state))
        return self._record_commit(state, message, parent_id=our_id, merge_parent_id=their_id)

    @operation()
    def merge(self, state: SessionState, target: Optional[str]) -> Outcome:
        git = state.git
        if not target:
            raise GitError("fatal: No remote for the current branch.")
        their_id = git.branches.get(target) if target in git.branches else self.resolve_revision(state, target)
        if target not in git.branches and their_id is None:
            raise GitError(f"merge: {target} - not something we can merge")
        our_id = git.head_commit_id()
        if not our_id or not their_id:
            raise GitError("fatal: Nothing to merge: one side of the merge has no commits yet.")
        if their_id == our_id or their_id in collect_ancestors(our_id, git.commits):
            raise GitError("Already up to date.", OutputKind.INFO)
        current = git.current_branch
        message = f"Merge branch '{target}' into {current}" if current else f"Merge branch '{target}'"
        self._merge_into_head(state, their_id, message)
        return "Merge made by the 'ort' strategy.", OutputKind.SUCCESS

    # -------------------- stash -------------------------------
    @operation()
    def stash_push(self, state: SessionState, message: Optional[str] = None) -> Outcome:
        git = state.git
        if not git.staging:
            raise GitError("No local changes to save", OutputKind.INFO)
        head = git.head_commit()
        label = git.current_branch or "(no branch)"
        if not message:
            message = f"WIP on {label}: {head.id} {head.message}" if head else f"WIP on {label}"
        else:
            message = f"On {label}: {message}"
        entry = StashEntry(
            id=self._new_id(state, "stash", message),
            staging=list(git.staging),
            tree_snapshot=serialize_tree(state.file_system),
            message=message,
            timestamp=self._now(),
            working=WorkingChanges(list(git.working.modified), list(git.working.deleted)),
            tracked=sorted(git.tracked),
        )
        git.stash.append(entry)
        if head is not None:
            self._restore_commit(state, head)
        else:
            git.staging = []
            git.working.clear()
        return f"Saved working directory and index state {message}", OutputKind.SUCCESS

    @operation()
    def stash_apply(self, state: SessionState, *, drop: bool = False) -> Outcome:
        git = state.git
        if not git.stash:
            raise GitError("No stash entries found.")
        entry = git.stash.pop() if drop else git.stash[-1]
        state.file_system = deserialize_tree(entry.tree_snapshot)
        git.staging = list(entry.staging)
        git.working = WorkingChanges(list(entry.working.modified), list(entry.working.deleted))
        git.tracked = set(entry.tracked)
        text = f"Applied stash: {entry.message}"
        if drop:
            text += f"\nDropped refs/stash@{{0}} ({entry.id})"
        return text, OutputKind.SUCCESS

    @operation()
    def stash_drop(self, state: SessionState) -> Outcome:
        if not state.git.stash:
            raise GitError("No stash entries found.")
        entry = state.git.stash.pop()
        return f"Dropped refs/stash@{{0}} ({entry.id})", OutputKind.SUCCESS

    @operation()
    def stash_clear(self, state: SessionState) -> Outcome:
        state.git.stash = []
        return "", OutputKind.SUCCESS

    def stash_list(self, state: SessionState) -> Transition:
        if not state.git.initialized:
            return Transition(state=state, text=NOT_A_REPOSITORY, kind=OutputKind.ERROR)
        entries = list(reversed(state.git.stash))
        text = "\n".join(f"stash@{{{index}}}: {entry.message}" for index, entry in enumerate(entries))
        return Transition(state=state, text=text, kind=OutputKind.INFO)

    # -------------------- history rewriting -------------------
    @operation()
    def reset(self, state: SessionState, ref: str = "HEAD", *, mode: str = "mixed") -> Outcome:
        git = state.git
        if mode not in ("soft", "mixed", "hard"):
            raise GitError(f"error: unknown reset mode '{mode}'")
        target_id = self.resolve_revision(state, ref)
        if target_id is None:
            raise GitError(f"fatal: Failed to resolve '{ref}' as a valid ref.")
        target = git.commits[target_id]
        previous = git.head_commit()
        if isinstance(git.head, BranchHead):
            git.branches[git.head.name] = target_id
        else:
            git.head = DetachedHead(target_id)

        if mode == "hard":
            self._restore_commit(state, target)
            return f"HEAD is now at {target.id} {target.message}", OutputKind.SUCCESS

        previous_files = self._commit_files(state, previous)
        target_files = self._commit_files(state, target)
        changed = sorted(
            path
            for path in set(previous_files) | set(target_files)
            if previous_files.get(path) != target_files.get(path)
        )
        if mode == "soft":
            git.stage(changed)
            git.tracked -= {path for path in changed if path not in target_files}
            return "", OutputKind.SUCCESS

        existing = set(self._work_tree_paths(state))
        lines: List[str] = []
        for path in list(git.staging) + [p for p in changed if p not in git.staging]:
            if path not in target_files:
                git.tracked.discard(path)
                git.working.discard(path)
                continue
            if path in existing:
                if path not in git.working.modified:
                    git.working.modified.append(path)
                lines.append(f"M\t{path}")
            elif path not in git.working.deleted:
                git.working.deleted.append(path)
                lines.append(f"D\t{path}")
        git.staging = []
        if not lines:
            return "", OutputKind.SUCCESS
        return "Unstaged changes after reset:\n" + "\n".join(lines), OutputKind.SUCCESS

    @operation()
    def revert(self, state: SessionState, ref: Optional[str]) -> Outcome:
        git = state.git
        if not ref:
            raise GitError("fatal: empty commit set passed")
        target_id = self.resolve_revision(state, ref)
        if target_id is None:
            raise GitError(f"fatal: bad revision '{ref}'")
        head_id = git.head_commit_id()
        if head_id is None:
            raise GitError("fatal: bad revision 'HEAD'")
        target = git.commits[target_id]
        parent = git.commits.get(target.parent_id) if target.parent_id else None
        if parent is not None:
            state.file_system = deserialize_tree(parent.tree_snapshot)
            git.tracked = set(self._tracked_for(state, parent))
        else:
            for rel in self._tracked_for(state, target):
                try:
                    remove(state.file_system, normalize_path(rel, git.work_tree))
                except NoSuchFileError:
                    pass
                git.tracked.discard(rel)
        git.staging = []
        git.working.clear()
        if resolve_path(state.file_system, state.cwd).node is None:
            state.cwd = "/"
        message = f'Revert "{target.message}"'
        commit = self._record_commit(state, message, parent_id=head_id)
        return f"[{self._head_label(state)} {commit.id}] {message}", OutputKind.SUCCESS

    # -------------------- remotes -----------------------------
    @operation()
    def remote_add(self, state: SessionState, name: str, url: Optional[str] = None) -> Outcome:
        if name in state.git.remotes:
            raise GitError(f"error: remote {name} already exists.")
        state.git.remotes[name] = RemoteRepo(url=url or DEFAULT_REMOTE_URL)
        return "", OutputKind.SUCCESS

    @operation()
    def remote_remove(self, state: SessionState, name: str) -> Outcome:
        git = state.git
        if name not in git.remotes:
            raise GitError(f"error: No such remote: '{name}'")
        del git.remotes[name]
        git.upstreams = {
            branch: upstream for branch, upstream in git.upstreams.items() if not upstream.startswith(name + "/")
        }
        return "", OutputKind.SUCCESS

    def remotes(self, state: SessionState, *, verbose: bool = False) -> Transition:
        if not state.git.initialized:
            return Transition(state=state, text=NOT_A_REPOSITORY, kind=OutputKind.ERROR)
        lines: List[str] = []
        for name, remote in state.git.remotes.items():
            if verbose:
                lines.append(f"{name}\t{remote.url} (fetch)")
                lines.append(f"{name}\t{remote.url} (push)")
            else:
                lines.append(name)
        return Transition(state=state, text="\n".join(lines), kind=OutputKind.SUCCESS)

    def _remote_name(self, state: SessionState, remote: Optional[str]) -> str:
        if remote:
            return remote
        tracked = tracking_ref(state.git)
        return tracked[0] if tracked else DEFAULT_REMOTE

    def _require_remote(self, state: SessionState, name: str) -> RemoteRepo:
        remote = state.git.remotes.get(name)
        if remote is None:
            raise GitError(
                f"fatal: '{name}' does not appear to be a git repository\n"
                "fatal: Could not read from remote repository."
            )
        return remote

    @operation()
    def push(
        self,
        state: SessionState,
        remote: Optional[str] = None,
        branch: Optional[str] = None,
        *,
        set_upstream: bool = False,
    ) -> Outcome:
        git = state.git
        remote_name = self._remote_name(state, remote)
        target = self._require_remote(state, remote_name)
        branch = branch or git.current_branch
        if branch is None:
            raise GitError("fatal: You are not currently on a branch.")
        local_id = git.branches.get(branch)
        if not local_id:
            raise GitError(f"error: src refspec {branch} does not match any")
        ancestors = collect_ancestors(local_id, git.commits)
        copied = 0
        for commit_id, commit in git.commits.items():
            if commit_id in ancestors and commit_id not in target.commits:
                target.commits[commit_id] = commit
                copied += 1
        previous = target.branches.get(branch)
        target.branches[branch] = local_id
        lines = []
        if previous == local_id:
            lines.append("Everything up-to-date")
        else:
            lines.append(f"To {target.url}")
            if previous is None:
                lines.append(f" * [new branch]      {branch} -> {branch}")
            else:
                lines.append(f"   {previous}..{local_id}  {branch} -> {branch}")
        if set_upstream:
            git.upstreams[branch] = f"{remote_name}/{branch}"
            lines.append(f"branch '{branch}' set up to track '{remote_name}/{branch}'.")
        self.logger.info("Pushed %s to %s (%d new commits)", branch, remote_name, copied)
        return "\n".join(lines), OutputKind.SUCCESS

    def _fetch_into(self, state: SessionState, remote: RemoteRepo) -> int:
        fetched = 0
        for commit_id, commit in remote.commits.items():
            if commit_id not in state.git.commits:
                state.git.commits[commit_id] = commit
                fetched += 1
        return fetched

    @operation()
    def fetch(self, state: SessionState, remote: Optional[str] = None) -> Outcome:
        remote_name = self._remote_name(state, remote)
        target = self._require_remote(state, remote_name)
        fetched = self._fetch_into(state, target)
        if fetched == 0:
            return f"From {target.url}\n * [up to date]", OutputKind.SUCCESS
        return f"From {target.url}\n * [new commits]    {fetched} objects", OutputKind.SUCCESS

    @operation()
    def pull(self, state: SessionState, remote: Optional[str] = None, branch: Optional[str] = None) -> Outcome:
        git = state.git
        remote_name = self._remote_name(state, remote)
        target = self._require_remote(state, remote_name)
        if branch is None:
            tracked = tracking_ref(git)
            branch = tracked[1] if tracked and tracked[0] == remote_name else git.current_branch
        if branch is None:
            raise GitError("fatal: You are not currently on a branch.")
        self._fetch_into(state, target)
        remote_id = target.branches.get(branch)
        if not remote_id:
            raise GitError(f"fatal: couldn't find remote ref {branch}")
        local_id = git.head_commit_id()
        if local_id == remote_id or (local_id and remote_id in collect_ancestors(local_id, git.commits)):
            return "Already up to date.", OutputKind.INFO
        if local_id and local_id not in collect_ancestors(remote_id, git.commits):
            self._merge_into_head(state, remote_id, f"Merge branch '{branch}' of {target.url}")
            return f"From {target.url}\nMerge made by the 'ort' strategy.", OutputKind.SUCCESS
        if isinstance(git.head, BranchHead):
            git.branches[git.head.name] = remote_id
        else:
            git.head = DetachedHead(remote_id)
        self._restore_commit(state, git.commits[remote_id])
        start = local_id[:7] if local_id else "0000000"
        return f"From {target.url}\nUpdating {start}..{remote_id[:7]}\nFast-forward", OutputKind.SUCCESS

    # -------------------- read-only reports -------------------
    def status(self, state: SessionState) -> Transition:
        if not state.git.initialized:
            return Transition(state=state, text=NOT_A_REPOSITORY, kind=OutputKind.ERROR)
        rendered = render_status(state)
        return Transition(
            state=state,
            text=rendered.raw,
            kind=OutputKind.STATUS,
            lines=list(rendered.lines),
        )

    def log(self, state: SessionState, *, oneline: bool = False, limit: Optional[int] = None) -> Transition:
        if not state.git.initialized:
            return Transition(state=state, text=NOT_A_REPOSITORY, kind=OutputKind.ERROR)
        rendered = render_log(state.git, oneline=oneline, limit=limit)
        return Transition(
            state=state,
            text=rendered.raw,
            kind=OutputKind.INFO,
            lines=list(rendered.lines),
        )


__all__ = [
    "DEFAULT_REMOTE",
    "DEFAULT_REMOTE_URL",
    "GitEngine",
    "GitError",
    "NOT_A_REPOSITORY",
    "Transition",
    "operation",
    "record_removal",
    "record_write",
    "repo_path",
]
