"""Realistic, annotated ``git status``/``git branch``/``git log`` output.

Every function here is a pure read over a session snapshot: it derives
classified lines for presentation and never mutates the state it is given.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .filesystem import iter_files, resolve_path
from .results import LineKind, RenderedOutput
from .state import BranchHead, Commit, GitState, SessionState, collect_ancestors

TOOLTIPS: Dict[str, str] = {
    "modified": (
        "This file exists in your last commit but has been changed in your working "
        "directory. Use 'git add' to stage these changes."
    ),
    "staged": "This file is in the staging area and will be included in your next commit.",
    "new_file": (
        "This is a new file that has been staged and will be added to the repository "
        "in your next commit."
    ),
    "untracked": "Git doesn't know about this file yet. Use 'git add' to start tracking it.",
    "deleted": (
        "This file has been deleted from your working directory but the deletion "
        "hasn't been staged yet."
    ),
    "staged_deleted": "This deletion is staged and will be recorded in your next commit.",
    "working_directory": "Your actual files on disk - the files you edit directly.",
    "staging_area": "A preparation area where you build up changes for your next commit.",
    "branch": (
        "A branch is an independent line of development. You can create branches to "
        "work on features without affecting the main codebase."
    ),
    "branch_current": "This is your currently active branch",
    "detached": "HEAD points at a commit directly instead of a branch.",
    "up_to_date": "Your local branch has the same commits as the remote branch - no push or pull needed.",
    "ahead": "Your local branch has commits that haven't been pushed to the remote yet.",
    "behind": "The remote branch has commits that you haven't pulled to your local branch yet.",
    "diverged": "Both your branch and the remote branch have commits the other lacks.",
    "no_commits": "The current branch has no commits yet; your first commit will create it.",
}

_FILE_INDENT = " " * 8


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def tracking_ref(git: GitState) -> Optional[Tuple[str, str]]:
    """Return ``(remote, branch)`` tracked by the current branch, if any."""

    branch = git.current_branch
    if branch is None:
        return None
    upstream = git.upstreams.get(branch)
    if upstream and "/" in upstream:
        remote_name, remote_branch = upstream.split("/", 1)
        if remote_name in git.remotes:
            return remote_name, remote_branch
    origin = git.remotes.get("origin")
    if origin is not None and branch in origin.branches:
        return "origin", branch
    return None


def ahead_behind(git: GitState, remote_name: str, remote_branch: str) -> Tuple[int, int]:
    remote = git.remotes[remote_name]
    lookup: Dict[str, Commit] = dict(remote.commits)
    lookup.update(git.commits)
    local = collect_ancestors(git.head_commit_id(), lookup)
    upstream = collect_ancestors(remote.branches.get(remote_branch) or None, lookup)
    return len(local - upstream), len(upstream - local)


def working_tree_files(state: SessionState) -> List[str]:
    """Files below the work tree, relative to it, sorted."""

    resolution = resolve_path(state.file_system, state.git.work_tree)
    if resolution.node is None or not resolution.node.is_directory:
        return []
    return [path for path, _ in iter_files(resolution.node)]


def untracked_files(state: SessionState) -> List[str]:
    git = state.git
    return [
        path
        for path in working_tree_files(state)
        if path not in git.staging and path not in git.tracked and path not in git.working.modified
    ]


def _render_header(git: GitState, output: RenderedOutput) -> None:
    if isinstance(git.head, BranchHead):
        output.add(f"On branch {git.head.name}", LineKind.HEADER, TOOLTIPS["branch"])
        tracked = tracking_ref(git)
        if tracked is not None and git.head_commit_id():
            remote_name, remote_branch = tracked
            label = f"{remote_name}/{remote_branch}"
            ahead, behind = ahead_behind(git, remote_name, remote_branch)
            if ahead and behind:
                output.add(f"Your branch and '{label}' have diverged,", tooltip=TOOLTIPS["diverged"])
                output.add(
                    f"and have {ahead} and {behind} different commits each, respectively.",
                    tooltip=TOOLTIPS["diverged"],
                )
            elif ahead:
                output.add(
                    f"Your branch is ahead of '{label}' by {_plural(ahead, 'commit')}.",
                    tooltip=TOOLTIPS["ahead"],
                )
                output.add('  (use "git push" to publish your local commits)', LineKind.HINT)
            elif behind:
                output.add(
                    f"Your branch is behind '{label}' by {_plural(behind, 'commit')}, "
                    "and can be fast-forwarded.",
                    tooltip=TOOLTIPS["behind"],
                )
                output.add('  (use "git pull" to update your local branch)', LineKind.HINT)
            else:
                output.add(f"Your branch is up to date with '{label}'.", tooltip=TOOLTIPS["up_to_date"])
    else:
        output.add(f"HEAD detached at {git.head.commit_id[:7]}", LineKind.HEADER, TOOLTIPS["detached"])
    if git.head_commit_id() is None:
        output.blank()
        output.add("No commits yet", LineKind.HEADER, TOOLTIPS["no_commits"])
    output.blank()


def render_status(state: SessionState) -> RenderedOutput:
    git = state.git
    output = RenderedOutput()
    _render_header(git, output)

    if git.staging:
        output.add("Changes to be committed:", LineKind.HEADER, TOOLTIPS["staging_area"])
        if git.head_commit_id() is None:
            output.add('  (use "git rm --cached <file>..." to unstage)', LineKind.HINT)
        else:
            output.add('  (use "git restore --staged <file>..." to unstage)', LineKind.HINT)
        output.blank()
        existing = set(working_tree_files(state))
        for path in git.staging:
            if path not in existing:
                prefix, tooltip = "deleted:", TOOLTIPS["staged_deleted"]
            elif path in git.tracked:
                prefix, tooltip = "modified:", TOOLTIPS["staged"]
            else:
                prefix, tooltip = "new file:", TOOLTIPS["new_file"]
            output.add(f"{_FILE_INDENT}{prefix:<12}{path}", LineKind.STAGED, tooltip)
        output.blank()

    modified = git.working.modified
    deleted = git.working.deleted
    if modified or deleted:
        output.add("Changes not staged for commit:", LineKind.HEADER, TOOLTIPS["working_directory"])
        output.add('  (use "git add <file>..." to update what will be committed)', LineKind.HINT)
        output.add(
            '  (use "git restore <file>..." to discard changes in working directory)',
            LineKind.HINT,
        )
        output.blank()
        for path in modified:
            output.add(f"{_FILE_INDENT}{'modified:':<12}{path}", LineKind.MODIFIED, TOOLTIPS["modified"])
        for path in deleted:
            output.add(f"{_FILE_INDENT}{'deleted:':<12}{path}", LineKind.DELETED, TOOLTIPS["deleted"])
        output.blank()

    untracked = untracked_files(state)
    if untracked:
        output.add("Untracked files:", LineKind.HEADER, TOOLTIPS["untracked"])
        output.add('  (use "git add <file>..." to include in what will be committed)', LineKind.HINT)
        output.blank()
        for path in untracked:
            output.add(f"{_FILE_INDENT}{path}", LineKind.UNTRACKED, TOOLTIPS["untracked"])
        output.blank()

    has_unstaged = bool(modified or deleted)
    if not git.staging and not has_unstaged and not untracked:
        if git.head_commit_id() is None:
            output.add('nothing to commit (create/copy files and use "git add" to track)')
        else:
            output.add("nothing to commit, working tree clean")
    elif not git.staging:
        output.add('no changes added to commit (use "git add" and/or "git commit -a")', LineKind.HINT)
    return output


def render_branches(git: GitState) -> RenderedOutput:
    output = RenderedOutput()
    current = git.current_branch
    if git.is_detached:
        output.add(
            f"* (HEAD detached at {git.head.commit_id[:7]})",  # type: ignore[union-attr]
            LineKind.BRANCH_CURRENT,
            TOOLTIPS["detached"],
        )
    for name in sorted(git.branches):
        if name == current:
            output.add(f"* {name}", LineKind.BRANCH_CURRENT, TOOLTIPS["branch_current"])
        else:
            output.add(f"  {name}", LineKind.BRANCH, TOOLTIPS["branch"])
    return output


def format_timestamp(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, timezone.utc)
    return moment.strftime("%a %b ") + f"{moment.day} " + moment.strftime("%H:%M:%S %Y +0000")


def history(git: GitState) -> List[Commit]:
    """Commits reachable from HEAD, most recent first."""

    reachable = collect_ancestors(git.head_commit_id(), git.commits)
    order = {commit_id: index for index, commit_id in enumerate(git.commits)}
    ordered = sorted(
        (cid for cid in reachable if cid in git.commits),
        key=lambda cid: (git.commits[cid].timestamp, order[cid]),
        reverse=True,
    )
    return [git.commits[cid] for cid in ordered]


def render_log(git: GitState, *, oneline: bool = False, limit: Optional[int] = None) -> RenderedOutput:
    output = RenderedOutput()
    commits = history(git)
    if limit is not None:
        commits = commits[: max(limit, 0)]
    if not commits and git.head_commit_id() is None:
        branch = git.current_branch or "HEAD"
        output.add(f"fatal: your current branch '{branch}' does not have any commits yet")
        return output
    for commit in commits:
        if oneline:
            output.add(f"{commit.id} {commit.message}")
            continue
        output.add(f"commit {commit.id}", LineKind.HEADER)
        if commit.merge_parent_id:
            output.add(f"Merge: {commit.parent_id} {commit.merge_parent_id}")
        output.add(f"Author: {commit.author}")
        output.add(f"Date:   {format_timestamp(commit.timestamp)}")
        output.blank()
        output.add(f"    {commit.message}")
        output.blank()
    return output


__all__ = [
    "TOOLTIPS",
    "ahead_behind",
    "format_timestamp",
    "history",
    "render_branches",
    "render_log",
    "render_status",
    "tracking_ref",
    "untracked_files",
    "working_tree_files",
]
