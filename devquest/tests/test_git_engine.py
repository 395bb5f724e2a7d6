from __future__ import annotations

import itertools
from typing import Callable

from devquest.filesystem import normalize_path, read_file, serialize_tree, write_file
from devquest.git_engine import GitEngine, record_removal, record_write
from devquest.renderer import untracked_files
from devquest.results import OutputKind
from devquest.state import BranchHead, Commit, DetachedHead, SessionState, collect_ancestors, initial_state

URL = "https://github.com/user/repo.git"


def _clock() -> Callable[[], float]:
    ticks = itertools.count(1_700_000_000)
    return lambda: float(next(ticks))


def _engine() -> GitEngine:
    return GitEngine(clock=_clock(), author="Test Bot")


def _repo(engine: GitEngine) -> SessionState:
    return engine.init(initial_state()).state


def _write(state: SessionState, path: str, content: str) -> SessionState:
    state = state.clone()
    write_file(state.file_system, path, content, state.cwd)
    record_write(state, normalize_path(path, state.cwd))
    return state


def _commit(engine: GitEngine, state: SessionState, path: str, content: str, message: str) -> SessionState:
    state = _write(state, path, content)
    state = engine.add(state, [path]).state
    transition = engine.commit(state, message)
    assert transition.kind is OutputKind.SUCCESS, transition.text
    return transition.state


def _content(state: SessionState, path: str) -> str:
    return read_file(state.file_system, path, state.cwd)


def test_init_reports_and_leaves_input_untouched() -> None:
    engine = _engine()
    fresh = initial_state()

    transition = engine.init(fresh)

    assert transition.text == "Initialized empty Git repository in /project/.git/"
    assert transition.state.git.initialized
    assert not fresh.git.initialized
    assert engine.init(transition.state).text.startswith("Reinitialized existing Git repository")


def test_operations_require_an_initialized_repository() -> None:
    engine = _engine()
    fresh = initial_state()

    for transition in (engine.status(fresh), engine.add(fresh, ["."]), engine.log(fresh)):
        assert transition.kind is OutputKind.ERROR
        assert "not a git repository" in transition.text
        assert transition.state is fresh


def test_commit_advances_branch_and_clears_staging() -> None:
    engine = _engine()
    state = engine.add(_repo(engine), ["readme.md"]).state

    transition = engine.commit(state, "first commit")
    after = transition.state

    assert len(after.git.commits) == len(state.git.commits) + 1
    assert after.git.staging == []
    head = after.git.head_commit()
    assert head is not None and head.message == "first commit"
    assert after.git.branches["main"] == head.id
    assert head.parent_id is None
    assert head.author == "Test Bot"
    assert transition.text.startswith(f"[main (root-commit) {head.id}] first commit")
    assert "readme.md" in after.git.tracked


def test_commit_with_empty_staging_creates_nothing() -> None:
    engine = _engine()
    state = _repo(engine)

    transition = engine.commit(state, "nothing here")

    assert "nothing to commit" in transition.text
    assert transition.kind is OutputKind.INFO
    assert transition.state is state
    assert state.git.commits == {}


def test_commit_requires_a_message() -> None:
    engine = _engine()
    state = engine.add(_repo(engine), ["readme.md"]).state

    transition = engine.commit(state, None)

    assert transition.kind is OutputKind.ERROR
    assert "requires a value" in transition.text
    assert transition.state.git.staging == ["readme.md"]


def test_input_snapshot_is_never_mutated() -> None:
    engine = _engine()
    state = engine.add(_repo(engine), ["readme.md"]).state
    before = state.to_dict()

    engine.commit(state, "c1")
    engine.checkout(state, "feature", create=True)
    engine.remote_add(state, "origin", URL)

    assert state.to_dict() == before


def test_commit_all_stages_tracked_changes() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = _write(state, "readme.md", "v2")
    assert state.git.working.modified == ["readme.md"]

    after = engine.commit(state, "c2", stage_all=True).state

    assert after.git.head_commit().message == "c2"
    assert after.git.working.modified == []


def test_add_directory_and_deleted_paths() -> None:
    engine = _engine()
    state = _repo(engine)
    state = _write(state, "notes.txt", "n")

    staged = engine.add(state, ["."]).state
    assert staged.git.staging == ["notes.txt", "readme.md"]

    ignored = engine.add(staged, ["ghost.txt"])
    assert ignored.kind is OutputKind.SUCCESS
    assert ignored.state.git.staging == staged.git.staging

    committed = engine.commit(staged, "c1").state
    committed.file_system.children["project"].children.pop("notes.txt")
    record_removal(committed, ["/project/notes.txt"])
    assert committed.git.working.deleted == ["notes.txt"]

    deletion = engine.add(committed, ["notes.txt"]).state
    assert deletion.git.staging == ["notes.txt"]
    final = engine.commit(deletion, "remove notes").state
    assert "notes.txt" not in final.git.tracked
    assert final.git.working.deleted == []


def test_failed_operation_returns_original_state() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")

    transition = engine.checkout(state, "nope")

    assert transition.kind is OutputKind.ERROR
    assert transition.text == "error: pathspec 'nope' did not match any file(s) known to git"
    assert transition.state is state


def test_branch_create_delete_and_rename() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")

    state = engine.create_branch(state, "feature").state
    assert state.git.branches["feature"] == state.git.branches["main"]
    duplicate = engine.create_branch(state, "feature")
    assert duplicate.text == "fatal: A branch named 'feature' already exists."

    refused = engine.delete_branch(state, "main")
    assert refused.kind is OutputKind.ERROR
    assert "Cannot delete branch 'main'" in refused.text

    deleted = engine.delete_branch(state, "feature")
    assert deleted.text.startswith("Deleted branch feature")
    assert "feature" not in deleted.state.git.branches

    renamed = engine.rename_branch(state, "trunk").state
    assert renamed.git.head == BranchHead("trunk")
    assert "main" not in renamed.git.branches


def test_checkout_replaces_working_tree() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = engine.checkout(state, "feature", create=True).state
    state = _commit(engine, state, "a.txt", "two", "c2")

    on_main = engine.checkout(state, "main")

    assert on_main.text == "Switched to branch 'main'"
    assert _content(on_main.state, "a.txt") == "one"
    assert on_main.state.git.staging == []
    back = engine.checkout(on_main.state, "feature").state
    assert _content(back, "a.txt") == "two"


def test_checkout_current_branch_is_idempotent() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")

    once = engine.checkout(state, "main")
    twice = engine.checkout(once.state, "main")

    assert once.text == "Already on 'main'"
    assert once.state.to_dict() == state.to_dict()
    assert twice.state.to_dict() == once.state.to_dict()


def test_switch_create_keeps_tree() -> None:
    engine = _engine()
    state = _write(_repo(engine), "draft.txt", "wip")

    transition = engine.checkout(state, "topic", create=True, switch=True)

    assert transition.text == "Switched to a new branch 'topic'"
    assert transition.state.git.head == BranchHead("topic")
    assert _content(transition.state, "draft.txt") == "wip"


def test_checkout_commit_detaches_head() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    first = state.git.head_commit_id()
    state = _commit(engine, state, "a.txt", "two", "c2")

    transition = engine.checkout(state, first)

    assert transition.state.git.head == DetachedHead(first)
    assert f"HEAD is now at {first} c1" in transition.text
    assert _content(transition.state, "a.txt") == "one"
    detached = _commit(engine, transition.state, "a.txt", "three", "c3")
    assert isinstance(detached.git.head, DetachedHead)
    assert detached.git.head_commit().parent_id == first


def test_merge_scenario_records_both_parents() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "", "c1")
    base_id = state.git.head_commit_id()
    state = engine.create_branch(state, "feature").state
    state = engine.checkout(state, "feature").state
    state = _commit(engine, state, "a.txt", "feature work", "c2")
    feature_id = state.git.branches["feature"]
    state = engine.checkout(state, "main").state

    transition = engine.merge(state, "feature")
    merged = transition.state
    head = merged.git.head_commit()

    assert transition.text == "Merge made by the 'ort' strategy."
    assert head.merge_parent_id == feature_id
    assert head.parent_id == base_id
    assert head.is_merge
    assert merged.git.branches["main"] == head.id
    assert head.message == "Merge branch 'feature' into main"
    assert _content(merged, "a.txt") == "feature work"


def test_merge_of_ancestor_is_already_up_to_date() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = engine.create_branch(state, "old").state
    state = _commit(engine, state, "a.txt", "two", "c2")

    transition = engine.merge(state, "old")

    assert transition.text == "Already up to date."
    assert transition.kind is OutputKind.INFO
    assert transition.state is state
    assert "not something we can merge" in engine.merge(state, "ghost").text


def test_push_copies_ancestors_and_sets_pointer() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    commit_id = state.git.head_commit_id()
    state = engine.remote_add(state, "origin", URL).state

    transition = engine.push(state, "origin", "main")
    remote = transition.state.git.remotes["origin"]

    assert set(remote.commits) == {commit_id}
    assert remote.branches == {"main": commit_id}
    assert transition.text == f"To {URL}\n * [new branch]      main -> main"


def test_push_includes_merge_parents() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = engine.checkout(state, "feature", create=True).state
    state = _commit(engine, state, "b.txt", "two", "c2")
    state = engine.checkout(state, "main").state
    state = _commit(engine, state, "c.txt", "three", "c3")
    state = engine.merge(state, "feature").state
    state = engine.remote_add(state, "origin", URL).state

    pushed = engine.push(state, "origin").state
    local = collect_ancestors(pushed.git.head_commit_id(), pushed.git.commits)

    assert local <= set(pushed.git.remotes["origin"].commits)
    assert pushed.git.remotes["origin"].branches["main"] == pushed.git.branches["main"]


def test_push_failures() -> None:
    engine = _engine()
    state = engine.remote_add(_repo(engine), "origin", URL).state

    unborn = engine.push(state, "origin", "main")
    missing = engine.push(state, "upstream", "main")

    assert unborn.text == "error: src refspec main does not match any"
    assert "'upstream' does not appear to be a git repository" in missing.text
    assert missing.state is state


def test_pull_fast_forwards_to_remote_commit() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = engine.remote_add(state, "origin", URL).state
    state = engine.push(state, "origin", "main", set_upstream=True).state
    assert state.git.upstreams == {"main": "origin/main"}
    state = _commit(engine, state, "readme.md", "v2", "c2")
    latest = state.git.head_commit_id()
    state = engine.push(state).state
    state = engine.reset(state, "HEAD~1", mode="hard").state
    assert _content(state, "readme.md") == "v1"

    transition = engine.pull(state)

    assert "Fast-forward" in transition.text
    assert transition.state.git.head_commit_id() == latest
    assert _content(transition.state, "readme.md") == "v2"
    again = engine.pull(transition.state)
    assert again.text == "Already up to date."


def test_fetch_copies_commits_without_moving_branches() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = engine.remote_add(state, "origin", URL).state
    state = engine.push(state, "origin").state
    foreign = Commit(
        id="abcdef1",
        message="remote work",
        parent_id=state.git.head_commit_id(),
        timestamp=2_000_000_000.0,
        author="Someone",
        tree_snapshot=serialize_tree(state.file_system),
    )
    state.git.remotes["origin"].commits[foreign.id] = foreign
    state.git.remotes["origin"].branches["main"] = foreign.id
    before = dict(state.git.branches)

    fetched = engine.fetch(state, "origin").state

    assert "abcdef1" in fetched.git.commits
    assert fetched.git.branches == before


def test_stash_round_trip_restores_staging_and_tree() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = _write(state, "readme.md", "work in progress")
    state = engine.add(state, ["readme.md"]).state
    staging_before = list(state.git.staging)
    tree_before = serialize_tree(state.file_system)

    pushed = engine.stash_push(state)
    assert pushed.text.startswith("Saved working directory and index state WIP on main")
    assert pushed.state.git.staging == []
    assert _content(pushed.state, "readme.md") == "v1"

    popped = engine.stash_apply(pushed.state, drop=True).state

    assert popped.git.staging == staging_before
    assert serialize_tree(popped.file_system) == tree_before
    assert popped.git.stash == []


def test_stash_edge_cases() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")

    assert engine.stash_push(state).text == "No local changes to save"
    assert engine.stash_apply(state, drop=True).text == "No stash entries found."

    state = engine.add(_write(state, "readme.md", "v2"), ["readme.md"]).state
    state = engine.stash_push(state, "first try").state
    listing = engine.stash_list(state)
    assert listing.text == "stash@{0}: On main: first try"

    applied = engine.stash_apply(state).state
    assert len(applied.git.stash) == 1
    assert engine.stash_clear(applied).state.git.stash == []


def test_reset_hard_leaves_clean_status() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = engine.add(_write(state, "readme.md", "v2"), ["readme.md"]).state
    state = _write(state, "readme.md", "v3")

    reset = engine.reset(state, "HEAD", mode="hard")
    status = engine.status(reset.state)

    assert reset.text.startswith("HEAD is now at")
    assert "nothing to commit, working tree clean" in status.text
    assert "Changes" not in status.text


def test_reset_soft_and_mixed() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    first = state.git.head_commit_id()
    state = _commit(engine, state, "readme.md", "v2", "c2")

    soft = engine.reset(state, "HEAD~1", mode="soft").state
    assert soft.git.head_commit_id() == first
    assert soft.git.staging == ["readme.md"]
    assert _content(soft, "readme.md") == "v2"

    mixed = engine.reset(state, "HEAD^").state
    assert mixed.git.staging == []
    assert mixed.git.working.modified == ["readme.md"]

    failed = engine.reset(state, "HEAD~5")
    assert failed.text == "fatal: Failed to resolve 'HEAD~5' as a valid ref."
    assert failed.state is state


def test_unstage_single_path() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = engine.add(_write(state, "readme.md", "v2"), ["readme.md"]).state

    transition = engine.unstage(state, ["readme.md"])

    assert transition.state.git.staging == []
    assert transition.state.git.working.modified == ["readme.md"]
    assert transition.text == "Unstaged changes after reset:\nM\treadme.md"


def test_restore_discards_working_changes() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = _write(state, "readme.md", "oops")

    restored = engine.restore(state, ["readme.md"]).state

    assert _content(restored, "readme.md") == "v1"
    assert restored.git.working.modified == []


def test_revert_restores_parent_tree() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")
    state = _commit(engine, state, "readme.md", "v2", "c2")
    reverted_id = state.git.head_commit_id()

    transition = engine.revert(state, "HEAD")
    head = transition.state.git.head_commit()

    assert head.message == 'Revert "c2"'
    assert head.parent_id == reverted_id
    assert _content(transition.state, "readme.md") == "v1"
    assert engine.revert(state, "nope").text == "fatal: bad revision 'nope'"


def test_log_orders_newest_first_with_limit() -> None:
    engine = _engine()
    state = _repo(engine)
    for index in range(3):
        state = _commit(engine, state, "readme.md", f"v{index}", f"c{index}")

    oneline = engine.log(state, oneline=True)
    limited = engine.log(state, oneline=True, limit=2)
    verbose = engine.log(state)

    messages = [line.split(" ", 1)[1] for line in oneline.text.splitlines()]
    assert messages == ["c2", "c1", "c0"]
    assert len(limited.text.splitlines()) == 2
    assert "Author: Test Bot" in verbose.text
    assert verbose.text.startswith("commit ")


def test_log_without_commits() -> None:
    engine = _engine()

    transition = engine.log(_repo(engine))

    assert transition.text == "fatal: your current branch 'main' does not have any commits yet"


def test_commit_ids_are_deterministic() -> None:
    def run() -> list:
        engine = _engine()
        state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
        state = _commit(engine, state, "a.txt", "two", "c2")
        return list(state.git.commits)

    assert run() == run()


def test_revision_grammar() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    first = state.git.head_commit_id()
    state = engine.checkout(state, "feature", create=True).state
    state = _commit(engine, state, "b.txt", "two", "c2")
    feature = state.git.head_commit_id()
    state = engine.checkout(state, "main").state
    state = _commit(engine, state, "c.txt", "three", "c3")
    state = engine.merge(state, "feature").state

    assert engine.resolve_revision(state, "HEAD^2") == feature
    assert engine.resolve_revision(state, "HEAD~2") == first
    assert engine.resolve_revision(state, first[:5]) == first
    assert engine.resolve_revision(state, "feature~1") == first
    assert engine.resolve_revision(state, "HEAD~9") is None
    assert engine.resolve_revision(state, "unknown") is None


def test_ancestor_walk_terminates_on_cycles() -> None:
    commits = {
        "a": Commit(id="a", message="a", parent_id="b", timestamp=0.0, author="x", tree_snapshot="{}"),
        "b": Commit(id="b", message="b", parent_id="a", timestamp=0.0, author="x", tree_snapshot="{}"),
    }

    assert collect_ancestors("a", commits) == {"a", "b"}
    assert collect_ancestors(None, commits) == set()


def test_working_tree_tracking_helpers() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "readme.md", "v1", "c1")

    record_write(state, "/project/readme.md")
    assert state.git.working.modified == ["readme.md"]
    record_removal(state, ["/project/readme.md"])
    assert state.git.working.modified == []
    assert state.git.working.deleted == ["readme.md"]
    record_write(state, "/project/untracked.txt")
    assert state.git.working.modified == []


def test_config_sets_commit_author() -> None:
    engine = _engine()
    state = engine.config(_repo(engine), "user.name", "Ada").state
    state = engine.config(state, "user.email", "ada@example.com").state

    state = _commit(engine, state, "readme.md", "v1", "c1")

    assert state.git.head_commit().author == "Ada <ada@example.com>"
    assert engine.config(state, "user.name").text == "Ada"
    assert engine.config(state, "broken").kind is OutputKind.ERROR


def test_stash_round_trip_after_soft_reset_keeps_status() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = _commit(engine, state, "b.txt", "two", "c2")
    state = engine.reset(state, "HEAD~1", mode="soft").state
    before = engine.status(state).text
    assert "new file:   b.txt" in before

    state = engine.stash_push(state).state
    state = engine.stash_apply(state, drop=True).state

    assert engine.status(state).text == before


def test_stash_apply_restores_tracked_paths_on_another_branch() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = engine.checkout(state, "feature", create=True).state
    state = _commit(engine, state, "b.txt", "two", "c2")
    state = engine.add(_write(state, "a.txt", "changed"), ["a.txt"]).state
    untracked_before = untracked_files(state)

    stashed = engine.stash_push(state).state
    assert stashed.git.stash[-1].tracked == ["a.txt", "b.txt"]
    on_main = engine.checkout(stashed, "main").state
    assert on_main.git.tracked == {"a.txt"}

    popped = engine.stash_apply(on_main, drop=True).state

    assert popped.git.tracked == {"a.txt", "b.txt"}
    assert untracked_files(popped) == untracked_before
    assert popped.git.staging == ["a.txt"]


def test_merge_refuses_dirty_index() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = engine.checkout(state, "feature", create=True).state
    state = _commit(engine, state, "b.txt", "two", "c2")
    state = engine.checkout(state, "main").state
    state = engine.add(_write(state, "x.txt", "staged"), ["x.txt"]).state

    transition = engine.merge(state, "feature")

    assert transition.kind is OutputKind.ERROR
    assert "would be overwritten by merge" in transition.text
    assert "\tx.txt" in transition.text
    assert transition.state is state
    assert state.git.head_commit().message == "c1"

    committed = engine.commit(state, "add x").state
    merged = engine.merge(committed, "feature").state
    assert merged.git.head_commit().is_merge
    assert merged.git.staging == []
    assert "x.txt" in merged.git.tracked


def test_rename_onto_existing_branch_requires_force() -> None:
    engine = _engine()
    state = _commit(engine, _repo(engine), "a.txt", "one", "c1")
    state = engine.checkout(state, "feature", create=True).state
    state = _commit(engine, state, "a.txt", "two", "c2")
    feature_id = state.git.branches["feature"]
    state = engine.checkout(state, "main").state

    refused = engine.rename_branch(state, "feature")

    assert refused.kind is OutputKind.ERROR
    assert refused.text == "fatal: A branch named 'feature' already exists."
    assert refused.state.git.branches["feature"] == feature_id

    forced = engine.rename_branch(state, "feature", force=True).state
    assert forced.git.head == BranchHead("feature")
    assert set(forced.git.branches) == {"feature"}
