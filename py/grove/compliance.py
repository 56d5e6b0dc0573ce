"""Protocol compliance suite for grove systems.

Anything implementing the grove protocol layers can be checked by handing
this module a fixture dict:

    fixture = {
        "create_system": lambda: ...,          # fresh system on 'main', one commit
        "mutate": lambda sys: ...,             # stage a unique change, return system
        "commit": lambda sys, msg: ...,        # commit, return system
        "close": lambda sys: ...,              # cleanup
        "write_entry": lambda sys, k, v: ...,  # write + stage keyed entry, return system
        "read_entry": lambda sys, k: ...,      # value at HEAD, or None
        "count_entries": lambda sys: ...,      # entries at HEAD
        "delete_entry": lambda sys, k: ...,    # delete + stage, return system (or None)
    }

Usage with pytest:

    from grove.compliance import run_compliance_tests

    def test_compliance(grove_fixture):
        run_compliance_tests(grove_fixture)
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from grove.errors import MergeConflict


# ============================================================
# Helpers
# ============================================================

@contextmanager
def _system(fix: Dict[str, Any]) -> Iterator[Any]:
    sys = fix["create_system"]()
    try:
        yield sys
    finally:
        fix["close"](sys)


def _has_capability(fix: Dict[str, Any], cap: str) -> bool:
    with _system(fix) as sys:
        return getattr(sys.capabilities(), cap, False)


def _step(fix: Dict[str, Any], sys: Any, msg: str) -> Any:
    """One mutate + commit cycle."""
    return fix["commit"](fix["mutate"](sys), msg)


def _diverge(fix: Dict[str, Any], sys: Any) -> Any:
    """main and 'feature' each one commit past a shared base; ends on feature."""
    sys = _step(fix, sys, "base")
    sys = sys.branch("feature")
    sys = _step(fix, sys, "main advance")
    sys = sys.checkout("feature")
    return _step(fix, sys, "feature advance")


# ============================================================
# Layer 1: Snapshotable
# ============================================================

def test_snapshot_id_after_commit(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        sys = _step(fix, sys, "first")
        sid = sys.snapshot_id()
        assert isinstance(sid, str) and sid, "snapshot_id should be a non-empty string"


def test_parent_ids_root_commit(fix: Dict[str, Any]) -> None:
    """Walking first parents ends at a root with no parents."""
    with _system(fix) as sys:
        sys = _step(fix, sys, "root")
        snap = sys.snapshot_id()
        parents = sys.parent_ids(snap)
        while parents:
            snap = next(iter(parents))
            parents = sys.parent_ids(snap)
        assert sys.parent_ids(snap) == set()


def test_parent_ids_chain(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        sys = _step(fix, sys, "first")
        first_id = sys.snapshot_id()
        sys = _step(fix, sys, "second")
        assert sys.parent_ids() == {first_id}, \
            "second commit should have exactly the first as parent"


def test_snapshot_meta(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        sys = _step(fix, sys, "test message")
        meta = sys.snapshot_meta(sys.snapshot_id())
        assert meta["snapshot-id"] == sys.snapshot_id()
        assert isinstance(meta["parent-ids"], set), "parent-ids should be a set"
        assert meta["message"] == "test message"


def test_as_of(fix: Dict[str, Any]) -> None:
    """as_of keeps showing the old state after later commits."""
    with _system(fix) as sys:
        sys = fix["write_entry"](sys, "k", "old")
        sys = fix["commit"](sys, "old")
        old_id = sys.snapshot_id()
        view = sys.as_of(old_id)
        sys = fix["write_entry"](sys, "k", "new")
        sys = fix["commit"](sys, "new")
        assert sys.as_of(old_id) == view, "a snapshot's view must never change"
        assert sys.as_of(sys.snapshot_id()) != view


# ============================================================
# Layer 2: Branchable
# ============================================================

def test_initial_branches(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "branchable"):
        return
    with _system(fix) as sys:
        assert "main" in sys.branches()
        assert sys.current_branch() == "main"


def test_create_branch(fix: Dict[str, Any]) -> None:
    """branch() adds a name without switching to it."""
    if not _has_capability(fix, "branchable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "before fork")
        sys = sys.branch("experiment")
        assert "experiment" in sys.branches()
        assert sys.current_branch() == "main"


def test_checkout(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "branchable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "before fork")
        sys = sys.branch("experiment").checkout("experiment")
        assert sys.current_branch() == "experiment"


def test_branch_isolation(fix: Dict[str, Any]) -> None:
    """Commits on one branch leave the other's tip alone."""
    if not _has_capability(fix, "branchable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "main commit")
        sys = sys.branch("experiment")
        fork_point = sys.snapshot_id()
        sys = sys.checkout("experiment")
        sys = _step(fix, sys, "experiment commit")
        sys = sys.checkout("main")
        assert sys.snapshot_id() == fork_point


def test_delete_branch(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "branchable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "before fork")
        sys = sys.branch("temp")
        assert "temp" in sys.branches()
        sys = sys.delete_branch("temp")
        assert "temp" not in sys.branches()


# ============================================================
# Layer 3: Graphable
# ============================================================

def test_history(fix: Dict[str, Any]) -> None:
    """Newest first."""
    if not _has_capability(fix, "graphable"):
        return
    with _system(fix) as sys:
        ids = []
        for msg in ("first", "second", "third"):
            sys = _step(fix, sys, msg)
            ids.append(sys.snapshot_id())
        hist = sys.history()
        assert hist[:3] == list(reversed(ids))


def test_history_limit(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "graphable"):
        return
    with _system(fix) as sys:
        for i in range(5):
            sys = _step(fix, sys, f"commit {i}")
        assert len(sys.history(limit=2)) == 2


def test_history_since(fix: Dict[str, Any]) -> None:
    """since= hides the named commit and everything before it."""
    if not _has_capability(fix, "graphable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "first")
        first_id = sys.snapshot_id()
        sys = _step(fix, sys, "second")
        assert sys.history(since=first_id) == [sys.snapshot_id()]


def test_ancestors(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "graphable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "first")
        id1 = sys.snapshot_id()
        sys = _step(fix, sys, "second")
        id2 = sys.snapshot_id()
        sys = _step(fix, sys, "third")
        id3 = sys.snapshot_id()
        ancs = sys.ancestors(id3)
        assert id3 not in ancs
        assert ancs.index(id2) < ancs.index(id1), "nearest ancestors come first"


def test_ancestor_predicate(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "graphable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "first")
        id1 = sys.snapshot_id()
        sys = _step(fix, sys, "second")
        id2 = sys.snapshot_id()
        assert sys.is_ancestor(id1, id2) is True
        assert sys.is_ancestor(id2, id1) is False


def test_common_ancestor(fix: Dict[str, Any]) -> None:
    if not (_has_capability(fix, "graphable") and _has_capability(fix, "branchable")):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "common base")
        sys = sys.branch("feature")
        fork_point = sys.snapshot_id()
        sys = _step(fix, sys, "main advance")
        main_id = sys.snapshot_id()
        sys = sys.checkout("feature")
        sys = _step(fix, sys, "feature advance")
        assert sys.common_ancestor(main_id, sys.snapshot_id()) == fork_point


def test_commit_info(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "graphable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "test info")
        info = sys.commit_info(sys.snapshot_id())
        assert "parent-ids" in info


# ============================================================
# Layer 4: Mergeable
# ============================================================

def test_merge_fast_forward(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "mergeable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "base")
        sys = sys.branch("feature").checkout("feature")
        sys = _step(fix, sys, "feature work")
        feature_tip = sys.snapshot_id()
        sys = sys.checkout("main")
        result = sys.merge("feature")
        assert result.fast_forward
        assert sys.snapshot_id() == feature_tip


def test_merge_parent_ids(fix: Dict[str, Any]) -> None:
    """A true merge commit has exactly two parents, ours first."""
    if not _has_capability(fix, "mergeable"):
        return
    with _system(fix) as sys:
        sys = _diverge(fix, sys)
        feature_tip = sys.snapshot_id()
        sys = sys.checkout("main")
        main_tip = sys.snapshot_id()
        result = sys.merge("feature")
        assert not result.fast_forward
        assert sys.parent_ids() == {main_tip, feature_tip}


def test_merge_up_to_date(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "mergeable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "base")
        sys = sys.branch("old")
        sys = _step(fix, sys, "ahead")
        tip = sys.snapshot_id()
        assert sys.merge("old").up_to_date
        assert sys.snapshot_id() == tip


def test_conflicts_empty_for_compatible(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "mergeable"):
        return
    with _system(fix) as sys:
        sys = _diverge(fix, sys)
        assert sys.conflicts("main", "feature") == []


def test_conflicts_for_divergent_edits(fix: Dict[str, Any]) -> None:
    """Both sides rewriting one entry is reported and stops a merge."""
    if not _has_capability(fix, "mergeable"):
        return
    with _system(fix) as sys:
        sys = fix["write_entry"](sys, "shared", "base")
        sys = fix["commit"](sys, "base")
        sys = sys.branch("feature")
        sys = fix["commit"](fix["write_entry"](sys, "shared", "ours"), "ours")
        sys = sys.checkout("feature")
        sys = fix["commit"](fix["write_entry"](sys, "shared", "theirs"), "theirs")
        sys = sys.checkout("main")
        found = sys.conflicts("main", "feature")
        assert len(found) == 1 and found[0].kind == "content"
        try:
            sys.merge("feature")
        except MergeConflict as e:
            assert [c.path for c in e.conflicts] == [found[0].path]
        else:
            raise AssertionError("merge of divergent edits should conflict")


def test_diff(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "mergeable"):
        return
    with _system(fix) as sys:
        sys = _step(fix, sys, "first")
        id1 = sys.snapshot_id()
        sys = _step(fix, sys, "second")
        changes = sys.diff(id1, sys.snapshot_id())
        assert len(changes) == 1
        assert sys.diff(id1, id1) == []


# ============================================================
# SystemIdentity
# ============================================================

def test_system_identity(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        assert isinstance(sys.system_id(), str)
        assert isinstance(sys.system_type(), str)
        assert sys.capabilities().snapshotable is True


# ============================================================
# Data consistency
# ============================================================

def test_write_read_roundtrip(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        sys = fix["commit"](fix["write_entry"](sys, "key-1", "value-alpha"), "write")
        assert fix["read_entry"](sys, "key-1") == "value-alpha"


def test_count_after_writes(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        assert fix["count_entries"](sys) == 0, "fresh system should have 0 entries"
        sys = fix["commit"](fix["write_entry"](sys, "a", "1"), "first")
        assert fix["count_entries"](sys) == 1
        sys = fix["write_entry"](sys, "b", "2")
        sys = fix["write_entry"](sys, "c", "3")
        sys = fix["commit"](sys, "second")
        assert fix["count_entries"](sys) == 3


def test_multiple_entries_readable(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        for key in ("x", "y", "z"):
            sys = fix["write_entry"](sys, key, f"val-{key}")
        sys = fix["commit"](sys, "three entries")
        for key in ("x", "y", "z"):
            assert fix["read_entry"](sys, key) == f"val-{key}"
        assert fix["read_entry"](sys, "nonexistent") is None


def test_branch_data_isolation(fix: Dict[str, Any]) -> None:
    if not _has_capability(fix, "branchable"):
        return
    with _system(fix) as sys:
        sys = fix["commit"](fix["write_entry"](sys, "shared", "base-value"), "base")
        sys = sys.branch("feature")
        sys = fix["commit"](fix["write_entry"](sys, "main-only", "main-data"), "main")
        sys = sys.checkout("feature")
        sys = fix["commit"](fix["write_entry"](sys, "feature-only", "feature-data"),
                            "feature")
        assert fix["read_entry"](sys, "feature-only") == "feature-data"
        assert fix["read_entry"](sys, "main-only") is None
        assert fix["read_entry"](sys, "shared") == "base-value"
        sys = sys.checkout("main")
        assert fix["read_entry"](sys, "main-only") == "main-data"
        assert fix["read_entry"](sys, "feature-only") is None
        assert fix["read_entry"](sys, "shared") == "base-value"


def test_delete_entry_consistency(fix: Dict[str, Any]) -> None:
    if fix.get("delete_entry") is None:
        return
    with _system(fix) as sys:
        sys = fix["write_entry"](sys, "keep", "keep-val")
        sys = fix["write_entry"](sys, "remove", "remove-val")
        sys = fix["commit"](sys, "two entries")
        assert fix["count_entries"](sys) == 2
        sys = fix["commit"](fix["delete_entry"](sys, "remove"), "delete one")
        assert fix["count_entries"](sys) == 1
        assert fix["read_entry"](sys, "remove") is None
        assert fix["read_entry"](sys, "keep") == "keep-val"


def test_overwrite_entry(fix: Dict[str, Any]) -> None:
    with _system(fix) as sys:
        sys = fix["commit"](fix["write_entry"](sys, "key", "original"), "original")
        sys = fix["commit"](fix["write_entry"](sys, "key", "updated"), "updated")
        assert fix["read_entry"](sys, "key") == "updated"
        assert fix["count_entries"](sys) == 1


# ============================================================
# Full suite
# ============================================================

ALL_TESTS = {
    "system_identity": [test_system_identity],
    "snapshotable": [
        test_snapshot_id_after_commit,
        test_parent_ids_root_commit,
        test_parent_ids_chain,
        test_snapshot_meta,
        test_as_of,
    ],
    "branchable": [
        test_initial_branches,
        test_create_branch,
        test_checkout,
        test_branch_isolation,
        test_delete_branch,
    ],
    "graphable": [
        test_history,
        test_history_limit,
        test_history_since,
        test_ancestors,
        test_ancestor_predicate,
        test_common_ancestor,
        test_commit_info,
    ],
    "mergeable": [
        test_merge_fast_forward,
        test_merge_parent_ids,
        test_merge_up_to_date,
        test_conflicts_empty_for_compatible,
        test_conflicts_for_divergent_edits,
        test_diff,
    ],
    "data_consistency": [
        test_write_read_roundtrip,
        test_count_after_writes,
        test_multiple_entries_readable,
        test_branch_data_isolation,
        test_delete_entry_consistency,
        test_overwrite_entry,
    ],
}


def run_compliance_tests(fixture: Dict[str, Any]) -> None:
    """Run every layer's checks against ``fixture`` (keys: see module docstring)."""
    for tests in ALL_TESTS.values():
        for test_fn in tests:
            test_fn(fixture)
