"""Tests for three-way merge: tree reconciliation, conflicts and merge state."""

import os

import pytest

from grove.errors import (
    GroveError, MergeConflict, MergeInProgress, UncommittedChanges, UnmergedPaths,
)
from grove.merge import common_ancestor, conflict_markers, is_ancestor, merge_trees
from grove.types import MODE_EXECUTABLE, MODE_FILE, Conflict, FileStatus


def _write(repo, rel, text):
    path = os.path.join(repo.root, *rel.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)


def _read(repo, rel):
    with open(os.path.join(repo.root, *rel.split("/"))) as f:
        return f.read()


def _commit(repo, files, message):
    for rel, text in files.items():
        if text is None:
            os.remove(os.path.join(repo.root, *rel.split("/")))
        else:
            _write(repo, rel, text)
    repo.add(list(files))
    return repo.commit(message)


def _diverge(repo, base, ours, theirs):
    """main gets ``ours``, 'feature' gets ``theirs``; ends checked out on main."""
    _commit(repo, base, "base")
    repo.branch("feature")
    repo.checkout("feature")
    _commit(repo, theirs, "theirs")
    repo.checkout("main")
    return _commit(repo, ours, "ours")


# ============================================================
# Pure reconciliation
# ============================================================

F1 = (MODE_FILE, "1" * 64)
F2 = (MODE_FILE, "2" * 64)
F3 = (MODE_FILE, "3" * 64)


class TestMergeTrees:
    @pytest.mark.parametrize("base,ours,theirs,expected", [
        (F1, F1, F1, F1),      # untouched
        (F1, F2, F2, F2),      # same change on both sides
        (F1, F1, F2, F2),      # only theirs changed
        (F1, F2, F1, F2),      # only ours changed
        (F1, None, F1, None),  # we deleted
        (F1, F1, None, None),  # they deleted
        (None, None, F1, F1),  # they added
        (F1, None, None, None),  # both deleted
    ])
    def test_clean_cases(self, base, ours, theirs, expected):
        outcome = merge_trees(*({"p": s} if s else {} for s in (base, ours, theirs)))
        assert outcome.conflicts == []
        assert outcome.merged.get("p") == expected

    @pytest.mark.parametrize("base,ours,theirs,kind", [
        (F1, F2, F3, "content"),
        (F1, None, F2, "modify/delete"),
        (F1, F2, None, "modify/delete"),
        (None, F2, F3, "add/add"),
    ])
    def test_conflict_kinds(self, base, ours, theirs, kind):
        outcome = merge_trees(*({"p": s} if s else {} for s in (base, ours, theirs)))
        assert "p" not in outcome.merged
        assert [c.kind for c in outcome.conflicts] == [kind]

    def test_file_against_directory(self):
        outcome = merge_trees({}, {"a": F1}, {"a/b": F2})
        assert outcome.merged == {"a/b": F2}
        assert outcome.conflicts == [Conflict(path="a", ours=F1[1], kind="file/directory")]

    def test_conflicting_file_against_directory(self):
        outcome = merge_trees({"a": F1}, {"a": F2}, {"a/b": F3})
        assert outcome.merged == {"a/b": F3}
        assert [(c.path, c.kind) for c in outcome.conflicts] == [("a", "file/directory")]

    def test_mode_change_is_a_change(self):
        exe = (MODE_EXECUTABLE, F1[1])
        outcome = merge_trees({"p": F1}, {"p": exe}, {"p": F1})
        assert outcome.merged["p"] == exe

    def test_markers(self, repo):
        store = repo.store
        conflict = Conflict(path="f", base=store.write_blob(b"a"),
                            ours=store.write_blob(b"b\n"),
                            theirs=store.write_blob(b"c\n"))
        body = conflict_markers(store, conflict, "main", "feature")
        assert body == (b"<<<<<<< main\nb\n||||||| base\na\n=======\n"
                        b"c\n>>>>>>> feature\n")


# ============================================================
# History queries
# ============================================================

class TestHistory:
    def test_common_ancestor_and_ancestry(self, repo):
        _diverge(repo, {"f": "a"}, {"g": "ours"}, {"h": "theirs"})
        base = repo.log(start="main")[-1].obj_hash
        main_tip = repo.refs.resolve("main")
        feature_tip = repo.refs.resolve("feature")
        assert common_ancestor(repo.store, main_tip, feature_tip) == base
        assert is_ancestor(repo.store, base, main_tip)
        assert not is_ancestor(repo.store, main_tip, feature_tip)

    def test_unrelated_histories_merge_against_empty_base(self, repo):
        _commit(repo, {"a": "1"}, "root one")
        repo.refs.set_head_branch("orphan")
        repo.index.reset_to({})
        repo.index.save()
        os.remove(os.path.join(repo.root, "a"))
        _commit(repo, {"b": "2"}, "root two")
        assert repo.common_ancestor("main", "orphan") is None
        repo.checkout("main")
        result = repo.merge("orphan")
        assert result.base is None
        assert len(repo.store.read_commit(result.commit).parents) == 2
        assert set(repo.as_of("HEAD")) == {"a", "b"}


# ============================================================
# Repository merges
# ============================================================

class TestFastForward:
    def test_fast_forward_moves_branch_and_tree(self, repo):
        _commit(repo, {"f": "a"}, "base")
        repo.branch("feature")
        repo.checkout("feature")
        tip = _commit(repo, {"f": "b", "new": "n"}, "ahead")
        repo.checkout("main")
        result = repo.merge("feature")
        assert result.fast_forward
        assert repo.head().commit == tip
        assert _read(repo, "f") == "b"
        assert _read(repo, "new") == "n"
        assert repo.is_clean()

    def test_already_up_to_date(self, repo):
        _commit(repo, {"f": "a"}, "base")
        repo.branch("old")
        tip = _commit(repo, {"f": "b"}, "ahead")
        result = repo.merge("old")
        assert result.up_to_date
        assert repo.head().commit == tip


class TestCleanMerge:
    def test_both_sides_kept(self, repo):
        ours = _diverge(repo, {"f": "a", "g": "a"}, {"g": "ours"}, {"f": "b"})
        theirs = repo.refs.resolve("feature")
        result = repo.merge("feature")
        assert not result.fast_forward
        commit = repo.store.read_commit(result.commit)
        assert commit.parents == (ours, theirs)
        assert commit.message == "Merge feature into main"
        assert _read(repo, "f") == "b"
        assert _read(repo, "g") == "ours"
        assert repo.is_clean()

    def test_deletion_carried_over(self, repo):
        _diverge(repo, {"f": "a", "gone": "x"}, {"f": "changed"}, {"gone": None})
        repo.merge("feature")
        assert not os.path.exists(os.path.join(repo.root, "gone"))
        assert "gone" not in repo.as_of("HEAD")

    def test_custom_message(self, repo):
        _diverge(repo, {"f": "a"}, {"g": "1"}, {"h": "2"})
        result = repo.merge("feature", message="integrate feature")
        assert repo.store.read_commit(result.commit).message == "integrate feature"


class TestConflicts:
    def test_content_conflict_writes_state(self, repo):
        _diverge(repo, {"f": "a\n"}, {"f": "b\n"}, {"f": "c\n"})
        head_before = repo.head().commit
        with pytest.raises(MergeConflict) as exc:
            repo.merge("feature")
        assert exc.value.exit_code == 1
        assert [(c.path, c.kind) for c in exc.value.conflicts] == [("f", "content")]
        assert repo.head().commit == head_before
        assert _read(repo, "f") == ("<<<<<<< main\nb\n||||||| base\na\n=======\n"
                                    "c\n>>>>>>> feature\n")
        assert repo.merge_head() == repo.refs.resolve("feature")
        status = {s.path: s.staged for s in repo.status()}
        assert status["f"] == FileStatus.CONFLICTED

    def test_commit_refused_until_resolved(self, repo):
        _diverge(repo, {"f": "a\n"}, {"f": "b\n"}, {"f": "c\n"})
        with pytest.raises(MergeConflict):
            repo.merge("feature")
        with pytest.raises(UnmergedPaths):
            repo.commit("too early")
        ours = repo.head().commit
        theirs = repo.refs.resolve("feature")
        _write(repo, "f", "resolved\n")
        repo.add(["f"])
        merge_commit = repo.store.read_commit(repo.commit())
        assert merge_commit.parents == (ours, theirs)
        assert merge_commit.message == "Merge feature into main"
        assert repo.merge_head() is None

    def test_modify_delete(self, repo):
        _diverge(repo, {"f": "a\n"}, {"f": None}, {"f": "changed\n"})
        with pytest.raises(MergeConflict) as exc:
            repo.merge("feature")
        conflict = exc.value.conflicts[0]
        assert conflict.kind == "modify/delete"
        assert conflict.ours is None
        assert "changed" in _read(repo, "f")

    def test_add_add(self, repo):
        _diverge(repo, {"base": "x"}, {"new": "one\n"}, {"new": "two\n"})
        with pytest.raises(MergeConflict) as exc:
            repo.merge("feature")
        assert exc.value.conflicts[0].kind == "add/add"

    def test_clean_paths_applied_alongside_conflicts(self, repo):
        _diverge(repo, {"f": "a\n", "g": "g\n"}, {"f": "b\n"}, {"f": "c\n", "g": "theirs\n"})
        with pytest.raises(MergeConflict):
            repo.merge("feature")
        assert _read(repo, "g") == "theirs\n"

    def test_abort_restores_head(self, repo):
        _diverge(repo, {"f": "a\n", "g": "g\n"}, {"f": "b\n"}, {"f": "c\n", "g": "theirs\n"})
        with pytest.raises(MergeConflict):
            repo.merge("feature")
        repo.merge_abort()
        assert _read(repo, "f") == "b\n"
        assert _read(repo, "g") == "g\n"
        assert repo.merge_head() is None
        assert repo.is_clean()

    def test_abort_without_merge(self, repo):
        _commit(repo, {"f": "a"}, "base")
        with pytest.raises(GroveError):
            repo.merge_abort()

    def test_second_merge_refused_while_in_progress(self, repo):
        _diverge(repo, {"f": "a\n"}, {"f": "b\n"}, {"f": "c\n"})
        with pytest.raises(MergeConflict):
            repo.merge("feature")
        with pytest.raises(MergeInProgress):
            repo.merge("feature")
        with pytest.raises(MergeInProgress):
            repo.checkout("feature")


class TestSafety:
    def test_dirty_tree_refused(self, repo):
        _diverge(repo, {"f": "a"}, {"g": "1"}, {"h": "2"})
        _write(repo, "g", "uncommitted")
        with pytest.raises(UncommittedChanges):
            repo.merge("feature")
        assert _read(repo, "g") == "uncommitted"

    def test_untracked_file_in_the_way(self, repo):
        _diverge(repo, {"f": "a"}, {"g": "1"}, {"h": "2"})
        _write(repo, "h", "mine, untracked")
        with pytest.raises(UncommittedChanges):
            repo.merge("feature")
        assert _read(repo, "h") == "mine, untracked"


# ============================================================
# Files and directories sharing a path
# ============================================================

class TestFileDirectory:
    def test_merge_sets_file_aside(self, repo):
        _diverge(repo, {"base": "x"}, {"a": "file\n"}, {"a/b": "nested\n"})
        with pytest.raises(MergeConflict) as exc:
            repo.merge("feature")
        assert [(c.path, c.kind) for c in exc.value.conflicts] == [("a", "file/directory")]
        assert _read(repo, "a/b") == "nested\n"
        assert _read(repo, "a~main") == "file\n"

        with pytest.raises(UnmergedPaths):
            repo.commit("too early")
        repo.add(["a"])
        merge_commit = repo.commit()
        assert set(repo.as_of(merge_commit)) == {"base", "a/b"}
        assert repo.merge_head() is None

    def test_abort_restores_file(self, repo):
        _diverge(repo, {"base": "x"}, {"a": "file\n"}, {"a/b": "nested\n"})
        with pytest.raises(MergeConflict):
            repo.merge("feature")
        repo.merge_abort()
        assert _read(repo, "a") == "file\n"
        assert repo.index.paths() == ["a", "base"]

    def test_checkout_both_directions(self, repo):
        _commit(repo, {"a/b": "nested\n", "c": "same\n"}, "directory")
        repo.branch("other")
        repo.checkout("other")
        os.remove(os.path.join(repo.root, "a", "b"))
        os.rmdir(os.path.join(repo.root, "a"))
        _write(repo, "a", "file\n")
        repo.add(["a"])
        repo.commit("file")

        repo.checkout("main")
        assert _read(repo, "a/b") == "nested\n"
        assert repo.is_clean()

        repo.checkout("other")
        assert _read(repo, "a") == "file\n"
        assert repo.index.paths() == ["a", "c"]
        assert repo.is_clean()
