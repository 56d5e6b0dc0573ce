"""Tests for shelving and restoring uncommitted work."""

import json
import os

import pytest

from grove.errors import MergeConflict, RefNotFound, StashEmpty, UnmergedPaths
from grove.stash import StashStore


def _write(repo, rel, text):
    with open(os.path.join(repo.root, rel), "w") as f:
        f.write(text)


def _read(repo, rel):
    with open(os.path.join(repo.root, rel)) as f:
        return f.read()


@pytest.fixture
def based(repo):
    """Repository with tracked.txt and other.txt committed on main."""
    _write(repo, "tracked.txt", "v1\n")
    _write(repo, "other.txt", "other\n")
    repo.add(["tracked.txt", "other.txt"])
    repo.commit("base")
    return repo


class TestPushPop:
    def test_roundtrip_restores_tree_and_index(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "staged edit\n")
        _write(based, "new.txt", "brand new\n")
        based.add(["tracked.txt", "new.txt"])
        _write(based, "other.txt", "unstaged edit\n")
        index_before = based.index.as_flat()

        entry = stash.push()
        assert entry.message.startswith("WIP on main:")
        assert _read(based, "tracked.txt") == "v1\n"
        assert _read(based, "other.txt") == "other\n"
        assert not os.path.exists(os.path.join(based.root, "new.txt"))
        assert based.is_clean()

        stash.pop()
        assert _read(based, "tracked.txt") == "staged edit\n"
        assert _read(based, "other.txt") == "unstaged edit\n"
        assert _read(based, "new.txt") == "brand new\n"
        assert based.index.as_flat() == index_before
        assert stash.list() == []

    def test_nothing_to_stash(self, based):
        stash = StashStore(based)
        assert stash.push() is None
        assert stash.list() == []

    def test_snapshot_commit_is_parented_on_head(self, based):
        stash = StashStore(based)
        head = based.head().commit
        _write(based, "tracked.txt", "edit\n")
        entry = stash.push("my message")
        commit = based.store.read_commit(entry.commit)
        assert commit.parents == (head,)
        assert entry.base == head
        assert entry.message == "my message"
        assert based.head().commit == head
        assert entry.commit not in based.history()

    def test_unborn_head(self, repo):
        _write(repo, "f.txt", "x")
        repo.add(["f.txt"])
        with pytest.raises(RefNotFound):
            StashStore(repo).push()


class TestStackOrder:
    def test_most_recent_first(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "first\n")
        stash.push("first")
        _write(based, "tracked.txt", "second\n")
        stash.push("second")
        assert [e.message for e in stash.list()] == ["second", "first"]

        stash.pop()
        assert _read(based, "tracked.txt") == "second\n"
        assert [e.message for e in stash.list()] == ["first"]

    def test_apply_keeps_entry(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "kept\n")
        stash.push()
        stash.apply()
        assert _read(based, "tracked.txt") == "kept\n"
        assert len(stash.list()) == 1

    def test_drop_and_clear(self, based):
        stash = StashStore(based)
        for text in ("a\n", "b\n", "c\n"):
            _write(based, "tracked.txt", text)
            stash.push(text.strip())
        assert stash.drop(1).message == "b"
        assert [e.message for e in stash.list()] == ["c", "a"]
        assert stash.clear() == 2
        assert stash.list() == []

    def test_show(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "changed\n")
        _write(based, "added.txt", "new\n")
        based.add(["added.txt"])
        stash.push()
        _entry, changes = stash.show()
        assert changes == [("added.txt", "A"), ("tracked.txt", "M")]

    @pytest.mark.parametrize("op", ["pop", "apply", "drop", "show"])
    def test_empty_stash(self, based, op):
        with pytest.raises(StashEmpty):
            getattr(StashStore(based), op)()

    def test_document_layout(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "edit\n")
        entry = stash.push("doc")
        with open(os.path.join(based.git_dir, "stash")) as f:
            doc = json.load(f)
        assert doc["version"] == 1
        assert doc["entries"][0]["commit"] == entry.commit
        assert doc["entries"][0]["index-tree"] == entry.index_tree


class TestConflicts:
    def test_apply_onto_moved_head(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "stashed\n")
        stash.push()
        _write(based, "other.txt", "committed meanwhile\n")
        based.add(["other.txt"])
        based.commit("meanwhile")
        stash.pop()
        assert _read(based, "tracked.txt") == "stashed\n"
        assert _read(based, "other.txt") == "committed meanwhile\n"

    def test_conflict_keeps_entry(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "stashed\n")
        stash.push()
        _write(based, "tracked.txt", "committed\n")
        based.add(["tracked.txt"])
        based.commit("conflicting")
        with pytest.raises(MergeConflict) as exc:
            stash.pop()
        assert exc.value.exit_code == 1
        assert len(stash.list()) == 1
        body = _read(based, "tracked.txt")
        assert "<<<<<<< Updated upstream" in body
        assert ">>>>>>> Stashed changes" in body

    def test_refused_with_unresolved_paths(self, based):
        stash = StashStore(based)
        _write(based, "tracked.txt", "stashed\n")
        stash.push()
        _write(based, "tracked.txt", "committed\n")
        based.add(["tracked.txt"])
        based.commit("conflicting")
        with pytest.raises(MergeConflict):
            stash.apply()
        with pytest.raises(UnmergedPaths):
            stash.push()
