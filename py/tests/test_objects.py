"""Tests for the content-addressed object store and its encodings."""

import hashlib
import os
import zlib

import pytest

from grove.errors import AmbiguousObject, CorruptObject, ObjectNotFound
from grove.objects import (
    ObjectStore, decode_commit, decode_tree, encode_commit, encode_tree,
    hash_object,
)
from grove.types import BLOB, COMMIT, MODE_DIR, MODE_EXECUTABLE, MODE_FILE, Commit, TreeEntry


@pytest.fixture
def store(tmp_path) -> ObjectStore:
    return ObjectStore(str(tmp_path / "objects"))


def _object_path(store: ObjectStore, obj_hash: str) -> str:
    return os.path.join(store.root, obj_hash[:2], obj_hash[2:])


def _overwrite(path: str, raw: bytes) -> None:
    os.chmod(path, 0o644)
    with open(path, "wb") as f:
        f.write(raw)


# ============================================================
# Storage
# ============================================================

class TestPutGet:
    def test_hash_covers_kind_and_length(self, store):
        obj_hash = store.put(BLOB, b"hello")
        assert obj_hash == hashlib.sha256(b"blob 5\0hello").hexdigest()
        assert store.get(obj_hash) == (BLOB, b"hello")

    def test_same_content_stored_once(self, store):
        first = store.write_blob(b"same bytes")
        second = store.write_blob(b"same bytes")
        assert first == second
        assert list(store.iter_hashes()) == [first]

    def test_sharded_layout_and_read_only(self, store):
        obj_hash = store.write_blob(b"x")
        path = _object_path(store, obj_hash)
        assert os.path.isfile(path)
        assert len(os.path.basename(path)) == 62
        assert not os.stat(path).st_mode & 0o222

    def test_same_content_different_kind(self, store):
        assert hash_object(BLOB, b"") != hash_object(COMMIT, b"")

    def test_missing_object(self, store):
        with pytest.raises(ObjectNotFound):
            store.get("ab" * 32)
        assert not store.exists("ab" * 32)

    def test_empty_blob(self, store):
        obj_hash = store.write_blob(b"")
        assert store.read_blob(obj_hash) == b""


class TestCorruption:
    def test_tampered_content_detected(self, store):
        obj_hash = store.write_blob(b"hello")
        _overwrite(_object_path(store, obj_hash), zlib.compress(b"blob 5\0jello"))
        with pytest.raises(CorruptObject) as exc:
            store.get(obj_hash)
        assert exc.value.obj_hash == obj_hash

    def test_garbage_bytes_detected(self, store):
        obj_hash = store.write_blob(b"hello")
        _overwrite(_object_path(store, obj_hash), b"not zlib at all")
        with pytest.raises(CorruptObject):
            store.read_blob(obj_hash)

    def test_wrong_kind_is_corrupt(self, store):
        obj_hash = store.write_blob(b"just a blob")
        with pytest.raises(CorruptObject):
            store.read_commit(obj_hash)


# ============================================================
# Trees and commits
# ============================================================

class TestTrees:
    def test_order_independent(self, store):
        a = store.write_blob(b"a")
        b = store.write_blob(b"b")
        entries = [TreeEntry("b.txt", MODE_FILE, b), TreeEntry("a.txt", MODE_EXECUTABLE, a)]
        assert store.write_tree(entries) == store.write_tree(list(reversed(entries)))

    def test_roundtrip_sorted(self, store):
        blob = store.write_blob(b"data")
        sub = store.write_tree([TreeEntry("f", MODE_FILE, blob)])
        tree = store.write_tree([TreeEntry("z", MODE_FILE, blob),
                                 TreeEntry("dir", MODE_DIR, sub)])
        assert [e.name for e in store.read_tree(tree)] == ["dir", "z"]
        assert store.read_tree(tree)[0].mode == MODE_DIR
        assert not store.read_tree(tree)[0].is_file

    def test_encoding_is_binary_digest(self):
        digest = "0f" * 32
        raw = encode_tree([TreeEntry("name", MODE_FILE, digest)])
        assert raw == b"100644 name\0" + bytes.fromhex(digest)
        assert decode_tree(raw) == [TreeEntry("name", MODE_FILE, digest)]

    @pytest.mark.parametrize("name", ["", "a/b", "nul\0byte"])
    def test_invalid_names_rejected(self, name):
        with pytest.raises(ValueError):
            encode_tree([TreeEntry(name, MODE_FILE, "00" * 32)])

    def test_duplicate_names_rejected(self):
        entry = TreeEntry("same", MODE_FILE, "00" * 32)
        with pytest.raises(ValueError):
            encode_tree([entry, entry])

    def test_dangling_entry_refused(self, store):
        with pytest.raises(ObjectNotFound):
            store.write_tree([TreeEntry("ghost", MODE_FILE, "cd" * 32)])


class TestCommits:
    def test_text_format(self):
        commit = Commit(tree="aa" * 32, parents=("bb" * 32, "cc" * 32),
                        author="A U Thor <a@example.com>", message="two\nlines",
                        timestamp=1700000000, tz_offset=-330)
        raw = encode_commit(commit)
        assert raw.startswith(f"tree {'aa' * 32}\nparent {'bb' * 32}\n".encode())
        assert b"author A U Thor <a@example.com> 1700000000 -0530\n\ntwo\nlines" in raw
        decoded = decode_commit(raw, "dd" * 32)
        assert decoded.parents == commit.parents
        assert decoded.tz_offset == -330
        assert decoded.message == "two\nlines"
        assert decoded.obj_hash == "dd" * 32
        assert decoded.is_merge

    def test_dangling_parent_refused(self, store):
        tree = store.write_tree([])
        with pytest.raises(ObjectNotFound):
            store.write_commit(Commit(tree=tree, parents=("ee" * 32,), author="x"))


# ============================================================
# Lookup and traversal
# ============================================================

class TestResolvePrefix:
    def test_unique_prefix(self, store):
        obj_hash = store.write_blob(b"prefix me")
        assert store.resolve_prefix(obj_hash[:8]) == obj_hash
        assert store.resolve_prefix(obj_hash.upper()[:10]) == obj_hash

    def test_too_short(self, store):
        obj_hash = store.write_blob(b"short")
        with pytest.raises(ObjectNotFound):
            store.resolve_prefix(obj_hash[:3])

    def test_ambiguous(self, store):
        by_prefix = {}
        i = 0
        while True:
            obj_hash = store.write_blob(str(i).encode())
            if obj_hash[:4] in by_prefix:
                break
            by_prefix[obj_hash[:4]] = obj_hash
            i += 1
        with pytest.raises(AmbiguousObject) as exc:
            store.resolve_prefix(obj_hash[:4])
        assert obj_hash in exc.value.candidates


class TestTraversal:
    def _history(self, store):
        blob = store.write_blob(b"v1")
        tree1 = store.write_tree([TreeEntry("f", MODE_FILE, blob)])
        c1 = store.write_commit(Commit(tree=tree1, author="x", timestamp=1))
        blob2 = store.write_blob(b"v2")
        sub = store.write_tree([TreeEntry("g", MODE_FILE, blob2)])
        tree2 = store.write_tree([TreeEntry("f", MODE_FILE, blob),
                                  TreeEntry("sub", MODE_DIR, sub)])
        c2 = store.write_commit(Commit(tree=tree2, parents=(c1,), author="x", timestamp=2))
        return c1, c2, {blob, tree1, c1, blob2, sub, tree2, c2}

    def test_reachable(self, store):
        _c1, c2, everything = self._history(store)
        assert store.reachable_objects(c2) == everything

    def test_missing_objects_dependencies_first(self, store):
        _c1, c2, everything = self._history(store)
        order = store.missing_objects(c2, lambda h: False)
        assert set(order) == everything
        assert len(order) == len(everything)
        position = {h: i for i, h in enumerate(order)}
        for obj_hash in order:
            kind, _ = store.get(obj_hash)
            if kind == BLOB:
                continue
            children = store._children(obj_hash)
            assert all(position[c] < position[obj_hash] for c in children)
        assert order[-1] == c2

    def test_missing_objects_skips_present_closure(self, store):
        c1, c2, everything = self._history(store)
        have = store.reachable_objects(c1)
        order = store.missing_objects(c2, lambda h: h in have)
        assert set(order) == everything - have
