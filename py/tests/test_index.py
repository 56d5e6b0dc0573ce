"""Tests for staging, status classification and change detection."""

import json
import os

import pytest

from grove.errors import PathNotFound, SchemaVersionError
from grove.types import MODE_EXECUTABLE, MODE_FILE, FileStatus


def _write(repo, rel, text):
    path = os.path.join(repo.root, *rel.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)


def _status_map(repo):
    return {s.path: (s.staged, s.unstaged) for s in repo.status()}


class TestStatus:
    def test_every_classification(self, repo):
        _write(repo, "kept.txt", "same\n")
        _write(repo, "edited.txt", "v1\n")
        _write(repo, "gone.txt", "bye\n")
        repo.add(["kept.txt", "edited.txt", "gone.txt"])
        repo.commit("base")

        _write(repo, "edited.txt", "v2 is longer\n")
        os.remove(os.path.join(repo.root, "gone.txt"))
        _write(repo, "new.txt", "staged\n")
        repo.add(["new.txt"])
        _write(repo, "loose.txt", "untracked\n")

        status = _status_map(repo)
        assert status["kept.txt"] == (FileStatus.UNMODIFIED, FileStatus.UNMODIFIED)
        assert status["edited.txt"] == (FileStatus.UNMODIFIED, FileStatus.MODIFIED)
        assert status["gone.txt"] == (FileStatus.UNMODIFIED, FileStatus.DELETED)
        assert status["new.txt"] == (FileStatus.ADDED, FileStatus.UNMODIFIED)
        assert status["loose.txt"] == (FileStatus.UNTRACKED, FileStatus.UNTRACKED)

    def test_staged_modification(self, repo):
        _write(repo, "f.txt", "one\n")
        repo.add(["f.txt"])
        repo.commit("base")
        _write(repo, "f.txt", "two\n")
        repo.add(["f.txt"])
        assert _status_map(repo)["f.txt"] == (FileStatus.MODIFIED, FileStatus.UNMODIFIED)

    def test_clean_after_commit(self, repo):
        _write(repo, "f.txt", "one\n")
        repo.add(["f.txt"])
        repo.commit("base")
        assert all(s.clean for s in repo.status())
        assert repo.is_clean()

    def test_same_size_edit_detected(self, repo):
        _write(repo, "f.txt", "aaa")
        repo.add(["f.txt"])
        repo.commit("base")
        entry = repo.index.get("f.txt")
        _write(repo, "f.txt", "bbb")
        path = os.path.join(repo.root, "f.txt")
        os.utime(path, ns=(entry.mtime_ns, entry.mtime_ns))
        assert repo.index.is_modified("f.txt")

    def test_mode_change_detected(self, repo):
        _write(repo, "run.sh", "#!/bin/sh\n")
        repo.add(["run.sh"])
        assert repo.index.get("run.sh").mode == MODE_FILE
        os.chmod(os.path.join(repo.root, "run.sh"), 0o755)
        assert repo.index.is_modified("run.sh")
        repo.add(["run.sh"])
        assert repo.index.get("run.sh").mode == MODE_EXECUTABLE


class TestAdd:
    def test_directory_recurses(self, repo):
        _write(repo, "dir/x.txt", "x")
        _write(repo, "dir/sub/y.txt", "y")
        touched = repo.add(["dir"])
        assert touched == ["dir/sub/y.txt", "dir/x.txt"]
        assert repo.index.paths() == ["dir/sub/y.txt", "dir/x.txt"]

    def test_add_relative_to_cwd(self, repo):
        _write(repo, "dir/x.txt", "x")
        repo.add(["x.txt"], cwd=os.path.join(repo.root, "dir"))
        assert "dir/x.txt" in repo.index

    def test_deleted_file_stages_removal(self, repo):
        _write(repo, "dir/x.txt", "x")
        _write(repo, "dir/y.txt", "y")
        repo.add(["dir"])
        repo.commit("base")
        os.remove(os.path.join(repo.root, "dir", "x.txt"))
        repo.add(["dir/x.txt"])
        assert "dir/x.txt" not in repo.index
        assert _status_map(repo)["dir/x.txt"] == (FileStatus.DELETED, FileStatus.UNMODIFIED)

    def test_directory_add_stages_removals(self, repo):
        _write(repo, "dir/x.txt", "x")
        _write(repo, "dir/y.txt", "y")
        repo.add(["dir"])
        repo.commit("base")
        os.remove(os.path.join(repo.root, "dir", "x.txt"))
        repo.add(["dir"])
        assert repo.index.paths() == ["dir/y.txt"]

    def test_unknown_path(self, repo):
        with pytest.raises(PathNotFound):
            repo.add(["nowhere.txt"])

    def test_outside_repository(self, repo, tmp_path):
        outside = tmp_path / "elsewhere.txt"
        outside.write_text("x")
        with pytest.raises(PathNotFound):
            repo.add([str(outside)])

    def test_ignored_files_skipped(self, repo):
        _write(repo, ".groveignore", "*.log\nbuild/\n")
        _write(repo, "app.log", "noise")
        _write(repo, "build/out.bin", "artifact")
        _write(repo, "src/main.py", "print()\n")
        repo.add(["."])
        assert repo.index.paths() == [".groveignore", "src/main.py"]
        assert "app.log" not in _status_map(repo)

    def test_tracked_file_matching_ignore_stays_tracked(self, repo):
        _write(repo, "keep.log", "kept on purpose\n")
        repo.add(["keep.log"])
        repo.commit("track log")
        _write(repo, ".groveignore", "*.log\n")
        repo.add([".groveignore"])
        repo.commit("ignore logs")

        assert _status_map(repo)["keep.log"] == (FileStatus.UNMODIFIED,
                                                 FileStatus.UNMODIFIED)
        assert repo.is_clean()
        _write(repo, "keep.log", "edited\n")
        assert _status_map(repo)["keep.log"] == (FileStatus.UNMODIFIED,
                                                 FileStatus.MODIFIED)

    def test_file_replaced_by_directory(self, repo):
        _write(repo, "a", "file\n")
        repo.add(["a"])
        repo.commit("file")
        os.remove(os.path.join(repo.root, "a"))
        _write(repo, "a/b", "nested\n")
        repo.add(["a"])
        assert repo.index.paths() == ["a/b"]


class TestPersistence:
    def test_document_layout(self, repo):
        _write(repo, "f.txt", "content")
        repo.add(["f.txt"])
        with open(repo.index.path) as f:
            doc = json.load(f)
        assert doc["version"] == 1
        entry = doc["entries"]["f.txt"]
        assert entry["hash"] == repo.index.get("f.txt").obj_hash
        assert entry["mode"] == MODE_FILE
        assert entry["size"] == len("content")

    def test_reload(self, repo):
        _write(repo, "f.txt", "content")
        repo.add(["f.txt"])
        before = repo.index.as_flat()
        repo.index.load()
        assert repo.index.as_flat() == before

    def test_unknown_version_refused(self, repo):
        with open(repo.index.path, "w") as f:
            json.dump({"version": 99, "entries": {}}, f)
        with pytest.raises(SchemaVersionError):
            repo.index.load()

    def test_unreadable_document_refused(self, repo):
        with open(repo.index.path, "w") as f:
            f.write("{not json")
        with pytest.raises(SchemaVersionError):
            repo.index.load()
