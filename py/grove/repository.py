"""Repository handle: one working tree, its ``.grove`` directory and open stores.

Every operation goes through an explicit ``Repository`` instance; nothing
is kept in process-wide state. The class implements the grove protocol
layers (Snapshotable, Branchable, Graphable, Mergeable) on top of the
object store, reference manager and index.
"""

import heapq
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Set

from grove.config import RepoConfig
from grove.diff import FileDiff, diff_flats, diff_worktree
from grove.errors import (
    GroveError, MergeConflict, MergeInProgress, NotARepository,
    NothingToCommit, UncommittedChanges, UnmergedPaths,
)
from grove.fsutil import atomic_write, read_bytes, remove_file
from grove.index import Index
from grove.merge import (
    ancestors as _ancestors, checkout_flat, common_ancestor as _common_ancestor,
    is_ancestor as _is_ancestor, materialize, merge_trees,
)
from grove.objects import ObjectStore
from grove.protocols import (
    Branchable, Graphable, Mergeable, Snapshotable, SystemIdentity,
)
from grove.refs import HEAD, RefManager, branch_ref
from grove.snapshot import build_tree, commit_flat, commit_tree
from grove.types import (
    Capabilities, Commit, Conflict, FileStatus, FlatTree, Head,
    MergeResult, StatusEntry,
)
from grove.worktree import REPO_DIR_NAME, WorkTree


logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
MERGE_HEAD = "MERGE_HEAD"
MERGE_MSG = "MERGE_MSG"


class Repository(SystemIdentity, Snapshotable, Branchable, Graphable, Mergeable):
    """A grove repository rooted at ``root``."""

    def __init__(self, root: str, system_name: Optional[str] = None):
        self.root = os.path.abspath(root)
        self.git_dir = os.path.join(self.root, REPO_DIR_NAME)
        if not os.path.isfile(os.path.join(self.git_dir, HEAD)):
            raise NotARepository(self.root)
        self._system_name = system_name
        self.store = ObjectStore(os.path.join(self.git_dir, "objects"))
        self.refs = RefManager(self.git_dir, self.store)
        self.worktree = WorkTree(self.root)
        self.index = Index(os.path.join(self.git_dir, "index"),
                           self.store, self.worktree)
        self.config = RepoConfig(os.path.join(self.git_dir, "config"))

    @classmethod
    def init(cls, root: str, branch: str = DEFAULT_BRANCH) -> "Repository":
        """Create (or reopen) a repository with an unborn ``branch``."""
        git_dir = os.path.join(os.path.abspath(root), REPO_DIR_NAME)
        if os.path.isfile(os.path.join(git_dir, HEAD)):
            logger.info("reinitialized existing repository in %s", git_dir)
            return cls(root)
        for sub in ("objects", "refs/heads", "refs/remotes"):
            os.makedirs(os.path.join(git_dir, *sub.split("/")), exist_ok=True)
        RepoConfig.create(os.path.join(git_dir, "config"))
        atomic_write(os.path.join(git_dir, HEAD),
                     f"ref: {branch_ref(branch)}\n".encode("utf-8"))
        repo = cls(root)
        repo.index.save()
        logger.info("initialized empty repository in %s", git_dir)
        return repo

    @classmethod
    def discover(cls, start: Optional[str] = None) -> "Repository":
        """Open the repository containing ``start`` (default: cwd)."""
        current = os.path.abspath(start or os.getcwd())
        while True:
            if os.path.isfile(os.path.join(current, REPO_DIR_NAME, HEAD)):
                return cls(current)
            parent = os.path.dirname(current)
            if parent == current:
                raise NotARepository(start or os.getcwd())
            current = parent

    # -- SystemIdentity --

    def system_id(self) -> str:
        return self._system_name or f"grove:{self.root}"

    def system_type(self) -> str:
        return "grove"

    def capabilities(self) -> Capabilities:
        return Capabilities(
            snapshotable=True,
            branchable=True,
            graphable=True,
            mergeable=True,
        )

    # -- state helpers --

    def head(self) -> Head:
        return self.refs.read_head()

    def head_flat(self) -> FlatTree:
        return commit_flat(self.store, self.head().commit)

    def _state_path(self, name: str) -> str:
        return os.path.join(self.git_dir, name)

    def merge_head(self) -> Optional[str]:
        raw = read_bytes(self._state_path(MERGE_HEAD))
        return raw.decode("ascii").strip() if raw else None

    def _clear_merge_state(self) -> None:
        remove_file(self._state_path(MERGE_HEAD))
        remove_file(self._state_path(MERGE_MSG))

    def check_untracked(self, current: FlatTree, incoming: FlatTree) -> None:
        """Refuse to clobber untracked files with different content."""
        blocked = []
        for path, (_mode, obj_hash) in incoming.items():
            if path in current or path in self.index:
                continue
            working = self.index.working_hash(path)
            if working is not None and working != obj_hash:
                blocked.append(path)
        if blocked:
            raise UncommittedChanges(blocked, "overwrite untracked files")

    def reset_hard(self, target: FlatTree) -> None:
        """Make index and tracked working files match ``target`` exactly."""
        for path in set(self.index.entries) - set(target):
            self.worktree.remove(path)
        self.index.reset_to({})
        checkout_flat(self.store, self.index, self.worktree, {}, target)
        self.index.save()

    # -- staging --

    def add(self, paths: Iterable[str], cwd: Optional[str] = None) -> List[str]:
        rels = [self.worktree.relpath(p, cwd or self.root) for p in paths]
        return self.index.add(rels)

    def status(self) -> List[StatusEntry]:
        return self.index.status(self.head_flat())

    # -- commits --

    def commit(self, message: Optional[str] = None, author: Optional[str] = None,
               timestamp: Optional[int] = None) -> str:
        """Snapshot the index and advance the current branch (or detached HEAD)."""
        unresolved = self.index.conflicts()
        if unresolved:
            raise UnmergedPaths([c.path for c in unresolved])
        head = self.head()
        merge_head = self.merge_head()
        if message is None and merge_head:
            message = (read_bytes(self._state_path(MERGE_MSG)) or b"").decode("utf-8")
        if not message:
            raise GroveError("aborting commit due to empty commit message")
        tree = build_tree(self.store, self.index.as_flat())
        parents = [head.commit] if head.commit else []
        if merge_head:
            parents.append(merge_head)
        elif head.commit is None and not len(self.index):
            raise NothingToCommit()
        elif head.commit and self.store.read_commit(head.commit).tree == tree:
            raise NothingToCommit()
        commit_hash = commit_tree(self.store, tree, parents,
                                  self.config.author(author), message, timestamp)
        self.refs.update(HEAD, commit_hash, expected_old=head.commit)
        self._clear_merge_state()
        logger.info("[%s %s] %s", head.branch or "detached HEAD",
                    commit_hash[:10], message.split("\n", 1)[0])
        return commit_hash

    def log(self, max_count: Optional[int] = None, start: str = HEAD,
            exclude: Optional[str] = None) -> List[Commit]:
        """Commits reachable from ``start``, newest first."""
        tip = self.refs.resolve(start)
        hidden: Set[str] = set(_ancestors(self.store, exclude)) if exclude else set()
        result: List[Commit] = []
        seen = {tip}
        first = self.store.read_commit(tip)
        heap = [(-first.timestamp, 0, first)]
        counter = 1
        while heap and (max_count is None or len(result) < max_count):
            _, _, commit = heapq.heappop(heap)
            if commit.obj_hash not in hidden:
                result.append(commit)
            for parent in commit.parents:
                if parent not in seen:
                    seen.add(parent)
                    parent_commit = self.store.read_commit(parent)
                    heapq.heappush(heap, (-parent_commit.timestamp, counter, parent_commit))
                    counter += 1
        return result

    # -- Snapshotable --

    def snapshot_id(self) -> str:
        return self.refs.resolve(HEAD)

    def parent_ids(self, snap_id: Optional[str] = None) -> Set[str]:
        commit = self.refs.resolve(snap_id or HEAD)
        return set(self.store.read_commit(commit).parents)

    def as_of(self, snap_id: str) -> Dict[str, bytes]:
        flat = commit_flat(self.store, self.refs.resolve(snap_id))
        return {path: self.store.read_blob(obj_hash)
                for path, (_mode, obj_hash) in sorted(flat.items())}

    def snapshot_meta(self, snap_id: str) -> Dict[str, Any]:
        commit = self.store.read_commit(self.refs.resolve(snap_id))
        return {
            "snapshot-id": commit.obj_hash,
            "parent-ids": set(commit.parents),
            "tree": commit.tree,
            "author": commit.author,
            "timestamp": commit.timestamp,
            "message": commit.message,
        }

    # -- Branchable --

    def branches(self) -> Set[str]:
        return set(self.refs.branches())

    def current_branch(self) -> Optional[str]:
        return self.refs.current_branch()

    def branch(self, name: str, from_ref: Optional[str] = None) -> "Repository":
        self.refs.create_branch(name, self.refs.resolve(from_ref or HEAD))
        return self

    def delete_branch(self, name: str) -> "Repository":
        self.refs.delete_branch(name)
        return self

    def checkout(self, name: str, create: bool = False) -> "Repository":
        """Switch HEAD to a branch (or detach at a commit), carrying local edits.

        Local changes survive when the target leaves their paths untouched;
        otherwise the switch is refused with UncommittedChanges.
        """
        if self.merge_head():
            raise MergeInProgress()
        head = self.head()
        if create and head.commit is None:
            self.refs.set_head_branch(name)
            return self
        if create:
            self.branch(name)
        if self.refs.read_ref(branch_ref(name)) is not None:
            target_commit: Optional[str] = self.refs.resolve(branch_ref(name))
            target_branch: Optional[str] = name
        else:
            target_commit = self.refs.resolve(name)
            target_branch = None
        current = commit_flat(self.store, head.commit)
        target = commit_flat(self.store, target_commit)
        blocked = [p for p in self.index.dirty_paths(current)
                   if current.get(p) != target.get(p)]
        if blocked:
            raise UncommittedChanges(blocked, f"checkout {name}")
        self.check_untracked(current, {p: v for p, v in target.items()
                                        if current.get(p) != v})
        changed = checkout_flat(self.store, self.index, self.worktree, current, target)
        self.index.save()
        if target_branch is not None:
            self.refs.set_head_branch(target_branch)
        else:
            self.refs.set_head_detached(target_commit)
        logger.info("switched to %s (%d paths updated)",
                    target_branch or target_commit[:10], len(changed))
        return self

    # -- Graphable --

    def history(self, limit: Optional[int] = None,
                since: Optional[str] = None) -> List[str]:
        exclude = self.refs.resolve(since) if since else None
        return [c.obj_hash for c in self.log(max_count=limit, exclude=exclude)]

    def ancestors(self, snap_id: str) -> List[str]:
        commit = self.refs.resolve(snap_id)
        return [c for c in _ancestors(self.store, commit) if c != commit]

    def is_ancestor(self, a: str, b: str) -> bool:
        a_hash, b_hash = self.refs.resolve(a), self.refs.resolve(b)
        return a_hash != b_hash and _is_ancestor(self.store, a_hash, b_hash)

    def common_ancestor(self, a: str, b: str) -> Optional[str]:
        return _common_ancestor(self.store, self.refs.resolve(a), self.refs.resolve(b))

    # -- Mergeable --

    def merge(self, source: str, message: Optional[str] = None) -> MergeResult:
        """Merge ``source`` into the current branch.

        Fast-forwards when possible. A true merge with zero conflicts
        commits with two parents; otherwise the conflict state is written to
        index and working tree and MergeConflict is raised.
        """
        if self.merge_head():
            raise MergeInProgress()
        head = self.head()
        theirs = self.refs.resolve(source)
        current = commit_flat(self.store, head.commit)
        dirty = self.index.dirty_paths(current)
        if dirty:
            raise UncommittedChanges(dirty, f"merge {source}")

        base = _common_ancestor(self.store, head.commit, theirs) if head.commit else None
        if head.commit is not None and base == theirs:
            logger.info("already up to date with %s", source)
            return MergeResult(commit=head.commit, up_to_date=True, base=base)
        if head.commit is None or base == head.commit:
            target = commit_flat(self.store, theirs)
            self.check_untracked(current, target)
            checkout_flat(self.store, self.index, self.worktree, current, target)
            self.index.save()
            self.refs.update(HEAD, theirs, expected_old=head.commit)
            logger.info("fast-forward %s -> %s", (head.commit or "(unborn)")[:10],
                        theirs[:10])
            return MergeResult(commit=theirs, fast_forward=True, base=base)

        theirs_flat = commit_flat(self.store, theirs)
        outcome = merge_trees(commit_flat(self.store, base), current, theirs_flat)
        incoming = dict(outcome.merged)
        for conflict in outcome.conflicts:
            incoming.setdefault(conflict.path, (0, ""))
        self.check_untracked(current, incoming)
        ours_label = head.branch or "HEAD"
        materialize(self.store, self.index, self.worktree, current, outcome,
                    ours_label, source)
        if message is None:
            message = f"Merge {source} into {ours_label}"
        if outcome.conflicts:
            atomic_write(self._state_path(MERGE_HEAD), f"{theirs}\n".encode("ascii"))
            atomic_write(self._state_path(MERGE_MSG), message.encode("utf-8"))
            raise MergeConflict(outcome.conflicts)

        tree = build_tree(self.store, self.index.as_flat())
        commit_hash = commit_tree(self.store, tree, [head.commit, theirs],
                                  self.config.author(), message)
        self.refs.update(HEAD, commit_hash, expected_old=head.commit)
        logger.info("merged %s into %s as %s", source, ours_label, commit_hash[:10])
        return MergeResult(commit=commit_hash, base=base)

    def merge_abort(self) -> None:
        """Drop an in-progress merge, restoring HEAD's tree."""
        if not self.merge_head():
            raise GroveError("there is no merge to abort")
        self.reset_hard(self.head_flat())
        self._clear_merge_state()

    def conflicts(self, a: str, b: str) -> List[Conflict]:
        a_hash, b_hash = self.refs.resolve(a), self.refs.resolve(b)
        base = _common_ancestor(self.store, a_hash, b_hash)
        return merge_trees(commit_flat(self.store, base),
                           commit_flat(self.store, a_hash),
                           commit_flat(self.store, b_hash)).conflicts

    def diff(self, a: str, b: str) -> List[FileDiff]:
        return diff_flats(self.store, commit_flat(self.store, self.refs.resolve(a)),
                          commit_flat(self.store, self.refs.resolve(b)))

    def working_diff(self, paths: Optional[List[str]] = None,
                     staged: bool = False, cwd: Optional[str] = None) -> List[FileDiff]:
        """Unstaged (index vs working tree) or staged (HEAD vs index) changes."""
        rels = [self.worktree.relpath(p, cwd or self.root) for p in paths or []]
        if staged:
            return diff_flats(self.store, self.head_flat(), self.index.as_flat(), rels)
        return diff_worktree(self.index, rels)

    def is_clean(self) -> bool:
        return all(s.clean or s.staged == FileStatus.UNTRACKED for s in self.status())


def create(root: str, system_name: Optional[str] = None) -> Repository:
    """Open an existing repository.

    Usage:
        repo = create("/path/to/worktree")
        repo = create("/path/to/worktree", system_name="my-repo")
    """
    return Repository(root, system_name)
