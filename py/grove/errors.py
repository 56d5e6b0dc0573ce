"""Exception taxonomy for grove.

Every error carries an ``exit_code`` so the command layer can map it to a
process exit status without a lookup table:

    0  success
    1  merge or stash conflict (repository left usable)
    2  structural failure (not a repository, unknown ref, corrupt object, ...)
"""

from typing import Any, List, Optional, Sequence


EXIT_OK = 0
EXIT_CONFLICT = 1
EXIT_FATAL = 2


class GroveError(Exception):
    """Base class for all grove failures."""
    exit_code = EXIT_FATAL


# ============================================================
# Repository / object store
# ============================================================

class NotARepository(GroveError):
    def __init__(self, path: Any):
        super().__init__(f"not a grove repository (or any parent): {path}")
        self.path = path


class ObjectNotFound(GroveError):
    def __init__(self, obj_hash: str):
        super().__init__(f"object not found: {obj_hash}")
        self.obj_hash = obj_hash


class AmbiguousObject(GroveError):
    def __init__(self, prefix: str, candidates: Sequence[str]):
        super().__init__(
            f"short hash {prefix} is ambiguous ({len(candidates)} candidates)")
        self.prefix = prefix
        self.candidates = list(candidates)


class CorruptObject(GroveError):
    """Stored bytes do not decode to the object their path claims."""

    def __init__(self, obj_hash: str, reason: str):
        super().__init__(f"corrupt object {obj_hash}: {reason}")
        self.obj_hash = obj_hash
        self.reason = reason


class StoreIOError(GroveError):
    """Filesystem failure, always surfaced with the offending path."""

    def __init__(self, path: Any, cause: OSError):
        super().__init__(f"I/O error on {path}: {cause.strerror or cause}")
        self.path = path
        self.cause = cause


class LockError(GroveError):
    def __init__(self, path: Any):
        super().__init__(
            f"unable to lock {path}: another grove process may be running")
        self.path = path


class SchemaVersionError(GroveError):
    def __init__(self, what: str, version: Any):
        super().__init__(f"unsupported {what} format version: {version!r}")
        self.what = what
        self.version = version


# ============================================================
# References
# ============================================================

class RefNotFound(GroveError):
    def __init__(self, name: str):
        super().__init__(f"unknown reference: {name}")
        self.name = name


class RefConflict(GroveError):
    """Compare-and-swap on a reference lost against a concurrent writer."""

    def __init__(self, name: str, expected: Optional[str], actual: Optional[str]):
        super().__init__(
            f"reference {name} moved: expected {expected or '(none)'}, "
            f"found {actual or '(none)'}")
        self.name = name
        self.expected = expected
        self.actual = actual


class InvalidRefName(GroveError):
    def __init__(self, name: str):
        super().__init__(f"invalid reference name: {name!r}")
        self.name = name


class BranchExists(GroveError):
    def __init__(self, name: str):
        super().__init__(f"branch already exists: {name}")
        self.name = name


class BranchError(GroveError):
    pass


class RemoteNotFound(GroveError):
    def __init__(self, name: str):
        super().__init__(f"no such remote: {name}")
        self.name = name


# ============================================================
# Working tree / index
# ============================================================

class PathNotFound(GroveError):
    def __init__(self, path: str):
        super().__init__(f"pathspec '{path}' did not match any files")
        self.path = path


class UncommittedChanges(GroveError):
    """Operation would silently discard uncommitted work."""

    def __init__(self, paths: Sequence[str], action: str = "continue"):
        listed = ", ".join(sorted(paths)[:10])
        super().__init__(
            f"cannot {action}: uncommitted changes would be lost: {listed}")
        self.paths = sorted(paths)
        self.action = action


class UnmergedPaths(GroveError):
    def __init__(self, paths: Sequence[str]):
        super().__init__(
            "unresolved conflicts in: " + ", ".join(sorted(paths)))
        self.paths = sorted(paths)


class NothingToCommit(GroveError):
    def __init__(self) -> None:
        super().__init__("nothing to commit, working tree clean")


# ============================================================
# Merge / sync / stash
# ============================================================

class MergeConflict(GroveError):
    """Non-fatal: the conflict set has been written to index and working tree."""
    exit_code = EXIT_CONFLICT

    def __init__(self, conflicts: List[Any], action: str = "merge"):
        paths = ", ".join(c.path for c in conflicts)
        super().__init__(f"{action} produced conflicts in: {paths}")
        self.conflicts = conflicts
        self.action = action


class MergeInProgress(GroveError):
    def __init__(self) -> None:
        super().__init__(
            "a merge is in progress; commit the resolution or run merge --abort")


class NonFastForward(GroveError):
    def __init__(self, ref: str, current: Optional[str], proposed: str):
        super().__init__(
            f"rejected non-fast-forward update of {ref} "
            f"({(current or '')[:10]} is not an ancestor of {proposed[:10]})")
        self.ref = ref
        self.current = current
        self.proposed = proposed


class StashEmpty(GroveError):
    def __init__(self, position: int = 0):
        super().__init__(f"no stash entry at stash@{{{position}}}")
        self.position = position
