"""Command layer: a closed set of typed command variants and one dispatch table.

Each variant is a frozen dataclass holding its parsed input. ``dispatch``
looks the variant's type up in ``HANDLERS``, runs it against the
repository found from ``cwd``, and folds any GroveError into the
CommandResult so callers only ever deal with an exit code and a value.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from grove.errors import EXIT_OK, GroveError, MergeConflict
from grove.repository import DEFAULT_BRANCH, Repository
from grove.stash import StashStore
from grove import sync


logger = logging.getLogger(__name__)


# ============================================================
# Command variants
# ============================================================

@dataclass(frozen=True)
class InitCommand:
    path: str = "."
    branch: str = DEFAULT_BRANCH


@dataclass(frozen=True)
class CloneCommand:
    source: str
    dest: str


@dataclass(frozen=True)
class StatusCommand:
    pass


@dataclass(frozen=True)
class AddCommand:
    paths: Tuple[str, ...]


@dataclass(frozen=True)
class CommitCommand:
    message: Optional[str] = None
    author: Optional[str] = None


@dataclass(frozen=True)
class LogCommand:
    max_count: Optional[int] = None
    start: str = "HEAD"


@dataclass(frozen=True)
class DiffCommand:
    paths: Tuple[str, ...] = ()
    staged: bool = False


@dataclass(frozen=True)
class BranchCommand:
    name: Optional[str] = None
    delete: bool = False
    start: Optional[str] = None


@dataclass(frozen=True)
class CheckoutCommand:
    target: str
    create: bool = False


@dataclass(frozen=True)
class MergeCommand:
    source: Optional[str] = None
    abort: bool = False
    message: Optional[str] = None


@dataclass(frozen=True)
class RemoteCommand:
    action: str = "list"  # list | add | remove | set-url
    name: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class PushCommand:
    remote: str = sync.DEFAULT_REMOTE
    branch: Optional[str] = None  # defaults to the current branch
    force: bool = False


@dataclass(frozen=True)
class PullCommand:
    remote: str = sync.DEFAULT_REMOTE
    branch: Optional[str] = None
    ff_only: bool = False


@dataclass(frozen=True)
class StashCommand:
    action: str = "push"  # push | pop | apply | list | show | drop | clear
    message: Optional[str] = None
    position: int = 0


@dataclass
class CommandResult:
    exit_code: int = EXIT_OK
    value: Any = None
    error: Optional[GroveError] = None
    messages: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK


# ============================================================
# Handlers
# ============================================================

def _open(cwd: str) -> Repository:
    return Repository.discover(cwd)


def _target_branch(repo: Repository, branch: Optional[str]) -> str:
    branch = branch or repo.current_branch()
    if branch is None:
        raise GroveError("you are not currently on a branch; name one explicitly")
    return branch


def _init(cmd: InitCommand, cwd: str) -> CommandResult:
    root = os.path.join(cwd, cmd.path)
    os.makedirs(root, exist_ok=True)
    repo = Repository.init(root, branch=cmd.branch)
    return CommandResult(value=repo,
                         messages=[f"Initialized grove repository in {repo.git_dir}"])


def _clone(cmd: CloneCommand, cwd: str) -> CommandResult:
    repo = sync.clone(os.path.join(cwd, cmd.source), os.path.join(cwd, cmd.dest))
    return CommandResult(value=repo, messages=[f"Cloning into '{cmd.dest}'... done."])


def _status(cmd: StatusCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    return CommandResult(value=(repo.head(), repo.status(), repo.merge_head()))


def _add(cmd: AddCommand, cwd: str) -> CommandResult:
    return CommandResult(value=_open(cwd).add(cmd.paths, cwd=cwd))


def _commit(cmd: CommitCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    commit_hash = repo.commit(cmd.message, author=cmd.author)
    commit = repo.store.read_commit(commit_hash)
    branch = repo.current_branch() or "detached HEAD"
    return CommandResult(value=commit,
                         messages=[f"[{branch} {commit_hash[:10]}] {commit.summary()}"])


def _log(cmd: LogCommand, cwd: str) -> CommandResult:
    return CommandResult(value=_open(cwd).log(max_count=cmd.max_count, start=cmd.start))


def _diff(cmd: DiffCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    return CommandResult(value=repo.working_diff(list(cmd.paths), staged=cmd.staged, cwd=cwd))


def _branch(cmd: BranchCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    if cmd.name is None:
        return CommandResult(value=(repo.current_branch(), sorted(repo.branches())))
    if cmd.delete:
        tip = repo.refs.delete_branch(cmd.name)
        return CommandResult(messages=[f"Deleted branch {cmd.name} (was {tip[:10]})."])
    repo.branch(cmd.name, cmd.start)
    return CommandResult(messages=[f"Created branch {cmd.name}"])


def _checkout(cmd: CheckoutCommand, cwd: str) -> CommandResult:
    repo = _open(cwd).checkout(cmd.target, create=cmd.create)
    head = repo.head()
    if head.branch:
        verb = "Switched to a new branch" if cmd.create else "Switched to branch"
        return CommandResult(messages=[f"{verb} '{head.branch}'"])
    return CommandResult(messages=[f"HEAD is now at {head.commit[:10]}"])


def _merge(cmd: MergeCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    if cmd.abort:
        repo.merge_abort()
        return CommandResult(messages=["Merge aborted."])
    if not cmd.source:
        raise GroveError("merge: no source branch given")
    result = repo.merge(cmd.source, message=cmd.message)
    if result.up_to_date:
        text = "Already up to date."
    elif result.fast_forward:
        text = f"Fast-forward to {result.commit[:10]}"
    else:
        text = f"Merge made by the three-way strategy: {result.commit[:10]}"
    return CommandResult(value=result, messages=[text])


def _remote(cmd: RemoteCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    if cmd.action == "list":
        return CommandResult(value=repo.config.remotes())
    if not cmd.name:
        raise GroveError(f"remote {cmd.action}: missing remote name")
    if cmd.action == "add":
        if not cmd.url:
            raise GroveError("remote add: missing url")
        repo.config.add_remote(cmd.name, cmd.url)
    elif cmd.action == "remove":
        repo.config.remove_remote(cmd.name)
        repo.refs.delete_remote_refs(cmd.name)
    elif cmd.action == "set-url":
        if not cmd.url:
            raise GroveError("remote set-url: missing url")
        repo.config.set_remote_url(cmd.name, cmd.url)
    else:
        raise GroveError(f"unknown remote action: {cmd.action}")
    return CommandResult()


def _push(cmd: PushCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    branch = _target_branch(repo, cmd.branch)
    remote = sync.open_remote(repo, cmd.remote)
    result = sync.push(repo, remote, branch, remote_name=cmd.remote, force=cmd.force)
    if result.up_to_date:
        text = "Everything up-to-date"
    else:
        old = result.old[:10] if result.old else "[new branch]"
        text = f"{old} -> {result.new[:10]}  {branch} -> {cmd.remote}/{branch}"
        if result.forced:
            text += " (forced update)"
    return CommandResult(value=result, messages=[text])


def _pull(cmd: PullCommand, cwd: str) -> CommandResult:
    repo = _open(cwd)
    remote = sync.open_remote(repo, cmd.remote)
    result = sync.pull(repo, remote, cmd.remote, _target_branch(repo, cmd.branch),
                       ff_only=cmd.ff_only)
    if result.up_to_date:
        text = "Already up to date."
    elif result.fast_forward:
        text = f"Fast-forward to {result.commit[:10]}"
    else:
        text = f"Merge made by the three-way strategy: {result.commit[:10]}"
    return CommandResult(value=result, messages=[text])


def _stash(cmd: StashCommand, cwd: str) -> CommandResult:
    stash = StashStore(_open(cwd))
    if cmd.action == "push":
        entry = stash.push(cmd.message)
        if entry is None:
            return CommandResult(messages=["No local changes to save"])
        return CommandResult(value=entry,
                             messages=[f"Saved working directory and index state {entry.message}"])
    if cmd.action in ("pop", "apply"):
        entry = stash.pop(cmd.position) if cmd.action == "pop" else stash.apply(cmd.position)
        text = f"Applied stash@{{{cmd.position}}} ({entry.commit[:10]})"
        if cmd.action == "pop":
            text = f"Dropped stash@{{{cmd.position}}} ({entry.commit[:10]})"
        return CommandResult(value=entry, messages=[text])
    if cmd.action == "list":
        return CommandResult(value=stash.list())
    if cmd.action == "show":
        return CommandResult(value=stash.show(cmd.position))
    if cmd.action == "drop":
        entry = stash.drop(cmd.position)
        return CommandResult(value=entry, messages=[
            f"Dropped stash@{{{cmd.position}}} ({entry.commit[:10]})"])
    if cmd.action == "clear":
        return CommandResult(value=stash.clear())
    raise GroveError(f"unknown stash action: {cmd.action}")


HANDLERS: Dict[type, Callable[[Any, str], CommandResult]] = {
    InitCommand: _init,
    CloneCommand: _clone,
    StatusCommand: _status,
    AddCommand: _add,
    CommitCommand: _commit,
    LogCommand: _log,
    DiffCommand: _diff,
    BranchCommand: _branch,
    CheckoutCommand: _checkout,
    MergeCommand: _merge,
    RemoteCommand: _remote,
    PushCommand: _push,
    PullCommand: _pull,
    StashCommand: _stash,
}


def dispatch(command: Any, cwd: Optional[str] = None) -> CommandResult:
    """Run one command variant; errors come back inside the result."""
    handler = HANDLERS.get(type(command))
    if handler is None:
        raise TypeError(f"not a grove command: {command!r}")
    try:
        return handler(command, os.path.abspath(cwd or os.getcwd()))
    except MergeConflict as e:
        logger.debug("%s stopped on %d conflicts", e.action, len(e.conflicts))
        return CommandResult(exit_code=e.exit_code, value=e.conflicts, error=e)
    except GroveError as e:
        logger.debug("command %s failed: %s", type(command).__name__, e)
        return CommandResult(exit_code=e.exit_code, error=e)
