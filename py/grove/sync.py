"""Sync engine: object transfer between two local repositories.

There is no wire protocol. A "remote" is another grove repository on the
local filesystem; objects are copied store to store in dependency order
(blobs and subtrees before trees, trees and parents before commits) so an
interrupted transfer never leaves the destination referentially broken.
Ref updates are fast-forward only unless forced, and use compare-and-swap
against the value observed before the transfer.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from grove.errors import CorruptObject, GroveError, NonFastForward, RefNotFound
from grove.merge import is_ancestor
from grove.objects import ObjectStore
from grove.refs import branch_ref, remote_ref
from grove.repository import Repository
from grove.types import MergeResult


logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"


@dataclass(frozen=True)
class SyncResult:
    """One ref moved (or found already in place) by push/fetch."""
    ref: str
    old: Optional[str]
    new: str
    objects: int = 0
    forced: bool = False

    @property
    def up_to_date(self) -> bool:
        return self.old == self.new


def transfer_objects(source: ObjectStore, dest: ObjectStore, tip: str) -> int:
    """Copy the closure of ``tip`` missing from ``dest``; returns the count."""
    missing = source.missing_objects(tip, dest.exists)
    for obj_hash in missing:
        kind, content = source.get(obj_hash)
        if dest.put(kind, content) != obj_hash:
            raise CorruptObject(obj_hash, "content changed in transfer")
    if missing:
        logger.debug("transferred %d objects for %s", len(missing), tip[:12])
    return len(missing)


def open_remote(local: Repository, remote_name: str) -> Repository:
    """Repository handle for a configured remote."""
    url = local.config.remote_url(remote_name)
    if not os.path.isabs(url):
        url = os.path.join(local.root, url)
    return Repository(url)


def push(local: Repository, remote: Repository, branch: str,
         remote_name: Optional[str] = None, force: bool = False) -> SyncResult:
    """Publish ``branch`` from ``local`` into ``remote``."""
    local_tip = local.refs.read_ref(branch_ref(branch))
    if local_tip is None:
        raise RefNotFound(branch)
    remote_tip = remote.refs.read_ref(branch_ref(branch))
    if remote_tip == local_tip:
        return SyncResult(branch_ref(branch), remote_tip, local_tip)
    fast_forward = (remote_tip is None
                    or (local.store.exists(remote_tip)
                        and is_ancestor(local.store, remote_tip, local_tip)))
    if not fast_forward and not force:
        raise NonFastForward(branch_ref(branch), remote_tip, local_tip)

    copied = transfer_objects(local.store, remote.store, local_tip)
    remote.refs.update(branch_ref(branch), local_tip, expected_old=remote_tip)
    if remote.current_branch() == branch:
        logger.warning("pushed into the checked-out branch %s of %s; "
                       "its working tree was not updated", branch, remote.root)
    if remote_name:
        local.refs.update(remote_ref(remote_name, branch), local_tip)
    logger.info("push %s: %s -> %s (%d objects%s)", branch,
                (remote_tip or "(new)")[:10], local_tip[:10], copied,
                ", forced" if not fast_forward else "")
    return SyncResult(branch_ref(branch), remote_tip, local_tip, copied,
                      forced=not fast_forward)


def fetch(local: Repository, remote: Repository, remote_name: str,
          branch: Optional[str] = None) -> List[SyncResult]:
    """Copy remote branch objects and update ``remotes/<name>/<branch>``."""
    names = [branch] if branch else remote.refs.branches()
    results = []
    for name in names:
        tip = remote.refs.read_ref(branch_ref(name))
        if tip is None:
            raise RefNotFound(f"{remote_name}/{name}")
        tracking = remote_ref(remote_name, name)
        old = local.refs.read_ref(tracking)
        copied = transfer_objects(remote.store, local.store, tip)
        if old != tip:
            local.refs.update(tracking, tip)
        results.append(SyncResult(tracking, old, tip, copied))
    return results


def pull(local: Repository, remote: Repository, remote_name: str, branch: str,
         ff_only: bool = False, force: bool = False) -> MergeResult:
    """Fetch ``branch`` and integrate it into the local branch of that name."""
    fetch(local, remote, remote_name, branch)
    tracking = remote_ref(remote_name, branch)
    tip = local.refs.resolve(tracking)
    head = local.head()

    if head.branch == branch:
        if (ff_only and head.commit is not None
                and not is_ancestor(local.store, head.commit, tip)
                and not is_ancestor(local.store, tip, head.commit)):
            raise NonFastForward(branch_ref(branch), head.commit, tip)
        return local.merge(tracking, message=f"Merge {remote_name}/{branch} into {branch}")

    local_tip = local.refs.read_ref(branch_ref(branch))
    if local_tip is None:
        local.refs.create_branch(branch, tip)
        return MergeResult(commit=tip, fast_forward=True)
    if is_ancestor(local.store, tip, local_tip):
        return MergeResult(commit=local_tip, up_to_date=True)
    if not force and not is_ancestor(local.store, local_tip, tip):
        raise NonFastForward(branch_ref(branch), local_tip, tip)
    local.refs.update(branch_ref(branch), tip, expected_old=local_tip)
    return MergeResult(commit=tip, fast_forward=True)


def clone(source_path: str, dest_path: str) -> Repository:
    """New repository at ``dest_path`` tracking ``source_path`` as origin."""
    source = Repository(source_path)
    if os.path.exists(dest_path) and os.listdir(dest_path):
        raise GroveError(f"destination path '{dest_path}' already exists "
                         "and is not an empty directory")
    os.makedirs(dest_path, exist_ok=True)
    head = source.head()
    branch = head.branch or "main"
    dest = Repository.init(dest_path, branch=branch)
    dest.config.add_remote(DEFAULT_REMOTE, source.root)
    fetch(dest, source, DEFAULT_REMOTE)
    tip = source.refs.read_ref(branch_ref(branch)) if head.branch else head.commit
    if tip is not None:
        dest.refs.create_branch(branch, tip)
        dest.reset_hard(dest.head_flat())
    logger.info("cloned %s into %s", source.root, dest.root)
    return dest
