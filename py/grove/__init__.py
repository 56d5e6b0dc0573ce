"""Grove - a local, content-addressed version-control engine.

Object store, reference manager, index, snapshot builder, three-way merge,
filesystem-to-filesystem sync and a stash, behind one Repository handle.
"""

__version__ = "0.1.0"

from grove.protocols import (
    Snapshotable,
    Branchable,
    Graphable,
    Mergeable,
    SystemIdentity,
)
from grove.types import Capabilities, Commit, Conflict, Head, MergeResult
from grove.errors import GroveError, MergeConflict
from grove.repository import Repository
