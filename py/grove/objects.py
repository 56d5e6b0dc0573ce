"""Content-addressed object store.

Objects are stored zlib-compressed at ``objects/<2 hex>/<62 hex>``. The
identity of an object is the SHA-256 of its canonical encoding::

    b"<kind> <length>\\0" + content

Reads recompute that digest and refuse to hand back bytes that do not
match the hash they were requested under.
"""

import hashlib
import logging
import os
import tempfile
import zlib
from collections import deque
from typing import Callable, Iterator, List, Optional, Set, Tuple

from grove.errors import (
    AmbiguousObject, CorruptObject, ObjectNotFound, StoreIOError,
)
from grove.types import (
    BLOB, COMMIT, OBJECT_KINDS, TREE, Commit, TreeEntry,
)


logger = logging.getLogger(__name__)

HASH_HEX_LEN = 64
SHARD_LEN = 2
MIN_PREFIX_LEN = 4


# ============================================================
# Canonical encodings
# ============================================================

def encode_object(kind: str, content: bytes) -> bytes:
    if kind not in OBJECT_KINDS:
        raise ValueError(f"unknown object kind: {kind}")
    return f"{kind} {len(content)}".encode("ascii") + b"\0" + content


def hash_object(kind: str, content: bytes) -> str:
    """Digest an object without storing it."""
    return hashlib.sha256(encode_object(kind, content)).hexdigest()


def encode_tree(entries: List[TreeEntry]) -> bytes:
    """Serialize entries sorted by name; construction order never matters."""
    out = []
    seen = set()
    for entry in sorted(entries):
        if not entry.name or "/" in entry.name or "\0" in entry.name:
            raise ValueError(f"invalid tree entry name: {entry.name!r}")
        if entry.name in seen:
            raise ValueError(f"duplicate tree entry: {entry.name}")
        seen.add(entry.name)
        out.append(f"{entry.mode:o} {entry.name}".encode("utf-8"))
        out.append(b"\0")
        out.append(bytes.fromhex(entry.obj_hash))
    return b"".join(out)


def decode_tree(content: bytes) -> List[TreeEntry]:
    entries = []
    pos = 0
    digest_len = HASH_HEX_LEN // 2
    while pos < len(content):
        nul = content.index(b"\0", pos)
        mode_str, name = content[pos:nul].decode("utf-8").split(" ", 1)
        digest = content[nul + 1:nul + 1 + digest_len]
        if len(digest) != digest_len:
            raise ValueError("truncated tree entry")
        entries.append(TreeEntry(name=name, mode=int(mode_str, 8),
                                 obj_hash=digest.hex()))
        pos = nul + 1 + digest_len
    return entries


def _format_tz(offset_minutes: int) -> str:
    sign = "-" if offset_minutes < 0 else "+"
    hours, minutes = divmod(abs(offset_minutes), 60)
    return f"{sign}{hours:02d}{minutes:02d}"


def _parse_tz(text: str) -> int:
    sign = -1 if text.startswith("-") else 1
    digits = text.lstrip("+-")
    return sign * (int(digits[:2]) * 60 + int(digits[2:4]))


def encode_commit(commit: Commit) -> bytes:
    lines = [f"tree {commit.tree}"]
    lines.extend(f"parent {p}" for p in commit.parents)
    lines.append(f"author {commit.author} {commit.timestamp} "
                 f"{_format_tz(commit.tz_offset)}")
    return ("\n".join(lines) + "\n\n" + commit.message).encode("utf-8")


def decode_commit(content: bytes, obj_hash: Optional[str] = None) -> Commit:
    text = content.decode("utf-8")
    header, _, message = text.partition("\n\n")
    tree = None
    parents = []
    author, timestamp, tz_offset = "", 0, 0
    for line in header.split("\n"):
        key, _, value = line.partition(" ")
        if key == "tree":
            tree = value
        elif key == "parent":
            parents.append(value)
        elif key == "author":
            author, stamp, tz = value.rsplit(" ", 2)
            timestamp, tz_offset = int(stamp), _parse_tz(tz)
    if tree is None:
        raise ValueError("commit without tree")
    return Commit(tree=tree, parents=tuple(parents), author=author,
                  message=message, timestamp=timestamp, tz_offset=tz_offset,
                  obj_hash=obj_hash)


# ============================================================
# Object store
# ============================================================

class ObjectStore:
    """Zlib-compressed, SHA-256 addressed objects under one directory."""

    def __init__(self, root: str):
        self.root = root

    def _path(self, obj_hash: str) -> str:
        return os.path.join(self.root, obj_hash[:SHARD_LEN], obj_hash[SHARD_LEN:])

    # -- core operations --

    def put(self, kind: str, content: bytes) -> str:
        """Store an object, returning its hash. Idempotent."""
        encoded = encode_object(kind, content)
        obj_hash = hashlib.sha256(encoded).hexdigest()
        path = self._path(obj_hash)
        if os.path.exists(path):
            return obj_hash
        shard = os.path.dirname(path)
        try:
            os.makedirs(shard, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=shard, prefix="tmp_obj_")
        except OSError as e:
            raise StoreIOError(shard, e)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(zlib.compress(encoded))
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o444)
            os.replace(tmp, path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StoreIOError(path, e)
        logger.debug("stored %s %s (%d bytes)", kind, obj_hash[:12], len(content))
        return obj_hash

    def get(self, obj_hash: str) -> Tuple[str, bytes]:
        """Read and verify an object. Returns (kind, content)."""
        path = self._path(obj_hash)
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            raise ObjectNotFound(obj_hash)
        except OSError as e:
            raise StoreIOError(path, e)
        try:
            encoded = zlib.decompress(raw)
        except zlib.error as e:
            raise CorruptObject(obj_hash, f"decompression failed: {e}")
        if hashlib.sha256(encoded).hexdigest() != obj_hash:
            raise CorruptObject(obj_hash, "hash mismatch")
        nul = encoded.find(b"\0")
        if nul < 0:
            raise CorruptObject(obj_hash, "missing header")
        try:
            kind, length = encoded[:nul].decode("ascii").split(" ")
            length = int(length)
        except ValueError:
            raise CorruptObject(obj_hash, "malformed header")
        content = encoded[nul + 1:]
        if kind not in OBJECT_KINDS or length != len(content):
            raise CorruptObject(obj_hash, "malformed header")
        return kind, content

    def exists(self, obj_hash: str) -> bool:
        return len(obj_hash) == HASH_HEX_LEN and os.path.exists(self._path(obj_hash))

    # -- typed access --

    def _get_kind(self, obj_hash: str, expected: str) -> bytes:
        kind, content = self.get(obj_hash)
        if kind != expected:
            raise CorruptObject(obj_hash, f"expected {expected}, found {kind}")
        return content

    def read_blob(self, obj_hash: str) -> bytes:
        return self._get_kind(obj_hash, BLOB)

    def read_tree(self, obj_hash: str) -> List[TreeEntry]:
        content = self._get_kind(obj_hash, TREE)
        try:
            return decode_tree(content)
        except ValueError as e:
            raise CorruptObject(obj_hash, f"bad tree: {e}")

    def read_commit(self, obj_hash: str) -> Commit:
        content = self._get_kind(obj_hash, COMMIT)
        try:
            return decode_commit(content, obj_hash)
        except ValueError as e:
            raise CorruptObject(obj_hash, f"bad commit: {e}")

    def is_commit(self, obj_hash: str) -> bool:
        if not self.exists(obj_hash):
            return False
        kind, _ = self.get(obj_hash)
        return kind == COMMIT

    def write_blob(self, content: bytes) -> str:
        return self.put(BLOB, content)

    def write_tree(self, entries: List[TreeEntry]) -> str:
        for entry in entries:
            if not self.exists(entry.obj_hash):
                raise ObjectNotFound(entry.obj_hash)
        return self.put(TREE, encode_tree(entries))

    def write_commit(self, commit: Commit) -> str:
        """Store a commit whose tree and parents are already present."""
        for ref in (commit.tree,) + tuple(commit.parents):
            if not self.exists(ref):
                raise ObjectNotFound(ref)
        return self.put(COMMIT, encode_commit(commit))

    # -- lookup --

    def resolve_prefix(self, prefix: str) -> str:
        """Expand an abbreviated hash to the single object it names."""
        prefix = prefix.lower()
        if len(prefix) < MIN_PREFIX_LEN or any(
                c not in "0123456789abcdef" for c in prefix):
            raise ObjectNotFound(prefix)
        if len(prefix) == HASH_HEX_LEN:
            if self.exists(prefix):
                return prefix
            raise ObjectNotFound(prefix)
        shard = os.path.join(self.root, prefix[:SHARD_LEN])
        rest = prefix[SHARD_LEN:]
        try:
            names = os.listdir(shard)
        except FileNotFoundError:
            raise ObjectNotFound(prefix)
        matches = [prefix[:SHARD_LEN] + n for n in names
                   if n.startswith(rest) and not n.startswith("tmp_obj_")]
        if not matches:
            raise ObjectNotFound(prefix)
        if len(matches) > 1:
            raise AmbiguousObject(prefix, sorted(matches))
        return matches[0]

    def iter_hashes(self) -> Iterator[str]:
        """Every stored object hash, in no particular order."""
        if not os.path.isdir(self.root):
            return
        for shard in os.listdir(self.root):
            if len(shard) != SHARD_LEN:
                continue
            for name in os.listdir(os.path.join(self.root, shard)):
                if not name.startswith("tmp_obj_"):
                    yield shard + name

    # -- traversal --

    def _children(self, obj_hash: str) -> List[str]:
        """Outgoing edges: commit -> tree + parents, tree -> entries."""
        kind, content = self.get(obj_hash)
        try:
            if kind == COMMIT:
                commit = decode_commit(content, obj_hash)
                return [commit.tree] + list(commit.parents)
            if kind == TREE:
                return [e.obj_hash for e in decode_tree(content)]
        except ValueError as e:
            raise CorruptObject(obj_hash, f"bad {kind}: {e}")
        return []

    def reachable_objects(self, start_hash: str) -> Set[str]:
        """Closure of ``start_hash`` over commit/tree/blob edges."""
        seen = {start_hash}
        queue = deque([start_hash])
        while queue:
            current = queue.popleft()
            for child in self._children(current):
                if child not in seen:
                    seen.add(child)
                    queue.append(child)
        return seen

    def missing_objects(self, start_hash: str,
                        have: Callable[[str], bool]) -> List[str]:
        """Closure of ``start_hash`` minus what ``have`` reports, dependencies first.

        An object that ``have`` reports present is assumed to come with its
        whole closure, which holds for any store that writes bottom-up.
        """
        order: List[str] = []
        seen: Set[str] = set()
        # explicit stack of (hash, children-expanded?) for post-order
        stack: List[Tuple[str, bool]] = [(start_hash, False)]
        while stack:
            current, expanded = stack.pop()
            if expanded:
                order.append(current)
                continue
            if current in seen:
                continue
            seen.add(current)
            if have(current):
                continue
            stack.append((current, True))
            for child in reversed(self._children(current)):
                if child not in seen:
                    stack.append((child, False))
        return order

