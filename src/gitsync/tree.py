"""Low-level tree helpers on top of dulwich's object store.

Flattening trees into ``{path: (mode, blob_id)}`` snapshots and
rebuilding trees with writes and removes applied.
"""

from __future__ import annotations

import hashlib
import os
from collections import defaultdict
from pathlib import Path
from typing import NamedTuple

from dulwich.objects import Tree

GIT_FILEMODE_TREE = 0o040000
GIT_FILEMODE_BLOB = 0o100644
GIT_FILEMODE_BLOB_EXECUTABLE = 0o100755
GIT_FILEMODE_LINK = 0o120000

_HASH_CHUNK_SIZE = 65536


class TreeEntry(NamedTuple):
    """A file in a flattened tree: filemode plus 40-char hex blob id."""

    mode: int
    sha: bytes


def is_regular_file(mode: int) -> bool:
    return mode in (GIT_FILEMODE_BLOB, GIT_FILEMODE_BLOB_EXECUTABLE)


def flatten_tree(object_store, tree_id: bytes | None, prefix: str = "") -> dict[str, TreeEntry]:
    """Return ``{path: TreeEntry}`` for every non-tree entry under *tree_id*."""
    result: dict[str, TreeEntry] = {}
    if tree_id is None:
        return result
    tree = object_store[tree_id]
    for entry in tree.iteritems():
        name = entry.path.decode("utf-8", "surrogateescape")
        path = f"{prefix}/{name}" if prefix else name
        if entry.mode == GIT_FILEMODE_TREE:
            result.update(flatten_tree(object_store, entry.sha, path))
        else:
            result[path] = TreeEntry(entry.mode, entry.sha)
    return result


def rebuild_tree(
    object_store,
    base_tree_id: bytes | None,
    writes: dict[str, TreeEntry],
    removes: set[str],
) -> bytes:
    """Rebuild a tree with writes and removes applied.

    Only the ancestor chain from changed leaves to root is rebuilt.
    Sibling subtrees are shared by hash reference.  Blobs named in
    *writes* must already be in *object_store*.

    Returns:
        Id of the new root tree.
    """
    sub_writes: dict[str, dict[str, TreeEntry]] = defaultdict(dict)
    leaf_writes: dict[str, TreeEntry] = {}
    sub_removes: dict[str, set[str]] = defaultdict(set)
    leaf_removes: set[str] = set()

    for path, entry in writes.items():
        parts = path.split("/", 1)
        if len(parts) == 1:
            leaf_writes[parts[0]] = entry
        else:
            sub_writes[parts[0]][parts[1]] = entry

    for path in removes:
        parts = path.split("/", 1)
        if len(parts) == 1:
            leaf_removes.add(parts[0])
        else:
            sub_removes[parts[0]].add(parts[1])

    entries: dict[bytes, tuple[int, bytes]] = {}
    if base_tree_id is not None:
        for item in object_store[base_tree_id].iteritems():
            entries[item.path] = (item.mode, item.sha)

    for name, entry in leaf_writes.items():
        entries[name.encode("utf-8", "surrogateescape")] = (entry.mode, entry.sha)

    # Missing names are ignored; callers only remove what they saw.
    for name in leaf_removes:
        entries.pop(name.encode("utf-8", "surrogateescape"), None)

    for subdir in set(sub_writes) | set(sub_removes):
        key = subdir.encode("utf-8", "surrogateescape")
        existing = entries.get(key)
        existing_id = existing[1] if existing and existing[0] == GIT_FILEMODE_TREE else None

        new_subtree_id = rebuild_tree(
            object_store,
            existing_id,
            sub_writes.get(subdir, {}),
            sub_removes.get(subdir, set()),
        )

        # Prune empty directories
        if len(object_store[new_subtree_id]) == 0:
            entries.pop(key, None)
        else:
            entries[key] = (GIT_FILEMODE_TREE, new_subtree_id)

    tree = Tree()
    for name, (mode, sha) in sorted(entries.items()):
        tree.add(name, mode, sha)
    object_store.add_object(tree)
    return tree.id


def _blob_hasher(size: int):
    """Return a SHA-1 hasher pre-loaded with the git blob header.

    Git blob OID = SHA-1(``blob <size>\\0`` + content).
    """
    return hashlib.sha1(f"blob {size}\0".encode())


def local_file_oid(full: Path) -> bytes:
    """Compute the git blob id of a file on disk without storing it.

    Symlinks hash their target string.  Regular files are streamed in
    chunks to avoid loading entire contents into memory.
    """
    if full.is_symlink():
        data = os.readlink(full).encode()
        h = _blob_hasher(len(data))
        h.update(data)
        return h.hexdigest().encode("ascii")
    size = full.stat().st_size
    h = _blob_hasher(size)
    with open(full, "rb") as f:
        while True:
            chunk = f.read(_HASH_CHUNK_SIZE)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest().encode("ascii")
