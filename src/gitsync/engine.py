"""The version-control engine seen by the sync core.

:class:`VcsEngine` is the narrow command interface the orchestrator and
resolver use; :class:`DulwichEngine` implements it on a dulwich ``Repo``.
Tree-level merging is a per-path decision table; line-level merging is
delegated to ``merge3`` and conflicting files are described as hunks
computed with ``difflib``.
"""

from __future__ import annotations

import difflib
import logging
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from dulwich.errors import NotGitRepository
from dulwich.graph import can_fast_forward, find_merge_base
from dulwich.ignore import IgnoreFilterManager
from dulwich.index import build_index_from_tree
from dulwich.objects import Blob, Commit
from dulwich.repo import Repo
from merge3 import Merge3

from .classifier import RawChange
from .exceptions import RepositoryError
from .resolver import ConflictEntry, Hunk
from .tree import (
    GIT_FILEMODE_BLOB,
    TreeEntry,
    flatten_tree,
    is_regular_file,
    local_file_oid,
    rebuild_tree,
)

logger = logging.getLogger(__name__)

Snapshot = Mapping[str, bytes]


@dataclass
class MergeResult:
    """Output of :meth:`VcsEngine.three_way_merge`.

    Exactly one of *tree_id* (clean) or *conflicts* (non-empty) is set.
    """

    tree_id: bytes | None = None
    conflicts: list[ConflictEntry] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflicts


class VcsEngine(Protocol):
    """Operations the sync core needs from the underlying repository."""

    @property
    def path(self) -> str: ...

    @property
    def control_dir(self) -> str: ...

    def branch_head(self, branch: str) -> bytes | None: ...

    def commit_tree_id(self, commit_id: bytes) -> bytes: ...

    def merge_base(self, a: bytes, b: bytes) -> bytes | None: ...

    def is_ancestor(self, ancestor: bytes, descendant: bytes) -> bool: ...

    def three_way_merge(
        self,
        base: bytes | None,
        ours: bytes,
        theirs: bytes,
        resolutions: Mapping[str, bytes] | None = None,
    ) -> MergeResult: ...

    def commit_tree(self, tree_id: bytes, parents: Sequence[bytes], message: str) -> bytes: ...

    def atomic_update_ref(self, branch: str, new_id: bytes, old_id: bytes | None) -> bool: ...

    def tree_snapshot(self, tree_id: bytes | None) -> dict[str, bytes]: ...

    def head_snapshot(self) -> dict[str, bytes]: ...

    def working_tree_snapshot(self) -> dict[str, bytes]: ...

    def diff_snapshots(self, old: Snapshot, new: Snapshot) -> list[RawChange]: ...

    def checked_out_branch(self) -> str | None: ...

    def dirty_paths(self) -> list[str]: ...

    def untracked_collisions(self, commit_id: bytes) -> list[str]: ...

    def update_working_tree(self, old_commit: bytes | None, new_commit: bytes) -> None: ...

    def similarity_by_id(self, old_id: bytes, new_id: bytes) -> float: ...


# ---------------------------------------------------------------------------
# Content primitives
# ---------------------------------------------------------------------------

def compute_similarity(a: bytes, b: bytes) -> float:
    """Line-based similarity of two contents, in ``[0.0, 1.0]``."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    matcher = difflib.SequenceMatcher(None, a.splitlines(), b.splitlines(), autojunk=False)
    return matcher.ratio()


def diff_hunks(base_lines: Sequence[bytes], side_lines: Sequence[bytes]) -> list[Hunk]:
    """Describe *side_lines* as hunks against *base_lines*."""
    matcher = difflib.SequenceMatcher(None, base_lines, side_lines, autojunk=False)
    return [
        Hunk(i1, i2, tuple(side_lines[j1:j2]))
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def merge_lines(
    base_lines: Sequence[bytes], ours_lines: Sequence[bytes], theirs_lines: Sequence[bytes]
) -> list[bytes] | None:
    """Three-way merge of line lists; ``None`` if any region conflicts."""
    out: list[bytes] = []
    for group in Merge3(list(base_lines), list(ours_lines), list(theirs_lines)).merge_groups():
        if group[0] == "conflict":
            return None
        out.extend(group[1])
    return out


def diff_snapshots(old: Snapshot, new: Snapshot) -> list[RawChange]:
    """Pair up two ``{path: blob_id}`` snapshots, unchanged paths included."""
    return [RawChange(path, old.get(path), new.get(path)) for path in sorted(old.keys() | new.keys())]


# ---------------------------------------------------------------------------
# dulwich implementation
# ---------------------------------------------------------------------------

def _branch_ref(branch: str) -> bytes:
    if branch.startswith("refs/"):
        return branch.encode()
    return f"refs/heads/{branch}".encode()


class DulwichEngine:
    """:class:`VcsEngine` backed by a dulwich repository (bare or not)."""

    def __init__(self, repo: Repo, *, author: str = "gitsync", email: str = "gitsync@localhost"):
        self._repo = repo
        self._identity = f"{author} <{email}>".encode()
        # Working-tree blob ids are not in the object store; remember where
        # their content lives so similarity can still read it.
        self._worktree_blobs: dict[bytes, Path] = {}

    def __repr__(self) -> str:
        return f"DulwichEngine({self._repo.path!r})"

    @classmethod
    def open(cls, path: str | os.PathLike[str], **kwargs) -> DulwichEngine:
        """Open the repository at *path*.

        Raises:
            RepositoryError: If *path* is not a git repository.
        """
        try:
            repo = Repo(os.fspath(path))
        except NotGitRepository:
            raise RepositoryError(f"Not a git repository: {path}")
        return cls(repo, **kwargs)

    @property
    def repo(self) -> Repo:
        return self._repo

    @property
    def path(self) -> str:
        return self._repo.path

    @property
    def control_dir(self) -> str:
        return self._repo.controldir()

    @property
    def bare(self) -> bool:
        return self._repo.bare

    # -- refs and history ---------------------------------------------------

    def branch_head(self, branch: str) -> bytes | None:
        try:
            return self._repo.refs[_branch_ref(branch)]
        except KeyError:
            return None

    def commit_tree_id(self, commit_id: bytes) -> bytes:
        try:
            commit = self._repo.object_store[commit_id]
        except KeyError:
            raise RepositoryError(f"Commit not found: {commit_id.decode()}")
        if not isinstance(commit, Commit):
            raise RepositoryError(f"Object {commit_id.decode()} is not a commit")
        return commit.tree

    def merge_base(self, a: bytes, b: bytes) -> bytes | None:
        bases = find_merge_base(self._repo, [a, b])
        return bases[0] if bases else None

    def is_ancestor(self, ancestor: bytes, descendant: bytes) -> bool:
        if ancestor == descendant:
            return True
        store = self._repo.object_store
        if ancestor not in store or descendant not in store:
            return False
        return can_fast_forward(self._repo, ancestor, descendant)

    def commit_tree(self, tree_id: bytes, parents: Sequence[bytes], message: str) -> bytes:
        """Write a commit object without moving any ref."""
        c = Commit()
        c.tree = tree_id
        c.parents = list(parents)
        c.author = c.committer = self._identity
        now = int(time.time())
        c.author_time = c.commit_time = now
        c.author_timezone = c.commit_timezone = 0
        msg = message.encode()
        if not msg.endswith(b"\n"):
            msg += b"\n"
        c.message = msg
        c.encoding = b"UTF-8"
        self._repo.object_store.add_object(c)
        return c.id

    def atomic_update_ref(self, branch: str, new_id: bytes, old_id: bytes | None) -> bool:
        """Move *branch* from *old_id* to *new_id*, or create it when *old_id* is None.

        Returns False, leaving the ref untouched, if it no longer points
        at *old_id*.
        """
        ref = _branch_ref(branch)
        message = b"gitsync: update " + ref
        if old_id is None:
            return self._repo.refs.add_if_new(ref, new_id, message=message)
        return self._repo.refs.set_if_equals(ref, old_id, new_id, message=message)

    # -- merging ------------------------------------------------------------

    def three_way_merge(
        self,
        base: bytes | None,
        ours: bytes,
        theirs: bytes,
        resolutions: Mapping[str, bytes] | None = None,
    ) -> MergeResult:
        """Merge commit *theirs* into commit *ours*.

        *resolutions* supplies final content for paths that would otherwise
        conflict.  On success the merged tree is written to the object store;
        no commit or ref is created.
        """
        store = self._repo.object_store
        ours_tree = self.commit_tree_id(ours)
        base_files = flatten_tree(store, self.commit_tree_id(base)) if base else {}
        ours_files = flatten_tree(store, ours_tree)
        theirs_files = flatten_tree(store, self.commit_tree_id(theirs))
        resolutions = resolutions or {}

        writes: dict[str, TreeEntry] = {}
        removes: set[str] = set()
        conflicts: list[ConflictEntry] = []

        for path in sorted(base_files.keys() | ours_files.keys() | theirs_files.keys()):
            b, o, t = base_files.get(path), ours_files.get(path), theirs_files.get(path)
            if o == t or b == t:
                continue
            if b == o:
                if t is None:
                    removes.add(path)
                else:
                    writes[path] = t
                continue
            if path in resolutions:
                side = o or t
                mode = side.mode if side is not None and is_regular_file(side.mode) else GIT_FILEMODE_BLOB
                writes[path] = TreeEntry(mode, self._add_blob(resolutions[path]))
                continue
            merged = self._merge_file(path, b, o, t)
            if isinstance(merged, ConflictEntry):
                conflicts.append(merged)
            else:
                writes[path] = merged

        if conflicts:
            return MergeResult(conflicts=conflicts)
        return MergeResult(tree_id=rebuild_tree(store, ours_tree, writes, removes))

    def _merge_file(
        self, path: str, b: TreeEntry | None, o: TreeEntry | None, t: TreeEntry | None
    ) -> TreeEntry | ConflictEntry:
        base_lines = self._lines(b)
        if o is None or t is None or not is_regular_file(o.mode) or not is_regular_file(t.mode):
            return ConflictEntry(
                path,
                ours_hunks=[self._whole_file_hunk(base_lines, o)],
                theirs_hunks=[self._whole_file_hunk(base_lines, t)],
                base_lines=base_lines,
                structural=True,
            )

        ours_lines, theirs_lines = self._lines(o), self._lines(t)
        merged = merge_lines(base_lines, ours_lines, theirs_lines)
        if merged is None:
            return ConflictEntry(
                path,
                ours_hunks=diff_hunks(base_lines, ours_lines),
                theirs_hunks=diff_hunks(base_lines, theirs_lines),
                base_lines=base_lines,
            )
        mode = t.mode if b is not None and o.mode == b.mode else o.mode
        return TreeEntry(mode, self._add_blob(b"".join(merged)))

    def _whole_file_hunk(self, base_lines: list[bytes], side: TreeEntry | None) -> Hunk:
        lines = () if side is None else tuple(self._lines(side))
        return Hunk(0, len(base_lines), lines)

    def _lines(self, entry: TreeEntry | None) -> list[bytes]:
        if entry is None or not is_regular_file(entry.mode):
            return []
        return self.read_blob(entry.sha).splitlines(keepends=True)

    def _add_blob(self, data: bytes) -> bytes:
        blob = Blob.from_string(data)
        self._repo.object_store.add_object(blob)
        return blob.id

    # -- snapshots ------------------------------------------------------------

    def tree_snapshot(self, tree_id: bytes | None) -> dict[str, bytes]:
        """``{path: blob_id}`` for every file in *tree_id*."""
        return {p: e.sha for p, e in flatten_tree(self._repo.object_store, tree_id).items()}

    def head_snapshot(self) -> dict[str, bytes]:
        try:
            head = self._repo.refs[b"HEAD"]
        except KeyError:
            return {}
        return self.tree_snapshot(self.commit_tree_id(head))

    def working_tree_snapshot(self) -> dict[str, bytes]:
        """``{path: blob_id}`` for files on disk, skipping ignored untracked files."""
        if self.bare:
            raise RepositoryError(f"Bare repository has no working tree: {self.path}")
        root = Path(self._repo.path)
        tracked = self.head_snapshot().keys()
        ignore = IgnoreFilterManager.from_repo(self._repo)

        result: dict[str, bytes] = {}
        for dirpath, dirnames, filenames in os.walk(root):
            dp = Path(dirpath)
            rel_dir = "" if dp == root else str(dp.relative_to(root)).replace(os.sep, "/")
            kept = []
            for dname in sorted(dirnames):
                rel = f"{rel_dir}/{dname}" if rel_dir else dname
                if dname == ".git" or (dp / dname).is_symlink():
                    if (dp / dname).is_symlink():
                        filenames.append(dname)
                    continue
                if ignore.is_ignored(rel + "/") and not any(p.startswith(rel + "/") for p in tracked):
                    continue
                kept.append(dname)
            dirnames[:] = kept
            for fname in filenames:
                rel = f"{rel_dir}/{fname}" if rel_dir else fname
                if rel not in tracked and ignore.is_ignored(rel):
                    continue
                full = dp / fname
                oid = local_file_oid(full)
                self._worktree_blobs[oid] = full
                result[rel] = oid
        return result

    def diff_snapshots(self, old: Snapshot, new: Snapshot) -> list[RawChange]:
        return diff_snapshots(old, new)

    # -- working tree ---------------------------------------------------------

    def checked_out_branch(self) -> str | None:
        """Branch ``HEAD`` points at in a non-bare repository, else None."""
        if self.bare:
            return None
        target = self._repo.refs.read_ref(b"HEAD")
        prefix = b"ref: refs/heads/"
        if target is None or not target.startswith(prefix):
            return None
        return target[len(prefix):].decode()

    def dirty_paths(self) -> list[str]:
        """Tracked paths whose content on disk differs from ``HEAD``."""
        work = self.working_tree_snapshot()
        return sorted(p for p, oid in self.head_snapshot().items() if work.get(p) != oid)

    def untracked_collisions(self, commit_id: bytes) -> list[str]:
        """Untracked files that checking out *commit_id* would overwrite."""
        head = self.head_snapshot()
        work = self.working_tree_snapshot()
        target = self.tree_snapshot(self.commit_tree_id(commit_id))
        return sorted(
            p for p, oid in target.items()
            if p not in head and p in work and work[p] != oid
        )

    def update_working_tree(self, old_commit: bytes | None, new_commit: bytes) -> None:
        """Make the index and files on disk match *new_commit*.

        Files tracked in *old_commit* but gone from *new_commit* are
        deleted, along with directories left empty.  The caller has
        already moved the checked-out branch.
        """
        root = Path(self._repo.path)
        old = self.tree_snapshot(self.commit_tree_id(old_commit) if old_commit else None)
        new_tree = self.commit_tree_id(new_commit)
        new = self.tree_snapshot(new_tree)

        for path in sorted(old.keys() - new.keys()):
            full = root.joinpath(*path.split("/"))
            if full.is_symlink() or full.exists():
                full.unlink()
            parent = full.parent
            while parent != root and parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent

        build_index_from_tree(
            self._repo.path, self._repo.index_path(), self._repo.object_store, new_tree,
        )
        logger.info("Checked out %s in %s", new_commit.decode()[:7], self.path)

    # -- content --------------------------------------------------------------

    def read_blob(self, blob_id: bytes) -> bytes:
        store = self._repo.object_store
        if blob_id in store:
            return store[blob_id].data
        full = self._worktree_blobs.get(blob_id)
        if full is None:
            raise RepositoryError(f"Blob not found: {blob_id.decode()}")
        if full.is_symlink():
            return os.readlink(full).encode()
        return full.read_bytes()

    def compute_similarity(self, a: bytes, b: bytes) -> float:
        return compute_similarity(a, b)

    def similarity_by_id(self, old_id: bytes, new_id: bytes) -> float:
        if old_id == new_id:
            return 1.0
        return compute_similarity(self.read_blob(old_id), self.read_blob(new_id))
