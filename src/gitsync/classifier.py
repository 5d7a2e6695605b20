"""Change classification between two snapshots.

Turns raw ``(path, old_id, new_id)`` triples into NEW / MODIFIED /
DELETED / RENAMED / COPIED records.  The result depends only on the set
of input triples, never on their order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from .config import DEFAULT_RENAME_THRESHOLD

Similarity = Callable[[bytes, bytes], float]


class ChangeKind(str, Enum):
    NEW = "NEW"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RENAMED = "RENAMED"
    COPIED = "COPIED"


@dataclass(frozen=True)
class RawChange:
    """One path across two snapshots.

    Attributes:
        path: Repo-style path (forward slashes).
        old_id: Content hash in the old snapshot, ``None`` if absent.
        new_id: Content hash in the new snapshot, ``None`` if absent.
    """

    path: str
    old_id: bytes | None
    new_id: bytes | None

    @property
    def unchanged(self) -> bool:
        return self.old_id == self.new_id


@dataclass(frozen=True)
class ChangeRecord:
    """Classified change for one path.

    *previous_path* is set only for RENAMED and COPIED.
    """

    path: str
    kind: ChangeKind
    previous_path: str | None = None
    similarity: float | None = None

    def __post_init__(self):
        paired = self.kind in (ChangeKind.RENAMED, ChangeKind.COPIED)
        if paired != (self.previous_path is not None):
            raise ValueError(f"previous_path must be set iff kind is RENAMED or COPIED: {self!r}")

    def __str__(self) -> str:
        if self.previous_path is not None:
            return f"{self.kind.value:<8}  {self.previous_path} -> {self.path}"
        return f"{self.kind.value:<8}  {self.path}"


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def _exact_only(old_id: bytes, new_id: bytes) -> float:
    return 1.0 if old_id == new_id else 0.0


def classify(
    changes: Iterable[RawChange],
    similarity: Similarity | None = None,
    threshold: float = DEFAULT_RENAME_THRESHOLD,
) -> list[ChangeRecord]:
    """Classify raw path changes.

    Args:
        changes: One :class:`RawChange` per path.  Unchanged paths may be
            included; they are never reported but serve as copy sources.
        similarity: ``similarity(old_id, new_id) -> float`` in ``[0, 1]``.
            Identical ids score 1.0 without a call.  Defaults to exact
            matching only.
        threshold: Minimum score for a rename or copy.

    Returns:
        Records sorted by path.

    Tie-break between equally good sources: highest similarity, then the
    shortest Levenshtein distance between path names, then path order.
    Each deleted path is consumed by at most one rename; further matches
    against it become copies.
    """
    score_fn = similarity or _exact_only
    old: dict[str, bytes] = {}
    new: dict[str, bytes] = {}
    for change in changes:
        if change.path in old or change.path in new:
            raise ValueError(f"Duplicate path in diff: {change.path!r}")
        if change.old_id is not None:
            old[change.path] = change.old_id
        if change.new_id is not None:
            new[change.path] = change.new_id

    added = sorted(new.keys() - old.keys())
    deleted = sorted(old.keys() - new.keys())
    modified = sorted(p for p in old.keys() & new.keys() if old[p] != new[p])

    scores: dict[tuple[bytes, bytes], float] = {}

    def score(source_id: bytes, target_id: bytes) -> float:
        if source_id == target_id:
            return 1.0
        key = (source_id, target_id)
        if key not in scores:
            scores[key] = score_fn(source_id, target_id)
        return scores[key]

    def rank(target: str, source: str, value: float):
        return (-value, levenshtein(target, source), target, source)

    # Renames: global greedy assignment in tie-break order.
    candidates = []
    for target in added:
        for source in deleted:
            value = score(old[source], new[target])
            if value >= threshold:
                candidates.append((rank(target, source, value), target, source, value))
    candidates.sort()

    records: dict[str, ChangeRecord] = {}
    consumed: set[str] = set()
    for _key, target, source, value in candidates:
        if target in records or source in consumed:
            continue
        records[target] = ChangeRecord(target, ChangeKind.RENAMED, source, value)
        consumed.add(source)

    # Copies: sources still present in the new snapshot, plus renamed-away
    # paths whose content lives on under the new name.
    copy_sources = sorted((old.keys() & new.keys()) | consumed)
    for target in added:
        if target in records:
            continue
        best = None
        for source in copy_sources:
            value = score(old[source], new[target])
            if value >= threshold:
                key = rank(target, source, value)
                if best is None or key < best[0]:
                    best = (key, source, value)
        if best is not None:
            records[target] = ChangeRecord(target, ChangeKind.COPIED, best[1], best[2])
        else:
            records[target] = ChangeRecord(target, ChangeKind.NEW)

    for path in modified:
        records[path] = ChangeRecord(path, ChangeKind.MODIFIED)
    for path in deleted:
        if path not in consumed:
            records[path] = ChangeRecord(path, ChangeKind.DELETED)

    return [records[p] for p in sorted(records)]
