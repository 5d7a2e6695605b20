"""Merge conflict resolution.

One :class:`MergeAttempt` runs the engine's three-way merge, and if files
conflict, tries to merge the ones whose two sides changed disjoint line
ranges.  Attempts never loop on their own: whether a second attempt is
worth making is the orchestrator's call.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from merge3 import Merge3

from .config import MAX_MERGE_CONFLICT_RETRIES

if TYPE_CHECKING:
    from .engine import VcsEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Hunk:
    """Base lines ``[start, end)`` replaced by *lines* on one side.

    A pure insertion has ``start == end`` and goes before base line *start*.
    """

    start: int
    end: int
    lines: tuple[bytes, ...] = ()

    def __post_init__(self):
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid hunk range [{self.start}, {self.end})")

    @property
    def is_insertion(self) -> bool:
        return self.start == self.end

    def overlaps(self, other: Hunk) -> bool:
        """True if applying both hunks would be ambiguous.

        Ranges that merely touch (``a.end == b.start``) do not overlap.
        Two insertions at the same line do, since their order is unknown.
        """
        if self.is_insertion and other.is_insertion:
            return self.start == other.start
        if self.is_insertion:
            return other.start < self.start < other.end
        if other.is_insertion:
            return self.start < other.start < self.end
        return self.start < other.end and other.start < self.end


class MergeState(str, Enum):
    IDLE = "idle"
    MERGE_IN_PROGRESS = "merge_in_progress"
    CLEAN = "clean"
    CONFLICTS_DETECTED = "conflicts_detected"
    AUTO_RESOLVING = "auto_resolving"
    MANUAL_RESOLUTION_REQUIRED = "manual_resolution_required"


class MergeOutcome(str, Enum):
    CLEAN = "clean"
    CONFLICTS_REMAIN = "conflicts_remain"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ConflictEntry:
    """A file both sides changed in ways the merge primitive could not combine.

    Attributes:
        path: Repo-style path.
        ours_hunks: Local changes relative to *base_lines*, in base order.
        theirs_hunks: Remote changes relative to *base_lines*, in base order.
        base_lines: Common-ancestor content split into lines (with endings).
        resolved: Set once *merged_content* holds an agreed result.
        merged_content: Final file content after resolution.
        structural: The conflict is about the file itself (deleted on one
            side, symlink versus file, ...) rather than its lines; never
            auto-resolved.

    Entries are immutable; resolving one returns a new entry.
    """

    path: str
    ours_hunks: Sequence[Hunk] = ()
    theirs_hunks: Sequence[Hunk] = ()
    base_lines: Sequence[bytes] = ()
    resolved: bool = False
    merged_content: bytes | None = None
    structural: bool = False

    def __post_init__(self):
        object.__setattr__(self, "ours_hunks", tuple(sorted(self.ours_hunks, key=_hunk_order)))
        object.__setattr__(self, "theirs_hunks", tuple(sorted(self.theirs_hunks, key=_hunk_order)))
        object.__setattr__(self, "base_lines", tuple(self.base_lines))

    @property
    def is_non_conflicting(self) -> bool:
        """True when no local hunk overlaps a remote hunk.

        A hunk made identically on both sides is the same change and never
        counts as an overlap.
        """
        if self.structural:
            return False
        for ours in self.ours_hunks:
            for theirs in self.theirs_hunks:
                if ours != theirs and ours.overlaps(theirs):
                    return False
        return True

    def synthesize(self) -> bytes:
        """Apply both sides' hunks to the base in line order.

        Only meaningful when :attr:`is_non_conflicting` holds.
        """
        hunks = list(self.ours_hunks)
        hunks.extend(h for h in self.theirs_hunks if h not in self.ours_hunks)
        return b"".join(apply_hunks(self.base_lines, hunks))

    def ours_content(self) -> bytes:
        return b"".join(apply_hunks(self.base_lines, self.ours_hunks))

    def theirs_content(self) -> bytes:
        return b"".join(apply_hunks(self.base_lines, self.theirs_hunks))

    def conflict_markers(self, local: str = "LOCAL", remote: str = "REMOTE") -> bytes:
        """The file with ``<<<<<<<``/``=======``/``>>>>>>>`` around each clash.

        Regions both sides agree on are written once.
        """
        ours = self.ours_content().splitlines(keepends=True)
        theirs = self.theirs_content().splitlines(keepends=True)
        if self.structural:
            groups = [("conflict", list(self.base_lines), ours, theirs)]
        else:
            groups = Merge3(list(self.base_lines), ours, theirs).merge_groups()

        out: list[bytes] = []
        for group in groups:
            if group[0] != "conflict":
                out.extend(group[1])
                continue
            out.append(f"<<<<<<< {local}\n".encode())
            out.extend(_terminated(group[2]))
            out.append(b"=======\n")
            out.extend(_terminated(group[3]))
            out.append(f">>>>>>> {remote}\n".encode())
        return b"".join(out)

    def resolve(self, content: bytes, *, allow_empty: bool = False) -> ConflictEntry:
        """Return a copy of this entry resolved to *content*."""
        if not content and not allow_empty:
            raise ValueError(f"Merged content for {self.path!r} must not be empty")
        return replace(self, resolved=True, merged_content=content)


def _terminated(lines: Sequence[bytes]) -> list[bytes]:
    out = list(lines)
    if out and not out[-1].endswith(b"\n"):
        out[-1] += b"\n"
    return out


def _hunk_order(hunk: Hunk) -> tuple[int, int]:
    return (hunk.start, hunk.end)


def apply_hunks(base_lines: Sequence[bytes], hunks: Iterable[Hunk]) -> list[bytes]:
    """Rebuild a line list from *base_lines* with *hunks* applied in order."""
    out: list[bytes] = []
    pos = 0
    for hunk in sorted(hunks, key=_hunk_order):
        out.extend(base_lines[pos:hunk.start])
        out.extend(hunk.lines)
        pos = max(pos, hunk.end)
    out.extend(base_lines[pos:])
    return out


@dataclass
class MergeAttempt:
    """One run of the merge workflow.

    Attributes:
        attempt_number: 1-based position within the sync's retry budget.
        conflicts: Entries found by the merge primitive, resolved or not.
        outcome: Terminal result, ``None`` while running.
        states: Every state visited, starting with ``IDLE``.
        tree_id: Merged tree when the outcome is ``CLEAN``.
    """

    attempt_number: int
    conflicts: list[ConflictEntry] = field(default_factory=list)
    outcome: MergeOutcome | None = None
    states: list[MergeState] = field(default_factory=lambda: [MergeState.IDLE])
    tree_id: bytes | None = None

    @property
    def state(self) -> MergeState:
        return self.states[-1]

    @property
    def unresolved(self) -> list[ConflictEntry]:
        return [c for c in self.conflicts if not c.resolved]

    def _enter(self, state: MergeState) -> None:
        logger.debug("merge attempt %d: %s -> %s", self.attempt_number, self.state.value, state.value)
        self.states.append(state)

    def abort(self) -> None:
        """Discard in-memory merge state (e.g. on cancellation)."""
        self.outcome = MergeOutcome.ABORTED
        self.conflicts = []
        self.tree_id = None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class ConflictResolver:
    """Drive merge attempts against a :class:`~gitsync.engine.VcsEngine`.

    Args:
        engine: Provides ``three_way_merge``.
        auto_resolve: Merge non-overlapping conflicts automatically.
        max_attempts: Highest attempt number this resolver accepts.
    """

    def __init__(
        self,
        engine: VcsEngine,
        *,
        auto_resolve: bool = True,
        max_attempts: int = MAX_MERGE_CONFLICT_RETRIES,
    ):
        self._engine = engine
        self.auto_resolve = auto_resolve
        self.max_attempts = max_attempts

    def attempt(
        self,
        base: bytes | None,
        ours: bytes,
        theirs: bytes,
        attempt_number: int = 1,
        resolutions: Mapping[str, bytes] | None = None,
    ) -> MergeAttempt:
        """Merge commit *theirs* into *ours* over common ancestor *base*.

        *resolutions* maps paths to content the user settled on, typically
        an edited :meth:`ConflictEntry.conflict_markers` rendering; those
        paths never conflict.

        Returns a finished :class:`MergeAttempt`; unresolved conflicts are
        a normal outcome, not an exception.
        """
        if not 1 <= attempt_number <= self.max_attempts:
            raise ValueError(
                f"attempt_number must be in 1..{self.max_attempts}, got {attempt_number}"
            )
        user = dict(resolutions or {})
        for path, content in user.items():
            if not content:
                raise ValueError(f"Merged content for {path!r} must not be empty")

        attempt = MergeAttempt(attempt_number)
        attempt._enter(MergeState.MERGE_IN_PROGRESS)
        result = self._engine.three_way_merge(base, ours, theirs, resolutions=user or None)
        if not result.conflicts:
            attempt.tree_id = result.tree_id
            attempt._enter(MergeState.CLEAN)
            attempt.outcome = MergeOutcome.CLEAN
            return attempt

        attempt.conflicts = list(result.conflicts)
        attempt._enter(MergeState.CONFLICTS_DETECTED)
        logger.info(
            "merge attempt %d: %d conflicting path(s): %s",
            attempt_number, len(attempt.conflicts), ", ".join(c.path for c in attempt.conflicts),
        )

        if self.auto_resolve:
            attempt._enter(MergeState.AUTO_RESOLVING)
            for i, entry in enumerate(attempt.conflicts):
                if entry.is_non_conflicting:
                    attempt.conflicts[i] = entry.resolve(entry.synthesize(), allow_empty=True)
                    logger.info("auto-resolved %s", entry.path)

            if not attempt.unresolved:
                user.update((c.path, c.merged_content) for c in attempt.conflicts)
                rerun = self._engine.three_way_merge(base, ours, theirs, resolutions=user)
                if not rerun.conflicts:
                    attempt.tree_id = rerun.tree_id
                    attempt._enter(MergeState.CLEAN)
                    attempt.outcome = MergeOutcome.CLEAN
                    return attempt
                # The primitive found something new; report what it says.
                attempt.conflicts = list(rerun.conflicts)

        attempt._enter(MergeState.MANUAL_RESOLUTION_REQUIRED)
        attempt.outcome = MergeOutcome.CONFLICTS_REMAIN
        return attempt
