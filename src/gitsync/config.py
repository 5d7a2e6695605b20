"""Configuration for sync operations.

All values are read once when a sync starts; nothing here is mutated
while a sync is running.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace

DEFAULT_REMOTE_NAME = "origin"
DEFAULT_BRANCH_NAME = "main"
FALLBACK_BRANCH_NAME = "master"
MAX_MERGE_CONFLICT_RETRIES = 3
AUTO_RESOLVE_NON_CONFLICTING = True

# Same default as git's rename detection (50% similar).
DEFAULT_RENAME_THRESHOLD = 0.5

_ENV_PREFIX = "GITSYNC_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class SyncConfig:
    """Tunables for :class:`~gitsync.SyncOrchestrator`.

    Attributes:
        remote_name: Name used for remote-tracking refs
            (``refs/remotes/<remote_name>/<branch>``).
        default_branch: Branch synced when the caller does not name one.
        fallback_branch: Used instead of *default_branch* when the remote
            has no *default_branch*.
        max_merge_conflict_retries: Upper bound on merge attempts per sync.
        auto_resolve_non_conflicting: Merge conflicting files whose hunks
            touch disjoint line ranges without asking the user.
        rename_threshold: Minimum similarity (0.0-1.0) for rename and copy
            detection.
        network_retries: Extra attempts for a fetch or push that failed
            with a transient network error.
        network_retry_delay: Seconds to wait before a network retry.
        author: Name recorded on merge commits.
        email: Email recorded on merge commits.
    """

    remote_name: str = DEFAULT_REMOTE_NAME
    default_branch: str = DEFAULT_BRANCH_NAME
    fallback_branch: str = FALLBACK_BRANCH_NAME
    max_merge_conflict_retries: int = MAX_MERGE_CONFLICT_RETRIES
    auto_resolve_non_conflicting: bool = AUTO_RESOLVE_NON_CONFLICTING
    rename_threshold: float = DEFAULT_RENAME_THRESHOLD
    network_retries: int = 1
    network_retry_delay: float = 0.5
    author: str = "gitsync"
    email: str = "gitsync@localhost"

    def __post_init__(self):
        if not self.remote_name:
            raise ValueError("remote_name must not be empty")
        if not self.default_branch:
            raise ValueError("default_branch must not be empty")
        if self.max_merge_conflict_retries < 1:
            raise ValueError(
                f"max_merge_conflict_retries must be >= 1, got {self.max_merge_conflict_retries}"
            )
        if not 0.0 <= self.rename_threshold <= 1.0:
            raise ValueError(f"rename_threshold must be in [0, 1], got {self.rename_threshold}")
        if self.network_retries < 0:
            raise ValueError(f"network_retries must be >= 0, got {self.network_retries}")

    def with_overrides(self, **overrides) -> SyncConfig:
        """Return a copy with the non-None *overrides* applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SyncConfig:
        """Build a config from ``GITSYNC_*`` environment variables.

        ``GITSYNC_MAX_MERGE_CONFLICT_RETRIES=5`` sets
        ``max_merge_conflict_retries``, and so on for every field.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, type(getattr(cls, f.name)))
        return cls(**values)


def _coerce(name: str, raw: str, kind: type):
    if kind is bool:
        low = raw.strip().lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
        raise ValueError(f"Invalid boolean for {name}: {raw!r}")
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}")
