"""Per-sync context: the state one sync call carries between components."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field

from .credentials import CredentialCache

logger = logging.getLogger("gitsync.sync")


@dataclass
class SyncContext:
    """Created when a sync starts and discarded when it ends.

    Attributes:
        repo_path: Repository being synced.
        remote_url: Remote it is synced against.
        log: Logger that tags every record with the repository.
        credentials: Credentials resolved during this sync only.
    """

    repo_path: str
    remote_url: str
    log: logging.LoggerAdapter
    credentials: CredentialCache = field(default_factory=CredentialCache)


@contextmanager
def sync_context(repo_path: str, remote_url: str):
    """Yield a fresh :class:`SyncContext`; clear its credentials on exit."""
    log = logging.LoggerAdapter(logger, {"repo": repo_path, "remote": remote_url})
    ctx = SyncContext(repo_path, remote_url, log)
    try:
        yield ctx
    finally:
        ctx.credentials.clear()
