"""Exceptions for gitsync."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error categories surfaced in :class:`~gitsync.SyncResult`."""

    AUTHENTICATION = "authentication"
    NETWORK = "network"
    NON_FAST_FORWARD = "non_fast_forward"
    PUSH_REJECTED = "push_rejected"
    INVALID_ENDPOINT = "invalid_endpoint"
    SYNC_IN_PROGRESS = "sync_in_progress"
    REPOSITORY = "repository"


class SyncError(Exception):
    """Base class for all gitsync errors."""

    kind: ErrorKind = ErrorKind.REPOSITORY

    #: Whether the orchestrator may retry the failing step.
    retryable: bool = False


class AuthenticationError(SyncError):
    """No usable credential for a remote, or the remote refused it.

    Fatal for the current sync: re-prompt for credentials instead of retrying.
    """

    kind = ErrorKind.AUTHENTICATION

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NetworkError(SyncError):
    """Transient transfer failure (connection refused, hangup, timeout)."""

    kind = ErrorKind.NETWORK
    retryable = True


class NonFastForwardError(SyncError):
    """The remote branch has diverged from the local one.

    This is a control-flow signal: the orchestrator routes it into the
    merge path rather than reporting it.
    """

    kind = ErrorKind.NON_FAST_FORWARD

    def __init__(self, branch: str, local_id: bytes | None = None, remote_id: bytes | None = None):
        super().__init__(f"Branch {branch!r} has diverged from the remote")
        self.branch = branch
        self.local_id = local_id
        self.remote_id = remote_id


class PushRejectedError(SyncError):
    """The remote declined a ref update for a reason other than divergence."""

    kind = ErrorKind.PUSH_REJECTED

    def __init__(self, ref: str, status: str):
        super().__init__(f"Push of {ref} rejected: {status}")
        self.ref = ref
        self.status = status


class InvalidEndpointError(SyncError):
    """A remote URL matches neither the HTTP(S) nor the SSH form."""

    kind = ErrorKind.INVALID_ENDPOINT

    def __init__(self, url: str, reason: str | None = None):
        super().__init__(reason or f"Not a supported remote URL: {url!r}")
        self.url = url


class SyncInProgressError(SyncError):
    """Another sync already holds the repository."""

    kind = ErrorKind.SYNC_IN_PROGRESS

    def __init__(self, repo_path: str):
        super().__init__(f"A sync is already running for {repo_path}")
        self.repo_path = repo_path


class RepositoryError(SyncError):
    """The local repository is missing a branch, object, or working tree."""

    kind = ErrorKind.REPOSITORY
