"""The sync workflow: fetch, integrate, push.

:meth:`SyncOrchestrator.sync` is the only entry point the application
needs.  It never raises for an expected failure; everything it knows
about the outcome is in the returned :class:`SyncResult`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

from ._lock import repo_lock
from .classifier import ChangeRecord, classify
from .config import SyncConfig
from .context import SyncContext, sync_context
from .credentials import CredentialProvider
from .endpoint import RemoteEndpoint
from .engine import VcsEngine
from .exceptions import (
    ErrorKind,
    InvalidEndpointError,
    NetworkError,
    NonFastForwardError,
    RepositoryError,
    SyncError,
)
from .resolver import ConflictEntry, ConflictResolver, MergeAttempt, MergeOutcome
from .transport import Transport, run_to_completion, transport_for

logger = logging.getLogger(__name__)

TransportFactory = Callable[..., Transport]


@dataclass(frozen=True)
class SyncResult:
    """What one :meth:`SyncOrchestrator.sync` call did.

    Attributes:
        fetched: The remote was fetched at least once.
        merged: Remote changes were integrated (fast-forward or merge).
        pushed: The remote branch now holds the synced commit.
        unresolved_conflicts: Conflicts left for the user; nothing was pushed.
        error: Category of the failure, ``None`` on success or conflicts.
        branch: Branch that was synced.
        attempts: Merge attempts made.
        changes: Classified changes between the old local tip and the
            pushed commit.
        message: Human-readable summary.
    """

    fetched: bool = False
    merged: bool = False
    pushed: bool = False
    unresolved_conflicts: tuple[ConflictEntry, ...] = ()
    error: ErrorKind | None = None
    branch: str | None = None
    attempts: int = 0
    changes: tuple[ChangeRecord, ...] = ()
    message: str = ""

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if self.unresolved_conflicts:
            return "conflicts"
        return "synced"

    @property
    def ok(self) -> bool:
        return self.status == "synced"


@dataclass
class _Progress:
    fetched: bool = False
    merged: bool = False
    branch: str | None = None
    attempts: int = 0
    changes: list[ChangeRecord] = field(default_factory=list)
    merge: MergeAttempt | None = None

    def result(self, **kwargs) -> SyncResult:
        return SyncResult(
            fetched=self.fetched,
            merged=self.merged,
            branch=self.branch,
            attempts=self.attempts,
            changes=tuple(self.changes),
            **kwargs,
        )

    def failed(self, exc: SyncError) -> SyncResult:
        return self.result(error=exc.kind, message=str(exc))


class SyncOrchestrator:
    """Synchronize one local repository with remotes.

    Args:
        engine: Local repository.
        config: Tunables; defaults to :class:`SyncConfig` defaults.
        credential_provider: Resolves credentials for each remote.
        transport_factory: ``(endpoint, engine, provider, cache=...) ->
            Transport``; defaults to :func:`~gitsync.transport.transport_for`.
    """

    def __init__(
        self,
        engine: VcsEngine,
        config: SyncConfig | None = None,
        credential_provider: CredentialProvider | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        self._engine = engine
        self.config = config or SyncConfig()
        self._credentials = credential_provider or CredentialProvider()
        self._transport_factory = transport_factory or transport_for

    def __repr__(self) -> str:
        return f"SyncOrchestrator({self._engine!r})"

    # -- public API -------------------------------------------------------------

    async def sync(
        self,
        remote_url: str,
        branch: str | None = None,
        resolutions: Mapping[str, bytes] | None = None,
    ) -> SyncResult:
        """Fetch from *remote_url*, integrate, and push *branch*.

        *resolutions* gives final content for paths a previous sync
        reported as conflicting (see :meth:`ConflictEntry.conflict_markers`).

        Returns a :class:`SyncResult` with ``status`` ``"synced"``,
        ``"conflicts"`` or ``"failed"``.  ``asyncio.CancelledError``
        propagates.  Before the push starts, nothing local has changed
        when it does; once the push has started, the push and the local
        branch update both finish first, and the repository stays locked
        until they have.

        On a non-bare repository with *branch* checked out, tracked files
        must match ``HEAD``; the working tree and index follow the branch
        to the synced commit.
        """
        progress = _Progress(branch=branch)
        try:
            endpoint = RemoteEndpoint.from_url(
                remote_url,
                default_branch=self.config.default_branch,
                remote_name=self.config.remote_name,
            )
        except InvalidEndpointError as exc:
            logger.warning("Not syncing: %s", exc)
            return progress.failed(exc)

        with sync_context(self._engine.path, endpoint.url) as ctx:
            transport = self._transport_factory(
                endpoint, self._engine, self._credentials, cache=ctx.credentials,
            )
            try:
                if not transport.validate_connection(endpoint.url):
                    raise InvalidEndpointError(endpoint.url)
                await asyncio.to_thread(self._credentials.resolve, endpoint, cache=ctx.credentials)
                with repo_lock(self._engine.control_dir):
                    return await self._run(ctx, transport, endpoint, progress, resolutions or {})
            except SyncError as exc:
                ctx.log.warning("Sync failed (%s): %s", exc.kind.value, exc)
                return progress.failed(exc)
            except asyncio.CancelledError:
                if progress.merge is not None:
                    progress.merge.abort()
                ctx.log.info("Sync cancelled")
                raise

    def classify_working_tree(self) -> list[ChangeRecord]:
        """Classify uncommitted changes: the working tree against ``HEAD``."""
        head = self._engine.head_snapshot()
        work = self._engine.working_tree_snapshot()
        return classify(
            self._engine.diff_snapshots(head, work),
            self._engine.similarity_by_id,
            self.config.rename_threshold,
        )

    # -- workflow -------------------------------------------------------------------

    async def _run(
        self,
        ctx: SyncContext,
        transport: Transport,
        endpoint: RemoteEndpoint,
        progress: _Progress,
        resolutions: Mapping[str, bytes],
    ) -> SyncResult:
        cfg = self.config
        engine = self._engine
        resolver = ConflictResolver(
            engine,
            auto_resolve=cfg.auto_resolve_non_conflicting,
            max_attempts=cfg.max_merge_conflict_retries,
        )

        heads = await self._fetch(ctx, transport, endpoint, progress)
        branch = progress.branch or self._pick_branch(heads)
        progress.branch = branch
        if engine.branch_head(branch) is None and branch not in heads:
            raise RepositoryError(f"Branch {branch!r} exists neither locally nor on {endpoint}")
        checked_out = engine.checked_out_branch() == branch
        if checked_out:
            dirty = engine.dirty_paths()
            if dirty:
                raise RepositoryError(
                    f"Uncommitted changes on {branch}; commit or discard them first: "
                    + ", ".join(dirty)
                )

        push_rounds = 0
        while True:
            local = engine.branch_head(branch)
            remote = heads.get(branch)

            if remote is None or (local is not None and engine.is_ancestor(remote, local)):
                new = local
            elif local is None or engine.is_ancestor(local, remote):
                ctx.log.info("Fast-forwarding %s to %s", branch, remote.decode()[:7])
                new = remote
                progress.merged = True
            else:
                if progress.attempts >= cfg.max_merge_conflict_retries:
                    raise NonFastForwardError(branch, local_id=local, remote_id=remote)
                progress.attempts += 1
                base = engine.merge_base(local, remote)
                attempt = resolver.attempt(base, local, remote, progress.attempts, resolutions)
                progress.merge = attempt
                if attempt.outcome is not MergeOutcome.CLEAN:
                    if progress.attempts < cfg.max_merge_conflict_retries:
                        try:
                            heads = await self._fetch(ctx, transport, endpoint, progress)
                        except NetworkError as exc:
                            ctx.log.warning("Could not check remote for new commits: %s", exc)
                        else:
                            if heads.get(branch) != remote:
                                ctx.log.info("Remote %s moved; retrying merge", branch)
                                continue
                    unresolved = tuple(attempt.unresolved)
                    ctx.log.warning("%d conflict(s) need manual resolution", len(unresolved))
                    return progress.result(
                        unresolved_conflicts=unresolved,
                        message=f"{len(unresolved)} conflicting file(s) on {branch}",
                    )
                new = engine.commit_tree(
                    attempt.tree_id,
                    [local, remote],
                    _merge_message(endpoint, branch, attempt, resolutions),
                )
                progress.merged = True

            progress.changes = self._classify_delta(local, new)
            if checked_out and new != local:
                clobbered = engine.untracked_collisions(new)
                if clobbered:
                    raise RepositoryError(
                        "Untracked files would be overwritten: " + ", ".join(clobbered)
                    )

            try:
                await self._retry_network(
                    ctx, "push", lambda: run_to_completion(
                        self._publish(transport, endpoint, branch, local, new, checked_out)
                    ),
                )
            except NonFastForwardError:
                push_rounds += 1
                if push_rounds >= cfg.max_merge_conflict_retries:
                    raise
                ctx.log.info("Push of %s rejected as non-fast-forward; refetching", branch)
                progress.merged = False
                heads = await self._fetch(ctx, transport, endpoint, progress)
                continue

            ctx.log.info("Synced %s (%d change(s))", branch, len(progress.changes))
            return progress.result(
                pushed=True,
                message=f"{branch} synced with {endpoint}",
            )

    async def _publish(
        self,
        transport: Transport,
        endpoint: RemoteEndpoint,
        branch: str,
        local: bytes | None,
        new: bytes,
        checked_out: bool,
    ) -> None:
        """Push *new*, then move the local branch and working tree to it."""
        engine = self._engine
        await transport.push(endpoint, branch, new)
        if new == local:
            return
        if not engine.atomic_update_ref(branch, new, local):
            raise RepositoryError(f"Local branch {branch!r} moved during sync")
        if checked_out:
            await asyncio.to_thread(engine.update_working_tree, local, new)

    async def _fetch(
        self,
        ctx: SyncContext,
        transport: Transport,
        endpoint: RemoteEndpoint,
        progress: _Progress,
    ) -> dict[str, bytes]:
        outcome = await self._retry_network(ctx, "fetch", lambda: transport.fetch(endpoint))
        progress.fetched = True
        return outcome.remote_heads

    async def _retry_network(self, ctx: SyncContext, what: str, op: Callable[[], Awaitable]):
        retries = self.config.network_retries
        for n in range(retries + 1):
            try:
                return await op()
            except NetworkError as exc:
                if n == retries:
                    raise
                ctx.log.warning("%s failed (%s); retrying", what, exc)
                await asyncio.sleep(self.config.network_retry_delay)

    def _pick_branch(self, heads: dict[str, bytes]) -> str:
        cfg = self.config
        if cfg.default_branch in heads:
            return cfg.default_branch
        if cfg.fallback_branch in heads:
            return cfg.fallback_branch
        if (
            self._engine.branch_head(cfg.default_branch) is None
            and self._engine.branch_head(cfg.fallback_branch) is not None
        ):
            return cfg.fallback_branch
        return cfg.default_branch

    def _classify_delta(self, old: bytes | None, new: bytes | None) -> list[ChangeRecord]:
        engine = self._engine
        if old == new:
            return []
        old_snap = engine.tree_snapshot(engine.commit_tree_id(old) if old else None)
        new_snap = engine.tree_snapshot(engine.commit_tree_id(new) if new else None)
        return classify(
            engine.diff_snapshots(old_snap, new_snap),
            engine.similarity_by_id,
            self.config.rename_threshold,
        )


def _merge_message(
    endpoint: RemoteEndpoint,
    branch: str,
    attempt: MergeAttempt,
    resolutions: Mapping[str, bytes],
) -> str:
    lines = [f"Merge {endpoint.remote_name}/{branch} into {branch}"]
    sections = (
        ("Conflicts resolved by hand", sorted(resolutions)),
        ("Conflicts merged automatically", sorted(c.path for c in attempt.conflicts if c.resolved)),
    )
    for title, paths in sections:
        if paths:
            lines += ["", f"{title}:"] + [f"\t{path}" for path in paths]
    return "\n".join(lines)
