"""Moving objects and refs between the local repository and a remote.

There is one :class:`Transport`; what differs between HTTP(S) and SSH is
captured by a :class:`ProtocolPolicy` (which URLs it accepts and which
credential kinds it can use).  dulwich does the wire work in a worker
thread; refs are only touched once a transfer has finished.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from urllib.parse import urlparse, urlunparse

from dulwich.client import HTTPUnauthorized, get_transport_and_path
from dulwich.errors import GitProtocolError, HangupException, NotGitRepository
from dulwich.protocol import ZERO_SHA

from .credentials import CredentialCache, CredentialKind, CredentialProvider
from .endpoint import Protocol, RemoteEndpoint, is_http_url, is_ssh_url
from .engine import DulwichEngine
from .exceptions import (
    AuthenticationError,
    InvalidEndpointError,
    NetworkError,
    NonFastForwardError,
    PushRejectedError,
    RepositoryError,
)

logger = logging.getLogger(__name__)

_HEADS = b"refs/heads/"
_NON_FAST_FORWARD_MARKERS = ("non-fast-forward", "fetch first", "unable to set", "stale info")
_AUTH_MARKERS = ("permission denied", "authentication failed", "401", "403")


@dataclass(frozen=True)
class ProtocolPolicy:
    """What distinguishes one transport protocol from another."""

    name: str
    protocol: Protocol
    accepts_url: Callable[[str], bool]
    credential_kinds: frozenset[CredentialKind]


HTTP_POLICY = ProtocolPolicy(
    "http",
    Protocol.HTTP,
    is_http_url,
    frozenset({CredentialKind.BASIC, CredentialKind.TOKEN, CredentialKind.ANONYMOUS}),
)

SSH_POLICY = ProtocolPolicy(
    "ssh",
    Protocol.SSH,
    is_ssh_url,
    frozenset({CredentialKind.SSH_KEY, CredentialKind.SSH_AGENT}),
)

POLICIES = {HTTP_POLICY.protocol: HTTP_POLICY, SSH_POLICY.protocol: SSH_POLICY}


@dataclass
class FetchOutcome:
    """Result of :meth:`Transport.fetch`.

    Attributes:
        remote_heads: ``{branch: commit_id}`` advertised by the remote.
        updated_refs: Remote-tracking refs that were created, moved or pruned.
    """

    remote_heads: dict[str, bytes] = field(default_factory=dict)
    updated_refs: list[bytes] = field(default_factory=list)


@dataclass
class PushOutcome:
    ref: bytes
    old_id: bytes | None
    new_id: bytes
    updated: bool


@dataclass
class PullOutcome:
    old_id: bytes | None
    new_id: bytes | None
    fast_forward: bool


def _strip_userinfo(url: str) -> str:
    """Drop ``user:pass@`` from an HTTP URL; the credential carries it."""
    parsed = urlparse(url)
    if not parsed.username:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


@contextmanager
def _transfer_errors(url: str):
    """Translate dulwich and socket failures into :class:`SyncError` subclasses."""
    try:
        yield
    except HTTPUnauthorized:
        raise AuthenticationError(f"Remote rejected credentials for {url}")
    except NotGitRepository:
        raise RepositoryError(f"Remote is not a git repository: {url}")
    except (HangupException, GitProtocolError) as exc:
        message = str(exc)
        if any(marker in message.lower() for marker in _AUTH_MARKERS):
            raise AuthenticationError(f"Remote rejected credentials for {url}: {message}")
        raise NetworkError(f"Transfer from {url} failed: {message}")
    except OSError as exc:
        raise NetworkError(f"Cannot reach {url}: {exc}")


async def run_to_completion(aw):
    """Await *aw*, letting it finish even if the caller is cancelled.

    A cancellation that arrives meanwhile is re-raised once *aw* is done,
    so the caller still sees it, but never with the work half applied.
    """
    task = asyncio.ensure_future(aw)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        while not task.done():
            try:
                await asyncio.wait([task])
            except asyncio.CancelledError:
                continue
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Interrupted operation failed after cancellation: %s", task.exception())
        raise


class Transport:
    """Fetch, push and pull over one protocol.

    Args:
        policy: Which URLs and credential kinds this transport handles.
        engine: Local repository.
        credential_provider: Resolves a credential per endpoint.
        cache: Per-sync credential cache handed to the provider.
        client_factory: ``(url, **credential_kwargs) -> (client, path)``;
            defaults to dulwich's ``get_transport_and_path``.
        progress: dulwich progress callback (receives bytes).
    """

    def __init__(
        self,
        policy: ProtocolPolicy,
        engine: DulwichEngine,
        credential_provider: CredentialProvider,
        *,
        cache: CredentialCache | None = None,
        client_factory: Callable = get_transport_and_path,
        progress: Callable[[bytes], None] | None = None,
    ):
        self.policy = policy
        self._engine = engine
        self._credentials = credential_provider
        self._cache = cache
        self._client_factory = client_factory
        self._progress = progress

    def __repr__(self) -> str:
        return f"Transport({self.policy.name}, {self._engine!r})"

    @classmethod
    def http(cls, engine: DulwichEngine, credential_provider: CredentialProvider, **kwargs) -> Transport:
        return cls(HTTP_POLICY, engine, credential_provider, **kwargs)

    @classmethod
    def ssh(cls, engine: DulwichEngine, credential_provider: CredentialProvider, **kwargs) -> Transport:
        return cls(SSH_POLICY, engine, credential_provider, **kwargs)

    def validate_connection(self, url: str) -> bool:
        """True if *url* has this transport's form.  No I/O is performed."""
        return bool(url) and self.policy.accepts_url(url)

    # -- plumbing -------------------------------------------------------------

    def _check_endpoint(self, endpoint: RemoteEndpoint) -> None:
        if not self.validate_connection(endpoint.url):
            raise InvalidEndpointError(
                endpoint.url, f"{self.policy.name} transport cannot handle {endpoint.url!r}"
            )

    def _open_client(self, endpoint: RemoteEndpoint):
        # Runs in the worker thread: credential helpers may spawn processes.
        credential = self._credentials.resolve(endpoint, cache=self._cache)
        if credential.kind not in self.policy.credential_kinds:
            raise AuthenticationError(
                f"{credential.kind.value} credential cannot be used over {self.policy.name}"
            )
        url = _strip_userinfo(endpoint.url) if self.policy.protocol is Protocol.HTTP else endpoint.url
        with _transfer_errors(endpoint.url):
            return self._client_factory(url, **credential.client_kwargs())

    @property
    def _refs(self):
        return self._engine.repo.refs

    # -- fetch ------------------------------------------------------------------

    async def fetch(self, endpoint: RemoteEndpoint) -> FetchOutcome:
        """Download objects and update ``refs/remotes/<remote>/*``.

        Stale tracking refs (branches gone from the remote) are pruned.
        """
        self._check_endpoint(endpoint)

        def _transfer():
            client, path = self._open_client(endpoint)
            with _transfer_errors(endpoint.url):
                return client.fetch(path, self._engine.repo, progress=self._progress)

        result = await asyncio.to_thread(_transfer)

        heads = {
            ref[len(_HEADS):].decode(): sha
            for ref, sha in result.refs.items()
            if ref.startswith(_HEADS) and not ref.endswith(b"^{}")
        }
        outcome = FetchOutcome(remote_heads=heads)

        for branch, sha in heads.items():
            tracking = endpoint.tracking_ref(branch)
            if self._refs.read_ref(tracking) != sha:
                self._refs[tracking] = sha
                outcome.updated_refs.append(tracking)

        prefix = endpoint.tracking_ref("")
        for ref in list(self._refs.allkeys()):
            if ref.startswith(prefix) and ref[len(prefix):].decode() not in heads:
                if self._refs.remove_if_equals(ref, self._refs[ref]):
                    outcome.updated_refs.append(ref)

        logger.info(
            "Fetched %s: %d branch(es), %d ref(s) updated",
            endpoint, len(heads), len(outcome.updated_refs),
        )
        return outcome

    # -- push -------------------------------------------------------------------

    async def push(self, endpoint: RemoteEndpoint, branch: str, commit: bytes | None = None) -> PushOutcome:
        """Update the remote *branch* to *commit* (default: the local tip).

        Raises:
            NonFastForwardError: The remote branch is not an ancestor of
                *commit*, either as checked locally or as reported by the
                remote.
            PushRejectedError: The remote refused the update otherwise.
        """
        if commit is None:
            commit = self._engine.branch_head(branch)
            if commit is None:
                raise RepositoryError(f"No local branch {branch!r} to push")
        ref = _HEADS + branch.encode()
        self._check_endpoint(endpoint)
        seen: dict[str, bytes | None] = {"old": None}

        def update_refs(remote_refs):
            old = remote_refs.get(ref)
            if old == ZERO_SHA:
                old = None
            seen["old"] = old
            if old is not None and not self._engine.is_ancestor(old, commit):
                raise NonFastForwardError(branch, local_id=commit, remote_id=old)
            return {ref: commit}

        def gen_pack(have, want, *, ofs_delta=False, progress=self._progress):
            return self._engine.repo.object_store.generate_pack_data(
                have, want, ofs_delta=ofs_delta, progress=progress,
            )

        def _transfer():
            client, path = self._open_client(endpoint)
            with _transfer_errors(endpoint.url):
                result = client.send_pack(path, update_refs, gen_pack, progress=self._progress)
            self._check_ref_status(branch, ref, commit, seen["old"], result.ref_status or {})
            self._refs[endpoint.tracking_ref(branch)] = commit

        # Once started, the remote update and its tracking ref land together.
        await run_to_completion(asyncio.to_thread(_transfer))

        old = seen["old"]
        logger.info(
            "Pushed %s to %s: %s -> %s",
            branch, endpoint, old.decode()[:7] if old else "(new)", commit.decode()[:7],
        )
        return PushOutcome(ref, old, commit, updated=old != commit)

    @staticmethod
    def _check_ref_status(branch, ref, commit, old, ref_status) -> None:
        status = ref_status.get(ref)
        if status is None:
            return
        if isinstance(status, bytes):
            status = status.decode("utf-8", "replace")
        if any(marker in status.lower() for marker in _NON_FAST_FORWARD_MARKERS):
            raise NonFastForwardError(branch, local_id=commit, remote_id=old)
        raise PushRejectedError(ref.decode(), status)

    # -- pull -------------------------------------------------------------------

    async def pull(self, endpoint: RemoteEndpoint, branch: str) -> PullOutcome:
        """Fetch, then fast-forward the local *branch* to the remote tip.

        Raises:
            NonFastForwardError: Local and remote histories have diverged.
        """
        fetched = await self.fetch(endpoint)
        remote = fetched.remote_heads.get(branch)
        local = self._engine.branch_head(branch)
        if remote is None or remote == local:
            return PullOutcome(local, local, fast_forward=False)
        if local is not None and self._engine.is_ancestor(remote, local):
            return PullOutcome(local, local, fast_forward=False)
        if local is not None and not self._engine.is_ancestor(local, remote):
            raise NonFastForwardError(branch, local_id=local, remote_id=remote)
        if not self._engine.atomic_update_ref(branch, remote, local):
            raise NonFastForwardError(branch, local_id=local, remote_id=remote)
        logger.info("Fast-forwarded %s to %s", branch, remote.decode()[:7])
        return PullOutcome(local, remote, fast_forward=True)


def transport_for(
    endpoint: RemoteEndpoint,
    engine: DulwichEngine,
    credential_provider: CredentialProvider,
    **kwargs,
) -> Transport:
    """Build the transport matching *endpoint*'s protocol."""
    return Transport(POLICIES[endpoint.protocol], engine, credential_provider, **kwargs)
