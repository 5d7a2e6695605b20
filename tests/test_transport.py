"""Tests for Transport against a local bare remote."""

import asyncio
import threading

import pytest
from dulwich.client import HTTPUnauthorized, LocalGitClient, SendPackResult
from dulwich.errors import HangupException

from gitsync.credentials import (
    CredentialCache,
    CredentialProvider,
    MemoryCredentialStore,
)
from gitsync.endpoint import Protocol, RemoteEndpoint
from gitsync.exceptions import (
    AuthenticationError,
    ErrorKind,
    InvalidEndpointError,
    NetworkError,
    NonFastForwardError,
    PushRejectedError,
)
from gitsync.transport import HTTP_POLICY, SSH_POLICY, Transport, transport_for

from conftest import REMOTE_URL, commit_files


@pytest.fixture
def endpoint():
    return RemoteEndpoint.from_url(REMOTE_URL)


@pytest.fixture
def transport(local_engine, credentials, client_factory):
    return Transport.http(local_engine, credentials, client_factory=client_factory)


def _failing_factory(exc):
    class Client:
        def fetch(self, path, target, progress=None):
            raise exc

    def factory(url, **kwargs):
        return Client(), "/nowhere"
    return factory


# ---------------------------------------------------------------------------
# validate_connection
# ---------------------------------------------------------------------------

class TestValidateConnection:
    @pytest.mark.parametrize("url, http_ok, ssh_ok", [
        ("https://github.com/a/b.git", True, False),
        ("http://host/repo", True, False),
        ("HTTPS://HOST/REPO", True, False),
        ("ssh://git@host/repo.git", False, True),
        ("git@github.com:a/b.git", False, True),
        ("ftp://host/repo", False, False),
        ("/local/path", False, False),
        ("", False, False),
    ])
    def test_truth_table(self, local_engine, credentials, url, http_ok, ssh_ok):
        assert Transport.http(local_engine, credentials).validate_connection(url) is http_ok
        assert Transport.ssh(local_engine, credentials).validate_connection(url) is ssh_ok

    def test_transport_for_picks_policy(self, local_engine, credentials):
        ssh = transport_for(RemoteEndpoint.from_url("git@host:r.git"), local_engine, credentials)
        http = transport_for(RemoteEndpoint.from_url(REMOTE_URL), local_engine, credentials)
        assert ssh.policy is SSH_POLICY
        assert http.policy is HTTP_POLICY
        assert SSH_POLICY.protocol is Protocol.SSH


# ---------------------------------------------------------------------------
# fetch
# ---------------------------------------------------------------------------

class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_updates_tracking_refs(self, transport, endpoint, local_engine, remote_engine):
        tip = commit_files(remote_engine, "main", {"a.txt": b"remote\n"})
        outcome = await transport.fetch(endpoint)

        assert outcome.remote_heads == {"main": tip}
        assert outcome.updated_refs == [b"refs/remotes/origin/main"]
        assert local_engine.repo.refs[b"refs/remotes/origin/main"] == tip
        assert tip in local_engine.repo.object_store
        # Local branches are left alone.
        assert local_engine.branch_head("main") is None

    @pytest.mark.asyncio
    async def test_second_fetch_reports_nothing(self, transport, endpoint, remote_engine):
        commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        await transport.fetch(endpoint)
        outcome = await transport.fetch(endpoint)
        assert outcome.updated_refs == []

    @pytest.mark.asyncio
    async def test_fetch_prunes_stale_tracking_refs(self, transport, endpoint, local_engine, remote_engine):
        tip = commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        commit_files(remote_engine, "feature", {"b.txt": b"2\n"})
        await transport.fetch(endpoint)
        assert b"refs/remotes/origin/feature" in local_engine.repo.refs

        remote_engine.repo.refs.remove_if_equals(
            b"refs/heads/feature", remote_engine.branch_head("feature"),
        )
        outcome = await transport.fetch(endpoint)
        assert outcome.remote_heads == {"main": tip}
        assert b"refs/remotes/origin/feature" in outcome.updated_refs
        assert b"refs/remotes/origin/feature" not in local_engine.repo.refs

    @pytest.mark.asyncio
    async def test_credentials_passed_to_client(self, local_engine, credentials, remote_engine, endpoint):
        seen = {}

        def factory(url, **kwargs):
            seen.update(kwargs, url=url)
            return LocalGitClient(), remote_engine.path

        cache = CredentialCache()
        t = Transport.http(local_engine, credentials, cache=cache, client_factory=factory)
        await t.fetch(endpoint)
        assert seen == {"url": REMOTE_URL, "username": "alice", "password": "s3cret"}
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_userinfo_stripped_from_url(self, local_engine, remote_engine):
        seen = {}

        def factory(url, **kwargs):
            seen.update(kwargs, url=url)
            return LocalGitClient(), remote_engine.path

        url = "https://bob:pw@git.example.com/team/notes.git"
        provider = CredentialProvider(use_git_helpers=True, environ={}, run=_no_helpers)
        t = Transport.http(local_engine, provider, client_factory=factory)
        await t.fetch(RemoteEndpoint.from_url(url))
        assert seen == {"url": REMOTE_URL, "username": "bob", "password": "pw"}

    @pytest.mark.asyncio
    async def test_missing_credentials(self, local_engine, client_factory, endpoint):
        provider = CredentialProvider(MemoryCredentialStore(), use_git_helpers=False)
        t = Transport.http(local_engine, provider, client_factory=client_factory)
        with pytest.raises(AuthenticationError):
            await t.fetch(endpoint)

    @pytest.mark.asyncio
    async def test_wrong_policy_rejects_url(self, local_engine, credentials, client_factory, endpoint):
        t = Transport.ssh(local_engine, credentials, client_factory=client_factory)
        with pytest.raises(InvalidEndpointError):
            await t.fetch(endpoint)

    @pytest.mark.asyncio
    async def test_hangup_is_network_error(self, local_engine, credentials, endpoint):
        t = Transport.http(local_engine, credentials,
                           client_factory=_failing_factory(HangupException()))
        with pytest.raises(NetworkError) as exc_info:
            await t.fetch(endpoint)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_refused_is_network_error(self, local_engine, credentials, endpoint):
        t = Transport.http(local_engine, credentials,
                           client_factory=_failing_factory(ConnectionRefusedError("refused")))
        with pytest.raises(NetworkError):
            await t.fetch(endpoint)

    @pytest.mark.asyncio
    async def test_unauthorized_is_authentication_error(self, local_engine, credentials, endpoint):
        exc = HTTPUnauthorized("Basic realm=git", REMOTE_URL)
        t = Transport.http(local_engine, credentials, client_factory=_failing_factory(exc))
        with pytest.raises(AuthenticationError):
            await t.fetch(endpoint)

    @pytest.mark.asyncio
    async def test_cancelled_fetch_leaves_refs(self, local_engine, credentials, remote_engine, endpoint):
        commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        release = threading.Event()

        class SlowClient(LocalGitClient):
            def fetch(self, path, target, **kwargs):
                release.wait(5)
                return super().fetch(path, target, **kwargs)

        t = Transport.http(local_engine, credentials,
                           client_factory=lambda url, **kw: (SlowClient(), remote_engine.path))
        task = asyncio.create_task(t.fetch(endpoint))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()
        assert b"refs/remotes/origin/main" not in local_engine.repo.refs


def _no_helpers(*args, **kwargs):
    raise FileNotFoundError("no helpers in tests")


# ---------------------------------------------------------------------------
# push
# ---------------------------------------------------------------------------

class TestPush:
    @pytest.mark.asyncio
    async def test_push_to_empty_remote(self, transport, endpoint, local_engine, remote_engine):
        tip = commit_files(local_engine, "main", {"a.txt": b"local\n"})
        outcome = await transport.push(endpoint, "main")

        assert outcome.ref == b"refs/heads/main"
        assert outcome.old_id is None
        assert outcome.new_id == tip
        assert outcome.updated
        assert remote_engine.branch_head("main") == tip
        assert local_engine.repo.refs[b"refs/remotes/origin/main"] == tip

    @pytest.mark.asyncio
    async def test_push_fast_forward(self, transport, endpoint, local_engine, remote_engine):
        first = commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        await transport.pull(endpoint, "main")
        second = commit_files(local_engine, "main", {"a.txt": b"2\n"})

        outcome = await transport.push(endpoint, "main")
        assert outcome.old_id == first
        assert remote_engine.branch_head("main") == second

    @pytest.mark.asyncio
    async def test_push_explicit_commit(self, transport, endpoint, local_engine, remote_engine):
        c1 = commit_files(local_engine, "main", {"a.txt": b"1\n"})
        commit_files(local_engine, "main", {"a.txt": b"2\n"})
        await transport.push(endpoint, "main", c1)
        assert remote_engine.branch_head("main") == c1

    @pytest.mark.asyncio
    async def test_push_diverged_refused(self, transport, endpoint, local_engine, remote_engine):
        base = commit_files(remote_engine, "main", {"a.txt": b"base\n"})
        await transport.pull(endpoint, "main")
        remote_tip = commit_files(remote_engine, "main", {"a.txt": b"remote\n"})
        commit_files(local_engine, "main", {"a.txt": b"local\n"})

        with pytest.raises(NonFastForwardError) as exc_info:
            await transport.push(endpoint, "main")
        assert exc_info.value.remote_id == remote_tip
        assert remote_engine.branch_head("main") == remote_tip
        assert local_engine.repo.refs[b"refs/remotes/origin/main"] == base

    @pytest.mark.asyncio
    async def test_cancelled_push_completes(self, local_engine, credentials, remote_engine, endpoint):
        tip = commit_files(local_engine, "main", {"a.txt": b"1\n"})
        release = threading.Event()

        class SlowClient(LocalGitClient):
            def send_pack(self, path, update_refs, generate_pack_data, **kwargs):
                release.wait(5)
                return super().send_pack(path, update_refs, generate_pack_data, **kwargs)

        t = Transport.http(local_engine, credentials,
                           client_factory=lambda url, **kw: (SlowClient(), remote_engine.path))
        task = asyncio.create_task(t.push(endpoint, "main"))
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.sleep(0.05)
        assert not task.done()

        release.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert remote_engine.branch_head("main") == tip
        assert local_engine.repo.refs[b"refs/remotes/origin/main"] == tip

    @pytest.mark.asyncio
    async def test_remote_reports_non_fast_forward(self, local_engine, credentials, endpoint):
        commit_files(local_engine, "main", {"a.txt": b"1\n"})
        t = Transport.http(local_engine, credentials,
                           client_factory=_status_factory("non-fast-forward"))
        with pytest.raises(NonFastForwardError):
            await t.push(endpoint, "main")
        assert b"refs/remotes/origin/main" not in local_engine.repo.refs

    @pytest.mark.asyncio
    async def test_remote_declines_update(self, local_engine, credentials, endpoint):
        commit_files(local_engine, "main", {"a.txt": b"1\n"})
        t = Transport.http(local_engine, credentials,
                           client_factory=_status_factory("hook declined"))
        with pytest.raises(PushRejectedError) as exc_info:
            await t.push(endpoint, "main")
        assert exc_info.value.kind is ErrorKind.PUSH_REJECTED
        assert exc_info.value.status == "hook declined"


def _status_factory(status):
    """A client whose send_pack reports *status* for refs/heads/main."""
    class Client:
        def send_pack(self, path, update_refs, generate_pack_data, progress=None):
            return SendPackResult({}, ref_status={b"refs/heads/main": status})

    return lambda url, **kwargs: (Client(), "/nowhere")


# ---------------------------------------------------------------------------
# pull
# ---------------------------------------------------------------------------

class TestPull:
    @pytest.mark.asyncio
    async def test_pull_creates_local_branch(self, transport, endpoint, local_engine, remote_engine):
        tip = commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        outcome = await transport.pull(endpoint, "main")
        assert outcome.fast_forward
        assert outcome.old_id is None
        assert local_engine.branch_head("main") == tip

    @pytest.mark.asyncio
    async def test_pull_fast_forwards(self, transport, endpoint, local_engine, remote_engine):
        first = commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        await transport.pull(endpoint, "main")
        second = commit_files(remote_engine, "main", {"a.txt": b"2\n"})

        outcome = await transport.pull(endpoint, "main")
        assert (outcome.old_id, outcome.new_id, outcome.fast_forward) == (first, second, True)
        assert local_engine.branch_head("main") == second

    @pytest.mark.asyncio
    async def test_pull_up_to_date(self, transport, endpoint, local_engine, remote_engine):
        tip = commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        await transport.pull(endpoint, "main")
        outcome = await transport.pull(endpoint, "main")
        assert not outcome.fast_forward
        assert local_engine.branch_head("main") == tip

    @pytest.mark.asyncio
    async def test_pull_local_ahead(self, transport, endpoint, local_engine, remote_engine):
        commit_files(remote_engine, "main", {"a.txt": b"1\n"})
        await transport.pull(endpoint, "main")
        ahead = commit_files(local_engine, "main", {"a.txt": b"2\n"})
        outcome = await transport.pull(endpoint, "main")
        assert not outcome.fast_forward
        assert local_engine.branch_head("main") == ahead

    @pytest.mark.asyncio
    async def test_pull_diverged(self, transport, endpoint, local_engine, remote_engine):
        commit_files(remote_engine, "main", {"a.txt": b"base\n"})
        await transport.pull(endpoint, "main")
        commit_files(remote_engine, "main", {"a.txt": b"remote\n"})
        local_tip = commit_files(local_engine, "main", {"a.txt": b"local\n"})

        with pytest.raises(NonFastForwardError):
            await transport.pull(endpoint, "main")
        assert local_engine.branch_head("main") == local_tip
