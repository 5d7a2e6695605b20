"""Credential resolution for remote endpoints.

The provider is a pure lookup: it turns an endpoint into a credential
compatible with the endpoint's protocol and never talks to the remote
itself.  Sources, in order:

1. the per-sync :class:`CredentialCache`;
2. an injected :class:`CredentialStore` (exact URL first, then host);
3. git's own helpers -- credentials embedded in the URL,
   ``git credential fill`` (osxkeychain, wincred, libsecret,
   ``gh auth setup-git``, ...) and ``gh auth token`` for HTTPS;
   the SSH agent or a default key under ``~/.ssh`` for SSH.
"""

from __future__ import annotations

import abc
import logging
import os
import subprocess
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol as TypingProtocol
from urllib.parse import unquote, urlparse

from .endpoint import Protocol, RemoteEndpoint, url_host
from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

_HELPER_TIMEOUT = 5
_DEFAULT_SSH_KEYS = ("id_ed25519", "id_ecdsa", "id_rsa")


class CredentialKind(str, Enum):
    BASIC = "basic"
    TOKEN = "token"
    ANONYMOUS = "anonymous"
    SSH_KEY = "ssh_key"
    SSH_AGENT = "ssh_agent"


CREDENTIAL_KINDS: dict[Protocol, frozenset[CredentialKind]] = {
    Protocol.HTTP: frozenset({CredentialKind.BASIC, CredentialKind.TOKEN, CredentialKind.ANONYMOUS}),
    Protocol.SSH: frozenset({CredentialKind.SSH_KEY, CredentialKind.SSH_AGENT}),
}


# ---------------------------------------------------------------------------
# Credential types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credential(abc.ABC):
    """Authentication material for one remote.

    Subclasses map themselves onto keyword arguments understood by
    dulwich's ``HttpGitClient`` / ``SSHGitClient`` constructors.
    """

    expires_at: float | None = field(default=None, kw_only=True)

    @property
    @abc.abstractmethod
    def kind(self) -> CredentialKind: ...

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) >= self.expires_at

    def client_kwargs(self) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class BasicCredential(Credential):
    username: str
    password: str = field(repr=False)

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.BASIC

    def client_kwargs(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}


@dataclass(frozen=True)
class TokenCredential(Credential):
    token: str = field(repr=False)
    username: str = "x-access-token"

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.TOKEN

    def client_kwargs(self) -> dict[str, str]:
        return {"username": self.username, "password": self.token}


@dataclass(frozen=True)
class AnonymousCredential(Credential):
    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.ANONYMOUS


@dataclass(frozen=True)
class SshKeyCredential(Credential):
    """A private key file, or the SSH agent when *key_filename* is None.

    The SSH user comes from the URL (``git@host:...``); dulwich rejects a
    second username argument, so it is not part of :meth:`client_kwargs`.
    """

    username: str = "git"
    key_filename: str | None = None
    passphrase: str | None = field(default=None, repr=False)

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.SSH_AGENT if self.key_filename is None else CredentialKind.SSH_KEY

    def client_kwargs(self) -> dict[str, str]:
        kwargs = {}
        if self.key_filename is not None:
            kwargs["key_filename"] = self.key_filename
        if self.passphrase:
            kwargs["password"] = self.passphrase
        return kwargs


def is_compatible(credential: Credential, protocol: Protocol) -> bool:
    return credential.kind in CREDENTIAL_KINDS[protocol]


# ---------------------------------------------------------------------------
# Stores and caches
# ---------------------------------------------------------------------------

class CredentialStore(TypingProtocol):
    """Where saved credentials live (keychain, settings file, ...)."""

    def candidates(self, url: str) -> list[Credential]:
        """Credentials that may apply to *url*, best match first."""
        ...


class MemoryCredentialStore:
    """Credentials keyed by remote URL, kept in memory."""

    def __init__(self, credentials: Mapping[str, Credential] | None = None):
        self._by_url: dict[str, Credential] = dict(credentials or {})

    def __repr__(self) -> str:
        return f"MemoryCredentialStore(len={len(self._by_url)})"

    def __len__(self) -> int:
        return len(self._by_url)

    def save(self, url: str, credential: Credential) -> None:
        self._by_url[url] = credential

    def remove(self, url: str) -> None:
        self._by_url.pop(url, None)

    def get(self, url: str) -> Credential | None:
        return self._by_url.get(url)

    def list(self) -> list[Credential]:
        return list(self._by_url.values())

    def clear_expired(self, now: float | None = None) -> int:
        """Drop expired credentials; return how many were removed."""
        expired = [url for url, cred in self._by_url.items() if cred.is_expired(now)]
        for url in expired:
            del self._by_url[url]
        return len(expired)

    def candidates(self, url: str) -> list[Credential]:
        result = []
        exact = self._by_url.get(url)
        if exact is not None:
            result.append(exact)
        host = url_host(url)
        if host:
            for key in sorted(self._by_url):
                if key != url and url_host(key) == host:
                    result.append(self._by_url[key])
        return result


class CredentialCache:
    """Credentials resolved during one sync call.

    Only the provider writes to the cache; transports read through the
    provider.  The orchestrator clears it when the sync ends.
    """

    def __init__(self):
        self._entries: dict[tuple[str, Protocol], Credential] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, endpoint: RemoteEndpoint) -> Credential | None:
        return self._entries.get((endpoint.url, endpoint.protocol))

    def put(self, endpoint: RemoteEndpoint, credential: Credential) -> None:
        self._entries[(endpoint.url, endpoint.protocol)] = credential

    def clear(self) -> None:
        self._entries.clear()


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class CredentialProvider:
    """Resolve a credential compatible with an endpoint's protocol.

    Args:
        store: Saved credentials, consulted before any helper.
        use_git_helpers: Consult URL userinfo, ``git credential fill``,
            ``gh auth token``, the SSH agent and default key files.
        allow_anonymous: Fall back to an anonymous HTTP credential instead
            of failing (public repositories).
        ssh_dir: Directory searched for default SSH keys.
        environ: Environment used to detect ``SSH_AUTH_SOCK``.
        run: ``subprocess.run`` replacement, for tests.
    """

    def __init__(
        self,
        store: CredentialStore | None = None,
        *,
        use_git_helpers: bool = True,
        allow_anonymous: bool = False,
        ssh_dir: str | os.PathLike[str] | None = None,
        environ: Mapping[str, str] | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self._store = store
        self._use_git_helpers = use_git_helpers
        self._allow_anonymous = allow_anonymous
        self._ssh_dir = Path(ssh_dir) if ssh_dir is not None else Path.home() / ".ssh"
        self._environ = os.environ if environ is None else environ
        self._run = run

    def resolve(self, endpoint: RemoteEndpoint, *, cache: CredentialCache | None = None) -> Credential:
        """Return a credential for *endpoint*.

        Raises:
            AuthenticationError: If no compatible, unexpired credential
                can be found.
        """
        if not endpoint.url:
            raise AuthenticationError("Remote URL must not be empty")

        if cache is not None:
            cached = cache.get(endpoint)
            if cached is not None and not cached.is_expired():
                return cached

        for credential in self._candidates(endpoint):
            if not is_compatible(credential, endpoint.protocol):
                continue
            if credential.is_expired():
                logger.debug("Skipping expired %s credential for %s", credential.kind.value, endpoint)
                continue
            logger.debug("Resolved %s credential for %s", credential.kind.value, endpoint)
            if cache is not None:
                cache.put(endpoint, credential)
            return credential

        raise AuthenticationError(
            f"No {endpoint.protocol.value.upper()} credential available for {endpoint.url}"
        )

    def _candidates(self, endpoint: RemoteEndpoint) -> Iterator[Credential]:
        if self._store is not None:
            yield from self._store.candidates(endpoint.url)
        if self._use_git_helpers:
            if endpoint.protocol is Protocol.HTTP:
                yield from self._http_helpers(endpoint.url)
            else:
                yield from self._ssh_helpers(endpoint.url)
        if self._allow_anonymous and endpoint.protocol is Protocol.HTTP:
            yield AnonymousCredential()

    # -- HTTP(S) -------------------------------------------------------------

    def _http_helpers(self, url: str) -> Iterator[Credential]:
        parsed = urlparse(url)
        if parsed.username and parsed.password:
            yield BasicCredential(unquote(parsed.username), unquote(parsed.password))
            return
        if not parsed.hostname:
            return

        cred = self._git_credential_fill(parsed.scheme, parsed.hostname)
        if cred is not None:
            yield cred
        if parsed.scheme == "https":
            token = self._gh_auth_token(parsed.hostname)
            if token is not None:
                yield token

    def _git_credential_fill(self, scheme: str, host: str) -> Credential | None:
        stdin = f"protocol={scheme}\nhost={host}\n\n"
        try:
            proc = self._run(
                ["git", "credential", "fill"],
                input=stdin, capture_output=True, text=True, timeout=_HELPER_TIMEOUT,
                env={**self._environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        if proc.returncode != 0:
            return None
        creds = {}
        for line in proc.stdout.strip().splitlines():
            if "=" in line:
                k, _, v = line.partition("=")
                creds[k] = v
        username = creds.get("username")
        password = creds.get("password")
        if username and password:
            return BasicCredential(username, password)
        return None

    def _gh_auth_token(self, host: str) -> Credential | None:
        try:
            proc = self._run(
                ["gh", "auth", "token", "--hostname", host],
                capture_output=True, text=True, timeout=_HELPER_TIMEOUT,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        token = proc.stdout.strip()
        if proc.returncode == 0 and token:
            return TokenCredential(token)
        return None

    # -- SSH -----------------------------------------------------------------

    def _ssh_helpers(self, url: str) -> Iterator[Credential]:
        username = _ssh_username(url)
        if self._environ.get("SSH_AUTH_SOCK"):
            yield SshKeyCredential(username=username)
        for name in _DEFAULT_SSH_KEYS:
            key = self._ssh_dir / name
            if key.is_file():
                yield SshKeyCredential(username=username, key_filename=str(key))


def _ssh_username(url: str) -> str:
    if url.startswith("git@"):
        return "git"
    return urlparse(url).username or "git"
