"""Remote endpoints and protocol detection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse

from .config import DEFAULT_BRANCH_NAME, DEFAULT_REMOTE_NAME
from .exceptions import InvalidEndpointError

HTTP_PREFIXES = ("http://", "https://")
SSH_PREFIXES = ("ssh://", "git@")


class Protocol(str, Enum):
    HTTP = "http"
    SSH = "ssh"


def is_http_url(url: str) -> bool:
    return bool(url) and url.lower().startswith(HTTP_PREFIXES)


def is_ssh_url(url: str) -> bool:
    return bool(url) and url.lower().startswith(SSH_PREFIXES)


def protocol_for_url(url: str) -> Protocol:
    """``ssh://`` and ``git@host:path`` are SSH; anything else is HTTP."""
    return Protocol.SSH if is_ssh_url(url) else Protocol.HTTP


def url_host(url: str) -> str | None:
    """Return the host of an HTTP(S), ``ssh://`` or scp-style URL."""
    if url.startswith("git@"):
        host = url[len("git@"):].split(":", 1)[0]
        return host or None
    return urlparse(url).hostname


@dataclass(frozen=True)
class RemoteEndpoint:
    """A remote repository addressed by one sync operation.

    Attributes:
        url: Remote URL as given by the caller.
        protocol: Derived from *url*; never set independently.
        default_branch: Branch to sync when the caller does not name one.
        remote_name: Prefix for remote-tracking refs.
    """

    url: str
    protocol: Protocol
    default_branch: str = DEFAULT_BRANCH_NAME
    remote_name: str = DEFAULT_REMOTE_NAME

    def __post_init__(self):
        if self.protocol is not protocol_for_url(self.url):
            raise ValueError(f"Protocol {self.protocol.value} does not match URL {self.url!r}")

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        default_branch: str = DEFAULT_BRANCH_NAME,
        remote_name: str = DEFAULT_REMOTE_NAME,
    ) -> RemoteEndpoint:
        """Build an endpoint, rejecting URLs that are neither HTTP(S) nor SSH."""
        url = (url or "").strip()
        if not url:
            raise InvalidEndpointError(url, "Remote URL must not be empty")
        if not (is_http_url(url) or is_ssh_url(url)):
            raise InvalidEndpointError(url)
        return cls(url, protocol_for_url(url), default_branch, remote_name)

    @property
    def host(self) -> str | None:
        return url_host(self.url)

    def tracking_ref(self, branch: str) -> bytes:
        """Remote-tracking ref for *branch*, e.g. ``refs/remotes/origin/main``."""
        return f"refs/remotes/{self.remote_name}/{branch}".encode()

    def __str__(self) -> str:
        return self.url
