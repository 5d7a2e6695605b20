from .config import SyncConfig
from .endpoint import Protocol, RemoteEndpoint
from .credentials import (
    CredentialProvider, CredentialCache, MemoryCredentialStore,
    BasicCredential, TokenCredential, AnonymousCredential, SshKeyCredential,
)
from .engine import DulwichEngine, MergeResult, VcsEngine
from .transport import Transport, ProtocolPolicy, HTTP_POLICY, SSH_POLICY, transport_for
from .classifier import ChangeKind, ChangeRecord, RawChange, classify
from .resolver import ConflictEntry, ConflictResolver, Hunk, MergeAttempt, MergeOutcome, MergeState
from .orchestrator import SyncOrchestrator, SyncResult
from .exceptions import (
    SyncError, ErrorKind, AuthenticationError, NetworkError, NonFastForwardError,
    PushRejectedError, InvalidEndpointError, SyncInProgressError, RepositoryError,
)

__all__ = [
    "SyncConfig", "Protocol", "RemoteEndpoint",
    "CredentialProvider", "CredentialCache", "MemoryCredentialStore",
    "BasicCredential", "TokenCredential", "AnonymousCredential", "SshKeyCredential",
    "DulwichEngine", "MergeResult", "VcsEngine",
    "Transport", "ProtocolPolicy", "HTTP_POLICY", "SSH_POLICY", "transport_for",
    "ChangeKind", "ChangeRecord", "RawChange", "classify",
    "ConflictEntry", "ConflictResolver", "Hunk", "MergeAttempt", "MergeOutcome", "MergeState",
    "SyncOrchestrator", "SyncResult",
    "SyncError", "ErrorKind", "AuthenticationError", "NetworkError", "NonFastForwardError",
    "PushRejectedError", "InvalidEndpointError", "SyncInProgressError", "RepositoryError",
]
