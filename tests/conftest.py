"""Shared fixtures for gitsync tests."""

import pytest
from click.testing import CliRunner
from dulwich.client import LocalGitClient
from dulwich.objects import Blob
from dulwich.repo import Repo

from gitsync.credentials import BasicCredential, CredentialProvider, MemoryCredentialStore
from gitsync.engine import DulwichEngine
from gitsync.tree import GIT_FILEMODE_BLOB, TreeEntry, rebuild_tree

REMOTE_URL = "https://git.example.com/team/notes.git"


# ---------------------------------------------------------------------------
# Repository helpers
# ---------------------------------------------------------------------------

def commit_files(engine, branch, files, message="update", parents=None):
    """Commit *files* (``{path: bytes | None}``, None deletes) on top of *branch*.

    With explicit *parents* the branch is not moved.
    """
    store = engine.repo.object_store
    if parents is None:
        head = engine.branch_head(branch)
        parent_list = [head] if head else []
    else:
        parent_list = list(parents)
    base_tree = engine.commit_tree_id(parent_list[0]) if parent_list else None

    writes, removes = {}, set()
    for path, data in files.items():
        if data is None:
            removes.add(path)
            continue
        blob = Blob.from_string(data)
        store.add_object(blob)
        writes[path] = TreeEntry(GIT_FILEMODE_BLOB, blob.id)

    tree_id = rebuild_tree(store, base_tree, writes, removes)
    commit = engine.commit_tree(tree_id, parent_list, message)
    if parents is None:
        assert engine.atomic_update_ref(branch, commit, parent_list[0] if parent_list else None)
    return commit


def read_file(engine, commit, path):
    snapshot = engine.tree_snapshot(engine.commit_tree_id(commit))
    return engine.read_blob(snapshot[path])


def local_client_factory(mapping):
    """``client_factory`` routing remote URLs to local bare repositories."""
    def factory(url, **kwargs):
        return LocalGitClient(), mapping[url]
    return factory


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def local_engine(tmp_path):
    """A bare local repository."""
    p = str(tmp_path / "local.git")
    Repo.init_bare(p, mkdir=True)
    return DulwichEngine.open(p)


@pytest.fixture
def remote_engine(tmp_path):
    """A bare repository standing in for the remote."""
    p = str(tmp_path / "remote.git")
    Repo.init_bare(p, mkdir=True)
    return DulwichEngine.open(p)


@pytest.fixture
def worktree_engine(tmp_path):
    """A non-bare repository with a working tree."""
    p = tmp_path / "work"
    p.mkdir()
    Repo.init(str(p))
    return DulwichEngine.open(p)


@pytest.fixture
def credentials():
    store = MemoryCredentialStore({REMOTE_URL: BasicCredential("alice", "s3cret")})
    return CredentialProvider(store, use_git_helpers=False)


@pytest.fixture
def client_factory(remote_engine):
    return local_client_factory({REMOTE_URL: remote_engine.path})
