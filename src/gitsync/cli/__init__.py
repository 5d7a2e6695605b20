"""gitsync CLI: sync a local repository with a remote."""

from ._helpers import main  # noqa: F401 (entry point)

# Import command modules to register Click commands with the main group.
from . import _sync, _status  # noqa: F401
