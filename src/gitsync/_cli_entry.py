"""Console-script entry point; reports a missing ``cli`` extra instead of a traceback."""

import sys

_MISSING_CLICK = (
    "gitsync: the command line needs click, which ships with the 'cli' extra.\n"
    "  pip install 'gitsync[cli]'"
)


def main():
    try:
        from .cli import main as group
    except ImportError as exc:
        if exc.name != "click":
            raise
        sys.exit(_MISSING_CLICK)
    group(prog_name="gitsync")
