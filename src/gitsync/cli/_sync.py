"""The sync command."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from ..credentials import CredentialProvider
from ..orchestrator import SyncOrchestrator, SyncResult
from ..resolver import ConflictEntry
from ..transport import transport_for
from ._helpers import (
    main,
    _change_dict,
    _json_option,
    _load_config,
    _open_engine,
    _print_changes,
    _repo_option,
    _require_repo,
    _status,
)


def _progress_cb(ctx):
    """Return a progress callback if verbose mode is on, else None."""
    if not ctx.obj.get("verbose"):
        return None
    def _on_progress(msg):
        text = msg.decode(errors="replace")
        text = text.replace("\r", "\r\033[K")
        click.echo(text, nl=False, err=True)
    return _on_progress


def _parse_resolutions(specs) -> dict[str, bytes]:
    """Turn ``PATH=FILE`` specs into ``{path: content}``."""
    resolutions = {}
    for spec in specs:
        path, sep, source = spec.partition("=")
        if not sep or not path or not source:
            raise click.BadParameter(f"expected PATH=FILE, got {spec!r}", param_hint="--resolve")
        try:
            resolutions[path] = Path(source).read_bytes()
        except OSError as exc:
            raise click.BadParameter(f"cannot read {source}: {exc}", param_hint="--resolve")
    return resolutions


def _write_conflicts(directory: str, conflicts) -> list[Path]:
    written = []
    for entry in conflicts:
        dest = Path(directory, *entry.path.split("/"))
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(entry.conflict_markers())
        written.append(dest)
    return written


def _conflict_dict(entry: ConflictEntry) -> dict:
    return {
        "path": entry.path,
        "structural": entry.structural,
        "markers": entry.conflict_markers().decode("utf-8", "replace"),
    }


def _result_dict(result: SyncResult) -> dict:
    return {
        "status": result.status,
        "branch": result.branch,
        "fetched": result.fetched,
        "merged": result.merged,
        "pushed": result.pushed,
        "attempts": result.attempts,
        "error": result.error.value if result.error else None,
        "message": result.message,
        "changes": [_change_dict(c) for c in result.changes],
        "conflicts": [_conflict_dict(c) for c in result.unresolved_conflicts],
    }


@main.command("sync")
@_repo_option
@click.argument("url")
@click.option("--branch", "-b", default=None, help="Branch to sync (default: main, else master).")
@click.option("--max-retries", type=click.IntRange(min=1), default=None,
              help="Maximum merge attempts.")
@click.option("--no-auto-resolve", is_flag=True, default=False,
              help="Leave every conflict for manual resolution.")
@click.option("--anonymous", is_flag=True, default=False,
              help="Allow unauthenticated HTTP access (public remotes).")
@click.option("--resolve", "resolve_specs", multiple=True, metavar="PATH=FILE",
              help="Use FILE's content for conflicting PATH (repeatable).")
@click.option("--conflicts-dir", type=click.Path(file_okay=False), default=None,
              help="Write conflict-marked copies of conflicting files here.")
@_json_option
@click.pass_context
def sync_cmd(ctx, url, branch, max_retries, no_auto_resolve, anonymous,
             resolve_specs, conflicts_dir, as_json):
    """Fetch from URL, merge, and push the result back.

    Exits 1 when conflicts need manual resolution; nothing is pushed then.
    Edit the files written by --conflicts-dir and pass them back with
    --resolve PATH=FILE.
    """
    resolutions = _parse_resolutions(resolve_specs)
    config = _load_config(
        max_merge_conflict_retries=max_retries,
        auto_resolve_non_conflicting=False if no_auto_resolve else None,
    )
    engine = _open_engine(_require_repo(ctx), config)
    progress = _progress_cb(ctx)

    def factory(endpoint, engine, provider, **kwargs):
        return transport_for(endpoint, engine, provider, progress=progress, **kwargs)

    orchestrator = SyncOrchestrator(
        engine,
        config,
        CredentialProvider(allow_anonymous=anonymous),
        transport_factory=factory,
    )
    result = asyncio.run(orchestrator.sync(url, branch, resolutions))
    if conflicts_dir and result.unresolved_conflicts:
        for dest in _write_conflicts(conflicts_dir, result.unresolved_conflicts):
            _status(ctx, f"Wrote {dest}")

    if as_json:
        click.echo(json.dumps(_result_dict(result), indent=2))
        if result.status != "synced":
            ctx.exit(1)
        return

    if result.status == "failed":
        raise click.ClickException(f"{result.message} ({result.error.value})")
    if result.status == "conflicts":
        click.echo(f"Conflicts on {result.branch}; nothing was pushed:")
        for entry in result.unresolved_conflicts:
            click.echo(f"  {entry.path}")
        if conflicts_dir:
            click.echo(f"Conflict-marked copies are in {conflicts_dir}; "
                       f"edit them and sync again with --resolve PATH=FILE.")
        else:
            click.echo("Re-run with --conflicts-dir DIR to get conflict-marked copies.")
        ctx.exit(1)

    _print_changes(result.changes, as_json=False)
    _status(ctx, f"Synced {result.branch} with {url}")
    click.echo(result.message)
