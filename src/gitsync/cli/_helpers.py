"""Shared helpers, option decorators, and the main CLI group."""

from __future__ import annotations

import json
import logging

import click

from ..classifier import ChangeRecord
from ..config import SyncConfig
from ..engine import DulwichEngine
from ..exceptions import SyncError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _status(ctx, msg):
    """Emit a status message to stderr when verbose mode (-v) is on."""
    if ctx.obj.get("verbose"):
        click.echo(msg, err=True)


def _store_repo(ctx, param, value):
    """Click callback: store --repo value in the context."""
    ctx.ensure_object(dict)
    if value is not None:
        ctx.obj["repo_path"] = value
    return value


def _repo_option(f):
    """Shared --repo/-r option decorator for all commands."""
    return click.option(
        "--repo", "-r", type=click.Path(), envvar="GITSYNC_REPO",
        help="Path to the local git repository (or set GITSYNC_REPO).",
        expose_value=False, callback=_store_repo, is_eager=True,
    )(f)


def _json_option(f):
    return click.option(
        "--json", "as_json", is_flag=True, default=False,
        help="Print the result as JSON.",
    )(f)


def _require_repo(ctx) -> str:
    return ctx.obj.get("repo_path") or "."


def _load_config(**overrides) -> SyncConfig:
    """``GITSYNC_*`` environment settings with command-line overrides on top."""
    try:
        return SyncConfig.from_env().with_overrides(**overrides)
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}")


def _open_engine(repo_path: str, config: SyncConfig) -> DulwichEngine:
    try:
        return DulwichEngine.open(repo_path, author=config.author, email=config.email)
    except SyncError as exc:
        raise click.ClickException(str(exc))


def _change_dict(change: ChangeRecord) -> dict:
    d = {"path": change.path, "kind": change.kind.value}
    if change.previous_path is not None:
        d["previous_path"] = change.previous_path
        d["similarity"] = round(change.similarity, 3)
    return d


def _print_changes(changes, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps([_change_dict(c) for c in changes], indent=2))
        return
    for change in changes:
        click.echo(f"  {change}")


# ---------------------------------------------------------------------------
# Main group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--repo", "-r", type=click.Path(), envvar="GITSYNC_REPO",
              help="Path to the local git repository (or set GITSYNC_REPO).",
              expose_value=False, callback=_store_repo, is_eager=True)
@click.option("-v", "--verbose", is_flag=True, help="Verbose output on stderr.")
@click.pass_context
def main(ctx, verbose):
    """gitsync: keep a local git repository in step with a remote.

    Fetches, merges (resolving non-overlapping conflicts on its own),
    and pushes, over HTTPS or SSH.

    \b
    Quick start:
      gitsync check https://github.com/me/notes.git
      gitsync sync  https://github.com/me/notes.git
      gitsync status
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )
