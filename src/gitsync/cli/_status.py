"""Working-tree status and remote URL checks."""

from __future__ import annotations

import json

import click

from ..endpoint import RemoteEndpoint
from ..exceptions import InvalidEndpointError, SyncError
from ..orchestrator import SyncOrchestrator
from ..transport import POLICIES
from ._helpers import (
    main,
    _json_option,
    _load_config,
    _open_engine,
    _print_changes,
    _repo_option,
    _require_repo,
)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

@main.command("status")
@_repo_option
@_json_option
@click.pass_context
def status_cmd(ctx, as_json):
    """Show uncommitted changes, with renames and copies detected."""
    config = _load_config()
    engine = _open_engine(_require_repo(ctx), config)
    try:
        changes = SyncOrchestrator(engine, config).classify_working_tree()
    except SyncError as exc:
        raise click.ClickException(str(exc))
    if not changes and not as_json:
        click.echo("Nothing to commit, working tree clean.")
        return
    _print_changes(changes, as_json)


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------

@main.command("check")
@click.argument("url")
@_json_option
def check_cmd(url, as_json):
    """Report which transport would handle URL.  No network access."""
    try:
        endpoint = RemoteEndpoint.from_url(url)
    except InvalidEndpointError as exc:
        if as_json:
            click.echo(json.dumps({"url": url, "valid": False, "error": str(exc)}))
            raise SystemExit(1)
        raise click.ClickException(str(exc))
    policy = POLICIES[endpoint.protocol]
    if as_json:
        click.echo(json.dumps({
            "url": url,
            "valid": True,
            "protocol": endpoint.protocol.value,
            "host": endpoint.host,
        }))
        return
    click.echo(f"{url}: {policy.name} (host {endpoint.host or '-'})")
