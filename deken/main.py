"""
deken — CLI entrypoint.

A headless front-end over the package manager service, handy for
scripting and for checking what the editor's package browser sees.

Usage:
    python -m deken.main --help
    python -m deken.main search cyclone
    python -m deken.main install cyclone
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from deken import __version__
from deken.core.observability.logging_config import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="deken")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to deken.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """deken — find and install plugdata / Pd libraries."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    level: str | None
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None

    setup_logging(level=level)


def _build_manager(ctx: click.Context):
    """Load config and construct the package manager, or exit."""
    from deken.core.config.loader import ConfigError, load_config
    from deken.core.services.package_manager import PackageManager

    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)
    return PackageManager(config)


def _load_catalog(ctx: click.Context, manager) -> None:
    """Refresh synchronously; exit if the registry could not be read."""
    manager.start(refresh=True)
    if not ctx.obj.get("quiet"):
        click.echo("🔄 Fetching package list...", err=True)
    manager.wait_for_refresh()
    if manager.last_error is not None:
        click.secho(f"❌ Registry unavailable: {manager.last_error}", fg="red", err=True)
        sys.exit(1)


def _record_dict(record) -> dict:
    return {
        "id": record.id,
        "name": record.name,
        "version": record.version,
        "author": record.author,
        "timestamp": record.timestamp,
        "description": record.description,
        "url": record.url,
        "objects": list(record.objects),
    }


@cli.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Fetch the package list and report how many packages fit this machine."""
    manager = _build_manager(ctx)
    _load_catalog(ctx, manager)
    click.secho(
        f"✅ {len(manager.catalog)} packages available for {manager.matcher.tag}",
        fg="green",
    )


@cli.command()
@click.argument("query")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--ignore-case", "-i", is_flag=True, help="Case-insensitive matching.")
@click.pass_context
def search(ctx: click.Context, query: str, as_json: bool, ignore_case: bool) -> None:
    """Search packages by name, description, object or author."""
    manager = _build_manager(ctx)
    if ignore_case:
        manager.config.case_sensitive_search = False
    _load_catalog(ctx, manager)

    results = manager.search(query)

    if as_json:
        click.echo(json.dumps([_record_dict(r) for r in results], indent=2))
        return

    if not results:
        click.echo(f"No packages match '{query}'.")
        return

    for record in results:
        marker = " ✓" if manager.is_installed(record) else ""
        click.secho(f"• {record.name}", fg="cyan", bold=True, nl=False)
        click.echo(f"  {record.version}  {record.author}  {record.timestamp}{marker}")
        if record.description:
            click.echo(f"    {record.description}")


@cli.command()
@click.argument("name")
@click.pass_context
def install(ctx: click.Context, name: str) -> None:
    """Download and install the latest build of NAME for this machine."""
    manager = _build_manager(ctx)
    _load_catalog(ctx, manager)

    record = manager.find(name)
    if record is None:
        click.secho(f"❌ No package named '{name}' for {manager.matcher.tag}", fg="red", err=True)
        sys.exit(1)

    task = manager.install(record)
    quiet = ctx.obj.get("quiet", False)
    if not quiet:
        click.echo(f"⬇️  {record.name} {record.version}", err=True)

        def _progress(value: float | None) -> None:
            if value is not None:
                click.echo(f"\r   {value * 100:5.1f}%", nl=False, err=True)

        task.on_progress(_progress)

    task.wait()
    outcome = task.outcome
    if not quiet:
        click.echo(err=True)

    if outcome is None or not outcome.success:
        error = outcome.error if outcome else "cancelled"
        click.secho(f"❌ Install failed: {error}", fg="red", err=True)
        sys.exit(1)

    click.secho(f"✅ Installed {record.name} to {task.install_path}", fg="green")


@cli.command()
@click.argument("name")
@click.pass_context
def uninstall(ctx: click.Context, name: str) -> None:
    """Remove the installed package NAME and its files."""
    from deken.core.errors import PersistenceFailure

    manager = _build_manager(ctx)
    entry = manager.store.get_by_name(name)
    if entry is None:
        click.secho(f"❌ '{name}' is not installed", fg="red", err=True)
        sys.exit(1)

    try:
        manager.uninstall(entry.id)
    except PersistenceFailure as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    click.secho(f"🗑️  Uninstalled {name}", fg="green")


@cli.command(name="list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_installed(ctx: click.Context, as_json: bool) -> None:
    """List installed packages."""
    manager = _build_manager(ctx)
    entries = manager.installed()

    if as_json:
        payload = [
            {**entry.model_dump(mode="json", by_alias=True), "Name": entry.name, "Broken": entry.is_broken}
            for entry in entries
        ]
        click.echo(json.dumps(payload, indent=2))
        return

    if not entries:
        click.echo("No packages installed.")
        return

    for entry in entries:
        click.secho(f"• {entry.name}", fg="cyan", bold=True, nl=False)
        click.echo(f"  {entry.version}  {entry.author}")
        if entry.is_broken:
            click.secho(f"    ⚠️  missing: {entry.path}", fg="yellow")
        else:
            click.echo(f"    {entry.path}")


@cli.command()
@click.argument("tags", nargs=-1)
@click.pass_context
def platform(ctx: click.Context, tags: tuple[str, ...]) -> None:
    """Show the local platform, or check whether TAGS match it."""
    manager = _build_manager(ctx)
    matcher = manager.matcher

    if not tags:
        click.echo(f"OS:         {matcher.os_name}")
        click.echo(f"Arch:       {', '.join(sorted(matcher.arch_aliases)) or '(unknown)'}")
        click.echo(f"Float size: {matcher.float_size}")
        return

    for tag in tags:
        if matcher.matches(tag):
            click.secho(f"✓ {tag}", fg="green")
        else:
            click.secho(f"✗ {tag}", fg="red")


if __name__ == "__main__":
    cli()
