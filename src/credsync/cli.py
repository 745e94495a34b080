"""Maintenance CLI for credential synchronization.

Commands:
    - status: Show the metadata record and the lock
    - sync: Run one coordinated sync with an extractor command
    - clear: Remove the metadata record and any stale lock
    - config init / config show: Manage the [credential_sync] table

The launcher calls SyncCoordinator directly; this CLI exists for diagnosing
and repairing the shared state by hand.
"""

import logging
import sys
from pathlib import Path

import click
import tomlkit
from rich.console import Console
from rich.table import Table

from credsync import __version__
from credsync.config import CONFIG_TABLE, ConfigManager, SyncConfig, get_sync_config
from credsync.coordinator import SyncCoordinator
from credsync.credentials import CommandExtractor, write_credentials_file
from credsync.exceptions import ConfigError, ExtractionFailedError, SyncTimeoutError
from credsync.lock_manager import LockManager
from credsync.metadata_store import MetadataStore
from credsync.timestamps import to_rfc3339, utc_now

logger = logging.getLogger(__name__)
console = Console()

__all__ = ["main"]


def _load_config(ctx: click.Context) -> SyncConfig:
    try:
        return get_sync_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _lock_manager(config: SyncConfig) -> LockManager:
    return LockManager(
        config.metadata_dir,
        holder_id=config.holder_id,
        stale_max_age=config.stale_lock_max_age,
    )


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--config", "config_path", help="Custom config file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """credsync - share one credential extraction across concurrent sessions.

    \b
    CONFIGURATION:
        Config file: ~/.ctask/config.toml, table [credential_sync]
        Environment: CREDSYNC_BASE_DIR, CREDSYNC_VALIDITY_WINDOW, ...
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command(name="status")
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the credential metadata record and lock state."""
    config = _load_config(ctx)
    record = MetadataStore(config.metadata_dir).read()
    locks = _lock_manager(config)
    lock = locks.read()
    now = utc_now()

    table = Table(title="Credential Sync Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Metadata dir", str(config.metadata_dir))
    if record is None:
        table.add_row("Credentials", "[yellow]never synced[/yellow]")
    else:
        fresh = record.is_fresh(now)
        table.add_row("Fingerprint", record.secret_fingerprint[:12])
        table.add_row("Extracted at", to_rfc3339(record.extracted_at))
        table.add_row("Valid until", to_rfc3339(record.valid_until))
        table.add_row("Fresh", "[green]yes[/green]" if fresh else "[red]no[/red]")
        table.add_row("Synced by", record.holder_id or f"PID {record.holder_pid}")

    if lock is None:
        table.add_row("Lock", "[green]free[/green]")
    elif lock.is_corrupt:
        table.add_row("Lock", "[red]corrupt (stale)[/red]")
    else:
        state = "[red]stale[/red]" if locks.is_stale(lock, now) else "[yellow]held[/yellow]"
        table.add_row(
            "Lock",
            f"{state} by PID {lock.owner_pid} on {lock.hostname} ({lock.age(now):.0f}s)",
        )

    console.print(table)


@main.command(name="sync", context_settings={"ignore_unknown_options": True})
@click.option("--force", is_flag=True, help="Extract even if the cached credentials are fresh")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write extracted credentials here (mode 0600); skipped if nothing is extracted",
)
@click.option(
    "--timeout",
    type=float,
    default=120.0,
    show_default=True,
    help="Seconds the extractor command may run",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def sync(
    ctx: click.Context,
    force: bool,
    output: Path | None,
    timeout: float,
    command: tuple[str, ...],
) -> None:
    """Sync credentials using COMMAND as the extractor.

    COMMAND prints the secret on stdout, for example a keychain lookup.
    When the cached credentials are fresh nothing is extracted, so --output
    is only written together with --force or after the cache expires.

    \b
    EXAMPLES:
        $ credsync sync -- security find-generic-password -s my-creds -w
        $ credsync sync --force -o ~/.ctask/home/.credentials -- secret-tool lookup app x
    """
    config = _load_config(ctx)
    coordinator = SyncCoordinator(config, CommandExtractor(list(command), timeout=timeout))

    try:
        result = coordinator.sync(force_refresh=force)
    except ExtractionFailedError as e:
        console.print(f"[red]Error:[/red] could not get your credentials: {e}")
        sys.exit(1)
    except SyncTimeoutError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print(
            "Another process seems stuck holding the lock. "
            "If it has exited, run 'credsync clear' and try again."
        )
        sys.exit(1)

    if result.extracted:
        if output is not None and result.secret is not None:
            write_credentials_file(output, result.secret)
            console.print(f"Wrote credentials to {output}")
        console.print(
            f"[green]Credentials synced[/green] (fingerprint {result.fingerprint[:12]})"
        )
    else:
        console.print(
            "[green]Credentials already fresh[/green] until "
            f"{to_rfc3339(result.metadata.valid_until)}"
        )
        if output is not None:
            console.print(
                f"[yellow]Not written:[/yellow] {output} (nothing was extracted; "
                "use --force to extract and write the file)"
            )


@main.command(name="clear")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Remove the metadata record and any stale lock.

    A lock held by a live process is left in place.
    """
    config = _load_config(ctx)
    if not yes:
        click.confirm(f"Remove credential sync state in {config.metadata_dir}?", abort=True)

    removed_record = MetadataStore(config.metadata_dir).clear()
    removed_lock = _lock_manager(config).remove_if_stale()

    if not removed_record and not removed_lock:
        console.print("Nothing to clear")
        return
    if removed_record:
        console.print("Removed credential metadata")
    if removed_lock:
        console.print("Removed stale lock")


@main.group(name="config")
def config_group() -> None:
    """Manage the [credential_sync] configuration table."""
    pass


@config_group.command(name="init")
@click.option("--force", is_flag=True, help="Overwrite existing settings")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write default settings to the config file."""
    config_path = ctx.obj.get("config_path")
    try:
        if ConfigManager.has_sync_table(config_path) and not force:
            console.print(
                f"[yellow]Settings already exist in {ConfigManager.get_config_path(config_path)}"
                "[/yellow] (use --force to overwrite)"
            )
            sys.exit(1)
        path = ConfigManager.save_config(SyncConfig(), config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]Wrote defaults to[/green] {path}")


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show effective settings (config file plus environment)."""
    config = _load_config(ctx)
    click.echo(tomlkit.dumps({CONFIG_TABLE: config.to_dict()}), nl=False)
    click.echo(f"# holder_id = {config.holder_id}")


if __name__ == "__main__":
    main()
