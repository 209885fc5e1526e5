"""
CLI entry point for immorterm.
"""

import logging
import os
import time
from datetime import datetime

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .backends import TerminalWindowHost, create_multiplexer
from .backends.base import MultiplexerBackend
from .config import (
    BACKENDS,
    ImmortermConfig,
    ProjectPaths,
    coerce_value,
    get_backend_choices,
    load_config,
    save_config,
)
from .engine import SessionEngine
from .errors import LockTimeout
from .lifecycle import DISPLAY_NAME_ENV, MULTIPLEXER_ENV, SESSION_ID_ENV
from .log import configure_logging
from .models import SessionRecord
from .naming import is_valid_session_id
from .pending import FileLock, PendingRegistrations, merge_pending
from .store import RecordStore

console = Console()
logger = logging.getLogger(__name__)


def _get_multiplexer(config: ImmortermConfig, binary: str | None = None) -> MultiplexerBackend:
    """Create the multiplexer backend selected in config."""
    return create_multiplexer(config.multiplexer, binary or config.multiplexer_binary)


def _load_project() -> tuple[ProjectPaths, ImmortermConfig]:
    paths = ProjectPaths.discover()
    config = load_config(paths.config_file)
    if config.debug_log:
        configure_logging(debug=True, log_file=paths.debug_log_file)
    return paths, config


def _build_engine() -> tuple[SessionEngine, TerminalWindowHost]:
    paths, config = _load_project()
    host = TerminalWindowHost(paths.launchers_dir, config.terminal_command)
    engine = SessionEngine(paths, config, host, multiplexer=_get_multiplexer(config))
    return engine, host


def _format_time(timestamp: float | None) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def _require_record(engine: SessionEngine, key: str) -> SessionRecord:
    record = engine.find_record(key)
    if record is None:
        console.print(f"[bold red]Error:[/] Session '{key}' not found")
        raise SystemExit(1)
    return record


@click.group()
@click.version_option(version=__version__)
@click.option("--debug", is_flag=True, help="Show debug logging")
def main(debug: bool):
    """Immorterm - terminals that survive restarts

    Every terminal runs inside a named GNU screen or tmux session and is
    recorded in .immorterm/sessions.json, so it can be reattached with its
    name and scrollback after the host restarts.

    \b
    Quick start:
      immorterm init          Initialize config in current project
      immorterm run           Restore terminals and watch them
      immorterm new           Open a new persistent terminal
      immorterm sessions      List recorded terminals
    """
    configure_logging(debug=debug)


def _prompt_backend_selection(
    backend_type: str,
    title: str,
    is_interactive: bool,
) -> str:
    """Prompt user to select a backend option.

    Returns:
        Selected backend name
    """
    options = BACKENDS.get(backend_type, {})
    option_list = list(options.keys())

    if not is_interactive or not option_list:
        return option_list[0] if option_list else ""

    console.print(f"\n[bold]{title}[/]")
    for i, (name, desc) in enumerate(options.items(), 1):
        console.print(f"  [cyan]{i}[/]) {name}: [dim]{desc}[/]")

    while True:
        choice = click.prompt("Select option", type=int, default=1)
        if 1 <= choice <= len(option_list):
            return option_list[choice - 1]
        console.print(f"[red]Invalid choice. Please enter 1-{len(option_list)}[/]")


@main.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite existing configuration")
@click.option(
    "--non-interactive",
    is_flag=True,
    help="Use default values without prompting (for scripts)",
)
def init(force: bool, non_interactive: bool):
    """Initialize immorterm in the current project.

    \b
    Creates:
      .immorterm/             Directory for records, logs and locks
      .immorterm/config.json  Configuration with your selections
    """
    console.print("\n[bold]Initializing immorterm[/]\n")

    paths = ProjectPaths.discover()
    if paths.config_file.exists() and not force:
        console.print("[yellow]immorterm already configured[/]")
        console.print("   Use --force to overwrite existing configuration")
        return

    multiplexer = _prompt_backend_selection(
        "multiplexer", "Multiplexer (owns the durable sessions)", not non_interactive
    )

    paths.state_dir.mkdir(parents=True, exist_ok=True)
    gitignore_path = paths.state_dir / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("*\n")
        console.print(f"   ✓ Created {gitignore_path}")

    config = ImmortermConfig(multiplexer=multiplexer)
    save_config(config, paths.config_file)
    console.print(f"   ✓ Created {paths.config_file}")

    if not _get_multiplexer(config).is_available():
        console.print(
            f"\n[yellow]{multiplexer} is not installed; terminals will open "
            "without persistence until it is.[/]"
        )

    console.print("\n[bold green]immorterm initialized![/]")
    console.print(f"   Namespace: {paths.namespace}")
    console.print(f"   Multiplexer: {multiplexer}")
    console.print("\n[dim]Next step:[/] run [cyan]immorterm run[/]")


@main.command()
@click.option("--poll-interval", default=1.0, show_default=True, help="Seconds between window checks")
@click.option("--new", "-n", "new_count", default=0, help="Also open this many new terminals")
def run(poll_interval: float, new_count: int):
    """Restore recorded terminals and keep watching them.

    \b
    Closing a terminal starts its grace period; the session is killed only
    if nothing reopens it in time. Ctrl+C stops watching and keeps every
    session alive for the next run.
    """
    console.print(Panel.fit(f"[bold blue]immorterm v{__version__}[/]", border_style="blue"))

    try:
        engine, host = _build_engine()
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    try:
        result = engine.start()
        if result.skipped_reason:
            console.print(f"[yellow]Restore skipped:[/] {result.skipped_reason}")
        else:
            console.print(
                f"Restored [green]{result.restored}[/] terminal(s)"
                + (f", [red]{result.failed} failed[/]" if result.failed else "")
            )
        for _ in range(new_count):
            binding = engine.create()
            console.print(f"   Opened {binding.handle.name}")

        while engine.lifecycle.bindings() or engine.lifecycle.pending_cleanup_ids():
            host.poll_events()
            time.sleep(poll_interval)
        console.print("[dim]No terminals left.[/]")
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching; sessions are kept[/]")
    except Exception as e:
        console.print(f"\n[bold red]Error:[/] {e}")
        raise SystemExit(1)
    finally:
        engine.shutdown()


@main.command()
@click.argument("name", required=False)
@click.option("--correlation-id", help="Opaque id linking the terminal to an external conversation")
def new(name: str | None, correlation_id: str | None):
    """Open a new persistent terminal, optionally named NAME."""
    try:
        engine, _ = _build_engine()
        try:
            binding = engine.create(name, correlation_id)
        finally:
            engine.shutdown()
        if binding.record_id is None:
            console.print(f"[yellow]Opened {binding.handle.name} without persistence[/]")
            console.print(f"   {engine.unavailable_reason}")
        else:
            console.print(f"[green]✓[/] Opened {binding.handle.name} [dim]({binding.record_id})[/]")
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
def sessions():
    """List recorded terminals and the state of their sessions."""
    try:
        engine, _ = _build_engine()
        records = engine.records()
        live = {}
        if engine.persistence_available:
            live = {s.name: s for s in engine.multiplexer.list_sessions()}

        if not records:
            console.print("[dim]No sessions recorded[/]")
            return

        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Name", style="white")
        table.add_column("Id", style="dim")
        table.add_column("Session", style="dim")
        table.add_column("State")
        table.add_column("Last attached", style="dim")

        for record in sorted(records, key=lambda r: r.created_at):
            session = live.get(record.external_session_name)
            if session is None:
                state = "[red]missing[/]"
            elif session.attached:
                state = "[green]attached[/]"
            else:
                state = "[yellow]detached[/]"
            table.add_row(
                record.display_name,
                record.id,
                record.external_session_name,
                state,
                _format_time(record.last_attached_at),
            )

        console.print(table)
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
def restore():
    """Reopen every recorded terminal once, without watching."""
    try:
        engine, _ = _build_engine()
        try:
            engine.merge_pending()
            result = engine.restoration.restore(force=True)
        finally:
            engine.shutdown()

        if result.skipped_reason:
            console.print(f"[yellow]Restore skipped:[/] {result.skipped_reason}")
            return
        for detail in result.details:
            style = {"restored": "green", "failed": "red"}.get(detail.outcome, "dim")
            suffix = f" [dim]({detail.reason})[/]" if detail.reason else ""
            console.print(f"  [{style}]●[/] {detail.display_name}{suffix}")
        console.print(
            f"\nRestored {result.restored}, failed {result.failed}, skipped {result.skipped}"
        )
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
@click.argument("key")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def forget(key: str, yes: bool):
    """Kill a session and delete its record and log.

    KEY is a session id or display name.
    """
    try:
        engine, _ = _build_engine()
        try:
            record = _require_record(engine, key)
            if not yes:
                click.confirm(f"Forget '{record.display_name}' and kill its session?", abort=True)
            result = engine.forget(record.id)
        finally:
            engine.shutdown()
        console.print(f"[green]✓[/] Forgot {record.display_name}")
        if not result.session_killed:
            console.print("[dim]   (no live session was found)[/]")
    except (SystemExit, click.Abort):
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command("forget-all")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def forget_all(yes: bool):
    """Forget every recorded terminal of this project."""
    try:
        if not yes:
            click.confirm("Forget all terminals and kill their sessions?", abort=True)
        engine, _ = _build_engine()
        try:
            results = engine.forget_all()
        finally:
            engine.shutdown()
        console.print(f"[green]✓[/] Forgot {len(results)} terminal(s)")
    except click.Abort:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command("kill-all")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def kill_all(yes: bool):
    """Kill every live session of this project but keep the records."""
    try:
        if not yes:
            click.confirm("Kill all live sessions of this project?", abort=True)
        engine, _ = _build_engine()
        try:
            killed = engine.kill_all()
        finally:
            engine.shutdown()
        console.print(f"[green]✓[/] Killed {len(killed)} session(s)")
    except click.Abort:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
@click.argument("key")
@click.argument("name")
def rename(key: str, name: str):
    """Rename a terminal. KEY is a session id or display name."""
    try:
        engine, _ = _build_engine()
        try:
            record = _require_record(engine, key)
            engine.rename(record.id, name)
        finally:
            engine.shutdown()
        console.print(f"[green]✓[/] Renamed {record.display_name} to {name}")
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
@click.argument("key")
@click.argument("correlation_id", required=False)
def link(key: str, correlation_id: str | None):
    """Attach an opaque correlation id to a terminal; omit it to clear."""
    try:
        engine, _ = _build_engine()
        try:
            record = _require_record(engine, key)
            engine.link(record.id, correlation_id)
        finally:
            engine.shutdown()
        if correlation_id:
            console.print(f"[green]✓[/] Linked {record.display_name} to {correlation_id}")
        else:
            console.print(f"[green]✓[/] Cleared link of {record.display_name}")
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
def reconcile():
    """Merge registrations left by helper processes into the record file."""
    try:
        engine, _ = _build_engine()
        try:
            result = engine.merge_pending()
        finally:
            engine.shutdown()
        if result is None:
            console.print("[yellow]Lock busy; registrations kept for the next run[/]")
            raise SystemExit(1)
        console.print(f"[green]✓[/] Merged {len(result.added)} registration(s)")
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
def cleanup():
    """Delete orphaned session logs and enforce the log size budget."""
    try:
        engine, _ = _build_engine()
        try:
            report = engine.cleanup()
        finally:
            engine.shutdown()
        console.print(
            f"[green]✓[/] Deleted {len(report.orphaned_logs)} orphaned log(s), "
            f"{len(report.over_budget_logs)} over budget"
        )
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
def status():
    """Show whether persistence is available and what is recorded."""
    try:
        engine, _ = _build_engine()
        try:
            engine_status = engine.status()
        finally:
            engine.shutdown()

        console.print("\n[bold]immorterm status[/]\n")
        if engine_status.persistence_available:
            console.print(f"  [green]●[/] Persistence: available ({engine_status.multiplexer})")
        else:
            console.print("  [red]●[/] Persistence: [bold red]unavailable[/]")
            console.print(f"    [dim]{engine_status.reason}[/]")
        console.print(f"  Namespace: {engine_status.namespace}")
        console.print(f"  Recorded terminals: {engine_status.record_count}")
        console.print(f"  Last reconciled: {_format_time(engine_status.last_reconciled_at)}")
        if engine_status.cache_invalidated:
            console.print("  [yellow]Record file has a different schema version[/]")
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@main.command()
@click.argument("session_id", required=False)
@click.argument("display_name", required=False)
def attach(session_id: str | None, display_name: str | None):
    """Helper run inside each terminal: register, then attach.

    \b
    Arguments default to IMMORTERM_SESSION_ID and IMMORTERM_DISPLAY_NAME.
    Replaces itself with the multiplexer, creating the session if needed.
    Without a multiplexer it starts the user's shell instead.
    """
    session_id = session_id or os.environ.get(SESSION_ID_ENV)
    display_name = display_name or os.environ.get(DISPLAY_NAME_ENV) or session_id

    if not session_id or not is_valid_session_id(session_id):
        console.print(f"[bold red]Error:[/] Invalid session id '{session_id}'")
        raise SystemExit(1)

    try:
        paths, config = _load_project()
        multiplexer = _get_multiplexer(config, os.environ.get(MULTIPLEXER_ENV))
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    if not multiplexer.is_available():
        shell = os.environ.get("SHELL", "/bin/sh")
        console.print(f"[yellow]{multiplexer.binary} not found; this terminal will not persist[/]")
        os.execvp(shell, [shell])

    store = RecordStore(paths.sessions_file, paths.namespace, config.schema_version)
    if store.load().get(session_id) is None:
        now = time.time()
        pending = PendingRegistrations(paths.pending_dir)
        pending.write(SessionRecord(
            id=session_id,
            display_name=display_name,
            namespace=paths.namespace,
            created_at=now,
            last_attached_at=now,
        ))
        try:
            merge_pending(store, pending, FileLock(paths.lock_file))
        except LockTimeout as e:
            logger.warning("Registration of %s deferred: %s", session_id, e)

    external = f"{paths.namespace}-{session_id}"
    exists = multiplexer.get_session(external) is not None
    argv = multiplexer.attach_argv(external, paths.log_file_for(external), exists)
    logger.debug("exec %s", " ".join(argv))
    os.execvp(argv[0], argv)


@main.group()
def config():
    """View and modify immorterm configuration.

    \b
    Commands:
      show    Display current configuration
      set     Update a configuration value
    """
    pass


def _config_key(cli_key: str) -> str:
    return cli_key.replace("-", "_")


@config.command("show")
def config_show():
    """Display current configuration in a formatted table."""
    paths = ProjectPaths.discover()
    if not paths.config_file.exists():
        console.print("[bold red]Error:[/] immorterm not initialized.")
        console.print("Run [cyan]immorterm init[/] first.")
        raise SystemExit(1)

    try:
        immorterm_config = load_config(paths.config_file)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    console.print("\n[bold]immorterm configuration[/]\n")
    console.print(f"   [dim]Config file:[/] {paths.config_file}\n")

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="white")
    table.add_column("Current Value", style="green")
    table.add_column("Valid Options", style="dim")

    for key, value in immorterm_config.to_dict().items():
        if key in BACKENDS:
            valid_options = ", ".join(get_backend_choices(key))
        elif isinstance(value, bool):
            valid_options = "true, false"
        else:
            valid_options = ""
        table.add_row(key.replace("_", "-"), str(value), valid_options)

    console.print(table)


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    \b
    Examples:
      immorterm config set multiplexer tmux
      immorterm config set grace-period 120
      immorterm config set naming-template 'shell-${n}'
    """
    paths = ProjectPaths.discover()
    if not paths.config_file.exists():
        console.print("[bold red]Error:[/] immorterm not initialized.")
        console.print("Run [cyan]immorterm init[/] first.")
        raise SystemExit(1)

    config_key = _config_key(key)
    try:
        coerced = coerce_value(config_key, value)
    except KeyError:
        valid_keys = ", ".join(k.replace("_", "-") for k in ImmortermConfig().to_dict())
        console.print(f"[bold red]Error:[/] Unknown config key '{key}'")
        console.print(f"Valid keys: {valid_keys}")
        raise SystemExit(1)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] Invalid value '{value}' for {key}: {e}")
        raise SystemExit(1)

    try:
        data = load_config(paths.config_file).to_dict()
        data[config_key] = coerced
        save_config(ImmortermConfig.from_dict(data), paths.config_file)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    console.print(f"[green]✓[/] Set {key} = {coerced}")


if __name__ == "__main__":
    main()
