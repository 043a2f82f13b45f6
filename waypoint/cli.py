"""Waypoint CLI - inspect and drive session checkpoints and the scan gate."""

import sys
from datetime import datetime
from functools import wraps
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from waypoint import __version__
from waypoint.checkpoint import CheckpointKey, format_checkpoint_for_context
from waypoint.config import (
    RECENT_WINDOW_FILE,
    TOPIC_INDEX_FILE,
    WaypointConfig,
    get_waypoint_config,
    get_waypoint_dir,
)
from waypoint.errors import WaypointError, format_error
from waypoint.gate import (
    ScanGate,
    format_verdict,
    load_recent_window,
    load_topic_index,
    recent_window_from_checkpoint,
)
from waypoint.logging import configure_logging
from waypoint.milestones import MilestoneTracker
from waypoint.store import CheckpointStore

console = Console()


def _handle_errors(func):
    """Print Waypoint errors and exit 1 instead of dumping a traceback."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WaypointError as e:
            console.print(f"[red]{escape(format_error(e))}[/red]")
            sys.exit(1)

    return wrapper


def _resolve_key(
    store: CheckpointStore, topic: str, date: str | None, as_key: bool = False
) -> CheckpointKey:
    """Resolve TOPIC to a key.

    TOPIC is always a topic hint, matching what `create` does with it, unless
    `as_key` is set, in which case it must be a full key (2026-10-17-auth).
    """
    if as_key:
        if date:
            raise click.BadParameter("--date cannot be combined with --key", param_hint="--date")
        return CheckpointKey.parse(topic)
    when = None
    if date:
        try:
            when = datetime.fromisoformat(f"{date}T00:00:00+00:00")
        except ValueError:
            raise click.BadParameter(f"Invalid date: {date}", param_hint="--date") from None
    return store.key_for(topic, when)


date_option = click.option("--date", help="Checkpoint date (YYYY-MM-DD), default today")
key_option = click.option(
    "--key", "as_key", is_flag=True, help="Treat TOPIC as a full key (YYYY-MM-DD-slug)"
)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--dir",
    "checkpoints_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Checkpoint directory (default: project or ~/.waypoint/checkpoints)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, checkpoints_dir, verbose):
    """Waypoint: crash-safe session checkpoints and scan gating."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    try:
        ctx.obj["store"] = CheckpointStore(root=checkpoints_dir)
    except WaypointError as e:
        console.print(f"[red]{escape(format_error(e))}[/red]")
        sys.exit(1)


@main.command()
@click.argument("topic")
@click.option("--task", help="Initial current task")
@click.pass_obj
@_handle_errors
def create(obj, topic, task):
    """Create today's checkpoint for TOPIC (no-op if it exists)."""
    store: CheckpointStore = obj["store"]
    initial = {"task_state": {"current_task": task}} if task else None
    checkpoint_id, created = store.create_if_absent(topic, initial)
    if created:
        console.print(f"[green]✓[/green] Created checkpoint: {checkpoint_id}")
    else:
        console.print(f"[dim]Checkpoint already live:[/dim] {checkpoint_id}")


@main.command()
@click.argument("topic")
@date_option
@key_option
@click.pass_obj
@_handle_errors
def status(obj, topic, date, as_key):
    """Show the live checkpoint for TOPIC."""
    store: CheckpointStore = obj["store"]
    checkpoint = store.retrieve(_resolve_key(store, topic, date, as_key))
    console.print(format_checkpoint_for_context(checkpoint), markup=False, highlight=False)


@main.command()
@click.argument("topic")
@date_option
@key_option
@click.option("--task", help="Set the current task")
@click.option("--todo", multiple=True, help="Replace the todo list (repeatable)")
@click.option("--file", "files", multiple=True, help="Add a modified file (repeatable)")
@click.option("--decision", multiple=True, help="Append a key decision (repeatable)")
@click.option("--summary", help="Set the context summary")
@click.pass_obj
@_handle_errors
def update(obj, topic, date, as_key, task, todo, files, decision, summary):
    """Update task state for TOPIC's live checkpoint."""
    store: CheckpointStore = obj["store"]
    key = _resolve_key(store, topic, date, as_key)
    current = store.retrieve(key)

    task_changes = {}
    if task:
        task_changes["current_task"] = task
    if todo:
        task_changes["todo_list"] = list(todo)
    if files:
        task_changes["files_modified"] = current.task_state.files_modified | set(files)
    if decision:
        task_changes["key_decisions"] = current.task_state.key_decisions + tuple(decision)

    changes = {}
    if task_changes:
        changes["task_state"] = task_changes
    if summary:
        changes["recovery_metadata"] = {"context_summary": summary}

    if not changes:
        console.print("[yellow]Nothing to update[/yellow]")
        return

    updated = store.update(key, changes)
    console.print(f"[green]✓[/green] Updated {updated.id} ({', '.join(changes)})")


@main.command()
@click.argument("topic")
@date_option
@key_option
@click.option("--trigger", default="manual", show_default=True, help="What caused the compaction")
@click.option("--before", "tokens_before", type=int, default=0, help="Tokens before compaction")
@click.option("--after", "tokens_after", type=int, default=0, help="Tokens after compaction")
@click.pass_obj
@_handle_errors
def compact(obj, topic, date, as_key, trigger, tokens_before, tokens_after):
    """Record a compaction and start a new checkpoint generation."""
    store: CheckpointStore = obj["store"]
    checkpoint = store.compact(
        _resolve_key(store, topic, date, as_key), trigger, tokens_before, tokens_after
    )
    console.print(
        f"[green]✓[/green] {checkpoint.id} now at generation {checkpoint.compact_counter} "
        f"[dim]({store.path_for(checkpoint).name})[/dim]"
    )


@main.command()
@click.argument("topic")
@click.argument("usage", type=int)
@date_option
@key_option
@click.pass_obj
@_handle_errors
def observe(obj, topic, usage, date, as_key):
    """Report token USAGE for TOPIC; fires a milestone update if crossed."""
    store: CheckpointStore = obj["store"]
    key = _resolve_key(store, topic, date, as_key)
    result = MilestoneTracker(store).observe(key, usage)
    if result.fired:
        console.print(
            f"[green]✓[/green] Milestone {result.threshold:,} reached at {usage:,} tokens"
        )
    else:
        console.print(f"[dim]No new milestone at {usage:,} tokens[/dim]")


@main.command()
@click.argument("topic")
@date_option
@key_option
@click.pass_obj
@_handle_errors
def cleanup(obj, topic, date, as_key):
    """Remove superseded generations left by an interrupted compaction."""
    store: CheckpointStore = obj["store"]
    removed = store.cleanup(_resolve_key(store, topic, date, as_key))
    if not removed:
        console.print("[dim]Nothing to clean up[/dim]")
        return
    for path in removed:
        console.print(f"[green]✓[/green] Removed {path.name}")


@main.command("list")
@click.pass_obj
@_handle_errors
def list_cmd(obj):
    """List checkpoints."""
    store: CheckpointStore = obj["store"]
    keys = store.list_keys()
    if not keys:
        console.print("[dim]No checkpoints found[/dim]")
        return

    table = Table(title=f"Checkpoints ({store.root})")
    table.add_column("Key", style="cyan")
    table.add_column("Topic")
    table.add_column("Gen", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Updated", style="dim")

    for key in keys:
        try:
            cp = store.retrieve(key)
        except WaypointError as e:
            table.add_row(str(key), f"[red]{e.code}[/red]", "-", "-", "-")
            continue
        table.add_row(
            str(key),
            cp.topic,
            str(cp.compact_counter),
            f"{cp.context_metrics.estimated_tokens:,}",
            cp.last_updated_at[:16].replace("T", " "),
        )

    console.print(table)


@main.command()
@click.argument("keywords", nargs=-1, required=True)
@click.option(
    "--recent",
    "recent_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"Recent-activity JSONL (default: .waypoint/{RECENT_WINDOW_FILE})",
)
@click.option(
    "--index",
    "index_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"Topic index YAML (default: .waypoint/{TOPIC_INDEX_FILE})",
)
@click.option("--topic", help="Also use this topic's live checkpoint as recent context")
@click.pass_obj
@_handle_errors
def gate(obj, keywords, recent_path, index_path, topic):
    """Decide whether KEYWORDS need a full scan.

    Exits 0 when cheap context is sufficient and 2 when a full scan is needed.
    """
    store: CheckpointStore = obj["store"]
    config = store.config
    waypoint_dir = get_waypoint_dir()

    recent = list(
        load_recent_window(
            recent_path or waypoint_dir / RECENT_WINDOW_FILE, config.recent_window_size
        )
    )
    if topic:
        live = store.retrieve(_resolve_key(store, topic, None))
        recent.extend(recent_window_from_checkpoint(live))
    topic_index = load_topic_index(index_path or waypoint_dir / TOPIC_INDEX_FILE)

    verdict = ScanGate.from_config(config).evaluate(keywords, recent, topic_index)
    console.print(format_verdict(verdict), markup=False, highlight=False)
    if not verdict.sufficient:
        sys.exit(2)


@main.group()
def config():
    """Manage tuning configuration (tuning.yaml)."""
    pass


@config.command("list")
def config_list():
    """Show effective tuning configuration."""
    effective = get_waypoint_config()
    defaults = WaypointConfig()

    console.print("[bold]Tuning Configuration[/bold] [dim](tuning.yaml)[/dim]")
    console.print()
    console.print("  [dim]# Scan gate[/dim]")
    for key in ("tier1_weight", "tier2_weight", "sufficiency_threshold", "max_evidence"):
        _show_tuning_value(key, getattr(effective, key), getattr(defaults, key))
    console.print("  [dim]# Milestones[/dim]")
    _show_tuning_value(
        "milestone_thresholds", effective.milestone_thresholds, defaults.milestone_thresholds
    )
    console.print("  [dim]# Store[/dim]")
    _show_tuning_value("slug_max_length", effective.slug_max_length, defaults.slug_max_length)
    _show_tuning_value(
        "recent_window_size", effective.recent_window_size, defaults.recent_window_size
    )


def _show_tuning_value(key: str, value, default):
    """Display a tuning value, highlighting if non-default."""
    if value != default:
        console.print(f"  {key}: [cyan]{value}[/cyan] [dim](default: {default})[/dim]")
    else:
        console.print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
