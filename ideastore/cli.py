"""
CLI interface for the idea store.

Usage:
    ideastore init --backend local
    ideastore add "Enterprise Strategy" "Target multi-guild accounts" --user u1
    ideastore search "enterprise accounts"
    ideastore due
"""

import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional, TypeVar

import typer

from .api import IdeaStore, open_store
from .config import (
    StoreConfig,
    get_config_dir,
    load_or_create_config,
    save_config,
)
from .errors import capture
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .types import (
    CreateIdeaInput,
    DateRange,
    Idea,
    IdeaFilter,
    ReminderInput,
    UpdateIdeaInput,
    parse_timestamp,
)

T = TypeVar("T")

# Configure quiet mode by default (suppress verbose library output)
# Set IDEASTORE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("IDEASTORE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


# Global state for CLI options
_json_output = False


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _config_dir_callback(value: Optional[Path]):
    # The error log follows the config directory
    if value is not None:
        os.environ["IDEASTORE_CONFIG_DIR"] = str(value.expanduser().resolve())


app = typer.Typer(
    name="ideastore",
    help="Semantic idea store with reminders.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    config_dir: Annotated[Optional[Path], typer.Option(
        "--config-dir", "-c",
        help="Config directory (default: ~/.ideastore/)",
        callback=_config_dir_callback,
        is_eager=True,
    )] = None,
):
    """Semantic idea store with reminders."""


# -----------------------------------------------------------------------------
# Shared options
# -----------------------------------------------------------------------------

UserOption = Annotated[Optional[str], typer.Option("--user", "-u", help="Owner user id")]
ChatOption = Annotated[Optional[int], typer.Option("--chat", help="Chat id")]
CategoryOption = Annotated[Optional[str], typer.Option("--category", help="Idea category")]
PriorityOption = Annotated[Optional[str], typer.Option("--priority", "-p", help="low, medium, high or urgent")]
StatusOption = Annotated[Optional[str], typer.Option("--status", help="Idea status")]
TagOption = Annotated[Optional[list[str]], typer.Option("--tag", "-t", help="Tag (repeatable)")]
SinceOption = Annotated[Optional[str], typer.Option("--since", help="Created at or after (ISO date/time)")]
UntilOption = Annotated[Optional[str], typer.Option("--until", help="Created at or before (ISO date/time)")]
RemindAtOption = Annotated[Optional[str], typer.Option("--remind-at", help="Reminder time (ISO date/time, UTC if no offset)")]
RemindTypeOption = Annotated[str, typer.Option("--remind-type", help="once, daily, weekly, monthly or custom")]
MessageOption = Annotated[Optional[str], typer.Option("--message", "-m", help="Reminder message")]


def _parse_time(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        raise typer.BadParameter(f"not an ISO date/time: {value!r}", param_hint=option)


def _build_filter(
    user: Optional[str],
    chat: Optional[int],
    category: Optional[str],
    priority: Optional[str],
    status: Optional[str],
    tags: Optional[list[str]],
    since: Optional[str],
    until: Optional[str],
) -> Optional[IdeaFilter]:
    start = _parse_time(since, "--since")
    end = _parse_time(until, "--until")
    date_range = DateRange(start, end) if start or end else None
    if not any([user, chat is not None, category, priority, status, tags, date_range]):
        return None
    return IdeaFilter(
        user_id=user,
        chat_id=chat,
        category=category,
        priority=priority,
        status=status,
        tags=tags,
        date_range=date_range,
    )


def _reminder_inputs(
    remind_at: Optional[str], remind_type: str, message: Optional[str]
) -> Optional[list[ReminderInput]]:
    when = _parse_time(remind_at, "--remind-at")
    if when is None:
        return None
    return [ReminderInput(type=remind_type, scheduled_for=when, message=message)]


# -----------------------------------------------------------------------------
# Running store operations
# -----------------------------------------------------------------------------

def _load_config() -> StoreConfig:
    config = load_or_create_config(get_config_dir())
    configure_ops_log(config.path)
    return config


def _run(operation: Callable[[IdeaStore], Awaitable[T]]) -> T:
    """Open the configured store, run one operation, close the store.

    Store errors are reported on one line and exit with status 1.
    """
    async def go():
        store = open_store(_load_config())
        async with store:
            return await capture(operation(store))

    result = asyncio.run(go())
    if not result.ok:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(1)
    return result.value


def _emit(data: Any, text: str) -> None:
    if _json_output:
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(text)


def _idea_line(idea: Idea) -> str:
    tags = f"  #{' #'.join(idea.tags)}" if idea.tags else ""
    return f"{idea.id}  [{idea.category}/{idea.priority}/{idea.status}]  {idea.title}{tags}"


def _idea_detail(idea: Idea) -> str:
    lines = [
        _idea_line(idea),
        f"  user: {idea.user_id}" + (f"  chat: {idea.chat_id}" if idea.chat_id is not None else ""),
        f"  created: {idea.created_at.isoformat()}  updated: {idea.updated_at.isoformat()}",
        "",
        idea.content,
    ]
    for r in idea.reminders:
        state = "sent" if r.is_sent else ("active" if r.is_active else "inactive")
        lines.append(f"  reminder {r.id} {r.type} {r.scheduled_for.isoformat()} ({state})")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init(
    backend: Annotated[str, typer.Option("--backend", "-b", help="local or postgres")] = "local",
    dsn: Annotated[Optional[str], typer.Option("--dsn", help="PostgreSQL connection string")] = None,
    embedding: Annotated[Optional[str], typer.Option("--embedding", "-e", help="Embedding provider name")] = None,
    model: Annotated[Optional[str], typer.Option("--model", help="Embedding model")] = None,
    dimension: Annotated[Optional[int], typer.Option("--dimension", help="Embedding dimension")] = None,
):
    """
    Write a config file and create the schema and vector index.

    The local backend is configured with files in the config directory so
    ideas persist between commands.
    """
    config = load_or_create_config(get_config_dir())
    config.backend = backend
    if backend == "local":
        if config.local.database == ":memory:":
            config.local.database = "ideas.db"
        if not config.local.chroma_path and not config.local.chroma_host:
            config.local.chroma_path = "chroma"
    if dsn:
        config.postgres.dsn = dsn
    if embedding:
        config.embedding.name = embedding
    if model:
        config.embedding.params["model"] = model
    if dimension:
        config.dimension = dimension
    save_config(config)

    async def noop(store: IdeaStore) -> None:
        return None

    _run(noop)
    _emit(
        {"config": str(config.config_path), "backend": config.backend},
        f"Initialized {config.backend} store: {config.config_path}",
    )


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Idea title")],
    content: Annotated[str, typer.Argument(help="Idea content")],
    user: Annotated[str, typer.Option("--user", "-u", help="Owner user id")],
    category: CategoryOption = None,
    priority: PriorityOption = None,
    tag: TagOption = None,
    chat: ChatOption = None,
    remind_at: RemindAtOption = None,
    remind_type: RemindTypeOption = "once",
    message: MessageOption = None,
):
    """Store a new idea."""
    input = CreateIdeaInput(
        title=title,
        content=content,
        user_id=user,
        category=category,
        priority=priority,
        tags=tag,
        chat_id=chat,
        reminders=_reminder_inputs(remind_at, remind_type, message),
    )
    idea = _run(lambda store: store.create(input))
    _emit(idea.to_dict(), _idea_line(idea))


@app.command()
def get(id: Annotated[str, typer.Argument(help="Idea id")]):
    """Show one idea with its reminders."""
    idea = _run(lambda store: store.get(id))
    if idea is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    _emit(idea.to_dict(), _idea_detail(idea))


@app.command()
def update(
    id: Annotated[str, typer.Argument(help="Idea id")],
    title: Annotated[Optional[str], typer.Option("--title", help="New title")] = None,
    content: Annotated[Optional[str], typer.Option("--content", help="New content")] = None,
    category: CategoryOption = None,
    priority: PriorityOption = None,
    status: StatusOption = None,
    tag: Annotated[Optional[list[str]], typer.Option("--tag", "-t", help="Replace tags (repeatable)")] = None,
    remind_at: RemindAtOption = None,
    remind_type: RemindTypeOption = "once",
    message: MessageOption = None,
):
    """Change fields of an idea. Title or content changes re-embed it."""
    input = UpdateIdeaInput(
        id=id,
        title=title,
        content=content,
        category=category,
        priority=priority,
        status=status,
        tags=tag,
        reminders=_reminder_inputs(remind_at, remind_type, message),
    )
    idea = _run(lambda store: store.update(input))
    if idea is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    _emit(idea.to_dict(), _idea_line(idea))


@app.command()
def delete(id: Annotated[str, typer.Argument(help="Idea id")]):
    """Delete an idea and its reminders."""
    deleted = _run(lambda store: store.delete(id))
    if not deleted:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    _emit({"id": id, "deleted": True}, f"Deleted {id}")


@app.command("list")
def list_ideas(
    user: UserOption = None,
    chat: ChatOption = None,
    category: CategoryOption = None,
    priority: PriorityOption = None,
    status: StatusOption = None,
    tag: TagOption = None,
    since: SinceOption = None,
    until: UntilOption = None,
    limit: Annotated[Optional[int], typer.Option("--limit", "-n", help="Maximum results")] = None,
):
    """List ideas, newest first."""
    filter = _build_filter(user, chat, category, priority, status, tag, since, until)
    ideas = _run(lambda store: store.list(filter, limit))
    _emit([i.to_dict() for i in ideas], "\n".join(_idea_line(i) for i in ideas) or "No ideas.")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    limit: Annotated[Optional[int], typer.Option("--limit", "-n", help="Maximum results")] = None,
    threshold: Annotated[Optional[float], typer.Option("--threshold", help="Minimum score (0-1)")] = None,
    user: UserOption = None,
    chat: ChatOption = None,
    category: CategoryOption = None,
    priority: PriorityOption = None,
    status: StatusOption = None,
    tag: TagOption = None,
    since: SinceOption = None,
    until: UntilOption = None,
):
    """Find ideas by meaning."""
    filter = _build_filter(user, chat, category, priority, status, tag, since, until)
    results = _run(lambda store: store.search(query, limit=limit, threshold=threshold, filter=filter))
    _emit(
        [{"score": r.score, "distance": r.distance, "idea": r.idea.to_dict()} for r in results],
        "\n".join(f"{r.score:.3f}  {_idea_line(r.idea)}" for r in results) or "No results.",
    )


@app.command()
def due(
    at: Annotated[Optional[str], typer.Option("--at", help="Reference time (default: now)")] = None,
):
    """Show reminders that are due and not yet sent."""
    now = _parse_time(at, "--at")
    reminders = _run(lambda store: store.get_due_reminders(now))
    _emit(
        [r.to_dict() for r in reminders],
        "\n".join(
            f"{r.id}  {r.scheduled_for.isoformat()}  {r.type}  idea={r.idea_id}"
            + (f"  {r.message}" if r.message else "")
            for r in reminders
        ) or "Nothing due.",
    )


@app.command()
def sent(reminder_id: Annotated[str, typer.Argument(help="Reminder id")]):
    """Mark a reminder as sent."""
    changed = _run(lambda store: store.mark_reminder_sent(reminder_id))
    message = f"Marked {reminder_id} sent" if changed else f"{reminder_id} already sent or unknown"
    _emit({"id": reminder_id, "is_sent": True, "changed": changed}, message)


@app.command()
def stats():
    """Show idea count and index size."""
    result = _run(lambda store: store.get_stats())
    _emit(
        {"count": result.count, "index_size": result.index_size},
        f"ideas: {result.count}\nindex: {result.index_size} bytes",
    )


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="ideastore CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
