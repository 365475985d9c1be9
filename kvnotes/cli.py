"""
CLI interface for kvnotes.

Usage:
    kv add project-notes "call the printer people" -t work
    kv search proj
    kv serve --port 7878
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Iterator, Optional

import typer
from typing_extensions import Annotated

from .config import (
    CONFIG_FILENAME,
    AppSettings,
    default_home,
    load_settings,
    resolve_namespace,
    resolve_paths,
    save_settings,
)
from .entry_store import EntryStore
from .errors import KvError
from .logging_config import configure_logging, configure_ops_log, remove_handler
from .notebook import Notebook, UpsertResult
from .server import ViewerServer
from .types import MAX_TTL_MINUTES, SearchScope


app = typer.Typer(
    name="kv",
    help="Namespaced key/value notes with tags, expiry and a live web viewer.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@dataclass
class CliState:
    """Options from the main callback, shared with every command."""
    namespace_option: Optional[str] = None
    data_file: Optional[Path] = None
    settings: AppSettings = field(default_factory=AppSettings)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"kv {version('kvnotes')}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    namespace: Annotated[Optional[str], typer.Option(
        "--namespace", "-n",
        envvar="KVNOTES_NAMESPACE",
        help="Namespace to operate on (default: 'default')",
    )] = None,
    data_file: Annotated[Optional[Path], typer.Option(
        "--data-file",
        envvar="KVNOTES_DATA_FILE",
        help="Path to the SQLite database file (overrides the namespace location)",
    )] = None,
    config: Annotated[Optional[Path], typer.Option(
        "--config",
        help="Path to a kvnotes.toml settings file",
    )] = None,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Namespaced key/value notes with tags, expiry and a live web viewer."""
    try:
        settings = load_settings(config)
    except KvError as e:
        _fail(e)
    configure_logging(settings, verbose=verbose)
    ctx.obj = CliState(namespace_option=namespace, data_file=data_file, settings=settings)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


def _fail(message) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


@contextmanager
def _notebook(ctx: typer.Context) -> Iterator[Notebook]:
    """Open the namespace for one command; KvErrors become a clean exit 1."""
    state = _state(ctx)
    ops_handler = None
    try:
        namespace = resolve_namespace(state.namespace_option)
        paths = resolve_paths(namespace, state.settings, data_file=state.data_file)
        ops_handler = configure_ops_log(paths.directory)
        with Notebook.open(paths, state.settings) as notebook:
            yield notebook
    except KvError as e:
        _fail(e)
    finally:
        remove_handler(ops_handler)


def _echo_upsert(key: str, result: UpsertResult) -> None:
    if result.created:
        typer.echo(f"Added '{key}'. {result.entry.describe()}")
    else:
        typer.echo(
            f"Updated '{key}'. Previous: {result.previous.describe()}; "
            f"Now: {result.entry.describe()}"
        )


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

TagOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--tag", "-t",
        help="Tag to attach (repeatable). Omit to keep the existing tags.",
    )
]

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-l",
        min=0,
        help="Maximum results to show",
    )
]

AnyFileOption = Annotated[
    bool,
    typer.Option(
        "--any-file",
        help="Allow files that don't end in .md",
    )
]


# -----------------------------------------------------------------------------
# Record commands
# -----------------------------------------------------------------------------

@app.command("add")
def add(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to add or update")],
    value: Annotated[str, typer.Argument(help="Value to store")],
    tags: TagOption = None,
    ttl: Annotated[Optional[int], typer.Option(
        "--ttl",
        min=1, max=MAX_TTL_MINUTES,
        help="Expire after this many minutes",
    )] = None,
):
    """Add or update a key. Shortcut: a"""
    with _notebook(ctx) as nb:
        key = key.strip()
        _echo_upsert(key, nb.upsert(key, value, tags, ttl_minutes=ttl, keep_tags=True))


@app.command("get")
def get(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to show")],
):
    """Print the value (and tags) of a key. Shortcut: g"""
    with _notebook(ctx) as nb:
        entry = nb.get(key)
        typer.echo(entry.value)
        if entry.tags:
            typer.echo(f"tags: {', '.join(entry.tags)}")


@app.command("remove")
def remove(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to remove")],
):
    """Remove a key and its value. Shortcuts: r, rm, delete"""
    with _notebook(ctx) as nb:
        removed = nb.delete(key)
        typer.echo(f"Removed '{key.strip()}'. Stored value was {removed.describe()}.")


@app.command("list")
def list_entries(ctx: typer.Context):
    """List all entries in key order. Shortcut: l"""
    with _notebook(ctx) as nb:
        entries = nb.list()
        if not entries:
            typer.echo("No entries stored.")
            return
        for key, entry in entries:
            typer.echo(entry.summary(key))


@app.command("search")
def search(
    ctx: typer.Context,
    pattern: Annotated[str, typer.Argument(help="Pattern to fuzzy match")],
    limit: LimitOption = 10,
    tags_only: Annotated[bool, typer.Option("--tags", help="Search only within tags")] = False,
    keys_only: Annotated[bool, typer.Option("--keys", help="Search only within keys")] = False,
):
    """Fuzzy search keys and tags. Shortcut: s"""
    try:
        scope = SearchScope.from_flags(tags_only=tags_only, keys_only=keys_only)
    except KvError as e:
        _fail(e)

    with _notebook(ctx) as nb:
        matches = nb.search(pattern, limit, scope)
        if not matches:
            typer.echo("No matches found.")
            return
        for match in matches:
            typer.echo(match.entry.summary(match.key))


@app.command("recent")
def recent(
    ctx: typer.Context,
    limit: LimitOption = 10,
):
    """Show recently accessed keys, most recent first."""
    with _notebook(ctx) as nb:
        keys = nb.recent(limit)
        if not keys:
            typer.echo("No recent keys recorded.")
            return
        for idx, key in enumerate(keys, start=1):
            typer.echo(f"{idx:>2}. {key}")


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------

@app.command("export")
def export(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Destination JSON file")],
):
    """Export all entries to JSON. Shortcut: e"""
    with _notebook(ctx) as nb:
        count = nb.export_to(path)
        typer.echo(f"Exported {count} entries to {path}")


@app.command("import")
def import_(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Source JSON file")],
):
    """Import entries from JSON, replacing current data. Shortcut: i"""
    with _notebook(ctx) as nb:
        count = nb.import_from(path)
        typer.echo(f"Imported {count} entries from {path}")


@app.command("html")
def html(
    ctx: typer.Context,
    path: Annotated[Path, typer.Option(
        "--path", "-p",
        help="Output HTML file",
    )] = Path("kvnotes.html"),
):
    """Write a static, read-only HTML view of all entries."""
    with _notebook(ctx) as nb:
        nb.write_html(path)
        typer.echo(
            f"Generated HTML view at {path} "
            f"(namespace: {_namespace_name(ctx)}, data source: {nb.store.path})"
        )


@app.command("put-file")
def put_file(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to store the file under")],
    file: Annotated[Path, typer.Argument(help="Markdown file to read")],
    tags: TagOption = None,
    any_file: AnyFileOption = False,
):
    """Store the contents of a file as a value."""
    with _notebook(ctx) as nb:
        key = key.strip()
        _echo_upsert(key, nb.put_file(key, file, tags, any_file=any_file))


@app.command("get-file")
def get_file(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to write out")],
    file: Annotated[Path, typer.Argument(help="Markdown file to write")],
    any_file: AnyFileOption = False,
):
    """Write a value to a file."""
    with _notebook(ctx) as nb:
        nb.get_file(key, file, any_file=any_file)
        typer.echo(f"Wrote '{key.strip()}' to {file}")


def _namespace_name(ctx: typer.Context) -> str:
    return resolve_namespace(_state(ctx).namespace_option)


# -----------------------------------------------------------------------------
# Server and settings
# -----------------------------------------------------------------------------

@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Annotated[Optional[str], typer.Option(
        "--host",
        help="Address to bind (default from settings: 127.0.0.1)",
    )] = None,
    port: Annotated[Optional[int], typer.Option(
        "--port",
        min=0, max=65535,
        help="Port to bind (default from settings: 7878)",
    )] = None,
):
    """Serve a live, editable HTML viewer over HTTP."""
    state = _state(ctx)
    ops_handler = None
    try:
        namespace = resolve_namespace(state.namespace_option)
        paths = resolve_paths(namespace, state.settings, data_file=state.data_file)
        ops_handler = configure_ops_log(paths.directory)
        grace = state.settings.server.sweep_grace_seconds
        with EntryStore.connect(paths.data_file, sweep_grace=timedelta(seconds=grace)) as store:
            server = ViewerServer(store, state.settings.server, host=host, port=port)
            typer.echo(f"Serving kvnotes viewer at {server.url}")
            typer.echo(f"Namespace: {namespace}")
            typer.echo(f"Data source: {store.path}")
            typer.echo("Press Ctrl+C to stop.")
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                server.shutdown()
                typer.echo("Stopped.")
    except KvError as e:
        _fail(e)
    finally:
        remove_handler(ops_handler)


@app.command("config")
def config(
    path: Annotated[Optional[Path], typer.Option(
        "--path",
        help=f"Where to write the settings file (default: <home>/{CONFIG_FILENAME})",
    )] = None,
    force: Annotated[bool, typer.Option(
        "--force",
        help="Overwrite an existing file",
    )] = False,
):
    """Write a settings file with the default values."""
    target = path or default_home() / CONFIG_FILENAME
    if target.exists() and not force:
        _fail(f"config file already exists: {target} (use --force to overwrite)")
    try:
        save_settings(AppSettings(), target)
    except KvError as e:
        _fail(e)
    typer.echo(f"Wrote default settings to {target}")


# Short aliases, hidden from --help
app.command("a", hidden=True)(add)
app.command("g", hidden=True)(get)
for _alias in ("r", "rm", "delete"):
    app.command(_alias, hidden=True)(remove)
app.command("l", hidden=True)(list_entries)
app.command("s", hidden=True)(search)
app.command("e", hidden=True)(export)
app.command("i", hidden=True)(import_)


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
        log_path = log_exception(e, context="kv CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
