"""CLI for mmem."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from mmem import __version__
from mmem.errors import MmemError, StorageError
from mmem.models import FindScope

app = typer.Typer(
    name="mmem",
    help="Index and search agent session transcripts.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"mmem {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Log per-file decisions")] = False,
) -> None:
    """Index and search agent session transcripts."""
    configure_logging(verbose)


@contextmanager
def reported_errors() -> Iterator[None]:
    """Turn library errors into a one-line message and exit code 1."""
    try:
        yield
    except MmemError as exc:
        err_console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise typer.Exit(1) from None


def open_index(db: Path | None, must_exist: bool = True) -> sqlite3.Connection:
    """Open the index; only a pass that may create it initializes the schema."""
    from mmem.storage import INDEX_PATH, ensure_index_exists, get_connection, index_exists

    db_path = db or INDEX_PATH
    if must_exist and not index_exists(db_path):
        console.print("[yellow]No index found. Run 'mmem index' first.[/yellow]")
        raise typer.Exit(1)
    try:
        if must_exist:
            return get_connection(db_path)
        return ensure_index_exists(db_path)
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"cannot open index {db_path}: {exc}") from exc


DbOption = Annotated[Path | None, typer.Option("--db", help="Index database path")]
RootOption = Annotated[Path | None, typer.Option("--root", help="Sessions directory")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


@app.command()
def index(
    full: Annotated[bool, typer.Option("--full", "-f", help="Reindex every session")] = False,
    root: RootOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Build or update the search index."""
    from rich.progress import Progress, SpinnerColumn, TextColumn

    from mmem.indexer import SESSIONS_DIR, index_root

    sessions_root = root or SESSIONS_DIR
    with reported_errors():
        conn = open_index(db, must_exist=False)
        try:
            if json_output:
                stats = index_root(conn, sessions_root, full)
            else:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    console=console,
                    transient=True,
                ) as progress:
                    task = progress.add_task("Indexing sessions...", total=None)
                    stats = index_root(
                        conn,
                        sessions_root,
                        full,
                        on_file=lambda path: progress.update(task, description=f"Indexing {path.name}"),
                    )
        finally:
            conn.close()

    if json_output:
        console.print_json(
            data={
                "scanned": stats.scanned,
                "indexed": stats.indexed,
                "skipped": stats.skipped,
                "removed": stats.removed,
                "parse_errors": stats.parse_errors,
            }
        )
        return

    console.print(f"scanned: {stats.scanned}")
    console.print(f"indexed: {stats.indexed}")
    console.print(f"skipped: {stats.skipped}")
    console.print(f"removed: {stats.removed}")
    console.print(f"parse_errors: {stats.parse_errors}")


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Search query")],
    days: Annotated[int | None, typer.Option("--days", "-d", help="Only the last N days")] = None,
    after: Annotated[
        str | None, typer.Option("--after", "--since", help="Start time (e.g., 7d, 2024-01-01)")
    ] = None,
    before: Annotated[
        str | None, typer.Option("--before", "--until", help="End time (e.g., 1d, 2024-06-30)")
    ] = None,
    agent: Annotated[str | None, typer.Option("--agent", "-a", help="Filter by agent")] = None,
    workspace: Annotated[
        str | None, typer.Option("--workspace", "-w", help="Filter by workspace path")
    ] = None,
    repo: Annotated[
        str | None,
        typer.Option("--repo", "--project", "-p", help="Filter by repository name or root"),
    ] = None,
    branch: Annotated[str | None, typer.Option("--branch", "-b", help="Filter by branch")] = None,
    role: Annotated[str | None, typer.Option("--role", "-r", help="Filter by message role")] = None,
    include_assistant: Annotated[
        bool, typer.Option("--include-assistant", help="Search every role, not just user")
    ] = False,
    around: Annotated[
        int, typer.Option("--around", "-C", min=0, help="Messages of context around each hit")
    ] = 0,
    scope: Annotated[
        FindScope, typer.Option("--scope", "-s", help="Search whole sessions or messages")
    ] = FindScope.MESSAGE,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of results")] = 10,
    fts: Annotated[
        bool, typer.Option("--fts", help="Pass the query to FTS5 unchanged (AND, OR, NEAR, *)")
    ] = False,
    json_output: JsonOption = False,
    jsonl_output: Annotated[bool, typer.Option("--jsonl", help="Output as JSON Lines")] = False,
    fields: Annotated[
        str | None, typer.Option("--fields", help="Comma-separated output fields")
    ] = None,
    snippet: Annotated[bool, typer.Option("--snippet", help="Show matching text")] = False,
    db: DbOption = None,
) -> None:
    """Search indexed sessions for a query."""
    from mmem.models import FindFilters, QueryMode
    from mmem.render import (
        emit_json,
        message_to_dict,
        print_messages,
        print_sessions,
        session_to_dict,
    )
    from mmem.searcher import days_ago, find as run_find, parse_since, select_fields

    requested = [f for f in fields.split(",") if f.strip()] if fields else None

    with reported_errors():
        try:
            after_bound = parse_since(after)
            before_bound = parse_since(before)
        except ValueError as exc:
            err_console.print(f"[red]Error: {escape(str(exc))}[/red]")
            raise typer.Exit(1) from None
        if after_bound is None and days is not None:
            after_bound = days_ago(days)

        selected = select_fields(scope, requested)
        if scope is FindScope.MESSAGE and around > 0 and requested is None:
            selected.append("context")

        filters = FindFilters(
            scope=scope,
            query_mode=QueryMode.RAW if fts else QueryMode.LITERAL,
            after=after_bound,
            before=before_bound,
            agent=agent,
            workspace=workspace,
            repo=repo,
            branch=branch,
            role=role,
            include_all_roles=include_assistant,
            limit=limit,
            around=around,
            fields=requested,
        )

        conn = open_index(db)
        try:
            hits = run_find(conn, query, filters)
        finally:
            conn.close()

    if json_output or jsonl_output:
        if scope is FindScope.SESSION:
            values = [session_to_dict(hit, selected) for hit in hits]
        else:
            values = [message_to_dict(hit, selected) for hit in hits]
        emit_json(values, jsonl=jsonl_output)
    elif scope is FindScope.SESSION:
        print_sessions(hits, show_snippet=snippet)
    else:
        print_messages(hits, show_snippet=snippet)


@app.command()
def show(
    target: Annotated[str, typer.Argument(help="Session file path or filename prefix")],
    turn: Annotated[int | None, typer.Option("--turn", "-t", min=0, help="Turn index")] = None,
    line: Annotated[int | None, typer.Option("--line", "-l", min=1, help="Line number")] = None,
    tool: Annotated[str | None, typer.Option("--tool", help="Only this tool's calls")] = None,
    limit: Annotated[
        int | None, typer.Option("--limit", "-n", min=1, help="Maximum tool calls to list")
    ] = None,
    extract: Annotated[
        bool, typer.Option("--extract", "-x", help="Print the file regions read tool calls saw")
    ] = False,
    json_output: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Inspect a session file directly (tool calls, single turns)."""
    from mmem.indexer import SESSIONS_DIR
    from mmem.inspector import (
        extract_tool_calls,
        filter_tools,
        load_entry_by_line,
        load_entry_by_turn,
        parse_read_args,
        read_excerpt,
        resolve_session_path,
        scan_tool_calls,
    )
    from mmem.render import (
        entry_to_dict,
        print_entry,
        print_excerpt,
        print_tool_matches,
        tool_match_to_dict,
    )

    if turn is not None and line is not None:
        err_console.print("[red]Error: use either --turn or --line, not both[/red]")
        raise typer.Exit(1)

    # With nothing selected, list the files the agent read
    tool_filter = tool
    if turn is None and line is None and tool is None:
        tool_filter = "read"

    with reported_errors():
        path = resolve_session_path(target, root or SESSIONS_DIR)

        if turn is not None or line is not None:
            entry = load_entry_by_turn(path, turn) if turn is not None else load_entry_by_line(path, line)
            tools = filter_tools(extract_tool_calls(entry.record), tool_filter)
            matches = None
        else:
            entry = None
            matches = scan_tool_calls(path, tool_filter, limit)
            tools = [match.tool for match in matches]

        if extract:
            extracted = False
            for tool_call in tools:
                if tool_call.name.lower() != "read":
                    continue
                read_args = parse_read_args(tool_call.arguments)
                if read_args is not None:
                    print_excerpt(read_args, read_excerpt(read_args))
                    extracted = True
            if not extracted:
                console.print("no readable tool calls found")
            return

    if entry is not None:
        if json_output:
            console.print_json(data=entry_to_dict(entry, tools))
        else:
            print_entry(entry, tools)
    elif json_output:
        console.print_json(data=[tool_match_to_dict(match) for match in matches])
    else:
        print_tool_matches(matches)


@app.command()
def stats(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show index statistics."""
    from mmem.storage import load_stats

    with reported_errors():
        conn = open_index(db)
        try:
            index_stats = load_stats(conn)
        finally:
            conn.close()

    if json_output:
        console.print_json(data=index_stats)
        return

    console.print(f"Sessions indexed: {index_stats['session_count']}")
    console.print(f"Messages indexed: {index_stats['message_count']}")
    console.print(f"Oldest: {index_stats['oldest_message_at'] or '(unknown)'}")
    console.print(f"Newest: {index_stats['newest_message_at'] or '(unknown)'}")
    if index_stats["last_indexed"]:
        console.print(f"Last indexed: {index_stats['last_indexed']}")
    failures = index_stats["parse_failures"]
    console.print(f"Parse failures: {failures if failures is not None else 'unknown'}")


@app.command()
def agents(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List indexed agents."""
    from mmem.storage import load_agents

    with reported_errors():
        conn = open_index(db)
        try:
            agent_list = load_agents(conn)
        finally:
            conn.close()

    if json_output:
        console.print_json(data={"agents": agent_list})
        return

    if not agent_list:
        console.print("[yellow]No sessions indexed.[/yellow]")
        return

    for agent in agent_list:
        console.print(f"[cyan]{escape(agent['name'])}[/cyan] ({agent['sessions']} sessions)")


@app.command()
def doctor(
    json_output: JsonOption = False,
    db: DbOption = None,
    root: RootOption = None,
) -> None:
    """Check the sessions root and the index database."""
    from mmem.doctor import run_doctor
    from mmem.indexer import SESSIONS_DIR
    from mmem.storage import INDEX_PATH

    report = run_doctor(db or INDEX_PATH, root or SESSIONS_DIR)

    if json_output:
        console.print_json(data=report.to_dict())
        return

    def flag(ok: bool) -> str:
        return "[green]yes[/green]" if ok else "[red]no[/red]"

    console.print(f"root: {escape(report.root)}")
    console.print(f"root_exists: {flag(report.root_exists)}")
    console.print(f"db_path: {escape(report.db_path)}")
    console.print(f"db_exists: {flag(report.db_exists)}")
    console.print(f"schema_ok: {flag(report.schema_ok)}")
    if report.schema_error:
        console.print(f"schema_error: {escape(report.schema_error)}")
    console.print(f"fts5_available: {flag(report.fts5_available)}")
    console.print(f"indexed_sessions: {report.indexed_sessions}")
    console.print(f"newest_message_at: {report.newest_message_at or '(unknown)'}")


if __name__ == "__main__":
    app()
