"""Human and machine output for search and show results."""

import json
from typing import Any

from rich.console import Console
from rich.text import Text

from mmem.inspector import (
    ReadArgs,
    SessionEntry,
    ToolCall,
    ToolCallMatch,
    normalize_arguments,
    parse_read_args,
)
from mmem.models import MessageContext, MessageHit, SessionHit

console = Console()

MAX_OUTPUT_LEN = 160

# Output key order; the selected fields decide which are kept
_SESSION_KEYS = (
    "path",
    "title",
    "agent",
    "workspace",
    "repo_root",
    "repo_name",
    "branch",
    "created_at",
    "last_message_at",
    "message_count",
    "snippet",
    "score",
)
_MESSAGE_KEYS = (
    "path",
    "title",
    "agent",
    "workspace",
    "repo_root",
    "repo_name",
    "branch",
    "turn_index",
    "role",
    "timestamp",
    "text",
    "score",
)
_TRIMMED_KEYS = {"snippet", "text"}


def trim_output(text: str) -> str:
    """Collapse whitespace and cap the length of a text field."""
    return " ".join(text.split())[:MAX_OUTPUT_LEN]


def _line(text: str | Text = "") -> None:
    # Paths and transcript text are printed verbatim, never parsed as markup
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _select(source: Any, keys: tuple[str, ...], fields: list[str]) -> dict[str, Any]:
    selected: dict[str, Any] = {}
    for key in keys:
        if key not in fields:
            continue
        value = getattr(source, key)
        if value is None:
            continue
        selected[key] = trim_output(value) if key in _TRIMMED_KEYS else value
    return selected


def session_to_dict(hit: SessionHit, fields: list[str]) -> dict[str, Any]:
    return _select(hit, _SESSION_KEYS, fields)


def context_to_dict(context: MessageContext) -> dict[str, Any]:
    value: dict[str, Any] = {"turn_index": context.turn_index}
    if context.role is not None:
        value["role"] = context.role
    if context.timestamp is not None:
        value["timestamp"] = context.timestamp
    value["text"] = trim_output(context.text)
    return value


def message_to_dict(hit: MessageHit, fields: list[str]) -> dict[str, Any]:
    value = _select(hit, _MESSAGE_KEYS, fields)
    if "context" in fields and hit.context is not None:
        value["context"] = [context_to_dict(c) for c in hit.context]
    return value


def emit_json(values: list[dict[str, Any]], jsonl: bool = False) -> None:
    """Print a pretty JSON array, or one compact object per line."""
    if jsonl:
        for value in values:
            console.out(json.dumps(value, ensure_ascii=False), highlight=False)
        return
    console.print_json(data=values)


def print_sessions(hits: list[SessionHit], show_snippet: bool = False) -> None:
    if not hits:
        console.print("[yellow]No results found.[/yellow]")
        return

    for hit in hits:
        header = Text()
        header.append(hit.last_message_at or "(unknown)", style="dim")
        header.append(" | ")
        header.append(hit.title or "(untitled)", style="bold")
        _line(header)
        _line(Text(hit.path, style="cyan"))
        if show_snippet and hit.snippet:
            snippet = trim_output(hit.snippet)
            if snippet:
                _line(snippet)
        _line()


def print_context(context: list[MessageContext]) -> None:
    for message in context:
        text = trim_output(message.text)
        if not text:
            continue
        _line(f"  {message.turn_index}:{message.role or 'unknown'} {text}")


def print_messages(hits: list[MessageHit], show_snippet: bool = False) -> None:
    if not hits:
        console.print("[yellow]No results found.[/yellow]")
        return

    for hit in hits:
        header = Text()
        header.append(hit.timestamp or "(unknown)", style="dim")
        header.append(" | ")
        header.append(hit.title or "(untitled)", style="bold")
        _line(header)
        _line(Text(f"{hit.path}#{hit.turn_index}", style="cyan"))
        if show_snippet:
            snippet = trim_output(hit.text)
            if snippet:
                _line(snippet)
        if hit.context:
            print_context(hit.context)
        _line()


def format_tool_args(arguments: Any) -> str:
    """One-line summary of tool arguments; read calls show path/offset/limit."""
    normalized = normalize_arguments(arguments)
    if normalized is None:
        return "(no arguments)"

    read_args = parse_read_args(normalized)
    if read_args is not None:
        return f"path={read_args.path} offset={read_args.offset} limit={read_args.limit}"
    return trim_output(json.dumps(normalized, ensure_ascii=False))


def tool_to_dict(tool: ToolCall) -> dict[str, Any]:
    return {"name": tool.name, "arguments": tool.arguments}


def tool_match_to_dict(match: ToolCallMatch) -> dict[str, Any]:
    value: dict[str, Any] = {"line": match.line}
    if match.turn_index is not None:
        value["turn"] = match.turn_index
    value["tool"] = tool_to_dict(match.tool)
    return value


def entry_to_dict(entry: SessionEntry, tools: list[ToolCall]) -> dict[str, Any]:
    value: dict[str, Any] = {"line": entry.line}
    if entry.turn_index is not None:
        value["turn"] = entry.turn_index
    if entry.role is not None:
        value["role"] = entry.role
    if entry.timestamp is not None:
        value["timestamp"] = entry.timestamp
    value["tools"] = [tool_to_dict(tool) for tool in tools]
    return value


def _turn_label(turn_index: int | None) -> str:
    return f"turn {turn_index}" if turn_index is not None else "turn ?"


def print_tool_matches(matches: list[ToolCallMatch]) -> None:
    if not matches:
        _line("no tool calls found")
        return

    for match in matches:
        _line(f"line {match.line} ({_turn_label(match.turn_index)}) tool={match.tool.name}")
        _line(format_tool_args(match.tool.arguments))
        _line()


def print_entry(entry: SessionEntry, tools: list[ToolCall]) -> None:
    if not tools:
        _line("no tool calls found")
        return

    _line(f"line {entry.line} ({_turn_label(entry.turn_index)}, role {entry.role or 'unknown'})")
    if entry.timestamp:
        _line(f"timestamp {entry.timestamp}")
    for tool in tools:
        _line(f"tool={tool.name}")
        _line(format_tool_args(tool.arguments))
        _line()


def print_excerpt(read_args: ReadArgs, lines: list[tuple[int, str]]) -> None:
    _line(Text(f">>> {read_args.path}:{read_args.offset} (limit {read_args.limit})", style="bold"))
    for line_no, line in lines:
        _line(f"{line_no:>4} {line}")
    _line()
