"""Direct inspection of JSONL session files, bypassing the index.

Backs the ``mmem show`` command. Turn numbers come from the same resolver
the indexer uses, so ``show --turn N`` and a search hit ``path#N`` always
point at the same record.
"""

import json
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mmem.errors import (
    AmbiguousSessionError,
    InvalidRecordError,
    LineOutOfRangeError,
    SessionError,
    SessionNotFoundError,
    TurnOutOfRangeError,
    UnsupportedFormatError,
)
from mmem.turns import Tag, content_blocks, extract_message, iter_turn_events, type_is

DEFAULT_READ_LIMIT = 200


@dataclass
class SessionEntry:
    """One raw record of a session file."""

    line: int
    turn_index: int | None
    role: str | None
    timestamp: str | None
    record: Any


@dataclass
class ToolCall:
    name: str
    arguments: Any


@dataclass
class ToolCallMatch:
    line: int
    turn_index: int | None
    tool: ToolCall


@dataclass
class ReadArgs:
    """Arguments of a ``read`` tool call."""

    path: str
    offset: int = 1
    limit: int = DEFAULT_READ_LIMIT


def is_jsonl(path: Path) -> bool:
    return path.suffix.lower() == ".jsonl"


def _ensure_jsonl(path: Path) -> None:
    if not is_jsonl(path):
        raise UnsupportedFormatError(str(path))


def _read_lines(path: Path) -> list[str]:
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        raise SessionNotFoundError(str(path)) from None
    except OSError as exc:
        raise SessionError(f"cannot read {path}: {exc}") from exc
    return data.decode("utf-8", errors="replace").split("\n")


def _iter_records(path: Path) -> Iterator[tuple[int, Any]]:
    """Yield ``(line, record)`` for non-blank lines, failing on the first bad one."""
    for line_no, line in enumerate(_read_lines(path), 1):
        line = line.strip()
        if not line:
            continue
        try:
            yield line_no, json.loads(line)
        except json.JSONDecodeError as exc:
            raise InvalidRecordError(line_no, exc.msg) from exc


def load_entry_by_turn(path: Path, turn: int) -> SessionEntry:
    """Load the record holding turn ``turn`` (0-based)."""
    _ensure_jsonl(path)

    available = 0
    for event in iter_turn_events(_iter_records(path)):
        if event.message is None:
            continue
        if event.turn_index == turn:
            return SessionEntry(
                line=event.line,
                turn_index=event.turn_index,
                role=event.message.role,
                timestamp=event.message.timestamp,
                record=event.record,
            )
        available = event.turn_index + 1

    raise TurnOutOfRangeError(turn, available)


def load_entry_by_line(path: Path, line: int) -> SessionEntry:
    """Load the record on 1-based line ``line``.

    The turn index is not resolved; earlier lines are never decoded.
    """
    _ensure_jsonl(path)

    lines = _read_lines(path)
    if line < 1 or line > len(lines) or not lines[line - 1].strip():
        raise LineOutOfRangeError(line)

    try:
        record = json.loads(lines[line - 1].strip())
    except json.JSONDecodeError as exc:
        raise InvalidRecordError(line, exc.msg) from exc

    message = extract_message(record)
    return SessionEntry(
        line=line,
        turn_index=None,
        role=message.role if message else None,
        timestamp=message.timestamp if message else None,
        record=record,
    )


def extract_tool_calls(record: Any) -> list[ToolCall]:
    """Return the tool invocations carried in a record's content blocks."""
    tools = []
    for block in content_blocks(record) or ():
        if not type_is(block, Tag.TOOL_CALLS):
            continue
        name = block.get("name")
        arguments = block.get("arguments", block.get("input"))
        tools.append(
            ToolCall(name=name if isinstance(name, str) and name else "unknown", arguments=arguments)
        )
    return tools


def filter_tools(tools: list[ToolCall], tool: str | None) -> list[ToolCall]:
    """Keep tool calls whose name matches ``tool`` case-insensitively."""
    if tool is None:
        return tools
    return [item for item in tools if item.name.lower() == tool.lower()]


def scan_tool_calls(
    path: Path, tool: str | None = None, limit: int | None = None
) -> list[ToolCallMatch]:
    """Find tool calls across a session file in file order."""
    _ensure_jsonl(path)

    matches: list[ToolCallMatch] = []
    for event in iter_turn_events(_iter_records(path)):
        for tool_call in filter_tools(extract_tool_calls(event.record), tool):
            matches.append(ToolCallMatch(line=event.line, turn_index=event.turn_index, tool=tool_call))
            if limit is not None and len(matches) >= limit:
                return matches
    return matches


def normalize_arguments(arguments: Any) -> Any:
    """Tool arguments as an object; JSON-encoded strings are decoded."""
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str):
        try:
            return json.loads(arguments)
        except json.JSONDecodeError:
            return None
    return None


def parse_read_args(arguments: Any) -> ReadArgs | None:
    """Interpret tool arguments as a file read, if they name a path."""
    args = normalize_arguments(arguments)
    if not isinstance(args, dict) or not isinstance(args.get("path"), str):
        return None

    offset = args.get("offset")
    limit = args.get("limit")
    return ReadArgs(
        path=args["path"],
        offset=offset if isinstance(offset, int) and offset > 0 else 1,
        limit=limit if isinstance(limit, int) and limit >= 0 else DEFAULT_READ_LIMIT,
    )


def read_excerpt(read_args: ReadArgs) -> list[tuple[int, str]]:
    """Re-read the file region a ``read`` tool call looked at."""
    path = Path(read_args.path).expanduser()
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        raise SessionError(f"cannot read {path}: {exc}") from exc

    start = read_args.offset - 1
    end = min(len(lines), start + read_args.limit)
    return [(start + i + 1, line) for i, line in enumerate(lines[start:end])]


def resolve_session_path(target: str, root: Path) -> Path:
    """Resolve a path, or a filename prefix of a ``.jsonl`` file under ``root``."""
    expanded = Path(target).expanduser()
    if expanded.exists():
        return expanded

    if len(expanded.parts) > 1:
        raise SessionNotFoundError(target)

    matches = []
    if root.is_dir():
        matches = sorted(
            path for path in root.rglob("*.*")
            if is_jsonl(path) and path.name.startswith(target) and path.is_file()
        )

    if not matches:
        raise SessionNotFoundError(target)
    if len(matches) > 1:
        raise AmbiguousSessionError(target, [str(path) for path in matches])
    return matches[0]
