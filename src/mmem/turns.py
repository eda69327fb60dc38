"""Turn resolution shared by the indexer and the session inspector.

A transcript is a sequence of loosely-shaped JSON records. This module
decides which records are conversational turns and numbers them. The
parser uses it to build the ``messages`` rows at index time and the
inspector uses it to answer "show turn N" against the raw file, so the
two always agree on what ``turn_index`` means.

Turn indices include tool-invocation-only entries (records with a tool
call block and no text).
"""

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from mmem.models import ParsedMessage


class Tag:
    """Every ``type`` discriminator the parser understands."""

    SESSION_META = "session_meta"
    RESPONSE_ITEM = "response_item"
    MESSAGE = "message"
    TEXT_BLOCKS = frozenset({"input_text", "output_text", "text"})
    TOOL_CALLS = frozenset({"toolCall", "tool_use"})


TIMESTAMP_KEYS = ("created_at", "timestamp", "time", "ts")

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 1e11


class RecordKind(Enum):
    SESSION_META = "session_meta"
    ENVELOPED = "enveloped"
    DIRECT = "direct"
    UNRECOGNIZED = "unrecognized"


@dataclass
class TurnEvent:
    """One decoded record and, if it is a turn, its turn index."""

    line: int | None
    record: Any
    message: ParsedMessage | None = None
    turn_index: int | None = None


def type_is(value: Any, expected: str | frozenset[str]) -> bool:
    """Check a record's ``type`` tag against one tag or a set of tags."""
    if not isinstance(value, dict):
        return False
    tag = value.get("type")
    if not isinstance(tag, str):
        return False
    if isinstance(expected, str):
        return tag == expected
    return tag in expected


def classify_record(record: Any) -> RecordKind:
    """Decide once which shape a record has."""
    if not isinstance(record, dict):
        return RecordKind.UNRECOGNIZED
    if type_is(record, Tag.SESSION_META):
        return RecordKind.SESSION_META
    if type_is(record, Tag.RESPONSE_ITEM):
        # Envelopes only count when the payload is a message too
        if type_is(record.get("payload"), Tag.MESSAGE):
            return RecordKind.ENVELOPED
        return RecordKind.UNRECOGNIZED
    if any(key in record for key in ("message", "role", "content", "text")):
        return RecordKind.DIRECT
    return RecordKind.UNRECOGNIZED


def coerce_content(value: Any) -> str | None:
    """Flatten a content value into text.

    Handles plain strings, lists of blocks, text blocks
    (``{"type": "input_text", "text": ...}``) and blocks that nest a
    ``content`` field. Anything else yields None.
    """
    if isinstance(value, str):
        text = value.strip()
        return text or None

    if isinstance(value, list):
        parts = [part for part in (coerce_content(item) for item in value) if part]
        return "\n".join(parts) or None

    if isinstance(value, dict):
        tag = value.get("type")
        if isinstance(tag, str):
            if tag in Tag.TEXT_BLOCKS:
                return coerce_content(value.get("text"))
            if "content" in value:
                return coerce_content(value["content"])
            return None
        if "content" in value:
            return coerce_content(value["content"])
        return coerce_content(value.get("text"))

    return None


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with a ``Z`` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _from_epoch(value: float) -> str | None:
    seconds = value / 1000 if abs(value) > _EPOCH_MS_THRESHOLD else value
    try:
        return format_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))
    except (OverflowError, OSError, ValueError):
        return None


def normalize_timestamp(value: Any) -> str | None:
    """Normalize an ISO string or epoch number; unknown strings pass through."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    try:
        return format_timestamp(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return _from_epoch(float(text))
    except ValueError:
        return text


def extract_timestamp(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    for key in TIMESTAMP_KEYS:
        timestamp = normalize_timestamp(value.get(key))
        if timestamp:
            return timestamp
    return None


def normalize_role(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip().lower() or None


def content_blocks(record: Any) -> list | None:
    """Return the list of content blocks carried by a message record."""
    kind = classify_record(record)
    if kind is RecordKind.ENVELOPED:
        content = record["payload"].get("content")
    elif kind is RecordKind.DIRECT:
        inner = record.get("message")
        content = inner.get("content") if isinstance(inner, dict) else record.get("content")
    else:
        return None
    return content if isinstance(content, list) else None


def _coerce_first(source: dict) -> str | None:
    for key in ("content", "text", "message"):
        text = coerce_content(source.get(key))
        if text:
            return text
    return None


def extract_message(record: Any) -> ParsedMessage | None:
    """Return the turn carried by a record, or None if it is not a turn.

    This is the single inclusion rule for turns: a message record counts
    when it has text or at least one tool invocation block.
    """
    kind = classify_record(record)
    if kind is RecordKind.ENVELOPED:
        source = record["payload"]
    elif kind is RecordKind.DIRECT:
        inner = record.get("message")
        source = inner if isinstance(inner, dict) else record
    else:
        return None

    text = _coerce_first(source)
    has_tool = any(type_is(block, Tag.TOOL_CALLS) for block in content_blocks(record) or ())
    if not text and not has_tool:
        return None

    return ParsedMessage(
        role=normalize_role(source.get("role")) or normalize_role(record.get("role")),
        text=text or "",
        timestamp=extract_timestamp(source) or extract_timestamp(record),
        has_tool_invocation=has_tool,
    )


def decode_jsonl(text: str) -> tuple[list[tuple[int, Any]], int]:
    """Decode JSON Lines, returning ``(line, record)`` pairs and a malformed count.

    Line numbers are 1-based and count blank lines. Only ``\\n`` separates
    records; JSON strings may legally hold other line separators.
    """
    records: list[tuple[int, Any]] = []
    malformed = 0
    for line_no, line in enumerate(text.split("\n"), 1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append((line_no, json.loads(line)))
        except json.JSONDecodeError:
            malformed += 1
    return records, malformed


def iter_turn_events(records: Iterable[tuple[int | None, Any]]) -> Iterator[TurnEvent]:
    """Number the turns in a record sequence."""
    turn_index = 0
    for line, record in records:
        message = extract_message(record)
        if message is None:
            yield TurnEvent(line=line, record=record)
            continue
        yield TurnEvent(line=line, record=record, message=message, turn_index=turn_index)
        turn_index += 1


def resolve_turns(records: Iterable[tuple[int | None, Any]]) -> list[ParsedMessage]:
    """The canonical message sequence of a record sequence."""
    return [event.message for event in iter_turn_events(records) if event.message is not None]
