"""Transcript normalization.

Turns ``.jsonl``, ``.json`` and ``.md`` transcripts into a ParsedSession.
Record-level rules (which records are turns, how content is flattened)
live in ``mmem.turns``.
"""

import json
import re
from enum import Enum
from pathlib import Path
from typing import Any

from mmem.errors import ParseError
from mmem.models import ParsedMessage, ParsedSession
from mmem.turns import (
    RecordKind,
    classify_record,
    decode_jsonl,
    normalize_timestamp,
    resolve_turns,
)

MAX_TITLE_LEN = 200
MAX_SNIPPET_LEN = 240

ROLE_HEADINGS = ("user", "assistant", "system", "developer", "tool")

_HEADING_RE = re.compile(
    r"^(?P<hashes>#{1,6}\s*)?(?P<role>" + "|".join(ROLE_HEADINGS) + r")\b\s*(?P<colon>:)?\s*(?P<text>.*)$",
    re.IGNORECASE,
)


class SessionFormat(str, Enum):
    JSONL = "jsonl"
    JSON = "json"
    TEXT = "md"


_EXTENSIONS = {
    ".jsonl": SessionFormat.JSONL,
    ".json": SessionFormat.JSON,
    ".md": SessionFormat.TEXT,
}


def format_for_path(path: Path | str) -> SessionFormat | None:
    """Return the transcript format implied by a file extension."""
    return _EXTENSIONS.get(Path(path).suffix.lower())


class _Meta:
    """Session-level fields gathered while walking records."""

    def __init__(self):
        self.created_at: str | None = None
        self.last_message_at: str | None = None
        self.agent: str | None = None
        self.workspace: str | None = None

    def update(self, record: Any) -> None:
        if not isinstance(record, dict):
            return

        sources = [record]
        created_keys: tuple[str, ...] = ("created_at",)
        if classify_record(record) is RecordKind.SESSION_META:
            payload = record.get("payload")
            if isinstance(payload, dict):
                sources.append(payload)
            created_keys = ("created_at", "timestamp")

        for source in sources:
            if self.agent is None:
                self.agent = _string_field(source, "agent")
            if self.workspace is None:
                self.workspace = _string_field(source, "workspace") or _string_field(source, "cwd")
            if self.created_at is None:
                for key in created_keys:
                    self.created_at = normalize_timestamp(source.get(key))
                    if self.created_at:
                        break
            last = normalize_timestamp(source.get("last_message_at"))
            if last:
                self.last_message_at = last


def _string_field(source: dict, key: str) -> str | None:
    value = source.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_jsonl(text: str) -> ParsedSession:
    """Parse a JSON Lines transcript. Malformed lines are skipped and counted."""
    if not text.strip():
        raise ParseError("empty transcript")

    records, malformed = decode_jsonl(text)
    if not records:
        raise ParseError(f"no valid JSON records ({malformed} malformed lines)")

    meta = _Meta()
    for _, record in records:
        meta.update(record)

    return _build_session(resolve_turns(records), meta, skipped=malformed)


def _document_entries(root: Any) -> list[Any]:
    if isinstance(root, list):
        return root
    if isinstance(root, dict):
        for key in ("messages", "events"):
            if isinstance(root.get(key), list):
                return root[key]
        return [root]
    return []


def parse_json(text: str) -> ParsedSession:
    """Parse a single JSON document transcript."""
    if not text.strip():
        raise ParseError("empty transcript")

    try:
        root = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid json: {exc.msg}", line=exc.lineno) from exc

    meta = _Meta()
    meta.update(root)
    entries = _document_entries(root)
    for entry in entries:
        meta.update(entry)

    return _build_session(resolve_turns((None, entry) for entry in entries), meta)


def _match_heading(line: str) -> tuple[str, str] | None:
    match = _HEADING_RE.match(line)
    if match is None:
        return None
    text = match.group("text").strip()
    # "## Assistant" or "User: ..." but not a sentence starting with "user"
    if match.group("colon") or (match.group("hashes") and not text):
        return match.group("role").lower(), text
    return None


def parse_markdown(text: str) -> ParsedSession:
    """Parse a plain-text transcript made of role-headed sections."""
    if not text.strip():
        raise ParseError("empty transcript")

    sections: list[tuple[str | None, list[str]]] = []
    for raw_line in text.split("\n"):
        line = raw_line.rstrip()
        heading = _match_heading(line.strip())
        if heading is not None:
            role, inline = heading
            sections.append((role, [inline] if inline else []))
            continue
        if not sections:
            sections.append((None, []))
        sections[-1][1].append(line)

    messages = []
    for role, lines in sections:
        body = "\n".join(lines).strip()
        if body:
            messages.append(ParsedMessage(role=role, text=body))

    return _build_session(messages, _Meta())


def parse_session(text: str, fmt: SessionFormat) -> ParsedSession:
    """Parse transcript text in the given format."""
    if fmt is SessionFormat.JSONL:
        return parse_jsonl(text)
    if fmt is SessionFormat.JSON:
        return parse_json(text)
    return parse_markdown(text)


def _content_line(message: ParsedMessage) -> str:
    if message.role:
        return f"[{message.role}] {message.text}"
    return message.text


def _make_title(messages: list[ParsedMessage]) -> str | None:
    for message in messages:
        if message.role == "user" and message.text.strip():
            return message.text.strip()[:MAX_TITLE_LEN]
    for message in messages:
        if message.text.strip():
            return message.text.strip()[:MAX_TITLE_LEN]
    return None


def _build_session(
    messages: list[ParsedMessage], meta: _Meta, skipped: int = 0
) -> ParsedSession:
    timestamps = [m.timestamp for m in messages if m.timestamp]

    created_at = meta.created_at or (min(timestamps) if timestamps else None)
    last_candidates = timestamps + ([meta.last_message_at] if meta.last_message_at else [])
    last_message_at = max(last_candidates) if last_candidates else None

    content = "\n".join(_content_line(m) for m in messages if m.text)

    return ParsedSession(
        messages=messages,
        created_at=created_at,
        last_message_at=last_message_at,
        agent=meta.agent,
        workspace=meta.workspace,
        title=_make_title(messages),
        snippet=content.strip()[:MAX_SNIPPET_LEN],
        content=content,
        skipped_records=skipped,
    )
