"""Data models for mmem."""

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class ParsedMessage:
    """A single turn extracted from a transcript."""

    role: str | None
    text: str
    timestamp: str | None = None
    has_tool_invocation: bool = False


@dataclass
class ParsedSession:
    """Normalized view of one transcript file."""

    messages: list[ParsedMessage] = field(default_factory=list)
    created_at: str | None = None
    last_message_at: str | None = None
    agent: str | None = None
    workspace: str | None = None
    title: str | None = None
    snippet: str = ""
    content: str = ""
    skipped_records: int = 0

    @property
    def message_count(self) -> int:
        return len(self.messages)


@dataclass
class SessionRecord:
    """A session row as persisted in the index."""

    path: str
    mtime: int
    size: int
    hash: str | None = None
    created_at: str | None = None
    last_message_at: str | None = None
    agent: str | None = None
    workspace: str | None = None
    title: str | None = None
    message_count: int = 0
    snippet: str = ""
    content: str = ""
    repo_root: str | None = None
    repo_name: str | None = None
    branch: str | None = None


@dataclass
class MessageRecord:
    """A message row as persisted in the index."""

    turn_index: int
    role: str | None
    timestamp: str | None
    text: str


class FindScope(str, Enum):
    SESSION = "session"
    MESSAGE = "message"


class QueryMode(str, Enum):
    LITERAL = "literal"
    RAW = "raw"


@dataclass
class FindFilters:
    """Query-time filters. Every field is optional."""

    scope: FindScope = FindScope.MESSAGE
    query_mode: QueryMode = QueryMode.LITERAL
    after: str | None = None
    before: str | None = None
    agent: str | None = None
    workspace: str | None = None
    repo: str | None = None
    branch: str | None = None
    role: str | None = None
    include_all_roles: bool = False
    limit: int = 0
    around: int = 0
    fields: list[str] | None = None


@dataclass
class SessionHit:
    """A session-scope search result."""

    path: str
    score: float
    title: str | None = None
    agent: str | None = None
    workspace: str | None = None
    repo_root: str | None = None
    repo_name: str | None = None
    branch: str | None = None
    created_at: str | None = None
    last_message_at: str | None = None
    message_count: int = 0
    snippet: str | None = None


@dataclass
class MessageContext:
    """A message surrounding a matched message."""

    path: str
    turn_index: int
    role: str | None
    timestamp: str | None
    text: str


@dataclass
class MessageHit:
    """A message-scope search result."""

    path: str
    turn_index: int
    score: float
    role: str | None = None
    timestamp: str | None = None
    text: str = ""
    title: str | None = None
    agent: str | None = None
    workspace: str | None = None
    repo_root: str | None = None
    repo_name: str | None = None
    branch: str | None = None
    context: list[MessageContext] | None = None


@dataclass
class IndexStats:
    """Counters reported by an index pass."""

    scanned: int = 0
    indexed: int = 0
    skipped: int = 0
    removed: int = 0
    parse_errors: int = 0
