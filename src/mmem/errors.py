"""Exception types raised by mmem.

Every error the CLI knows how to report derives from ``MmemError``.
"""


class MmemError(Exception):
    """Base class for mmem errors."""


class ParseError(MmemError):
    """A transcript file could not be normalized at all."""

    def __init__(self, message: str, line: int | None = None):
        super().__init__(message if line is None else f"{message} (line {line})")
        self.line = line


class StorageError(MmemError):
    """The index database failed (connection, I/O, corruption)."""


class QueryError(MmemError):
    """Base class for problems with a search request."""


class EmptyQueryError(QueryError):
    def __init__(self):
        super().__init__("query is empty")


class QuerySyntaxError(QueryError):
    """A raw full-text query was rejected by the search engine."""

    def __init__(self, query: str, detail: str):
        super().__init__(
            f"invalid search syntax in {query!r}: {detail}. "
            "Drop --fts to search the text literally."
        )
        self.query = query
        self.detail = detail


class UnknownFieldError(QueryError):
    def __init__(self, fields: list[str], allowed: list[str]):
        super().__init__(
            f"unknown field(s): {', '.join(fields)} (allowed: {', '.join(allowed)})"
        )
        self.fields = fields


class SessionError(MmemError):
    """Base class for direct session file inspection errors."""


class SessionNotFoundError(SessionError):
    def __init__(self, target: str):
        super().__init__(f"session not found: {target}")
        self.target = target


class AmbiguousSessionError(SessionError):
    def __init__(self, target: str, matches: list[str]):
        shown = matches[:5] + (["..."] if len(matches) > 5 else [])
        super().__init__(f"multiple sessions match {target}: {', '.join(shown)}")
        self.target = target
        self.matches = matches


class UnsupportedFormatError(SessionError):
    def __init__(self, path: str):
        super().__init__(f"unsupported session format: {path} (expected .jsonl)")
        self.path = path


class TurnOutOfRangeError(SessionError):
    def __init__(self, turn: int, available: int):
        super().__init__(f"turn {turn} out of range (messages: {available})")
        self.turn = turn
        self.available = available


class LineOutOfRangeError(SessionError):
    def __init__(self, line: int):
        super().__init__(f"line {line} out of range")
        self.line = line


class InvalidRecordError(SessionError):
    def __init__(self, line: int, detail: str):
        super().__init__(f"invalid json at line {line}: {detail}")
        self.line = line


class SessionsRootError(MmemError):
    """The sessions root to index is not a directory."""

    def __init__(self, root: str):
        super().__init__(f"sessions root is not a directory: {root}")
        self.root = root
