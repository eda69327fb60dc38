"""Full-text search over indexed sessions and messages."""

import re
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any

from mmem.errors import EmptyQueryError, QuerySyntaxError, StorageError, UnknownFieldError
from mmem.models import (
    FindFilters,
    FindScope,
    MessageContext,
    MessageHit,
    QueryMode,
    SessionHit,
)
from mmem.turns import format_timestamp, normalize_timestamp

DEFAULT_LIMIT = 10
DEFAULT_ROLE = "user"

SESSION_FIELDS = (
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
MESSAGE_FIELDS = (
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
    "context",
)
DEFAULT_SESSION_FIELDS = ("path", "title", "last_message_at", "score")
DEFAULT_MESSAGE_FIELDS = ("path", "title", "timestamp", "role", "turn_index", "score")

# SQLite error texts that mean the MATCH expression itself was rejected
_SYNTAX_ERROR_MARKERS = (
    "fts5",
    "syntax error",
    "no such column",
    "unterminated string",
    "unknown special query",
    "malformed match",
)


def parse_since(since: str | None) -> str | None:
    """Parse a time bound into a normalized UTC timestamp.

    Supports:
    - Relative: "12h", "7d", "2w", "3m", "1y"
    - Absolute: "2024-01-01", "2024-01-01T00:00:00"
    """
    if since is None:
        return None

    since = since.strip().lower()

    # Relative time patterns
    match = re.match(r"^(\d+)([hdwmy])$", since)
    if match:
        amount = int(match.group(1))
        unit = match.group(2)

        now = datetime.now(tz=timezone.utc)
        if unit == "h":
            delta = timedelta(hours=amount)
        elif unit == "d":
            delta = timedelta(days=amount)
        elif unit == "w":
            delta = timedelta(weeks=amount)
        elif unit == "m":
            delta = timedelta(days=amount * 30)  # Approximate
        else:
            delta = timedelta(days=amount * 365)  # Approximate
        return format_timestamp(now - delta)

    try:
        if "t" in since:
            dt = datetime.fromisoformat(since.upper().replace("Z", "+00:00"))
        else:
            dt = datetime.fromisoformat(since + "T00:00:00")
    except ValueError:
        raise ValueError(f"Invalid date format: {since}") from None
    return format_timestamp(dt)


def days_ago(days: int) -> str:
    """Timestamp bound for "the last N days"."""
    return format_timestamp(datetime.now(tz=timezone.utc) - timedelta(days=days))


def build_match_query(query: str, mode: QueryMode) -> str:
    """Build the FTS5 MATCH expression for a user query.

    Literal mode quotes every whitespace-separated token so dates and
    punctuation are searched as text, not parsed as operators.
    """
    text = query.strip()
    if not text:
        raise EmptyQueryError()
    if mode is QueryMode.RAW:
        return text
    return " ".join('"' + token.replace('"', '""') + '"' for token in text.split())


def effective_role(filters: FindFilters) -> str | None:
    """The role a message search is restricted to.

    Searches only user messages unless ``include_all_roles`` is set.
    """
    role = filters.role.strip().lower() if filters.role else None
    if filters.include_all_roles:
        return role or None
    return role or DEFAULT_ROLE


def select_fields(scope: FindScope, fields: list[str] | None) -> list[str]:
    """Validate requested output fields, falling back to the scope defaults."""
    if scope is FindScope.SESSION:
        allowed, defaults = SESSION_FIELDS, DEFAULT_SESSION_FIELDS
    else:
        allowed, defaults = MESSAGE_FIELDS, DEFAULT_MESSAGE_FIELDS

    requested = [f.strip().lower() for f in fields or [] if f.strip()]
    if not requested:
        return list(defaults)

    unknown = [f for f in requested if f not in allowed]
    if unknown:
        raise UnknownFieldError(unknown, list(allowed))
    return requested


def _limit(filters: FindFilters) -> int:
    return filters.limit if filters.limit > 0 else DEFAULT_LIMIT


def _session_filters(filters: FindFilters, time_column: str) -> tuple[str, list[Any]]:
    sql = ""
    params: list[Any] = []

    if filters.agent:
        sql += " AND s.agent = ?"
        params.append(filters.agent)

    if filters.workspace:
        sql += " AND s.workspace = ?"
        params.append(filters.workspace)

    if filters.repo:
        sql += " AND (s.repo_name = ? OR s.repo_root = ?)"
        params.extend([filters.repo, filters.repo])

    if filters.branch:
        sql += " AND s.branch = ?"
        params.append(filters.branch)

    if filters.after:
        sql += f" AND {time_column} >= ?"
        params.append(normalize_timestamp(filters.after))

    if filters.before:
        sql += f" AND {time_column} <= ?"
        params.append(normalize_timestamp(filters.before))

    return sql, params


def _execute(
    conn: sqlite3.Connection, sql: str, params: list[Any], query: str, mode: QueryMode
) -> list[sqlite3.Row]:
    try:
        return conn.execute(sql, params).fetchall()
    except sqlite3.Error as exc:
        detail = str(exc)
        if (
            mode is QueryMode.RAW
            and isinstance(exc, sqlite3.OperationalError)
            and any(marker in detail.lower() for marker in _SYNTAX_ERROR_MARKERS)
        ):
            raise QuerySyntaxError(query, detail) from exc
        raise StorageError(f"search failed: {detail}") from exc


def find_sessions(conn: sqlite3.Connection, query: str, filters: FindFilters) -> list[SessionHit]:
    """Search whole sessions, best bm25 score first, newest first on ties."""
    match = build_match_query(query, filters.query_mode)
    select_fields(FindScope.SESSION, filters.fields)

    sql = """
        SELECT s.path, s.title, s.agent, s.workspace, s.repo_root, s.repo_name, s.branch,
               s.created_at, s.last_message_at, s.message_count, s.snippet,
               bm25(sessions_fts) AS score
        FROM sessions_fts
        JOIN sessions s ON s.id = sessions_fts.rowid
        WHERE sessions_fts MATCH ?
    """
    params: list[Any] = [match]

    filter_sql, filter_params = _session_filters(filters, "s.last_message_at")
    sql += filter_sql
    params.extend(filter_params)

    sql += " ORDER BY score ASC, s.last_message_at DESC LIMIT ?"
    params.append(_limit(filters))

    rows = _execute(conn, sql, params, query, filters.query_mode)
    return [
        SessionHit(
            path=row["path"],
            score=row["score"],
            title=row["title"],
            agent=row["agent"],
            workspace=row["workspace"],
            repo_root=row["repo_root"],
            repo_name=row["repo_name"],
            branch=row["branch"],
            created_at=row["created_at"],
            last_message_at=row["last_message_at"],
            message_count=row["message_count"],
            snippet=row["snippet"],
        )
        for row in rows
    ]


def find_messages(conn: sqlite3.Connection, query: str, filters: FindFilters) -> list[MessageHit]:
    """Search individual messages, optionally with surrounding context."""
    match = build_match_query(query, filters.query_mode)
    fields = select_fields(FindScope.MESSAGE, filters.fields)

    message_time = "COALESCE(m.timestamp, s.last_message_at)"
    sql = """
        SELECT m.session_path AS path, m.turn_index, m.role, m.timestamp, m.text,
               s.title, s.agent, s.workspace, s.repo_root, s.repo_name, s.branch,
               bm25(messages_fts) AS score
        FROM messages_fts
        JOIN messages m ON m.id = messages_fts.rowid
        JOIN sessions s ON s.path = m.session_path
        WHERE messages_fts MATCH ?
    """
    params: list[Any] = [match]

    filter_sql, filter_params = _session_filters(filters, message_time)
    sql += filter_sql
    params.extend(filter_params)

    role = effective_role(filters)
    if role:
        sql += " AND m.role = ?"
        params.append(role)

    sql += f" ORDER BY score ASC, {message_time} DESC LIMIT ?"
    params.append(_limit(filters))

    rows = _execute(conn, sql, params, query, filters.query_mode)
    hits = [
        MessageHit(
            path=row["path"],
            turn_index=row["turn_index"],
            score=row["score"],
            role=row["role"],
            timestamp=row["timestamp"],
            text=row["text"],
            title=row["title"],
            agent=row["agent"],
            workspace=row["workspace"],
            repo_root=row["repo_root"],
            repo_name=row["repo_name"],
            branch=row["branch"],
        )
        for row in rows
    ]

    wants_context = filters.fields is None or "context" in fields
    if filters.around > 0 and wants_context:
        # One lookup per hit; result counts are small
        for hit in hits:
            hit.context = load_context(conn, hit.path, hit.turn_index, filters.around)

    return hits


def find(
    conn: sqlite3.Connection, query: str, filters: FindFilters
) -> list[SessionHit] | list[MessageHit]:
    """Search in the scope named by the filters."""
    if filters.scope is FindScope.SESSION:
        return find_sessions(conn, query, filters)
    return find_messages(conn, query, filters)


def load_context(
    conn: sqlite3.Connection, path: str, turn_index: int, around: int
) -> list[MessageContext]:
    """Messages within ``around`` turns of a match, in turn order.

    Every role is included regardless of the role filter on the search.
    """
    try:
        rows = conn.execute(
            """
            SELECT turn_index, role, timestamp, text
            FROM messages
            WHERE session_path = ? AND turn_index BETWEEN ? AND ?
            ORDER BY turn_index
            """,
            (path, max(0, turn_index - around), turn_index + around),
        ).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"context lookup failed: {exc}") from exc

    return [
        MessageContext(
            path=path,
            turn_index=row["turn_index"],
            role=row["role"],
            timestamp=row["timestamp"],
            text=row["text"],
        )
        for row in rows
    ]
