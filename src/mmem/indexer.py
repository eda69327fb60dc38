"""Incremental session indexer.

Walks a sessions directory and keeps the index in step with it. A file is
reindexed only when its ``(mtime, size)`` fingerprint changes. Each file is
written or removed in its own transaction, so an interrupted pass leaves
every session either fully old or fully new.

A previously indexed file that stops parsing is removed from the index
rather than left to serve stale results.
"""

import hashlib
import logging
import os
import re
import sqlite3
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from mmem.errors import ParseError, SessionsRootError, StorageError
from mmem.models import IndexStats, MessageRecord, ParsedSession, SessionRecord
from mmem.parser import format_for_path, parse_session
from mmem.repo import RepoResolver
from mmem.storage import (
    load_indexed_sessions,
    remove_session,
    replace_messages,
    set_metadata,
    upsert_session,
)
from mmem.turns import format_timestamp

logger = logging.getLogger(__name__)

# Default sessions location
SESSIONS_DIR = Path(
    os.environ.get("MMEM_SESSIONS_ROOT", Path.home() / ".config" / "marvin" / "sessions")
)


@dataclass
class SessionFile:
    """A transcript file found on disk."""

    path: Path
    mtime: int
    size: int


def discover_sessions(root: Path) -> Iterator[SessionFile]:
    """Yield every transcript file under ``root`` in a stable order."""
    if not root.is_dir():
        return
    for path in sorted(root.rglob("*")):
        if format_for_path(path) is None or not path.is_file():
            continue
        try:
            stat = path.stat()
        except OSError:
            # Vanished since the walk started; treated as missing
            continue
        yield SessionFile(path=path, mtime=stat.st_mtime_ns, size=stat.st_size)


def infer_agent_from_root(root: Path) -> str | None:
    """Infer agent name from the sessions root.

    ``~/.config/marvin/sessions`` -> ``marvin``; any other root -> its own name.
    """
    if root.name == "sessions":
        return root.parent.name or None
    return root.name or None


def decode_workspace_dir(name: str) -> Path | None:
    """Decode a ``--``-encoded workspace directory name back to a path.

    ``--home--alice--code--app`` -> ``/home/alice/code/app``
    """
    if "--" not in name:
        return None
    decoded = re.sub(r"/{2,}", "/", name.replace("--", "/"))
    if not decoded.startswith("/"):
        decoded = "/" + decoded
    path = Path(decoded)
    return path if path.is_dir() else None


def workspace_path(workspace: str | None, session_path: Path) -> Path | None:
    """Find the workspace directory for a session, if it exists on disk."""
    if workspace:
        expanded = Path(workspace).expanduser()
        if expanded.is_dir():
            return expanded
    return decode_workspace_dir(session_path.parent.name)


def build_records(
    path: Path, mtime: int, size: int, digest: str, parsed: ParsedSession
) -> tuple[SessionRecord, list[MessageRecord]]:
    """Turn a parsed session into the rows stored for it."""
    record = SessionRecord(
        path=str(path),
        mtime=mtime,
        size=size,
        hash=digest,
        created_at=parsed.created_at,
        last_message_at=parsed.last_message_at,
        agent=parsed.agent,
        workspace=parsed.workspace,
        title=parsed.title,
        message_count=parsed.message_count,
        snippet=parsed.snippet,
        content=parsed.content,
    )
    messages = [
        MessageRecord(
            turn_index=turn_index,
            role=message.role,
            timestamp=message.timestamp,
            text=message.text,
        )
        for turn_index, message in enumerate(parsed.messages)
    ]
    return record, messages


def _read_and_parse(session_file: SessionFile) -> tuple[ParsedSession, str]:
    fmt = format_for_path(session_file.path)
    try:
        data = session_file.path.read_bytes()
    except OSError as exc:
        raise ParseError(f"unreadable: {exc}") from exc
    parsed = parse_session(data.decode("utf-8", errors="replace"), fmt)
    return parsed, hashlib.sha256(data).hexdigest()


def index_root(
    conn: sqlite3.Connection,
    root: Path,
    full: bool = False,
    *,
    repo_resolver: RepoResolver | None = None,
    on_file: Callable[[Path], None] | None = None,
) -> IndexStats:
    """Synchronize the index with the transcripts under ``root``.

    Args:
        conn: Open index connection with the schema initialized.
        root: Sessions directory to walk.
        full: Reindex every file even if its fingerprint is unchanged.
        repo_resolver: Git metadata resolver; a fresh one per pass by default.
        on_file: Called with each discovered path (progress reporting).

    Raises:
        SessionsRootError: ``root`` is not a directory. The index is untouched.
        StorageError: The database failed. Parse failures never raise.
    """
    if not root.is_dir():
        raise SessionsRootError(str(root))
    try:
        return _index_root(conn, root, full, repo_resolver or RepoResolver(), on_file)
    except sqlite3.Error as exc:
        raise StorageError(f"index update failed: {exc}") from exc


def _index_root(
    conn: sqlite3.Connection,
    root: Path,
    full: bool,
    repo_resolver: RepoResolver,
    on_file: Callable[[Path], None] | None,
) -> IndexStats:
    stats = IndexStats()
    existing = load_indexed_sessions(conn)
    seen: set[str] = set()
    default_agent = infer_agent_from_root(root)

    for session_file in discover_sessions(root):
        if on_file is not None:
            on_file(session_file.path)
        stats.scanned += 1

        path_str = str(session_file.path)
        seen.add(path_str)

        if not full and existing.get(path_str) == (session_file.mtime, session_file.size):
            stats.skipped += 1
            continue

        try:
            parsed, digest = _read_and_parse(session_file)
        except ParseError as exc:
            stats.parse_errors += 1
            logger.warning("Failed to parse %s: %s", path_str, exc)
            if path_str in existing:
                with conn:
                    remove_session(conn, path_str)
                stats.removed += 1
                logger.warning("Removed stale index entries for %s", path_str)
            continue

        if parsed.skipped_records:
            logger.debug("Skipped %d malformed records in %s", parsed.skipped_records, path_str)

        record, messages = build_records(
            session_file.path, session_file.mtime, session_file.size, digest, parsed
        )
        if record.agent is None:
            record.agent = default_agent
        repo_info = repo_resolver.resolve(workspace_path(record.workspace, session_file.path))
        record.repo_root = repo_info.repo_root
        record.repo_name = repo_info.repo_name
        record.branch = repo_info.branch

        modified = format_timestamp(
            datetime.fromtimestamp(session_file.mtime / 1e9, tz=timezone.utc)
        )
        record.created_at = record.created_at or modified
        record.last_message_at = record.last_message_at or modified

        with conn:
            upsert_session(conn, record)
            replace_messages(conn, record.path, messages)
        stats.indexed += 1
        logger.debug("Indexed %s (%d messages)", path_str, record.message_count)

    for path_str in existing:
        if path_str not in seen and not Path(path_str).exists():
            with conn:
                remove_session(conn, path_str)
            stats.removed += 1
            logger.debug("Removed missing session %s", path_str)

    set_metadata(conn, "last_indexed", format_timestamp(datetime.now(tz=timezone.utc)))
    set_metadata(conn, "last_parse_errors", str(stats.parse_errors))
    return stats
