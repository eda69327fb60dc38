"""SQLite storage for the mmem index."""

import os
import sqlite3
from pathlib import Path
from typing import Any

from mmem.models import MessageRecord, SessionRecord

# Index location
INDEX_DIR = Path(os.environ.get("MMEM_HOME", Path.home() / ".config" / "marvin"))
INDEX_PATH = Path(os.environ.get("MMEM_DB_PATH", INDEX_DIR / "mmem.sqlite"))

BUSY_TIMEOUT_MS = 5000

SCHEMA = """
    -- Sessions table
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY,
        path TEXT NOT NULL UNIQUE,
        mtime INTEGER NOT NULL,
        size INTEGER NOT NULL,
        hash TEXT,
        created_at TEXT,
        last_message_at TEXT,
        agent TEXT,
        workspace TEXT,
        title TEXT,
        message_count INTEGER NOT NULL DEFAULT 0,
        snippet TEXT,
        content TEXT NOT NULL DEFAULT '',
        repo_root TEXT,
        repo_name TEXT,
        branch TEXT
    );

    -- Messages table, one row per turn
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY,
        session_path TEXT NOT NULL,
        turn_index INTEGER NOT NULL,
        role TEXT,
        timestamp TEXT,
        text TEXT NOT NULL DEFAULT '',
        UNIQUE (session_path, turn_index)
    );

    -- FTS5 for session and message search
    CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
        title,
        content,
        content='sessions',
        content_rowid='id'
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
        text,
        content='messages',
        content_rowid='id'
    );

    -- Triggers to keep FTS in sync
    CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
        INSERT INTO sessions_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
    END;

    CREATE TRIGGER IF NOT EXISTS sessions_ad AFTER DELETE ON sessions BEGIN
        INSERT INTO sessions_fts(sessions_fts, rowid, title, content)
        VALUES ('delete', old.id, old.title, old.content);
    END;

    CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE ON sessions BEGIN
        INSERT INTO sessions_fts(sessions_fts, rowid, title, content)
        VALUES ('delete', old.id, old.title, old.content);
        INSERT INTO sessions_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
    END;

    CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
        INSERT INTO messages_fts(rowid, text) VALUES (new.id, new.text);
    END;

    CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
        INSERT INTO messages_fts(messages_fts, rowid, text) VALUES ('delete', old.id, old.text);
    END;

    CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
        INSERT INTO messages_fts(messages_fts, rowid, text) VALUES ('delete', old.id, old.text);
        INSERT INTO messages_fts(rowid, text) VALUES (new.id, new.text);
    END;

    -- Metadata table for tracking index state
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_last_message_at ON sessions(last_message_at);
    CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions(agent);
    CREATE INDEX IF NOT EXISTS idx_sessions_workspace ON sessions(workspace);
    CREATE INDEX IF NOT EXISTS idx_messages_session_turn ON messages(session_path, turn_index);
"""

# Columns added after the first schema release
LATE_COLUMNS = (
    ("sessions", "repo_root", "TEXT"),
    ("sessions", "repo_name", "TEXT"),
    ("sessions", "branch", "TEXT"),
)

LATE_INDEXES = """
    CREATE INDEX IF NOT EXISTS idx_sessions_repo_name ON sessions(repo_name);
    CREATE INDEX IF NOT EXISTS idx_sessions_branch ON sessions(branch);
"""


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    """Open the index database in WAL mode so readers never wait on indexing."""
    path = db_path or INDEX_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Initialize the database schema."""
    conn.executescript(SCHEMA)
    for table, column, col_type in LATE_COLUMNS:
        ensure_column(conn, table, column, col_type)
    conn.executescript(LATE_INDEXES)
    conn.commit()


def ensure_column(conn: sqlite3.Connection, table: str, column: str, col_type: str) -> None:
    """Add a column to an existing table if an older schema lacks it."""
    columns = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column not in columns:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")


def ensure_index_exists(db_path: Path | None = None) -> sqlite3.Connection:
    """Ensure the index database exists and is initialized."""
    conn = get_connection(db_path)
    init_schema(conn)
    return conn


def index_exists(db_path: Path | None = None) -> bool:
    """Check if the index database exists."""
    return (db_path or INDEX_PATH).exists()


def load_indexed_sessions(conn: sqlite3.Connection) -> dict[str, tuple[int, int]]:
    """Map every indexed path to its ``(mtime, size)`` fingerprint."""
    rows = conn.execute("SELECT path, mtime, size FROM sessions").fetchall()
    return {row["path"]: (row["mtime"], row["size"]) for row in rows}


def upsert_session(conn: sqlite3.Connection, record: SessionRecord) -> None:
    """Insert or update a session row.

    Uses ON CONFLICT DO UPDATE rather than INSERT OR REPLACE: REPLACE
    deletes without firing the delete trigger and would leave stale FTS rows.
    """
    conn.execute(
        """
        INSERT INTO sessions (
            path, mtime, size, hash, created_at, last_message_at, agent, workspace,
            title, message_count, snippet, content, repo_root, repo_name, branch
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(path) DO UPDATE SET
            mtime = excluded.mtime,
            size = excluded.size,
            hash = excluded.hash,
            created_at = excluded.created_at,
            last_message_at = excluded.last_message_at,
            agent = excluded.agent,
            workspace = excluded.workspace,
            title = excluded.title,
            message_count = excluded.message_count,
            snippet = excluded.snippet,
            content = excluded.content,
            repo_root = excluded.repo_root,
            repo_name = excluded.repo_name,
            branch = excluded.branch
        """,
        (
            record.path,
            record.mtime,
            record.size,
            record.hash,
            record.created_at,
            record.last_message_at,
            record.agent,
            record.workspace,
            record.title,
            record.message_count,
            record.snippet,
            record.content,
            record.repo_root,
            record.repo_name,
            record.branch,
        ),
    )


def replace_messages(
    conn: sqlite3.Connection, session_path: str, messages: list[MessageRecord]
) -> None:
    """Replace all message rows for a session (triggers keep FTS in sync)."""
    conn.execute("DELETE FROM messages WHERE session_path = ?", (session_path,))
    conn.executemany(
        """
        INSERT INTO messages (session_path, turn_index, role, timestamp, text)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            (session_path, message.turn_index, message.role, message.timestamp, message.text)
            for message in messages
        ],
    )


def remove_session(conn: sqlite3.Connection, path: str) -> None:
    """Delete a session and its messages (triggers clean up FTS)."""
    conn.execute("DELETE FROM messages WHERE session_path = ?", (path,))
    conn.execute("DELETE FROM sessions WHERE path = ?", (path,))


def get_session(conn: sqlite3.Connection, path: str) -> SessionRecord | None:
    """Get a session by file path."""
    row = conn.execute("SELECT * FROM sessions WHERE path = ?", (path,)).fetchone()
    if row is None:
        return None
    return SessionRecord(
        path=row["path"],
        mtime=row["mtime"],
        size=row["size"],
        hash=row["hash"],
        created_at=row["created_at"],
        last_message_at=row["last_message_at"],
        agent=row["agent"],
        workspace=row["workspace"],
        title=row["title"],
        message_count=row["message_count"],
        snippet=row["snippet"] or "",
        content=row["content"],
        repo_root=row["repo_root"],
        repo_name=row["repo_name"],
        branch=row["branch"],
    )


def get_session_messages(conn: sqlite3.Connection, path: str) -> list[MessageRecord]:
    """Get all messages for a session ordered by turn."""
    rows = conn.execute(
        "SELECT turn_index, role, timestamp, text FROM messages "
        "WHERE session_path = ? ORDER BY turn_index",
        (path,),
    ).fetchall()
    return [
        MessageRecord(
            turn_index=row["turn_index"],
            role=row["role"],
            timestamp=row["timestamp"],
            text=row["text"],
        )
        for row in rows
    ]


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a metadata value."""
    with conn:
        conn.execute(
            "INSERT INTO metadata (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value."""
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def load_stats(conn: sqlite3.Connection) -> dict[str, Any]:
    """Get index statistics."""
    row = conn.execute(
        "SELECT COUNT(*), MIN(last_message_at), MAX(last_message_at) FROM sessions"
    ).fetchone()
    message_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
    parse_failures = get_metadata(conn, "last_parse_errors")

    return {
        "session_count": row[0],
        "message_count": message_count,
        "oldest_message_at": row[1],
        "newest_message_at": row[2],
        "last_indexed": get_metadata(conn, "last_indexed"),
        "parse_failures": int(parse_failures) if parse_failures is not None else None,
    }


def load_agents(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Get all agents with their session counts."""
    rows = conn.execute("""
        SELECT COALESCE(agent, '(unknown)') AS name, COUNT(*) AS session_count
        FROM sessions
        GROUP BY agent
        ORDER BY session_count DESC, name
    """).fetchall()
    return [{"name": row["name"], "sessions": row["session_count"]} for row in rows]
