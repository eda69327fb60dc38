"""Health checks for the sessions root and the index database."""

import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from mmem.storage import init_schema, load_stats


@dataclass
class DoctorReport:
    root: str
    root_exists: bool
    db_path: str
    db_exists: bool
    schema_ok: bool = False
    schema_error: str | None = None
    fts5_available: bool = False
    indexed_sessions: int = 0
    newest_message_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def fts5_available() -> bool:
    """Check that this SQLite build can create the index schema."""
    try:
        conn = sqlite3.connect(":memory:")
    except sqlite3.Error:
        return False
    try:
        init_schema(conn)
        return True
    except sqlite3.Error:
        return False
    finally:
        conn.close()


def run_doctor(db_path: Path, root: Path) -> DoctorReport:
    """Inspect the configuration. Problems are reported, never raised."""
    report = DoctorReport(
        root=str(root),
        root_exists=root.is_dir(),
        db_path=str(db_path),
        db_exists=db_path.exists(),
        fts5_available=fts5_available(),
    )
    if not report.db_exists:
        return report

    try:
        # Read-only so a broken path is never turned into an empty database
        conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    except sqlite3.Error as exc:
        report.schema_error = str(exc)
        return report
    conn.row_factory = sqlite3.Row

    try:
        stats = load_stats(conn)
    except sqlite3.Error as exc:
        report.schema_error = str(exc)
    else:
        report.schema_ok = True
        report.indexed_sessions = stats["session_count"]
        report.newest_message_at = stats["newest_message_at"]
    finally:
        conn.close()

    return report
