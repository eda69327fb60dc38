"""Pytest fixtures for mmem tests."""

import copy
import json
import tempfile
from pathlib import Path

import pytest

SAMPLE_RECORDS = [
    {
        "type": "session_meta",
        "timestamp": "2024-01-15T09:59:00Z",
        "payload": {"agent": "marvin", "cwd": "/nonexistent/workspace/app"},
    },
    {
        "type": "response_item",
        "timestamp": "2024-01-15T10:00:00Z",
        "payload": {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": "How do I rotate the signing keys?"}],
        },
    },
    {
        "type": "response_item",
        "timestamp": "2024-01-15T10:00:05Z",
        "payload": {
            "type": "message",
            "role": "assistant",
            "content": [{"type": "output_text", "text": "Use the rotate command in the keys module."}],
        },
    },
    {
        "type": "response_item",
        "timestamp": "2024-01-15T10:00:30Z",
        "payload": {"type": "function_call", "name": "shell", "arguments": "{}"},
    },
    {
        "timestamp": "2024-01-15T10:01:00Z",
        "message": {
            "role": "assistant",
            "content": [
                {
                    "type": "toolCall",
                    "name": "read",
                    "arguments": {"path": "/tmp/keys.py", "offset": 1, "limit": 20},
                }
            ],
        },
    },
    {
        "timestamp": "2024-01-15T10:02:00Z",
        "message": {"role": "user", "content": "Thanks, the rotation works now"},
    },
]


def write_jsonl(path: Path, records: list, extra_lines: list[str] | None = None) -> Path:
    """Write records as JSON Lines, followed by any raw extra lines."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(record) for record in records] + (extra_lines or [])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sessions_root(temp_dir):
    """An empty sessions directory laid out like ``~/.config/marvin/sessions``."""
    root = temp_dir / "marvin" / "sessions"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def sample_records():
    """The records of the sample session, safe to mutate."""
    return copy.deepcopy(SAMPLE_RECORDS)


@pytest.fixture
def make_jsonl():
    """Expose ``write_jsonl`` to tests."""
    return write_jsonl


@pytest.fixture
def sample_session_jsonl(sessions_root):
    """A JSONL session with envelopes, a direct message and a tool-only turn."""
    return write_jsonl(sessions_root / "1705312740000_keys.jsonl", SAMPLE_RECORDS)


@pytest.fixture
def db_conn(temp_dir):
    """An initialized index database in a temporary directory."""
    from mmem.storage import ensure_index_exists

    conn = ensure_index_exists(temp_dir / "index" / "mmem.sqlite")
    yield conn
    conn.close()
