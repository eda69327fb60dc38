"""Integration tests for the CLI."""

import json
import os
import sqlite3
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[2] / "src"


@pytest.fixture
def cli_env(temp_dir, sessions_root):
    """Environment pointing mmem at a temporary home, database and sessions root."""
    env = dict(os.environ)
    env["MMEM_HOME"] = str(temp_dir / "home")
    env["MMEM_DB_PATH"] = str(temp_dir / "home" / "mmem.sqlite")
    env["MMEM_SESSIONS_ROOT"] = str(sessions_root)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    env["COLUMNS"] = "200"
    return env


def run_cli(env, *args):
    return subprocess.run(
        [sys.executable, "-m", "mmem.cli", *args],
        capture_output=True,
        text=True,
        env=env,
    )


def test_cli_help(cli_env):
    """Test that --help works."""
    result = run_cli(cli_env, "--help")
    assert result.returncode == 0
    for command in ("index", "find", "show", "stats", "agents", "doctor"):
        assert command in result.stdout


def test_cli_version(cli_env):
    """Test that --version works."""
    result = run_cli(cli_env, "--version")
    assert result.returncode == 0
    assert "mmem" in result.stdout


def test_find_without_index(cli_env):
    """Searching before indexing fails with a hint."""
    result = run_cli(cli_env, "find", "anything")
    assert result.returncode == 1
    assert "mmem index" in result.stdout


def test_index_then_find(cli_env, sample_session_jsonl):
    """An index pass makes the sample session searchable."""
    indexed = run_cli(cli_env, "index", "--json")
    assert indexed.returncode == 0, indexed.stderr
    assert json.loads(indexed.stdout)["indexed"] == 1

    found = run_cli(cli_env, "find", "rotate", "--json")
    assert found.returncode == 0, found.stderr
    hits = json.loads(found.stdout)
    assert len(hits) == 1
    assert hits[0]["path"] == str(sample_session_jsonl)
    assert hits[0]["turn_index"] == 0
    assert hits[0]["role"] == "user"
    assert set(hits[0]) <= {"path", "title", "timestamp", "role", "turn_index", "score"}


def test_find_jsonl_with_context(cli_env, sample_session_jsonl):
    """JSON Lines output carries context when a radius is given."""
    run_cli(cli_env, "index")

    result = run_cli(cli_env, "find", "rotation", "--jsonl", "--around", "1")

    assert result.returncode == 0, result.stderr
    lines = [json.loads(line) for line in result.stdout.splitlines() if line.strip()]
    assert len(lines) == 1
    assert lines[0]["turn_index"] == 3
    assert [c["turn_index"] for c in lines[0]["context"]] == [2, 3]


def test_find_human_output(cli_env, sample_session_jsonl):
    run_cli(cli_env, "index")

    result = run_cli(cli_env, "find", "rotate", "--snippet")

    assert result.returncode == 0, result.stderr
    assert f"{sample_session_jsonl}#0" in result.stdout
    assert "How do I rotate the signing keys?" in result.stdout


def test_find_raw_syntax_error(cli_env, sample_session_jsonl):
    """Bad raw FTS syntax exits 1 with a hint to drop --fts."""
    run_cli(cli_env, "index")

    result = run_cli(cli_env, "find", "rotate AND AND", "--fts")

    assert result.returncode == 1
    assert "--fts" in result.stderr


def test_find_unknown_field(cli_env, sample_session_jsonl):
    run_cli(cli_env, "index")

    result = run_cli(cli_env, "find", "rotate", "--json", "--fields", "path,bogus")

    assert result.returncode == 1
    assert "bogus" in result.stderr


def test_show_lists_read_calls(cli_env, sample_session_jsonl):
    """show with a filename prefix lists read tool calls."""
    result = run_cli(cli_env, "show", "1705312740000", "--json")

    assert result.returncode == 0, result.stderr
    assert json.loads(result.stdout) == [
        {
            "line": 5,
            "turn": 2,
            "tool": {
                "name": "read",
                "arguments": {"path": "/tmp/keys.py", "offset": 1, "limit": 20},
            },
        }
    ]


def test_show_turn(cli_env, sample_session_jsonl):
    result = run_cli(cli_env, "show", str(sample_session_jsonl), "--turn", "0", "--json")

    assert result.returncode == 0, result.stderr
    data = json.loads(result.stdout)
    assert data["line"] == 2
    assert data["role"] == "user"
    assert data["tools"] == []


def test_show_missing_session(cli_env):
    result = run_cli(cli_env, "show", "does-not-exist")
    assert result.returncode == 1
    assert "session not found" in result.stderr


def test_stats_and_agents(cli_env, sample_session_jsonl):
    run_cli(cli_env, "index")

    stats = run_cli(cli_env, "stats", "--json")
    agents = run_cli(cli_env, "agents", "--json")

    assert json.loads(stats.stdout)["session_count"] == 1
    assert json.loads(stats.stdout)["parse_failures"] == 0
    assert json.loads(agents.stdout) == {"agents": [{"name": "marvin", "sessions": 1}]}


def test_doctor_json(cli_env, sessions_root):
    result = run_cli(cli_env, "doctor", "--json")

    assert result.returncode == 0, result.stderr
    report = json.loads(result.stdout)
    assert report["root"] == str(sessions_root)
    assert report["root_exists"] is True
    assert report["db_exists"] is False


def test_index_missing_root_keeps_index(cli_env, temp_dir, sample_session_jsonl):
    """Indexing a root that does not exist fails and keeps indexed sessions."""
    run_cli(cli_env, "index")

    result = run_cli(cli_env, "index", "--root", str(temp_dir / "typo"))

    assert result.returncode == 1
    assert "not a directory" in result.stderr
    stats = run_cli(cli_env, "stats", "--json")
    assert json.loads(stats.stdout)["session_count"] == 1


def test_open_existing_index_skips_schema(temp_dir):
    """Read-only commands open an existing index without creating tables."""
    from mmem.cli import open_index

    db_path = temp_dir / "plain.sqlite"
    sqlite3.connect(db_path).close()

    conn = open_index(db_path)
    tables = [row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")]
    conn.close()

    assert tables == []
