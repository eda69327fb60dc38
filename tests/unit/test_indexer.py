"""Tests for the incremental indexer."""

import os

import pytest

from mmem.errors import SessionsRootError
from mmem.indexer import (
    decode_workspace_dir,
    discover_sessions,
    index_root,
    infer_agent_from_root,
)
from mmem.repo import RepoInfo
from mmem.storage import (
    get_metadata,
    get_session,
    get_session_messages,
    load_indexed_sessions,
)


class FakeResolver:
    """Records the workspaces it is asked about."""

    def __init__(self, info=None):
        self.info = info or RepoInfo()
        self.calls = []

    def resolve(self, workspace):
        self.calls.append(workspace)
        return self.info if workspace is not None else RepoInfo()


def _message_hits(conn, term):
    return conn.execute(
        "SELECT COUNT(*) FROM messages_fts WHERE messages_fts MATCH ?", (f'"{term}"',)
    ).fetchone()[0]


def _bump_mtime(path):
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def test_discover_sessions(sessions_root, make_jsonl):
    """Only transcript extensions are discovered, in sorted order."""
    make_jsonl(sessions_root / "b.jsonl", [{"role": "user", "content": "b"}])
    make_jsonl(sessions_root / "nested" / "a.jsonl", [{"role": "user", "content": "a"}])
    (sessions_root / "notes.md").write_text("User: hi\n")
    (sessions_root / "ignored.txt").write_text("User: hi\n")

    found = [f.path.relative_to(sessions_root).as_posix() for f in discover_sessions(sessions_root)]

    assert found == ["b.jsonl", "nested/a.jsonl", "notes.md"]


def test_discover_sessions_missing_root(temp_dir):
    """A missing root yields nothing."""
    assert list(discover_sessions(temp_dir / "absent")) == []


def test_index_sample_session(db_conn, sessions_root, sample_session_jsonl):
    """A first pass indexes the session and every turn."""
    stats = index_root(db_conn, sessions_root)

    assert (stats.scanned, stats.indexed, stats.skipped, stats.removed) == (1, 1, 0, 0)
    session = get_session(db_conn, str(sample_session_jsonl))
    assert session.agent == "marvin"
    assert session.message_count == 4
    assert session.title == "How do I rotate the signing keys?"
    assert session.repo_root is None
    messages = get_session_messages(db_conn, str(sample_session_jsonl))
    assert [m.turn_index for m in messages] == [0, 1, 2, 3]
    assert get_metadata(db_conn, "last_indexed") is not None


def _snapshot(conn):
    sessions = conn.execute("SELECT * FROM sessions ORDER BY path").fetchall()
    messages = conn.execute(
        "SELECT * FROM messages ORDER BY session_path, turn_index"
    ).fetchall()
    return [tuple(row) for row in sessions], [tuple(row) for row in messages]


def test_second_pass_is_idempotent(db_conn, sessions_root, sample_session_jsonl):
    """An unchanged file is skipped and every stored row is left as it was."""
    index_root(db_conn, sessions_root)
    before = _snapshot(db_conn)

    stats = index_root(db_conn, sessions_root)

    assert (stats.indexed, stats.skipped) == (0, 1)
    assert _snapshot(db_conn) == before
    assert _message_hits(db_conn, "rotate") == 1


def test_full_pass_reindexes(db_conn, sessions_root, sample_session_jsonl):
    """--full reindexes unchanged files without duplicating rows."""
    index_root(db_conn, sessions_root)

    stats = index_root(db_conn, sessions_root, full=True)

    assert stats.indexed == 1
    assert db_conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 4
    assert _message_hits(db_conn, "rotate") == 1


def test_changed_file_replaces_messages(db_conn, sessions_root, make_jsonl):
    """Reindexing replaces the old messages rather than merging with them."""
    path = make_jsonl(
        sessions_root / "s.jsonl",
        [{"role": "user", "content": "original walrus"}, {"role": "assistant", "content": "ok"}],
    )
    index_root(db_conn, sessions_root)

    make_jsonl(path, [{"role": "user", "content": "replacement narwhal question"}])
    _bump_mtime(path)
    stats = index_root(db_conn, sessions_root)

    assert stats.indexed == 1
    messages = get_session_messages(db_conn, str(path))
    assert [m.text for m in messages] == ["replacement narwhal question"]
    assert _message_hits(db_conn, "walrus") == 0
    assert _message_hits(db_conn, "narwhal") == 1


def test_unparseable_file_is_removed(db_conn, sessions_root, make_jsonl):
    """A previously indexed file that stops parsing leaves the index."""
    path = make_jsonl(sessions_root / "s.jsonl", [{"role": "user", "content": "walrus"}])
    index_root(db_conn, sessions_root)

    path.write_text("{not json at all\n")
    _bump_mtime(path)
    stats = index_root(db_conn, sessions_root)

    assert stats.parse_errors == 1
    assert stats.removed == 1
    assert get_session(db_conn, str(path)) is None
    assert _message_hits(db_conn, "walrus") == 0
    assert get_metadata(db_conn, "last_parse_errors") == "1"


def test_empty_file_is_a_parse_error(db_conn, sessions_root):
    """Empty files count as parse failures and are never indexed."""
    (sessions_root / "empty.jsonl").write_text("")

    stats = index_root(db_conn, sessions_root)

    assert stats.parse_errors == 1
    assert stats.indexed == 0
    assert stats.removed == 0


def test_missing_file_is_removed(db_conn, sessions_root, sample_session_jsonl):
    """Files deleted from disk are removed from the index."""
    index_root(db_conn, sessions_root)

    sample_session_jsonl.unlink()
    stats = index_root(db_conn, sessions_root)

    assert stats.removed == 1
    assert get_session(db_conn, str(sample_session_jsonl)) is None
    assert _message_hits(db_conn, "rotate") == 0


def test_missing_root_leaves_index_untouched(db_conn, sessions_root, temp_dir, make_jsonl):
    """A root that does not exist fails the pass instead of emptying the index."""
    make_jsonl(sessions_root / "a.jsonl", [{"role": "user", "content": "walrus"}])
    index_root(db_conn, sessions_root)

    with pytest.raises(SessionsRootError) as exc_info:
        index_root(db_conn, temp_dir / "typo")

    assert exc_info.value.root == str(temp_dir / "typo")
    assert len(load_indexed_sessions(db_conn)) == 1
    assert _message_hits(db_conn, "walrus") == 1


def test_other_root_keeps_existing_sessions(db_conn, sessions_root, temp_dir, make_jsonl):
    """Sessions still on disk outside the walked root are not removed."""
    kept = make_jsonl(sessions_root / "a.jsonl", [{"role": "user", "content": "walrus"}])
    index_root(db_conn, sessions_root)
    other_root = temp_dir / "codex" / "sessions"
    make_jsonl(other_root / "b.jsonl", [{"role": "user", "content": "narwhal"}])

    stats = index_root(db_conn, other_root)

    assert (stats.indexed, stats.removed) == (1, 0)
    assert set(load_indexed_sessions(db_conn)) == {str(kept), str(other_root / "b.jsonl")}


def test_agent_inferred_from_root(db_conn, sessions_root, make_jsonl):
    """Sessions without an agent field take the agent from the root path."""
    path = make_jsonl(sessions_root / "s.jsonl", [{"role": "user", "content": "hello"}])

    index_root(db_conn, sessions_root)

    assert get_session(db_conn, str(path)).agent == "marvin"


def test_timestamps_fall_back_to_mtime(db_conn, sessions_root):
    """Transcripts without timestamps use the file modification time."""
    path = sessions_root / "notes.md"
    path.write_text("User: when was this?\nAssistant: no idea\n")

    index_root(db_conn, sessions_root)

    session = get_session(db_conn, str(path))
    assert session.created_at is not None
    assert session.created_at.endswith("Z")
    assert session.last_message_at == session.created_at


def test_repo_info_recorded(db_conn, sessions_root, make_jsonl, temp_dir):
    """Git metadata for an existing workspace is stored on the session."""
    workspace = temp_dir / "project"
    workspace.mkdir()
    path = make_jsonl(
        sessions_root / "s.jsonl",
        [{"cwd": str(workspace)}, {"role": "user", "content": "hello"}],
    )
    resolver = FakeResolver(RepoInfo(repo_root=str(workspace), repo_name="project", branch="main"))

    index_root(db_conn, sessions_root, repo_resolver=resolver)

    session = get_session(db_conn, str(path))
    assert resolver.calls == [workspace]
    assert (session.repo_root, session.repo_name, session.branch) == (
        str(workspace),
        "project",
        "main",
    )


def test_on_file_callback(db_conn, sessions_root, sample_session_jsonl):
    """The progress callback sees every discovered file."""
    seen = []
    index_root(db_conn, sessions_root, on_file=seen.append)
    assert seen == [sample_session_jsonl]


def test_infer_agent_from_root(temp_dir):
    assert infer_agent_from_root(temp_dir / "codex" / "sessions") == "codex"
    assert infer_agent_from_root(temp_dir / "transcripts") == "transcripts"


def test_decode_workspace_dir(temp_dir):
    """Encoded directory names decode to existing paths only."""
    workspace = temp_dir / "code" / "app"
    workspace.mkdir(parents=True)
    encoded = "--" + "--".join(workspace.parts[1:])

    assert decode_workspace_dir(encoded) == workspace
    assert decode_workspace_dir("plain-name") is None
    assert decode_workspace_dir("--definitely--not--here") is None
