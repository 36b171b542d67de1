"""Tests for the read-only codex session store."""
from __future__ import annotations

import os
from pathlib import Path

from conftest import T0, assistant_entry, at, iso, session_id, task_complete_entry

from chatrelay.shared.models.session import SessionSource
from chatrelay.shared.services.codex_sessions import (
    CodexSessionStore,
    ThreadIndex,
    cwd_matches,
    is_valid_session_id,
    normalize_limit,
    parse_timestamp,
    record_from_head,
    take_snapshot,
    turn_state_from_tail,
)


def _store(codex_home) -> CodexSessionStore:
    return CodexSessionStore(codex_home.sessions_dir, codex_home.index_path)


# ── Helpers ──


def test_session_id_validation():
    assert is_valid_session_id(session_id(1))
    assert is_valid_session_id(session_id(1).upper())
    assert not is_valid_session_id("")
    assert not is_valid_session_id(None)
    assert not is_valid_session_id("not-a-session")
    # version nibble 0 is not a real UUID version
    assert not is_valid_session_id("019a0000-0000-0000-8000-000000000001")


def test_cwd_matches_equal_and_nested():
    assert cwd_matches("/work/app", "/work/app")
    assert cwd_matches("/work/app/pkg", "/work/app")
    assert cwd_matches("/work/app/", "/work/app")
    assert not cwd_matches("/work/app2", "/work/app")
    assert not cwd_matches("/work", "/work/app")
    assert not cwd_matches("", "/work/app")
    assert cwd_matches("/anything", "")


def test_parse_timestamp_formats():
    assert parse_timestamp(iso(T0)) == at(T0)
    assert parse_timestamp(T0) == at(T0)
    assert parse_timestamp("2026-01-01T00:00:00").tzinfo is not None
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("") is None


def test_normalize_limit():
    assert normalize_limit(None) == 10
    assert normalize_limit(0) == 10
    assert normalize_limit("25") == 25
    assert normalize_limit(10_000) == 500


# ── Listing ──


def test_list_sessions_newest_first_and_filtered_by_cwd(codex_home, project):
    other = project.parent / "project2"
    codex_home.write_session(session_id(1), cwd=str(project), created=T0)
    codex_home.write_session(session_id(2), cwd=str(project / "sub"), created=T0 + 10)
    codex_home.write_session(session_id(3), cwd=str(other), created=T0 + 20)

    sessions = _store(codex_home).list_sessions(str(project), limit=10)

    assert [s.id for s in sessions] == [session_id(2), session_id(1)]
    assert sessions[0].created_at == at(T0 + 10)
    assert sessions[0].source is SessionSource.CLI
    assert sessions[0].file_path.endswith(f"{session_id(2)}.jsonl")


def test_list_sessions_respects_limit(codex_home, project):
    for n in range(5):
        codex_home.write_session(session_id(n + 1), cwd=str(project), created=T0 + n)

    sessions = _store(codex_home).list_sessions(str(project), limit=2)

    assert [s.id for s in sessions] == [session_id(5), session_id(4)]


def test_list_sessions_skips_files_without_valid_id(codex_home, project):
    codex_home.write_session("bogus", cwd=str(project), created=T0)
    codex_home.write_session(session_id(1), cwd=str(project), created=T0 + 1)

    sessions = _store(codex_home).list_sessions(str(project))

    assert [s.id for s in sessions] == [session_id(1)]


def test_list_sessions_missing_dir_is_empty(tmp_path):
    store = CodexSessionStore(tmp_path / "nope", tmp_path / "nope.sqlite")
    assert store.list_sessions() == []
    assert store.get_session_meta(session_id(1)) is None


def test_display_name_from_first_prompt(codex_home, project):
    long_prompt = "word " * 40
    codex_home.write_session(session_id(1), cwd=str(project), created=T0, prompt="Fix  the\nbuild")
    codex_home.write_session(session_id(2), cwd=str(project), created=T0 + 1, prompt=long_prompt)

    by_id = {s.id: s for s in _store(codex_home).list_sessions(str(project))}

    assert by_id[session_id(1)].display_name == "Fix the build"
    name = by_id[session_id(2)].display_name
    assert len(name) == 96
    assert name.endswith("...")


def test_list_sessions_since(codex_home, project):
    codex_home.write_session(session_id(1), cwd=str(project), created=T0)
    codex_home.write_session(session_id(2), cwd=str(project), created=T0 + 100)

    sessions = _store(codex_home).list_sessions_since(str(project), at(T0 + 50))

    assert [s.id for s in sessions] == [session_id(2)]


def test_find_newest_diff_prefers_cli_then_newest(codex_home, project):
    codex_home.write_session(session_id(1), cwd=str(project), created=T0)
    codex_home.write_session(session_id(2), cwd=str(project), created=T0 + 100, source="exec")
    codex_home.write_session(session_id(3), cwd=str(project), created=T0 + 50, source="cli")
    codex_home.write_session(session_id(4), cwd=str(project), created=T0 + 200, source="exec")

    diff = _store(codex_home).find_newest_diff(
        str(project), previous_ids={session_id(1)}, since=at(T0 + 10),
    )

    assert [s.id for s in diff] == [session_id(3), session_id(4), session_id(2)]


def test_record_from_head_falls_back_to_regex_and_filename():
    sid = session_id(7)
    # First record cut off mid-line, as a bounded head read would leave it.
    head = (
        '{"timestamp":"2027-01-15T08:00:00Z","type":"session_meta","payload":'
        f'{{"id":"{sid}","timestamp":"2027-01-15T08:00:00Z","cwd":"/w/app",'
        '"source":"exec","instructions":"aaaa'
    )
    record = record_from_head(Path(f"rollout-x-{sid}.jsonl"), head, at(T0))

    assert record is not None
    assert record.id == sid
    assert record.cwd == "/w/app"
    assert record.source is SessionSource.EXEC

    unnamed = record_from_head(Path(f"rollout-x-{sid}.jsonl"), "garbage", at(T0))
    assert unnamed is not None
    assert unnamed.id == sid
    assert unnamed.created_at == at(T0)


# ── Metadata and turn state ──


def test_get_session_meta_from_logs_then_index(codex_home, project):
    codex_home.write_session(session_id(1), cwd=str(project), created=T0)
    codex_home.add_index_row(session_id(2), cwd="/elsewhere", created=T0, title="Indexed")
    store = _store(codex_home)

    from_log = store.get_session_meta(session_id(1))
    from_index = store.get_session_meta(session_id(2))

    assert from_log.cwd == str(project)
    assert from_index.cwd == "/elsewhere"
    assert from_index.file_path is None
    assert from_index.display_name == "Indexed"
    assert store.get_session_meta(session_id(3)) is None
    assert store.get_session_meta("../etc/passwd") is None


def test_turn_state_reports_completion_after_since(codex_home, project):
    path = codex_home.write_session(
        session_id(1),
        cwd=str(project),
        created=T0,
        entries=(
            assistant_entry(T0 + 1, "old reply"),
            task_complete_entry(T0 + 2),
        ),
    )
    store = _store(codex_home)

    assert store.get_turn_state(session_id(1), since=at(T0 + 5)).task_complete is False

    codex_home.append(path, assistant_entry(T0 + 10, "new reply"), task_complete_entry(T0 + 11))
    state = store.get_turn_state(session_id(1), since=at(T0 + 5), file_path=str(path))

    assert state.task_complete is True
    assert state.assistant_message == "new reply"
    assert state.task_complete_timestamp == at(T0 + 11)


def test_turn_state_uses_last_agent_message_when_no_assistant_item():
    tail = "\n".join([
        '{"timestamp":"2027-01-15T08:00:00Z","type":"event_msg",'
        '"payload":{"type":"task_complete","last_agent_message":"All set."}}',
    ])
    state = turn_state_from_tail(tail)
    assert state.task_complete is True
    assert state.assistant_message == "All set."


def test_get_last_message(codex_home, project):
    codex_home.write_session(
        session_id(1),
        cwd=str(project),
        created=T0,
        prompt="hello",
        entries=(assistant_entry(T0 + 1, "Hi there"),),
    )
    assert _store(codex_home).get_last_message(session_id(1)) == "Hi there"
    assert _store(codex_home).get_last_message("nope") == ""


# ── Index ──


def test_thread_index_filters(codex_home, project):
    codex_home.add_index_row(session_id(1), cwd=str(project), created=T0, source="cli")
    codex_home.add_index_row(session_id(2), cwd=str(project), created=T0 + 10, source="exec")
    codex_home.add_index_row(session_id(3), cwd="/other", created=T0 + 20, source="cli")
    index = ThreadIndex(codex_home.index_path)

    assert [r.id for r in index.list_threads(cwd=str(project))] == [session_id(2), session_id(1)]
    assert [r.id for r in index.list_threads(source="cli")] == [session_id(3), session_id(1)]
    assert [r.id for r in index.list_threads(since=at(T0 + 5))] == [session_id(3), session_id(2)]


def test_thread_index_missing_or_broken_is_empty(tmp_path):
    assert ThreadIndex(tmp_path / "missing.sqlite").list_threads() == []
    broken = tmp_path / "broken.sqlite"
    broken.write_text("not a database")
    assert ThreadIndex(broken).list_threads() == []


# ── Snapshot ──


def test_take_snapshot(codex_home, project):
    codex_home.write_session(session_id(1), cwd=str(project), created=T0)
    codex_home.write_session(session_id(2), cwd=str(project), created=T0 + 1)

    snapshot = take_snapshot(_store(codex_home), str(project), clock=lambda: at(T0 + 60))

    assert snapshot.previous_latest_id == session_id(2)
    assert snapshot.previous_ids == {session_id(1), session_id(2)}
    assert snapshot.count == 2
    assert snapshot.started_at == at(T0 + 60)


def test_take_snapshot_empty(codex_home, project):
    snapshot = take_snapshot(_store(codex_home), os.fspath(project))
    assert snapshot.previous_latest_id is None
    assert snapshot.count == 0
