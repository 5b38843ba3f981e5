"""
Tests for the session store and advisory locking.
"""

import json
import multiprocessing
import tempfile
import threading
from pathlib import Path

import pytest

from hyle.errors import CheckpointError, LockContention, SessionNotFound
from hyle.locking import AdvisoryLock, atomic_write_json, is_locked, read_json, read_lock_owner
from hyle.records import LoopState, Message, Role, ToolCall
from hyle.session_store import (
    LogKind,
    SessionStatus,
    SessionStore,
    create_session_store,
    generate_session_id,
)


@pytest.fixture
def project_dir():
    """Create a temporary project directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(project_dir):
    return create_session_store(project_dir, lock_timeout=2.0)


def _append_worker(root: str, session_id: str, writer: int, count: int) -> None:
    store = SessionStore(Path(root), lock_timeout=30.0)
    session = store.load(session_id)
    for i in range(count):
        store.append(session, Message.user(f"writer {writer} message {i} " + "x" * 2000))
        store.log_event(session, LogKind.TOOL, {"writer": writer, "i": i})


def _create_worker(root: str, queue) -> None:
    store = SessionStore(Path(root), lock_timeout=30.0)
    session = store.create("model", Path(root))
    store.release(session)
    queue.put(session.id)


class TestSessionIds:
    """Tests for session id generation."""

    def test_id_format(self):
        """IDs are timestamp plus a random hex suffix."""
        session_id = generate_session_id()
        date, clock, suffix = session_id.split("-")
        assert len(date) == 8 and len(clock) == 6
        assert len(suffix) == 8

    def test_ids_unique_within_one_second(self):
        """Many ids generated in the same second are distinct."""
        ids = {generate_session_id() for _ in range(500)}
        assert len(ids) == 500

    def test_concurrent_creation_yields_distinct_sessions(self, project_dir):
        """Several processes creating sessions at once get distinct ids."""
        ctx = multiprocessing.get_context("fork")
        queue = ctx.Queue()
        root = str(project_dir / ".hyle" / "sessions")
        SessionStore(Path(root))
        procs = [ctx.Process(target=_create_worker, args=(root, queue)) for _ in range(6)]
        for p in procs:
            p.start()
        ids = [queue.get(timeout=60) for _ in procs]
        for p in procs:
            p.join(timeout=60)
        assert len(set(ids)) == len(ids)
        assert all((Path(root) / i / "meta.json").exists() for i in ids)


class TestCreateAndLoad:
    """Tests for creating, loading and resuming sessions."""

    def test_create_writes_layout(self, store, project_dir):
        session = store.create("test/model", project_dir)
        directory = store.session_dir(session.id)
        assert (directory / "meta.json").exists()
        assert (directory / "messages.jsonl").exists()
        assert (directory / "checkpoints").is_dir()
        meta = read_json(directory / "meta.json")
        assert meta["model"] == "test/model"
        assert meta["cwd"] == str(project_dir.resolve())
        assert meta["message_count"] == 0
        assert meta["status"] == "active"

    def test_create_takes_lease(self, store, project_dir):
        session = store.create("m", project_dir)
        assert session.has_lease
        assert is_locked(store.session_dir(session.id) / "run.lock")
        owner = read_lock_owner(store.session_dir(session.id) / "run.lock")
        assert owner is not None and "pid" in owner
        store.release(session)
        assert not session.has_lease
        assert not is_locked(store.session_dir(session.id) / "run.lock")

    def test_load_missing_session(self, store):
        with pytest.raises(SessionNotFound):
            store.load("20200101-000000-deadbeef")

    def test_attach_refuses_held_session(self, store, project_dir):
        """A session leased by one holder cannot be attached by another."""
        session = store.create("m", project_dir)
        with pytest.raises(LockContention):
            store.attach(session.id)
        store.release(session)
        attached = store.attach(session.id)
        assert attached.has_lease
        store.release(attached)

    def test_load_or_resume_resumes_idle_session(self, store, project_dir):
        first = store.create("m", project_dir)
        store.append(first, Message.user("hello"))
        store.release(first)

        resumed = store.load_or_resume(project_dir, "m", max_age=3600)
        assert resumed.id == first.id
        assert resumed.message_count == 1
        store.release(resumed)

    def test_load_or_resume_skips_busy_session(self, store, project_dir):
        """A session driven by another holder is never shared."""
        busy = store.create("m", project_dir)
        other = store.load_or_resume(project_dir, "m", max_age=3600)
        assert other.id != busy.id
        store.release(busy)
        store.release(other)

    def test_load_or_resume_ignores_other_model(self, store, project_dir):
        first = store.create("model-a", project_dir)
        store.release(first)
        second = store.load_or_resume(project_dir, "model-b", max_age=3600)
        assert second.id != first.id
        store.release(second)

    def test_list_sessions_filters_by_directory(self, store, project_dir):
        here = store.create("m", project_dir)
        with tempfile.TemporaryDirectory() as other_dir:
            elsewhere = store.create("m", Path(other_dir))
            ids = [s.id for s in store.list_sessions(project_dir)]
            assert here.id in ids
            assert elsewhere.id not in ids
            assert len(store.list_sessions()) == 2
            store.release(elsewhere)
        store.release(here)


class TestMessages:
    """Tests for the append-only message log."""

    def test_append_and_read_back(self, store, project_dir):
        session = store.create("m", project_dir)
        call = ToolCall.create("ls", {"path": "."})
        store.append(session, Message.user("list files"))
        store.append(session, Message.assistant("Listing.", [call], 10, 5))
        call.start()
        call.finish("a.txt")
        store.append(session, Message.tool_result(call, "## ls result:\na.txt"))

        messages = store.messages(session)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL]
        assert messages[1].tool_calls[0].name == "ls"
        assert messages[1].tokens_in == 10
        assert messages[2].tool_calls[0].output == "a.txt"
        assert session.message_count == 3
        store.release(session)

    def test_torn_trailing_line_is_dropped(self, store, project_dir):
        """A crash mid-write leaves a partial line that reconciliation removes."""
        session = store.create("m", project_dir)
        store.append(session, Message.user("one"))
        path = store.session_dir(session.id) / "messages.jsonl"
        with open(path, "ab") as f:
            f.write(b'{"role": "user", "cont')

        assert len(store.messages(session)) == 1
        reloaded = store.load(session.id)
        assert reloaded.message_count == 1
        assert path.read_bytes().endswith(b"\n")
        store.release(session)

    def test_meta_count_repaired_from_log(self, store, project_dir):
        session = store.create("m", project_dir)
        store.append(session, Message.user("one"))
        store.append(session, Message.user("two"))
        meta_path = store.session_dir(session.id) / "meta.json"
        meta = read_json(meta_path)
        meta["message_count"] = 7
        atomic_write_json(meta_path, meta)

        assert store.load(session.id).message_count == 2
        store.release(session)

    def test_concurrent_writers_leave_no_malformed_lines(self, store, project_dir):
        """Two processes appending large records interleave whole lines only."""
        session = store.create("m", project_dir)
        store.release(session)

        ctx = multiprocessing.get_context("fork")
        procs = [
            ctx.Process(target=_append_worker, args=(str(store.root), session.id, w, 25))
            for w in range(3)
        ]
        for p in procs:
            p.start()
        for p in procs:
            p.join(timeout=120)
            assert p.exitcode == 0

        for name in ("messages.jsonl", "log.jsonl"):
            lines = (store.session_dir(session.id) / name).read_bytes().split(b"\n")
            assert lines[-1] == b""
            for line in lines[:-1]:
                json.loads(line)
        assert store.load(session.id).message_count == 75

    def test_meta_reader_never_sees_partial_file(self, store, project_dir):
        """A reader racing metadata rewrites always parses a complete record."""
        session = store.create("m", project_dir)
        meta_path = store.session_dir(session.id) / "meta.json"
        errors = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                try:
                    data = json.loads(meta_path.read_text(encoding="utf-8"))
                    assert data["id"] == session.id
                except Exception as e:  # collected and asserted below
                    errors.append(e)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for i in range(100):
                store.append(session, Message.user(f"m{i}"))
        finally:
            done.set()
            thread.join()
        assert errors == []
        store.release(session)


class TestEventLog:
    """Tests for the per-session log.jsonl."""

    def test_log_event_and_filter(self, store, project_dir):
        session = store.create("m", project_dir)
        store.log_event(session, LogKind.REQUEST, {"iteration": 0})
        store.log_event(session, LogKind.DECISION, {"state": "complete"})
        entries = store.read_log(session)
        assert [e["kind"] for e in entries] == ["request", "decision"]
        assert all("timestamp" in e for e in entries)
        decisions = store.read_log(session, LogKind.DECISION)
        assert decisions == [entries[1]]
        store.release(session)


class TestCheckpoints:
    """Tests for checkpoints and rollback."""

    def test_checkpoint_records_offset_and_state(self, store, project_dir):
        session = store.create("m", project_dir)
        store.append(session, Message.user("a"))
        state = LoopState(iteration=3, max_iterations=25, touched_paths=["x.py"])
        cp = store.checkpoint(session, "after a", state)
        assert cp.offset == 1
        assert store.get_checkpoint(session, cp.id) == cp
        assert cp.restore_state().touched_paths == ["x.py"]
        assert store.read_log(session, LogKind.CHECKPOINT)[0]["checkpoint"] == cp.id
        store.release(session)

    def test_rollback_truncates_log(self, store, project_dir):
        session = store.create("m", project_dir)
        store.append(session, Message.user("keep"))
        cp = store.checkpoint(session, "one message", LoopState(iteration=1))
        store.append(session, Message.user("drop 1"))
        store.append(session, Message.user("drop 2"))

        state = store.rollback(session, cp)
        assert state.iteration == 1
        assert [m.content for m in store.messages(session)] == ["keep"]
        assert session.message_count == 1
        rollback = store.read_log(session, LogKind.ROLLBACK)[0]
        assert rollback["dropped_messages"] == 2
        store.release(session)

    def test_checkpoints_are_listed_in_order(self, store, project_dir):
        session = store.create("m", project_dir)
        first = store.checkpoint(session, "empty")
        store.append(session, Message.user("a"))
        second = store.checkpoint(session, "one")
        assert [c.id for c in store.list_checkpoints(session)] == [first.id, second.id]
        store.release(session)

    def test_rollback_past_end_fails(self, store, project_dir):
        session = store.create("m", project_dir)
        store.append(session, Message.user("a"))
        cp = store.checkpoint(session, "one")
        other = store.create("m", project_dir)
        with pytest.raises(CheckpointError):
            store.rollback(other, cp)
        store.release(session)
        store.release(other)

    def test_unknown_checkpoint(self, store, project_dir):
        session = store.create("m", project_dir)
        with pytest.raises(CheckpointError):
            store.get_checkpoint(session, "cp-00000-000000")
        store.release(session)


class TestLifecycle:
    """Tests for status changes and cleanup."""

    def test_refresh_status_marks_cold(self, store, project_dir):
        session = store.create("m", project_dir)
        assert store.refresh_status(session, max_age=3600) == SessionStatus.ACTIVE
        assert store.refresh_status(session, max_age=-1) == SessionStatus.COLD
        assert store.load(session.id).status == SessionStatus.COLD
        store.append(session, Message.user("wake up"))
        assert session.status == SessionStatus.ACTIVE
        store.release(session)

    def test_archive(self, store, project_dir):
        session = store.create("m", project_dir)
        store.archive(session)
        assert store.load(session.id).status == SessionStatus.ARCHIVED
        store.release(session)

    def test_cleanup_keeps_leased_sessions(self, store, project_dir):
        idle = []
        for _ in range(3):
            s = store.create("m", project_dir)
            store.release(s)
            idle.append(s)
        busy = store.create("m", project_dir)

        removed = store.cleanup(project_dir, keep=0)
        assert busy.id not in removed
        assert set(removed) == {s.id for s in idle}
        assert store.session_dir(busy.id).exists()
        store.release(busy)

    def test_summary(self, store, project_dir):
        session = store.create("test/model", project_dir)
        text = store.summary(session)
        assert session.id in text and "test/model" in text
        store.release(session)


class TestAdvisoryLock:
    """Tests for flock-based locks."""

    def test_second_holder_times_out(self, project_dir):
        path = project_dir / "x.lock"
        with AdvisoryLock(path):
            with pytest.raises(LockContention) as exc:
                AdvisoryLock(path, timeout=0.05).acquire()
            assert exc.value.lock_path == str(path)

    def test_release_allows_next_holder(self, project_dir):
        path = project_dir / "x.lock"
        first = AdvisoryLock(path).acquire()
        assert is_locked(path)
        first.release()
        assert not is_locked(path)
        with AdvisoryLock(path, timeout=0.05) as second:
            assert second.held

    def test_atomic_write_json_round_trip(self, project_dir):
        target = project_dir / "data.json"
        atomic_write_json(target, {"a": 1})
        atomic_write_json(target, {"a": 2})
        assert read_json(target) == {"a": 2}
        assert [p.name for p in project_dir.iterdir()] == ["data.json"]
