"""
Session Store
=============

Durable, lock-guarded persistence of conversation history, session metadata
and checkpoints. Several hyle processes may share one working directory, so
every write goes through an advisory lock and every metadata rewrite is an
atomic rename.

Layout (``<root>`` defaults to ``<cwd>/.hyle/sessions``):

    <root>/.store.lock                 discovery / cleanup lock
    <root>/<session-id>/meta.json      {id, model, cwd, created_at, updated_at,
                                        message_count, status}
    <root>/<session-id>/messages.jsonl one message per line, append-only
    <root>/<session-id>/log.jsonl      request/response/tool/error/decision events
    <root>/<session-id>/checkpoints/   one immutable JSON file per checkpoint
    <root>/<session-id>/session.lock   serializes appends and rewrites
    <root>/<session-id>/run.lock       held while a process drives the session

Usage:
    from hyle.session_store import SessionStore

    store = SessionStore.for_project(project_dir)
    session = store.load_or_resume(project_dir, "openai/gpt-4o", max_age=3600)
    store.append(session, Message.user("list files"))
    cp = store.checkpoint(session, "before refactor", loop_state)
    state = store.rollback(session, cp)
    store.release(session)
"""

import json
import logging
import os
import secrets
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from hyle.errors import CheckpointError, LockContention, SessionNotFound, StoreIoError
from hyle.locking import AdvisoryLock, atomic_write_json, is_locked, read_json, DEFAULT_LOCK_TIMEOUT
from hyle.records import LoopState, Message, parse_time, utc_now

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".hyle"
SESSIONS_DIRNAME = "sessions"
META_FILE = "meta.json"
MESSAGES_FILE = "messages.jsonl"
LOG_FILE = "log.jsonl"
CHECKPOINTS_DIR = "checkpoints"
SESSION_LOCK = "session.lock"
RUN_LOCK = "run.lock"
STORE_LOCK = ".store.lock"

DEFAULT_MAX_AGE = 3600


class SessionStatus(Enum):
    """Lifecycle of a stored session."""
    ACTIVE = "active"    # recently used, eligible for resume
    COLD = "cold"        # idle longer than the resume window
    ARCHIVED = "archived"


class LogKind(Enum):
    """Kinds of entries in a session's event log."""
    REQUEST = "request"
    RESPONSE = "response"
    TOOL = "tool"
    ERROR = "error"
    DECISION = "decision"
    CHECKPOINT = "checkpoint"
    ROLLBACK = "rollback"


def generate_session_id(now: Optional[datetime] = None) -> str:
    """
    Timestamp plus 32 random bits, e.g. ``20250114-093012-9f3ab2c1``.

    The random suffix keeps ids distinct when several processes create
    sessions within the same second.
    """
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d-%H%M%S}-{secrets.token_hex(4)}"


@dataclass
class Session:
    """Metadata for one conversation. Only SessionStore mutates it."""
    id: str
    model: str
    working_directory: str
    created_at: str
    updated_at: str
    message_count: int = 0
    status: SessionStatus = SessionStatus.ACTIVE

    path: Optional[Path] = field(default=None, repr=False, compare=False)
    lease: Optional[AdvisoryLock] = field(default=None, repr=False, compare=False)

    def to_meta(self) -> dict:
        return {
            "id": self.id,
            "model": self.model,
            "cwd": self.working_directory,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "message_count": self.message_count,
            "status": self.status.value,
        }

    @classmethod
    def from_meta(cls, data: dict, path: Optional[Path] = None) -> "Session":
        return cls(
            id=data["id"],
            model=data.get("model", ""),
            working_directory=data.get("cwd", ""),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            message_count=int(data.get("message_count", 0)),
            status=SessionStatus(data.get("status", "active")),
            path=path,
        )

    def age_seconds(self) -> float:
        """Seconds since the last update."""
        return (datetime.now(timezone.utc) - parse_time(self.updated_at)).total_seconds()

    @property
    def has_lease(self) -> bool:
        return self.lease is not None and self.lease.held

    def _sync(self, other: "Session") -> None:
        self.updated_at = other.updated_at
        self.message_count = other.message_count
        self.status = other.status


@dataclass(frozen=True)
class Checkpoint:
    """Log position plus loop state. Never modified after creation."""
    id: str
    offset: int
    description: str
    created_at: str
    loop_state: Dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offset": self.offset,
            "description": self.description,
            "created_at": self.created_at,
            "loop_state": self.loop_state,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            id=data["id"],
            offset=int(data["offset"]),
            description=data.get("description", ""),
            created_at=data.get("created_at", ""),
            loop_state=dict(data.get("loop_state", {})),
        )

    def restore_state(self) -> LoopState:
        return LoopState.from_dict(self.loop_state)

    def summary(self) -> str:
        return f"[{self.id}] {self.description} at {self.created_at[:19]} (offset {self.offset})"


class SessionStore:
    """
    File-backed session persistence shared safely between processes.

    All public methods are synchronous; the orchestrator calls them through
    ``asyncio.to_thread`` so lock waits do not block the event loop.
    """

    def __init__(self, root: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.root = Path(root)
        self.lock_timeout = lock_timeout
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIoError(f"Cannot create session root {self.root}: {e}") from e

    @classmethod
    def for_project(cls, project_dir: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> "SessionStore":
        return cls(Path(project_dir) / STATE_DIRNAME / SESSIONS_DIRNAME, lock_timeout)

    # ===== Paths and locks =====

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def _meta_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / META_FILE

    def _messages_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / MESSAGES_FILE

    def _log_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / LOG_FILE

    def _checkpoint_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / CHECKPOINTS_DIR

    def _session_lock(self, session_id: str) -> AdvisoryLock:
        return AdvisoryLock(self.session_dir(session_id) / SESSION_LOCK, self.lock_timeout)

    def _run_lock(self, session_id: str) -> AdvisoryLock:
        return AdvisoryLock(self.session_dir(session_id) / RUN_LOCK, self.lock_timeout)

    @contextmanager
    def _store_lock(self) -> Iterator[None]:
        with AdvisoryLock(self.root / STORE_LOCK, self.lock_timeout):
            yield

    # ===== Metadata =====

    def _read_meta(self, session_id: str) -> Session:
        path = self._meta_path(session_id)
        try:
            data = read_json(path)
        except FileNotFoundError:
            raise SessionNotFound(session_id)
        return Session.from_meta(data, self.session_dir(session_id))

    def _write_meta(self, session: Session) -> None:
        atomic_write_json(self._meta_path(session.id), session.to_meta())

    def _count_lines(self, session_id: str) -> int:
        """Count complete lines, dropping a torn trailing line left by a crash."""
        path = self._messages_path(session_id)
        if not path.exists():
            return 0
        with open(path, "rb+") as f:
            data = f.read()
            if data and not data.endswith(b"\n"):
                cut = data.rfind(b"\n") + 1
                logger.warning("Truncating torn trailing line in %s", path)
                f.truncate(cut)
                data = data[:cut]
        return data.count(b"\n")

    def _reconcile(self, session_id: str) -> Session:
        """Caller holds the session lock. Brings meta.message_count in line with the log."""
        meta = self._read_meta(session_id)
        try:
            lines = self._count_lines(session_id)
        except OSError as e:
            raise StoreIoError(f"Cannot read log for {session_id}: {e}") from e
        if lines != meta.message_count:
            logger.warning(
                "Session %s metadata said %d messages, log has %d; repairing",
                session_id, meta.message_count, lines,
            )
            meta.message_count = lines
            self._write_meta(meta)
        return meta

    # ===== Creation and discovery =====

    def create(self, model: str, cwd: Path) -> Session:
        """Create a new session and take its run lease."""
        while True:
            session_id = generate_session_id()
            directory = self.session_dir(session_id)
            try:
                directory.mkdir(parents=True, exist_ok=False)
                break
            except FileExistsError:
                continue
            except OSError as e:
                raise StoreIoError(f"Cannot create session directory {directory}: {e}") from e

        lease = self._run_lock(session_id)
        lease.acquire()
        lease.write_owner({"pid": os.getpid(), "since": utc_now()})

        now = utc_now()
        session = Session(
            id=session_id,
            model=model,
            working_directory=str(Path(cwd).resolve()),
            created_at=now,
            updated_at=now,
            path=directory,
        )
        self._checkpoint_dir(session_id).mkdir(exist_ok=True)
        self._messages_path(session_id).touch()
        self._write_meta(session)
        session.lease = lease
        logger.info("Created session %s (model %s)", session_id, model)
        return session

    def load(self, session_id: str) -> Session:
        """Load metadata without taking the run lease."""
        if not self._meta_path(session_id).exists():
            raise SessionNotFound(session_id)
        with self._session_lock(session_id):
            return self._reconcile(session_id)

    def attach(self, session_id: str) -> Session:
        """Load a session and take its run lease. Raises LockContention if another process holds it."""
        session = self.load(session_id)
        lease = self._run_lock(session_id)
        if not lease.try_acquire():
            raise LockContention(str(lease.path), 0.0)
        lease.write_owner({"pid": os.getpid(), "since": utc_now()})
        session.lease = lease
        return session

    def list_sessions(self, cwd: Optional[Path] = None) -> List[Session]:
        """All readable sessions, newest update first, optionally filtered by working directory."""
        wanted = str(Path(cwd).resolve()) if cwd is not None else None
        sessions = []
        try:
            entries = list(self.root.iterdir())
        except OSError as e:
            raise StoreIoError(f"Cannot list {self.root}: {e}") from e
        for entry in entries:
            if not entry.is_dir() or not (entry / META_FILE).exists():
                continue
            try:
                session = self._read_meta(entry.name)
            except (StoreIoError, SessionNotFound, KeyError, ValueError) as e:
                logger.warning("Skipping unreadable session %s: %s", entry.name, e)
                continue
            if wanted is not None and session.working_directory != wanted:
                continue
            sessions.append(session)
        sessions.sort(key=lambda s: parse_time(s.updated_at), reverse=True)
        return sessions

    def load_or_resume(self, cwd: Path, model: str, max_age: float = DEFAULT_MAX_AGE) -> Session:
        """
        Resume the most recent idle session for ``model`` in ``cwd``, or create one.

        Discovery and lease acquisition happen under the store lock, so a
        concurrent ``cleanup`` cannot remove the session in between.
        """
        with self._store_lock():
            for candidate in self.list_sessions(cwd):
                if candidate.model != model or candidate.status != SessionStatus.ACTIVE:
                    continue
                if candidate.age_seconds() > max_age:
                    continue
                lease = self._run_lock(candidate.id)
                if not lease.try_acquire():
                    logger.debug("Session %s is driven by another process", candidate.id)
                    continue
                lease.write_owner({"pid": os.getpid(), "since": utc_now()})
                with self._session_lock(candidate.id):
                    session = self._reconcile(candidate.id)
                session.lease = lease
                logger.info("Resuming session %s (%d messages)", session.id, session.message_count)
                return session
            return self.create(model, cwd)

    def release(self, session: Session) -> None:
        """Give up the run lease."""
        if session.lease is not None:
            session.lease.release()
            session.lease = None

    # ===== Messages =====

    def append(self, session: Session, message: Message) -> None:
        """
        Append one message to the log.

        The line is written and fsynced, then the metadata count is bumped,
        all while holding the session lock.

        Raises:
            LockContention: the session lock stayed busy past ``lock_timeout``
            StoreIoError: the write failed
        """
        line = (json.dumps(message.to_dict(), ensure_ascii=False) + "\n").encode("utf-8")
        with self._session_lock(session.id):
            meta = self._read_meta(session.id)
            self._append_line(self._messages_path(session.id), line)
            meta.message_count += 1
            meta.updated_at = utc_now()
            if meta.status == SessionStatus.COLD:
                meta.status = SessionStatus.ACTIVE
            self._write_meta(meta)
        session._sync(meta)

    def _append_line(self, path: Path, line: bytes) -> None:
        try:
            fd = os.open(str(path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                written = 0
                while written < len(line):
                    written += os.write(fd, line[written:])
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as e:
            raise StoreIoError(f"Cannot append to {path}: {e}") from e

    def messages(self, session: Session) -> List[Message]:
        """Read the full message log."""
        return [Message.from_dict(d) for d in self._read_jsonl(self._messages_path(session.id))]

    def _read_jsonl(self, path: Path) -> List[dict]:
        if not path.exists():
            return []
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            raise StoreIoError(f"Cannot read {path}: {e}") from e
        records = []
        for line in raw.split(b"\n"):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # Only a torn final line can fail here; complete lines are always valid.
                logger.warning("Ignoring incomplete line in %s", path)
        return records

    # ===== Event log =====

    def log_event(self, session: Session, kind: LogKind, payload: Dict[str, Any]) -> None:
        """Append an entry to the session's event log."""
        with self._session_lock(session.id):
            self._log_event_locked(session.id, kind, payload)

    def _log_event_locked(self, session_id: str, kind: LogKind, payload: Dict[str, Any]) -> None:
        entry = {"timestamp": utc_now(), "kind": kind.value, **payload}
        line = (json.dumps(entry, ensure_ascii=False, default=str) + "\n").encode("utf-8")
        self._append_line(self._log_path(session_id), line)

    def read_log(self, session: Session, kind: Optional[LogKind] = None) -> List[dict]:
        entries = self._read_jsonl(self._log_path(session.id))
        if kind is not None:
            entries = [e for e in entries if e.get("kind") == kind.value]
        return entries

    # ===== Checkpoints =====

    def checkpoint(self, session: Session, description: str, loop_state: Optional[LoopState] = None) -> Checkpoint:
        """Record the current log position and loop state."""
        state = loop_state or LoopState()
        with self._session_lock(session.id):
            meta = self._reconcile(session.id)
            cp = Checkpoint(
                id=f"cp-{meta.message_count:05d}-{secrets.token_hex(3)}",
                offset=meta.message_count,
                description=description,
                created_at=utc_now(),
                loop_state=state.to_dict(),
            )
            self._write_checkpoint(session.id, cp)
            self._log_event_locked(session.id, LogKind.CHECKPOINT, {"checkpoint": cp.id, "offset": cp.offset})
        logger.info("Checkpoint %s at offset %d", cp.id, cp.offset)
        return cp

    def _write_checkpoint(self, session_id: str, cp: Checkpoint) -> None:
        directory = self._checkpoint_dir(session_id)
        directory.mkdir(exist_ok=True)
        target = directory / f"{cp.id}.json"
        fd, tmp_name = tempfile.mkstemp(prefix=".cp-", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(cp.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # link() refuses to overwrite, so a checkpoint file is written exactly once
            os.link(tmp_name, target)
        except FileExistsError:
            raise CheckpointError(f"Checkpoint {cp.id} already exists")
        except OSError as e:
            raise StoreIoError(f"Cannot write checkpoint {target}: {e}") from e
        finally:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass

    def list_checkpoints(self, session: Session) -> List[Checkpoint]:
        directory = self._checkpoint_dir(session.id)
        if not directory.exists():
            return []
        checkpoints = []
        for path in directory.glob("cp-*.json"):
            checkpoints.append(Checkpoint.from_dict(read_json(path)))
        checkpoints.sort(key=lambda c: (c.offset, c.created_at))
        return checkpoints

    def get_checkpoint(self, session: Session, checkpoint_id: str) -> Checkpoint:
        path = self._checkpoint_dir(session.id) / f"{checkpoint_id}.json"
        try:
            return Checkpoint.from_dict(read_json(path))
        except FileNotFoundError:
            raise CheckpointError(f"No checkpoint {checkpoint_id} in session {session.id}")

    def rollback(self, session: Session, checkpoint: Checkpoint) -> LoopState:
        """
        Truncate the message log back to ``checkpoint.offset`` and return its LoopState.

        The shortened log replaces the old one by rename, so readers see
        either the full old log or the truncated one.
        """
        with self._session_lock(session.id):
            meta = self._reconcile(session.id)
            if checkpoint.offset > meta.message_count:
                raise CheckpointError(
                    f"Checkpoint {checkpoint.id} is at offset {checkpoint.offset} "
                    f"but the log only has {meta.message_count} messages"
                )
            path = self._messages_path(session.id)
            try:
                with open(path, "rb") as f:
                    lines = f.read().split(b"\n")
                kept = b"".join(line + b"\n" for line in lines[:checkpoint.offset])
                fd, tmp_name = tempfile.mkstemp(prefix=".messages.", suffix=".tmp", dir=str(path.parent))
                with os.fdopen(fd, "wb") as f:
                    f.write(kept)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except OSError as e:
                raise StoreIoError(f"Rollback of {session.id} failed: {e}") from e

            dropped = meta.message_count - checkpoint.offset
            meta.message_count = checkpoint.offset
            meta.updated_at = utc_now()
            self._write_meta(meta)
            self._log_event_locked(session.id, LogKind.ROLLBACK, {
                "checkpoint": checkpoint.id,
                "offset": checkpoint.offset,
                "dropped_messages": dropped,
            })
        session._sync(meta)
        logger.info("Rolled back %s to %s (%d messages dropped)", session.id, checkpoint.id, dropped)
        return checkpoint.restore_state()

    # ===== Lifecycle =====

    def _set_status(self, session: Session, status: SessionStatus) -> None:
        with self._session_lock(session.id):
            meta = self._read_meta(session.id)
            meta.status = status
            meta.updated_at = utc_now() if status == SessionStatus.ACTIVE else meta.updated_at
            self._write_meta(meta)
        session._sync(meta)

    def refresh_status(self, session: Session, max_age: float = DEFAULT_MAX_AGE) -> SessionStatus:
        """Mark an idle Active session Cold."""
        if session.status == SessionStatus.ACTIVE and session.age_seconds() > max_age:
            self._set_status(session, SessionStatus.COLD)
        return session.status

    def archive(self, session: Session) -> None:
        self._set_status(session, SessionStatus.ARCHIVED)

    def cleanup(self, cwd: Optional[Path] = None, keep: int = 10) -> List[str]:
        """
        Delete all but the ``keep`` most recent sessions.

        Sessions whose run lease is held are never deleted.
        """
        removed = []
        with self._store_lock():
            for session in self.list_sessions(cwd)[keep:]:
                if is_locked(self.session_dir(session.id) / RUN_LOCK):
                    logger.info("Keeping %s: in use by another process", session.id)
                    continue
                try:
                    shutil.rmtree(self.session_dir(session.id))
                except OSError as e:
                    raise StoreIoError(f"Cannot delete session {session.id}: {e}") from e
                removed.append(session.id)
        if removed:
            logger.info("Removed %d old sessions", len(removed))
        return removed

    def summary(self, session: Session) -> str:
        return (
            f"{session.id} | {session.model} | {session.message_count} messages | "
            f"{session.status.value} | updated {session.updated_at[:19]}"
        )


def create_session_store(project_dir: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> SessionStore:
    """
    Create a SessionStore rooted in the project's .hyle directory.

    Args:
        project_dir: Working directory shared by cooperating processes
        lock_timeout: Seconds to wait for a session lock before LockContention

    Returns:
        Configured SessionStore instance
    """
    return SessionStore.for_project(project_dir, lock_timeout)
