"""
Run Event Ledger
================

Queryable record of what happened during agent loops: model calls, tool
results, decisions, sanity checks. Stored in the project's SQLite database
(``.hyle/events.db``) so runs can be inspected and summarized afterwards
with ``python -m hyle events``.

The per-session ``log.jsonl`` written by the SessionStore stays the
authoritative record; a failed ledger write is logged and the loop goes on.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hyle.db.connection import get_session_maker, init_db
from hyle.db.models import RunEvent

logger = logging.getLogger(__name__)

MAX_PAYLOAD_STRING = 1000


class EventType(Enum):
    """Types of events that can be recorded."""
    LOOP_START = "loop_start"
    LOOP_END = "loop_end"
    MODEL_CALL = "model_call"
    MODEL_FAILURE = "model_failure"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    TOOL_BLOCKED = "tool_blocked"
    DECISION = "decision"
    CHECKPOINT = "checkpoint"
    SANITY_CHECK = "sanity_check"
    INTERRUPT = "interrupt"


@dataclass
class EventRecord:
    """A ledger row, detached from the database session."""
    session_id: str
    event_type: str
    timestamp: str
    tool_name: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "tool_name": self.tool_name,
            "payload": self.payload,
        }


@dataclass
class RunMetrics:
    """Aggregates over recorded events."""
    session_id: Optional[str] = None
    loops: int = 0
    model_calls: int = 0
    model_failures: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    tool_blocked: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    estimated_cost_usd: float = 0.0
    decisions: Dict[str, int] = field(default_factory=dict)
    tools: Dict[str, int] = field(default_factory=dict)

    @property
    def tool_success_rate(self) -> float:
        if self.tool_calls == 0:
            return 1.0
        return (self.tool_calls - self.tool_errors - self.tool_blocked) / self.tool_calls

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "loops": self.loops,
            "model_calls": self.model_calls,
            "model_failures": self.model_failures,
            "tool_calls": self.tool_calls,
            "tool_errors": self.tool_errors,
            "tool_blocked": self.tool_blocked,
            "tool_success_rate": round(self.tool_success_rate, 3),
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
            "decisions": dict(self.decisions),
            "tools": dict(self.tools),
        }


def _trim(value: Any) -> Any:
    """Keep ledger payloads small: long strings are cut."""
    if isinstance(value, str) and len(value) > MAX_PAYLOAD_STRING:
        return value[:MAX_PAYLOAD_STRING] + "..."
    if isinstance(value, dict):
        return {str(k): _trim(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_trim(v) for v in value]
    return value


class EventLog:
    """
    Event recording and metrics for agent loops (DB-backed).

    Usage:
        log = await EventLog.open(project_dir)
        await log.record(session.id, EventType.DECISION, payload={"state": "complete"})
        metrics = await log.metrics(session.id)
    """

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    @classmethod
    async def open(cls, project_dir: Path) -> "EventLog":
        return cls(await init_db(project_dir))

    def _maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_session_maker()
        return self._session_maker

    async def record(
        self,
        session_id: str,
        event_type: Union[EventType, str],
        tool_name: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store one event. Returns False (and logs) when the write fails."""
        kind = event_type.value if isinstance(event_type, EventType) else str(event_type)
        try:
            async with self._maker()() as db:
                db.add(RunEvent(
                    session_id=session_id,
                    timestamp=datetime.now(timezone.utc),
                    type=kind,
                    tool_name=tool_name,
                    payload=_trim(payload or {}),
                ))
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning("Could not record %s event: %s", kind, e)
            return False
        return True

    async def events(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[Union[EventType, str]] = None,
        limit: int = 100,
    ) -> List[EventRecord]:
        """Most recent events first."""
        stmt = select(RunEvent).order_by(RunEvent.id.desc()).limit(limit)
        if session_id is not None:
            stmt = stmt.where(RunEvent.session_id == session_id)
        if event_type is not None:
            kind = event_type.value if isinstance(event_type, EventType) else str(event_type)
            stmt = stmt.where(RunEvent.type == kind)

        async with self._maker()() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [
            EventRecord(
                session_id=row.session_id,
                event_type=row.type,
                timestamp=row.timestamp.isoformat() if row.timestamp else "",
                tool_name=row.tool_name,
                payload=dict(row.payload or {}),
            )
            for row in rows
        ]

    async def metrics(self, session_id: Optional[str] = None) -> RunMetrics:
        stmt = select(RunEvent.type, RunEvent.tool_name, RunEvent.payload)
        if session_id is not None:
            stmt = stmt.where(RunEvent.session_id == session_id)
        async with self._maker()() as db:
            rows = (await db.execute(stmt)).all()

        metrics = RunMetrics(session_id=session_id)
        decisions: Counter = Counter()
        tools: Counter = Counter()
        for kind, tool_name, payload in rows:
            payload = payload or {}
            if kind == EventType.LOOP_START.value:
                metrics.loops += 1
            elif kind == EventType.MODEL_CALL.value:
                metrics.model_calls += 1
                metrics.tokens_in += int(payload.get("tokens_in", 0))
                metrics.tokens_out += int(payload.get("tokens_out", 0))
                metrics.estimated_cost_usd += float(payload.get("cost", 0.0))
            elif kind == EventType.MODEL_FAILURE.value:
                metrics.model_failures += 1
            elif kind in (EventType.TOOL_RESULT.value, EventType.TOOL_ERROR.value, EventType.TOOL_BLOCKED.value):
                metrics.tool_calls += 1
                tools[tool_name or "?"] += 1
                if kind == EventType.TOOL_ERROR.value:
                    metrics.tool_errors += 1
                elif kind == EventType.TOOL_BLOCKED.value:
                    metrics.tool_blocked += 1
            elif kind == EventType.DECISION.value:
                decisions[payload.get("state", "?")] += 1
        metrics.decisions = dict(decisions)
        metrics.tools = dict(tools)
        return metrics


async def create_event_log(project_dir: Path) -> EventLog:
    return await EventLog.open(project_dir)
