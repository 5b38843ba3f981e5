"""
Database Models for hyle
========================

SQLAlchemy models for the per-project run event ledger.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import String, Integer, DateTime, JSON, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class RunEvent(Base):
    """One thing that happened during an agent loop (model call, tool result, decision)."""
    __tablename__ = "run_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    type: Mapped[str] = mapped_column(String(50))  # model_call, tool_result, decision, ...
    tool_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index("ix_run_events_session_type", "session_id", "type"),
    )
