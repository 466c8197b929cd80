"""
Database Models for Darwin Forge
================================

SQLAlchemy models for persisting rate-limit state, self-healing applications,
the rollback log, proposals and detected learning signals.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, BigInteger, Float, DateTime, JSON, Text, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class RateLimitStateModel(Base):
    """Day-bucketed rate-limit counters, one row per limiter ("automation", "rollback")."""
    __tablename__ = "rate_limit_state"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    daily_count: Mapped[int] = mapped_column(Integer, default=0)
    daily_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # YYYY-MM-DD (UTC)
    last_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # epoch ms
    last_trigger_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ApplicationRecordModel(Base):
    """An applied proposal being monitored by the self-healing monitor."""
    __tablename__ = "self_healing_applications"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    proposal_id: Mapped[str] = mapped_column(String(100), index=True)
    proposal_dir: Mapped[str] = mapped_column(String(255))
    changed_files: Mapped[List[str]] = mapped_column(JSON, default=list)
    backup_paths: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)

    # Metrics snapshots (PerformanceMetrics.to_dict())
    before_metrics: Mapped[Dict[str, Any]] = mapped_column(JSON)
    after_metrics: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    applied_at: Mapped[str] = mapped_column(String(50))  # ISO timestamp
    status: Mapped[str] = mapped_column(String(20), default="monitoring")  # monitoring, rolled-back
    rolled_back: Mapped[bool] = mapped_column(Boolean, default=False)
    rollback_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rolled_back_at: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class RollbackActionModel(Base):
    """Append-only log of rollbacks."""
    __tablename__ = "rollback_log"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    application_id: Mapped[str] = mapped_column(String(50), index=True)
    timestamp: Mapped[str] = mapped_column(String(50))
    reason: Mapped[str] = mapped_column(Text)
    restored_files: Mapped[List[str]] = mapped_column(JSON, default=list)
    automatic: Mapped[bool] = mapped_column(Boolean, default=False)
    triggered_by: Mapped[str] = mapped_column(String(100))
    result: Mapped[str] = mapped_column(String(20))  # success, partial, failed
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ProposalModel(Base):
    """An evolution proposal and its lifecycle status."""
    __tablename__ = "proposals"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    type: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), index=True)
    risk: Mapped[str] = mapped_column(String(10))
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    source_signal_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    updated_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rollback_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)


class LearningSignalModel(Base):
    """A learning signal detected from a trace window."""
    __tablename__ = "learning_signals"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(50), index=True)
    confidence: Mapped[float] = mapped_column(Float)
    description: Mapped[str] = mapped_column(Text)
    source_event_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    detected_at: Mapped[int] = mapped_column(BigInteger, index=True)  # epoch ms
    suggested_action: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
