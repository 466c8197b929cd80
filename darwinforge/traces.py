"""
Trace Events and Learning Signals
=================================

Data model for recorded agent-execution events ("traces") and the learning
signals inferred from them.

Trace events are produced by an external capture layer and are read-only here.
Learning signals are created only by the pattern detector and never mutated.

Usage:
    from darwinforge.traces import load_traces

    traces = load_traces(Path("exports/trace.jsonl"))
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from darwinforge.db.models import LearningSignalModel


logger = logging.getLogger(__name__)


class TraceParseError(ValueError):
    """Raised when a trace record is malformed."""


class TraceEventType(Enum):
    """Types of events that can be traced."""
    TOOL_ERROR = "tool_error"
    TOOL_SUCCESS = "tool_success"
    USER_CORRECTION = "user_correction"
    USER_REJECTION = "user_rejection"
    TASK_COMPLETE = "task_complete"
    TASK_ABANDONED = "task_abandoned"
    MODE_SWITCH = "mode_switch"
    CONTEXT_OVERFLOW = "context_overflow"
    API_ERROR = "api_error"
    DOOM_LOOP_DETECTED = "doom_loop_detected"
    PROPOSAL_GENERATED = "proposal_generated"
    PROPOSAL_APPLIED = "proposal_applied"
    PROPOSAL_REJECTED = "proposal_rejected"


class SignalType(Enum):
    """Types of patterns that can be detected from traces."""
    DOOM_LOOP = "doom_loop"                  # Repetitive failure pattern
    INSTRUCTION_DRIFT = "instruction_drift"  # Task losing focus
    CAPABILITY_GAP = "capability_gap"        # Missing tool or capability
    SUCCESS_PATTERN = "success_pattern"      # Successful workflow pattern
    INEFFICIENCY = "inefficiency"            # Suboptimal workflow
    USER_PREFERENCE = "user_preference"      # User behavior pattern


@dataclass(frozen=True)
class TraceEvent:
    """A single recorded fact about agent task execution."""

    id: str
    timestamp: int  # epoch ms
    type: TraceEventType
    task_id: str
    summary: str = ""
    tool_name: Optional[str] = None
    error_message: Optional[str] = None
    mode: Optional[str] = None
    model: Optional[str] = None
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to the camelCase export format."""
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "taskId": self.task_id,
            "summary": self.summary,
        }
        optional = {
            "toolName": self.tool_name,
            "errorMessage": self.error_message,
            "mode": self.mode,
            "model": self.model,
            "metadata": self.metadata,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TraceEvent":
        """Create from the camelCase export format."""
        missing = [key for key in ("id", "timestamp", "type", "taskId") if data.get(key) in (None, "")]
        if missing:
            raise TraceParseError(f"Trace event missing required fields: {', '.join(missing)}")

        try:
            event_type = TraceEventType(data["type"])
        except ValueError:
            raise TraceParseError(f"Unknown trace event type: {data['type']}") from None

        try:
            timestamp = int(data["timestamp"])
        except (TypeError, ValueError):
            raise TraceParseError(f"Invalid timestamp: {data['timestamp']!r}") from None

        return cls(
            id=str(data["id"]),
            timestamp=timestamp,
            type=event_type,
            task_id=str(data["taskId"]),
            summary=data.get("summary", ""),
            tool_name=data.get("toolName"),
            error_message=data.get("errorMessage"),
            mode=data.get("mode"),
            model=data.get("model"),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class LearningSignal:
    """A scored, evidence-linked pattern inferred from a window of trace events."""

    id: str
    type: SignalType
    confidence: float
    description: str
    source_event_ids: tuple[str, ...]
    detected_at: int  # epoch ms
    suggested_action: Optional[str] = None
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "confidence": self.confidence,
            "description": self.description,
            "sourceEventIds": list(self.source_event_ids),
            "detectedAt": self.detected_at,
            "suggestedAction": self.suggested_action,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LearningSignal":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=SignalType(data["type"]),
            confidence=float(data["confidence"]),
            description=data["description"],
            source_event_ids=tuple(data.get("sourceEventIds", [])),
            detected_at=int(data["detectedAt"]),
            suggested_action=data.get("suggestedAction"),
            context=data.get("context") or {},
        )


def parse_traces(records: Iterable[dict]) -> list[TraceEvent]:
    """
    Parse raw trace records, skipping malformed ones.

    Malformed records are logged and dropped so that a single bad line in an
    export does not block analysis of the rest.
    """
    events = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            logger.warning("Skipping trace record %d: not an object", index)
            continue
        try:
            events.append(TraceEvent.from_dict(record))
        except TraceParseError as e:
            logger.warning("Skipping trace record %d: %s", index, e)
    return events


def load_traces(path: Path) -> list[TraceEvent]:
    """
    Load trace events from a JSON array file or a JSON-lines export.

    Args:
        path: Path to the export file

    Returns:
        Parsed trace events in file order
    """
    text = Path(path).read_text(encoding="utf-8")
    stripped = text.lstrip()

    if stripped.startswith("["):
        try:
            records = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise TraceParseError(f"Invalid trace export {path}: {e}") from e
        return parse_traces(records)

    records = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable line %d in %s", line_no, path)
    return parse_traces(records)


class SignalStore:
    """
    Persists detected learning signals.

    Storage: signals are written to the learning_signals table.
    """

    def __init__(self, session: AsyncSession):
        self._db_session = session

    async def save_all(self, signals: Iterable[LearningSignal]) -> int:
        """Save signals, skipping ids already stored. Returns the number added."""
        added = 0
        for signal in signals:
            existing = await self._db_session.get(LearningSignalModel, signal.id)
            if existing is not None:
                continue
            self._db_session.add(LearningSignalModel(
                id=signal.id,
                type=signal.type.value,
                confidence=signal.confidence,
                description=signal.description,
                source_event_ids=list(signal.source_event_ids),
                detected_at=signal.detected_at,
                suggested_action=signal.suggested_action,
                context=signal.context,
            ))
            added += 1
        await self._db_session.commit()
        return added

    async def list_recent(self, limit: int = 50, signal_type: Optional[SignalType] = None) -> list[LearningSignal]:
        """Get the most recently detected signals, newest first."""
        query = select(LearningSignalModel).order_by(LearningSignalModel.detected_at.desc())
        if signal_type is not None:
            query = query.where(LearningSignalModel.type == signal_type.value)
        result = await self._db_session.execute(query.limit(limit))
        return [
            LearningSignal(
                id=row.id,
                type=SignalType(row.type),
                confidence=row.confidence,
                description=row.description,
                source_event_ids=tuple(row.source_event_ids or []),
                detected_at=row.detected_at,
                suggested_action=row.suggested_action,
                context=row.context or {},
            )
            for row in result.scalars().all()
        ]


def coerce_events(traces: Iterable[Any]) -> list[TraceEvent]:
    """Accept TraceEvent instances or raw export dicts."""
    events = []
    for trace in traces:
        if isinstance(trace, TraceEvent):
            events.append(trace)
        elif isinstance(trace, dict):
            try:
                events.append(TraceEvent.from_dict(trace))
            except TraceParseError:
                continue
    return events
