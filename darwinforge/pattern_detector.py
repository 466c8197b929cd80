"""
Pattern Detection Module
========================

Analyzes a window of trace events and turns recurring patterns into scored
learning signals:

- Doom loops (the same tool failing repeatedly within a task)
- Capability gaps (repeated rejections or characteristic error text)
- Feedback patterns (high rejection ratio within a task)
- Instruction drift (frequent mode switches, alternating success/failure)

Usage:
    from darwinforge.pattern_detector import PatternDetector

    detector = PatternDetector(darwin_config)
    signals = detector.analyze_traces(traces)

    if detector.is_doom_loop(traces, "apply_diff"):
        ...
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from darwinforge.config import ConfigValidationError, DarwinConfig
from darwinforge.traces import (
    LearningSignal,
    SignalType,
    TraceEvent,
    TraceEventType,
    coerce_events,
)


logger = logging.getLogger(__name__)

MIN_DOOM_LOOP_THRESHOLD = 2
MAX_DOOM_LOOP_THRESHOLD = 10

# Error text that suggests a missing tool or a misconfiguration
CAPABILITY_KEYWORDS = (
    "not found",
    "unavailable",
    "permission denied",
    "access denied",
    "not supported",
)

UNKNOWN_ERROR = "Unknown error"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PatternDetectorConfig:
    """Configuration for pattern detection."""

    doom_loop_threshold: int = 3          # Failures before a doom loop is reported
    analysis_window_ms: int = 5 * 60 * 1000
    min_confidence: float = 0.5

    def validate(self) -> None:
        if not MIN_DOOM_LOOP_THRESHOLD <= self.doom_loop_threshold <= MAX_DOOM_LOOP_THRESHOLD:
            raise ConfigValidationError(
                f"doom_loop_threshold must be between {MIN_DOOM_LOOP_THRESHOLD} "
                f"and {MAX_DOOM_LOOP_THRESHOLD}, got {self.doom_loop_threshold}"
            )
        if self.analysis_window_ms <= 0:
            raise ConfigValidationError("analysis_window_ms must be positive")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigValidationError("min_confidence must be between 0 and 1")


class PatternDetector:
    """
    Detects failure and drift patterns in trace events.

    All detectors are pure: they read the events they are given and build new
    signals. Events lacking the fields a detector needs are skipped.
    """

    def __init__(
        self,
        darwin_config: Optional[DarwinConfig] = None,
        config: Optional[PatternDetectorConfig] = None,
    ):
        self.darwin_config = darwin_config
        self.config = self._resolve_config(config or PatternDetectorConfig(), darwin_config)

    @staticmethod
    def _resolve_config(
        config: PatternDetectorConfig,
        darwin_config: Optional[DarwinConfig],
    ) -> PatternDetectorConfig:
        # The darwin config's threshold wins when present
        if darwin_config is not None and darwin_config.doom_loop_threshold:
            config = replace(config, doom_loop_threshold=darwin_config.doom_loop_threshold)
        config.validate()
        return config

    def update_config(
        self,
        darwin_config: Optional[DarwinConfig] = None,
        **overrides,
    ) -> None:
        """Update configuration, keeping current values for anything not given."""
        if darwin_config is not None:
            self.darwin_config = darwin_config
        self.config = self._resolve_config(replace(self.config, **overrides), self.darwin_config)

    # =========================================================================
    # Full analysis
    # =========================================================================

    def analyze_traces(
        self,
        traces: Iterable[TraceEvent],
        now_ms: Optional[int] = None,
    ) -> list[LearningSignal]:
        """
        Analyze traces and detect all patterns.

        Args:
            traces: Trace events (or raw export dicts)
            now_ms: Current time in epoch ms (defaults to wall clock)

        Returns:
            Signals with confidence >= min_confidence, in detector order
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        cutoff = now_ms - self.config.analysis_window_ms
        recent = [t for t in coerce_events(traces) if t.timestamp >= cutoff]

        signals: list[LearningSignal] = []
        signals.extend(self.detect_doom_loops(recent, now_ms))
        signals.extend(self.detect_capability_gaps(recent, now_ms))
        signals.extend(self.detect_feedback_patterns(recent, now_ms))
        signals.extend(self.detect_instruction_drift(recent, now_ms))

        kept = [s for s in signals if s.confidence >= self.config.min_confidence]
        logger.debug(
            "Analyzed %d trace(s) in window: %d signal(s) detected, %d kept",
            len(recent), len(signals), len(kept),
        )
        return kept

    # =========================================================================
    # Detectors
    # =========================================================================

    def detect_doom_loops(
        self,
        traces: list[TraceEvent],
        now_ms: Optional[int] = None,
    ) -> list[LearningSignal]:
        """
        Detect doom loops: the same tool failing repeatedly within one task.

        Confidence blends error-message similarity (40%), time proximity of
        the failures (30%) and how far the count exceeds the threshold (30%).
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        threshold = self.config.doom_loop_threshold

        groups: dict[tuple[str, str], list[TraceEvent]] = {}
        for trace in traces:
            if trace.type is TraceEventType.TOOL_ERROR and trace.tool_name:
                groups.setdefault((trace.task_id, trace.tool_name), []).append(trace)

        signals = []
        for (task_id, tool_name), events in groups.items():
            count = len(events)
            if count < threshold:
                continue

            messages = [e.error_message or UNKNOWN_ERROR for e in events]
            error_similarity = self.calculate_error_similarity(messages)
            time_proximity = self.calculate_time_proximity([e.timestamp for e in events])
            failure_ratio = min(count / threshold, 2) / 2

            confidence = error_similarity * 0.4 + time_proximity * 0.3 + failure_ratio * 0.3
            error_pattern = self.find_most_common_error(messages)

            signals.append(LearningSignal(
                id=f"doom_loop_{task_id}_{tool_name}_{now_ms}",
                type=SignalType.DOOM_LOOP,
                confidence=confidence,
                description=f"Doom loop detected: {tool_name} failed {count} times with similar errors",
                source_event_ids=tuple(e.id for e in events),
                detected_at=now_ms,
                suggested_action=(
                    f"Consider alternative approach for {tool_name}. Error pattern: {error_pattern}"
                ),
                context={
                    "toolName": tool_name,
                    "failureCount": count,
                    "errorPattern": error_pattern,
                    "errorMessages": messages,
                    "taskId": task_id,
                },
            ))

        return signals

    def detect_capability_gaps(
        self,
        traces: list[TraceEvent],
        now_ms: Optional[int] = None,
    ) -> list[LearningSignal]:
        """Detect tools that are repeatedly rejected or errors that point at missing capabilities."""
        now_ms = _now_ms() if now_ms is None else now_ms
        signals = []

        # Repeated rejections of the same tool
        rejections: dict[str, list[TraceEvent]] = {}
        for trace in traces:
            if trace.type is TraceEventType.USER_REJECTION and trace.tool_name:
                rejections.setdefault(trace.tool_name, []).append(trace)

        for tool_name, events in rejections.items():
            count = len(events)
            if count < 2:
                continue
            signals.append(LearningSignal(
                id=f"capability_gap_{tool_name}_{now_ms}",
                type=SignalType.CAPABILITY_GAP,
                confidence=min(count / 5, 1) * 0.8,
                description=f"Tool {tool_name} was rejected {count} times, suggesting a capability gap",
                source_event_ids=tuple(e.id for e in events),
                detected_at=now_ms,
                suggested_action=(
                    f"Tool {tool_name} frequently rejected. "
                    "Consider improving usage or providing better context."
                ),
                context={
                    "toolName": tool_name,
                    "capability": tool_name,
                    "rejectionCount": count,
                    "affectedTasks": _unique(e.task_id for e in events),
                },
            ))

        # Capability-related error text, first matching keyword per message
        by_keyword: dict[str, list[TraceEvent]] = {}
        for trace in traces:
            if trace.type is not TraceEventType.TOOL_ERROR or not trace.error_message:
                continue
            lowered = trace.error_message.lower()
            keyword = next((k for k in CAPABILITY_KEYWORDS if k in lowered), None)
            if keyword is not None:
                by_keyword.setdefault(keyword, []).append(trace)

        for keyword, events in by_keyword.items():
            count = len(events)
            if count < 2:
                continue
            signals.append(LearningSignal(
                id=f"capability_gap_error_{keyword.replace(' ', '_')}_{now_ms}",
                type=SignalType.CAPABILITY_GAP,
                confidence=min(count / 5, 0.9),
                description=(
                    f'Frequent "{keyword}" errors ({count} times) suggest missing '
                    "capability or misconfiguration"
                ),
                source_event_ids=tuple(e.id for e in events),
                detected_at=now_ms,
                suggested_action=f'Frequent "{keyword}" errors suggest missing capability or misconfiguration.',
                context={
                    "errorPattern": keyword,
                    "capability": keyword,
                    "errorCount": count,
                    "affectedTools": _unique(e.tool_name for e in events if e.tool_name),
                    "affectedTasks": _unique(e.task_id for e in events),
                },
            ))

        return signals

    def detect_feedback_patterns(
        self,
        traces: list[TraceEvent],
        now_ms: Optional[int] = None,
    ) -> list[LearningSignal]:
        """Detect tasks where user feedback is dominated by rejections."""
        now_ms = _now_ms() if now_ms is None else now_ms
        feedback_types = (TraceEventType.USER_CORRECTION, TraceEventType.USER_REJECTION)

        per_task: dict[str, list[TraceEvent]] = {}
        for trace in traces:
            if trace.type in feedback_types:
                per_task.setdefault(trace.task_id, []).append(trace)

        signals = []
        for task_id, events in per_task.items():
            total = len(events)
            if total < 3:
                continue

            rejection_count = sum(1 for e in events if e.type is TraceEventType.USER_REJECTION)
            correction_count = total - rejection_count
            rejection_ratio = rejection_count / total
            if rejection_ratio <= 0.5:
                continue

            percent = round(rejection_ratio * 100)
            signals.append(LearningSignal(
                id=f"feedback_pattern_{task_id}_{now_ms}",
                type=SignalType.INSTRUCTION_DRIFT,
                confidence=rejection_ratio,
                description=f"High rejection rate ({percent}%) in task suggests goals may need clarification",
                source_event_ids=tuple(e.id for e in events),
                detected_at=now_ms,
                suggested_action=f"High rejection rate ({percent}%) suggests task goals may need clarification.",
                context={
                    "taskId": task_id,
                    "totalFeedback": total,
                    "correctionCount": correction_count,
                    "rejectionCount": rejection_count,
                    "rejectionRatio": rejection_ratio,
                },
            ))

        return signals

    def detect_instruction_drift(
        self,
        traces: list[TraceEvent],
        now_ms: Optional[int] = None,
    ) -> list[LearningSignal]:
        """Detect tasks that switch modes often or flip between success and failure on a tool."""
        now_ms = _now_ms() if now_ms is None else now_ms

        per_task: dict[str, list[TraceEvent]] = {}
        for trace in traces:
            per_task.setdefault(trace.task_id, []).append(trace)

        signals = []
        for task_id, events in per_task.items():
            mode_switches = [e for e in events if e.type is TraceEventType.MODE_SWITCH]
            if len(mode_switches) >= 3:
                count = len(mode_switches)
                signals.append(LearningSignal(
                    id=f"instruction_drift_modes_{task_id}_{now_ms}",
                    type=SignalType.INSTRUCTION_DRIFT,
                    confidence=min(count / 5, 0.8),
                    description=f"Frequent mode switches ({count}) may indicate task scope issues",
                    source_event_ids=tuple(e.id for e in mode_switches),
                    detected_at=now_ms,
                    suggested_action=f"Frequent mode switches ({count}) may indicate task scope issues.",
                    context={
                        "taskId": task_id,
                        "modeSwitchCount": count,
                        "modes": [e.mode for e in mode_switches if e.mode],
                    },
                ))

            sequences: dict[str, list[TraceEvent]] = {}
            for event in sorted(events, key=lambda e: e.timestamp):
                if event.type in (TraceEventType.TOOL_SUCCESS, TraceEventType.TOOL_ERROR) and event.tool_name:
                    sequences.setdefault(event.tool_name, []).append(event)

            for tool_name, sequence in sequences.items():
                statuses = ["success" if e.type is TraceEventType.TOOL_SUCCESS else "error" for e in sequence]
                flips = sum(1 for prev, cur in zip(statuses, statuses[1:]) if prev != cur)
                alternation_ratio = flips / max(len(statuses) - 1, 1)

                if len(statuses) >= 4 and alternation_ratio > 0.7:
                    signals.append(LearningSignal(
                        id=f"instruction_drift_alternating_{task_id}_{tool_name}_{now_ms}",
                        type=SignalType.INSTRUCTION_DRIFT,
                        confidence=alternation_ratio * 0.7,
                        description=(
                            f"Unstable pattern detected for {tool_name}: alternating "
                            "success/failure suggests incorrect approach"
                        ),
                        source_event_ids=tuple(e.id for e in sequence),
                        detected_at=now_ms,
                        suggested_action=(
                            f"Unstable pattern detected for {tool_name}. "
                            "Task may be approaching problem incorrectly."
                        ),
                        context={
                            "taskId": task_id,
                            "toolName": tool_name,
                            "sequence": statuses,
                            "alternationRatio": alternation_ratio,
                        },
                    ))

        return signals

    # =========================================================================
    # Quick checks
    # =========================================================================

    def get_doom_loop_count(
        self,
        traces: Iterable[TraceEvent],
        tool_name: str,
        now_ms: Optional[int] = None,
    ) -> int:
        """Count tool errors for one tool inside the analysis window."""
        now_ms = _now_ms() if now_ms is None else now_ms
        cutoff = now_ms - self.config.analysis_window_ms
        return sum(
            1 for t in coerce_events(traces)
            if t.type is TraceEventType.TOOL_ERROR and t.tool_name == tool_name and t.timestamp >= cutoff
        )

    def is_doom_loop(
        self,
        traces: Iterable[TraceEvent],
        tool_name: str,
        now_ms: Optional[int] = None,
    ) -> bool:
        """True if the tool's windowed error count reaches the doom-loop threshold."""
        return self.get_doom_loop_count(traces, tool_name, now_ms) >= self.config.doom_loop_threshold

    # =========================================================================
    # Scoring helpers
    # =========================================================================

    @staticmethod
    def calculate_error_similarity(errors: list[str]) -> float:
        """
        Similarity of error messages, 0-1 where 1 is identical.

        Average of the shared case-folded prefix (relative to the shortest
        message) and the share of words present in every message.
        """
        if len(errors) < 2:
            return 1.0

        normalized = [e.lower().strip() for e in errors]
        min_length = min(len(e) for e in normalized)

        common_chars = 0
        for i in range(min_length):
            char = normalized[0][i]
            if all(e[i] == char for e in normalized):
                common_chars += 1
            else:
                break

        word_sets = [set(e.split()) for e in normalized]
        all_words = set().union(*word_sets)
        common_words = set.intersection(*word_sets) if word_sets else set()

        prefix_score = common_chars / min_length if min_length else 0.0
        word_score = len(common_words) / len(all_words) if all_words else 0.0

        return (prefix_score + word_score) / 2

    def calculate_time_proximity(self, timestamps: list[int]) -> float:
        """Score 0-1 where 1 means the events happened back to back."""
        if len(timestamps) < 2:
            return 1.0

        ordered = sorted(timestamps)
        gaps = [b - a for a, b in zip(ordered, ordered[1:])]
        avg_gap = sum(gaps) / len(gaps)
        max_gap = self.config.analysis_window_ms / 2

        return max(0.0, 1 - avg_gap / max_gap)

    @staticmethod
    def find_most_common_error(errors: list[str]) -> str:
        """Most frequent exact error string; earliest wins ties."""
        if not errors:
            return UNKNOWN_ERROR
        return Counter(errors).most_common(1)[0][0]


def _unique(values: Iterable[str]) -> list[str]:
    """Distinct values in first-seen order."""
    return list(dict.fromkeys(values))
