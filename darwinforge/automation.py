"""
Automation Gate
===============

Decides, under a configurable automation level, whether the evolution pipeline
may run on its own and whether a proposal's changes may be applied without a
human in the loop.

Automation levels:
- MANUAL (0): Never triggers automatically
- AUTO_TRIGGER (1): Triggers analysis on failure or high cost
- AUTO_APPLY_LOW_RISK (2): Also applies changes in allowed low-risk categories
- FULL_CLOSED_LOOP (3): Same gates as level 2, for fully closed loops

Decision functions are pure. ``AutomationGate`` wraps them with the persisted
rate-limit state.

Usage:
    from darwinforge.automation import AutomationGate, TokenUsage

    gate = AutomationGate(config, AutomationStateStore(session))
    result = await gate.begin_run(TokenUsage(total_cost=150.0))
    if result.triggered and not result.rate_limited:
        ...
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from darwinforge.db.models import RateLimitStateModel
from darwinforge.errors import ConfigValidationError
from darwinforge.rate_limit import (
    DailyRateLimiter,
    DayBucket,
    RateLimitDecision,
    utc_now,
)


logger = logging.getLogger(__name__)

AUTOMATION_STATE_KEY = "automation"

FAILURE_INDICATORS = ("failed", "error", "could not complete")


class AutomationLevel(IntEnum):
    """How much the pipeline may do without a human."""
    MANUAL = 0
    AUTO_TRIGGER = 1
    AUTO_APPLY_LOW_RISK = 2
    FULL_CLOSED_LOOP = 3


class AutoApplyCategory(Enum):
    """Change categories that may be auto-applied when allowed by config."""
    MODE_MAP = "mode-map"
    DOCS = "docs"
    MEMORY = "memory"
    RUBRIC = "rubric"


class TriggerReason(Enum):
    NONE = "none"
    FAILURE = "failure"
    HIGH_COST = "high_cost"


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class TriggerConfig:
    failure_rate: float = 0.3
    cost_threshold: float = 100.0  # 0 disables cost-based triggering
    cooldown: int = 3600           # seconds between automated runs


@dataclass(frozen=True)
class SafetyConfig:
    max_daily_runs: int = 5
    auto_apply_types: frozenset[AutoApplyCategory] = frozenset(
        {AutoApplyCategory.MODE_MAP, AutoApplyCategory.DOCS}
    )


def _number(value: Any, name: str, minimum: float = 0, maximum: Optional[float] = None,
            integer: bool = False) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"{name} must be a number, got {value!r}")
    if integer and int(value) != value:
        raise ConfigValidationError(f"{name} must be an integer, got {value!r}")
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigValidationError(f"{name} must be {bounds}, got {value!r}")
    return int(value) if integer else float(value)


@dataclass(frozen=True)
class AutomationConfig:
    """Automation policy: level, trigger thresholds and safety limits."""

    level: AutomationLevel = AutomationLevel.MANUAL
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)

    def to_dict(self) -> dict:
        return {
            "level": int(self.level),
            "triggers": {
                "failureRate": self.triggers.failure_rate,
                "costThreshold": self.triggers.cost_threshold,
                "cooldown": self.triggers.cooldown,
            },
            "safety": {
                "maxDailyRuns": self.safety.max_daily_runs,
                "autoApplyTypes": sorted(c.value for c in self.safety.auto_apply_types),
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AutomationConfig":
        """
        Build a config from its JSON form, filling defaults for missing keys.

        Raises:
            ConfigValidationError: If any value is of the wrong type or out of range
        """
        if not isinstance(data, dict):
            raise ConfigValidationError("automation config must be an object")

        defaults = cls()
        level = defaults.level
        if "level" in data:
            raw = data["level"]
            try:
                level = AutomationLevel(_number(raw, "level", 0, 3, integer=True))
            except ValueError as e:
                raise ConfigValidationError(str(e)) from e

        triggers_data = data.get("triggers", {})
        safety_data = data.get("safety", {})
        if not isinstance(triggers_data, dict) or not isinstance(safety_data, dict):
            raise ConfigValidationError("triggers and safety must be objects")

        triggers = defaults.triggers
        if "failureRate" in triggers_data:
            triggers = replace(triggers, failure_rate=_number(
                triggers_data["failureRate"], "triggers.failureRate", 0, 1))
        if "costThreshold" in triggers_data:
            triggers = replace(triggers, cost_threshold=_number(
                triggers_data["costThreshold"], "triggers.costThreshold"))
        if "cooldown" in triggers_data:
            triggers = replace(triggers, cooldown=_number(
                triggers_data["cooldown"], "triggers.cooldown", integer=True))

        safety = defaults.safety
        if "maxDailyRuns" in safety_data:
            safety = replace(safety, max_daily_runs=_number(
                safety_data["maxDailyRuns"], "safety.maxDailyRuns", integer=True))
        if "autoApplyTypes" in safety_data:
            raw_types = safety_data["autoApplyTypes"]
            if not isinstance(raw_types, list):
                raise ConfigValidationError("safety.autoApplyTypes must be a list")
            try:
                types = frozenset(AutoApplyCategory(t) for t in raw_types)
            except ValueError as e:
                raise ConfigValidationError(f"safety.autoApplyTypes: {e}") from e
            safety = replace(safety, auto_apply_types=types)

        return cls(level=level, triggers=triggers, safety=safety)


# =============================================================================
# Trigger evaluation
# =============================================================================

@dataclass(frozen=True)
class TokenUsage:
    total_cost: float = 0.0
    total_tokens_in: int = 0
    total_tokens_out: int = 0


@dataclass(frozen=True)
class HistoryItem:
    """The finished task whose outcome may trigger a run."""
    task: str = ""
    id: Optional[str] = None


@dataclass(frozen=True)
class TriggerEvaluationResult:
    should_trigger: bool
    reason: TriggerReason
    details: Optional[str] = None


def evaluate_trigger_conditions(
    config: AutomationConfig,
    token_usage: TokenUsage,
    history_item: Optional[HistoryItem] = None,
) -> TriggerEvaluationResult:
    """
    Decide whether a finished task should trigger the evolution pipeline.

    A failure indicator in the task text wins over the cost check.
    """
    if config.level == AutomationLevel.MANUAL:
        return TriggerEvaluationResult(should_trigger=False, reason=TriggerReason.NONE)

    if history_item is not None:
        task_text = (history_item.task or "").lower()
        if any(indicator in task_text for indicator in FAILURE_INDICATORS):
            return TriggerEvaluationResult(
                should_trigger=True,
                reason=TriggerReason.FAILURE,
                details="Task appears to have failed or encountered errors",
            )

    threshold = config.triggers.cost_threshold
    if threshold > 0 and token_usage.total_cost >= threshold:
        return TriggerEvaluationResult(
            should_trigger=True,
            reason=TriggerReason.HIGH_COST,
            details=f"Task cost (${token_usage.total_cost:.2f}) exceeded threshold (${threshold:.2f})",
        )

    return TriggerEvaluationResult(should_trigger=False, reason=TriggerReason.NONE)


# =============================================================================
# Rate limiting
# =============================================================================

@dataclass(frozen=True)
class RateLimitState:
    """Persisted automation run counters."""
    last_run_timestamp: Optional[int] = None  # epoch ms
    daily_run_count: int = 0
    daily_run_date: Optional[str] = None      # YYYY-MM-DD (UTC)
    last_trigger_reason: Optional[TriggerReason] = None

    def to_bucket(self) -> DayBucket:
        return DayBucket(
            count=self.daily_run_count,
            day=self.daily_run_date,
            last_timestamp=self.last_run_timestamp,
        )

    def to_dict(self) -> dict:
        return {
            "lastRunTimestamp": self.last_run_timestamp,
            "dailyRunCount": self.daily_run_count,
            "dailyRunDate": self.daily_run_date,
            "lastTriggerReason": self.last_trigger_reason.value if self.last_trigger_reason else None,
        }


def _run_limiter(config: AutomationConfig) -> DailyRateLimiter:
    return DailyRateLimiter(
        max_per_day=config.safety.max_daily_runs,
        cooldown_seconds=config.triggers.cooldown,
        limit_message="Daily limit reached ({max_per_day} runs per day)",
    )


def check_rate_limits(
    config: AutomationConfig,
    state: RateLimitState,
    now: Optional[datetime] = None,
) -> RateLimitDecision:
    """Check the daily cap and cooldown. Does not modify ``state``."""
    return _run_limiter(config).check(state.to_bucket(), now)


def update_rate_limit_state(
    state: RateLimitState,
    reason: TriggerReason,
    now: Optional[datetime] = None,
) -> RateLimitState:
    """Record one automated run and return the new state."""
    bucket = DailyRateLimiter(max_per_day=0).advance(state.to_bucket(), now or utc_now())
    return RateLimitState(
        last_run_timestamp=bucket.last_timestamp,
        daily_run_count=bucket.count,
        daily_run_date=bucket.day,
        last_trigger_reason=reason,
    )


# =============================================================================
# Auto-apply safety
# =============================================================================

@dataclass(frozen=True)
class ProposalChange:
    path: str
    change_type: str = "modify"  # create, modify, delete
    category: Optional[AutoApplyCategory] = None


@dataclass(frozen=True)
class AutoApplyEvaluation:
    can_auto_apply: bool
    reason: str
    safe_changes: tuple[ProposalChange, ...] = ()
    unsafe_changes: tuple[ProposalChange, ...] = ()


ALWAYS_REQUIRE_APPROVAL_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\.darwin/evolution/council\.ya?ml$",
    r"\.darwin/evolution/config\.ya?ml$",
    r"\.darwin/config\.json$",
    r"\.darwin/rules/.*\.md$",
    r"(^|/)package\.json$",
    r"(^|/)pnpm-lock\.yaml$",
    r"(^|/)pyproject\.toml$",
    r"(^|/)poetry\.lock$",
    r"(^|/)requirements[^/]*\.txt$",
    r"(^|/)\.github/",
    r"(^|/)\.circleci/",
))


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def requires_human_approval(path: str) -> bool:
    """True for files that always need a human, whatever the automation level."""
    normalized = _normalize_path(path)
    return any(pattern.search(normalized) for pattern in ALWAYS_REQUIRE_APPROVAL_PATTERNS)


def is_safe_to_auto_apply(category: AutoApplyCategory, config: AutomationConfig) -> bool:
    if config.level < AutomationLevel.AUTO_APPLY_LOW_RISK:
        return False
    return category in config.safety.auto_apply_types


def infer_category_from_path(path: str) -> Optional[AutoApplyCategory]:
    """Classify a changed file into an auto-apply category, or None."""
    normalized = _normalize_path(path).lower()
    basename = normalized.rsplit("/", 1)[-1]

    if "mode-map" in normalized or "modemap" in normalized:
        return AutoApplyCategory.MODE_MAP
    if normalized.startswith("docs/") or "/docs/" in normalized or basename.startswith(("readme", "changelog")):
        return AutoApplyCategory.DOCS
    if ".darwin/memory" in normalized:
        return AutoApplyCategory.MEMORY
    if ".darwin/rubrics" in normalized or "rubric" in normalized:
        return AutoApplyCategory.RUBRIC
    return None


def evaluate_auto_apply(
    changes: Iterable[ProposalChange],
    config: AutomationConfig,
) -> AutoApplyEvaluation:
    """
    Partition changes into those that may be applied automatically and those
    that need manual approval.

    Auto-apply is allowed only when there is at least one change and every
    change is safe.
    """
    changes = tuple(changes)

    if config.level < AutomationLevel.AUTO_APPLY_LOW_RISK:
        return AutoApplyEvaluation(
            can_auto_apply=False,
            reason="Automation level does not support auto-apply",
            unsafe_changes=changes,
        )

    safe: list[ProposalChange] = []
    unsafe: list[ProposalChange] = []
    for change in changes:
        category = change.category or infer_category_from_path(change.path)
        if (
            category is not None
            and not requires_human_approval(change.path)
            and is_safe_to_auto_apply(category, config)
        ):
            safe.append(replace(change, category=category))
        else:
            unsafe.append(change)

    if unsafe:
        paths = ", ".join(c.path for c in unsafe)
        reason = f"{len(unsafe)} change(s) require manual approval: {paths}"
    elif safe:
        reason = f"All {len(safe)} change(s) are safe to auto-apply"
    else:
        reason = "No changes to apply"

    return AutoApplyEvaluation(
        can_auto_apply=bool(safe) and not unsafe,
        reason=reason,
        safe_changes=tuple(safe),
        unsafe_changes=tuple(unsafe),
    )


# =============================================================================
# Run summaries and structured log lines
# =============================================================================

@dataclass
class AutoApplyResult:
    applied: bool
    applied_changes: list[ProposalChange] = field(default_factory=list)
    skipped_changes: list[ProposalChange] = field(default_factory=list)


@dataclass
class OrchestrationResult:
    """Summary of one automated pipeline run."""
    triggered: bool = False
    reason: TriggerReason = TriggerReason.NONE
    details: Optional[str] = None
    rate_limited: bool = False
    rate_limit_reason: Optional[str] = None
    trace_exported: bool = False
    trace_path: Optional[str] = None
    council_ran: bool = False
    reports_dir: Optional[str] = None
    proposal_generated: bool = False
    proposal_dir: Optional[str] = None
    auto_applied: bool = False
    auto_apply_result: Optional[AutoApplyResult] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value
        if self.auto_apply_result is not None:
            for key in ("applied_changes", "skipped_changes"):
                for change in data["auto_apply_result"][key]:
                    if change["category"] is not None:
                        change["category"] = change["category"].value
        return data


def create_orchestration_result(**overrides) -> OrchestrationResult:
    """Build a run summary with everything off, then apply overrides."""
    return OrchestrationResult(**overrides)


@dataclass(frozen=True)
class AutomationLogEntry:
    timestamp: str
    event: str
    phase: str  # start, end, error
    data: Optional[dict] = None


LOG_PHASES = ("start", "end", "error")


def create_log_entry(event: str, phase: str, data: Optional[dict] = None) -> AutomationLogEntry:
    if phase not in LOG_PHASES:
        raise ValueError(f"phase must be one of {', '.join(LOG_PHASES)}, got {phase!r}")
    return AutomationLogEntry(
        timestamp=utc_now().isoformat(),
        event=event,
        phase=phase,
        data=data,
    )


def format_log_entry(entry: AutomationLogEntry) -> str:
    """Render a log entry as a single JSON line."""
    payload = {"timestamp": entry.timestamp, "event": entry.event, "phase": entry.phase}
    if entry.data is not None:
        payload["data"] = entry.data
    return json.dumps(payload, default=str)


# =============================================================================
# Persisted gate
# =============================================================================

class AutomationStateStore:
    """
    Loads and saves the automation rate-limit state.

    Storage: a single row keyed "automation" in the rate_limit_state table.
    """

    def __init__(self, session: AsyncSession, key: str = AUTOMATION_STATE_KEY):
        self._db_session = session
        self.key = key

    async def load(self) -> RateLimitState:
        row = await self._db_session.get(RateLimitStateModel, self.key)
        if row is None:
            return RateLimitState()
        return RateLimitState(
            last_run_timestamp=row.last_timestamp,
            daily_run_count=row.daily_count,
            daily_run_date=row.daily_date,
            last_trigger_reason=TriggerReason(row.last_trigger_reason) if row.last_trigger_reason else None,
        )

    async def save(self, state: RateLimitState) -> None:
        row = await self._db_session.get(RateLimitStateModel, self.key)
        if row is None:
            row = RateLimitStateModel(name=self.key)
            self._db_session.add(row)
        row.daily_count = state.daily_run_count
        row.daily_date = state.daily_run_date
        row.last_timestamp = state.last_run_timestamp
        row.last_trigger_reason = state.last_trigger_reason.value if state.last_trigger_reason else None
        try:
            await self._db_session.commit()
        except Exception:
            await self._db_session.rollback()
            raise


class AutomationGate:
    """
    Trigger and rate-limit gate with persisted state.

    Without a store the state lives in memory for the lifetime of the gate.
    """

    def __init__(self, config: Optional[AutomationConfig] = None, store: Optional[AutomationStateStore] = None):
        self.config = config or AutomationConfig()
        self.store = store
        self.state = RateLimitState()
        self._loaded = store is None

    async def load_state(self) -> RateLimitState:
        if self.store is not None:
            self.state = await self.store.load()
        self._loaded = True
        return self.state

    def evaluate_changes(self, changes: Iterable[ProposalChange]) -> AutoApplyEvaluation:
        return evaluate_auto_apply(changes, self.config)

    async def begin_run(
        self,
        token_usage: TokenUsage,
        history_item: Optional[HistoryItem] = None,
        now: Optional[datetime] = None,
    ) -> OrchestrationResult:
        """
        Evaluate whether an automated run may start now.

        The rate-limit state advances only when the run is both triggered and
        allowed.
        """
        now = now or utc_now()
        if not self._loaded:
            await self.load_state()

        logger.info(format_log_entry(create_log_entry("automation.begin_run", "start", {
            "level": int(self.config.level),
            "totalCost": token_usage.total_cost,
        })))

        trigger = evaluate_trigger_conditions(self.config, token_usage, history_item)
        result = create_orchestration_result(
            triggered=trigger.should_trigger,
            reason=trigger.reason,
            details=trigger.details,
        )

        if trigger.should_trigger:
            decision = check_rate_limits(self.config, self.state, now)
            if decision.allowed:
                new_state = update_rate_limit_state(self.state, trigger.reason, now)
                if self.store is not None:
                    await self.store.save(new_state)
                self.state = new_state
            else:
                result.rate_limited = True
                result.rate_limit_reason = decision.reason

        logger.info(format_log_entry(create_log_entry("automation.begin_run", "end", {
            "triggered": result.triggered,
            "reason": result.reason.value,
            "rateLimited": result.rate_limited,
            "rateLimitReason": result.rate_limit_reason,
        })))
        return result
