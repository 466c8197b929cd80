"""
Self-Healing Monitor
====================

Watches applied proposals and rolls them back when performance degrades.

Each application backs up the files it touched before the change engine edits
them. Once enough tasks have run afterwards, before/after metrics are compared;
significant degradation leads to a rollback that restores the backups.

Automatic rollbacks are rate limited per calendar day (UTC). Manual rollbacks
always bypass the limit.

Usage:
    monitor = SelfHealingMonitor(project_dir)
    await monitor.init_async(session)

    app = await monitor.record_application("proposal-1", "proposals/p1", ["docs/guide.md"], before)
    await monitor.update_metrics(app.id, after)
    result = await monitor.evaluate_application(app.id)
    if result and result.recommendation == "rollback":
        await monitor.rollback(app.id, result.explanation)
"""

import logging
import os
import random
import shutil
import string
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from darwinforge.db.connection import DATA_DIR
from darwinforge.db.models import (
    ApplicationRecordModel,
    RateLimitStateModel,
    RollbackActionModel,
)
from darwinforge.errors import ConfigValidationError
from darwinforge.rate_limit import (
    DailyRateLimiter,
    DayBucket,
    RateLimitDecision,
    as_utc,
    to_epoch_ms,
    utc_now,
)


logger = logging.getLogger(__name__)

SELF_HEALING_DIR = "self-healing"
BACKUPS_DIR = "backups"
ROLLBACK_STATE_KEY = "rollback"

STATUS_MONITORING = "monitoring"
STATUS_ROLLED_BACK = "rolled-back"


# =============================================================================
# Errors
# =============================================================================

class SelfHealingError(Exception):
    """Base class for monitor failures. Monitor state is unchanged when raised."""


class ApplicationNotFoundError(SelfHealingError):
    def __init__(self, application_id: str):
        super().__init__(f"Application not found: {application_id}")
        self.application_id = application_id


class AlreadyRolledBackError(SelfHealingError):
    def __init__(self, application_id: str):
        super().__init__(f"Application already rolled back: {application_id}")
        self.application_id = application_id


class RollbackRateLimitedError(SelfHealingError):
    def __init__(self, reason: str):
        super().__init__(f"Rollback rate limited: {reason}")
        self.reason = reason


class BackupError(SelfHealingError):
    """A file could not be backed up; nothing was recorded."""


# =============================================================================
# Data Types
# =============================================================================

@dataclass(frozen=True)
class PerformanceMetrics:
    """Aggregate task performance over a period."""
    success_rate: float        # 0-1
    average_cost: float
    average_duration_ms: float
    task_count: int
    timestamp: str = ""        # ISO

    def to_dict(self) -> dict:
        return {
            "successRate": self.success_rate,
            "averageCost": self.average_cost,
            "averageDurationMs": self.average_duration_ms,
            "taskCount": self.task_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceMetrics":
        return cls(
            success_rate=float(data["successRate"]),
            average_cost=float(data["averageCost"]),
            average_duration_ms=float(data["averageDurationMs"]),
            task_count=int(data["taskCount"]),
            timestamp=data.get("timestamp", ""),
        )


@dataclass(frozen=True)
class DegradationThresholds:
    success_rate_drop_percent: float = 10   # percentage points
    cost_increase_percent: float = 30
    duration_increase_percent: float = 50


@dataclass(frozen=True)
class SelfHealingConfig:
    enabled: bool = True
    max_daily_rollbacks: int = 3
    monitoring_period_ms: int = 24 * 60 * 60 * 1000
    min_tasks_for_evaluation: int = 5
    thresholds: DegradationThresholds = field(default_factory=DegradationThresholds)
    backup_retention_days: int = 30
    rollback_severity_threshold: float = 50

    @classmethod
    def from_dict(cls, data: dict) -> "SelfHealingConfig":
        """
        Build a config from its JSON form, filling defaults for missing keys.

        Raises:
            ConfigValidationError: If any value is of the wrong type or negative
        """
        if not isinstance(data, dict):
            raise ConfigValidationError("selfHealing config must be an object")

        def number(source: dict, key: str, default, integer: bool = False):
            if key not in source:
                return default
            value = source[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigValidationError(f"selfHealing.{key} must be a non-negative number, got {value!r}")
            if integer and int(value) != value:
                raise ConfigValidationError(f"selfHealing.{key} must be an integer, got {value!r}")
            return int(value) if integer else float(value)

        enabled = data.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ConfigValidationError("selfHealing.enabled must be a boolean")

        thresholds_data = data.get("thresholds", {})
        if not isinstance(thresholds_data, dict):
            raise ConfigValidationError("selfHealing.thresholds must be an object")
        defaults = DegradationThresholds()
        thresholds = DegradationThresholds(
            success_rate_drop_percent=number(
                thresholds_data, "successRateDropPercent", defaults.success_rate_drop_percent),
            cost_increase_percent=number(
                thresholds_data, "costIncreasePercent", defaults.cost_increase_percent),
            duration_increase_percent=number(
                thresholds_data, "durationIncreasePercent", defaults.duration_increase_percent),
        )

        base = cls()
        return cls(
            enabled=enabled,
            max_daily_rollbacks=number(data, "maxDailyRollbacks", base.max_daily_rollbacks, integer=True),
            monitoring_period_ms=number(data, "monitoringPeriodMs", base.monitoring_period_ms, integer=True),
            min_tasks_for_evaluation=number(
                data, "minTasksForEvaluation", base.min_tasks_for_evaluation, integer=True),
            thresholds=thresholds,
            backup_retention_days=number(data, "backupRetentionDays", base.backup_retention_days, integer=True),
            rollback_severity_threshold=number(
                data, "rollbackSeverityThreshold", base.rollback_severity_threshold),
        )


@dataclass(frozen=True)
class DegradedMetric:
    name: str
    before: float
    after: float
    change_percent: float
    significant: bool = True


@dataclass(frozen=True)
class DegradationResult:
    degraded: bool
    severity: float
    degraded_metrics: tuple[DegradedMetric, ...]
    recommendation: str  # rollback, monitor, ignore
    explanation: str


@dataclass
class ApplicationRecord:
    """An applied proposal under observation."""
    id: str
    proposal_id: str
    proposal_dir: str
    changed_files: list[str]
    backup_paths: dict[str, str]
    before_metrics: PerformanceMetrics
    applied_at: str
    after_metrics: Optional[PerformanceMetrics] = None
    status: str = STATUS_MONITORING
    rolled_back: bool = False
    rollback_reason: Optional[str] = None
    rolled_back_at: Optional[str] = None


@dataclass(frozen=True)
class RollbackAction:
    id: str
    application_id: str
    timestamp: str
    reason: str
    restored_files: tuple[str, ...]
    automatic: bool
    triggered_by: str
    result: str  # success, partial, failed
    error: Optional[str] = None


@dataclass(frozen=True)
class RollbackRateLimitState:
    daily_rollback_count: int = 0
    daily_rollback_date: Optional[str] = None
    last_rollback_timestamp: Optional[int] = None  # epoch ms

    def to_bucket(self) -> DayBucket:
        return DayBucket(
            count=self.daily_rollback_count,
            day=self.daily_rollback_date,
            last_timestamp=self.last_rollback_timestamp,
        )

    @classmethod
    def from_bucket(cls, bucket: DayBucket) -> "RollbackRateLimitState":
        return cls(
            daily_rollback_count=bucket.count,
            daily_rollback_date=bucket.day,
            last_rollback_timestamp=bucket.last_timestamp,
        )


# =============================================================================
# Degradation Detection
# =============================================================================

def calculate_percent_change(before: float, after: float) -> float:
    """Relative change in percent. A zero base gives 100 if anything changed, else 0."""
    if before == 0:
        return 0.0 if after == 0 else 100.0
    return (after - before) / before * 100


def detect_degradation(
    before: PerformanceMetrics,
    after: PerformanceMetrics,
    thresholds: Optional[DegradationThresholds] = None,
    rollback_severity: float = 50,
) -> DegradationResult:
    """
    Compare before/after metrics.

    Success rate is compared in absolute percentage points; cost and duration
    by relative increase. Severity ranks the breaches (0-100):
    success rate contributes up to 50, cost and duration up to 25 each.
    """
    thresholds = thresholds or DegradationThresholds()
    metrics: list[DegradedMetric] = []

    success_change = (after.success_rate - before.success_rate) * 100
    if success_change < -thresholds.success_rate_drop_percent:
        metrics.append(DegradedMetric("successRate", before.success_rate, after.success_rate, success_change))

    cost_change = calculate_percent_change(before.average_cost, after.average_cost)
    if cost_change > thresholds.cost_increase_percent:
        metrics.append(DegradedMetric("averageCost", before.average_cost, after.average_cost, cost_change))

    duration_change = calculate_percent_change(before.average_duration_ms, after.average_duration_ms)
    if duration_change > thresholds.duration_increase_percent:
        metrics.append(DegradedMetric(
            "averageDurationMs", before.average_duration_ms, after.average_duration_ms, duration_change))

    severity = 0.0
    for metric in metrics:
        if metric.name == "successRate":
            severity += min(50.0, abs(metric.change_percent) * 5)
        else:
            severity += min(25.0, abs(metric.change_percent) / 2)
    severity = min(100.0, severity)

    degraded = bool(metrics)
    if degraded and severity >= rollback_severity:
        recommendation = "rollback"
        explanation = (
            f"Significant degradation detected (severity: {severity:g}/100). "
            "Immediate rollback recommended."
        )
    elif degraded:
        recommendation = "monitor"
        explanation = f"Minor degradation detected (severity: {severity:g}/100). Continue monitoring."
    else:
        recommendation = "ignore"
        explanation = "No significant degradation detected."

    return DegradationResult(
        degraded=degraded,
        severity=severity,
        degraded_metrics=tuple(metrics),
        recommendation=recommendation,
        explanation=explanation,
    )


# =============================================================================
# Rollback Rate Limiting
# =============================================================================

def _rollback_limiter(config: SelfHealingConfig) -> DailyRateLimiter:
    return DailyRateLimiter(
        max_per_day=config.max_daily_rollbacks,
        limit_message="Daily rollback limit reached ({max_per_day} per day)",
    )


def check_rollback_rate_limit(
    state: RollbackRateLimitState,
    config: SelfHealingConfig,
    now: Optional[datetime] = None,
) -> RateLimitDecision:
    return _rollback_limiter(config).check(state.to_bucket(), now)


def update_rollback_rate_limit_state(
    state: RollbackRateLimitState,
    now: Optional[datetime] = None,
) -> RollbackRateLimitState:
    bucket = DailyRateLimiter(max_per_day=0).advance(state.to_bucket(), now)
    return RollbackRateLimitState.from_bucket(bucket)


# =============================================================================
# File helpers
# =============================================================================

def _generate_id(now: datetime) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{to_epoch_ms(now)}-{suffix}"


def _atomic_copy(source: Path, target: Path) -> None:
    """Copy ``source`` over ``target`` so readers never see a partial file. Keeps the file mode."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    os.close(fd)
    try:
        shutil.copy2(source, tmp_name)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _parse_iso(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value))


# =============================================================================
# Monitor
# =============================================================================

class SelfHealingMonitor:
    """
    Records applications, evaluates them and performs rollbacks.

    Storage:
    - Application records: self_healing_applications table
    - Rollback log: rollback_log table (append-only)
    - Rollback counter: rate_limit_state row keyed "rollback"
    - File backups: .darwin/self-healing/backups/<application-id>/
    """

    def __init__(self, project_dir: Path, config: Optional[SelfHealingConfig] = None):
        self.project_dir = Path(project_dir)
        self.config = config or SelfHealingConfig()
        self.backups_dir = self.project_dir / DATA_DIR / SELF_HEALING_DIR / BACKUPS_DIR

        # Database session (set via init_async)
        self._db_session: Optional[AsyncSession] = None

        self._applications: dict[str, ApplicationRecord] = {}
        self._rollback_log: list[RollbackAction] = []
        self.rate_limit_state = RollbackRateLimitState()

    async def init_async(self, session: AsyncSession) -> None:
        """
        Initialize the monitor with a database session.

        Loads applications, the rollback log and the rollback counter.
        """
        self._db_session = session
        await self._load_state_async()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_applications(self) -> list[ApplicationRecord]:
        return list(self._applications.values())

    def get_application(self, application_id: str) -> Optional[ApplicationRecord]:
        return self._applications.get(application_id)

    def get_rollback_log(self) -> list[RollbackAction]:
        return list(self._rollback_log)

    def _require(self, application_id: str) -> ApplicationRecord:
        application = self._applications.get(application_id)
        if application is None:
            raise ApplicationNotFoundError(application_id)
        return application

    # =========================================================================
    # Applications
    # =========================================================================

    async def record_application(
        self,
        proposal_id: str,
        proposal_dir: str,
        file_paths: list[str],
        before_metrics: PerformanceMetrics,
        now: Optional[datetime] = None,
    ) -> ApplicationRecord:
        """
        Back up the files a proposal is about to change and start monitoring.

        Args:
            proposal_id: Id of the applied proposal
            proposal_dir: Where the proposal's artifacts live
            file_paths: Paths relative to the project root
            before_metrics: Metrics snapshot taken before the change

        Raises:
            BackupError: If any file cannot be read. No record is created
                and any partial backup is removed.
        """
        now = as_utc(now) if now else utc_now()
        application_id = _generate_id(now)
        backup_paths = self._create_backup(file_paths, application_id)

        application = ApplicationRecord(
            id=application_id,
            proposal_id=proposal_id,
            proposal_dir=proposal_dir,
            changed_files=list(file_paths),
            backup_paths=backup_paths,
            before_metrics=before_metrics,
            applied_at=now.isoformat(),
        )
        self._applications[application_id] = application
        await self._save_application_async(application)

        logger.info("Recorded application %s for proposal %s (%d file(s) backed up)",
                    application_id, proposal_id, len(backup_paths))
        return application

    def _create_backup(self, file_paths: list[str], application_id: str) -> dict[str, str]:
        backup_dir = self.backups_dir / application_id
        backup_dir.mkdir(parents=True, exist_ok=True)

        backup_paths: dict[str, str] = {}
        try:
            for index, file_path in enumerate(file_paths):
                source = self.project_dir / file_path
                safe_name = f"{index:03d}_" + file_path.replace("/", "_").replace("\\", "_")
                target = backup_dir / safe_name
                try:
                    _atomic_copy(source, target)
                except OSError as e:
                    raise BackupError(f"Cannot back up {file_path}: {e}") from e
                backup_paths[file_path] = str(target)
        except BackupError:
            shutil.rmtree(backup_dir, ignore_errors=True)
            raise

        return backup_paths

    async def update_metrics(self, application_id: str, after_metrics: PerformanceMetrics) -> ApplicationRecord:
        """Attach (or replace) the after-change metrics. Does not evaluate."""
        application = self._require(application_id)
        application.after_metrics = after_metrics
        await self._save_application_async(application)
        return application

    async def evaluate_application(self, application_id: str) -> Optional[DegradationResult]:
        """
        Compare before/after metrics for an application.

        Returns None when there are no after-metrics yet or too few tasks.
        """
        application = self._require(application_id)
        after = application.after_metrics
        if after is None or after.task_count < self.config.min_tasks_for_evaluation:
            return None

        return detect_degradation(
            application.before_metrics,
            after,
            self.config.thresholds,
            self.config.rollback_severity_threshold,
        )

    # =========================================================================
    # Rollback
    # =========================================================================

    async def rollback(
        self,
        application_id: str,
        reason: str,
        automatic: bool = False,
        triggered_by: str = "self-healing",
        now: Optional[datetime] = None,
    ) -> RollbackAction:
        """
        Restore an application's backed-up files.

        Raises:
            ApplicationNotFoundError: Unknown id
            AlreadyRolledBackError: The application was already rolled back
            RollbackRateLimitedError: Automatic rollback over the daily limit
        """
        now = as_utc(now) if now else utc_now()
        application = self._require(application_id)
        if application.rolled_back:
            raise AlreadyRolledBackError(application_id)

        if automatic:
            decision = check_rollback_rate_limit(self.rate_limit_state, self.config, now)
            if not decision.allowed:
                raise RollbackRateLimitedError(decision.reason)

        restored: list[str] = []
        errors: list[str] = []
        for file_path, backup_path in application.backup_paths.items():
            try:
                _atomic_copy(Path(backup_path), self.project_dir / file_path)
                restored.append(file_path)
            except OSError as e:
                logger.warning("Failed to restore %s: %s", file_path, e)
                errors.append(f"Failed to restore {file_path}: {e}")

        if not restored:
            result = "failed"
            errors = errors or ["No files were restored"]
        elif errors:
            result = "partial"
        else:
            result = "success"

        timestamp = now.isoformat()
        action = RollbackAction(
            id=_generate_id(now),
            application_id=application_id,
            timestamp=timestamp,
            reason=reason,
            restored_files=tuple(restored),
            automatic=automatic,
            triggered_by=triggered_by,
            result=result,
            error="; ".join(errors) if errors else None,
        )

        previous = (application.status, application.rolled_back,
                    application.rollback_reason, application.rolled_back_at)
        previous_rate_limit = self.rate_limit_state

        application.rolled_back = True
        application.rollback_reason = reason
        application.rolled_back_at = timestamp
        application.status = STATUS_ROLLED_BACK
        if automatic:
            self.rate_limit_state = update_rollback_rate_limit_state(self.rate_limit_state, now)

        try:
            await self._save_rollback_async(application, action, save_rate_limit=automatic)
        except Exception:
            # Files stay restored on disk; the record keeps its stored state.
            (application.status, application.rolled_back,
             application.rollback_reason, application.rolled_back_at) = previous
            self.rate_limit_state = previous_rate_limit
            raise

        self._rollback_log.append(action)

        logger.info("Rolled back application %s (%s, %s): %s",
                    application_id, result, "automatic" if automatic else "manual", reason)
        return action

    async def run_auto_heal(self, now: Optional[datetime] = None) -> list[RollbackAction]:
        """
        Evaluate monitored applications and roll back the degraded ones.

        Applications younger than a quarter of the monitoring period are
        skipped. Stops at the daily rollback limit.
        """
        if not self.config.enabled:
            return []

        now = as_utc(now) if now else utc_now()
        grace = timedelta(milliseconds=self.config.monitoring_period_ms / 4)
        actions = []

        for application in self.get_applications():
            if application.status != STATUS_MONITORING or application.rolled_back:
                continue
            if now - _parse_iso(application.applied_at) < grace:
                continue

            result = await self.evaluate_application(application.id)
            if result is None or result.recommendation != "rollback":
                continue

            try:
                actions.append(await self.rollback(
                    application.id, result.explanation, automatic=True, triggered_by="auto-heal", now=now,
                ))
            except RollbackRateLimitedError as e:
                logger.warning("Auto-heal stopped: %s", e)
                break

        return actions

    async def cleanup_old_backups(self, now: Optional[datetime] = None) -> int:
        """Delete backup directories of applications rolled back before the retention window."""
        now = as_utc(now) if now else utc_now()
        cutoff = now - timedelta(days=self.config.backup_retention_days)
        if not self.backups_dir.is_dir():
            return 0

        cleaned = 0
        for entry in self.backups_dir.iterdir():
            if not entry.is_dir():
                continue
            application = self._applications.get(entry.name)
            if application is None or not application.rolled_back:
                continue
            rolled_back_at = _parse_iso(application.rolled_back_at) if application.rolled_back_at else None
            if rolled_back_at is None or rolled_back_at < cutoff:
                shutil.rmtree(entry)
                cleaned += 1

        if cleaned:
            logger.info("Removed %d old backup director%s", cleaned, "y" if cleaned == 1 else "ies")
        return cleaned

    # =========================================================================
    # Async Database Methods
    # =========================================================================

    async def _load_state_async(self) -> None:
        if self._db_session is None:
            return

        result = await self._db_session.execute(select(ApplicationRecordModel))
        self._applications = {}
        for row in sorted(result.scalars().all(), key=lambda r: r.applied_at):
            self._applications[row.id] = ApplicationRecord(
                id=row.id,
                proposal_id=row.proposal_id,
                proposal_dir=row.proposal_dir,
                changed_files=list(row.changed_files or []),
                backup_paths=dict(row.backup_paths or {}),
                before_metrics=PerformanceMetrics.from_dict(row.before_metrics),
                after_metrics=PerformanceMetrics.from_dict(row.after_metrics) if row.after_metrics else None,
                applied_at=row.applied_at,
                status=row.status,
                rolled_back=row.rolled_back,
                rollback_reason=row.rollback_reason,
                rolled_back_at=row.rolled_back_at,
            )

        result = await self._db_session.execute(select(RollbackActionModel).order_by(RollbackActionModel.seq))
        self._rollback_log = [
            RollbackAction(
                id=row.id,
                application_id=row.application_id,
                timestamp=row.timestamp,
                reason=row.reason,
                restored_files=tuple(row.restored_files or []),
                automatic=row.automatic,
                triggered_by=row.triggered_by,
                result=row.result,
                error=row.error,
            )
            for row in result.scalars().all()
        ]

        row = await self._db_session.get(RateLimitStateModel, ROLLBACK_STATE_KEY)
        if row is not None:
            self.rate_limit_state = RollbackRateLimitState(
                daily_rollback_count=row.daily_count,
                daily_rollback_date=row.daily_date,
                last_rollback_timestamp=row.last_timestamp,
            )

    def _stage_application(self, application: ApplicationRecord, row: Optional[ApplicationRecordModel]) -> None:
        if row is None:
            row = ApplicationRecordModel(id=application.id)
            self._db_session.add(row)
        row.proposal_id = application.proposal_id
        row.proposal_dir = application.proposal_dir
        row.changed_files = list(application.changed_files)
        row.backup_paths = dict(application.backup_paths)
        row.before_metrics = application.before_metrics.to_dict()
        row.after_metrics = application.after_metrics.to_dict() if application.after_metrics else None
        row.applied_at = application.applied_at
        row.status = application.status
        row.rolled_back = application.rolled_back
        row.rollback_reason = application.rollback_reason
        row.rolled_back_at = application.rolled_back_at

    async def _save_application_async(self, application: ApplicationRecord) -> None:
        if self._db_session is None:
            return
        row = await self._db_session.get(ApplicationRecordModel, application.id)
        self._stage_application(application, row)
        await self._db_session.commit()

    async def _save_rollback_async(
        self,
        application: ApplicationRecord,
        action: RollbackAction,
        save_rate_limit: bool,
    ) -> None:
        """Persist the application, the log entry and (optionally) the counter in one commit."""
        if self._db_session is None:
            return

        row = await self._db_session.get(ApplicationRecordModel, application.id)
        self._stage_application(application, row)

        self._db_session.add(RollbackActionModel(
            id=action.id,
            application_id=action.application_id,
            timestamp=action.timestamp,
            reason=action.reason,
            restored_files=list(action.restored_files),
            automatic=action.automatic,
            triggered_by=action.triggered_by,
            result=action.result,
            error=action.error,
        ))

        if save_rate_limit:
            state_row = await self._db_session.get(RateLimitStateModel, ROLLBACK_STATE_KEY)
            if state_row is None:
                state_row = RateLimitStateModel(name=ROLLBACK_STATE_KEY)
                self._db_session.add(state_row)
            state_row.daily_count = self.rate_limit_state.daily_rollback_count
            state_row.daily_date = self.rate_limit_state.daily_rollback_date
            state_row.last_timestamp = self.rate_limit_state.last_rollback_timestamp

        try:
            await self._db_session.commit()
        except Exception:
            await self._db_session.rollback()
            raise


async def create_self_healing_monitor(
    project_dir: Path,
    session: Optional[AsyncSession] = None,
    config: Optional[SelfHealingConfig] = None,
) -> SelfHealingMonitor:
    """Create a monitor and load its persisted state when a session is given."""
    monitor = SelfHealingMonitor(project_dir, config)
    if session is not None:
        await monitor.init_async(session)
    return monitor
