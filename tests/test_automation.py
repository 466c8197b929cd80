"""
Tests for Automation Gate Module
================================

Tests for trigger evaluation, run rate limits, auto-apply safety and the
persisted AutomationGate.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from darwinforge.automation import (
    AutoApplyCategory,
    AutomationConfig,
    AutomationGate,
    AutomationLevel,
    HistoryItem,
    ProposalChange,
    RateLimitState,
    SafetyConfig,
    TokenUsage,
    TriggerConfig,
    TriggerReason,
    check_rate_limits,
    create_log_entry,
    create_orchestration_result,
    evaluate_auto_apply,
    evaluate_trigger_conditions,
    format_log_entry,
    infer_category_from_path,
    is_safe_to_auto_apply,
    requires_human_approval,
    update_rate_limit_state,
)
from darwinforge.errors import ConfigValidationError


NOON = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def auto_trigger_config():
    return AutomationConfig(level=AutomationLevel.AUTO_TRIGGER)


@pytest.fixture
def auto_apply_config():
    return AutomationConfig(level=AutomationLevel.AUTO_APPLY_LOW_RISK)


# =============================================================================
# Configuration Tests
# =============================================================================

class TestAutomationConfig:
    """Tests for AutomationConfig defaults and validation."""

    def test_defaults(self):
        config = AutomationConfig()
        assert config.level == AutomationLevel.MANUAL
        assert config.triggers.failure_rate == 0.3
        assert config.triggers.cost_threshold == 100
        assert config.triggers.cooldown == 3600
        assert config.safety.max_daily_runs == 5
        assert config.safety.auto_apply_types == {AutoApplyCategory.MODE_MAP, AutoApplyCategory.DOCS}

    def test_from_dict(self):
        config = AutomationConfig.from_dict({
            "level": 2,
            "triggers": {"costThreshold": 50, "cooldown": 60},
            "safety": {"autoApplyTypes": ["docs", "memory"]},
        })
        assert config.level == AutomationLevel.AUTO_APPLY_LOW_RISK
        assert config.triggers.cost_threshold == 50
        assert config.triggers.cooldown == 60
        assert config.triggers.failure_rate == 0.3
        assert config.safety.auto_apply_types == {AutoApplyCategory.DOCS, AutoApplyCategory.MEMORY}

    def test_round_trip(self):
        config = AutomationConfig.from_dict({"level": 3, "safety": {"maxDailyRuns": 2}})
        assert AutomationConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("data", [
        {"level": 7},
        {"level": "high"},
        {"level": True},
        {"triggers": {"costThreshold": "abc"}},
        {"triggers": {"failureRate": 1.5}},
        {"triggers": {"cooldown": -1}},
        {"safety": {"maxDailyRuns": 2.5}},
        {"safety": {"autoApplyTypes": ["bogus"]}},
        {"safety": {"autoApplyTypes": "docs"}},
        {"triggers": []},
    ])
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ConfigValidationError):
            AutomationConfig.from_dict(data)


# =============================================================================
# Trigger Evaluation Tests
# =============================================================================

class TestEvaluateTriggerConditions:
    """Tests for evaluate_trigger_conditions."""

    def test_manual_never_triggers(self):
        result = evaluate_trigger_conditions(AutomationConfig(), TokenUsage(total_cost=999),
                                             HistoryItem(task="Build failed"))
        assert result.should_trigger is False
        assert result.reason == TriggerReason.NONE

    def test_high_cost(self, auto_trigger_config):
        result = evaluate_trigger_conditions(auto_trigger_config, TokenUsage(total_cost=150))
        assert result.should_trigger is True
        assert result.reason == TriggerReason.HIGH_COST
        assert "$150.00" in result.details

    def test_low_cost(self, auto_trigger_config):
        result = evaluate_trigger_conditions(auto_trigger_config, TokenUsage(total_cost=50))
        assert result.should_trigger is False
        assert result.reason == TriggerReason.NONE

    def test_cost_boundary_inclusive(self, auto_trigger_config):
        result = evaluate_trigger_conditions(auto_trigger_config, TokenUsage(total_cost=100))
        assert result.reason == TriggerReason.HIGH_COST

    def test_zero_threshold_disables_cost(self):
        config = AutomationConfig(level=AutomationLevel.AUTO_TRIGGER, triggers=TriggerConfig(cost_threshold=0))
        result = evaluate_trigger_conditions(config, TokenUsage(total_cost=10_000))
        assert result.should_trigger is False

    def test_failure_has_priority(self, auto_trigger_config):
        result = evaluate_trigger_conditions(auto_trigger_config, TokenUsage(total_cost=150),
                                             HistoryItem(task="Deploy FAILED on step 3"))
        assert result.reason == TriggerReason.FAILURE

    def test_could_not_complete(self, auto_trigger_config):
        result = evaluate_trigger_conditions(auto_trigger_config, TokenUsage(),
                                             HistoryItem(task="Could not complete migration"))
        assert result.reason == TriggerReason.FAILURE

    def test_successful_task(self, auto_trigger_config):
        result = evaluate_trigger_conditions(auto_trigger_config, TokenUsage(total_cost=1),
                                             HistoryItem(task="Add login page"))
        assert result.should_trigger is False


# =============================================================================
# Rate Limit Tests
# =============================================================================

class TestRateLimits:
    """Tests for check_rate_limits and update_rate_limit_state."""

    def test_daily_limit_same_day(self, auto_trigger_config):
        state = RateLimitState(daily_run_count=5, daily_run_date="2026-03-01",
                               last_run_timestamp=ms(NOON - timedelta(hours=3)))
        decision = check_rate_limits(auto_trigger_config, state, NOON)
        assert not decision.allowed
        assert decision.reason.startswith("Daily limit")

    def test_daily_limit_resets_next_day(self, auto_trigger_config):
        state = RateLimitState(daily_run_count=5, daily_run_date="2026-02-28",
                               last_run_timestamp=ms(NOON - timedelta(days=1)))
        decision = check_rate_limits(auto_trigger_config, state, NOON)
        assert decision.allowed
        assert state.daily_run_count == 5

    def test_cooldown(self, auto_trigger_config):
        state = RateLimitState(daily_run_count=1, daily_run_date="2026-03-01",
                               last_run_timestamp=ms(NOON - timedelta(minutes=10)))
        decision = check_rate_limits(auto_trigger_config, state, NOON)
        assert not decision.allowed
        assert decision.reason == "Cooldown active (3000s remaining)"

    def test_past_cooldown(self, auto_trigger_config):
        state = RateLimitState(daily_run_count=1, daily_run_date="2026-03-01",
                               last_run_timestamp=ms(NOON - timedelta(hours=2)))
        assert check_rate_limits(auto_trigger_config, state, NOON).allowed

    def test_fresh_state_allowed(self, auto_trigger_config):
        assert check_rate_limits(auto_trigger_config, RateLimitState(), NOON).allowed

    def test_update_same_day(self):
        state = RateLimitState(daily_run_count=2, daily_run_date="2026-03-01")
        updated = update_rate_limit_state(state, TriggerReason.HIGH_COST, NOON)

        assert updated.daily_run_count == 3
        assert updated.daily_run_date == "2026-03-01"
        assert updated.last_run_timestamp == ms(NOON)
        assert updated.last_trigger_reason == TriggerReason.HIGH_COST
        assert state.daily_run_count == 2

    def test_update_new_day(self):
        state = RateLimitState(daily_run_count=4, daily_run_date="2026-02-28")
        updated = update_rate_limit_state(state, TriggerReason.FAILURE, NOON)
        assert updated.daily_run_count == 1
        assert updated.daily_run_date == "2026-03-01"


# =============================================================================
# Auto-Apply Tests
# =============================================================================

class TestInferCategory:
    """Tests for infer_category_from_path."""

    @pytest.mark.parametrize("path,expected", [
        ("docs/readme.md", AutoApplyCategory.DOCS),
        ("docs\\guide\\intro.md", AutoApplyCategory.DOCS),
        ("README.md", AutoApplyCategory.DOCS),
        ("packages/core/CHANGELOG.md", AutoApplyCategory.DOCS),
        ("docs/llm-mode-map.yaml", AutoApplyCategory.MODE_MAP),
        ("config/ModeMap.json", AutoApplyCategory.MODE_MAP),
        (".darwin/memory/facts.json", AutoApplyCategory.MEMORY),
        (".darwin/rubrics/review.yaml", AutoApplyCategory.RUBRIC),
        ("quality-rubric.yaml", AutoApplyCategory.RUBRIC),
        ("src/main.ts", None),
        ("src/notes.md", None),
    ])
    def test_categories(self, path, expected):
        assert infer_category_from_path(path) == expected


class TestRequiresHumanApproval:
    """Tests for hard approval overrides."""

    @pytest.mark.parametrize("path", [
        "package.json",
        "packages/web/package.json",
        "pnpm-lock.yaml",
        "pyproject.toml",
        "requirements-dev.txt",
        ".github/workflows/ci.yml",
        ".circleci/config.yml",
        ".darwin/rules/guardrails.md",
        ".darwin/evolution/council.yaml",
        ".darwin\\rules\\README.md",
    ])
    def test_protected_paths(self, path):
        assert requires_human_approval(path)

    @pytest.mark.parametrize("path", ["docs/guide.md", "src/package_json.py", "README.md"])
    def test_regular_paths(self, path):
        assert not requires_human_approval(path)


class TestEvaluateAutoApply:
    """Tests for evaluate_auto_apply."""

    def test_safe_changes(self, auto_apply_config):
        changes = [ProposalChange("docs/readme.md"), ProposalChange("docs/llm-mode-map.yaml")]
        result = evaluate_auto_apply(changes, auto_apply_config)

        assert result.can_auto_apply is True
        assert len(result.safe_changes) == 2
        assert len(result.unsafe_changes) == 0
        assert result.safe_changes[0].category == AutoApplyCategory.DOCS
        assert result.reason == "All 2 change(s) are safe to auto-apply"

    def test_unsafe_change_blocks(self, auto_apply_config):
        changes = [
            ProposalChange("docs/readme.md"),
            ProposalChange("docs/llm-mode-map.yaml"),
            ProposalChange("src/main.ts"),
        ]
        result = evaluate_auto_apply(changes, auto_apply_config)

        assert result.can_auto_apply is False
        assert len(result.safe_changes) == 2
        assert [c.path for c in result.unsafe_changes] == ["src/main.ts"]
        assert "manual approval" in result.reason
        assert "src/main.ts" in result.reason

    def test_level_too_low(self, auto_trigger_config):
        result = evaluate_auto_apply([ProposalChange("docs/readme.md")], auto_trigger_config)
        assert result.can_auto_apply is False
        assert result.reason == "Automation level does not support auto-apply"

    def test_no_changes(self, auto_apply_config):
        result = evaluate_auto_apply([], auto_apply_config)
        assert result.can_auto_apply is False
        assert result.reason == "No changes to apply"

    def test_explicit_category(self, auto_apply_config):
        change = ProposalChange("notes/anything.txt", category=AutoApplyCategory.DOCS)
        assert evaluate_auto_apply([change], auto_apply_config).can_auto_apply

    def test_category_not_allowed(self, auto_apply_config):
        result = evaluate_auto_apply([ProposalChange(".darwin/memory/x.json")], auto_apply_config)
        assert result.can_auto_apply is False

    def test_protected_path_overrides_full_closed_loop(self):
        config = AutomationConfig(level=AutomationLevel.FULL_CLOSED_LOOP)
        result = evaluate_auto_apply([ProposalChange(".darwin/rules/README.md")], config)
        assert result.can_auto_apply is False

    def test_is_safe_to_auto_apply(self, auto_trigger_config, auto_apply_config):
        assert not is_safe_to_auto_apply(AutoApplyCategory.DOCS, auto_trigger_config)
        assert is_safe_to_auto_apply(AutoApplyCategory.DOCS, auto_apply_config)
        assert not is_safe_to_auto_apply(AutoApplyCategory.RUBRIC, auto_apply_config)


# =============================================================================
# Run Summary and Log Entry Tests
# =============================================================================

class TestRunRecords:
    """Tests for orchestration results and log entries."""

    def test_orchestration_defaults(self):
        result = create_orchestration_result()
        assert result.triggered is False
        assert result.reason == TriggerReason.NONE
        assert result.rate_limited is False
        assert result.trace_exported is False
        assert result.council_ran is False
        assert result.proposal_generated is False
        assert result.auto_applied is False

    def test_orchestration_overrides(self):
        result = create_orchestration_result(triggered=True, reason=TriggerReason.FAILURE, trace_path="t.json")
        data = result.to_dict()
        assert data["triggered"] is True
        assert data["reason"] == "failure"
        assert data["trace_path"] == "t.json"

    def test_log_entry(self):
        entry = create_log_entry("automation.run", "start", {"cost": 1.5})
        line = json.loads(format_log_entry(entry))
        assert line["event"] == "automation.run"
        assert line["phase"] == "start"
        assert line["data"] == {"cost": 1.5}
        assert datetime.fromisoformat(line["timestamp"]).tzinfo is not None

    def test_log_entry_rejects_unknown_phase(self):
        with pytest.raises(ValueError):
            create_log_entry("automation.run", "middle")


# =============================================================================
# AutomationGate Tests
# =============================================================================

class TestAutomationGate:
    """Tests for the in-memory AutomationGate."""

    @pytest.mark.asyncio
    async def test_begin_run_advances_state(self, auto_trigger_config):
        gate = AutomationGate(auto_trigger_config)
        result = await gate.begin_run(TokenUsage(total_cost=150), now=NOON)

        assert result.triggered
        assert not result.rate_limited
        assert gate.state.daily_run_count == 1
        assert gate.state.last_trigger_reason == TriggerReason.HIGH_COST

    @pytest.mark.asyncio
    async def test_second_run_hits_cooldown(self, auto_trigger_config):
        gate = AutomationGate(auto_trigger_config)
        await gate.begin_run(TokenUsage(total_cost=150), now=NOON)
        result = await gate.begin_run(TokenUsage(total_cost=150), now=NOON + timedelta(minutes=1))

        assert result.triggered
        assert result.rate_limited
        assert result.rate_limit_reason.startswith("Cooldown active")
        assert gate.state.daily_run_count == 1

    @pytest.mark.asyncio
    async def test_untriggered_run_leaves_state(self, auto_trigger_config):
        gate = AutomationGate(auto_trigger_config)
        result = await gate.begin_run(TokenUsage(total_cost=1), now=NOON)

        assert not result.triggered
        assert gate.state == RateLimitState()

    @pytest.mark.asyncio
    async def test_daily_cap(self):
        config = AutomationConfig(
            level=AutomationLevel.AUTO_TRIGGER,
            triggers=TriggerConfig(cooldown=0),
            safety=SafetyConfig(max_daily_runs=2),
        )
        gate = AutomationGate(config)
        outcomes = [
            (await gate.begin_run(TokenUsage(total_cost=200), now=NOON + timedelta(minutes=i))).rate_limited
            for i in range(3)
        ]
        assert outcomes == [False, False, True]

        next_day = await gate.begin_run(TokenUsage(total_cost=200), now=NOON + timedelta(days=1))
        assert not next_day.rate_limited
        assert gate.state.daily_run_count == 1

    @pytest.mark.asyncio
    async def test_failed_save_leaves_state(self, auto_trigger_config):
        """Test that the counter does not advance when the state cannot be stored."""
        class BrokenStore:
            async def load(self):
                return RateLimitState()

            async def save(self, state):
                raise RuntimeError("database is locked")

        gate = AutomationGate(auto_trigger_config, BrokenStore())
        with pytest.raises(RuntimeError, match="locked"):
            await gate.begin_run(TokenUsage(total_cost=150), now=NOON)

        assert gate.state == RateLimitState()

    def test_evaluate_changes_uses_gate_config(self):
        gate = AutomationGate(AutomationConfig(level=AutomationLevel.AUTO_APPLY_LOW_RISK))
        evaluation = gate.evaluate_changes([ProposalChange(path="docs/guide.md")])
        assert evaluation.can_auto_apply

        manual = AutomationGate().evaluate_changes([ProposalChange(path="docs/guide.md")])
        assert not manual.can_auto_apply
