"""
Test database integration to ensure components persist state across sessions.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from darwinforge.automation import (
    AutomationConfig,
    AutomationGate,
    AutomationLevel,
    AutomationStateStore,
    TokenUsage,
    TriggerReason,
)
from darwinforge.db import DATA_DIR, Database, init_db
from darwinforge.proposal_generator import ProposalGenerator
from darwinforge.proposals import ProposalStatus, ProposalStore
from darwinforge.self_healing import PerformanceMetrics, SelfHealingMonitor
from darwinforge.traces import LearningSignal, SignalStore, SignalType


NOON = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_project():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_signal(signal_id="s1", detected_at=1):
    return LearningSignal(
        id=signal_id,
        type=SignalType.DOOM_LOOP,
        confidence=0.9,
        description="Doom loop detected: apply_diff failed 4 times with similar errors",
        source_event_ids=("e1", "e2", "e3", "e4"),
        detected_at=detected_at,
        suggested_action="Consider alternative approach for apply_diff",
        context={"toolName": "apply_diff", "failureCount": 4, "errorPattern": "Patch failed"},
    )


@pytest.mark.asyncio
async def test_init_db_creates_file(temp_project):
    """Test that opening the database creates .darwin/darwin.db."""
    db = await init_db(temp_project)
    try:
        assert db.is_open
        assert (temp_project / DATA_DIR / "darwin.db").exists()
    finally:
        await db.close()
    assert not db.is_open


@pytest.mark.asyncio
async def test_session_requires_open(temp_project):
    with pytest.raises(RuntimeError):
        Database(temp_project).session()


@pytest.mark.asyncio
async def test_automation_state_survives_restart(temp_project):
    """Test that the run counter is reloaded by a new gate."""
    config = AutomationConfig(level=AutomationLevel.AUTO_TRIGGER)

    async with Database(temp_project) as db:
        async with db.session() as session:
            gate = AutomationGate(config, AutomationStateStore(session))
            result = await gate.begin_run(TokenUsage(total_cost=150), now=NOON)
            assert not result.rate_limited

    async with Database(temp_project) as db:
        async with db.session() as session:
            gate = AutomationGate(config, AutomationStateStore(session))
            result = await gate.begin_run(TokenUsage(total_cost=150), now=NOON + timedelta(minutes=5))

            assert result.rate_limited
            assert gate.state.daily_run_count == 1
            assert gate.state.daily_run_date == "2026-03-01"
            assert gate.state.last_trigger_reason == TriggerReason.HIGH_COST


@pytest.mark.asyncio
async def test_monitor_state_survives_restart(temp_project):
    """Test that applications, the rollback log and the rollback counter are reloaded."""
    (temp_project / "README.md").write_text("hello\n")
    before = PerformanceMetrics(0.9, 1.0, 1000, 20, "2026-03-01T00:00:00+00:00")
    after = PerformanceMetrics(0.5, 1.0, 1000, 10)

    async with Database(temp_project) as db:
        async with db.session() as session:
            monitor = SelfHealingMonitor(temp_project)
            await monitor.init_async(session)
            first = await monitor.record_application("p1", "proposals/p1", ["README.md"], before, now=NOON)
            second = await monitor.record_application("p2", "proposals/p2", ["README.md"], before, now=NOON)
            await monitor.update_metrics(second.id, after)
            await monitor.rollback(first.id, "degraded", automatic=True, now=NOON)

    async with Database(temp_project) as db:
        async with db.session() as session:
            monitor = SelfHealingMonitor(temp_project)
            await monitor.init_async(session)

            assert {a.id for a in monitor.get_applications()} == {first.id, second.id}
            assert monitor.get_application(first.id).status == "rolled-back"
            assert monitor.get_application(second.id).after_metrics == after
            assert monitor.get_application(second.id).before_metrics == before

            log = monitor.get_rollback_log()
            assert len(log) == 1
            assert log[0].application_id == first.id
            assert log[0].automatic is True

            assert monitor.rate_limit_state.daily_rollback_count == 1
            assert monitor.rate_limit_state.daily_rollback_date == "2026-03-01"


@pytest.mark.asyncio
async def test_signals_and_proposals_persist(temp_project):
    """Test saving and listing signals and proposals."""
    signals = [make_signal("s1", 1), make_signal("s2", 2)]
    proposals = ProposalGenerator().generate_from_signal(signals[0], now_ms=100)

    async with Database(temp_project) as db:
        async with db.session() as session:
            signal_store = SignalStore(session)
            assert await signal_store.save_all(signals) == 2
            assert await signal_store.save_all(signals) == 0

            proposal_store = ProposalStore(session)
            await proposal_store.save_all(proposals)

            proposals[0].transition(ProposalStatus.APPROVED, reviewed_by="council", now=200)
            await proposal_store.save(proposals[0])

    async with Database(temp_project) as db:
        async with db.session() as session:
            recent = await SignalStore(session).list_recent()
            assert [s.id for s in recent] == ["s2", "s1"]
            assert recent[0].context["toolName"] == "apply_diff"

            store = ProposalStore(session)
            approved = await store.list_proposals(ProposalStatus.APPROVED)
            assert [p.id for p in approved] == [proposals[0].id]
            assert approved[0].reviewed_by == "council"
            assert approved[0].updated_at == 200

            pending = await store.get(proposals[1].id)
            assert pending == proposals[1]
