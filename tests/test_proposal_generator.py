"""
Tests for Proposal Generation and Lifecycle
===========================================

Tests for ProposalGenerator, template interpolation and EvolutionProposal
status transitions.
"""

import pytest

from darwinforge.proposal_generator import (
    GUARDRAILS_FILE,
    SIGNAL_TO_PROPOSAL_TEMPLATES,
    ProposalGenerator,
    assess_risk,
    interpolate_template,
)
from darwinforge.proposals import (
    EvolutionProposal,
    InvalidTransitionError,
    ProposalRisk,
    ProposalStatus,
    ProposalType,
)
from darwinforge.traces import LearningSignal, SignalType


NOW = 1_700_000_000_000


# =============================================================================
# Fixtures
# =============================================================================

def make_signal(signal_type=SignalType.DOOM_LOOP, confidence=0.85, context=None, **kwargs):
    return LearningSignal(
        id=kwargs.pop("id", f"{signal_type.value}-1"),
        type=signal_type,
        confidence=confidence,
        description=kwargs.pop("description", "Doom loop detected: apply_diff failed 3 times"),
        source_event_ids=("e0", "e1", "e2"),
        detected_at=NOW,
        suggested_action=kwargs.pop("suggested_action", "Consider alternative approach for apply_diff"),
        context=context if context is not None else {
            "toolName": "apply_diff",
            "failureCount": 3,
            "errorPattern": "Patch failed",
        },
    )


@pytest.fixture
def generator():
    return ProposalGenerator()


# =============================================================================
# Generation Tests
# =============================================================================

class TestGenerateFromSignal:
    """Tests for generate_from_signal."""

    def test_doom_loop_templates(self, generator):
        """Test that a doom loop yields a rule update and a mode instruction."""
        proposals = generator.generate_from_signal(make_signal(), NOW)

        assert [p.type for p in proposals] == [ProposalType.RULE_UPDATE, ProposalType.MODE_INSTRUCTION]
        rule, mode = proposals

        assert rule.title == "Add guardrail for apply_diff failures"
        assert "Detected 3 consecutive failures with apply_diff" in rule.description
        assert rule.description.endswith("Patch failed")
        assert rule.risk == ProposalRisk.MEDIUM
        assert rule.status == ProposalStatus.PENDING
        assert rule.source_signal_id == "doom_loop-1"
        assert rule.created_at == rule.updated_at == NOW
        assert rule.id.startswith(f"proposal-{NOW}-")

        assert rule.payload["targetFile"] == GUARDRAILS_FILE
        assert rule.payload["ruleContent"] == "Consider alternative approach for apply_diff"
        assert rule.payload["context"] == {"signalType": "doom_loop", "confidence": 0.85}

        assert mode.risk == ProposalRisk.LOW
        assert mode.payload["priority"] == "high"
        assert mode.payload["targetMode"] == "default"

    def test_below_confidence_threshold(self, generator):
        """Test that weak signals produce nothing."""
        assert generator.generate_from_signal(make_signal(confidence=0.49), NOW) == []

    def test_max_proposals_per_signal(self):
        """Test that the template walk stops at the configured maximum."""
        generator = ProposalGenerator(max_proposals_per_signal=1)
        proposals = generator.generate_from_signal(make_signal(), NOW)
        assert [p.type for p in proposals] == [ProposalType.RULE_UPDATE]

    def test_tool_creation_requires_review(self, generator):
        """Test that tool creation proposals are high risk and flagged for review."""
        signal = make_signal(SignalType.CAPABILITY_GAP, 0.8, {"capability": "permission denied"})
        proposals = generator.generate_from_signal(signal, NOW)

        assert len(proposals) == 1
        proposal = proposals[0]
        assert proposal.type == ProposalType.TOOL_CREATION
        assert proposal.risk == ProposalRisk.HIGH
        assert proposal.title == "Create new tool for permission denied"
        assert proposal.payload["requiresReview"] is True
        assert proposal.payload["toolName"] == "permission denied"

    def test_unresolved_placeholder_left_verbatim(self, generator):
        """Test that missing context keys stay in the output text."""
        signal = make_signal(SignalType.INEFFICIENCY, 0.9, {})
        proposal = generator.generate_from_signal(signal, NOW)[0]

        assert proposal.title == "Optimize {context.area} configuration"
        assert proposal.payload["setting"] == "unknown"

    def test_description_placeholder(self, generator):
        """Test that {description} resolves to the signal description."""
        signal = make_signal(SignalType.INSTRUCTION_DRIFT, 0.75, {"taskId": "t1"},
                             description="High rejection rate (75%)")
        proposal = generator.generate_from_signal(signal, NOW)[0]

        assert proposal.type == ProposalType.PROMPT_REFINEMENT
        assert proposal.description.endswith("High rejection rate (75%)")
        assert proposal.payload["targetPrompt"] == "system"

    def test_normal_priority_for_moderate_confidence(self, generator):
        proposals = generator.generate_from_signal(make_signal(confidence=0.6), NOW)
        assert proposals[1].payload["priority"] == "normal"


class TestGenerateFromSignals:
    """Tests for batch generation and deduplication."""

    def test_deduplicates_by_type_and_title(self, generator):
        """Test that identical proposals from two signals are merged."""
        first = make_signal(id="s1")
        second = make_signal(id="s2")

        proposals = generator.generate_from_signals([first, second], NOW)

        assert len(proposals) == 2
        assert all(p.source_signal_id == "s1" for p in proposals)

    def test_title_comparison_is_case_insensitive(self, generator):
        first = make_signal(id="s1", context={"toolName": "Apply_Diff"})
        second = make_signal(id="s2", context={"toolName": "apply_diff"})
        assert len(generator.generate_from_signals([first, second], NOW)) == 2

    def test_distinct_signals_kept(self, generator):
        first = make_signal(id="s1", context={"toolName": "apply_diff"})
        second = make_signal(id="s2", context={"toolName": "read_file"})
        assert len(generator.generate_from_signals([first, second], NOW)) == 4


# =============================================================================
# Risk, Validation and Interpolation Tests
# =============================================================================

class TestAssessRisk:
    """Tests for risk assessment."""

    def test_risk_by_type(self):
        assert assess_risk(ProposalType.TOOL_CREATION) == ProposalRisk.HIGH
        assert assess_risk(ProposalType.RULE_UPDATE) == ProposalRisk.MEDIUM
        assert assess_risk(ProposalType.PROMPT_REFINEMENT) == ProposalRisk.MEDIUM
        assert assess_risk(ProposalType.MODE_INSTRUCTION) == ProposalRisk.LOW
        assert assess_risk(ProposalType.CONFIG_CHANGE) == ProposalRisk.LOW

    def test_every_signal_type_has_templates(self):
        assert set(SIGNAL_TO_PROPOSAL_TEMPLATES) == set(SignalType)


class TestValidateProposal:
    """Tests for structural validation."""

    def test_valid_proposal(self, generator):
        proposal = generator.generate_from_signal(make_signal(), NOW)[0]
        assert generator.validate_proposal(proposal) == []

    def test_violations_reported(self, generator):
        proposal = EvolutionProposal(
            id="",
            type=ProposalType.RULE_UPDATE,
            status=ProposalStatus.PENDING,
            risk=ProposalRisk.LOW,
            title="Fix",
            description="short",
        )
        errors = generator.validate_proposal(proposal)

        assert "Proposal must have an ID" in errors
        assert "Proposal must have a title (at least 5 characters)" in errors
        assert "Proposal must have a description (at least 10 characters)" in errors
        assert proposal.title == "Fix"


class TestInterpolation:
    """Tests for placeholder interpolation."""

    def test_nested_paths(self):
        values = {"context": {"a": {"b": 1}}, "flag": True}
        assert interpolate_template("{context.a.b} {flag}", values) == "1 true"

    def test_missing_and_null_values(self):
        values = {"context": {"x": None}}
        assert interpolate_template("{context.x}/{context.y}/{nope}", values) == "{context.x}/{context.y}/{nope}"

    def test_path_through_scalar(self):
        assert interpolate_template("{a.b}", {"a": 5}) == "{a.b}"


# =============================================================================
# Lifecycle Tests
# =============================================================================

class TestProposalLifecycle:
    """Tests for EvolutionProposal status transitions."""

    @pytest.fixture
    def proposal(self, generator):
        return generator.generate_from_signal(make_signal(), NOW)[0]

    def test_happy_path(self, proposal):
        proposal.transition(ProposalStatus.APPROVED, reviewed_by="council", notes="ok", now=NOW + 1)
        assert proposal.reviewed_by == "council"
        assert proposal.review_notes == "ok"
        assert proposal.updated_at == NOW + 1

        proposal.transition(ProposalStatus.APPLIED, now=NOW + 2)
        proposal.transition(ProposalStatus.ROLLED_BACK, now=NOW + 3)
        assert proposal.status == ProposalStatus.ROLLED_BACK
        assert proposal.is_terminal

    def test_cannot_skip_review(self, proposal):
        with pytest.raises(InvalidTransitionError):
            proposal.transition(ProposalStatus.APPLIED)
        assert proposal.status == ProposalStatus.PENDING

    def test_cannot_move_backwards(self, proposal):
        proposal.transition(ProposalStatus.APPROVED)
        with pytest.raises(InvalidTransitionError):
            proposal.transition(ProposalStatus.PENDING)

    def test_rejected_is_terminal(self, proposal):
        proposal.transition(ProposalStatus.REJECTED)
        with pytest.raises(InvalidTransitionError):
            proposal.transition(ProposalStatus.APPROVED)

    def test_dict_round_trip(self, proposal):
        restored = EvolutionProposal.from_dict(proposal.to_dict())
        assert restored == proposal
