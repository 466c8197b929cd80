"""
Proposal Generation
===================

Turns learning signals into typed, risk-scored evolution proposals.

Each signal type maps to an ordered list of templates. A template fixes the
proposal type and risk and carries title/description text with placeholders
such as ``{context.toolName}`` or ``{description}``. Placeholders that cannot
be resolved are left in the output as-is.

Usage:
    from darwinforge.proposal_generator import ProposalGenerator

    generator = ProposalGenerator()
    proposals = generator.generate_from_signals(signals)
    for proposal in proposals:
        problems = generator.validate_proposal(proposal)
"""

import logging
import random
import re
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from darwinforge.config import DarwinConfig
from darwinforge.proposals import (
    EvolutionProposal,
    ProposalRisk,
    ProposalStatus,
    ProposalType,
)
from darwinforge.traces import LearningSignal, SignalType


logger = logging.getLogger(__name__)

GUARDRAILS_FILE = ".darwin/rules/guardrails.md"

_PLACEHOLDER = re.compile(r"\{([^}]+)\}")
_MISSING = object()


def assess_risk(proposal_type: ProposalType) -> ProposalRisk:
    """Default risk for a proposal type."""
    if proposal_type is ProposalType.TOOL_CREATION:
        return ProposalRisk.HIGH
    if proposal_type in (ProposalType.RULE_UPDATE, ProposalType.PROMPT_REFINEMENT):
        return ProposalRisk.MEDIUM
    return ProposalRisk.LOW


@dataclass(frozen=True)
class ProposalTemplate:
    """Fixed proposal type and risk plus placeholder text."""
    type: ProposalType
    risk: ProposalRisk
    title_template: str
    description_template: str


def _template(proposal_type: ProposalType, title: str, description: str,
              risk: Optional[ProposalRisk] = None) -> ProposalTemplate:
    return ProposalTemplate(
        type=proposal_type,
        risk=risk or assess_risk(proposal_type),
        title_template=title,
        description_template=description,
    )


SIGNAL_TO_PROPOSAL_TEMPLATES: dict[SignalType, tuple[ProposalTemplate, ...]] = {
    SignalType.DOOM_LOOP: (
        _template(
            ProposalType.RULE_UPDATE,
            "Add guardrail for {context.toolName} failures",
            "Detected {context.failureCount} consecutive failures with {context.toolName}. "
            "Propose adding a rule to prevent repeated failures: {context.errorPattern}",
        ),
        _template(
            ProposalType.MODE_INSTRUCTION,
            "Update mode instructions for {context.toolName}",
            "Add guidance to mode instructions to prevent doom loop pattern with "
            "{context.toolName}. Consider alternative approaches when tool fails repeatedly.",
        ),
    ),
    SignalType.INSTRUCTION_DRIFT: (
        _template(
            ProposalType.PROMPT_REFINEMENT,
            "Refine instructions for clarity",
            "Instructions are not being followed consistently. "
            "Propose refining prompts to be more explicit: {description}",
        ),
    ),
    SignalType.CAPABILITY_GAP: (
        _template(
            ProposalType.TOOL_CREATION,
            "Create new tool for {context.capability}",
            "Detected missing capability: {context.capability}. "
            "Propose creating a new MCP tool to address this gap.",
        ),
    ),
    SignalType.INEFFICIENCY: (
        _template(
            ProposalType.CONFIG_CHANGE,
            "Optimize {context.area} configuration",
            "Detected inefficiency in {context.area}. "
            "Propose configuration changes to improve performance.",
        ),
    ),
    SignalType.USER_PREFERENCE: (
        _template(
            ProposalType.MODE_INSTRUCTION,
            "Incorporate user preference for {context.preference}",
            "User consistently prefers {context.preference}. "
            "Propose adding this as a default behavior in mode instructions.",
        ),
    ),
    SignalType.SUCCESS_PATTERN: (
        _template(
            ProposalType.RULE_UPDATE,
            "Codify successful pattern: {context.patternName}",
            "Detected successful workflow pattern. "
            "Propose adding it to rules for consistent application: {description}",
            risk=ProposalRisk.LOW,
        ),
    ),
}


# =============================================================================
# Placeholder interpolation
# =============================================================================

def get_nested_value(tree: Any, path: str) -> Any:
    """
    Look up a dot-separated path in nested mappings.

    Returns the module-level missing marker when any segment is absent or a
    non-mapping is reached before the path ends.
    """
    current = tree
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(v) for v in value)
    return str(value)


def interpolate_template(template: str, values: Mapping[str, Any]) -> str:
    """Replace ``{path}`` placeholders; unresolved or null ones stay verbatim."""
    def substitute(match: re.Match) -> str:
        value = get_nested_value(values, match.group(1).strip())
        if value is _MISSING or value is None:
            return match.group(0)
        return _stringify(value)

    return _PLACEHOLDER.sub(substitute, template)


# =============================================================================
# Payload builders
# =============================================================================

def _rule_update_payload(signal: LearningSignal, context: dict) -> dict:
    return {
        "targetFile": GUARDRAILS_FILE,
        "ruleType": "guardrail",
        "ruleContent": signal.suggested_action or f"Handle {context.get('toolName')} failures gracefully",
        "context": {
            "signalType": signal.type.value,
            "confidence": signal.confidence,
        },
    }


def _mode_instruction_payload(signal: LearningSignal, context: dict) -> dict:
    return {
        "targetMode": context.get("mode") or "default",
        "instructionType": "guidance",
        "content": signal.suggested_action or signal.description,
        "priority": "high" if signal.confidence > 0.8 else "normal",
    }


def _tool_creation_payload(signal: LearningSignal, context: dict) -> dict:
    return {
        "toolName": context.get("capability") or "new_tool",
        "toolType": "mcp",
        "specification": {
            "description": signal.description,
            "suggestedAction": signal.suggested_action,
        },
        "requiresReview": True,
    }


def _config_change_payload(signal: LearningSignal, context: dict) -> dict:
    return {
        "setting": context.get("setting") or "unknown",
        "currentValue": context.get("currentValue"),
        "proposedValue": context.get("proposedValue"),
        "reason": signal.description,
    }


def _prompt_refinement_payload(signal: LearningSignal, context: dict) -> dict:
    return {
        "targetPrompt": context.get("prompt") or "system",
        "refinementType": "clarification",
        "suggestion": signal.suggested_action or signal.description,
    }


PAYLOAD_BUILDERS: dict[ProposalType, Callable[[LearningSignal, dict], dict]] = {
    ProposalType.RULE_UPDATE: _rule_update_payload,
    ProposalType.MODE_INSTRUCTION: _mode_instruction_payload,
    ProposalType.TOOL_CREATION: _tool_creation_payload,
    ProposalType.CONFIG_CHANGE: _config_change_payload,
    ProposalType.PROMPT_REFINEMENT: _prompt_refinement_payload,
}


def _proposal_id(now_ms: int) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"proposal-{now_ms}-{suffix}"


class ProposalGenerator:
    """
    Generates evolution proposals from learning signals.

    Generation is deterministic apart from proposal ids and timestamps.
    """

    def __init__(
        self,
        config: Optional[DarwinConfig] = None,
        max_proposals_per_signal: int = 2,
        min_confidence_threshold: float = 0.5,
    ):
        self.config = config or DarwinConfig()
        self.max_proposals_per_signal = max_proposals_per_signal
        self.min_confidence_threshold = min_confidence_threshold

    def update_config(self, config: DarwinConfig) -> None:
        self.config = config

    def generate_from_signal(
        self,
        signal: LearningSignal,
        now_ms: Optional[int] = None,
    ) -> list[EvolutionProposal]:
        """
        Generate proposals for one signal.

        Args:
            signal: The learning signal to respond to
            now_ms: Creation time in epoch ms (defaults to wall clock)

        Returns:
            Up to max_proposals_per_signal pending proposals in template order
        """
        if signal.confidence < self.min_confidence_threshold:
            return []

        templates = SIGNAL_TO_PROPOSAL_TEMPLATES.get(signal.type, ())
        if not templates:
            return []

        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        return [
            self._create_from_template(signal, template, now_ms)
            for template in templates[:self.max_proposals_per_signal]
        ]

    def generate_from_signals(
        self,
        signals: Iterable[LearningSignal],
        now_ms: Optional[int] = None,
    ) -> list[EvolutionProposal]:
        """Generate proposals for all signals, deduplicated by type and title."""
        proposals: list[EvolutionProposal] = []
        for signal in signals:
            proposals.extend(self.generate_from_signal(signal, now_ms))

        unique = self._deduplicate(proposals)
        if len(unique) < len(proposals):
            logger.debug("Dropped %d duplicate proposal(s)", len(proposals) - len(unique))
        return unique

    @staticmethod
    def assess_risk(proposal_type: ProposalType) -> ProposalRisk:
        return assess_risk(proposal_type)

    @staticmethod
    def validate_proposal(proposal: EvolutionProposal) -> list[str]:
        """Structural checks. Returns violation messages (empty when valid)."""
        errors = []
        if not proposal.id:
            errors.append("Proposal must have an ID")
        if not proposal.title or len(proposal.title) < 5:
            errors.append("Proposal must have a title (at least 5 characters)")
        if not proposal.description or len(proposal.description) < 10:
            errors.append("Proposal must have a description (at least 10 characters)")
        if not proposal.type:
            errors.append("Proposal must have a type")
        if not proposal.risk:
            errors.append("Proposal must have a risk level")
        return errors

    def _create_from_template(
        self,
        signal: LearningSignal,
        template: ProposalTemplate,
        now_ms: int,
    ) -> EvolutionProposal:
        context = dict(signal.context or {})
        values = {**context, "context": context, "description": signal.description}

        return EvolutionProposal(
            id=_proposal_id(now_ms),
            type=template.type,
            status=ProposalStatus.PENDING,
            risk=template.risk,
            title=interpolate_template(template.title_template, values),
            description=interpolate_template(template.description_template, values),
            payload=PAYLOAD_BUILDERS[template.type](signal, context),
            source_signal_id=signal.id,
            created_at=now_ms,
            updated_at=now_ms,
        )

    @staticmethod
    def _deduplicate(proposals: list[EvolutionProposal]) -> list[EvolutionProposal]:
        seen: dict[str, EvolutionProposal] = {}
        for proposal in proposals:
            key = f"{proposal.type.value}:{proposal.title.lower()}"
            seen.setdefault(key, proposal)
        return list(seen.values())
