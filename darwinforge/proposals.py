"""
Evolution Proposals
===================

A proposal is a concrete, risk-scored change suggested in response to a
learning signal. Proposals move through a one-way lifecycle:

    pending -> approved | rejected
    approved -> applied | failed
    applied -> failed | rolled_back

rejected, failed and rolled_back are terminal.

Usage:
    from darwinforge.proposals import ProposalStatus

    proposal.transition(ProposalStatus.APPROVED, reviewed_by="council")
    await ProposalStore(session).save(proposal)
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from darwinforge.db.models import ProposalModel


class InvalidTransitionError(ValueError):
    """Raised when a proposal status change is not allowed by the lifecycle."""


class ProposalType(Enum):
    """Kinds of changes a proposal can make."""
    RULE_UPDATE = "rule_update"
    MODE_INSTRUCTION = "mode_instruction"
    TOOL_CREATION = "tool_creation"
    CONFIG_CHANGE = "config_change"
    PROMPT_REFINEMENT = "prompt_refinement"


class ProposalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ProposalRisk(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


ALLOWED_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset({ProposalStatus.APPROVED, ProposalStatus.REJECTED}),
    ProposalStatus.APPROVED: frozenset({ProposalStatus.APPLIED, ProposalStatus.FAILED}),
    ProposalStatus.APPLIED: frozenset({ProposalStatus.FAILED, ProposalStatus.ROLLED_BACK}),
    ProposalStatus.REJECTED: frozenset(),
    ProposalStatus.FAILED: frozenset(),
    ProposalStatus.ROLLED_BACK: frozenset(),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EvolutionProposal:
    """A proposed change to rules, modes, tools, config or prompts."""

    id: str
    type: ProposalType
    status: ProposalStatus
    risk: ProposalRisk
    title: str
    description: str
    payload: dict[str, Any] = field(default_factory=dict)
    source_signal_id: Optional[str] = None
    created_at: int = 0  # epoch ms
    updated_at: int = 0  # epoch ms
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def can_transition(self, status: ProposalStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition(
        self,
        status: ProposalStatus,
        reviewed_by: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[int] = None,
    ) -> None:
        """
        Move the proposal to a new status.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move
        """
        if not self.can_transition(status):
            raise InvalidTransitionError(
                f"Cannot move proposal {self.id} from {self.status.value} to {status.value}"
            )
        self.status = status
        if reviewed_by is not None:
            self.reviewed_by = reviewed_by
        if notes is not None:
            self.review_notes = notes
        self.updated_at = _now_ms() if now is None else now

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "risk": self.risk.value,
            "title": self.title,
            "description": self.description,
            "payload": self.payload,
            "signalId": self.source_signal_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "reviewedBy": self.reviewed_by,
            "reviewNotes": self.review_notes,
            "rollbackData": self.rollback_data,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EvolutionProposal":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=ProposalType(data["type"]),
            status=ProposalStatus(data.get("status", ProposalStatus.PENDING.value)),
            risk=ProposalRisk(data["risk"]),
            title=data["title"],
            description=data["description"],
            payload=data.get("payload") or {},
            source_signal_id=data.get("signalId"),
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            reviewed_by=data.get("reviewedBy"),
            review_notes=data.get("reviewNotes"),
            rollback_data=data.get("rollbackData"),
        )


class ProposalStore:
    """
    Persists evolution proposals.

    Storage: proposals are written to the proposals table, one row per id.
    """

    def __init__(self, session: AsyncSession):
        self._db_session = session

    async def save(self, proposal: EvolutionProposal) -> None:
        """Insert or update a proposal."""
        row = await self._db_session.get(ProposalModel, proposal.id)
        if row is None:
            row = ProposalModel(id=proposal.id)
            self._db_session.add(row)

        row.type = proposal.type.value
        row.status = proposal.status.value
        row.risk = proposal.risk.value
        row.title = proposal.title
        row.description = proposal.description
        row.payload = proposal.payload
        row.source_signal_id = proposal.source_signal_id
        row.created_at = proposal.created_at
        row.updated_at = proposal.updated_at
        row.reviewed_by = proposal.reviewed_by
        row.review_notes = proposal.review_notes
        row.rollback_data = proposal.rollback_data

        await self._db_session.commit()

    async def save_all(self, proposals: list[EvolutionProposal]) -> None:
        for proposal in proposals:
            await self.save(proposal)

    async def get(self, proposal_id: str) -> Optional[EvolutionProposal]:
        row = await self._db_session.get(ProposalModel, proposal_id)
        return self._from_row(row) if row is not None else None

    async def list_proposals(self, status: Optional[ProposalStatus] = None) -> list[EvolutionProposal]:
        """List proposals, oldest first, optionally filtered by status."""
        query = select(ProposalModel).order_by(ProposalModel.created_at)
        if status is not None:
            query = query.where(ProposalModel.status == status.value)
        result = await self._db_session.execute(query)
        return [self._from_row(row) for row in result.scalars().all()]

    @staticmethod
    def _from_row(row: ProposalModel) -> EvolutionProposal:
        return EvolutionProposal(
            id=row.id,
            type=ProposalType(row.type),
            status=ProposalStatus(row.status),
            risk=ProposalRisk(row.risk),
            title=row.title,
            description=row.description,
            payload=row.payload or {},
            source_signal_id=row.source_signal_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
            reviewed_by=row.reviewed_by,
            review_notes=row.review_notes,
            rollback_data=row.rollback_data,
        )
