"""
Module: arbiter/models.py
Description: Dispute entities shared by every engine component

Dispute, Evidence, Vote, VoteTally, ResolutionDecision and DisputeEvent are
plain dataclasses with to_dict/from_dict so any repository backend can store
them as JSON documents.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidDisputeError
from .oracle_context import BaseOracleResponse, parse_oracle_responses


def utc_now() -> datetime:
    """Timezone-aware current time; the default engine clock."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. ISO dates sent without an offset) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DisputeStatus(Enum):
    """Lifecycle status of a dispute."""
    PENDING = "pending"
    REVIEWING = "reviewing"
    VOTING = "voting"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    APPEALED = "appealed"
    CLOSED = "closed"


class ResolutionTier(Enum):
    """Escalation level deciding who rules on the dispute."""
    AUTOMATED = "automated"
    COMMUNITY = "community"
    CREATOR = "creator"
    COUNCIL = "council"


TIER_ORDER = [
    ResolutionTier.AUTOMATED,
    ResolutionTier.COMMUNITY,
    ResolutionTier.CREATOR,
    ResolutionTier.COUNCIL,
]


class DisputeCategory(Enum):
    ORACLE_DISAGREEMENT = "oracle_disagreement"
    ORACLE_FAILURE = "oracle_failure"
    MILESTONE_DISPUTE = "milestone_dispute"
    CALCULATION_ERROR = "calculation_error"
    FRAUD_CLAIM = "fraud_claim"
    TECHNICAL_ISSUE = "technical_issue"
    OTHER = "other"


class DisputePriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_RANK = {
    DisputePriority.CRITICAL: 0,
    DisputePriority.HIGH: 1,
    DisputePriority.MEDIUM: 2,
    DisputePriority.LOW: 3,
}


class VoteOption(Enum):
    RELEASE = "release"
    REFUND = "refund"
    PARTIAL = "partial"
    ABSTAIN = "abstain"


class ResolutionOutcome(Enum):
    RELEASE = "release"
    REFUND = "refund"
    PARTIAL = "partial"


class EvidenceType(Enum):
    DOCUMENT = "document"
    SCREENSHOT = "screenshot"
    API_RESPONSE = "api_response"
    ATTESTATION = "attestation"
    LINK = "link"
    TEXT = "text"


class EventType(Enum):
    """Timeline entry types."""
    CREATED = "created"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    EVIDENCE_VERIFIED = "evidence_verified"
    STATUS_CHANGED = "status_changed"
    TIER_ESCALATED = "tier_escalated"
    VOTING_OPENED = "voting_opened"
    VOTE_CAST = "vote_cast"
    VOTING_CLOSED = "voting_closed"
    RESOLVED = "resolved"
    APPEALED = "appealed"
    CLOSED = "closed"
    DECISION_DELIVERED = "decision_delivered"
    DELIVERY_FAILED = "delivery_failed"
    DECISION_OVERDUE = "decision_overdue"


class EscalationReason(Enum):
    """Why a tier was assigned or changed."""
    AUTO_THRESHOLD = "auto_threshold"
    CATEGORY_RULE = "category_rule"
    QUORUM_FAILED = "quorum_failed"
    NO_CONSENSUS = "no_consensus"
    NO_ELIGIBLE_VOTERS = "no_eligible_voters"
    TIMEOUT = "timeout"
    APPEAL = "appeal"
    MANUAL = "manual"


def content_hash(content: str) -> str:
    """SHA-256 hex digest used for evidence tamper detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Evidence:
    """Immutable evidence record attached to a dispute."""
    id: str
    dispute_id: str
    submitted_by: str
    evidence_type: EvidenceType
    title: str
    description: str
    content: str
    content_hash: str
    submitted_at: datetime
    verified: bool = False

    def integrity_ok(self) -> bool:
        """Check the stored hash still matches the content."""
        return content_hash(self.content) == self.content_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dispute_id": self.dispute_id,
            "submitted_by": self.submitted_by,
            "type": self.evidence_type.value,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "content_hash": self.content_hash,
            "submitted_at": _iso(self.submitted_at),
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            id=data["id"],
            dispute_id=data["dispute_id"],
            submitted_by=data["submitted_by"],
            evidence_type=EvidenceType(data["type"]),
            title=data["title"],
            description=data["description"],
            content=data["content"],
            content_hash=data["content_hash"],
            submitted_at=_parse_dt(data["submitted_at"]),
            verified=data.get("verified", False),
        )


@dataclass(frozen=True)
class Vote:
    """A single weighted vote. One per voter per dispute."""
    id: str
    dispute_id: str
    voter: str
    voting_power: int
    vote: VoteOption
    voted_at: datetime
    partial_percent: Optional[float] = None
    reason: Optional[str] = None
    signature: Optional[bytes] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dispute_id": self.dispute_id,
            "voter": self.voter,
            "voting_power": self.voting_power,
            "vote": self.vote.value,
            "partial_percent": self.partial_percent,
            "reason": self.reason,
            "signature": self.signature.hex() if self.signature is not None else None,
            "voted_at": _iso(self.voted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vote":
        signature = data.get("signature")
        return cls(
            id=data["id"],
            dispute_id=data["dispute_id"],
            voter=data["voter"],
            voting_power=int(data["voting_power"]),
            vote=VoteOption(data["vote"]),
            voted_at=_parse_dt(data["voted_at"]),
            partial_percent=data.get("partial_percent"),
            reason=data.get("reason"),
            signature=bytes.fromhex(signature) if signature is not None else None,
        )


@dataclass
class VoteTally:
    """Weighted tally derived from the votes of one dispute."""
    total_voting_power: int
    release: int = 0
    refund: int = 0
    partial: int = 0
    abstain: int = 0
    voter_count: int = 0
    quorum_threshold: float = 0.0
    quorum_reached: bool = False
    consensus_reached: bool = False
    leading_option: Optional[VoteOption] = None
    leading_percent: float = 0.0
    frozen: bool = False

    @property
    def participated_weight(self) -> int:
        return self.release + self.refund + self.partial + self.abstain

    @property
    def decisive_weight(self) -> int:
        """Weight of non-abstaining votes."""
        return self.release + self.refund + self.partial

    def weight_for(self, option: VoteOption) -> int:
        return getattr(self, option.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_voting_power": self.total_voting_power,
            "release": self.release,
            "refund": self.refund,
            "partial": self.partial,
            "abstain": self.abstain,
            "participated_weight": self.participated_weight,
            "voter_count": self.voter_count,
            "quorum_threshold": self.quorum_threshold,
            "quorum_reached": self.quorum_reached,
            "consensus_reached": self.consensus_reached,
            "leading_option": self.leading_option.value if self.leading_option else None,
            "leading_percent": self.leading_percent,
            "frozen": self.frozen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoteTally":
        leading = data.get("leading_option")
        return cls(
            total_voting_power=int(data["total_voting_power"]),
            release=int(data.get("release", 0)),
            refund=int(data.get("refund", 0)),
            partial=int(data.get("partial", 0)),
            abstain=int(data.get("abstain", 0)),
            voter_count=data.get("voter_count", 0),
            quorum_threshold=data.get("quorum_threshold", 0.0),
            quorum_reached=data.get("quorum_reached", False),
            consensus_reached=data.get("consensus_reached", False),
            leading_option=VoteOption(leading) if leading else None,
            leading_percent=data.get("leading_percent", 0.0),
            frozen=data.get("frozen", False),
        )


@dataclass
class ResolutionDecision:
    """Binding release/refund split handed to the escrow collaborator."""
    outcome: ResolutionOutcome
    release_percent: int
    refund_percent: int
    decided_by: ResolutionTier
    decided_at: datetime
    rationale: str
    evidence_ids: List[str] = field(default_factory=list)
    vote_tally: Optional[VoteTally] = None
    appealable: bool = True
    appeal_deadline: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "release_percent": self.release_percent,
            "refund_percent": self.refund_percent,
            "decided_by": self.decided_by.value,
            "decided_at": _iso(self.decided_at),
            "rationale": self.rationale,
            "evidence_ids": list(self.evidence_ids),
            "vote_tally": self.vote_tally.to_dict() if self.vote_tally else None,
            "appealable": self.appealable,
            "appeal_deadline": _iso(self.appeal_deadline),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolutionDecision":
        tally = data.get("vote_tally")
        return cls(
            outcome=ResolutionOutcome(data["outcome"]),
            release_percent=int(data["release_percent"]),
            refund_percent=int(data["refund_percent"]),
            decided_by=ResolutionTier(data["decided_by"]),
            decided_at=_parse_dt(data["decided_at"]),
            rationale=data.get("rationale", ""),
            evidence_ids=list(data.get("evidence_ids", [])),
            vote_tally=VoteTally.from_dict(tally) if tally else None,
            appealable=data.get("appealable", False),
            appeal_deadline=_parse_dt(data.get("appeal_deadline")),
        )


@dataclass(frozen=True)
class DisputeEvent:
    """Append-only timeline entry."""
    id: str
    dispute_id: str
    event_type: EventType
    description: str
    actor: str
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dispute_id": self.dispute_id,
            "type": self.event_type.value,
            "description": self.description,
            "actor": self.actor,
            "data": self.data,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DisputeEvent":
        return cls(
            id=data["id"],
            dispute_id=data["dispute_id"],
            event_type=EventType(data["type"]),
            description=data.get("description", ""),
            actor=data["actor"],
            timestamp=_parse_dt(data["timestamp"]),
            data=data.get("data") or {},
        )


@dataclass
class Dispute:
    """A dispute over escrowed pledge funds."""
    id: str
    campaign_id: str
    category: DisputeCategory
    title: str
    description: str
    raised_by: str
    raised_at: datetime
    pledge_ids: List[str] = field(default_factory=list)
    milestone_id: Optional[str] = None
    priority: DisputePriority = DisputePriority.LOW

    status: DisputeStatus = DisputeStatus.PENDING
    current_tier: ResolutionTier = ResolutionTier.CREATOR
    tier_started_at: Optional[datetime] = None

    # Oracle context
    oracle_responses: List[BaseOracleResponse] = field(default_factory=list)
    consensus_percent: Optional[float] = None
    oracle_completed: Optional[bool] = None

    # Voting window
    voting_enabled: bool = False
    voting_started_at: Optional[datetime] = None
    voting_ends_at: Optional[datetime] = None
    eligible_voters: Dict[str, int] = field(default_factory=dict)
    vote_tally: Optional[VoteTally] = None

    # Resolution
    decision: Optional[ResolutionDecision] = None
    decision_history: List[ResolutionDecision] = field(default_factory=list)
    delivery_degraded: bool = False
    decision_overdue: bool = False

    # Value at stake
    total_escrowed_amount: int = 0
    affected_backer_count: int = 0

    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.pledge_ids and not self.milestone_id:
            raise InvalidDisputeError(
                "A dispute must reference at least one pledge or a milestone",
                self.id,
            )
        if self.total_escrowed_amount < 0:
            raise InvalidDisputeError("total_escrowed_amount cannot be negative", self.id)
        if self.tier_started_at is None:
            self.tier_started_at = self.raised_at
        if self.updated_at is None:
            self.updated_at = self.raised_at

    @property
    def is_closed(self) -> bool:
        return self.status == DisputeStatus.CLOSED

    @property
    def total_eligible_weight(self) -> int:
        return sum(self.eligible_voters.values())

    def voting_active_at(self, now: datetime) -> bool:
        return (
            self.voting_enabled
            and self.voting_started_at is not None
            and self.voting_ends_at is not None
            and self.voting_started_at <= now <= self.voting_ends_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "pledge_ids": list(self.pledge_ids),
            "milestone_id": self.milestone_id,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "raised_by": self.raised_by,
            "raised_at": _iso(self.raised_at),
            "status": self.status.value,
            "current_tier": self.current_tier.value,
            "tier_started_at": _iso(self.tier_started_at),
            "oracle_responses": [r.model_dump(mode="json") for r in self.oracle_responses],
            "consensus_percent": self.consensus_percent,
            "oracle_completed": self.oracle_completed,
            "voting_enabled": self.voting_enabled,
            "voting_started_at": _iso(self.voting_started_at),
            "voting_ends_at": _iso(self.voting_ends_at),
            "eligible_voters": dict(self.eligible_voters),
            "vote_tally": self.vote_tally.to_dict() if self.vote_tally else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "decision_history": [d.to_dict() for d in self.decision_history],
            "delivery_degraded": self.delivery_degraded,
            "decision_overdue": self.decision_overdue,
            "total_escrowed_amount": self.total_escrowed_amount,
            "affected_backer_count": self.affected_backer_count,
            "updated_at": _iso(self.updated_at),
            "resolved_at": _iso(self.resolved_at),
            "closed_at": _iso(self.closed_at),
            "close_reason": self.close_reason,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dispute":
        tally = data.get("vote_tally")
        decision = data.get("decision")
        return cls(
            id=data["id"],
            campaign_id=data["campaign_id"],
            category=DisputeCategory(data["category"]),
            title=data["title"],
            description=data["description"],
            raised_by=data["raised_by"],
            raised_at=_parse_dt(data["raised_at"]),
            pledge_ids=list(data.get("pledge_ids", [])),
            milestone_id=data.get("milestone_id"),
            priority=DisputePriority(data.get("priority", "low")),
            status=DisputeStatus(data["status"]),
            current_tier=ResolutionTier(data["current_tier"]),
            tier_started_at=_parse_dt(data.get("tier_started_at")),
            oracle_responses=parse_oracle_responses(data.get("oracle_responses", [])),
            consensus_percent=data.get("consensus_percent"),
            oracle_completed=data.get("oracle_completed"),
            voting_enabled=data.get("voting_enabled", False),
            voting_started_at=_parse_dt(data.get("voting_started_at")),
            voting_ends_at=_parse_dt(data.get("voting_ends_at")),
            eligible_voters={k: int(v) for k, v in data.get("eligible_voters", {}).items()},
            vote_tally=VoteTally.from_dict(tally) if tally else None,
            decision=ResolutionDecision.from_dict(decision) if decision else None,
            decision_history=[
                ResolutionDecision.from_dict(d) for d in data.get("decision_history", [])
            ],
            delivery_degraded=data.get("delivery_degraded", False),
            decision_overdue=data.get("decision_overdue", False),
            total_escrowed_amount=int(data.get("total_escrowed_amount", 0)),
            affected_backer_count=data.get("affected_backer_count", 0),
            updated_at=_parse_dt(data.get("updated_at")),
            resolved_at=_parse_dt(data.get("resolved_at")),
            closed_at=_parse_dt(data.get("closed_at")),
            close_reason=data.get("close_reason"),
            tags=list(data.get("tags", [])),
        )
