"""
Resolution Engine for the dispute engine

Turns tier inputs into a binding ResolutionDecision:
- automated: oracle-implied verdict, full release or full refund
- community: closed, quorum-satisfying vote tally
- creator/council: manual ruling, validated

Every decision satisfies release_percent + refund_percent == 100 with
integer percentages.
"""

import logging
import math
from datetime import datetime
from fractions import Fraction
from typing import Callable, Dict, List, Optional

from ..config import EscalationRules
from ..errors import (
    InvalidDecisionError,
    InvalidTransitionError,
    NotAppealableError,
    QuorumNotReachedError,
)
from ..models import (
    Dispute,
    DisputeStatus,
    EventType,
    ResolutionDecision,
    ResolutionOutcome,
    ResolutionTier,
    Vote,
    VoteOption,
    VoteTally,
    utc_now,
)
from ..dispute_store import DisputeStore
from ..timeline import TimelineRecorder

logger = logging.getLogger(__name__)

# Appeals reopen one tier up from the deciding tier
APPEAL_TARGETS: Dict[ResolutionTier, ResolutionTier] = {
    ResolutionTier.AUTOMATED: ResolutionTier.COMMUNITY,
    ResolutionTier.COMMUNITY: ResolutionTier.COUNCIL,
    ResolutionTier.CREATOR: ResolutionTier.COUNCIL,
}

MANUAL_TIERS = (ResolutionTier.CREATOR, ResolutionTier.COUNCIL)


def weighted_partial_percent(votes: List[Vote]) -> int:
    """
    Weight-weighted mean of partial_percent over partial votes, rounded half-up.

    Exact rational arithmetic keeps (300*80 + 300*40) / 600 at exactly 60.
    """
    partial_votes = [v for v in votes if v.vote == VoteOption.PARTIAL]
    total_weight = sum(v.voting_power for v in partial_votes)
    if total_weight == 0:
        raise InvalidDecisionError("No weighted partial votes to average")

    weighted = sum(
        Fraction(v.voting_power) * Fraction(v.partial_percent) for v in partial_votes
    )
    mean = weighted / total_weight
    return int(math.floor(mean + Fraction(1, 2)))


def validate_split(
    outcome: ResolutionOutcome,
    release_percent: int,
    refund_percent: int,
    dispute_id: Optional[str] = None
) -> None:
    """
    Raises:
        InvalidDecisionError: If percentages are not integers in [0, 100]
            summing to 100, or disagree with the outcome.
    """
    for name, value in (("release_percent", release_percent), ("refund_percent", refund_percent)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidDecisionError(f"{name} must be an integer, got {value!r}", dispute_id)
        if not 0 <= value <= 100:
            raise InvalidDecisionError(f"{name} must be within [0, 100], got {value}", dispute_id)

    if release_percent + refund_percent != 100:
        raise InvalidDecisionError(
            f"Percentages must sum to 100, got {release_percent} + {refund_percent}",
            dispute_id,
        )
    if outcome == ResolutionOutcome.RELEASE and release_percent != 100:
        raise InvalidDecisionError("A release outcome must release 100%", dispute_id)
    if outcome == ResolutionOutcome.REFUND and refund_percent != 100:
        raise InvalidDecisionError("A refund outcome must refund 100%", dispute_id)


class ResolutionEngine:
    """Builds, validates and applies resolution decisions."""

    def __init__(
        self,
        store: DisputeStore,
        timeline: TimelineRecorder,
        rules: EscalationRules,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.timeline = timeline
        self.rules = rules
        self.clock = clock

    def decide_automated(self, dispute: Dispute) -> ResolutionDecision:
        """Full release when the oracles agree the milestone completed, else full refund."""
        if dispute.oracle_completed:
            outcome, release = ResolutionOutcome.RELEASE, 100
            verdict = "completed"
        else:
            outcome, release = ResolutionOutcome.REFUND, 0
            verdict = "not completed"

        rationale = (
            f"Oracle consensus of {dispute.consensus_percent}% indicates the "
            f"milestone was {verdict}"
        )
        return self._build(outcome, release, ResolutionTier.AUTOMATED, rationale)

    def decide_by_vote(
        self,
        dispute: Dispute,
        tally: VoteTally,
        votes: List[Vote]
    ) -> Optional[ResolutionDecision]:
        """
        Decision from a closed tally.

        Returns:
            The decision, or None when quorum held but no option has a strict
            majority of non-abstaining weight.

        Raises:
            QuorumNotReachedError: If participation is below quorum.
        """
        if not tally.quorum_reached:
            raise QuorumNotReachedError(
                f"Quorum not reached for dispute {dispute.id}: "
                f"{tally.participated_weight}/{tally.total_voting_power} participated, "
                f"{tally.quorum_threshold}% required",
                dispute.id,
            )
        if not tally.consensus_reached:
            return None

        if tally.leading_option == VoteOption.RELEASE:
            outcome, release = ResolutionOutcome.RELEASE, 100
        elif tally.leading_option == VoteOption.REFUND:
            outcome, release = ResolutionOutcome.REFUND, 0
        else:
            outcome, release = ResolutionOutcome.PARTIAL, weighted_partial_percent(votes)

        rationale = (
            f"Community vote: {tally.leading_option.value} with "
            f"{tally.leading_percent}% of non-abstaining weight"
        )
        return self._build(
            outcome, release, ResolutionTier.COMMUNITY, rationale, vote_tally=tally
        )

    def decide_manually(
        self,
        dispute: Dispute,
        outcome: ResolutionOutcome,
        release_percent: int,
        refund_percent: int,
        rationale: str,
        evidence_ids: Optional[List[str]] = None
    ) -> ResolutionDecision:
        """Creator or council ruling."""
        if dispute.current_tier not in MANUAL_TIERS:
            raise InvalidTransitionError(
                f"Dispute {dispute.id} is at the {dispute.current_tier.value} tier; "
                f"manual rulings are only accepted from creator or council",
                dispute.id,
            )
        if dispute.status not in (DisputeStatus.REVIEWING, DisputeStatus.ESCALATED):
            raise InvalidTransitionError(
                f"Dispute {dispute.id} cannot be resolved from {dispute.status.value}",
                dispute.id,
            )

        validate_split(outcome, release_percent, refund_percent, dispute.id)
        return self._build(
            outcome,
            release_percent,
            dispute.current_tier,
            rationale,
            evidence_ids=evidence_ids,
        )

    async def apply_decision(
        self,
        dispute: Dispute,
        decision: ResolutionDecision,
        actor: str = "system"
    ) -> None:
        """Move the dispute to resolved, superseding any earlier decision."""
        validate_split(
            decision.outcome, decision.release_percent, decision.refund_percent, dispute.id
        )
        await self.store.apply_transition(dispute, DisputeStatus.RESOLVED, actor)

        if dispute.decision is not None:
            dispute.decision_history.append(dispute.decision)
        dispute.decision = decision
        dispute.resolved_at = decision.decided_at
        dispute.voting_enabled = False
        dispute.decision_overdue = False
        dispute.delivery_degraded = False

        await self.timeline.record(
            dispute.id,
            EventType.RESOLVED,
            actor,
            decision.to_dict(),
            description=(
                f"Resolved by {decision.decided_by.value}: "
                f"{decision.release_percent}% release / {decision.refund_percent}% refund"
            ),
        )
        logger.info(
            f"Dispute {dispute.id} resolved by {decision.decided_by.value}: "
            f"{decision.outcome.value} {decision.release_percent}/{decision.refund_percent}"
        )

    def appeal_target(self, dispute: Dispute) -> ResolutionTier:
        """
        Tier an appeal would reopen at.

        Raises:
            InvalidTransitionError: If the dispute is not resolved.
            NotAppealableError: If the decision came from the council or the
                appeal window has elapsed.
        """
        if dispute.status != DisputeStatus.RESOLVED or dispute.decision is None:
            raise InvalidTransitionError(
                f"Dispute {dispute.id} is {dispute.status.value}; only resolved disputes "
                f"can be appealed",
                dispute.id,
            )

        decision = dispute.decision
        if decision.decided_by == ResolutionTier.COUNCIL or not decision.appealable:
            raise NotAppealableError(
                f"Decision on {dispute.id} by {decision.decided_by.value} is final",
                dispute.id,
            )
        if decision.appeal_deadline is None or self.clock() > decision.appeal_deadline:
            raise NotAppealableError(
                f"Appeal window for {dispute.id} has elapsed", dispute.id
            )
        return APPEAL_TARGETS[decision.decided_by]

    def _build(
        self,
        outcome: ResolutionOutcome,
        release_percent: int,
        decided_by: ResolutionTier,
        rationale: str,
        vote_tally: Optional[VoteTally] = None,
        evidence_ids: Optional[List[str]] = None
    ) -> ResolutionDecision:
        now = self.clock()
        appealable = decided_by != ResolutionTier.COUNCIL
        return ResolutionDecision(
            outcome=outcome,
            release_percent=release_percent,
            refund_percent=100 - release_percent,
            decided_by=decided_by,
            decided_at=now,
            rationale=rationale,
            evidence_ids=list(evidence_ids or []),
            vote_tally=vote_tally,
            appealable=appealable,
            appeal_deadline=now + self.rules.appeal_window if appealable else None,
        )
