"""
Voting Subsystem for the dispute engine

Weighted community voting over escrowed pledge amounts.

Tally rules:
- Abstain counts toward quorum participation only
- quorum_reached  <=> participated / total_eligible >= quorum_percent
- leading option is the heaviest of release, refund, partial
  (ties go to the earlier of release, refund, partial)
- leading_percent = leading / (participated - abstain)
- consensus_reached <=> leading_percent > 50% (strict majority)

A poll closes at its deadline, or early once quorum is reached and the
outcome can no longer change.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..config import EscalationRules
from ..errors import (
    DuplicateVoteError,
    InvalidPartialPercentError,
    InvalidVoteWeightError,
    VotingClosedError,
    VotingUnavailableError,
)
from ..models import (
    Dispute,
    DisputeStatus,
    EventType,
    Vote,
    VoteOption,
    VoteTally,
    new_id,
    utc_now,
)
from ..dispute_store import DisputeStore, can_transition
from ..persistence import DisputeRepository
from ..timeline import TimelineRecorder

logger = logging.getLogger(__name__)

DECISIVE_OPTIONS = (VoteOption.RELEASE, VoteOption.REFUND, VoteOption.PARTIAL)


def compute_tally(
    votes: List[Vote],
    total_voting_power: int,
    quorum_percent: float
) -> VoteTally:
    """Pure tally over a list of votes."""
    tally = VoteTally(
        total_voting_power=total_voting_power,
        quorum_threshold=quorum_percent,
        voter_count=len(votes),
    )
    for vote in votes:
        setattr(tally, vote.vote.value, tally.weight_for(vote.vote) + vote.voting_power)

    participated = tally.participated_weight
    tally.quorum_reached = (
        total_voting_power > 0
        and participated * 100 >= quorum_percent * total_voting_power
    )

    decisive = tally.decisive_weight
    if decisive > 0:
        leading = max(DECISIVE_OPTIONS, key=tally.weight_for)
        leading_weight = tally.weight_for(leading)
        tally.leading_option = leading
        tally.leading_percent = round(leading_weight * 100 / decisive, 2)
        tally.consensus_reached = leading_weight * 2 > decisive

    return tally


def outcome_locked(tally: VoteTally) -> bool:
    """
    True when quorum holds and no remaining vote can change the decision.

    A release/refund leader is locked once it holds more than half of all
    weight that could still be non-abstaining. A partial leader is locked only
    when every eligible voter has voted, because further partial votes would
    still move the weighted release percentage.
    """
    if not tally.quorum_reached:
        return False
    if tally.participated_weight >= tally.total_voting_power:
        return True
    if tally.leading_option in (VoteOption.RELEASE, VoteOption.REFUND):
        leading_weight = tally.weight_for(tally.leading_option)
        return leading_weight * 2 > tally.total_voting_power - tally.abstain
    return False


class VotingSubsystem:
    """Opens polls, records votes and computes tallies."""

    def __init__(
        self,
        repository: DisputeRepository,
        store: DisputeStore,
        timeline: TimelineRecorder,
        rules: EscalationRules,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.store = store
        self.timeline = timeline
        self.rules = rules
        self.clock = clock

    async def open_voting(
        self,
        dispute: Dispute,
        eligible_voters: Dict[str, int],
        actor: str = "system"
    ) -> None:
        """
        Open a poll with deadline now + voting_duration.

        Raises:
            VotingUnavailableError: If the status does not permit voting, a poll
                was already held, weights are negative, or total weight is 0.
        """
        if not can_transition(dispute.status, DisputeStatus.VOTING):
            raise VotingUnavailableError(
                f"Dispute {dispute.id} cannot open voting from {dispute.status.value}",
                dispute.id,
            )
        if dispute.voting_started_at is not None:
            raise VotingUnavailableError(
                f"Dispute {dispute.id} already held a poll", dispute.id
            )

        weights = {address: int(weight) for address, weight in eligible_voters.items()}
        if any(weight < 0 for weight in weights.values()):
            raise VotingUnavailableError("Voting weights cannot be negative", dispute.id)

        total = sum(weights.values())
        if total == 0:
            raise VotingUnavailableError(
                f"Dispute {dispute.id} has no eligible voting weight", dispute.id
            )

        now = self.clock()
        await self.store.apply_transition(dispute, DisputeStatus.VOTING, actor)
        dispute.voting_enabled = True
        dispute.voting_started_at = now
        dispute.voting_ends_at = now + self.rules.voting_duration
        dispute.eligible_voters = weights
        dispute.vote_tally = compute_tally([], total, self.rules.quorum_percent)

        await self.timeline.record(
            dispute.id,
            EventType.VOTING_OPENED,
            actor,
            {
                "eligible_voters": len(weights),
                "total_voting_power": total,
                "voting_ends_at": dispute.voting_ends_at.isoformat(),
            },
            description="Community voting opened",
        )
        logger.info(
            f"Voting opened for {dispute.id}: {len(weights)} voters, "
            f"weight={total}, ends={dispute.voting_ends_at.isoformat()}"
        )

    async def cast_vote(
        self,
        dispute: Dispute,
        voter: str,
        option: VoteOption,
        partial_percent: Optional[float] = None,
        reason: Optional[str] = None,
        signature: Optional[bytes] = None
    ) -> Vote:
        """Record one vote and refresh the running tally on the dispute."""
        now = self.clock()
        if (dispute.status != DisputeStatus.VOTING
                or not dispute.voting_enabled
                or dispute.voting_ends_at is None
                or now > dispute.voting_ends_at):
            raise VotingClosedError(f"Voting is closed for dispute {dispute.id}", dispute.id)

        votes = await self.repository.list_votes(dispute.id)
        if any(v.voter == voter for v in votes):
            raise DuplicateVoteError(
                f"{voter} already voted on dispute {dispute.id}", dispute.id
            )

        weight = dispute.eligible_voters.get(voter, 0)
        if weight <= 0:
            raise InvalidVoteWeightError(
                f"{voter} has no voting weight in dispute {dispute.id}", dispute.id
            )

        self._validate_partial(dispute.id, option, partial_percent)

        vote = Vote(
            id=new_id("vote"),
            dispute_id=dispute.id,
            voter=voter,
            voting_power=weight,
            vote=option,
            voted_at=now,
            partial_percent=float(partial_percent) if partial_percent is not None else None,
            reason=reason,
            signature=signature,
        )
        await self.repository.append_vote(vote)

        votes.append(vote)
        dispute.vote_tally = compute_tally(
            votes, dispute.total_eligible_weight, self.rules.quorum_percent
        )

        await self.timeline.record(
            dispute.id,
            EventType.VOTE_CAST,
            voter,
            {"vote_id": vote.id, "vote": option.value, "voting_power": weight},
            description=f"Vote cast: {option.value}",
        )
        return vote

    async def votes(self, dispute_id: str) -> List[Vote]:
        return await self.repository.list_votes(dispute_id)

    async def tally(self, dispute: Dispute) -> VoteTally:
        """Frozen tally once the poll closed, otherwise recomputed from votes."""
        if dispute.vote_tally is not None and dispute.vote_tally.frozen:
            return dispute.vote_tally
        votes = await self.repository.list_votes(dispute.id)
        return compute_tally(votes, dispute.total_eligible_weight, self.rules.quorum_percent)

    async def close_voting(
        self,
        dispute: Dispute,
        actor: str = "system",
        reason: str = "deadline"
    ) -> VoteTally:
        """Freeze the tally and stop accepting votes. Status is left to the caller."""
        tally = await self.tally(dispute)
        tally.frozen = True
        dispute.vote_tally = tally
        dispute.voting_enabled = False

        await self.timeline.record(
            dispute.id,
            EventType.VOTING_CLOSED,
            actor,
            {"reason": reason, "tally": tally.to_dict()},
            description="Community voting closed",
        )
        logger.info(
            f"Voting closed for {dispute.id} ({reason}): "
            f"participated={tally.participated_weight}/{tally.total_voting_power}, "
            f"quorum={tally.quorum_reached}, consensus={tally.consensus_reached}"
        )
        return tally

    @staticmethod
    def _validate_partial(
        dispute_id: str,
        option: VoteOption,
        partial_percent: Optional[float]
    ) -> None:
        if option == VoteOption.PARTIAL:
            if partial_percent is None or isinstance(partial_percent, bool):
                raise InvalidPartialPercentError(
                    "Partial vote requires a percentage between 0 and 100", dispute_id
                )
            if not 0 <= partial_percent <= 100:
                raise InvalidPartialPercentError(
                    f"Partial percentage {partial_percent} is outside [0, 100]", dispute_id
                )
        elif partial_percent is not None:
            raise InvalidPartialPercentError(
                f"Partial percentage is only allowed for partial votes, not {option.value}",
                dispute_id,
            )
