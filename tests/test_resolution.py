"""
Test suite for the Resolution Engine

Test Command: pytest tests/test_resolution.py -v
"""

import pytest
from datetime import timedelta

from arbiter.errors import (
    InvalidDecisionError,
    InvalidTransitionError,
    NotAppealableError,
    QuorumNotReachedError,
)
from arbiter.models import (
    DisputeStatus,
    EventType,
    ResolutionOutcome,
    ResolutionTier,
    Vote,
    VoteOption,
    utc_now,
)
from arbiter.resolution import validate_split, weighted_partial_percent
from arbiter.voting import compute_tally


def partial_vote(voter, power, percent):
    return Vote(
        id=f"vote_{voter}", dispute_id="d", voter=voter, voting_power=power,
        vote=VoteOption.PARTIAL, voted_at=utc_now(), partial_percent=percent,
    )


def simple_vote(voter, option, power):
    return Vote(
        id=f"vote_{voter}", dispute_id="d", voter=voter, voting_power=power,
        vote=option, voted_at=utc_now(),
    )


class TestWeightedPartial:
    """Test the weight-weighted mean of partial percentages."""

    def test_equal_weights(self):
        votes = [partial_vote("a", 300, 80), partial_vote("b", 300, 40)]
        assert weighted_partial_percent(votes) == 60

    def test_unequal_weights(self):
        votes = [partial_vote("a", 100, 90), partial_vote("b", 300, 50)]
        assert weighted_partial_percent(votes) == 60

    def test_rounds_half_up(self):
        assert weighted_partial_percent([partial_vote("a", 1, 62.5)]) == 63
        assert weighted_partial_percent([partial_vote("a", 1, 62.4)]) == 62

    def test_ignores_other_options(self):
        votes = [partial_vote("a", 100, 30), simple_vote("b", VoteOption.RELEASE, 900)]
        assert weighted_partial_percent(votes) == 30


class TestValidateSplit:
    """Test decision percentage validation."""

    @pytest.mark.parametrize("outcome,release,refund", [
        (ResolutionOutcome.RELEASE, 100, 0),
        (ResolutionOutcome.REFUND, 0, 100),
        (ResolutionOutcome.PARTIAL, 35, 65),
    ])
    def test_valid(self, outcome, release, refund):
        validate_split(outcome, release, refund)

    @pytest.mark.parametrize("outcome,release,refund", [
        (ResolutionOutcome.PARTIAL, 60, 50),
        (ResolutionOutcome.PARTIAL, 101, -1),
        (ResolutionOutcome.PARTIAL, 60.0, 40),
        (ResolutionOutcome.RELEASE, 90, 10),
        (ResolutionOutcome.REFUND, 10, 90),
    ])
    def test_invalid(self, outcome, release, refund):
        with pytest.raises(InvalidDecisionError):
            validate_split(outcome, release, refund)


class TestDeciders:
    """Test automated, vote-driven and manual decisions."""

    def test_automated_completed(self, engine, make_dispute, clock):
        dispute = make_dispute(consensus_percent=95.0, oracle_completed=True)

        decision = engine.resolution.decide_automated(dispute)

        assert (decision.release_percent, decision.refund_percent) == (100, 0)
        assert decision.decided_by == ResolutionTier.AUTOMATED
        assert decision.appealable is True
        assert decision.appeal_deadline == clock() + timedelta(hours=48)

    def test_automated_not_completed(self, engine, make_dispute):
        dispute = make_dispute(consensus_percent=92.0, oracle_completed=False)

        decision = engine.resolution.decide_automated(dispute)

        assert decision.outcome == ResolutionOutcome.REFUND
        assert (decision.release_percent, decision.refund_percent) == (0, 100)

    def test_vote_release(self, engine, make_dispute):
        votes = [simple_vote("alice", VoteOption.RELEASE, 400),
                 simple_vote("bob", VoteOption.REFUND, 200)]
        tally = compute_tally(votes, 1000, 25)

        decision = engine.resolution.decide_by_vote(make_dispute(), tally, votes)

        assert decision.release_percent == 100
        assert decision.decided_by == ResolutionTier.COMMUNITY
        assert decision.vote_tally is tally

    def test_vote_partial(self, engine, make_dispute):
        votes = [partial_vote("erin", 300, 80), partial_vote("frank", 300, 40)]
        tally = compute_tally(votes, 600, 25)

        decision = engine.resolution.decide_by_vote(make_dispute(), tally, votes)

        assert decision.outcome == ResolutionOutcome.PARTIAL
        assert (decision.release_percent, decision.refund_percent) == (60, 40)

    def test_vote_without_quorum(self, engine, make_dispute):
        votes = [simple_vote("dave", VoteOption.RELEASE, 100)]
        tally = compute_tally(votes, 1000, 25)

        with pytest.raises(QuorumNotReachedError):
            engine.resolution.decide_by_vote(make_dispute(), tally, votes)

    def test_vote_tie_has_no_decision(self, engine, make_dispute):
        votes = [simple_vote("a", VoteOption.RELEASE, 300), simple_vote("b", VoteOption.REFUND, 300)]
        tally = compute_tally(votes, 1000, 25)

        assert engine.resolution.decide_by_vote(make_dispute(), tally, votes) is None

    def test_manual_council_is_final(self, engine, make_dispute):
        dispute = make_dispute(
            status=DisputeStatus.ESCALATED, current_tier=ResolutionTier.COUNCIL
        )

        decision = engine.resolution.decide_manually(
            dispute, ResolutionOutcome.PARTIAL, 70, 30, "Partial delivery"
        )

        assert decision.decided_by == ResolutionTier.COUNCIL
        assert decision.appealable is False
        assert decision.appeal_deadline is None

    def test_manual_rejected_outside_manual_tiers(self, engine, make_dispute):
        dispute = make_dispute(
            status=DisputeStatus.VOTING, current_tier=ResolutionTier.COMMUNITY
        )

        with pytest.raises(InvalidTransitionError):
            engine.resolution.decide_manually(
                dispute, ResolutionOutcome.RELEASE, 100, 0, "Override"
            )

    def test_manual_invalid_split(self, engine, make_dispute):
        dispute = make_dispute(status=DisputeStatus.REVIEWING)

        with pytest.raises(InvalidDecisionError):
            engine.resolution.decide_manually(
                dispute, ResolutionOutcome.PARTIAL, 70, 40, "Bad math"
            )


class TestApplyAndAppeal:
    """Test applying decisions and appeal eligibility."""

    @pytest.mark.asyncio
    async def test_apply_supersedes_previous(self, engine, make_dispute, clock):
        dispute = await engine.store.create(make_dispute())
        await engine.store.apply_transition(dispute, DisputeStatus.REVIEWING)
        first = engine.resolution.decide_manually(
            dispute, ResolutionOutcome.REFUND, 0, 100, "Creator concedes"
        )
        await engine.resolution.apply_decision(dispute, first)

        await engine.store.apply_transition(dispute, DisputeStatus.APPEALED)
        await engine.store.apply_transition(dispute, DisputeStatus.ESCALATED)
        dispute.current_tier = ResolutionTier.COUNCIL
        clock.advance(hours=1)
        second = engine.resolution.decide_manually(
            dispute, ResolutionOutcome.PARTIAL, 50, 50, "Council split"
        )
        await engine.resolution.apply_decision(dispute, second)

        assert dispute.decision is second
        assert dispute.decision_history == [first]
        assert dispute.resolved_at == clock()
        events = await engine.timeline.timeline(dispute.id, [EventType.RESOLVED])
        assert len(events) == 2

    def test_appeal_targets(self, engine, make_dispute):
        for decided_by, expected in [
            (ResolutionTier.AUTOMATED, ResolutionTier.COMMUNITY),
            (ResolutionTier.COMMUNITY, ResolutionTier.COUNCIL),
            (ResolutionTier.CREATOR, ResolutionTier.COUNCIL),
        ]:
            dispute = make_dispute(status=DisputeStatus.RESOLVED, current_tier=decided_by)
            dispute.decision = engine.resolution._build(
                ResolutionOutcome.RELEASE, 100, decided_by, "test"
            )
            assert engine.resolution.appeal_target(dispute) == expected

    def test_appeal_window(self, engine, make_dispute, clock):
        dispute = make_dispute(status=DisputeStatus.RESOLVED)
        dispute.decision = engine.resolution._build(
            ResolutionOutcome.RELEASE, 100, ResolutionTier.CREATOR, "test"
        )

        clock.advance(hours=48)
        assert engine.resolution.appeal_target(dispute) == ResolutionTier.COUNCIL

        clock.advance(seconds=1)
        with pytest.raises(NotAppealableError):
            engine.resolution.appeal_target(dispute)

    def test_unresolved_dispute_cannot_be_appealed(self, engine, make_dispute):
        with pytest.raises(InvalidTransitionError):
            engine.resolution.appeal_target(make_dispute(status=DisputeStatus.VOTING))
