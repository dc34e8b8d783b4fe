"""
Test suite for the Dispute Store

Test Command: pytest tests/test_dispute_store.py -v
"""

import pytest
from datetime import timedelta

from arbiter.dispute_store import ALLOWED_TRANSITIONS, DisputeFilter, can_transition
from arbiter.errors import InvalidDisputeError, InvalidTransitionError, NotFoundError
from arbiter.models import (
    DisputeCategory,
    DisputePriority,
    DisputeStatus,
    EventType,
    ResolutionTier,
)


class TestDisputeEntity:
    """Test entity invariants."""

    def test_requires_pledges_or_milestone(self, make_dispute):
        with pytest.raises(InvalidDisputeError):
            make_dispute(pledge_ids=[], milestone_id=None)

    def test_milestone_only_is_valid(self, make_dispute):
        dispute = make_dispute(pledge_ids=[], milestone_id="milestone_1")
        assert dispute.milestone_id == "milestone_1"

    def test_negative_escrow_rejected(self, make_dispute):
        with pytest.raises(InvalidDisputeError):
            make_dispute(total_escrowed_amount=-1)

    def test_defaults(self, make_dispute, clock):
        dispute = make_dispute()

        assert dispute.status == DisputeStatus.PENDING
        assert dispute.tier_started_at == clock()
        assert dispute.updated_at == clock()

    def test_dict_round_trip(self, make_dispute, oracle_responses):
        dispute = make_dispute(oracle_responses=oracle_responses(2, 1), tags=["urgent"])
        restored = type(dispute).from_dict(dispute.to_dict())

        assert restored.to_dict() == dispute.to_dict()


class TestStateMachine:
    """Test the lifecycle transition table."""

    @pytest.mark.parametrize("current", list(DisputeStatus))
    @pytest.mark.parametrize("target", list(DisputeStatus))
    def test_table(self, current, target):
        expected = target in ALLOWED_TRANSITIONS[current] or (
            current == DisputeStatus.CLOSED and target == DisputeStatus.CLOSED
        )
        assert can_transition(current, target) == expected

    def test_closed_is_terminal(self):
        for target in DisputeStatus:
            if target != DisputeStatus.CLOSED:
                assert not can_transition(DisputeStatus.CLOSED, target)


class TestDisputeStore:
    """Test persistence and transitions."""

    @pytest.mark.asyncio
    async def test_create_records_event(self, engine, make_dispute):
        dispute = await engine.store.create(make_dispute())

        events = await engine.timeline.timeline(dispute.id)
        assert [e.event_type for e in events] == [EventType.CREATED]
        assert events[0].actor == "alice"

    @pytest.mark.asyncio
    async def test_get_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.store.get("dispute_missing")

    @pytest.mark.asyncio
    async def test_valid_transition_persists(self, engine, make_dispute):
        dispute = await engine.store.create(make_dispute())

        updated = await engine.store.transition(dispute.id, DisputeStatus.REVIEWING, "ops")

        assert updated.status == DisputeStatus.REVIEWING
        stored = await engine.store.get(dispute.id)
        assert stored.status == DisputeStatus.REVIEWING
        events = await engine.timeline.timeline(dispute.id, [EventType.STATUS_CHANGED])
        assert events[0].data == {"from": "pending", "to": "reviewing"}

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_dispute_unchanged(self, engine, make_dispute):
        dispute = await engine.store.create(make_dispute())

        with pytest.raises(InvalidTransitionError):
            await engine.store.transition(dispute.id, DisputeStatus.RESOLVED)

        stored = await engine.store.get(dispute.id)
        assert stored.status == DisputeStatus.PENDING
        assert await engine.timeline.timeline(dispute.id, [EventType.STATUS_CHANGED]) == []

    @pytest.mark.asyncio
    async def test_closed_to_closed_is_noop(self, engine, make_dispute):
        dispute = await engine.store.create(make_dispute())
        await engine.store.force_close(dispute, "admin", "administrative_override")
        await engine.store.save(dispute)
        before = await engine.timeline.timeline(dispute.id)

        changed = await engine.store.apply_transition(dispute, DisputeStatus.CLOSED)

        assert changed is False
        assert len(await engine.timeline.timeline(dispute.id)) == len(before)

    @pytest.mark.asyncio
    async def test_force_close_from_voting(self, engine, make_dispute, clock):
        dispute = make_dispute(status=DisputeStatus.VOTING, voting_enabled=True)
        await engine.store.create(dispute)

        closed = await engine.store.force_close(dispute, "admin", "administrative_override")

        assert closed is True
        assert dispute.status == DisputeStatus.CLOSED
        assert dispute.voting_enabled is False
        assert dispute.closed_at == clock()
        assert dispute.close_reason == "administrative_override"


class TestListDisputes:
    """Test filtering and ordering."""

    @pytest.mark.asyncio
    async def test_priority_then_newest_first(self, engine, make_dispute, clock):
        low_old = await engine.store.create(make_dispute(priority=DisputePriority.LOW))
        clock.advance(hours=1)
        critical = await engine.store.create(make_dispute(priority=DisputePriority.CRITICAL))
        clock.advance(hours=1)
        low_new = await engine.store.create(make_dispute(priority=DisputePriority.LOW))

        ids = [d.id for d in await engine.store.list()]

        assert ids == [critical.id, low_new.id, low_old.id]

    @pytest.mark.asyncio
    async def test_filters(self, engine, make_dispute, clock):
        first = await engine.store.create(make_dispute(
            category=DisputeCategory.FRAUD_CLAIM, raised_by="bob", eligible_voters={"carol": 10}
        ))
        clock.advance(days=2)
        second = await engine.store.create(make_dispute(
            campaign_id="campaign_2", current_tier=ResolutionTier.COUNCIL
        ))

        async def ids(**criteria):
            return [d.id for d in await engine.store.list(DisputeFilter(**criteria))]

        assert await ids(campaign_id="campaign_2") == [second.id]
        assert await ids(category=DisputeCategory.FRAUD_CLAIM) == [first.id]
        assert await ids(tier=ResolutionTier.COUNCIL) == [second.id]
        assert await ids(raised_by="bob") == [first.id]
        assert await ids(affects_address="carol") == [first.id]
        assert await ids(status=[DisputeStatus.PENDING, DisputeStatus.VOTING]) == [second.id, first.id]
        assert await ids(from_date=clock() - timedelta(days=1)) == [second.id]
        assert await ids(to_date=clock() - timedelta(days=1)) == [first.id]
        assert await ids(voting_active=True) == []

    @pytest.mark.asyncio
    async def test_naive_dates_read_as_utc(self, engine, make_dispute, clock):
        dispute = await engine.store.create(make_dispute())
        naive_now = clock().replace(tzinfo=None)

        after = DisputeFilter(from_date=naive_now - timedelta(minutes=1))
        before = DisputeFilter(to_date=naive_now - timedelta(minutes=1))

        assert [d.id for d in await engine.store.list(after)] == [dispute.id]
        assert await engine.store.list(before) == []
