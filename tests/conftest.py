"""
Shared fixtures for the arbiter test suite.

Time is driven by a FakeClock so voting deadlines, escalation timeouts and
appeal windows can be crossed deterministically.
"""

import pytest
from datetime import datetime, timedelta, timezone

from arbiter.delivery import InMemoryEscrowClient
from arbiter.engine import DisputeEngine
from arbiter.models import Dispute, DisputeCategory, new_id
from arbiter.oracle_context import ApiResponse
from arbiter.persistence import InMemoryDisputeRepository
from arbiter.registry import InMemoryPledgeRegistry


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


ALL_PLEDGES = ["pledge_a", "pledge_b", "pledge_c", "pledge_d"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return InMemoryDisputeRepository()


@pytest.fixture
def registry():
    """
    campaign_1: alice 400, bob 200, carol 300, dave 100 (total 1000)
    campaign_2: erin 300, frank 300 (total 600)
    campaign_empty: no pledges
    """
    registry = InMemoryPledgeRegistry()
    registry.add_pledge("pledge_a", "campaign_1", "alice", 400)
    registry.add_pledge("pledge_b", "campaign_1", "bob", 200)
    registry.add_pledge("pledge_c", "campaign_1", "carol", 300)
    registry.add_pledge("pledge_d", "campaign_1", "dave", 100)
    registry.add_pledge("pledge_e", "campaign_2", "erin", 300)
    registry.add_pledge("pledge_f", "campaign_2", "frank", 300)
    return registry


@pytest.fixture
def escrow():
    return InMemoryEscrowClient()


@pytest.fixture
def engine(repository, registry, escrow, clock):
    return DisputeEngine(
        repository=repository,
        registry=registry,
        escrow=escrow,
        clock=clock,
        delivery_max_attempts=3,
        delivery_base_delay=0.0,
    )


@pytest.fixture
def oracle_responses(clock):
    """Factory: n_completed responses attesting completion, n_failed denying it."""
    def build(n_completed: int, n_failed: int):
        responses = []
        for i in range(n_completed):
            responses.append(ApiResponse(
                oracle_id=f"oracle_ok_{i}", success=True,
                data={"verified": True}, timestamp=clock()
            ))
        for i in range(n_failed):
            responses.append(ApiResponse(
                oracle_id=f"oracle_no_{i}", success=True,
                data={"verified": False}, timestamp=clock()
            ))
        return responses
    return build


@pytest.fixture
def make_dispute(clock):
    """Factory for bare Dispute entities (not persisted)."""
    def build(**overrides):
        fields = dict(
            id=new_id("dispute"),
            campaign_id="campaign_1",
            category=DisputeCategory.MILESTONE_DISPUTE,
            title="Milestone not delivered",
            description="The creator claims the milestone shipped but it did not.",
            raised_by="alice",
            raised_at=clock(),
            pledge_ids=list(ALL_PLEDGES),
        )
        fields.update(overrides)
        return Dispute(**fields)
    return build


@pytest.fixture
def create_community_dispute(engine, oracle_responses):
    """Factory: dispute whose 75% oracle consensus opens a community poll."""
    async def build(campaign_id: str = "campaign_1", pledge_ids=None):
        if pledge_ids is None:
            pledge_ids = ALL_PLEDGES if campaign_id == "campaign_1" else ["pledge_e", "pledge_f"]
        return await engine.create_dispute(
            campaign_id=campaign_id,
            category=DisputeCategory.ORACLE_DISAGREEMENT,
            title="Oracles disagree on milestone",
            description="Three of four oracles report the milestone as completed.",
            raised_by="bob",
            pledge_ids=pledge_ids,
            oracle_responses=oracle_responses(3, 1),
        )
    return build
