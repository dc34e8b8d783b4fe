"""
Module: arbiter/registry.py
Description: Campaign/pledge registry port

Disputes reference campaigns and pledges by plain id; voter weights and
escrow totals are looked up here when needed and never owned by the engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class EscrowSummary:
    total_escrowed_amount: int = 0
    affected_backer_count: int = 0


class PledgeRegistry(ABC):
    """Lookups against the external campaign/pledge registry."""

    @abstractmethod
    async def eligible_voters(self, campaign_id: str, pledge_ids: List[str]) -> Dict[str, int]:
        """Map of backer address to voting weight (pledged amount)."""

    @abstractmethod
    async def escrow_summary(self, campaign_id: str, pledge_ids: List[str]) -> EscrowSummary:
        """Escrowed value and number of backers affected by a dispute."""


@dataclass
class Pledge:
    id: str
    campaign_id: str
    backer: str
    amount: int


@dataclass
class InMemoryPledgeRegistry(PledgeRegistry):
    """Registry backed by a list of pledges, for tests and local runs."""
    pledges: List[Pledge] = field(default_factory=list)

    def add_pledge(self, pledge_id: str, campaign_id: str, backer: str, amount: int) -> Pledge:
        pledge = Pledge(pledge_id, campaign_id, backer, amount)
        self.pledges.append(pledge)
        return pledge

    def _matching(self, campaign_id: str, pledge_ids: Optional[List[str]]) -> List[Pledge]:
        # No pledge ids means the whole campaign (milestone disputes)
        wanted = set(pledge_ids or [])
        return [
            p for p in self.pledges
            if p.campaign_id == campaign_id and (not wanted or p.id in wanted)
        ]

    async def eligible_voters(self, campaign_id: str, pledge_ids: List[str]) -> Dict[str, int]:
        weights: Dict[str, int] = {}
        for pledge in self._matching(campaign_id, pledge_ids):
            weights[pledge.backer] = weights.get(pledge.backer, 0) + pledge.amount
        return weights

    async def escrow_summary(self, campaign_id: str, pledge_ids: List[str]) -> EscrowSummary:
        pledges = self._matching(campaign_id, pledge_ids)
        return EscrowSummary(
            total_escrowed_amount=sum(p.amount for p in pledges),
            affected_backer_count=len({p.backer for p in pledges}),
        )
