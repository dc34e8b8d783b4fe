"""
Dispute Store for the dispute engine

Owns dispute entities and their lifecycle. Single source of truth for status:
every status change goes through the state machine below and is written to
the timeline.

    pending   -> reviewing
    reviewing -> voting | escalated | resolved
    voting    -> resolved | escalated
    escalated -> voting | resolved
    resolved  -> appealed | closed
    appealed  -> voting | escalated | resolved
    closed    -> closed (no-op)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Union

from ..errors import InvalidTransitionError, NotFoundError
from ..models import (
    PRIORITY_RANK,
    Dispute,
    DisputeCategory,
    DisputePriority,
    DisputeStatus,
    EventType,
    ResolutionTier,
    as_utc,
    utc_now,
)
from ..persistence import DisputeRepository
from ..timeline import TimelineRecorder

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[DisputeStatus, FrozenSet[DisputeStatus]] = {
    DisputeStatus.PENDING: frozenset({DisputeStatus.REVIEWING}),
    DisputeStatus.REVIEWING: frozenset({
        DisputeStatus.VOTING, DisputeStatus.ESCALATED, DisputeStatus.RESOLVED
    }),
    DisputeStatus.VOTING: frozenset({DisputeStatus.RESOLVED, DisputeStatus.ESCALATED}),
    DisputeStatus.ESCALATED: frozenset({DisputeStatus.VOTING, DisputeStatus.RESOLVED}),
    DisputeStatus.RESOLVED: frozenset({DisputeStatus.APPEALED, DisputeStatus.CLOSED}),
    DisputeStatus.APPEALED: frozenset({
        DisputeStatus.VOTING, DisputeStatus.ESCALATED, DisputeStatus.RESOLVED
    }),
    DisputeStatus.CLOSED: frozenset(),
}


def can_transition(current: DisputeStatus, target: DisputeStatus) -> bool:
    if current == DisputeStatus.CLOSED and target == DisputeStatus.CLOSED:
        return True
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class DisputeFilter:
    """Criteria for list(). Unset fields match everything."""
    campaign_id: Optional[str] = None
    status: Optional[Union[DisputeStatus, Sequence[DisputeStatus]]] = None
    category: Optional[DisputeCategory] = None
    tier: Optional[ResolutionTier] = None
    raised_by: Optional[str] = None
    affects_address: Optional[str] = None
    priority: Optional[DisputePriority] = None
    voting_active: Optional[bool] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None

    def matches(self, dispute: Dispute, now: datetime) -> bool:
        if self.campaign_id is not None and dispute.campaign_id != self.campaign_id:
            return False
        if self.status is not None:
            statuses = [self.status] if isinstance(self.status, DisputeStatus) else list(self.status)
            if dispute.status not in statuses:
                return False
        if self.category is not None and dispute.category != self.category:
            return False
        if self.tier is not None and dispute.current_tier != self.tier:
            return False
        if self.raised_by is not None and dispute.raised_by != self.raised_by:
            return False
        if self.affects_address is not None:
            if (self.affects_address not in dispute.eligible_voters
                    and dispute.raised_by != self.affects_address):
                return False
        if self.priority is not None and dispute.priority != self.priority:
            return False
        if self.voting_active is not None and dispute.voting_active_at(now) != self.voting_active:
            return False
        if self.from_date is not None and dispute.raised_at < as_utc(self.from_date):
            return False
        if self.to_date is not None and dispute.raised_at > as_utc(self.to_date):
            return False
        return True


class DisputeStore:
    """Dispute persistence plus lifecycle validation."""

    def __init__(
        self,
        repository: DisputeRepository,
        timeline: TimelineRecorder,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.timeline = timeline
        self.clock = clock

    async def create(self, dispute: Dispute, actor: Optional[str] = None) -> Dispute:
        """Persist a new dispute and record its creation."""
        await self.repository.save_dispute(dispute)
        await self.timeline.record(
            dispute.id,
            EventType.CREATED,
            actor or dispute.raised_by,
            {
                "category": dispute.category.value,
                "title": dispute.title,
                "priority": dispute.priority.value,
            },
            description="Dispute created",
        )
        logger.info(f"Created dispute {dispute.id}: {dispute.category.value}")
        return dispute

    async def get(self, dispute_id: str) -> Dispute:
        dispute = await self.repository.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found", dispute_id)
        return dispute

    async def save(self, dispute: Dispute) -> None:
        dispute.updated_at = self.clock()
        await self.repository.save_dispute(dispute)

    async def apply_transition(
        self,
        dispute: Dispute,
        new_status: DisputeStatus,
        actor: str = "system",
        reason: Optional[str] = None
    ) -> bool:
        """
        Validate and apply a status change in place (the caller saves).

        Returns:
            False for the closed -> closed no-op, True otherwise.

        Raises:
            InvalidTransitionError: If the state machine forbids the change.
        """
        previous = dispute.status
        if not can_transition(previous, new_status):
            raise InvalidTransitionError(
                f"Cannot move dispute {dispute.id} from {previous.value} to {new_status.value}",
                dispute.id,
            )
        if previous == new_status:
            return False

        self._set_status(dispute, new_status, reason)
        await self._record_status_change(dispute, previous, actor, reason)
        return True

    async def force_close(self, dispute: Dispute, actor: str, reason: str) -> bool:
        """Administrative close from any non-terminal status."""
        if dispute.is_closed:
            return False

        previous = dispute.status
        self._set_status(dispute, DisputeStatus.CLOSED, reason)
        await self._record_status_change(dispute, previous, actor, reason)
        return True

    async def transition(
        self,
        dispute_id: str,
        new_status: DisputeStatus,
        actor: str = "system",
        reason: Optional[str] = None
    ) -> Dispute:
        """Load, transition and persist in one step."""
        dispute = await self.get(dispute_id)
        if await self.apply_transition(dispute, new_status, actor, reason):
            await self.save(dispute)
        return dispute

    async def list(self, filters: Optional[DisputeFilter] = None) -> List[Dispute]:
        """Disputes matching the filter, most urgent and newest first."""
        filters = filters or DisputeFilter()
        now = self.clock()
        disputes = [d for d in await self.repository.list_disputes() if filters.matches(d, now)]
        disputes.sort(key=lambda d: d.raised_at, reverse=True)
        disputes.sort(key=lambda d: PRIORITY_RANK[d.priority])
        return disputes

    def _set_status(
        self,
        dispute: Dispute,
        new_status: DisputeStatus,
        reason: Optional[str]
    ) -> None:
        now = self.clock()
        dispute.status = new_status
        dispute.updated_at = now

        if new_status == DisputeStatus.CLOSED:
            dispute.closed_at = now
            dispute.close_reason = reason
            dispute.voting_enabled = False
            if dispute.decision is not None:
                dispute.decision.appealable = False

    async def _record_status_change(
        self,
        dispute: Dispute,
        previous: DisputeStatus,
        actor: str,
        reason: Optional[str]
    ) -> None:
        data = {"from": previous.value, "to": dispute.status.value}
        if reason:
            data["reason"] = reason
        await self.timeline.record(
            dispute.id,
            EventType.STATUS_CHANGED,
            actor,
            data,
            description=f"Status changed from {previous.value} to {dispute.status.value}",
        )
