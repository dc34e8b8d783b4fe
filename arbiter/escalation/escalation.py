"""
Escalation Controller for the dispute engine

Decides and advances the resolution tier of a dispute:

1. At creation, oracle consensus picks the starting tier:
   consensus >= auto_resolve_threshold      -> automated (decided immediately)
   consensus >= community_vote_threshold    -> community (poll opened)
   otherwise, no oracle context, fraud_claim -> creator
2. Failed polls (quorum_failed, no_consensus) and stale tiers (timeout)
   move one tier up: automated -> community -> creator -> council.
3. Council is final: it cannot escalate and is flagged decision_overdue
   once past the escalation timeout.

Every tier change is written to the timeline as tier_escalated with its reason.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..config import EscalationRules
from ..errors import InvalidTransitionError, QuorumNotReachedError
from ..models import (
    TIER_ORDER,
    Dispute,
    DisputeCategory,
    DisputeStatus,
    EscalationReason,
    EventType,
    ResolutionDecision,
    ResolutionTier,
    utc_now,
)
from ..dispute_store import DisputeStore
from ..resolution import ResolutionEngine
from ..timeline import TimelineRecorder
from ..voting import VotingSubsystem

logger = logging.getLogger(__name__)

ESCALATABLE_STATUSES = (
    DisputeStatus.REVIEWING,
    DisputeStatus.VOTING,
    DisputeStatus.ESCALATED,
    DisputeStatus.APPEALED,
)

APPEAL_WINDOW_ELAPSED = "appeal_window_elapsed"


@dataclass
class SweepOutcome:
    """What a sweep did to one dispute."""
    action: str
    decision: Optional[ResolutionDecision] = None


class EscalationController:
    """Tier classification, forced escalation and per-dispute sweep."""

    def __init__(
        self,
        store: DisputeStore,
        voting: VotingSubsystem,
        resolution: ResolutionEngine,
        timeline: TimelineRecorder,
        rules: EscalationRules,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.voting = voting
        self.resolution = resolution
        self.timeline = timeline
        self.rules = rules
        self.clock = clock

    def classify(self, dispute: Dispute) -> Tuple[ResolutionTier, EscalationReason]:
        """Starting tier for a new dispute and the reason it was chosen."""
        if dispute.category == DisputeCategory.FRAUD_CLAIM or dispute.consensus_percent is None:
            return ResolutionTier.CREATOR, EscalationReason.CATEGORY_RULE

        consensus = dispute.consensus_percent
        if consensus >= self.rules.auto_resolve_threshold:
            return ResolutionTier.AUTOMATED, EscalationReason.AUTO_THRESHOLD
        if consensus >= self.rules.community_vote_threshold:
            return ResolutionTier.COMMUNITY, EscalationReason.AUTO_THRESHOLD
        return ResolutionTier.CREATOR, EscalationReason.AUTO_THRESHOLD

    async def route_new_dispute(
        self,
        dispute: Dispute,
        eligible_voters: Dict[str, int],
        actor: str = "system"
    ) -> Optional[ResolutionDecision]:
        """
        Move a pending dispute into review at its starting tier.

        Returns:
            The automated decision when the oracle consensus was decisive.
        """
        await self.store.apply_transition(dispute, DisputeStatus.REVIEWING, actor)

        tier, reason = self.classify(dispute)
        await self._set_tier(dispute, tier, reason, actor, initial=True)

        if tier == ResolutionTier.AUTOMATED:
            decision = self.resolution.decide_automated(dispute)
            await self.resolution.apply_decision(dispute, decision, actor)
            return decision

        if tier == ResolutionTier.COMMUNITY:
            await self._open_poll(dispute, eligible_voters, actor)
        return None

    async def escalate(
        self,
        dispute: Dispute,
        reason: EscalationReason,
        actor: str = "system",
        note: Optional[str] = None
    ) -> ResolutionTier:
        """
        Move the dispute one tier up.

        Raises:
            InvalidTransitionError: If the dispute is at council or its status
                does not allow escalation.
        """
        if dispute.current_tier == ResolutionTier.COUNCIL:
            raise InvalidTransitionError(
                f"Dispute {dispute.id} is already at council, the final tier", dispute.id
            )
        next_tier = TIER_ORDER[TIER_ORDER.index(dispute.current_tier) + 1]
        await self.escalate_to(dispute, next_tier, reason, actor, note=note)
        return dispute.current_tier

    async def escalate_to(
        self,
        dispute: Dispute,
        tier: ResolutionTier,
        reason: EscalationReason,
        actor: str = "system",
        eligible_voters: Optional[Dict[str, int]] = None,
        note: Optional[str] = None
    ) -> None:
        """Enter the given tier; community opens a poll, other tiers wait for a ruling."""
        if dispute.status not in ESCALATABLE_STATUSES:
            raise InvalidTransitionError(
                f"Dispute {dispute.id} cannot escalate from {dispute.status.value}",
                dispute.id,
            )

        if dispute.status == DisputeStatus.VOTING and dispute.voting_enabled:
            await self.voting.close_voting(dispute, actor, reason=reason.value)

        await self._set_tier(dispute, tier, reason, actor, note=note)

        if tier == ResolutionTier.COMMUNITY:
            await self._open_poll(dispute, eligible_voters or {}, actor)
        elif dispute.status != DisputeStatus.ESCALATED:
            await self.store.apply_transition(
                dispute, DisputeStatus.ESCALATED, actor, reason.value
            )

    async def on_voting_closed(
        self,
        dispute: Dispute,
        actor: str = "system",
        reason: str = "deadline"
    ) -> Optional[ResolutionDecision]:
        """Close the poll and either resolve from the tally or escalate."""
        tally = await self.voting.close_voting(dispute, actor, reason)
        votes = await self.voting.votes(dispute.id)

        try:
            decision = self.resolution.decide_by_vote(dispute, tally, votes)
        except QuorumNotReachedError as e:
            logger.warning(f"{e.message}; escalating")
            await self.escalate(dispute, EscalationReason.QUORUM_FAILED, actor)
            return None

        if decision is None:
            logger.warning(
                f"No majority for dispute {dispute.id} "
                f"({tally.leading_percent}% leading); escalating"
            )
            await self.escalate(dispute, EscalationReason.NO_CONSENSUS, actor)
            return None

        await self.resolution.apply_decision(dispute, decision, actor)
        return decision

    def needs_sweep(self, dispute: Dispute, now: datetime) -> bool:
        """Cheap pre-lock check used to pick sweep candidates."""
        if dispute.status == DisputeStatus.VOTING:
            return dispute.voting_ends_at is not None and now > dispute.voting_ends_at
        if dispute.status in (DisputeStatus.REVIEWING, DisputeStatus.ESCALATED):
            if dispute.current_tier == ResolutionTier.COUNCIL and dispute.decision_overdue:
                return False
            return now - dispute.tier_started_at > self.rules.escalation_timeout
        if dispute.status == DisputeStatus.RESOLVED:
            return self._appeal_window_elapsed(dispute, now)
        return False

    async def sweep_dispute(self, dispute: Dispute) -> Optional[SweepOutcome]:
        """Apply the time-driven rules to one dispute. Caller holds its lock."""
        now = self.clock()
        if not self.needs_sweep(dispute, now):
            return None

        if dispute.status == DisputeStatus.VOTING:
            decision = await self.on_voting_closed(dispute, reason="deadline")
            return SweepOutcome("voting_closed", decision)

        if dispute.status == DisputeStatus.RESOLVED:
            await self.store.apply_transition(
                dispute, DisputeStatus.CLOSED, "system", APPEAL_WINDOW_ELAPSED
            )
            await self._record_closed(dispute, APPEAL_WINDOW_ELAPSED, "system")
            return SweepOutcome("closed")

        if dispute.current_tier == ResolutionTier.COUNCIL:
            dispute.decision_overdue = True
            await self.timeline.record(
                dispute.id,
                EventType.DECISION_OVERDUE,
                "system",
                {"tier": dispute.current_tier.value,
                 "tier_started_at": dispute.tier_started_at.isoformat()},
                description="Council decision overdue",
            )
            logger.warning(f"Council decision overdue for dispute {dispute.id}")
            return SweepOutcome("overdue")

        await self.escalate(dispute, EscalationReason.TIMEOUT)
        return SweepOutcome("escalated")

    async def _open_poll(
        self,
        dispute: Dispute,
        eligible_voters: Dict[str, int],
        actor: str
    ) -> None:
        if sum(max(int(w), 0) for w in eligible_voters.values()) == 0:
            logger.warning(f"No eligible voting weight for dispute {dispute.id}")
            await self.escalate(dispute, EscalationReason.NO_ELIGIBLE_VOTERS, actor)
            return
        await self.voting.open_voting(dispute, eligible_voters, actor)

    async def _set_tier(
        self,
        dispute: Dispute,
        tier: ResolutionTier,
        reason: EscalationReason,
        actor: str,
        initial: bool = False,
        note: Optional[str] = None
    ) -> None:
        previous = dispute.current_tier
        dispute.current_tier = tier
        dispute.tier_started_at = self.clock()
        dispute.decision_overdue = False

        data: Dict[str, Any] = {"to": tier.value, "reason": reason.value}
        if not initial:
            data["from"] = previous.value
        if note:
            data["note"] = note
        await self.timeline.record(
            dispute.id,
            EventType.TIER_ESCALATED,
            actor,
            data,
            description=f"Tier set to {tier.value} ({reason.value})",
        )
        logger.info(f"Dispute {dispute.id} now at {tier.value} tier ({reason.value})")

    async def _record_closed(self, dispute: Dispute, reason: str, actor: str) -> None:
        await self.timeline.record(
            dispute.id,
            EventType.CLOSED,
            actor,
            {"reason": reason},
            description=f"Dispute closed ({reason})",
        )

    def _appeal_window_elapsed(self, dispute: Dispute, now: datetime) -> bool:
        decision = dispute.decision
        if decision is None or not decision.appealable or decision.appeal_deadline is None:
            return True
        return now > decision.appeal_deadline


class EscalationSweeper:
    """
    Periodic background sweep.

    One run at a time: a tick that arrives while a run is still in progress
    is skipped, not queued.
    """

    def __init__(
        self,
        run: Callable[[], Awaitable[Any]],
        interval_seconds: float = 60.0
    ):
        self._run = run
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.runs_completed = 0
        self.runs_skipped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def start(self):
        """Start the sweep loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Escalation sweep started (every {self.interval_seconds}s)")

    async def stop(self):
        """Stop the sweep loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Escalation sweep stopped")

    async def run_once(self) -> Optional[Any]:
        """Run one sweep now unless one is already in progress."""
        if self._running:
            self.runs_skipped += 1
            logger.debug("Sweep already in progress; skipping")
            return None

        self._running = True
        try:
            result = await self._run()
            self.runs_completed += 1
            return result
        finally:
            self._running = False

    async def _loop(self):
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self._guarded_run()
            except asyncio.CancelledError:
                break

    async def _guarded_run(self):
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Escalation sweep failed: {e}")
