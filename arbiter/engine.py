"""
Module: arbiter/engine.py
Description: Dispute engine facade

Wires the dispute store, evidence ledger, voting subsystem, resolution
engine, escalation controller and timeline recorder over one injected
repository, and exposes the operations callers use.

Concurrency:
- Every mutation of a dispute runs under that dispute's lock
- Registry lookups happen before the lock is taken
- Decisions are queued for escrow delivery after the lock is released
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import ArbiterConfig, EscalationRules, DEFAULT_ESCALATION_RULES, get_config, load_rules
from .delivery import DecisionOutbox, DeliveryJob, EscrowClient, HttpEscrowClient, InMemoryEscrowClient
from .dispute_store import DisputeFilter, DisputeStore
from .errors import DisputeError, InvalidTransitionError
from .escalation import EscalationController, EscalationSweeper
from .evidence_ledger import EvidenceLedger, EvidenceSubmission
from .locks import DisputeLocks
from .models import (
    Dispute,
    DisputeCategory,
    DisputeEvent,
    DisputePriority,
    DisputeStatus,
    EscalationReason,
    EventType,
    Evidence,
    EvidenceType,
    ResolutionDecision,
    ResolutionOutcome,
    ResolutionTier,
    Vote,
    VoteOption,
    VoteTally,
    new_id,
    utc_now,
)
from .oracle_context import BaseOracleResponse, compute_consensus
from .persistence import DisputeRepository, InMemoryDisputeRepository, create_repository
from .registry import InMemoryPledgeRegistry, PledgeRegistry
from .resolution import ResolutionEngine
from .timeline import TimelineRecorder
from .voting import VotingSubsystem, outcome_locked

logger = logging.getLogger(__name__)

ADMINISTRATIVE_OVERRIDE = "administrative_override"

CATEGORY_PRIORITY = {
    DisputeCategory.FRAUD_CLAIM: DisputePriority.CRITICAL,
    DisputeCategory.ORACLE_FAILURE: DisputePriority.HIGH,
    DisputeCategory.MILESTONE_DISPUTE: DisputePriority.MEDIUM,
    DisputeCategory.CALCULATION_ERROR: DisputePriority.MEDIUM,
}


def priority_for(category: DisputeCategory) -> DisputePriority:
    return CATEGORY_PRIORITY.get(category, DisputePriority.LOW)


class DisputeEngine:
    """
    Entry point for dispute operations.

    Usage:
        engine = DisputeEngine.from_config()
        await engine.start()
        dispute = await engine.create_dispute(...)
        ...
        await engine.stop()
    """

    def __init__(
        self,
        repository: Optional[DisputeRepository] = None,
        registry: Optional[PledgeRegistry] = None,
        escrow: Optional[EscrowClient] = None,
        rules: Optional[EscalationRules] = None,
        clock: Callable[[], datetime] = utc_now,
        sweep_interval_seconds: float = 60.0,
        delivery_max_attempts: int = 5,
        delivery_base_delay: float = 1.0,
        delivery_max_delay: float = 60.0
    ):
        self.repository = repository or InMemoryDisputeRepository()
        self.registry = registry or InMemoryPledgeRegistry()
        self.rules = rules or DEFAULT_ESCALATION_RULES
        self.clock = clock

        self.timeline = TimelineRecorder(self.repository, clock)
        self.store = DisputeStore(self.repository, self.timeline, clock)
        self.evidence = EvidenceLedger(self.repository, self.timeline, clock)
        self.voting = VotingSubsystem(self.repository, self.store, self.timeline, self.rules, clock)
        self.resolution = ResolutionEngine(self.store, self.timeline, self.rules, clock)
        self.escalation = EscalationController(
            self.store, self.voting, self.resolution, self.timeline, self.rules, clock
        )

        self.locks = DisputeLocks()
        self.outbox = DecisionOutbox(
            escrow or InMemoryEscrowClient(),
            max_attempts=delivery_max_attempts,
            base_delay=delivery_base_delay,
            max_delay=delivery_max_delay,
            on_delivered=self._on_delivered,
            on_dead_letter=self._on_dead_letter,
        )
        self.sweeper = EscalationSweeper(self.process_timeouts, sweep_interval_seconds)
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional[ArbiterConfig] = None,
        registry: Optional[PledgeRegistry] = None,
        escrow: Optional[EscrowClient] = None
    ) -> "DisputeEngine":
        """Build an engine from ARBITER_* settings."""
        config = config or get_config()
        return cls(
            repository=create_repository(config.STORE_BACKEND, config.REDIS_URL),
            registry=registry,
            escrow=escrow or HttpEscrowClient(config.ESCROW_URL, config.ESCROW_TIMEOUT_SECONDS),
            rules=load_rules(config),
            sweep_interval_seconds=config.SWEEP_INTERVAL_SECONDS,
            delivery_max_attempts=config.DELIVERY_MAX_ATTEMPTS,
            delivery_base_delay=config.DELIVERY_BASE_DELAY_SECONDS,
            delivery_max_delay=config.DELIVERY_MAX_DELAY_SECONDS,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, run_sweeper: bool = True):
        """Open the repository and start background workers."""
        if self._started:
            return
        await self.repository.open()
        await self.outbox.start()
        await self.recover_deliveries()
        if run_sweeper:
            await self.sweeper.start()
        self._started = True
        logger.info("Dispute engine started")

    async def stop(self):
        """Stop background workers and close the repository."""
        if not self._started:
            return
        await self.sweeper.stop()
        await self.outbox.stop()
        await self.repository.close()
        self._started = False
        logger.info("Dispute engine stopped")

    async def recover_deliveries(self) -> int:
        """
        Re-queue decisions that were never confirmed delivered or dead-lettered.

        The outbox keeps jobs in memory only, so a job still queued or retrying
        at shutdown leaves no trace but the missing timeline event. Delivery is
        at-least-once; escrow must accept a repeated decision for a dispute.

        Returns:
            Number of decisions re-queued
        """
        settled = {EventType.DECISION_DELIVERED, EventType.DELIVERY_FAILED}
        recovered = 0
        disputes = await self.store.list(
            DisputeFilter(status=[DisputeStatus.RESOLVED, DisputeStatus.CLOSED])
        )
        for dispute in disputes:
            if dispute.decision is None:
                continue
            decided_at = dispute.decision.decided_at.isoformat()
            events = await self.timeline.timeline(dispute.id, event_types=settled)
            if any(e.data.get("decided_at") == decided_at for e in events):
                continue
            self.outbox.enqueue(dispute.id, dispute.decision)
            recovered += 1

        if recovered:
            logger.warning(f"Re-queued {recovered} undelivered decision(s)")
        return recovered

    # =========================================================================
    # Disputes
    # =========================================================================

    async def create_dispute(
        self,
        campaign_id: str,
        category: DisputeCategory,
        title: str,
        description: str,
        raised_by: str,
        pledge_ids: Optional[List[str]] = None,
        milestone_id: Optional[str] = None,
        oracle_responses: Optional[List[BaseOracleResponse]] = None,
        initial_evidence: Optional[List[EvidenceSubmission]] = None,
        priority: Optional[DisputePriority] = None,
        tags: Optional[List[str]] = None
    ) -> Dispute:
        """
        Open a dispute and route it to its starting tier.

        High oracle consensus resolves immediately (automated tier); moderate
        consensus opens a community poll; anything else waits for the creator.
        """
        responses = list(oracle_responses or [])
        consensus_percent, completed = compute_consensus(responses)

        dispute = Dispute(
            id=new_id("dispute"),
            campaign_id=campaign_id,
            category=category,
            title=title,
            description=description,
            raised_by=raised_by,
            raised_at=self.clock(),
            pledge_ids=list(pledge_ids or []),
            milestone_id=milestone_id,
            priority=priority or priority_for(category),
            oracle_responses=responses,
            consensus_percent=consensus_percent,
            oracle_completed=completed,
            tags=list(tags or []),
        )

        summary = await self.registry.escrow_summary(campaign_id, dispute.pledge_ids)
        eligible_voters = await self.registry.eligible_voters(campaign_id, dispute.pledge_ids)
        dispute.total_escrowed_amount = summary.total_escrowed_amount
        dispute.affected_backer_count = summary.affected_backer_count
        dispute.eligible_voters = dict(eligible_voters)

        async with self.locks.hold(dispute.id):
            await self.store.create(dispute, raised_by)
            for submission in initial_evidence or []:
                await self.evidence.submit(dispute, raised_by, submission)
            decision = await self.escalation.route_new_dispute(dispute, eligible_voters, raised_by)
            await self.store.save(dispute)

        self._dispatch(dispute, decision)
        return dispute

    async def get_dispute(self, dispute_id: str) -> Dispute:
        return await self.store.get(dispute_id)

    async def list_disputes(self, filters: Optional[DisputeFilter] = None) -> List[Dispute]:
        return await self.store.list(filters)

    async def get_timeline(
        self,
        dispute_id: str,
        event_types: Optional[Iterable[EventType]] = None,
        actor: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[DisputeEvent]:
        return await self.timeline.timeline(dispute_id, event_types, actor, since)

    # =========================================================================
    # Evidence
    # =========================================================================

    async def submit_evidence(
        self,
        dispute_id: str,
        submitted_by: str,
        submission: EvidenceSubmission
    ) -> Evidence:
        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            evidence = await self.evidence.submit(dispute, submitted_by, submission)
            await self.store.save(dispute)
        return evidence

    async def verify_evidence(self, dispute_id: str, evidence_id: str, actor: str) -> Evidence:
        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            return await self.evidence.verify(dispute, evidence_id, actor)

    async def get_evidence(
        self,
        dispute_id: str,
        evidence_type: Optional[EvidenceType] = None,
        submitted_by: Optional[str] = None,
        verified: Optional[bool] = None
    ) -> List[Evidence]:
        await self.store.get(dispute_id)
        return await self.evidence.list(dispute_id, evidence_type, submitted_by, verified)

    # =========================================================================
    # Voting
    # =========================================================================

    async def cast_vote(
        self,
        dispute_id: str,
        voter: str,
        option: VoteOption,
        partial_percent: Optional[float] = None,
        reason: Optional[str] = None,
        signature: Optional[bytes] = None
    ) -> Vote:
        """Record a vote; closes the poll early once the outcome is locked in."""
        decision = None
        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            vote = await self.voting.cast_vote(
                dispute, voter, option, partial_percent, reason, signature
            )
            if outcome_locked(dispute.vote_tally):
                decision = await self.escalation.on_voting_closed(dispute, reason="early_close")
            await self.store.save(dispute)

        self._dispatch(dispute, decision)
        return vote

    async def close_voting(self, dispute_id: str, actor: str) -> Dispute:
        """Operator close of an active poll; the tally decides or escalates as usual."""
        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            if dispute.status != DisputeStatus.VOTING:
                raise InvalidTransitionError(
                    f"Dispute {dispute_id} has no active poll", dispute_id
                )
            decision = await self.escalation.on_voting_closed(dispute, actor, reason="manual")
            await self.store.save(dispute)

        self._dispatch(dispute, decision)
        return dispute

    async def get_votes(self, dispute_id: str) -> List[Vote]:
        await self.store.get(dispute_id)
        return await self.voting.votes(dispute_id)

    async def get_tally(self, dispute_id: str) -> Optional[VoteTally]:
        """Current tally, or None when the dispute never had a poll."""
        dispute = await self.store.get(dispute_id)
        if dispute.voting_started_at is None:
            return None
        return await self.voting.tally(dispute)

    # =========================================================================
    # Resolution, appeal and escalation
    # =========================================================================

    async def resolve_manually(
        self,
        dispute_id: str,
        actor: str,
        outcome: ResolutionOutcome,
        release_percent: int,
        refund_percent: Optional[int] = None,
        rationale: str = "",
        evidence_ids: Optional[List[str]] = None
    ) -> Dispute:
        """Creator or council ruling."""
        if refund_percent is None:
            refund_percent = 100 - release_percent

        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            decision = self.resolution.decide_manually(
                dispute, outcome, release_percent, refund_percent, rationale, evidence_ids
            )
            await self.resolution.apply_decision(dispute, decision, actor)
            await self.store.save(dispute)

        self._dispatch(dispute, decision)
        return dispute

    async def appeal(self, dispute_id: str, actor: str, reason: Optional[str] = None) -> Dispute:
        """
        Reopen a resolved dispute one tier above the deciding tier.

        Raises:
            NotAppealableError: After the appeal window or for council decisions.
            InvalidTransitionError: If the dispute is not resolved.
        """
        # Voter weights for a reopened poll are fetched before locking
        eligible_voters = None
        preview = await self.store.get(dispute_id)
        if preview.decision is not None and preview.decision.decided_by == ResolutionTier.AUTOMATED:
            eligible_voters = await self.registry.eligible_voters(
                preview.campaign_id, preview.pledge_ids
            )

        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            target = self.resolution.appeal_target(dispute)
            from_tier = dispute.decision.decided_by

            await self.store.apply_transition(dispute, DisputeStatus.APPEALED, actor, reason)
            await self.timeline.record(
                dispute.id,
                EventType.APPEALED,
                actor,
                {"from_tier": from_tier.value, "to_tier": target.value, "reason": reason},
                description=f"Decision appealed to {target.value}",
            )
            if eligible_voters is not None:
                dispute.eligible_voters = dict(eligible_voters)
            await self.escalation.escalate_to(
                dispute, target, EscalationReason.APPEAL, actor, dispute.eligible_voters
            )
            await self.store.save(dispute)

        logger.info(f"Dispute {dispute_id} appealed by {actor}: {from_tier.value} -> {target.value}")
        return dispute

    async def escalate(self, dispute_id: str, actor: str, reason: Optional[str] = None) -> Dispute:
        """Manual one-tier escalation by an operator."""
        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            await self.escalation.escalate(dispute, EscalationReason.MANUAL, actor, note=reason)
            await self.store.save(dispute)
        return dispute

    async def force_close(
        self,
        dispute_id: str,
        actor: str,
        reason: str = ADMINISTRATIVE_OVERRIDE
    ) -> Dispute:
        """Administrative close from any non-terminal status. Closed disputes are left as is."""
        async with self.locks.hold(dispute_id):
            dispute = await self.store.get(dispute_id)
            if dispute.is_closed:
                return dispute

            if dispute.voting_enabled:
                await self.voting.close_voting(dispute, actor, reason="cancelled")
            await self.store.force_close(dispute, actor, reason)
            await self.timeline.record(
                dispute.id,
                EventType.CLOSED,
                actor,
                {"reason": reason},
                description=f"Dispute closed ({reason})",
            )
            await self.store.save(dispute)

        logger.warning(f"Dispute {dispute_id} force-closed by {actor}: {reason}")
        return dispute

    # =========================================================================
    # Sweep
    # =========================================================================

    async def process_timeouts(self) -> Dict[str, int]:
        """
        One sweep over open disputes: expired polls, stale tiers, overdue
        council decisions and elapsed appeal windows.
        """
        now = self.clock()
        report = {"checked": 0, "voting_closed": 0, "escalated": 0, "overdue": 0,
                  "closed": 0, "errors": 0}

        candidates = [
            d.id for d in await self.store.list()
            if self.escalation.needs_sweep(d, now)
        ]
        for dispute_id in candidates:
            report["checked"] += 1
            decision = None
            try:
                async with self.locks.hold(dispute_id):
                    dispute = await self.store.get(dispute_id)
                    outcome = await self.escalation.sweep_dispute(dispute)
                    if outcome is None:
                        continue
                    await self.store.save(dispute)
                    report[outcome.action] += 1
                    decision = outcome.decision
            except DisputeError as e:
                report["errors"] += 1
                logger.error(f"Sweep failed for {dispute_id}: {e.message}")
                continue
            except Exception as e:
                report["errors"] += 1
                logger.error(f"Unexpected sweep error for {dispute_id}: {e}")
                continue
            self._dispatch(dispute, decision)

        if candidates:
            logger.info(f"Sweep complete: {report}")
        return report

    # =========================================================================
    # Statistics
    # =========================================================================

    async def get_statistics(self) -> Dict[str, Any]:
        disputes = await self.store.list()

        by_status = {s.value: 0 for s in DisputeStatus}
        by_category = {c.value: 0 for c in DisputeCategory}
        by_tier = {t.value: 0 for t in ResolutionTier}
        total_value = 0
        resolution_seconds = []

        for dispute in disputes:
            by_status[dispute.status.value] += 1
            by_category[dispute.category.value] += 1
            by_tier[dispute.current_tier.value] += 1
            total_value += dispute.total_escrowed_amount
            if dispute.resolved_at is not None:
                resolution_seconds.append((dispute.resolved_at - dispute.raised_at).total_seconds())

        return {
            "total": len(disputes),
            "by_status": by_status,
            "by_category": by_category,
            "by_tier": by_tier,
            "average_resolution_seconds": (
                sum(resolution_seconds) / len(resolution_seconds) if resolution_seconds else 0.0
            ),
            "total_value_disputed": total_value,
            "delivery": self.outbox.get_stats(),
        }

    # =========================================================================
    # Decision delivery
    # =========================================================================

    def _dispatch(self, dispute: Dispute, decision: Optional[ResolutionDecision]):
        if decision is not None:
            self.outbox.enqueue(dispute.id, decision)

    async def _on_delivered(self, job: DeliveryJob):
        async with self.locks.hold(job.dispute_id):
            await self.timeline.record(
                job.dispute_id,
                EventType.DECISION_DELIVERED,
                "system",
                {"attempts": job.attempts, "decided_at": job.decision.decided_at.isoformat()},
                description="Decision delivered to escrow",
            )

    async def _on_dead_letter(self, job: DeliveryJob):
        async with self.locks.hold(job.dispute_id):
            dispute = await self.store.get(job.dispute_id)
            current = dispute.decision
            if current is not None and current.decided_at == job.decision.decided_at:
                dispute.delivery_degraded = True
            await self.timeline.record(
                dispute.id,
                EventType.DELIVERY_FAILED,
                "system",
                {"attempts": job.attempts, "error": job.last_error,
                 "decided_at": job.decision.decided_at.isoformat()},
                description="Decision delivery dead-lettered",
            )
            await self.store.save(dispute)
