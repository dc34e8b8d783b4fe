"""
Evidence Ledger for the dispute engine

Appends immutable evidence records tied to a dispute and never rewrites them.
Each record stores a SHA-256 hash of its content for tamper evidence.

Verification is an administrative act kept in its own append-only log; the
``verified`` flag on returned records is derived from that log.
"""

import dataclasses
import logging
from datetime import datetime
from typing import Callable, List, Optional

from ..errors import InvalidTransitionError, NotFoundError
from ..models import Dispute, Evidence, EvidenceType, EventType, content_hash, new_id, utc_now
from ..persistence import DisputeRepository
from ..timeline import TimelineRecorder

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class EvidenceSubmission:
    """Caller-supplied part of an evidence record."""
    evidence_type: EvidenceType
    title: str
    description: str
    content: str


class EvidenceLedger:
    """Append-only evidence storage per dispute."""

    def __init__(
        self,
        repository: DisputeRepository,
        timeline: TimelineRecorder,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.timeline = timeline
        self.clock = clock

    async def submit(
        self,
        dispute: Dispute,
        submitted_by: str,
        submission: EvidenceSubmission
    ) -> Evidence:
        """
        Append evidence to an open dispute.

        Raises:
            InvalidTransitionError: If the dispute is closed.
        """
        if dispute.is_closed:
            raise InvalidTransitionError(
                f"Dispute {dispute.id} is closed; evidence is no longer accepted",
                dispute.id,
            )

        evidence = Evidence(
            id=new_id("ev"),
            dispute_id=dispute.id,
            submitted_by=submitted_by,
            evidence_type=submission.evidence_type,
            title=submission.title,
            description=submission.description,
            content=submission.content,
            content_hash=content_hash(submission.content),
            submitted_at=self.clock(),
        )
        await self.repository.append_evidence(evidence)

        await self.timeline.record(
            dispute.id,
            EventType.EVIDENCE_SUBMITTED,
            submitted_by,
            {
                "evidence_id": evidence.id,
                "type": evidence.evidence_type.value,
                "content_hash": evidence.content_hash,
            },
            description=f"Evidence submitted: {evidence.title}",
        )
        logger.info(f"Evidence {evidence.id} added to dispute {dispute.id}")
        return evidence

    async def verify(self, dispute: Dispute, evidence_id: str, actor: str) -> Evidence:
        """Mark evidence as verified by an authorized actor. Idempotent."""
        evidence = await self.get(dispute.id, evidence_id)
        added = await self.repository.add_verification(
            dispute.id, evidence_id, actor, self.clock()
        )
        if added:
            await self.timeline.record(
                dispute.id,
                EventType.EVIDENCE_VERIFIED,
                actor,
                {"evidence_id": evidence_id},
                description=f"Evidence verified: {evidence.title}",
            )
        return dataclasses.replace(evidence, verified=True)

    async def get(self, dispute_id: str, evidence_id: str) -> Evidence:
        for evidence in await self.list(dispute_id):
            if evidence.id == evidence_id:
                return evidence
        raise NotFoundError(f"Evidence {evidence_id} not found", dispute_id)

    async def list(
        self,
        dispute_id: str,
        evidence_type: Optional[EvidenceType] = None,
        submitted_by: Optional[str] = None,
        verified: Optional[bool] = None
    ) -> List[Evidence]:
        """Chronological evidence for a dispute."""
        verifications = await self.repository.list_verifications(dispute_id)
        records = [
            dataclasses.replace(e, verified=e.id in verifications)
            for e in await self.repository.list_evidence(dispute_id)
        ]

        if evidence_type is not None:
            records = [e for e in records if e.evidence_type == evidence_type]
        if submitted_by is not None:
            records = [e for e in records if e.submitted_by == submitted_by]
        if verified is not None:
            records = [e for e in records if e.verified == verified]

        return sorted(records, key=lambda e: e.submitted_at)
