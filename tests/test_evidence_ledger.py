"""
Test suite for the Evidence Ledger

Test Command: pytest tests/test_evidence_ledger.py -v
"""

import dataclasses

import pytest

from arbiter.errors import InvalidTransitionError, NotFoundError
from arbiter.evidence_ledger import EvidenceSubmission
from arbiter.models import DisputeStatus, EventType, EvidenceType, content_hash


def submission(title="Delivery receipt", content="tracking: 1Z999", evidence_type=EvidenceType.DOCUMENT):
    return EvidenceSubmission(
        evidence_type=evidence_type,
        title=title,
        description="Proof of shipment",
        content=content,
    )


@pytest.fixture
async def dispute(engine, make_dispute):
    return await engine.store.create(make_dispute())


class TestEvidenceSubmission:
    """Test appending evidence."""

    @pytest.mark.asyncio
    async def test_submit_stores_hash_and_records_event(self, engine, dispute):
        evidence = await engine.evidence.submit(dispute, "bob", submission())

        assert evidence.content_hash == content_hash("tracking: 1Z999")
        assert evidence.integrity_ok()
        assert evidence.verified is False

        events = await engine.timeline.timeline(dispute.id, [EventType.EVIDENCE_SUBMITTED])
        assert events[0].data["evidence_id"] == evidence.id
        assert events[0].actor == "bob"

    @pytest.mark.asyncio
    async def test_tampered_content_detected(self, engine, dispute):
        evidence = await engine.evidence.submit(dispute, "bob", submission())
        tampered = dataclasses.replace(evidence, content="tracking: forged")

        assert not tampered.integrity_ok()

    @pytest.mark.asyncio
    async def test_closed_dispute_rejects_evidence(self, engine, dispute):
        dispute.status = DisputeStatus.CLOSED

        with pytest.raises(InvalidTransitionError):
            await engine.evidence.submit(dispute, "bob", submission())
        assert await engine.evidence.list(dispute.id) == []


class TestEvidenceQueries:
    """Test listing, filtering and verification."""

    @pytest.mark.asyncio
    async def test_chronological_and_filtered(self, engine, dispute, clock):
        first = await engine.evidence.submit(dispute, "bob", submission("first"))
        clock.advance(minutes=5)
        second = await engine.evidence.submit(
            dispute, "carol", submission("second", evidence_type=EvidenceType.LINK)
        )

        records = await engine.evidence.list(dispute.id)
        assert [e.id for e in records] == [first.id, second.id]

        links = await engine.evidence.list(dispute.id, evidence_type=EvidenceType.LINK)
        assert [e.id for e in links] == [second.id]

        from_bob = await engine.evidence.list(dispute.id, submitted_by="bob")
        assert [e.id for e in from_bob] == [first.id]

    @pytest.mark.asyncio
    async def test_verify_is_idempotent(self, engine, dispute):
        evidence = await engine.evidence.submit(dispute, "bob", submission())

        verified = await engine.evidence.verify(dispute, evidence.id, "council_member")
        await engine.evidence.verify(dispute, evidence.id, "council_member")

        assert verified.verified is True
        assert [e.id for e in await engine.evidence.list(dispute.id, verified=True)] == [evidence.id]
        events = await engine.timeline.timeline(dispute.id, [EventType.EVIDENCE_VERIFIED])
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_stored_record_is_never_rewritten(self, engine, dispute, repository):
        evidence = await engine.evidence.submit(dispute, "bob", submission())
        await engine.evidence.verify(dispute, evidence.id, "council_member")

        raw = await repository.list_evidence(dispute.id)
        assert raw[0].verified is False

    @pytest.mark.asyncio
    async def test_unknown_evidence(self, engine, dispute):
        with pytest.raises(NotFoundError):
            await engine.evidence.get(dispute.id, "ev_missing")
        with pytest.raises(NotFoundError):
            await engine.evidence.verify(dispute, "ev_missing", "council_member")
