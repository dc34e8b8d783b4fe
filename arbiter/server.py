"""
Module: arbiter/server.py
Description: HTTP API for the dispute engine

Routes under /disputes mirror the engine operations. Every DisputeError is
returned as an ErrorResponse with the error's HTTP status; request
validation failures are 422 via FastAPI.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .api_models import (
    AppealRequest,
    CastVoteRequest,
    CloseDisputeRequest,
    CloseVotingRequest,
    CreateDisputeRequest,
    ErrorResponse,
    EscalateRequest,
    ResolveRequest,
    SubmitEvidenceRequest,
    VerifyEvidenceRequest,
)
from .dispute_store import DisputeFilter
from .engine import DisputeEngine
from .errors import DisputeError
from .models import (
    DisputeCategory,
    DisputePriority,
    DisputeStatus,
    EventType,
    EvidenceType,
    ResolutionTier,
)

logger = logging.getLogger(__name__)


def create_app(engine: Optional[DisputeEngine] = None, run_sweeper: bool = True) -> FastAPI:
    """Build the FastAPI application around an engine."""
    engine = engine or DisputeEngine.from_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start(run_sweeper=run_sweeper)
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(
        title="Pledge Arbiter",
        description="Dispute resolution and escalation for milestone-based pledge escrow",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine

    @app.exception_handler(DisputeError)
    async def dispute_error_handler(request: Request, exc: DisputeError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        body = ErrorResponse(**exc.to_dict())
        return JSONResponse(status_code=exc.http_status, content=body.model_dump())

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "sweeper_running": engine.sweeper.is_running,
            "delivery": engine.outbox.get_stats(),
        }

    # ============================================================
    # Disputes
    # ============================================================

    @app.post("/disputes", status_code=201)
    async def create_dispute(request: CreateDisputeRequest):
        dispute = await engine.create_dispute(
            campaign_id=request.campaign_id,
            category=request.category,
            title=request.title,
            description=request.description,
            raised_by=request.raised_by,
            pledge_ids=request.pledge_ids,
            milestone_id=request.milestone_id,
            oracle_responses=request.oracle_responses,
            initial_evidence=[e.to_submission() for e in request.initial_evidence],
            priority=request.priority,
            tags=request.tags,
        )
        return dispute.to_dict()

    @app.get("/disputes")
    async def list_disputes(
        campaign_id: Optional[str] = None,
        status: Optional[List[DisputeStatus]] = Query(default=None),
        category: Optional[DisputeCategory] = None,
        tier: Optional[ResolutionTier] = None,
        raised_by: Optional[str] = None,
        affects_address: Optional[str] = None,
        priority: Optional[DisputePriority] = None,
        voting_active: Optional[bool] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ):
        filters = DisputeFilter(
            campaign_id=campaign_id,
            status=status or None,
            category=category,
            tier=tier,
            raised_by=raised_by,
            affects_address=affects_address,
            priority=priority,
            voting_active=voting_active,
            from_date=from_date,
            to_date=to_date,
        )
        disputes = await engine.list_disputes(filters)
        return {"disputes": [d.to_dict() for d in disputes], "total": len(disputes)}

    @app.get("/disputes/stats")
    async def statistics():
        return await engine.get_statistics()

    @app.post("/disputes/process-timeouts")
    async def process_timeouts():
        report = await engine.sweeper.run_once()
        if report is None:
            return {"skipped": True}
        return report

    @app.get("/disputes/{dispute_id}")
    async def get_dispute(dispute_id: str):
        dispute = await engine.get_dispute(dispute_id)
        return dispute.to_dict()

    @app.get("/disputes/{dispute_id}/timeline")
    async def get_timeline(
        dispute_id: str,
        event_type: Optional[List[EventType]] = Query(default=None),
        actor: Optional[str] = None,
        since: Optional[datetime] = None
    ):
        events = await engine.get_timeline(dispute_id, event_type or None, actor, since)
        return {"events": [e.to_dict() for e in events]}

    # ============================================================
    # Evidence
    # ============================================================

    @app.post("/disputes/{dispute_id}/evidence", status_code=201)
    async def submit_evidence(dispute_id: str, request: SubmitEvidenceRequest):
        evidence = await engine.submit_evidence(
            dispute_id, request.submitted_by, request.to_submission()
        )
        return evidence.to_dict()

    @app.get("/disputes/{dispute_id}/evidence")
    async def list_evidence(
        dispute_id: str,
        type: Optional[EvidenceType] = None,
        submitted_by: Optional[str] = None,
        verified: Optional[bool] = None
    ):
        records = await engine.get_evidence(dispute_id, type, submitted_by, verified)
        return {"evidence": [e.to_dict() for e in records]}

    @app.post("/disputes/{dispute_id}/evidence/{evidence_id}/verify")
    async def verify_evidence(dispute_id: str, evidence_id: str, request: VerifyEvidenceRequest):
        evidence = await engine.verify_evidence(dispute_id, evidence_id, request.actor)
        return evidence.to_dict()

    # ============================================================
    # Voting
    # ============================================================

    @app.post("/disputes/{dispute_id}/voting/vote", status_code=201)
    async def cast_vote(dispute_id: str, request: CastVoteRequest):
        vote = await engine.cast_vote(
            dispute_id,
            request.voter,
            request.vote,
            partial_percent=request.partial_percent,
            reason=request.reason,
            signature=request.signature_bytes(),
        )
        return vote.to_dict()

    @app.get("/disputes/{dispute_id}/voting/votes")
    async def get_votes(dispute_id: str):
        votes = await engine.get_votes(dispute_id)
        tally = await engine.get_tally(dispute_id)
        return {
            "votes": [v.to_dict() for v in votes],
            "tally": tally.to_dict() if tally else None,
        }

    @app.post("/disputes/{dispute_id}/voting/close")
    async def close_voting(dispute_id: str, request: CloseVotingRequest):
        dispute = await engine.close_voting(dispute_id, request.actor)
        return dispute.to_dict()

    # ============================================================
    # Resolution
    # ============================================================

    @app.post("/disputes/{dispute_id}/resolve")
    async def resolve(dispute_id: str, request: ResolveRequest):
        dispute = await engine.resolve_manually(
            dispute_id,
            request.actor,
            request.outcome,
            request.release_percent,
            refund_percent=request.refund_percent,
            rationale=request.rationale,
            evidence_ids=request.evidence_ids,
        )
        return dispute.to_dict()

    @app.post("/disputes/{dispute_id}/appeal")
    async def appeal(dispute_id: str, request: AppealRequest):
        dispute = await engine.appeal(dispute_id, request.actor, request.reason)
        return dispute.to_dict()

    @app.post("/disputes/{dispute_id}/escalate")
    async def escalate(dispute_id: str, request: EscalateRequest):
        dispute = await engine.escalate(dispute_id, request.actor, request.reason)
        return dispute.to_dict()

    @app.post("/disputes/{dispute_id}/close")
    async def close(dispute_id: str, request: CloseDisputeRequest):
        dispute = await engine.force_close(dispute_id, request.actor, request.reason)
        return dispute.to_dict()

    return app
