"""
Module: arbiter/api_models.py
Description: Pydantic Models for API Request/Response Validation

Features:
- Strict request validation (unknown fields rejected)
- Field limits for dispute titles and descriptions
- Oracle responses validated as a discriminated union
- Uniform error body for every DisputeError
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .engine import ADMINISTRATIVE_OVERRIDE
from .evidence_ledger import EvidenceSubmission
from .models import (
    DisputeCategory,
    DisputePriority,
    EvidenceType,
    ResolutionOutcome,
    VoteOption,
)
from .oracle_context import OracleResponse


# ============================================================
# Base Models
# ============================================================

class BaseAPIModel(BaseModel):
    """Base model with common configuration."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        str_min_length=1,
        validate_assignment=True,
        extra='forbid'  # Reject unknown fields
    )


class ErrorResponse(BaseModel):
    """Body returned for every engine error."""
    error: str
    message: str
    dispute_id: Optional[str] = None


# ============================================================
# Evidence Models
# ============================================================

class EvidenceContent(BaseAPIModel):
    """Evidence fields supplied by the submitter."""
    type: EvidenceType = Field(..., description="Kind of evidence")
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=5000)
    content: str = Field(..., description="Raw content or URL; hashed on submission")

    def to_submission(self) -> EvidenceSubmission:
        return EvidenceSubmission(
            evidence_type=self.type,
            title=self.title,
            description=self.description,
            content=self.content,
        )


class SubmitEvidenceRequest(EvidenceContent):
    submitted_by: str = Field(..., description="Address of the submitter")


class VerifyEvidenceRequest(BaseAPIModel):
    actor: str = Field(..., description="Authorized verifier")


# ============================================================
# Dispute Models
# ============================================================

class CreateDisputeRequest(BaseAPIModel):
    """Request model for opening a dispute."""
    campaign_id: str
    pledge_ids: List[str] = Field(default_factory=list)
    milestone_id: Optional[str] = None
    category: DisputeCategory
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=20, max_length=5000)
    raised_by: str = Field(..., description="Address raising the dispute")
    priority: Optional[DisputePriority] = None
    oracle_responses: List[OracleResponse] = Field(default_factory=list)
    initial_evidence: List[EvidenceContent] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_subject(self):
        """A dispute must point at pledges or a milestone."""
        if not self.pledge_ids and not self.milestone_id:
            raise ValueError("Either pledge_ids or milestone_id is required")
        return self


# ============================================================
# Voting Models
# ============================================================

class CastVoteRequest(BaseAPIModel):
    """Request model for a single weighted vote."""
    voter: str
    vote: VoteOption
    partial_percent: Optional[float] = Field(
        default=None, description="Release percentage, required for partial votes"
    )
    reason: Optional[str] = Field(default=None, max_length=2000)
    signature: Optional[str] = Field(default=None, description="Hex-encoded opaque signature")

    @field_validator('signature')
    @classmethod
    def validate_signature(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            bytes.fromhex(v)
        except ValueError:
            raise ValueError("Signature must be hex-encoded")
        return v

    def signature_bytes(self) -> Optional[bytes]:
        return bytes.fromhex(self.signature) if self.signature is not None else None


class CloseVotingRequest(BaseAPIModel):
    actor: str


# ============================================================
# Resolution Models
# ============================================================

class ResolveRequest(BaseAPIModel):
    """Manual ruling by the creator or council."""
    actor: str
    outcome: ResolutionOutcome
    release_percent: int
    refund_percent: Optional[int] = None
    rationale: str = Field(..., max_length=5000)
    evidence_ids: List[str] = Field(default_factory=list)


class AppealRequest(BaseAPIModel):
    actor: str
    reason: Optional[str] = Field(default=None, max_length=2000)


class EscalateRequest(BaseAPIModel):
    actor: str
    reason: Optional[str] = Field(default=None, max_length=2000)


class CloseDisputeRequest(BaseAPIModel):
    actor: str
    reason: str = Field(default=ADMINISTRATIVE_OVERRIDE, max_length=200)
