"""
Module: arbiter/errors.py
Description: Exception taxonomy for the dispute engine

Every error is scoped to a single dispute or request. Caller input errors are
surfaced unchanged; QuorumNotReachedError and DeliveryFailureError are handled
internally (escalation and dead-lettering respectively). ConfigurationError is
raised while loading settings and carries no dispute id.
"""

from typing import Any, Dict, Optional


class DisputeError(Exception):
    """Base class for all dispute engine errors."""
    code = "dispute_error"
    http_status = 400

    def __init__(self, message: str, dispute_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.dispute_id = dispute_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "dispute_id": self.dispute_id,
        }


class NotFoundError(DisputeError):
    """Unknown dispute, evidence or vote id."""
    code = "not_found"
    http_status = 404


class InvalidTransitionError(DisputeError):
    """State machine violation. The dispute is left unchanged."""
    code = "invalid_transition"
    http_status = 409


class InvalidDisputeError(DisputeError):
    """Dispute creation request violates an entity invariant."""
    code = "invalid_dispute"
    http_status = 422


class DuplicateVoteError(DisputeError):
    """Voter already cast a vote in this dispute."""
    code = "duplicate_vote"
    http_status = 409


class VotingClosedError(DisputeError):
    """Dispute is not in voting or the deadline has passed."""
    code = "voting_closed"
    http_status = 409


class VotingUnavailableError(DisputeError):
    """A poll cannot be opened for this dispute."""
    code = "voting_unavailable"
    http_status = 409


class InvalidVoteWeightError(DisputeError):
    """Voter is unknown or has zero weight."""
    code = "invalid_vote_weight"
    http_status = 403


class InvalidPartialPercentError(DisputeError):
    """Partial percent missing, out of [0, 100], or given for a non-partial vote."""
    code = "invalid_partial_percent"
    http_status = 422


class QuorumNotReachedError(DisputeError):
    """Raised internally when a closed poll lacks quorum; triggers escalation."""
    code = "quorum_not_reached"
    http_status = 409


class NotAppealableError(DisputeError):
    """Appeal window elapsed or the decision came from the council."""
    code = "not_appealable"
    http_status = 409


class InvalidDecisionError(DisputeError):
    """Decision percentages or outcome are inconsistent."""
    code = "invalid_decision"
    http_status = 422


class DeliveryFailureError(DisputeError):
    """Decision could not be handed to the escrow collaborator."""
    code = "delivery_failure"
    http_status = 502


class ConfigurationError(DisputeError):
    """Invalid ARBITER_* settings or escalation rules. Raised at startup."""
    code = "configuration_error"
    http_status = 500
