"""
Module: arbiter/__init__.py
Description: Pledge Arbiter, dispute resolution and escalation for
milestone-based pledge escrow
"""

from .engine import DisputeEngine
from .errors import DisputeError
from .models import Dispute, DisputeStatus, ResolutionDecision, ResolutionTier

__version__ = "1.0.0"

__all__ = [
    "DisputeEngine",
    "DisputeError",
    "Dispute",
    "DisputeStatus",
    "ResolutionDecision",
    "ResolutionTier",
]
