"""
Dispute Store

Single source of truth for dispute status, enforcing the lifecycle state
machine (initial: pending, terminal: closed).

Test Command: pytest tests/test_dispute_store.py -v
"""

from .dispute_store import DisputeStore, DisputeFilter, ALLOWED_TRANSITIONS, can_transition

__all__ = ['DisputeStore', 'DisputeFilter', 'ALLOWED_TRANSITIONS', 'can_transition']
