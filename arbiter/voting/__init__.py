"""
Voting Subsystem

Stake-weighted polls for community-tier disputes: eligible-voter weights,
one immutable vote per voter, quorum and strict-majority consensus.

Test Command: pytest tests/test_voting.py -v
"""

from .voting import VotingSubsystem, compute_tally, outcome_locked

__all__ = ['VotingSubsystem', 'compute_tally', 'outcome_locked']
