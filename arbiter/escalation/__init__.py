"""
Escalation Controller

Tier classification from oracle consensus, forced escalation on failed polls
and timeouts, and the periodic sweep that enforces soft deadlines.

Test Command: pytest tests/test_escalation.py -v
"""

from .escalation import (
    APPEAL_WINDOW_ELAPSED,
    EscalationController,
    EscalationSweeper,
    SweepOutcome,
)

__all__ = ['APPEAL_WINDOW_ELAPSED', 'EscalationController', 'EscalationSweeper', 'SweepOutcome']
