"""
Resolution Engine

Binding release/refund decisions from oracle data, vote tallies or manual
rulings, plus appeal eligibility.

Test Command: pytest tests/test_resolution.py -v
"""

from .resolution import (
    APPEAL_TARGETS,
    ResolutionEngine,
    validate_split,
    weighted_partial_percent,
)

__all__ = ['APPEAL_TARGETS', 'ResolutionEngine', 'validate_split', 'weighted_partial_percent']
