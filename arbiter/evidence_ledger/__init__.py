"""
Evidence Ledger

Immutable, hash-stamped evidence records per dispute.

Test Command: pytest tests/test_evidence_ledger.py -v
"""

from .evidence_ledger import EvidenceLedger, EvidenceSubmission

__all__ = ['EvidenceLedger', 'EvidenceSubmission']
