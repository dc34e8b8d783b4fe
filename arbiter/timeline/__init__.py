"""
Timeline Recorder

Chronological, append-only DisputeEvent log. Events are never deleted and are
owned by the dispute they reference.

Test Command: pytest tests/test_timeline.py -v
"""

from .timeline import TimelineRecorder, EventListener

__all__ = ['TimelineRecorder', 'EventListener']
