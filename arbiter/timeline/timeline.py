"""
Timeline Recorder for the dispute engine

Appends a chronological DisputeEvent for every state-affecting operation.
This is the canonical audit trail and the feed that notification and
compliance collaborators subscribe to.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import NotFoundError
from ..models import DisputeEvent, EventType, as_utc, new_id, utc_now
from ..persistence import DisputeRepository

logger = logging.getLogger(__name__)

EventListener = Callable[[DisputeEvent], None]


class TimelineRecorder:
    """Append-only event log per dispute."""

    def __init__(
        self,
        repository: DisputeRepository,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.clock = clock
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        """
        Register a listener called after every append.

        Listeners run while the dispute lock is held, so they must not block
        (hand the event to a queue instead of doing I/O).
        """
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def record(
        self,
        dispute_id: str,
        event_type: EventType,
        actor: str,
        data: Optional[Dict[str, Any]] = None,
        description: str = ""
    ) -> DisputeEvent:
        """Append an event. Fails only when the dispute is unknown."""
        if not await self.repository.dispute_exists(dispute_id):
            raise NotFoundError(f"Dispute {dispute_id} not found", dispute_id)

        event = DisputeEvent(
            id=new_id("event"),
            dispute_id=dispute_id,
            event_type=event_type,
            description=description or event_type.value.replace("_", " ").capitalize(),
            actor=actor,
            timestamp=self.clock(),
            data=data or {},
        )
        await self.repository.append_event(event)
        logger.debug(f"[{dispute_id}] {event.event_type.value} by {actor}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Timeline listener failed for {dispute_id}: {e}")

        return event

    async def timeline(
        self,
        dispute_id: str,
        event_types: Optional[Iterable[EventType]] = None,
        actor: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[DisputeEvent]:
        """Chronological events, optionally filtered."""
        if not await self.repository.dispute_exists(dispute_id):
            raise NotFoundError(f"Dispute {dispute_id} not found", dispute_id)

        events = await self.repository.list_events(dispute_id)
        if event_types is not None:
            wanted = set(event_types)
            events = [e for e in events if e.event_type in wanted]
        if actor is not None:
            events = [e for e in events if e.actor == actor]
        if since is not None:
            since = as_utc(since)
            events = [e for e in events if e.timestamp >= since]

        # Stable sort keeps append order for equal timestamps
        return sorted(events, key=lambda e: e.timestamp)
