"""
Module: arbiter/persistence.py
Description: Repository layer for disputes, evidence, votes and timeline events

Features:
- Abstract repository with an explicit open/close lifecycle
- In-memory backend that hands out copies, so a failed operation never
  leaks a half-applied mutation into the store
- Redis backend (redis.asyncio) storing JSON documents per dispute
- Append-only lists for evidence, votes and events
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from .models import Dispute, DisputeEvent, Evidence, Vote

logger = logging.getLogger(__name__)


class DisputeRepository(ABC):
    """Storage contract used by every engine component."""

    async def open(self) -> None:
        """Acquire connections. Called once at service start."""

    async def close(self) -> None:
        """Release connections. Called once at shutdown."""

    @abstractmethod
    async def save_dispute(self, dispute: Dispute) -> None: ...

    @abstractmethod
    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]: ...

    @abstractmethod
    async def list_disputes(self) -> List[Dispute]: ...

    @abstractmethod
    async def dispute_exists(self, dispute_id: str) -> bool: ...

    @abstractmethod
    async def append_evidence(self, evidence: Evidence) -> None: ...

    @abstractmethod
    async def list_evidence(self, dispute_id: str) -> List[Evidence]: ...

    @abstractmethod
    async def add_verification(
        self, dispute_id: str, evidence_id: str, actor: str, verified_at: datetime
    ) -> bool:
        """Record a verification. Returns False if one already existed."""

    @abstractmethod
    async def list_verifications(self, dispute_id: str) -> Dict[str, Dict[str, Any]]: ...

    @abstractmethod
    async def append_vote(self, vote: Vote) -> None: ...

    @abstractmethod
    async def list_votes(self, dispute_id: str) -> List[Vote]: ...

    @abstractmethod
    async def append_event(self, event: DisputeEvent) -> None: ...

    @abstractmethod
    async def list_events(self, dispute_id: str) -> List[DisputeEvent]: ...


class InMemoryDisputeRepository(DisputeRepository):
    """Process-local backend for tests and single-node deployments."""

    def __init__(self):
        self._disputes: Dict[str, Dispute] = {}
        self._evidence: Dict[str, List[Evidence]] = {}
        self._verifications: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._votes: Dict[str, List[Vote]] = {}
        self._events: Dict[str, List[DisputeEvent]] = {}

    async def save_dispute(self, dispute: Dispute) -> None:
        self._disputes[dispute.id] = copy.deepcopy(dispute)

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        dispute = self._disputes.get(dispute_id)
        return copy.deepcopy(dispute) if dispute else None

    async def list_disputes(self) -> List[Dispute]:
        return [copy.deepcopy(d) for d in self._disputes.values()]

    async def dispute_exists(self, dispute_id: str) -> bool:
        return dispute_id in self._disputes

    async def append_evidence(self, evidence: Evidence) -> None:
        self._evidence.setdefault(evidence.dispute_id, []).append(evidence)

    async def list_evidence(self, dispute_id: str) -> List[Evidence]:
        return list(self._evidence.get(dispute_id, []))

    async def add_verification(
        self, dispute_id: str, evidence_id: str, actor: str, verified_at: datetime
    ) -> bool:
        verifications = self._verifications.setdefault(dispute_id, {})
        if evidence_id in verifications:
            return False
        verifications[evidence_id] = {"actor": actor, "verified_at": verified_at.isoformat()}
        return True

    async def list_verifications(self, dispute_id: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._verifications.get(dispute_id, {}))

    async def append_vote(self, vote: Vote) -> None:
        self._votes.setdefault(vote.dispute_id, []).append(vote)

    async def list_votes(self, dispute_id: str) -> List[Vote]:
        return list(self._votes.get(dispute_id, []))

    async def append_event(self, event: DisputeEvent) -> None:
        self._events.setdefault(event.dispute_id, []).append(event)

    async def list_events(self, dispute_id: str) -> List[DisputeEvent]:
        return list(self._events.get(dispute_id, []))


class RedisDisputeRepository(DisputeRepository):
    """
    Redis backend.

    Layout:
        arbiter:disputes                      set of dispute ids
        arbiter:dispute:{id}                  hash (document + index fields)
        arbiter:dispute:{id}:evidence         list of JSON evidence
        arbiter:dispute:{id}:verifications    hash evidence_id -> JSON
        arbiter:dispute:{id}:votes            list of JSON votes
        arbiter:dispute:{id}:events           list of JSON events
    """

    INDEX_KEY = "arbiter:disputes"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        redis_client: Optional[redis.Redis] = None
    ):
        self.redis_url = redis_url
        self.redis = redis_client

    async def open(self) -> None:
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0
            )
        await self.redis.ping()
        logger.info(f"Redis repository connected: {self.redis_url}")

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis repository closed")

    @staticmethod
    def _key(dispute_id: str, suffix: str = "") -> str:
        key = f"arbiter:dispute:{dispute_id}"
        return f"{key}:{suffix}" if suffix else key

    async def save_dispute(self, dispute: Dispute) -> None:
        await self.redis.hset(
            self._key(dispute.id),
            mapping={
                "document": json.dumps(dispute.to_dict()),
                "status": dispute.status.value,
                "campaign_id": dispute.campaign_id,
                "current_tier": dispute.current_tier.value,
            }
        )
        await self.redis.sadd(self.INDEX_KEY, dispute.id)

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        document = await self.redis.hget(self._key(dispute_id), "document")
        if document is None:
            return None
        return Dispute.from_dict(json.loads(document))

    async def list_disputes(self) -> List[Dispute]:
        disputes = []
        for dispute_id in sorted(await self.redis.smembers(self.INDEX_KEY)):
            dispute = await self.get_dispute(dispute_id)
            if dispute is not None:
                disputes.append(dispute)
        return disputes

    async def dispute_exists(self, dispute_id: str) -> bool:
        return bool(await self.redis.sismember(self.INDEX_KEY, dispute_id))

    async def append_evidence(self, evidence: Evidence) -> None:
        await self.redis.rpush(
            self._key(evidence.dispute_id, "evidence"), json.dumps(evidence.to_dict())
        )

    async def list_evidence(self, dispute_id: str) -> List[Evidence]:
        raw = await self.redis.lrange(self._key(dispute_id, "evidence"), 0, -1)
        return [Evidence.from_dict(json.loads(item)) for item in raw]

    async def add_verification(
        self, dispute_id: str, evidence_id: str, actor: str, verified_at: datetime
    ) -> bool:
        added = await self.redis.hsetnx(
            self._key(dispute_id, "verifications"),
            evidence_id,
            json.dumps({"actor": actor, "verified_at": verified_at.isoformat()})
        )
        return bool(added)

    async def list_verifications(self, dispute_id: str) -> Dict[str, Dict[str, Any]]:
        raw = await self.redis.hgetall(self._key(dispute_id, "verifications"))
        return {evidence_id: json.loads(value) for evidence_id, value in raw.items()}

    async def append_vote(self, vote: Vote) -> None:
        await self.redis.rpush(self._key(vote.dispute_id, "votes"), json.dumps(vote.to_dict()))

    async def list_votes(self, dispute_id: str) -> List[Vote]:
        raw = await self.redis.lrange(self._key(dispute_id, "votes"), 0, -1)
        return [Vote.from_dict(json.loads(item)) for item in raw]

    async def append_event(self, event: DisputeEvent) -> None:
        await self.redis.rpush(self._key(event.dispute_id, "events"), json.dumps(event.to_dict()))

    async def list_events(self, dispute_id: str) -> List[DisputeEvent]:
        raw = await self.redis.lrange(self._key(dispute_id, "events"), 0, -1)
        return [DisputeEvent.from_dict(json.loads(item)) for item in raw]


def create_repository(backend: str, redis_url: str = "redis://localhost:6379") -> DisputeRepository:
    """Build the repository named by configuration."""
    if backend == "memory":
        return InMemoryDisputeRepository()
    if backend == "redis":
        return RedisDisputeRepository(redis_url=redis_url)
    raise ValueError(f"Unknown store backend: {backend}")
