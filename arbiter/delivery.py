"""
Module: arbiter/delivery.py
Description: Decision outbox and escrow clients

Decisions are handed to the escrow collaborator after the dispute lock is
released. The outbox retries with exponential backoff and jitter up to a
bounded number of attempts, then dead-letters the job and reports it so the
dispute can be flagged as degraded.

Features:
- asyncio.Queue with a small worker pool
- At-least-once delivery, bounded attempts
- Dead-letter list with the last error per job
- aiohttp client for the escrow HTTP endpoint
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .errors import DeliveryFailureError
from .models import ResolutionDecision, utc_now

logger = logging.getLogger(__name__)


class EscrowClient(ABC):
    """Receives binding decisions and performs the fund split."""

    @abstractmethod
    async def deliver(self, dispute_id: str, decision: ResolutionDecision) -> None:
        """Raise DeliveryFailureError when the escrow did not accept the decision."""


class HttpEscrowClient(EscrowClient):
    """POSTs decisions to {base_url}/decisions."""

    def __init__(self, base_url: str, timeout_seconds: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def deliver(self, dispute_id: str, decision: ResolutionDecision) -> None:
        payload = {"dispute_id": dispute_id, "decision": decision.to_dict()}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.base_url}/decisions",
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as resp:
                    if resp.status >= 300:
                        raise DeliveryFailureError(
                            f"Escrow rejected decision for {dispute_id}: HTTP {resp.status}",
                            dispute_id,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryFailureError(
                f"Escrow unreachable for {dispute_id}: {e}", dispute_id
            ) from e


class InMemoryEscrowClient(EscrowClient):
    """Keeps delivered decisions in memory. Can be told to fail N times first."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0
        self.delivered: List[Dict[str, Any]] = []

    async def deliver(self, dispute_id: str, decision: ResolutionDecision) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise DeliveryFailureError(f"Simulated escrow failure #{self.calls}", dispute_id)
        self.delivered.append({"dispute_id": dispute_id, "decision": decision})


@dataclass
class DeliveryJob:
    dispute_id: str
    decision: ResolutionDecision
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dispute_id": self.dispute_id,
            "decision": self.decision.to_dict(),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat(),
        }


JobCallback = Callable[[DeliveryJob], Awaitable[None]]


class DecisionOutbox:
    """Outbound decision queue with retries and dead-lettering."""

    def __init__(
        self,
        client: EscrowClient,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        workers: int = 2,
        on_delivered: Optional[JobCallback] = None,
        on_dead_letter: Optional[JobCallback] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.workers = workers
        self.on_delivered = on_delivered
        self.on_dead_letter = on_dead_letter

        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self.dead_letters: List[DeliveryJob] = []
        self.delivered_count = 0

    async def start(self):
        """Start delivery workers."""
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._worker(i)) for i in range(self.workers)
            ]
            logger.debug(f"Decision outbox started with {self.workers} workers")

    async def stop(self):
        """Stop delivery workers. Undelivered jobs stay queued."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    def enqueue(self, dispute_id: str, decision: ResolutionDecision) -> DeliveryJob:
        job = DeliveryJob(dispute_id=dispute_id, decision=decision)
        self._queue.put_nowait(job)
        logger.debug(f"Queued decision delivery for {dispute_id}")
        return job

    async def join(self):
        """Wait until every queued job is delivered or dead-lettered."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with equal jitter, capped at max_delay."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay / 2 + random.uniform(0, delay / 2)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "delivered": self.delivered_count,
            "dead_letters": len(self.dead_letters),
        }

    async def deliver(self, job: DeliveryJob) -> bool:
        """Attempt a job until it succeeds or runs out of attempts."""
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                await self.client.deliver(job.dispute_id, job.decision)
            except Exception as e:
                job.last_error = str(e)
                if job.attempts >= self.max_attempts:
                    break
                delay = self.backoff_delay(job.attempts)
                logger.warning(
                    f"Delivery attempt {job.attempts}/{self.max_attempts} for "
                    f"{job.dispute_id} failed: {e}; retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            self.delivered_count += 1
            logger.info(f"Decision for {job.dispute_id} delivered after {job.attempts} attempt(s)")
            await self._notify(self.on_delivered, job)
            return True

        self.dead_letters.append(job)
        logger.error(
            f"Decision for {job.dispute_id} dead-lettered after {job.attempts} attempts: "
            f"{job.last_error}"
        )
        await self._notify(self.on_dead_letter, job)
        return False

    async def _worker(self, index: int):
        while True:
            try:
                job = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.deliver(job)
            except asyncio.CancelledError:
                self._queue.task_done()
                break
            except Exception as e:
                logger.error(f"Outbox worker {index} error: {e}")
            self._queue.task_done()

    async def _notify(self, callback: Optional[JobCallback], job: DeliveryJob):
        if callback is None:
            return
        try:
            await callback(job)
        except Exception as e:
            logger.error(f"Delivery callback failed for {job.dispute_id}: {e}")
