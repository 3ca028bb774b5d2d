"""
OGS Manager — Email Dispatcher
Fire-and-forget delivery with retries and backoff. Each dispatch runs as its
own asyncio task, detached from the request that triggered it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Union

from database import utcnow
from mailer.transport import Mailer, Message

logger = logging.getLogger("ogs.mailer.dispatcher")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF: List[timedelta] = [
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
]


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT    = "sent"
    FAILED  = "failed"


@dataclass(frozen=True)
class DeliveryMetadata:
    type: str = ""
    reference_id: Optional[int] = None
    token: str = ""
    recipient: str = ""


@dataclass
class DeliveryResult:
    metadata: DeliveryMetadata
    status: DeliveryStatus
    attempt: int
    final: bool
    error: Optional[BaseException] = None
    sent_at: Optional[datetime] = None


Callback = Callable[[DeliveryResult], Union[None, Awaitable[None]]]


@dataclass
class DeliveryRequest:
    message: Message
    metadata: DeliveryMetadata = field(default_factory=DeliveryMetadata)
    callback: Optional[Callback] = None
    max_attempts: Optional[int] = None
    backoff: Optional[Sequence[timedelta]] = None


def backoff_duration(policy: Sequence[timedelta], attempt: int) -> timedelta:
    """Wait after the given (1-based) failed attempt; the last entry repeats."""
    if not policy:
        return timedelta(0)
    if attempt <= 0:
        return policy[0]
    if attempt > len(policy):
        return policy[-1]
    return policy[attempt - 1]


class Dispatcher:

    def __init__(self, mailer: Optional[Mailer],
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.mailer = mailer
        self.default_max_attempts = DEFAULT_MAX_ATTEMPTS
        self.default_backoff: List[timedelta] = list(DEFAULT_BACKOFF)
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    def set_defaults(self, max_attempts: int, backoff: Sequence[timedelta]) -> None:
        """Non-positive attempts and an empty backoff leave the current values alone."""
        if max_attempts > 0:
            self.default_max_attempts = max_attempts
        if backoff:
            self.default_backoff = list(backoff)

    def dispatch(self, request: DeliveryRequest) -> Optional[asyncio.Task]:
        """Schedule delivery on the running loop. Returns the task, or None without a mailer."""
        if self.mailer is None:
            logger.warning("No mailer configured — dropping '%s' to %s",
                           request.message.template, request.message.to.address)
            return None

        job = DeliveryRequest(
            message=request.message.clone(),
            metadata=request.metadata,
            callback=request.callback,
            max_attempts=request.max_attempts if request.max_attempts and request.max_attempts > 0
            else self.default_max_attempts,
            backoff=list(request.backoff) if request.backoff else list(self.default_backoff),
        )
        task = asyncio.get_running_loop().create_task(self._deliver(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, job: DeliveryRequest) -> None:
        attempts = job.max_attempts
        for attempt in range(1, attempts + 1):
            final_try = attempt == attempts
            try:
                await asyncio.to_thread(self.mailer.send, job.message)
            except Exception as exc:
                logger.warning("Email '%s' to %s failed (attempt %d/%d): %s",
                               job.message.template, job.message.to.address, attempt, attempts, exc)
                await self._notify(job, DeliveryResult(
                    metadata=job.metadata, status=DeliveryStatus.FAILED,
                    attempt=attempt, final=final_try, error=exc,
                ))
                if final_try:
                    logger.error("Giving up on email '%s' to %s after %d attempt(s)",
                                 job.message.template, job.message.to.address, attempts)
                    return
                await self._sleep(backoff_duration(job.backoff, attempt).total_seconds())
                continue

            await self._notify(job, DeliveryResult(
                metadata=job.metadata, status=DeliveryStatus.SENT,
                attempt=attempt, final=True, sent_at=utcnow(),
            ))
            return

    async def _notify(self, job: DeliveryRequest, result: DeliveryResult) -> None:
        if job.callback is None:
            return
        try:
            outcome = job.callback(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Delivery callback for %s raised", job.metadata.type or "email")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        if not self._tasks:
            return
        await asyncio.wait(list(self._tasks), timeout=timeout)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
