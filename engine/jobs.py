"""Job model and the bounded pool of extraction slots."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from engine.errors import ServiceBusy
from engine.paths import artifact_path

logger = logging.getLogger(__name__)

JOB_STATE_PENDING = "pending"
JOB_STATE_RUNNING = "running"
JOB_STATE_SUCCEEDED = "succeeded"
JOB_STATE_FAILED = "failed"
JOB_STATE_TIMED_OUT = "timed_out"

TERMINAL_STATES = (
    JOB_STATE_SUCCEEDED,
    JOB_STATE_FAILED,
    JOB_STATE_TIMED_OUT,
)

_ALLOWED_TRANSITIONS = {
    JOB_STATE_PENDING: {JOB_STATE_RUNNING, JOB_STATE_FAILED},
    JOB_STATE_RUNNING: set(TERMINAL_STATES),
}


def utc_now():
    return datetime.now(timezone.utc)


@dataclass
class Job:
    id: str
    source_url: str
    output_path: str
    timeout_seconds: float
    state: str = JOB_STATE_PENDING
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    deadline: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def create(cls, source_url: str, downloads_dir: str, timeout_seconds: float) -> "Job":
        job_id = uuid4().hex
        return cls(
            id=job_id,
            source_url=source_url,
            output_path=artifact_path(downloads_dir, job_id),
            timeout_seconds=float(timeout_seconds),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: str) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.state, set())
        if state not in allowed:
            raise ValueError(f"invalid job transition {self.state} -> {state}")
        self.state = state
        now = utc_now()
        if state == JOB_STATE_RUNNING:
            self.started_at = now
            self.deadline = now + timedelta(seconds=self.timeout_seconds)
        elif state in TERMINAL_STATES:
            self.finished_at = now

    def elapsed_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.finished_at or utc_now()
        return round((end - self.started_at).total_seconds(), 3)


class JobSlots:
    """Caps concurrent extractions and the number of requests waiting for a slot.

    Used as an async context manager around one extraction. Callers beyond
    ``max_queued`` waiters are refused with ``ServiceBusy`` instead of queueing.
    """

    def __init__(self, max_concurrent: int, max_queued: int) -> None:
        self._max_concurrent = max(int(max_concurrent), 1)
        self._max_queued = max(int(max_queued), 0)
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._active = 0
        self._waiting = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    async def __aenter__(self) -> "JobSlots":
        if self._semaphore.locked():
            if self._waiting >= self._max_queued:
                logger.warning(
                    "Job slots exhausted active=%d waiting=%d", self._active, self._waiting
                )
                raise ServiceBusy()
            self._waiting += 1
            try:
                await self._semaphore.acquire()
            finally:
                self._waiting -= 1
        else:
            await self._semaphore.acquire()
        self._active += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._active -= 1
        self._semaphore.release()
        return False
