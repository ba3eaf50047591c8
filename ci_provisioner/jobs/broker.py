"""Per-job log channels with replay and live fan-out.

Every channel keeps the full history of its job's output. A new subscriber
gets that history as its replay and is registered for live lines in the same
step, so nothing is lost or repeated at the boundary.

Each subscriber owns a bounded buffer. Overflow policy is disconnect: a
subscriber that falls behind by more than its buffer size is detached, its
buffer is released, and its next read raises TransportError. The producer
and the other subscribers never wait on it.

All methods must be called from the event loop thread. Runners in worker
threads go through ThreadSafeReporter.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ci_provisioner.errors import NotFoundError, TransportError
from ci_provisioner.jobs.models import LogLine

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    OPEN = "open"
    ENDED = "ended"  # channel closed; drains remaining buffer first
    OVERFLOWED = "overflowed"
    CANCELLED = "cancelled"


class LogSubscription:
    """One reader attached to a job's log channel.

    `replay` holds every line appended before attachment; `next_line()` or
    `async for` delivers the lines appended afterwards.
    """

    def __init__(
        self,
        broker: "LogStreamBroker",
        job_id: str,
        replay: Tuple[LogLine, ...],
        max_buffer: int,
    ):
        self.id = str(uuid.uuid4())
        self.job_id = job_id
        self.replay = replay
        self._broker = broker
        self._buffer: Deque[LogLine] = deque()
        self._max_buffer = max_buffer
        self._state = SubscriptionState.OPEN
        self._wakeup = asyncio.Event()

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _offer(self, line: LogLine) -> bool:
        """Buffer a live line. False means the buffer is full."""
        if len(self._buffer) >= self._max_buffer:
            return False
        self._buffer.append(line)
        self._wakeup.set()
        return True

    def _end(self) -> None:
        if self._state is SubscriptionState.OPEN:
            self._state = SubscriptionState.ENDED
            self._wakeup.set()

    def _overflow(self) -> None:
        self._state = SubscriptionState.OVERFLOWED
        self._buffer.clear()
        self._wakeup.set()

    def cancel(self) -> None:
        """Detach now. Nothing is delivered after this returns. Idempotent."""
        if self._state is SubscriptionState.CANCELLED:
            return
        self._state = SubscriptionState.CANCELLED
        self._buffer.clear()
        self._broker._detach(self)
        self._wakeup.set()

    async def next_line(self, timeout: Optional[float] = None) -> Optional[LogLine]:
        """Wait for the next live line.

        Returns None at end of stream (channel closed or subscription
        cancelled). Raises TransportError if this subscriber overflowed, and
        asyncio.TimeoutError if nothing arrived within `timeout`.
        """
        while True:
            if self._state is SubscriptionState.CANCELLED:
                return None
            if self._state is SubscriptionState.OVERFLOWED:
                raise TransportError(
                    f"Log subscriber for job {self.job_id} fell more than "
                    f"{self._max_buffer} lines behind and was disconnected"
                )
            if self._buffer:
                return self._buffer.popleft()
            if self._state is SubscriptionState.ENDED:
                return None

            self._wakeup.clear()
            if timeout is None:
                await self._wakeup.wait()
            else:
                await asyncio.wait_for(self._wakeup.wait(), timeout)

    def __aiter__(self) -> AsyncIterator[LogLine]:
        return self._live()

    async def _live(self) -> AsyncIterator[LogLine]:
        while True:
            line = await self.next_line()
            if line is None:
                return
            yield line


class _Channel:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self.lines: List[LogLine] = []
        self.closed = False
        self.subscribers: Dict[str, LogSubscription] = {}


class LogStreamBroker:
    """Owns every job's log sequence, keyed by job id."""

    def __init__(self, max_subscriber_buffer: int = 1000):
        if max_subscriber_buffer < 1:
            raise ValueError("max_subscriber_buffer must be at least 1")
        self._channels: Dict[str, _Channel] = {}
        self._max_buffer = max_subscriber_buffer
        self._overflows = 0

    def open_channel(self, job_id: str) -> None:
        if job_id not in self._channels:
            self._channels[job_id] = _Channel(job_id)

    def _channel(self, job_id: str) -> _Channel:
        channel = self._channels.get(job_id)
        if channel is None:
            raise NotFoundError(f"No log channel for job '{job_id}'")
        return channel

    def append_line(self, job_id: str, text: str) -> Optional[LogLine]:
        """Append one line and fan it out. Returns None if the channel is closed."""
        channel = self._channel(job_id)
        if channel.closed:
            logger.warning(
                "Dropped log line for closed channel %s", job_id,
                extra={"job_id": job_id, "event_type": "late_line_dropped"},
            )
            return None

        line = LogLine(
            job_id=job_id,
            seq=len(channel.lines) + 1,
            text=text.rstrip("\r\n"),
            at=datetime.now(timezone.utc),
        )
        channel.lines.append(line)

        for sub in list(channel.subscribers.values()):
            if not sub._offer(line):
                del channel.subscribers[sub.id]
                sub._overflow()
                self._overflows += 1
                logger.warning(
                    "Disconnected slow log subscriber %s on job %s at line %d",
                    sub.id, job_id, line.seq,
                    extra={"job_id": job_id, "event_type": "subscriber_overflow"},
                )
        return line

    def subscribe(self, job_id: str) -> LogSubscription:
        """Attach a reader: full replay now, live lines afterwards."""
        channel = self._channel(job_id)
        sub = LogSubscription(self, job_id, tuple(channel.lines), self._max_buffer)
        if channel.closed:
            sub._end()
        else:
            channel.subscribers[sub.id] = sub
        logger.debug("Subscriber %s attached to job %s (replay=%d)", sub.id, job_id, len(sub.replay))
        return sub

    def close(self, job_id: str) -> None:
        """Mark end of stream; live subscribers end after draining their buffer."""
        channel = self._channel(job_id)
        if channel.closed:
            return
        channel.closed = True
        for sub in channel.subscribers.values():
            sub._end()
        channel.subscribers.clear()

    def discard(self, job_id: str) -> None:
        """Drop a channel and cancel anyone still attached."""
        channel = self._channels.pop(job_id, None)
        if channel is None:
            return
        for sub in list(channel.subscribers.values()):
            sub.cancel()

    def _detach(self, sub: LogSubscription) -> None:
        channel = self._channels.get(sub.job_id)
        if channel is not None:
            channel.subscribers.pop(sub.id, None)

    def lines(self, job_id: str) -> List[LogLine]:
        return list(self._channel(job_id).lines)

    def is_closed(self, job_id: str) -> bool:
        return self._channel(job_id).closed

    def has_channel(self, job_id: str) -> bool:
        return job_id in self._channels

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        if job_id is not None:
            return len(self._channel(job_id).subscribers)
        return sum(len(c.subscribers) for c in self._channels.values())

    def channel_count(self) -> int:
        return len(self._channels)

    @property
    def overflows(self) -> int:
        return self._overflows
