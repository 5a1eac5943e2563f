"""Per-job log buffering and fan-out to live viewers."""

import asyncio
from collections import OrderedDict, deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from flowpatch.models.base import utcnow

MAX_LOG_LINES_PER_JOB = 1000
RETAINED_FINISHED_CHANNELS = 100


@dataclass(frozen=True)
class LogLine:
    seq: int
    text: str
    at: datetime = field(default_factory=utcnow)


class LogChannel:
    """Bounded log buffer for one job. When full, the oldest line is dropped."""

    def __init__(self, job_id: UUID, maxlen: int = MAX_LOG_LINES_PER_JOB):
        self.job_id = job_id
        self._lines: deque[LogLine] = deque(maxlen=maxlen)
        self._seq = 0
        self._closed = False
        self._changed = asyncio.Condition()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        """Number of lines evicted by the size bound."""
        return self._seq - len(self._lines)

    def append(self, text: str) -> LogLine:
        self._seq += 1
        line = LogLine(seq=self._seq, text=text)
        self._lines.append(line)
        self._notify()
        return line

    def lines(self, after_seq: int = 0) -> list[LogLine]:
        return [line for line in self._lines if line.seq > after_seq]

    def close(self) -> None:
        self._closed = True
        self._notify()

    def _notify(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._notify_waiters())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _notify_waiters(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def follow(self, after_seq: int = 0) -> AsyncIterator[LogLine]:
        """Yield buffered lines, then new ones as they arrive, until closed."""
        last = after_seq
        while True:
            pending = self.lines(last)
            for line in pending:
                last = line.seq
                yield line
            if self._closed and not self.lines(last):
                return
            async with self._changed:
                if not self.lines(last) and not self._closed:
                    await self._changed.wait()


class JobLogHub:
    """
    Keeps the most recent log channel of each job.

    Channels of running jobs are always kept. Once finished, only the
    ``retain_finished`` most recently finished channels stay available for
    replay; older ones are dropped.
    """

    def __init__(
        self,
        maxlen: int = MAX_LOG_LINES_PER_JOB,
        retain_finished: int = RETAINED_FINISHED_CHANNELS,
    ):
        self._maxlen = maxlen
        self._retain_finished = retain_finished
        self._channels: dict[UUID, LogChannel] = {}
        # Finished job ids, oldest first
        self._finished: OrderedDict[UUID, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._channels)

    def open(self, job_id: UUID) -> LogChannel:
        """Start a fresh channel for a job run, replacing any previous one."""
        channel = LogChannel(job_id, self._maxlen)
        self._channels[job_id] = channel
        self._finished.pop(job_id, None)
        return channel

    def finish(self, channel: LogChannel) -> None:
        """Close a run's channel and keep it for replay within the retention bound."""
        channel.close()
        if self._channels.get(channel.job_id) is not channel:
            return
        self._finished[channel.job_id] = None
        self._finished.move_to_end(channel.job_id)
        while len(self._finished) > self._retain_finished:
            job_id, _ = self._finished.popitem(last=False)
            self._channels.pop(job_id, None)

    def get(self, job_id: UUID) -> LogChannel | None:
        return self._channels.get(job_id)

    def lines(self, job_id: UUID) -> list[str]:
        channel = self._channels.get(job_id)
        return [line.text for line in channel.lines()] if channel else []

    def discard(self, job_id: UUID) -> None:
        self._finished.pop(job_id, None)
        channel = self._channels.pop(job_id, None)
        if channel is not None:
            channel.close()
