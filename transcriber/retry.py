from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

from common.schemas import TranscriptResult
from transcriber.errors import TranscriptionError
from transcriber.models import ProviderConfig, TranscriptionJob
from transcriber.providers import ProviderDispatcher

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Single-file retry queue for failed transcription jobs.

    One job is drained per tick. The next tick is scheduled only after the
    current one settles, and tick() refuses to start while a job is in
    flight, so a backoff longer than the tick period never overlaps attempts.
    """

    def __init__(
        self,
        dispatcher: ProviderDispatcher,
        resolve_config: Callable[[], ProviderConfig],
        on_success: Callable[[TranscriptionJob, TranscriptResult], None],
        on_terminal: Callable[[TranscriptionJob, str], None],
        *,
        base_delay_s: float = 1.0,
        max_retries: int = 3,
        max_queue: int = 50,
        tick_s: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.base_delay_s = base_delay_s
        self.max_retries = max_retries
        self.max_queue = max_queue
        self.tick_s = tick_s
        self._resolve_config = resolve_config
        self._on_success = on_success
        self._on_terminal = on_terminal
        self._sleep = sleep
        self._queue: deque[TranscriptionJob] = deque()
        self._in_flight = False
        self._generation = 0
        self._stopping: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def depth(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopping.is_set()

    def jobs(self) -> list[TranscriptionJob]:
        return list(self._queue)

    def backoff_delay(self, attempts: int) -> float:
        return self.base_delay_s * (2 ** attempts)

    def enqueue(self, job: TranscriptionJob) -> None:
        if len(self._queue) >= self.max_queue:
            evicted = self._queue.popleft()
            logger.error("Retry queue full (%d); dropping segment %d", self.max_queue, evicted.segment.index)
            self._on_terminal(evicted, f"Retry queue full: {evicted.last_error}")
        self._queue.append(job)
        logger.info("Queued segment %d for retry (%d waiting)", job.segment.index, len(self._queue))

    def clear(self) -> None:
        # jobs popped before this point must not come back
        self._generation += 1
        self._queue.clear()

    async def tick(self) -> bool:
        """Attempt the job at the head of the queue. Returns False if nothing ran."""
        if self._in_flight or not self._queue:
            return False
        self._in_flight = True
        generation = self._generation
        stopping = self._stopping
        try:
            job = self._queue.popleft()
            if job.attempts >= self.max_retries:
                logger.error("Max retries exceeded for segment %d: %s", job.segment.index, job.last_error)
                self._on_terminal(job, f"Transcription failed after {job.attempts} retries: {job.last_error}")
                return True

            await self._sleep(self.backoff_delay(job.attempts))
            if generation != self._generation:
                logger.info("Dropping segment %d: retry queue was cleared during backoff", job.segment.index)
                return True
            if stopping is not None and stopping.is_set():
                # stopped during backoff; the attempt never happened
                self._queue.appendleft(job)
                return True

            try:
                config = self._resolve_config()
                job.provider = config.provider
                result = await self.dispatcher.transcribe(config, job.segment, job.source)
            except TranscriptionError as exc:
                self._record_failure(job, exc, generation)
            except Exception as exc:
                logger.exception("Unexpected failure retrying segment %d", job.segment.index)
                self._record_failure(job, TranscriptionError(repr(exc), job.provider), generation)
            else:
                logger.info("Segment %d transcribed on retry %d", job.segment.index, job.attempts + 1)
                self._on_success(job, result)
            return True
        finally:
            self._in_flight = False

    def _record_failure(self, job: TranscriptionJob, exc: TranscriptionError, generation: int) -> None:
        job.attempts += 1
        job.last_error = exc.message
        if generation != self._generation:
            logger.info("Dropping segment %d: retry queue was cleared during the attempt", job.segment.index)
            return
        if not exc.retryable:
            logger.error("Segment %d failed permanently: %s", job.segment.index, exc.message)
            self._on_terminal(job, f"Transcription failed: {exc.message}")
            return
        logger.warning("Retry %d for segment %d failed: %s", job.attempts, job.segment.index, exc.message)
        self._queue.append(job)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Halt ticking; an attempt already past its backoff runs to completion."""
        if self._stopping is not None:
            self._stopping.set()

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        stopping = self._stopping
        while not stopping.is_set():
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self.tick_s)
            except asyncio.TimeoutError:
                await self.tick()
