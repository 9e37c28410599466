"""
In-process transcode worker pool.

A fixed number of worker threads consume a bounded FIFO queue. When the queue is full new
jobs are rejected instead of spawning more ffmpeg processes. Every queued job carries a
cancellation event that is handed to the job handler and, through it, to every external
tool invocation.
"""

import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog

from guidance_video.core.exceptions import PoolSaturatedError

logger = structlog.get_logger()


@dataclass(frozen=True)
class JobTicket:
    job_id: UUID
    raw_path: str
    challenge_id: str


JobHandler = Callable[[JobTicket, threading.Event], Any]


class TranscodePool:
    def __init__(self, handler: JobHandler, workers: int = 2, queue_size: int = 16) -> None:
        self._handler = handler
        self.workers = workers
        self._queue: queue.Queue[JobTicket | None] = queue.Queue(maxsize=queue_size)
        self._cancel_events: dict[UUID, threading.Event] = {}
        self._running: set[UUID] = set()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._accepting = False

    def start(self) -> None:
        if self._threads:
            return

        logger.info("worker_starting", concurrency=self.workers, queue_size=self._queue.maxsize)
        for i in range(self.workers):
            thread = threading.Thread(target=self._work, name=f"transcode-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        self._accepting = True

    def submit(self, ticket: JobTicket) -> None:
        if not self._accepting:
            raise PoolSaturatedError("Transcode pool is not accepting jobs")

        event = threading.Event()
        with self._lock:
            self._cancel_events[ticket.job_id] = event

        try:
            self._queue.put_nowait(ticket)
        except queue.Full:
            with self._lock:
                self._cancel_events.pop(ticket.job_id, None)
            logger.warning("pool_saturated", job_id=str(ticket.job_id), queue_size=self._queue.maxsize)
            raise PoolSaturatedError("Transcode queue is full, retry later") from None

        logger.info("job_queued", job_id=str(ticket.job_id), pending=self._queue.qsize())

    def cancel(self, job_id: UUID) -> bool:
        """Signal a queued or running job. Returns False if the pool does not know the job."""
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False

        event.set()
        logger.info("job_cancel_requested", job_id=str(job_id))
        return True

    def is_tracking(self, job_id: UUID) -> bool:
        with self._lock:
            return job_id in self._cancel_events

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> int:
        with self._lock:
            return len(self._running)

    def join(self) -> None:
        """Block until every submitted job has been handled."""
        self._queue.join()

    def shutdown(self, wait: bool = True, cancel_jobs: bool = False, timeout: float | None = None) -> None:
        self._accepting = False

        if cancel_jobs:
            with self._lock:
                events = list(self._cancel_events.values())
            for event in events:
                event.set()

        # Sentinels queue behind pending tickets, so pending jobs are still drained.
        for _ in self._threads:
            self._queue.put(None)

        if wait:
            for thread in self._threads:
                thread.join(timeout)

        self._threads = []
        logger.info("worker_stopped")

    def _work(self) -> None:
        while True:
            ticket = self._queue.get()
            try:
                if ticket is None:
                    return
                self._run_one(ticket)
            finally:
                self._queue.task_done()

    def _run_one(self, ticket: JobTicket) -> None:
        with self._lock:
            event = self._cancel_events.setdefault(ticket.job_id, threading.Event())
            self._running.add(ticket.job_id)

        try:
            self._handler(ticket, event)
        except Exception as e:
            logger.error("worker_error", job_id=str(ticket.job_id), error=str(e))
        finally:
            with self._lock:
                self._running.discard(ticket.job_id)
                self._cancel_events.pop(ticket.job_id, None)
