import asyncio
import heapq
import itertools
import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from core.timeutil import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5


class JobQueue:
    """
    Priority queue between "job is due" and "job is executing".

    Lower priority values dequeue first, FIFO within a priority. A counting
    semaphore caps how many dequeued jobs may be executing at once; every
    successful dequeue owes exactly one release_slot().
    """

    def __init__(self, max_concurrent_jobs: int = 10):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.max_concurrent_jobs = max_concurrent_jobs
        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._available = max_concurrent_jobs
        self._heap: List[Tuple[int, int, int, Any]] = []
        self._enqueued: Dict[int, int] = {}        # job_id -> live sequence number
        self._tombstones: Set[int] = set()         # sequence numbers removed before dequeue
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._items = asyncio.Event()
        self.total_enqueued = 0
        self.total_dequeued = 0
        self.total_dropped = 0

    def __len__(self):
        return len(self._enqueued)

    def contains(self, job_id: int) -> bool:
        return job_id in self._enqueued

    @property
    def available_slots(self) -> int:
        return self._available

    def enqueue(self, job) -> bool:
        """Queue a job unless its id is already waiting. Returns False on duplicates."""
        priority = job.priority if job.priority is not None else DEFAULT_PRIORITY
        with self._lock:
            if job.id in self._enqueued:
                logger.debug("[QUEUE] Job %s already queued, skipping", job.id)
                return False
            seq = next(self._counter)
            heapq.heappush(self._heap, (priority, seq, job.id, job))
            self._enqueued[job.id] = seq
            self.total_enqueued += 1
            depth = len(self._enqueued)
        self._items.set()
        logger.info("[QUEUE] Enqueued job %s (priority=%s, depth=%s)", job.id, priority, depth)
        return True

    def _pop(self):
        with self._lock:
            while self._heap:
                _, seq, job_id, job = heapq.heappop(self._heap)
                if seq in self._tombstones:
                    self._tombstones.discard(seq)
                    continue
                del self._enqueued[job_id]
                self.total_dequeued += 1
                if not self._enqueued:
                    self._items.clear()
                return job
            self._items.clear()
            return None

    @staticmethod
    async def _wait_for(awaitable, cancel: Optional[asyncio.Event], on_abandon=None) -> bool:
        """
        Await `awaitable` unless `cancel` fires first. True when it completed.
        `on_abandon` runs if the awaitable finished but the caller was cancelled
        before it could use the result.
        """
        if cancel is None:
            await awaitable
            return True
        if cancel.is_set():
            awaitable.close()
            return False

        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            stop.cancel()
            if work.done() and not work.cancelled() and work.exception() is None:
                if on_abandon:
                    on_abandon()
            else:
                work.cancel()
            raise
        stop.cancel()
        if work.done():
            work.result()
            return True
        work.cancel()
        return False

    async def dequeue(self, cancel: Optional[asyncio.Event] = None):
        """
        Wait for a queued job and a free slot. Returns None when `cancel` is set
        or when the queue turned out to be empty after taking a slot (the slot is
        given back).
        """
        if not await self._wait_for(self._items.wait(), cancel):
            return None
        if not await self._wait_for(self._slots.acquire(), cancel, on_abandon=self._slots.release):
            return None
        self._available -= 1

        try:
            job = self._pop()
        except Exception:
            self.release_slot()
            raise
        if job is None:
            self.release_slot()
            return None
        logger.debug("[QUEUE] Dequeued job %s (available_slots=%s)", job.id, self._available)
        return job

    async def try_dequeue(self) -> Tuple[bool, Any]:
        """
        Non-blocking variant.
        (False, None): no slot free. (True, None): slot free but nothing queued.
        (True, job): caller now owns a slot.
        """
        if self._slots.locked():
            return False, None
        await self._slots.acquire()
        self._available -= 1
        job = self._pop()
        if job is None:
            self.release_slot()
            return True, None
        return True, job

    def release_slot(self):
        if self._available >= self.max_concurrent_jobs:
            logger.warning("[QUEUE] release_slot called with no slot held, ignoring")
            return
        self._available += 1
        self._slots.release()

    def remove(self, job_id: int) -> bool:
        """
        Forget a queued job. The heap entry stays behind as a tombstone and is
        skipped when it surfaces.
        """
        with self._lock:
            seq = self._enqueued.pop(job_id, None)
            if seq is None:
                return False
            self._tombstones.add(seq)
            self.total_dropped += 1
            if not self._enqueued:
                self._items.clear()
        logger.info("[QUEUE] Removed job %s from queue", job_id)
        return True

    def clear(self):
        with self._lock:
            dropped = len(self._enqueued)
            self._heap.clear()
            self._enqueued.clear()
            self._tombstones.clear()
            self.total_dropped += dropped
            self._items.clear()
        if dropped:
            logger.info("[QUEUE] Cleared %d queued jobs", dropped)

    def metrics(self) -> dict:
        return {
            "queue_depth": len(self._enqueued),
            "available_slots": self._available,
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "active_jobs": self.max_concurrent_jobs - self._available,
            "total_enqueued": self.total_enqueued,
            "total_dequeued": self.total_dequeued,
            "total_dropped": self.total_dropped,
            "timestamp": utcnow().isoformat(),
        }
