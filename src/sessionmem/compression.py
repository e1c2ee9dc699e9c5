"""Background compression of raw observation payloads.

Observation ids are queued and consumed by a single worker task. Inline
compression shares the same lock as the worker, so at most one compression
call is in flight at any time. Payloads are re-read from the
store when a job runs rather than carried in the queue.

Usage:
    queue = CompressionQueue(store, client)
    queue.start()
    queue.enqueue(observation_id)
    ...
    await queue.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from typing import Any

from sessionmem.context.store import MemoryStore
from sessionmem.llm.client import SummarizationClient

logger = logging.getLogger(__name__)


def estimate_tokens(text: str | None) -> int:
    """Rough token count: one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class CompressionQueue:
    """Unbounded queue of observation ids with one consumer."""

    def __init__(self, store: MemoryStore, client: SummarizationClient):
        self.store = store
        self.client = client
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

        self._enqueued_count = 0
        self._processed_count = 0
        self._failed_count = 0
        self._dropped_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "queue_depth": self._queue.qsize(),
            "enqueued": self._enqueued_count,
            "processed": self._processed_count,
            "failed": self._failed_count,
            "dropped": self._dropped_count,
            "running": self.running,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, observation_id: str) -> int:
        """Queue an observation for compression and return its position.

        Ids are not validated; queuing an id twice just compresses it twice.
        """
        self._queue.put_nowait(observation_id)
        self._enqueued_count += 1
        logger.debug("queued %s for compression (depth=%d)", observation_id, self._queue.qsize())
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run(self) -> None:
        while True:
            observation_id = await self._queue.get()
            try:
                await self.process_one(observation_id)
            except Exception:
                logger.exception("compression worker error for %s", observation_id)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been handled by the worker."""
        await self._queue.join()

    async def drain(self) -> int:
        """Process everything currently queued without a worker task."""
        handled = 0
        while not self._queue.empty():
            observation_id = self._queue.get_nowait()
            try:
                await self.process_one(observation_id)
            finally:
                self._queue.task_done()
            handled += 1
        return handled

    def discard(self) -> int:
        """Drop everything currently queued and return how many jobs were dropped."""
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        self._dropped_count += dropped
        return dropped

    async def process_one(self, observation_id: str) -> bool:
        """Compress one observation. Returns True when it was stored compressed."""
        async with self._lock:
            return await self._compress(observation_id)

    async def _compress(self, observation_id: str) -> bool:
        obs = self.store.get_observation(observation_id)
        if obs is None:
            logger.error("observation not found, dropping compression job: %s", observation_id)
            self._dropped_count += 1
            return False

        try:
            compressed = await self.client.compress(
                obs.function_name, obs.function_args, obs.function_result
            )
            original_tokens = estimate_tokens(f"{obs.function_args or ''}{obs.function_result or ''}")
            compressed_tokens = estimate_tokens(compressed)
            self.store.mark_observation_compressed(
                obs.id, compressed, original_tokens, compressed_tokens
            )
        except Exception:
            logger.exception("compression failed for %s", observation_id)
            self.store.mark_observation_failed(observation_id)
            self._failed_count += 1
            return False

        self._processed_count += 1
        return True
