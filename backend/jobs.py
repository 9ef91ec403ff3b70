"""
Job Runner — in-process queue for background geocoding sweeps.

One worker task runs inside the FastAPI lifespan and drains an
``asyncio.Queue`` of user ids.

Includes:
  - ``dispatch(user_id)`` never blocks; a user already waiting in the
    queue is not queued twice.
  - Each attempt is bounded by ``GEOCODE_JOB_TIMEOUT`` (hard wall clock).
  - Up to ``GEOCODE_JOB_TRIES`` attempts with a linear backoff between
    them; exhausted retries are logged as a job failure.
  - The worker loop swallows and logs per-job errors so one bad job
    never kills the worker.

Usage:
    from jobs import geocode_jobs

    geocode_jobs.start()            # lifespan startup
    geocode_jobs.dispatch(user.id)  # from a request handler
    await geocode_jobs.stop()       # lifespan shutdown
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from config import GEOCODE_JOB_BACKOFF_SECONDS, GEOCODE_JOB_TIMEOUT, GEOCODE_JOB_TRIES
from geocode_sweep import sweep_user_contacts

logger = logging.getLogger(__name__)


class GeocodeJobRunner:
    """Serial, retrying, time-bounded runner for ``sweep_user_contacts``."""

    def __init__(
        self,
        sweep: Callable[[str], Awaitable] = sweep_user_contacts,
        *,
        timeout: float = GEOCODE_JOB_TIMEOUT,
        tries: int = GEOCODE_JOB_TRIES,
        backoff: float = GEOCODE_JOB_BACKOFF_SECONDS,
    ):
        self._sweep = sweep
        self.timeout = timeout
        self.tries = max(1, tries)
        self.backoff = backoff
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._worker: Optional[asyncio.Task] = None

    # ── Producer side ──

    def dispatch(self, user_id: str) -> bool:
        """Enqueue a sweep for ``user_id``.  Returns False if one is already waiting."""
        if user_id in self._queued:
            logger.debug("Geocoding job for user %s already queued", user_id)
            return False
        self._queued.add(user_id)
        self._queue.put_nowait(user_id)
        logger.info("Geocoding job queued for user %s (queue size %d)", user_id, self._queue.qsize())
        return True

    def is_queued(self, user_id: str) -> bool:
        return user_id in self._queued

    # ── Worker side ──

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._worker_loop())
            logger.info("Geocoding job worker started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Geocoding job worker stopped")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _worker_loop(self) -> None:
        while True:
            user_id = await self._queue.get()
            self._queued.discard(user_id)
            try:
                await self.run_job(user_id)
            except Exception as e:
                logger.error("Geocoding worker error for user %s: %s", user_id, e, exc_info=True)
            finally:
                self._queue.task_done()

    async def run_job(self, user_id: str) -> bool:
        """Run one job with timeout + retries.  Returns True on success."""
        for attempt in range(1, self.tries + 1):
            try:
                await asyncio.wait_for(self._sweep(user_id), timeout=self.timeout)
                return True
            except asyncio.TimeoutError:
                logger.warning(
                    "Geocoding job for user %s timed out after %.0fs (attempt %d/%d)",
                    user_id, self.timeout, attempt, self.tries,
                )
            except Exception as e:
                logger.warning(
                    "Geocoding job for user %s failed (attempt %d/%d): %s",
                    user_id, attempt, self.tries, e,
                )
            if attempt < self.tries:
                await asyncio.sleep(self.backoff * attempt)

        logger.error("Geocoding job for user %s FAILED after %d attempts", user_id, self.tries)
        return False


# Process-wide runner used by the API
geocode_jobs = GeocodeJobRunner()
