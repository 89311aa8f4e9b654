"""
Background metadata enrichment with a persisted retry budget.

Each attempt bumps `metadata.attempts` and `last_attempt_at` in the store
before the fetch starts, so a crash mid-fetch still spends the attempt and
the count read back after a restart is authoritative. Retries happen only
when the app comes to the foreground or the user asks for a refresh.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Optional, Set

from .errors import ExhaustedRetries, LinkCaptureError, NetworkError, NotFoundError
from .models import Link, LinkMetadata, MetadataPhase, Session, utcnow
from .mutations import OptimisticMutationEngine
from .storage import Config, LinkStore

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], LinkMetadata]


class RateLimiter:
    """Sliding-window limit on fetch starts per second and per minute."""

    def __init__(self, per_second: int, per_minute: int, clock: Callable[[], float] = time.monotonic):
        self.per_second = per_second
        self.per_minute = per_minute
        self.clock = clock
        self._second: Deque[float] = deque()
        self._minute: Deque[float] = deque()

    async def acquire(self):
        while True:
            now = self.clock()
            while self._second and now - self._second[0] > 1:
                self._second.popleft()
            while self._minute and now - self._minute[0] > 60:
                self._minute.popleft()

            if len(self._second) >= self.per_second:
                await asyncio.sleep(0.05)
                continue
            if len(self._minute) >= self.per_minute:
                await asyncio.sleep(0.1)
                continue

            self._second.append(now)
            self._minute.append(now)
            return


class MetadataCoordinator:
    def __init__(
        self,
        store: LinkStore,
        fetcher: Fetcher,
        engine: Optional[OptimisticMutationEngine] = None,
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.fetcher = fetcher
        self.engine = engine
        self.config = config or Config()
        self.clock = clock
        self.limiter = RateLimiter(self.config.rate_limit_per_second, self.config.rate_limit_per_minute)
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._last_retry: Optional[float] = None

    @property
    def max_attempts(self) -> int:
        return self.config.metadata_max_attempts

    def phase(self, link: Link) -> MetadataPhase:
        if link.id in self._in_flight:
            return MetadataPhase.FETCHING
        if link.metadata.complete:
            return MetadataPhase.COMPLETE
        if link.metadata.attempts == 0:
            return MetadataPhase.PENDING
        if link.metadata.attempts >= self.max_attempts:
            return MetadataPhase.EXHAUSTED
        return MetadataPhase.AWAITING_RETRY

    def schedule(self, link: Link) -> asyncio.Task:
        """Kick off the first attempt for a newly saved link."""
        task = asyncio.ensure_future(self._run(link.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, link_id: str):
        try:
            await self.attempt(link_id)
        except LinkCaptureError as e:
            logger.warning("metadata for %s not fetched: %s", link_id, e)
        except Exception:
            logger.exception("metadata task for %s crashed", link_id)

    async def drain(self):
        """Wait for every scheduled attempt to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fetch(self, url: str) -> LinkMetadata:
        timeout = self.config.metadata_timeout_seconds
        if inspect.iscoroutinefunction(self.fetcher):
            return await asyncio.wait_for(self.fetcher(url), timeout)
        # blocking fetchers can't be interrupted; on timeout the thread is
        # left to finish and its result is dropped
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, self.fetcher, url), timeout)

    async def attempt(self, link_id: str) -> MetadataPhase:
        """
        Run one attempt for a link, reading the attempt count from the store.
        Raises ExhaustedRetries when the budget is already spent.
        """
        if link_id in self._in_flight:
            return MetadataPhase.FETCHING

        link = await self.store.get_link(link_id)
        if link is None:
            raise NotFoundError(f"link {link_id} not found")
        if link.metadata.complete:
            return MetadataPhase.COMPLETE
        if link.metadata.attempts >= self.max_attempts:
            raise ExhaustedRetries(link_id, link.metadata.attempts)

        self._in_flight.add(link_id)
        try:
            attempts = link.metadata.attempts + 1
            link = await self.store.record_metadata_attempt(link_id, attempts, self.clock())
            logger.info("fetching metadata for %s (attempt %d/%d)", link.url, attempts, self.max_attempts)

            await self.limiter.acquire()
            try:
                meta = await self._fetch(link.url)
            except asyncio.TimeoutError:
                logger.warning("metadata fetch for %s timed out", link.url)
            except NetworkError as e:
                logger.warning("metadata fetch for %s failed: %s", link.url, e)
            except Exception:
                logger.exception("metadata fetch for %s raised", link.url)
            else:
                stored = await self.store.save_metadata(link_id, meta, complete=True)
                if self.engine is not None:
                    self.engine.apply_enrichment(stored)
                logger.info("metadata complete for %s: %s", link.url, stored.title)
                return MetadataPhase.COMPLETE

            if attempts >= self.max_attempts:
                logger.info("giving up on metadata for %s after %d attempts", link.url, attempts)
                return MetadataPhase.EXHAUSTED
            return MetadataPhase.AWAITING_RETRY
        finally:
            self._in_flight.discard(link_id)

    async def retry_incomplete(self, session: Session) -> int:
        """
        Foreground retry pass over a small batch of incomplete links.
        Returns how many links were completed.
        """
        now = time.monotonic()
        if self._last_retry is not None and now - self._last_retry < self.config.retry_debounce_seconds:
            logger.debug("skipping metadata retry, last pass %.2fs ago", now - self._last_retry)
            return 0
        self._last_retry = now

        links = await self.store.incomplete_metadata(
            session.owner_id, self.max_attempts, self.config.retry_batch_size
        )
        if not links:
            return 0

        logger.info("retrying metadata for %d links", len(links))
        completed = 0
        for link in links:
            last = link.metadata.last_attempt_at
            if last is not None and (self.clock() - last).total_seconds() < self.config.retry_interval_seconds:
                continue
            try:
                if await self.attempt(link.id) == MetadataPhase.COMPLETE:
                    completed += 1
            except LinkCaptureError as e:
                logger.warning("metadata retry for %s skipped: %s", link.id, e)
        logger.info("metadata retry completed %d/%d links", completed, len(links))
        return completed

    async def refresh(self, session: Session, link_id: str) -> MetadataPhase:
        """User-initiated refresh: resets the budget, then tries once."""
        link = await self.store.get_link(link_id)
        if link is None or link.owner_id != session.owner_id:
            raise NotFoundError(f"link {link_id} not found")
        if link_id in self._in_flight:
            return MetadataPhase.FETCHING
        await self.store.reset_metadata(link_id)
        return await self.attempt(link_id)
