from abc import ABC, abstractmethod
from typing import List, Optional
import asyncio
import logging
import time

from ..database import SourceEnum
from ..models import ScrapeOptions, ScrapeResult, UnifiedJob

logger = logging.getLogger(__name__)


class RateLimiter:
    """Keeps at least `min_interval` seconds between two requests to one source."""

    def __init__(self, min_interval: float = 0.0):
        self.min_interval = min_interval
        self._lock = asyncio.Lock()
        self._last_request = 0.0

    async def acquire(self):
        if self.min_interval <= 0:
            return
        async with self._lock:
            wait = self._last_request + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()


class BaseAdapter(ABC):
    """One upstream job source.

    Subclasses implement `fetch`; callers only ever use `scrape`, which turns
    every fault into a failed ScrapeResult. Adapters never write to the
    store or the cache.
    """
    source: SourceEnum
    label = 'Adapter'
    # Cheap enough to run inside a live retrieval request
    fast = False
    # Paid or rate-limited API, reserved for the fallback tier
    paid = False
    min_interval = 0.0

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.rate_limiter = rate_limiter or RateLimiter(self.min_interval)

    @property
    def name(self) -> str:
        return self.source.value

    @property
    def available(self) -> bool:
        """False when credentials the source needs are missing."""
        return True

    @abstractmethod
    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        pass

    async def scrape(self, options: ScrapeOptions) -> ScrapeResult:
        started = time.monotonic()
        if not self.available:
            return ScrapeResult(success=False, source=self.name, error=f"{self.label} credentials missing")

        try:
            await self.rate_limiter.acquire()
            jobs = await self.fetch(options)
        except asyncio.CancelledError:
            logger.info(f"[{self.label}] cancelled, results discarded")
            raise
        except Exception as e:
            logger.error(f"[{self.label}] fetch error: {e}")
            return ScrapeResult(success=False, source=self.name, error=str(e) or type(e).__name__,
                                duration_ms=int((time.monotonic() - started) * 1000))

        jobs = jobs[:options.limit] if options.limit else jobs
        for job in jobs:
            job.source = self.name
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"[{self.label}] {len(jobs)} jobs for '{options.keywords}' in {duration_ms}ms")
        return ScrapeResult(success=True, source=self.name, data=jobs, items_scraped=len(jobs),
                            duration_ms=duration_ms)
