import logging
from typing import Any, Dict, List, Optional, Tuple

from .adapters import AdapterRegistry
from .cache import SearchCache
from .config import Settings
from .errors import TierTimeout
from .models import ScrapeOptions, SearchSpecification
from .store import JobStore
from .timeouts import with_timeout
from .writeback import dedupe, persist_and_cache

logger = logging.getLogger(__name__)


class FallbackChain:
    """Paid or rate-limited APIs tried one at a time, in priority order.

    Never parallel, so each call spends rate-limit budget only when every
    earlier source came back empty.
    """

    def __init__(self, registry: AdapterRegistry, store: JobStore, cache: SearchCache, settings: Settings):
        self.registry = registry
        self.store = store
        self.cache = cache
        self.settings = settings

    @property
    def adapters(self):
        if self.settings.fallback_order:
            return self.registry.ordered(self.settings.fallback_order)
        return self.registry.paid()

    async def search(self, spec: SearchSpecification) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        options = ScrapeOptions.from_spec(spec, limit=self.settings.page_size)
        for adapter in self.adapters:
            logger.info(f"[Fallback] Trying {adapter.label}")
            try:
                result = await with_timeout(adapter.scrape(options), self.settings.fallback_timeout_ms,
                                            f"fallback:{adapter.name}")
            except TierTimeout as e:
                logger.warning(f"[Fallback] TierTimeout: {e}")
                continue

            if not result.success:
                logger.warning(f"[Fallback] AdapterFailure from {adapter.label}: {result.error}")
                continue
            if not result.data:
                logger.info(f"[Fallback] {adapter.label} returned nothing")
                continue

            jobs = dedupe(result.data)
            items = await persist_and_cache(self.store, self.cache, spec, jobs,
                                            self.settings.store_timeout_ms, 'Fallback')
            return adapter.name, items

        logger.warning("[Fallback] All fallback sources exhausted")
        return None, []
