import logging
from typing import Any, Dict, List

from .adapters import AdapterRegistry
from .cache import SearchCache
from .config import Settings
from .models import ScrapeOptions, SearchSpecification
from .store import JobStore
from .timeouts import gather_within
from .writeback import dedupe, persist_and_cache

logger = logging.getLogger(__name__)


class JITOrchestrator:
    """Just-in-time acquisition inside a live retrieval request.

    The fast adapters race under one shared deadline. Everything that lands
    before it is merged in registration order, each adapter's own ordering
    kept; stragglers are abandoned and their results never used.
    """

    def __init__(self, registry: AdapterRegistry, store: JobStore, cache: SearchCache, settings: Settings):
        self.registry = registry
        self.store = store
        self.cache = cache
        self.settings = settings

    @property
    def adapters(self):
        return self.registry.fast(self.settings.jit_sources)

    async def acquire(self, spec: SearchSpecification) -> List[Dict[str, Any]]:
        adapters = self.adapters
        if not adapters:
            logger.info("[JIT] No fast adapters available")
            return []

        options = ScrapeOptions.from_spec(spec, max_pages=self.settings.jit_max_pages, limit=self.settings.page_size)
        logger.info(f"[JIT] Racing {', '.join(a.label for a in adapters)} "
                    f"(deadline {self.settings.jit_timeout_ms}ms)")
        results = await gather_within([a.scrape(options) for a in adapters], self.settings.jit_timeout_ms, 'JIT')

        merged = []
        for adapter, result in zip(adapters, results):
            if result is None:
                logger.warning(f"[JIT] {adapter.label} missed the deadline, results discarded")
            elif not result.success:
                logger.warning(f"[JIT] AdapterFailure from {adapter.label}: {result.error}")
            else:
                merged.extend(result.data)

        merged = dedupe(merged)
        if not merged:
            logger.info("[JIT] No results before the deadline")
            return []

        logger.info(f"[JIT] {len(merged)} jobs acquired")
        return await persist_and_cache(self.store, self.cache, spec, merged, self.settings.store_timeout_ms, 'JIT')
