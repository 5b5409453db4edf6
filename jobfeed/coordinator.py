import logging
from typing import Any, Dict, Optional, Union

from .cache import SearchCache
from .config import Settings
from .errors import TierMiss, TierTimeout, UpstreamExhaustion
from .fallback import FallbackChain
from .jit import JITOrchestrator
from .models import RetrievalResponse, SearchSpecification
from .store import JobStore
from .timeouts import with_timeout

logger = logging.getLogger(__name__)


class RetrievalCoordinator:
    """Cache, then store, then JIT scraping, then paid APIs.

    Each tier falls through on a miss, a timeout or an internal error; the
    only failure a caller sees is UpstreamExhaustion.
    """

    def __init__(self, settings: Settings, cache: SearchCache, store: JobStore,
                 jit: Optional[JITOrchestrator], fallback: Optional[FallbackChain]):
        self.settings = settings
        self.cache = cache
        self.store = store
        self.jit = jit
        self.fallback = fallback

    async def search(self, request: Union[Dict[str, Any], SearchSpecification]) -> RetrievalResponse:
        spec = request if isinstance(request, SearchSpecification) else SearchSpecification.from_request(request)
        attempts = {}

        for tier, lookup in (('cache', self._from_cache), ('store', self._from_store),
                             ('jit', self._from_jit), ('fallback', self._from_fallback)):
            response = await lookup(spec, attempts)
            if response is not None:
                logger.info(f"[Coordinator] {len(response.items)} jobs from {tier} "
                            f"for '{spec.keywords}' page {spec.page}")
                return response

        logger.error(f"[Coordinator] UpstreamExhaustion for '{spec.keywords}' ({attempts})")
        raise UpstreamExhaustion(attempts)

    def _single_page(self, spec, items, tier):
        return RetrievalResponse(items=items, total=len(items), page=spec.page, has_more=False, tier=tier)

    # ------------------------------------------------------------------
    # TIERS
    # ------------------------------------------------------------------
    async def _from_cache(self, spec, attempts):
        page_size = self.settings.page_size
        try:
            ids = await with_timeout(self.cache.get(spec), self.settings.cache_timeout_ms, 'cache')
            if not ids:
                raise TierMiss('cache')
            rows = await with_timeout(self.store.get_by_ids(ids), self.settings.store_timeout_ms, 'cache')
        except TierMiss as e:
            logger.info(f"[Cache] {e}")
            attempts['cache'] = 'miss'
            return None
        except TierTimeout as e:
            logger.warning(f"[Cache] TierTimeout: {e}")
            attempts['cache'] = 'timeout'
            return None
        except Exception as e:
            logger.error(f"[Cache] Error: {e}")
            attempts['cache'] = 'error'
            return None

        if not rows:
            # Ids outlived their rows
            logger.info("[Cache] stale entry, ids no longer resolve")
            attempts['cache'] = 'stale'
            return None
        attempts['cache'] = 'hit'
        # Cached pages carry no count; a full page may have a successor
        return RetrievalResponse(items=[row.to_dict() for row in rows],
                                 total=(spec.page - 1) * page_size + len(rows), page=spec.page,
                                 has_more=len(rows) >= page_size, tier='cache')

    async def _from_store(self, spec, attempts):
        page_size = self.settings.page_size
        offset = (spec.page - 1) * page_size
        try:
            rows = await with_timeout(
                self.store.query(spec, max_age_hours=self.settings.freshness_hours, limit=page_size, offset=offset),
                self.settings.store_timeout_ms, 'store')
            if not rows:
                raise TierMiss('store')
        except TierMiss as e:
            logger.info(f"[Store] {e}")
            attempts['store'] = 'miss'
            return None
        except TierTimeout as e:
            logger.warning(f"[Store] TierTimeout: {e}")
            attempts['store'] = 'timeout'
            return None
        except Exception as e:
            logger.error(f"[Store] Error: {e}")
            attempts['store'] = 'error'
            return None

        attempts['store'] = 'hit'
        try:
            total = await with_timeout(
                self.store.count_matching(spec, max_age_hours=self.settings.freshness_hours),
                self.settings.store_timeout_ms, 'store:count')
        except Exception as e:
            logger.warning(f"[Store] count unavailable, estimating from page: {e}")
            total = offset + len(rows) + (1 if len(rows) >= page_size else 0)
        total = max(total, offset + len(rows))

        try:
            await with_timeout(self.cache.set(spec, [row.id for row in rows]),
                               self.settings.store_timeout_ms, 'cache:write')
        except TierTimeout as e:
            logger.warning(f"[Cache] TierTimeout: {e}")
        return RetrievalResponse(items=[row.to_dict() for row in rows], total=total, page=spec.page,
                                 has_more=offset + len(rows) < total, tier='store')

    def jit_allowed(self) -> bool:
        if self.jit is None:
            logger.info("[JIT] Skipped: no orchestrator configured")
            return False
        if not self.settings.jit_enabled:
            logger.info("[JIT] Skipped: disabled by JIT_ENABLED")
            return False
        marker = self.settings.constrained_runtime
        if marker:
            logger.info(f"[JIT] Skipped: constrained runtime ({marker})")
            return False
        logger.info("[JIT] Enabled for this request")
        return True

    async def _from_jit(self, spec, attempts):
        if not self.jit_allowed():
            attempts['jit'] = 'skipped'
            return None
        try:
            items = await self.jit.acquire(spec)
        except Exception as e:
            logger.error(f"[JIT] Error: {e}")
            attempts['jit'] = 'error'
            return None
        if not items:
            logger.info(f"[JIT] {TierMiss('jit')}")
            attempts['jit'] = 'empty'
            return None
        attempts['jit'] = 'hit'
        return self._single_page(spec, items, 'jit')

    async def _from_fallback(self, spec, attempts):
        if self.fallback is None:
            attempts['fallback'] = 'skipped'
            return None
        try:
            source, items = await self.fallback.search(spec)
        except Exception as e:
            logger.error(f"[Fallback] Error: {e}")
            attempts['fallback'] = 'error'
            return None
        if not items:
            logger.info(f"[Fallback] {TierMiss('fallback')}")
            attempts['fallback'] = 'exhausted'
            return None
        attempts['fallback'] = f"hit:{source}"
        return self._single_page(spec, items, 'fallback')


def build_coordinator(settings: Settings, db=None, registry=None) -> RetrievalCoordinator:
    from .adapters import build_default_registry
    from .cache import build_cache
    from .database import DatabaseManager

    if db is None:
        db = DatabaseManager(settings.database_url)
        db.create_tables()
    registry = registry or build_default_registry(settings)
    store = JobStore(db)
    cache = build_cache(settings, db)
    return RetrievalCoordinator(settings, cache, store,
                                JITOrchestrator(registry, store, cache, settings),
                                FallbackChain(registry, store, cache, settings))
