"""Write-back of freshly acquired jobs, shared by the JIT and fallback tiers."""
import logging
import re

from rapidfuzz import fuzz

from .cache import SearchCache
from .errors import PersistenceFailure, TierTimeout
from .models import SearchSpecification, looks_remote
from .store import JobStore
from .timeouts import with_timeout

logger = logging.getLogger(__name__)

TITLE_SIMILARITY = 85
_COMPANY_SUFFIX = re.compile(r',?\s*(inc\.?|llc|ltd\.?|corp\.?|corporation)$')
_TITLE_NOISE = re.compile(r'[^\w\s\-/+#.]')


def dedupe(jobs):
    """Drops repeated identities, keeping the first occurrence."""
    seen = set()
    unique = []
    for job in jobs:
        if job.identity in seen:
            continue
        seen.add(job.identity)
        unique.append(job)
    return unique


def _company_key(company):
    return _COMPANY_SUFFIX.sub('', ' '.join((company or '').lower().split()))


def _title_key(title):
    return _TITLE_NOISE.sub('', ' '.join((title or '').lower().split()))


def _location_key(job):
    if job.is_remote or looks_remote(job.location):
        return 'remote'
    return ' '.join((job.location or '').lower().split())


def same_posting(a, b) -> bool:
    """Same company, near-identical title, same place: one posting listed twice."""
    company = _company_key(a.company)
    if not company or company != _company_key(b.company):
        return False
    if _location_key(a) != _location_key(b):
        return False
    return fuzz.ratio(_title_key(a.title), _title_key(b.title)) >= TITLE_SIMILARITY


def collapse_duplicates(records):
    """Keeps the first of every group of records that describe the same posting.

    Works on anything with title, company, location and is_remote, so both
    in-flight jobs and stored rows can be collapsed.
    """
    kept = []
    for record in records:
        if any(same_posting(record, other) for other in kept):
            continue
        kept.append(record)
    if len(kept) < len(records):
        logger.info(f"   [Dedup] {len(records) - len(kept)} cross-listed postings folded")
    return kept


async def persist_and_cache(store: JobStore, cache: SearchCache, spec: SearchSpecification,
                            jobs, store_timeout_ms: float, tier: str):
    """Upserts every job, then caches and returns one item per distinct posting."""
    try:
        result = await with_timeout(store.upsert(jobs), store_timeout_ms, f"{tier}:persist")
        if not result.ids:
            raise PersistenceFailure('upsert', RuntimeError(f"{result.errors} of {len(jobs)} items rejected"))
        rows = collapse_duplicates(
            await with_timeout(store.get_by_ids(result.ids), store_timeout_ms, f"{tier}:resolve"))
        if rows:
            await cache.set(spec, [row.id for row in rows])
            return [row.to_dict() for row in rows]
    except (PersistenceFailure, TierTimeout) as e:
        logger.error(f"[{tier}] PersistenceFailure: {e}")
    except Exception as e:
        logger.error(f"[{tier}] PersistenceFailure: {PersistenceFailure('write-back', e)}")

    return [job.to_dict() for job in collapse_duplicates(jobs)]
