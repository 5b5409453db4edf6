import asyncio
import logging
from datetime import timedelta
from typing import Iterable, List

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from .database import DatabaseManager, Job, SourceEnum, utcnow
from .models import SearchSpecification, UnifiedJob, UpsertResult

logger = logging.getLogger(__name__)


def _identity(item):
    if not isinstance(item, UnifiedJob):
        raise ValueError(f"not a job: {type(item).__name__}")
    if not item.title or not str(item.title).strip():
        raise ValueError("missing title")
    if not item.source:
        raise ValueError("missing source")
    source = SourceEnum(item.source)
    external_id = str(item.external_id).strip() if item.external_id else item.get_content_hash()
    if not external_id:
        raise ValueError("unusable external id")
    return source, external_id[:255]


class JobStore:
    """Jobs keyed by (source, external_id); the retrieval path never deletes rows."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # ------------------------------------------------------------------
    # READS
    # ------------------------------------------------------------------
    async def query(self, spec: SearchSpecification, max_age_hours: float = 24,
                    limit: int = 20, offset: int = 0) -> List[Job]:
        return await asyncio.to_thread(self._query, spec, max_age_hours, limit, offset)

    def _filtered(self, session, spec, max_age_hours):
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        q = session.query(Job).filter(Job.acquired_at >= cutoff)

        for term in spec.keyword_terms:
            pattern = f"%{term}%"
            q = q.filter(or_(Job.title.ilike(pattern), Job.description_html.ilike(pattern),
                             Job.company.ilike(pattern)))

        if spec.location and spec.location != 'remote':
            q = q.filter(Job.location.ilike(f"%{spec.location}%"))
        if spec.remote:
            q = q.filter(or_(Job.is_remote.is_(True), Job.location.ilike('%remote%')))
        if spec.employment_type:
            q = q.filter(Job.employment_type == spec.employment_type)
        # Rows without salary bounds are not excluded by salary filters
        if spec.salary_min is not None:
            q = q.filter(or_(Job.salary_max.is_(None), Job.salary_max >= spec.salary_min))
        if spec.salary_max is not None:
            q = q.filter(or_(Job.salary_min.is_(None), Job.salary_min <= spec.salary_max))
        return q

    def _query(self, spec, max_age_hours, limit, offset):
        with self.db.session_scope() as session:
            return (self._filtered(session, spec, max_age_hours)
                    .order_by(Job.acquired_at.desc(), Job.id.desc())
                    .offset(offset).limit(limit).all())

    async def count_matching(self, spec: SearchSpecification, max_age_hours: float = 24) -> int:
        def count():
            with self.db.session_scope() as session:
                return self._filtered(session, spec, max_age_hours).count()

        return await asyncio.to_thread(count)

    async def get_by_ids(self, ids: Iterable[int]) -> List[Job]:
        """Rows for `ids` in the given order; unknown ids are skipped."""
        ids = list(ids)
        if not ids:
            return []

        def fetch():
            with self.db.session_scope() as session:
                rows = session.query(Job).filter(Job.id.in_(ids)).all()
                by_id = {row.id: row for row in rows}
                return [by_id[i] for i in ids if i in by_id]

        return await asyncio.to_thread(fetch)

    async def count(self) -> int:
        def count():
            with self.db.session_scope() as session:
                return session.query(Job).count()

        return await asyncio.to_thread(count)

    async def stats(self) -> dict:
        def collect():
            with self.db.session_scope() as session:
                per_source = session.query(Job.source, func.count(Job.id)).group_by(Job.source).all()
                newest, oldest = session.query(func.max(Job.acquired_at), func.min(Job.acquired_at)).one()
                return {
                    'total': sum(n for _, n in per_source),
                    'by_source': {source.value: n for source, n in per_source},
                    'newest_acquired_at': newest,
                    'oldest_acquired_at': oldest,
                }

        return await asyncio.to_thread(collect)

    # ------------------------------------------------------------------
    # WRITES
    # ------------------------------------------------------------------
    async def upsert(self, items: Iterable[UnifiedJob], refresh: bool = False) -> UpsertResult:
        """Insert-or-update by identity.

        Known identities count as duplicates and get their mutable fields
        updated; `acquired_at` only moves forward when `refresh` is set.
        Per-item faults are counted in `errors`, never raised.
        """
        return await asyncio.to_thread(self._upsert, list(items), refresh)

    def _upsert(self, items, refresh):
        result = UpsertResult()
        with self.db.session_scope() as session:
            for index, item in enumerate(items):
                try:
                    source, external_id = _identity(item)
                except (ValueError, TypeError) as e:
                    result.errors += 1
                    logger.warning(f"[Store] Rejected item #{index + 1}: {e}")
                    continue

                try:
                    job_id, created = self._upsert_one(session, item, source, external_id, refresh)
                except IntegrityError:
                    # Another writer inserted this identity first
                    session.rollback()
                    try:
                        job_id, created = self._upsert_one(session, item, source, external_id, refresh)
                    except Exception as e:
                        session.rollback()
                        result.errors += 1
                        logger.error(f"[Store] Failed to save {source.value}:{external_id}: {e}")
                        continue
                except Exception as e:
                    session.rollback()
                    result.errors += 1
                    logger.error(f"[Store] Failed to save {source.value}:{external_id}: {e}")
                    continue

                if created:
                    result.stored += 1
                else:
                    result.duplicates += 1
                result.ids.append(job_id)

        if result.stored or result.duplicates or result.errors:
            logger.info(f"   [DB] Saved {result.stored} new jobs, {result.duplicates} duplicates, "
                        f"{result.errors} errors")
        return result

    def _upsert_one(self, session, item, source, external_id, refresh):
        now = utcnow()
        existing = session.query(Job).filter_by(source=source, external_id=external_id).first()
        if existing is not None:
            if item.description:
                existing.description_html = item.description
            if item.salary_text:
                existing.salary_text = item.salary_text[:255]
            if item.salary_min is not None:
                existing.salary_min = item.salary_min
            if item.salary_max is not None:
                existing.salary_max = item.salary_max
            if item.apply_link:
                existing.apply_link = item.apply_link
            if item.raw_data is not None:
                existing.raw_data = item.raw_data
            existing.last_seen_at = now
            if refresh:
                existing.acquired_at = now
            session.commit()
            return existing.id, False

        job = Job(
            source=source,
            external_id=external_id,
            content_hash=item.get_content_hash(),
            title=str(item.title).strip()[:500],
            company=(item.company or '')[:255],
            location=(item.location or '')[:255],
            employment_type=item.employment_type,
            is_remote=bool(item.is_remote),
            salary_text=item.salary_text[:255] if item.salary_text else None,
            salary_min=item.salary_min,
            salary_max=item.salary_max,
            currency=item.currency,
            apply_link=item.apply_link,
            description_html=item.description,
            raw_data=item.raw_data,
            posted_at_source=item.posted_at_source,
            acquired_at=now,
            last_seen_at=now
        )
        session.add(job)
        session.commit()
        return job.id, True

    async def purge_older_than(self, hours: float) -> int:
        """Operator maintenance only; the retrieval path never deletes."""
        def purge():
            cutoff = utcnow() - timedelta(hours=hours)
            with self.db.session_scope() as session:
                return session.query(Job).filter(Job.acquired_at < cutoff).delete(synchronize_session=False)

        deleted = await asyncio.to_thread(purge)
        if deleted:
            logger.info(f"[Cleanup] Removed {deleted} expired jobs.")
        return deleted
