"""Schedule entries and the acquisition audit log.

The refresh orchestrator only claims due entries and marks them finished;
the remaining methods serve the admin/seed side.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import func, or_, and_, update

from .database import AcquisitionRun, DatabaseManager, ScheduleEntry, SourceEnum, utcnow
from .models import SearchSpecification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """next-due = now + frequency, stretched by multiplier^(failures-1) after failures.

    A multiplier of 1.0 advances every entry by its plain frequency whatever
    the outcome.
    """
    failure_multiplier: float = 2.0
    max_backoff_hours: float = 24

    def next_run_at(self, now: datetime, frequency_hours: float, consecutive_failures: int) -> datetime:
        hours = frequency_hours
        if consecutive_failures > 0:
            hours = frequency_hours * (self.failure_multiplier ** (consecutive_failures - 1))
            hours = min(hours, max(self.max_backoff_hours, frequency_hours))
        return now + timedelta(hours=hours)


@dataclass(frozen=True)
class DueEntry:
    """Snapshot of a due schedule entry."""
    id: int
    source: str
    keywords: str
    location: Optional[str]
    frequency_hours: float
    priority: int
    consecutive_failures: int

    def to_spec(self) -> SearchSpecification:
        return SearchSpecification.normalize(keywords=self.keywords, location=self.location)


@dataclass
class RunRecord:
    source: str
    started_at: datetime
    finished_at: datetime
    status: str
    schedule_id: Optional[int] = None
    search_query: Optional[str] = None
    location: Optional[str] = None
    items_found: int = 0
    items_stored: int = 0
    items_duplicate: int = 0
    items_error: int = 0
    error_message: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class ScheduleRepository:
    def __init__(self, db: DatabaseManager, policy: Optional[BackoffPolicy] = None,
                 max_running_minutes: float = 30):
        self.db = db
        self.policy = policy or BackoffPolicy()
        self.max_running_minutes = max_running_minutes

    # ------------------------------------------------------------------
    # ORCHESTRATOR SIDE
    # ------------------------------------------------------------------
    def _claimable(self, now: datetime):
        stale_cutoff = now - timedelta(minutes=self.max_running_minutes)
        return and_(
            ScheduleEntry.is_active.is_(True),
            ScheduleEntry.next_run_at <= now,
            or_(ScheduleEntry.is_running.is_(False),
                and_(ScheduleEntry.running_since.isnot(None), ScheduleEntry.running_since < stale_cutoff)),
        )

    async def list_due(self, limit: int, now: Optional[datetime] = None) -> List[DueEntry]:
        """Due entries, oldest next-due first, including ones stuck running past the watchdog age."""
        return await asyncio.to_thread(self._list_due, limit, now or utcnow())

    def _list_due(self, limit: int, now: datetime) -> List[DueEntry]:
        with self.db.session_scope() as session:
            rows = (session.query(ScheduleEntry)
                    .filter(self._claimable(now))
                    .order_by(ScheduleEntry.next_run_at.asc(), ScheduleEntry.priority.desc())
                    .limit(limit).all())
            return [DueEntry(
                id=row.id,
                source=row.source.value,
                keywords=row.keywords,
                location=row.location,
                frequency_hours=row.frequency_hours,
                priority=row.priority,
                consecutive_failures=row.consecutive_failures or 0,
            ) for row in rows]

    async def claim(self, entry_ids: List[int], now: Optional[datetime] = None) -> Set[int]:
        """Marks entries running; returns the ids this caller won.

        Each claim is a conditional UPDATE, so when two invocations race for
        the same entry exactly one of them gets it.
        """
        return await asyncio.to_thread(self._claim, list(entry_ids), now or utcnow())

    def _claim(self, entry_ids: List[int], now: datetime) -> Set[int]:
        claimed = set()
        with self.db.session_scope() as session:
            for entry_id in entry_ids:
                stale = session.query(ScheduleEntry.running_since).filter(
                    ScheduleEntry.id == entry_id, ScheduleEntry.is_running.is_(True)).scalar()
                outcome = session.execute(
                    update(ScheduleEntry)
                    .where(ScheduleEntry.id == entry_id, self._claimable(now))
                    .values(is_running=True, running_since=now)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount != 1:
                    continue
                if stale is not None:
                    logger.warning(f"[Scheduler] Reclaiming entry #{entry_id}, stuck running since {stale}")
                claimed.add(entry_id)
        return claimed

    async def mark_finished(self, entry_id: int, success: bool, now: Optional[datetime] = None) -> Optional[datetime]:
        """Clears the running flag and schedules the next attempt; returns next-due."""
        return await asyncio.to_thread(self._mark_finished, entry_id, success, now or utcnow())

    def _mark_finished(self, entry_id: int, success: bool, now: datetime) -> Optional[datetime]:
        with self.db.session_scope() as session:
            entry = session.get(ScheduleEntry, entry_id)
            if entry is None:
                logger.warning(f"[Scheduler] Entry #{entry_id} vanished before it could be rescheduled")
                return None
            entry.consecutive_failures = 0 if success else (entry.consecutive_failures or 0) + 1
            entry.is_running = False
            entry.running_since = None
            entry.last_run_at = now
            entry.next_run_at = self.policy.next_run_at(now, entry.frequency_hours, entry.consecutive_failures)
            return entry.next_run_at

    # ------------------------------------------------------------------
    # ADMIN SIDE
    # ------------------------------------------------------------------
    async def create(self, source: SourceEnum, keywords: str, location: Optional[str] = None,
                     frequency_hours: float = 6, priority: int = 5,
                     next_run_at: Optional[datetime] = None, metadata: Optional[dict] = None) -> int:
        _check_priority(priority)
        _check_frequency(frequency_hours)

        def insert():
            with self.db.session_scope() as session:
                entry = ScheduleEntry(source=SourceEnum(source), keywords=keywords, location=location,
                                      frequency_hours=frequency_hours, priority=priority,
                                      next_run_at=next_run_at or utcnow(), metadata_json=metadata)
                session.add(entry)
                session.flush()
                return entry.id

        return await asyncio.to_thread(insert)

    async def get(self, entry_id: int) -> Optional[ScheduleEntry]:
        def fetch():
            with self.db.session_scope() as session:
                return session.get(ScheduleEntry, entry_id)

        return await asyncio.to_thread(fetch)

    async def find(self, source: SourceEnum, keywords: str) -> Optional[ScheduleEntry]:
        def fetch():
            with self.db.session_scope() as session:
                return session.query(ScheduleEntry).filter_by(source=SourceEnum(source), keywords=keywords).first()

        return await asyncio.to_thread(fetch)

    async def _update(self, entry_id: int, **values) -> bool:
        def apply():
            with self.db.session_scope() as session:
                entry = session.get(ScheduleEntry, entry_id)
                if entry is None:
                    return False
                for key, value in values.items():
                    setattr(entry, key, value)
                return True

        return await asyncio.to_thread(apply)

    async def set_active(self, entry_id: int, active: bool) -> bool:
        return await self._update(entry_id, is_active=active)

    async def update_priority(self, entry_id: int, priority: int) -> bool:
        _check_priority(priority)
        return await self._update(entry_id, priority=priority)

    async def update_frequency(self, entry_id: int, frequency_hours: float) -> bool:
        _check_frequency(frequency_hours)
        return await self._update(entry_id, frequency_hours=frequency_hours)

    async def stats(self) -> Dict[str, int]:
        def collect():
            now = utcnow()
            with self.db.session_scope() as session:
                base = session.query(func.count(ScheduleEntry.id))
                return {
                    'total': base.scalar(),
                    'active': base.filter(ScheduleEntry.is_active.is_(True)).scalar(),
                    'running': base.filter(ScheduleEntry.is_running.is_(True)).scalar(),
                    'due': base.filter(ScheduleEntry.is_active.is_(True), ScheduleEntry.next_run_at <= now).scalar(),
                    'failing': base.filter(ScheduleEntry.consecutive_failures > 0).scalar(),
                }

        return await asyncio.to_thread(collect)


def _check_priority(priority: int):
    if not 1 <= priority <= 10:
        raise ValueError("priority must be between 1 and 10")


def _check_frequency(frequency_hours: float):
    if frequency_hours < 1:
        raise ValueError("frequency must be at least 1 hour")


class AcquisitionLog:
    """Append-only audit log of orchestrator runs."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def record(self, run: RunRecord) -> int:
        def insert():
            with self.db.session_scope() as session:
                row = AcquisitionRun(
                    schedule_id=run.schedule_id,
                    source=run.source,
                    search_query=run.search_query,
                    location=run.location,
                    status=run.status,
                    items_found=run.items_found,
                    items_stored=run.items_stored,
                    items_duplicate=run.items_duplicate,
                    items_error=run.items_error,
                    duration_ms=run.duration_ms,
                    error_message=run.error_message[:2000] if run.error_message else None,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                )
                session.add(row)
                session.flush()
                return row.id

        return await asyncio.to_thread(insert)

    async def recent(self, limit: int = 50, source: Optional[str] = None) -> List[AcquisitionRun]:
        def fetch():
            with self.db.session_scope() as session:
                q = session.query(AcquisitionRun)
                if source:
                    q = q.filter(AcquisitionRun.source == source)
                return q.order_by(AcquisitionRun.started_at.desc(), AcquisitionRun.id.desc()).limit(limit).all()

        return await asyncio.to_thread(fetch)

    async def stats(self) -> Dict[str, dict]:
        """Per-source run counts, success rate and totals."""
        def collect():
            with self.db.session_scope() as session:
                rows = (session.query(AcquisitionRun.source, AcquisitionRun.status,
                                      func.count(AcquisitionRun.id), func.sum(AcquisitionRun.items_stored),
                                      func.avg(AcquisitionRun.duration_ms))
                        .group_by(AcquisitionRun.source, AcquisitionRun.status).all())

            summary: Dict[str, dict] = {}
            for source, status, runs, stored, avg_ms in rows:
                entry = summary.setdefault(source, {'runs': 0, 'success': 0, 'error': 0, 'partial': 0,
                                                    'items_stored': 0, 'avg_duration_ms': 0.0})
                previous_runs = entry['runs']
                entry['runs'] += runs
                entry[status] = entry.get(status, 0) + runs
                entry['items_stored'] += int(stored or 0)
                entry['avg_duration_ms'] = (entry['avg_duration_ms'] * previous_runs
                                            + float(avg_ms or 0) * runs) / entry['runs']
            for entry in summary.values():
                entry['success_rate'] = round(entry['success'] / entry['runs'], 3) if entry['runs'] else 0.0
            return summary

        return await asyncio.to_thread(collect)
