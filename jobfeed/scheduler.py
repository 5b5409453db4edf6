import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from .adapters import AdapterRegistry, build_default_registry
from .cache import SearchCache, build_cache
from .config import Settings, configure_logging, load_settings
from .database import DatabaseManager, utcnow
from .errors import AdapterFailure, TierTimeout
from .models import ScrapeOptions
from .schedule import AcquisitionLog, BackoffPolicy, DueEntry, RunRecord, ScheduleRepository
from .store import JobStore
from .timeouts import with_timeout

logger = logging.getLogger("Scheduler")


@dataclass
class RefreshSummary:
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    items_stored: int = 0
    cache_evicted: int = 0
    runs: List[RunRecord] = field(default_factory=list)


class RefreshOrchestrator:
    """Refreshes the store from due schedule entries.

    Entries are processed in fixed-size batches with a pause in between, so
    no more than `refresh_concurrency` sources are hit at once however many
    entries are due. Every entry ends with an audit record and a new
    next-due, whatever happened to it.
    """

    def __init__(self, settings: Settings, registry: AdapterRegistry, store: JobStore,
                 schedule: ScheduleRepository, log: AcquisitionLog, cache: Optional[SearchCache] = None):
        self.settings = settings
        self.registry = registry
        self.store = store
        self.schedule = schedule
        self.log = log
        self.cache = cache

    async def run_once(self) -> RefreshSummary:
        summary = await self._refresh_due()
        if self.cache is not None:
            summary.cache_evicted = await self.cache.maintain()
            await self._log_popular_searches()
        return summary

    async def _log_popular_searches(self, limit=5):
        try:
            popular = await self.cache.popular(limit)
        except Exception as e:
            logger.warning(f"[Cache] popular searches unavailable: {e}")
            return
        for entry in popular:
            params = entry['search_params'] or {}
            logger.info(f"[Cache] Popular: '{params.get('keywords', '')}' ({entry['hit_count']} hits)")

    async def _refresh_due(self) -> RefreshSummary:
        summary = RefreshSummary()
        entries = await self.schedule.list_due(self.settings.refresh_batch_ceiling)
        if not entries:
            logger.info("[Scheduler] No due entries")
            return summary

        size = max(self.settings.refresh_concurrency, 1)
        batches = [entries[i:i + size] for i in range(0, len(entries), size)]
        logger.info(f"[Scheduler] {len(entries)} due entries in {len(batches)} batches of up to {size}")

        for number, batch in enumerate(batches, start=1):
            # Claimed per batch so only the batch in flight is marked running
            won = await self.schedule.claim([entry.id for entry in batch])
            skipped = [entry.id for entry in batch if entry.id not in won]
            if skipped:
                logger.info(f"[Scheduler] Entries {skipped} already taken by another run, skipping")
            batch = [entry for entry in batch if entry.id in won]
            summary.claimed += len(batch)

            outcomes = await asyncio.gather(*(self._process(entry) for entry in batch), return_exceptions=True)
            for entry, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    # _process finalizes its own entry; this only guards the batch
                    logger.error(f"[Scheduler] Entry #{entry.id} crashed: {outcome}")
                    summary.failed += 1
                    continue
                summary.runs.append(outcome)
                summary.items_stored += outcome.items_stored
                if outcome.status == 'error':
                    summary.failed += 1
                else:
                    summary.succeeded += 1

            if number < len(batches) and self.settings.refresh_batch_pause_seconds > 0:
                await asyncio.sleep(self.settings.refresh_batch_pause_seconds)

        logger.info(f"[Scheduler] Cycle complete - succeeded: {summary.succeeded}, failed: {summary.failed}, "
                    f"stored: {summary.items_stored}")
        return summary

    async def _process(self, entry: DueEntry) -> RunRecord:
        run = RunRecord(source=entry.source, schedule_id=entry.id, search_query=entry.keywords,
                        location=entry.location, started_at=utcnow(), finished_at=utcnow(), status='error')
        try:
            await self._execute(entry, run)
        except TierTimeout as e:
            run.error_message = str(e)
            logger.warning(f"[Scheduler] TierTimeout on #{entry.id} ({entry.source}): {e}")
        except AdapterFailure as e:
            run.error_message = str(e)
            logger.warning(f"[Scheduler] AdapterFailure on #{entry.id}: {e}")
        except Exception as e:
            run.error_message = f"{type(e).__name__}: {e}"
            logger.error(f"[Scheduler] Entry #{entry.id} failed: {run.error_message}")
        finally:
            run.finished_at = utcnow()
            await self._finalize(entry, run)
        return run

    async def _execute(self, entry: DueEntry, run: RunRecord):
        try:
            adapter = self.registry.get(entry.source)
        except KeyError:
            raise AdapterFailure(entry.source, "no adapter registered") from None

        logger.info(f"[Scheduler] Fetching {entry.source}: {entry.keywords} ({entry.location or 'any'})")
        options = ScrapeOptions(keywords=entry.keywords, location=entry.location,
                                max_pages=self.settings.refresh_max_pages,
                                limit=self.settings.page_size * self.settings.refresh_max_pages)
        result = await with_timeout(adapter.scrape(options), self.settings.refresh_entry_timeout_ms,
                                    f"refresh:{entry.source}")
        if not result.success:
            raise AdapterFailure(entry.source, result.error or 'unknown error')

        run.items_found = len(result.data)
        if result.data:
            upserted = await with_timeout(self.store.upsert(result.data, refresh=True),
                                          self.settings.store_timeout_ms * 5, 'refresh:persist')
            run.items_stored = upserted.stored
            run.items_duplicate = upserted.duplicates
            run.items_error = upserted.errors
            if self.cache is not None:
                # Cached id lists for this query predate the new rows
                await self.cache.invalidate(entry.to_spec())

        if run.items_error and not (run.items_stored or run.items_duplicate):
            run.status = 'error'
            run.error_message = f"all {run.items_error} items rejected by the store"
        elif run.items_error:
            run.status = 'partial'
        else:
            run.status = 'success'

    async def _finalize(self, entry: DueEntry, run: RunRecord):
        try:
            await self.log.record(run)
        except Exception as e:
            logger.error(f"[Scheduler] Could not record run for #{entry.id}: {e}")
        try:
            next_run = await self.schedule.mark_finished(entry.id, run.status != 'error', now=run.finished_at)
            logger.info(f"[Scheduler] #{entry.id} {run.status} in {run.duration_ms}ms, next run {next_run}")
        except Exception as e:
            logger.error(f"[Scheduler] Could not reschedule #{entry.id}: {e}")


class RefreshDaemon:
    """Timer loop around RefreshOrchestrator.run_once with graceful shutdown."""

    def __init__(self, orchestrator: RefreshOrchestrator, interval_seconds: float):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.running = True

        signal.signal(signal.SIGINT, self._shutdown_handler)
        signal.signal(signal.SIGTERM, self._shutdown_handler)

    def _shutdown_handler(self, signum, frame):
        logger.info("Shutdown signal received. Stopping scheduler...")
        self.running = False

    async def start(self):
        logger.info(f"Refresh scheduler started (Interval: {self.interval_seconds / 3600:.1f}h)")
        while self.running:
            start_time = datetime.now()
            try:
                await self.orchestrator.run_once()
            except Exception as e:
                logger.error(f"Error in scheduler cycle: {e}")

            next_run = datetime.now() + timedelta(seconds=self.interval_seconds)
            logger.info(f"Cycle took {(datetime.now() - start_time).total_seconds():.1f}s, "
                        f"next run at {next_run.strftime('%Y-%m-%d %H:%M:%S')}")
            await self._smart_sleep(self.interval_seconds)

    async def _smart_sleep(self, seconds):
        """Sleeps in short bursts to allow for rapid shutdown."""
        end_time = datetime.now() + timedelta(seconds=seconds)
        while datetime.now() < end_time and self.running:
            await asyncio.sleep(1)


def build_orchestrator(settings: Settings, db: Optional[DatabaseManager] = None,
                       registry: Optional[AdapterRegistry] = None) -> RefreshOrchestrator:
    if db is None:
        db = DatabaseManager(settings.database_url)
        db.create_tables()
    policy = BackoffPolicy(settings.refresh_failure_multiplier, settings.refresh_max_backoff_hours)
    return RefreshOrchestrator(
        settings,
        registry or build_default_registry(settings),
        JobStore(db),
        ScheduleRepository(db, policy, settings.refresh_max_running_minutes),
        AcquisitionLog(db),
        cache=build_cache(settings, db),
    )


async def main(argv=None):
    parser = argparse.ArgumentParser(description="Scheduled refresh of the job store")
    parser.add_argument('--once', action='store_true', help="run a single refresh pass and exit")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings)
    orchestrator = build_orchestrator(settings)

    try:
        if args.once:
            await orchestrator.run_once()
            return
        daemon = RefreshDaemon(orchestrator, settings.schedule_interval_seconds)
        await daemon.start()
    finally:
        await orchestrator.registry.close()
        logger.info("Scheduler shutdown complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
