import asyncio
import logging

from .config import configure_logging, load_settings
from .database import DatabaseManager, SourceEnum
from .schedule import ScheduleRepository

logger = logging.getLogger(__name__)

# (source, keywords, location, frequency_hours, priority)
DEFAULT_ENTRIES = [
    (SourceEnum.REMOTIVE, 'python developer', 'remote', 6, 7),
    (SourceEnum.REMOTEOK, 'backend engineer', 'remote', 6, 6),
    (SourceEnum.WEWORKREMOTELY, 'devops', 'remote', 6, 5),
    (SourceEnum.INDEED, 'python developer', 'Remote', 12, 5),
    (SourceEnum.NAUKRI, 'devops engineer', 'Bangalore', 12, 4),
    (SourceEnum.LINKEDIN, 'backend developer', 'Mumbai', 12, 4),
    (SourceEnum.TELEGRAM, 'developer', None, 6, 3),
    (SourceEnum.JOOBLE, 'software engineer', 'Delhi', 24, 2),
]


async def seed_schedule(repository: ScheduleRepository, entries=DEFAULT_ENTRIES) -> int:
    """Adds the default schedule entries that are not there yet."""
    count = 0
    for source, keywords, location, frequency_hours, priority in entries:
        if await repository.find(source, keywords):
            logger.info(f"   . Skipped (Exists): {source.value} -> {keywords}")
            continue
        await repository.create(source, keywords, location, frequency_hours=frequency_hours, priority=priority)
        count += 1
        logger.info(f"   + Added: {source.value} -> {keywords}")
    return count


async def setup_database():
    settings = load_settings()
    configure_logging(settings)
    logger.info(f"Connecting to: {settings.database_url}")

    db_manager = DatabaseManager(settings.database_url)
    db_manager.create_tables()

    logger.info("Seeding schedule entries...")
    count = await seed_schedule(ScheduleRepository(db_manager))
    logger.info(f"Database setup complete! Added {count} new schedule entries.")


def run():
    asyncio.run(setup_database())


if __name__ == "__main__":
    run()
