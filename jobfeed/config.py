import os
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Runtimes that cannot host heavyweight scraping processes
CONSTRAINED_RUNTIME_MARKERS = ('NETLIFY', 'VERCEL', 'AWS_LAMBDA_FUNCTION_NAME')


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return list(default)
    return [v.strip().lower() for v in value.split(',') if v.strip()]


def resolve_database_url() -> str:
    db_url = os.getenv('DATABASE_URL')
    if not db_url and os.getenv('MYSQL_USER'):
        db_url = f"mysql+pymysql://{os.getenv('MYSQL_USER')}:{os.getenv('MYSQL_PASSWORD')}@{os.getenv('MYSQL_HOST')}:{os.getenv('MYSQL_PORT')}/{os.getenv('MYSQL_DB')}"
    return db_url or "sqlite:///jobs.db"


@dataclass
class Settings:
    database_url: str = "sqlite:///jobs.db"

    # Cache tier
    cache_backend: str = 'database'
    cache_ttl_hours: float = 4
    cache_timeout_ms: int = 50
    cache_max_entries: int = 10000

    # Store tier
    store_timeout_ms: int = 2000
    freshness_hours: int = 24
    page_size: int = 20

    # JIT tier
    jit_enabled: bool = True
    jit_timeout_ms: int = 8000
    jit_sources: List[str] = field(default_factory=list)
    jit_max_pages: int = 1

    # External fallback tier
    fallback_timeout_ms: int = 10000
    # Empty means every registered paid adapter, in registration order
    fallback_order: List[str] = field(default_factory=lambda: ['remoteok', 'adzuna', 'jooble', 'jsearch'])

    # Scheduled refresh
    refresh_batch_ceiling: int = 20
    refresh_concurrency: int = 3
    refresh_entry_timeout_ms: int = 60000
    refresh_batch_pause_seconds: float = 2.0
    refresh_max_running_minutes: int = 30
    refresh_failure_multiplier: float = 2.0
    refresh_max_backoff_hours: int = 24
    refresh_max_pages: int = 2
    schedule_interval_seconds: int = 3600

    log_level: str = 'INFO'
    log_file: Optional[str] = 'app.log'

    # Source credentials
    adzuna_app_id: Optional[str] = None
    adzuna_app_key: Optional[str] = None
    jooble_api_key: Optional[str] = None
    rapidapi_key: Optional[str] = None
    telegram_api_id: Optional[int] = None
    telegram_api_hash: Optional[str] = None
    telegram_session_string: Optional[str] = None
    telegram_channels: List[str] = field(default_factory=list)
    proxy_list: List[str] = field(default_factory=list)

    @property
    def constrained_runtime(self) -> Optional[str]:
        """Name of the marker that forbids scraping processes, if any."""
        for marker in CONSTRAINED_RUNTIME_MARKERS:
            if os.getenv(marker):
                return marker
        return None

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_api_id and self.telegram_api_hash and self.telegram_session_string)


def load_settings() -> Settings:
    load_dotenv()

    telegram_api_id = os.getenv('TELEGRAM_API_ID')
    return Settings(
        database_url=resolve_database_url(),
        cache_backend=os.getenv('CACHE_BACKEND', 'database').lower(),
        cache_ttl_hours=_env_float('CACHE_TTL_HOURS', 4),
        cache_timeout_ms=_env_int('CACHE_TIMEOUT_MS', 50),
        cache_max_entries=_env_int('CACHE_MAX_ENTRIES', 10000),
        store_timeout_ms=_env_int('STORE_TIMEOUT_MS', 2000),
        freshness_hours=_env_int('FRESHNESS_HOURS', 24),
        page_size=_env_int('PAGE_SIZE', 20),
        jit_enabled=_env_bool('JIT_ENABLED', True),
        jit_timeout_ms=_env_int('JIT_TIMEOUT_MS', 8000),
        jit_sources=_env_list('JIT_SOURCES', []),
        jit_max_pages=_env_int('JIT_MAX_PAGES', 1),
        fallback_timeout_ms=_env_int('FALLBACK_TIMEOUT_MS', 10000),
        fallback_order=_env_list('FALLBACK_ORDER', ['remoteok', 'adzuna', 'jooble', 'jsearch']),
        refresh_batch_ceiling=_env_int('REFRESH_BATCH_CEILING', 20),
        refresh_concurrency=_env_int('REFRESH_CONCURRENCY', 3),
        refresh_entry_timeout_ms=_env_int('REFRESH_ENTRY_TIMEOUT_MS', 60000),
        refresh_batch_pause_seconds=_env_float('REFRESH_BATCH_PAUSE_SECONDS', 2.0),
        refresh_max_running_minutes=_env_int('REFRESH_MAX_RUNNING_MINUTES', 30),
        refresh_failure_multiplier=_env_float('REFRESH_FAILURE_MULTIPLIER', 2.0),
        refresh_max_backoff_hours=_env_int('REFRESH_MAX_BACKOFF_HOURS', 24),
        refresh_max_pages=_env_int('REFRESH_MAX_PAGES', 2),
        schedule_interval_seconds=_env_int('SCHEDULE_INTERVAL_SECONDS', 3600),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        log_file=os.getenv('LOG_FILE', 'app.log') or None,
        adzuna_app_id=os.getenv('ADZUNA_APP_ID'),
        adzuna_app_key=os.getenv('ADZUNA_APP_KEY'),
        jooble_api_key=os.getenv('JOOBLE_API_KEY'),
        rapidapi_key=os.getenv('RAPIDAPI_KEY'),
        telegram_api_id=int(telegram_api_id) if telegram_api_id else None,
        telegram_api_hash=os.getenv('TELEGRAM_API_HASH'),
        telegram_session_string=os.getenv('TELEGRAM_SESSION_STRING'),
        telegram_channels=[c.strip() for c in os.getenv('TELEGRAM_CHANNELS', '').split(',') if c.strip()],
        proxy_list=[p.strip() for p in os.getenv('PROXY_LIST', '').split(',') if p.strip()],
    )


def configure_logging(settings: Settings) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.insert(0, logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )
