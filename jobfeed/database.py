from sqlalchemy import (create_engine, Column, Integer, BigInteger, String, Text, DateTime, Boolean, JSON,
                        Float, Enum, UniqueConstraint, Index)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
import enum
import threading

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
IdType = BigInteger().with_variant(Integer(), 'sqlite')


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every table stores time."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SourceEnum(enum.Enum):
    REMOTIVE = 'remotive'
    REMOTEOK = 'remoteok'
    WEWORKREMOTELY = 'weworkremotely'
    INDEED = 'indeed'
    LINKEDIN = 'linkedin'
    NAUKRI = 'naukri'
    TELEGRAM = 'telegram'
    ADZUNA = 'adzuna'
    JOOBLE = 'jooble'
    JSEARCH = 'jsearch'


class Job(Base):
    __tablename__ = 'jobs'
    __table_args__ = (
        UniqueConstraint('source', 'external_id', name='uq_jobs_source_external_id'),
        Index('ix_jobs_acquired_at', 'acquired_at'),
    )

    id = Column(IdType, primary_key=True, autoincrement=True)
    source = Column(Enum(SourceEnum), nullable=False)
    external_id = Column(String(255), nullable=False)
    content_hash = Column(String(64), nullable=False)
    title = Column(String(500), nullable=False)
    company = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False, default='')
    employment_type = Column(String(50), nullable=True)
    is_remote = Column(Boolean, default=False)
    salary_text = Column(String(255), nullable=True)
    salary_min = Column(Integer, nullable=True)
    salary_max = Column(Integer, nullable=True)
    currency = Column(String(10), default='USD')
    apply_link = Column(Text, nullable=True)
    description_html = Column(Text, nullable=True)
    raw_data = Column(JSON, nullable=True)
    posted_at_source = Column(DateTime, nullable=True)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'source': self.source.value,
            'externalId': self.external_id,
            'title': self.title,
            'company': self.company,
            'location': self.location,
            'employmentType': self.employment_type,
            'salary': self.salary_text,
            'description': self.description_html,
            'url': self.apply_link,
            'postedDate': self.posted_at_source.isoformat() if self.posted_at_source else None,
            'acquiredAt': self.acquired_at.isoformat() if self.acquired_at else None,
        }


class SearchCacheEntry(Base):
    __tablename__ = 'search_cache'

    id = Column(IdType, primary_key=True, autoincrement=True)
    search_key = Column(String(64), unique=True, nullable=False)
    search_params = Column(JSON, nullable=True)
    job_ids = Column(JSON, nullable=False)
    hit_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class ScheduleEntry(Base):
    __tablename__ = 'schedule_entries'
    __table_args__ = (
        Index('ix_schedule_entries_due', 'is_active', 'next_run_at'),
    )

    id = Column(Integer, primary_key=True)
    source = Column(Enum(SourceEnum), nullable=False)
    keywords = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    frequency_hours = Column(Float, nullable=False, default=6)
    priority = Column(Integer, nullable=False, default=5)
    is_active = Column(Boolean, default=True, nullable=False)
    is_running = Column(Boolean, default=False, nullable=False)
    running_since = Column(DateTime, nullable=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=False, default=utcnow)
    metadata_json = Column('metadata', JSON, nullable=True)


class AcquisitionRun(Base):
    __tablename__ = 'acquisition_runs'

    id = Column(IdType, primary_key=True, autoincrement=True)
    schedule_id = Column(Integer, nullable=True)
    source = Column(String(50), nullable=False)
    search_query = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False)
    items_found = Column(Integer, default=0, nullable=False)
    items_stored = Column(Integer, default=0, nullable=False)
    items_duplicate = Column(Integer, default=0, nullable=False)
    items_error = Column(Integer, default=0, nullable=False)
    duration_ms = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=False)


class DatabaseManager:
    def __init__(self, connection_string):
        self.is_sqlite = connection_string.startswith('sqlite')
        if self.is_sqlite and (':memory:' in connection_string or connection_string == 'sqlite://'):
            # One shared connection so every thread sees the same in-memory database
            self.engine = create_engine(connection_string, connect_args={'check_same_thread': False},
                                        poolclass=StaticPool)
        elif self.is_sqlite:
            self.engine = create_engine(connection_string, connect_args={'check_same_thread': False})
        else:
            self.engine = create_engine(connection_string, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        # SQLite allows a single writer; other engines serialize on their own
        self._lock = threading.RLock() if self.is_sqlite else None

    def create_tables(self):
        Base.metadata.create_all(bind=self.engine)

    def get_session(self):
        return self.SessionLocal()

    @contextmanager
    def session_scope(self):
        """Session that commits on success and rolls back on error.

        Every store, cache and schedule call goes through here from a worker
        thread, so SQLite access is serialized at this point.
        """
        lock = self._lock or nullcontext()
        with lock:
            session = self.get_session()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
