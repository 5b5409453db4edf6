from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import hashlib
import json
import re

_WHITESPACE = re.compile(r'\s+')


def _clean(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(' ', str(value)).strip().casefold()


def normalize_employment_type(value: Optional[str]) -> Optional[str]:
    """'Full Time', 'FULL_TIME' and 'full-time' all become 'full-time'."""
    return _clean(value).replace('_', '-').replace(' ', '-') or None


def looks_remote(location: Optional[str]) -> bool:
    text = _clean(location)
    return 'remote' in text or 'anywhere' in text or 'worldwide' in text


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or unix epoch to naive UTC; None when unparseable."""
    if value is None or value == '':
        return None
    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except (ValueError, OSError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    number = int(float(value))
    if number < 0:
        raise ValueError(f"salary bound must not be negative: {value}")
    return number


@dataclass(frozen=True)
class SearchSpecification:
    keywords: str = ""
    location: Optional[str] = None
    employment_type: Optional[str] = None
    remote: bool = False
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    page: int = 1

    @classmethod
    def normalize(cls, keywords: Optional[str] = None, location: Optional[str] = None,
                  employment_type: Optional[str] = None, remote: bool = False,
                  salary_min: Any = None, salary_max: Any = None, page: Any = 1) -> 'SearchSpecification':
        location_norm = _clean(location) or None
        employment_norm = normalize_employment_type(employment_type)
        low, high = _to_int(salary_min), _to_int(salary_max)
        if low is not None and high is not None and low > high:
            low, high = high, low

        if isinstance(remote, str):
            remote = remote.strip().lower() in ('1', 'true', 'yes', 'on')

        try:
            page_norm = max(int(page or 1), 1)
        except (TypeError, ValueError):
            page_norm = 1

        return cls(
            keywords=_clean(keywords),
            location=location_norm,
            employment_type=employment_norm,
            remote=bool(remote) or location_norm == 'remote',
            salary_min=low,
            salary_max=high,
            page=page_norm,
        )

    @classmethod
    def from_request(cls, request: Dict[str, Any]) -> 'SearchSpecification':
        """Accepts the retrieval request shape, camelCase or snake_case."""
        return cls.normalize(
            keywords=request.get('keywords'),
            location=request.get('location'),
            employment_type=request.get('employmentType', request.get('employment_type')),
            remote=request.get('remote', False),
            salary_min=request.get('salaryMin', request.get('salary_min')),
            salary_max=request.get('salaryMax', request.get('salary_max')),
            page=request.get('page', 1),
        )

    @property
    def keyword_terms(self) -> List[str]:
        return [t for t in self.keywords.split(' ') if t]

    def with_page(self, page: int) -> 'SearchSpecification':
        return SearchSpecification(
            keywords=self.keywords, location=self.location, employment_type=self.employment_type,
            remote=self.remote, salary_min=self.salary_min, salary_max=self.salary_max, page=max(page, 1),
        )

    def to_params(self) -> Dict[str, Any]:
        return asdict(self)


def fingerprint(spec: SearchSpecification) -> str:
    canonical = json.dumps(spec.to_params(), sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class UnifiedJob:
    title: str
    company: str
    location: str
    description: str
    source: str = ''
    external_id: Optional[str] = None
    apply_link: Optional[str] = None
    employment_type: Optional[str] = None
    salary_text: Optional[str] = None
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    currency: str = 'USD'
    posted_at_source: Optional[datetime] = None
    is_remote: bool = False
    raw_data: Optional[dict] = None

    def get_content_hash(self) -> str:
        content = f"{(self.title or '').lower().strip()}|{(self.company or '').lower().strip()}|{(self.location or '').lower().strip()}"
        return hashlib.sha256(content.encode()).hexdigest()

    @property
    def identity(self) -> tuple:
        return (self.source, self.external_id or self.get_content_hash())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': None,
            'source': self.source,
            'externalId': self.external_id or self.get_content_hash(),
            'title': self.title,
            'company': self.company,
            'location': self.location,
            'employmentType': self.employment_type,
            'salary': self.salary_text,
            'description': self.description,
            'url': self.apply_link,
            'postedDate': self.posted_at_source.isoformat() if self.posted_at_source else None,
            'acquiredAt': None,
        }


@dataclass
class ScrapeOptions:
    keywords: str
    location: Optional[str] = None
    max_pages: int = 1
    remote: bool = False
    limit: int = 20

    @classmethod
    def from_spec(cls, spec: SearchSpecification, max_pages: int = 1, limit: int = 20) -> 'ScrapeOptions':
        return cls(keywords=spec.keywords, location=spec.location, max_pages=max_pages,
                   remote=spec.remote, limit=limit)


@dataclass
class ScrapeResult:
    success: bool
    source: str
    data: List[UnifiedJob] = field(default_factory=list)
    items_scraped: int = 0
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class UpsertResult:
    stored: int = 0
    duplicates: int = 0
    errors: int = 0
    ids: List[int] = field(default_factory=list)


@dataclass
class RetrievalResponse:
    items: List[Dict[str, Any]]
    total: int
    page: int
    has_more: bool
    tier: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': self.items,
            'total': self.total,
            'page': self.page,
            'hasMore': self.has_more,
            'tier': self.tier,
        }
