"""JSON API sources reached with aiohttp.

Remotive and RemoteOK are free public feeds cheap enough for the JIT tier;
Adzuna and JSearch are credentialed, rate-limited APIs reserved for the
fallback tier.
"""
import aiohttp
import logging
import re
from typing import Any, Dict, List, Optional

from .base import BaseAdapter, UnifiedJob
from ..database import SourceEnum
from ..errors import AdapterFailure
from ..models import ScrapeOptions, looks_remote, normalize_employment_type, parse_timestamp
from ..timeouts import retry_with_backoff

logger = logging.getLogger(__name__)

_TAGS = re.compile(r'<[^>]+>')


def strip_html(text: Optional[str]) -> str:
    if not text:
        return ''
    return re.sub(r'\s+', ' ', _TAGS.sub(' ', text)).strip()


class JSONAPIAdapter(BaseAdapter):
    request_timeout = 15

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                       headers: Optional[Dict[str, str]] = None) -> Any:
        async def attempt():
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params=params, headers=headers) as response:
                    if response.status != 200:
                        raise AdapterFailure(self.name, f"API error: {response.status}")
                    return await response.json(content_type=None)

        return await retry_with_backoff(attempt, attempts=2,
                                        retry_on=(aiohttp.ClientError,), label=f"{self.label} GET")


class RemotiveAdapter(JSONAPIAdapter):
    source = SourceEnum.REMOTIVE
    label = 'Remotive'
    fast = True
    base_url = "https://remotive.com/api/remote-jobs"

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        logger.info(f"[Remotive] Query: {options.keywords}, {options.location}")
        data = await self.get_json(self.base_url, params={'search': options.keywords, 'limit': options.limit})
        jobs = []
        for job_data in data.get('jobs', []):
            job = self._parse_job(job_data)
            if job:
                jobs.append(job)
        return jobs

    def _parse_job(self, job_data: dict) -> Optional[UnifiedJob]:
        title = job_data.get('title')
        if not title:
            return None
        return UnifiedJob(
            title=title[:500],
            company=job_data.get('company_name') or 'Unknown Company',
            location=job_data.get('candidate_required_location') or 'Remote',
            description=job_data.get('description', ''),
            external_id=str(job_data['id']) if job_data.get('id') else None,
            apply_link=job_data.get('url'),
            employment_type=normalize_employment_type(job_data.get('job_type')),
            salary_text=job_data.get('salary') or None,
            posted_at_source=parse_timestamp(job_data.get('publication_date')),
            is_remote=True,
            raw_data={'category': job_data.get('category'), 'tags': job_data.get('tags')}
        )


class RemoteOKAdapter(JSONAPIAdapter):
    source = SourceEnum.REMOTEOK
    label = 'RemoteOK'
    fast = True
    base_url = "https://remoteok.com/api"

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        # RemoteOK rejects requests without a user agent
        data = await self.get_json(self.base_url, headers={'User-Agent': 'Mozilla/5.0 jobfeed'})
        return self.parse_jobs(data, options.keywords)

    def parse_jobs(self, data: list, keywords: str = '') -> List[UnifiedJob]:
        terms = keywords.lower().split()
        jobs = []
        for job_data in data or []:
            # First element is the API legal notice
            if not isinstance(job_data, dict) or not job_data.get('position'):
                continue

            tags = job_data.get('tags') or []
            searchable = ' '.join([job_data.get('position', ''), job_data.get('company', ''),
                                   strip_html(job_data.get('description')), ' '.join(tags)]).lower()
            if terms and not all(term in searchable for term in terms):
                continue

            salary_min = job_data.get('salary_min') or None
            salary_max = job_data.get('salary_max') or None
            salary_text = f"${salary_min:,} - ${salary_max:,}" if salary_min and salary_max else None
            jobs.append(UnifiedJob(
                title=job_data['position'],
                company=job_data.get('company') or 'Unknown Company',
                location=job_data.get('location') or 'Remote',
                description=strip_html(job_data.get('description')),
                external_id=str(job_data['id']) if job_data.get('id') else None,
                apply_link=job_data.get('apply_url') or job_data.get('url'),
                salary_text=salary_text,
                salary_min=salary_min,
                salary_max=salary_max,
                posted_at_source=parse_timestamp(job_data.get('epoch') or job_data.get('date')),
                is_remote=True,
                raw_data={'tags': tags, 'slug': job_data.get('slug')}
            ))
        return jobs


class AdzunaAdapter(JSONAPIAdapter):
    source = SourceEnum.ADZUNA
    label = 'Adzuna'
    paid = True
    min_interval = 1.0

    def __init__(self, app_id: Optional[str], app_key: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.app_id = app_id
        self.app_key = app_key

    @property
    def available(self) -> bool:
        return bool(self.app_id and self.app_key)

    def _country_and_location(self, location: Optional[str]):
        location = (location or '').lower()
        if location in ('worldwide', 'global', ''):
            # US index for worldwide searches
            return 'us', ''
        return 'in', location

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        country, api_location = self._country_and_location(options.location)
        jobs = []
        for page in range(1, options.max_pages + 1):
            params = {
                "app_id": self.app_id,
                "app_key": self.app_key,
                "what": options.keywords,
                "where": api_location,
                "results_per_page": min(options.limit, 50),
                "content-type": "application/json"
            }
            data = await self.get_json(f"https://api.adzuna.com/v1/api/jobs/{country}/search/{page}", params=params)
            batch = [job for job in (self._parse_job(j) for j in data.get('results', [])) if job]
            jobs.extend(batch)
            if not batch or len(jobs) >= options.limit:
                break
        return jobs

    def _parse_job(self, job_data: dict) -> Optional[UnifiedJob]:
        title = job_data.get('title')
        if not title:
            return None

        company_data = job_data.get('company', {})
        if isinstance(company_data, dict):
            company = company_data.get('display_name', 'Unknown Company')
        else:
            company = str(company_data) if company_data else 'Unknown Company'

        location_data = job_data.get('location', {})
        if isinstance(location_data, dict):
            location = location_data.get('display_name', 'Unknown Location')
        else:
            location = str(location_data) if location_data else 'Unknown Location'

        salary_min = int(job_data['salary_min']) if job_data.get('salary_min') else None
        salary_max = int(job_data['salary_max']) if job_data.get('salary_max') else None
        return UnifiedJob(
            title=strip_html(title)[:500],
            company=company,
            location=location,
            description=strip_html(job_data.get('description', '')),
            external_id=str(job_data['id']) if job_data.get('id') else None,
            apply_link=job_data.get('redirect_url'),
            employment_type=normalize_employment_type(job_data.get('contract_time')),
            salary_text=f"{salary_min:,} - {salary_max:,}" if salary_min and salary_max else None,
            salary_min=salary_min,
            salary_max=salary_max,
            posted_at_source=parse_timestamp(job_data.get('created')),
            is_remote=looks_remote(location),
            raw_data={'category': (job_data.get('category') or {}).get('label')}
        )


class JSearchAdapter(JSONAPIAdapter):
    source = SourceEnum.JSEARCH
    label = 'JSearch'
    paid = True
    min_interval = 1.0
    base_url = "https://jsearch.p.rapidapi.com/search"

    def __init__(self, rapidapi_key: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.rapidapi_key = rapidapi_key

    @property
    def available(self) -> bool:
        return bool(self.rapidapi_key)

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        query = options.keywords
        if options.location and options.location != 'remote':
            query = f"{query} in {options.location}"
        params = {'query': query, 'page': 1, 'num_pages': options.max_pages}
        if options.remote:
            params['remote_jobs_only'] = 'true'
        headers = {'X-RapidAPI-Key': self.rapidapi_key, 'X-RapidAPI-Host': 'jsearch.p.rapidapi.com'}
        data = await self.get_json(self.base_url, params=params, headers=headers)
        return self.parse_jobs(data)

    def parse_jobs(self, data: dict) -> List[UnifiedJob]:
        jobs = []
        for job_data in data.get('data', []):
            if not job_data.get('job_title'):
                continue
            location = ', '.join(p for p in (job_data.get('job_city'), job_data.get('job_state'),
                                              job_data.get('job_country')) if p)
            is_remote = bool(job_data.get('job_is_remote'))
            salary_min = int(job_data['job_min_salary']) if job_data.get('job_min_salary') else None
            salary_max = int(job_data['job_max_salary']) if job_data.get('job_max_salary') else None
            jobs.append(UnifiedJob(
                title=job_data['job_title'],
                company=job_data.get('employer_name') or 'Unknown Company',
                location=location or ('Remote' if is_remote else ''),
                description=job_data.get('job_description', ''),
                external_id=job_data.get('job_id'),
                apply_link=job_data.get('job_apply_link'),
                employment_type=normalize_employment_type(job_data.get('job_employment_type')),
                salary_text=f"{salary_min:,} - {salary_max:,}" if salary_min and salary_max else None,
                salary_min=salary_min,
                salary_max=salary_max,
                currency=job_data.get('job_salary_currency') or 'USD',
                posted_at_source=parse_timestamp(job_data.get('job_posted_at_datetime_utc')),
                is_remote=is_remote,
                raw_data={'publisher': job_data.get('job_publisher')}
            ))
        return jobs
