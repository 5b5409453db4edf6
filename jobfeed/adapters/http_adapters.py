from curl_cffi.requests import AsyncSession
from bs4 import BeautifulSoup
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
import asyncio
import json
import re
import random
import os
import logging
from typing import List, Optional

from .base import BaseAdapter, UnifiedJob
from ..database import SourceEnum
from ..errors import AdapterFailure
from ..models import ScrapeOptions, looks_remote, normalize_employment_type, parse_timestamp
from ..timeouts import retry_with_backoff

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'}


class ProxyManager:
    def __init__(self, proxies: Optional[List[str]] = None):
        if proxies is None:
            proxy_list = os.getenv('PROXY_LIST', '')
            proxies = [p.strip() for p in proxy_list.split(',') if p.strip()]
        self.proxies = list(proxies)
        self.index = 0

    def get_proxy(self):
        if not self.proxies:
            return None
        proxy = self.proxies[self.index]
        self.index = (self.index + 1) % len(self.proxies)
        return {'http': f'http://{proxy}', 'https': f'http://{proxy}'}


class HTTPClient:
    """Browser-impersonating client with proxy rotation and retries."""

    def __init__(self, proxy_manager: Optional[ProxyManager] = None, attempts: int = 2):
        self.proxy_manager = proxy_manager or ProxyManager()
        self.attempts = attempts
        self.session = None

    def _get_session(self) -> AsyncSession:
        if self.session is None:
            self.session = AsyncSession(impersonate="chrome110")
        return self.session

    async def close(self):
        if self.session is not None:
            session, self.session = self.session, None
            await session.close()

    async def _send(self, method, url, **kwargs):
        proxy_dict = self.proxy_manager.get_proxy()
        if proxy_dict:
            kwargs['proxies'] = proxy_dict
        if 'timeout' not in kwargs:
            kwargs['timeout'] = 30
        return await self._get_session().request(method, url, **kwargs)

    async def request(self, method, url, **kwargs):
        return await retry_with_backoff(lambda: self._send(method, url, **kwargs),
                                        attempts=self.attempts, label=f"{method} {url}")


def _check_status(response, source: SourceEnum):
    if response.status_code != 200:
        raise AdapterFailure(source.value, f"HTTP {response.status_code}")


def _matches_keywords(text: str, keywords: str) -> bool:
    text = text.lower()
    return all(term in text for term in keywords.lower().split())


class WeWorkRemotelyAdapter(BaseAdapter):
    source = SourceEnum.WEWORKREMOTELY
    label = 'WeWorkRemotely'
    fast = True
    feed_url = 'https://weworkremotely.com/remote-jobs.rss'

    def __init__(self, http_client: Optional[HTTPClient] = None, **kwargs):
        super().__init__(**kwargs)
        self.http_client = http_client or HTTPClient()

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        response = await self.http_client.request('GET', self.feed_url, headers=BROWSER_HEADERS)
        _check_status(response, self.source)
        return self.parse_feed(response.text, options.keywords)

    def parse_feed(self, xml: str, keywords: str = '') -> List[UnifiedJob]:
        soup = BeautifulSoup(xml, 'html.parser')
        jobs = []
        for item in soup.find_all('item'):
            raw_title = item.find('title').get_text(strip=True) if item.find('title') else ''
            # Feed titles read "Company: Position"
            company, _, title = raw_title.partition(': ')
            if not title:
                company, title = '', raw_title
            if not title:
                continue

            description = item.find('description').get_text(strip=True) if item.find('description') else ''
            if keywords and not _matches_keywords(f"{title} {company} {description}", keywords):
                continue

            guid = item.find('guid')
            link = guid.get_text(strip=True) if guid else None
            region = item.find('region')
            location = region.get_text(strip=True) if region else 'Remote'
            job_type = item.find('type')

            jobs.append(UnifiedJob(
                title=title.strip(),
                company=company.strip(),
                location=location,
                description=description,
                external_id=link,
                apply_link=link,
                employment_type=normalize_employment_type(job_type.get_text(strip=True)) if job_type else None,
                posted_at_source=self._parse_pub_date(item.find('pubdate')),
                is_remote=True,
                raw_data={'guid': link, 'region': location}
            ))
        return jobs

    def _parse_pub_date(self, node) -> Optional[datetime]:
        if not node:
            return None
        try:
            parsed = parsedate_to_datetime(node.get_text(strip=True))
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed


class JoobleAdapter(BaseAdapter):
    source = SourceEnum.JOOBLE
    label = 'Jooble'
    paid = True
    min_interval = 1.0

    def __init__(self, api_key: Optional[str], http_client: Optional[HTTPClient] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.http_client = http_client or HTTPClient()

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        jobs = []
        for page in range(1, options.max_pages + 1):
            payload = {'keywords': options.keywords, 'location': options.location or '', 'page': page}
            response = await self.http_client.request('POST', f'https://jooble.org/api/{self.api_key}', json=payload)
            _check_status(response, self.source)
            batch = self.parse_jobs(response.json())
            jobs.extend(batch)
            if not batch or len(jobs) >= options.limit:
                break
        return jobs

    def parse_jobs(self, data: dict) -> List[UnifiedJob]:
        jobs = []
        for job_data in data.get('jobs', []):
            location = job_data.get('location', '')
            jobs.append(UnifiedJob(
                title=job_data.get('title', ''),
                company=job_data.get('company', ''),
                location=location,
                description=job_data.get('snippet', ''),
                external_id=str(job_data['id']) if job_data.get('id') else None,
                apply_link=job_data.get('link', ''),
                employment_type=normalize_employment_type(job_data.get('type')),
                salary_text=job_data.get('salary') or None,
                posted_at_source=parse_timestamp(job_data.get('updated')),
                is_remote=looks_remote(location),
                raw_data=job_data
            ))
        return jobs


class NaukriAdapter(BaseAdapter):
    source = SourceEnum.NAUKRI
    label = 'Naukri'
    min_interval = 15.0

    def __init__(self, http_client: Optional[HTTPClient] = None, **kwargs):
        super().__init__(**kwargs)
        self.http_client = http_client or HTTPClient()

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        jobs = []
        headers = {
            **BROWSER_HEADERS,
            'Accept': 'application/json, text/plain, */*',
            'appid': '109',
            'systemid': '109'
        }
        for page in range(1, options.max_pages + 1):
            params = {'noOfResults': 20, 'pageNo': page, 'keyword': options.keywords,
                      'location': options.location or ''}
            response = await self.http_client.request('GET', 'https://www.naukri.com/jobapi/v3/search',
                                                      params=params, headers=headers)
            _check_status(response, self.source)
            batch = self.parse_jobs(response.json())
            jobs.extend(batch)
            if not batch or len(jobs) >= options.limit:
                break
            await asyncio.sleep(random.uniform(2, 5))
        return jobs

    def parse_jobs(self, data: dict) -> List[UnifiedJob]:
        jobs = []
        for job_data in data.get('jobDetails', []):
            salary_label = job_data.get('salaryDetail', {}).get('label', '')
            salary_min, salary_max = self._parse_naukri_salary(salary_label)
            location = ', '.join(p.get('label', '') if isinstance(p, dict) else str(p)
                                 for p in job_data.get('placeholders', []))
            jobs.append(UnifiedJob(
                title=job_data.get('title', ''),
                company=job_data.get('companyName', ''),
                location=location,
                description=job_data.get('jobDescription', ''),
                external_id=job_data.get('jobId'),
                apply_link=f"https://www.naukri.com/job-listings-{job_data.get('jobId', '')}",
                salary_text=salary_label or None,
                salary_min=salary_min,
                salary_max=salary_max,
                currency='INR',
                is_remote=looks_remote(location),
                raw_data=job_data
            ))
        return jobs

    def _parse_naukri_salary(self, salary_text: str) -> tuple:
        if not salary_text: return None, None
        pattern = r'(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)\s*(lacs?|crores?)'
        match = re.search(pattern, salary_text.lower())
        if match:
            min_val, max_val = float(match.group(1)), float(match.group(2))
            multiplier = 100000 if 'lac' in match.group(3) else 10000000
            return int(min_val * multiplier), int(max_val * multiplier)
        return None, None


class LinkedInAdapter(BaseAdapter):
    source = SourceEnum.LINKEDIN
    label = 'LinkedIn'
    min_interval = 15.0
    page_size = 25

    def __init__(self, http_client: Optional[HTTPClient] = None, **kwargs):
        super().__init__(**kwargs)
        self.http_client = http_client or HTTPClient()

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        jobs = []
        for page in range(options.max_pages):
            params = {'keywords': options.keywords, 'location': options.location or '',
                      'start': page * self.page_size}
            if options.remote:
                params['f_WT'] = '2'
            response = await self.http_client.request(
                'GET', 'https://www.linkedin.com/jobs-guest/jobs/api/seeMoreJobPostings/search',
                params=params, headers=BROWSER_HEADERS)
            _check_status(response, self.source)
            batch = self.parse_cards(response.text)
            jobs.extend(batch)
            if not batch or len(jobs) >= options.limit:
                break
            await asyncio.sleep(random.uniform(2, 5))
        return jobs

    def parse_cards(self, html: str) -> List[UnifiedJob]:
        jobs = []
        soup = BeautifulSoup(html, 'html.parser')
        for card in soup.find_all('li'):
            title = card.find('h3', class_='base-search-card__title')
            company = card.find('h4', class_='base-search-card__subtitle')
            location = card.find('span', class_='job-search-card__location')
            link = card.find('a', class_='base-card__full-link')
            salary = card.find('span', class_='job-search-card__salary-info')
            posted = card.find('time')
            container = card.find(attrs={'data-entity-urn': True})
            urn = card.get('data-entity-urn') or (container.get('data-entity-urn') if container else None)

            if title and company and urn:
                location_text = location.get_text(strip=True) if location else ""
                jobs.append(UnifiedJob(
                    title=title.get_text(strip=True),
                    company=company.get_text(strip=True),
                    location=location_text,
                    description='',
                    external_id=urn,
                    apply_link=link.get('href') if link else None,
                    salary_text=salary.get_text(strip=True) if salary else None,
                    posted_at_source=parse_timestamp(posted.get('datetime')) if posted else None,
                    is_remote=looks_remote(location_text),
                    raw_data={'data_entity_urn': urn}
                ))
        return jobs


class IndeedAdapter(BaseAdapter):
    source = SourceEnum.INDEED
    label = 'Indeed'
    min_interval = 15.0
    page_size = 10

    def __init__(self, http_client: Optional[HTTPClient] = None, **kwargs):
        super().__init__(**kwargs)
        self.http_client = http_client or HTTPClient()

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        jobs = []
        for page in range(options.max_pages):
            params = {'q': options.keywords, 'l': options.location or '', 'start': page * self.page_size}
            response = await self.http_client.request('GET', 'https://www.indeed.com/jobs',
                                                      params=params, headers={'User-Agent': 'Mozilla/5.0'})
            _check_status(response, self.source)
            batch = self.parse_page(response.text)
            jobs.extend(batch)
            if not batch or len(jobs) >= options.limit:
                break
            await asyncio.sleep(random.uniform(2, 5))
        return jobs

    def parse_page(self, html: str) -> List[UnifiedJob]:
        jobs = []
        soup = BeautifulSoup(html, 'html.parser')
        script = soup.find('script', {'id': 'mosaic-data'})
        if not (script and script.string):
            return jobs

        data = json.loads(script.string)
        results = data.get('metaData', {}).get('mosaicProviderJobCardsModel', {}).get('results', [])
        for r in results:
            salary_text = r.get('salarySnippet', {}).get('text', '')
            salary_min, salary_max = self._parse_indeed_salary(salary_text)
            location = r.get('formattedLocation', '')
            job_types = r.get('jobTypes') or []
            jobs.append(UnifiedJob(
                title=r.get('title', ''),
                company=r.get('company', ''),
                location=location,
                description=r.get('summary', ''),
                external_id=r.get('jobkey'),
                apply_link=f"https://www.indeed.com/viewjob?jk={r.get('jobkey', '')}",
                employment_type=normalize_employment_type(job_types[0]) if job_types else None,
                salary_text=salary_text or None,
                salary_min=salary_min,
                salary_max=salary_max,
                currency='USD',
                is_remote=bool(r.get('remoteLocation')) or looks_remote(location),
                raw_data=r
            ))
        return jobs

    def _parse_indeed_salary(self, text: str) -> tuple:
        if not text: return None, None
        match = re.search(r'\$([\d,]+)\s*-\s*\$([\d,]+)', text)
        if match:
            return int(match.group(1).replace(',', '')), int(match.group(2).replace(',', ''))
        return None, None
