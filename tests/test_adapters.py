import json
from datetime import datetime
from types import SimpleNamespace

import pytest

from jobfeed.adapters import AdapterRegistry, RateLimiter
from jobfeed.adapters.api_adapters import (AdzunaAdapter, JSearchAdapter, RemoteOKAdapter, RemotiveAdapter,
                                           strip_html)
from jobfeed.adapters.http_adapters import (HTTPClient, IndeedAdapter, JoobleAdapter, LinkedInAdapter,
                                            NaukriAdapter, ProxyManager, WeWorkRemotelyAdapter)
from jobfeed.adapters.telegram import TelegramAdapter
from jobfeed.database import SourceEnum
from jobfeed.models import ScrapeOptions
from conftest import FakeAdapter, make_job

OPTIONS = ScrapeOptions(keywords='golang developer', limit=20)


# ----------------------------------------------------------------------
# Contract
# ----------------------------------------------------------------------
async def test_scrape_turns_exceptions_into_failed_results():
    adapter = FakeAdapter(SourceEnum.REMOTIVE, error=ConnectionError("reset by peer"))
    result = await adapter.scrape(OPTIONS)
    assert result.success is False
    assert result.source == 'remotive'
    assert 'reset by peer' in result.error
    assert result.data == []


async def test_scrape_stamps_source_and_truncates():
    jobs = [make_job(n, source='') for n in range(5)]
    adapter = FakeAdapter(SourceEnum.REMOTEOK, jobs=jobs)
    result = await adapter.scrape(ScrapeOptions(keywords='golang', limit=3))
    assert result.success
    assert result.items_scraped == 3
    assert {job.source for job in result.data} == {'remoteok'}


async def test_unavailable_adapter_is_not_called():
    adapter = FakeAdapter(SourceEnum.ADZUNA, jobs=[make_job(1)], available=False)
    result = await adapter.scrape(OPTIONS)
    assert result.success is False
    assert adapter.calls == 0


async def test_rate_limiter_spaces_requests(monkeypatch):
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    monkeypatch.setattr('jobfeed.adapters.base.asyncio.sleep', fake_sleep)
    limiter = RateLimiter(min_interval=5)
    await limiter.acquire()
    await limiter.acquire()
    assert len(slept) == 1
    assert 0 < slept[0] <= 5


class RecordingSession:
    created = 0

    def __init__(self, impersonate=None):
        RecordingSession.created += 1
        self.requests = []
        self.closed = False

    async def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return SimpleNamespace(status_code=200, text='')

    async def close(self):
        self.closed = True


async def test_http_client_reuses_one_session(monkeypatch):
    RecordingSession.created = 0
    monkeypatch.setattr('jobfeed.adapters.http_adapters.AsyncSession', RecordingSession)
    client = HTTPClient(ProxyManager(['10.0.0.1:8080', '10.0.0.2:8080']))

    await client.request('GET', 'https://example.com/a')
    await client.request('GET', 'https://example.com/b')

    assert RecordingSession.created == 1
    session = client.session
    assert [kwargs['proxies']['http'] for _, _, kwargs in session.requests] == [
        'http://10.0.0.1:8080', 'http://10.0.0.2:8080']

    await AdapterRegistry([WeWorkRemotelyAdapter(http_client=client),
                           IndeedAdapter(http_client=client)]).close()
    assert session.closed and client.session is None


def test_credentialed_adapters_report_availability():
    assert not AdzunaAdapter(None, 'key').available
    assert AdzunaAdapter('id', 'key').available
    assert not JSearchAdapter('').available
    assert not JoobleAdapter(None).available
    assert not TelegramAdapter(123, 'hash', 'session', channels=[]).available
    assert TelegramAdapter(123, 'hash', 'session', channels=['jobs']).available


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
def test_registry_rejects_duplicates():
    registry = AdapterRegistry([FakeAdapter(SourceEnum.REMOTIVE)])
    with pytest.raises(ValueError):
        registry.register(FakeAdapter(SourceEnum.REMOTIVE))


def test_registry_lookup():
    adapter = FakeAdapter(SourceEnum.REMOTIVE)
    registry = AdapterRegistry([adapter])
    assert registry.get('remotive') is adapter
    assert registry.get(SourceEnum.REMOTIVE) is adapter
    assert 'remotive' in registry
    assert 'monster' not in registry
    with pytest.raises(KeyError):
        registry.get('monster')
    with pytest.raises(KeyError):
        registry.get(SourceEnum.INDEED)


def test_registry_fast_and_ordered_selection():
    remotive = FakeAdapter(SourceEnum.REMOTIVE)
    remoteok = FakeAdapter(SourceEnum.REMOTEOK)
    offline = FakeAdapter(SourceEnum.WEWORKREMOTELY, available=False)
    indeed = FakeAdapter(SourceEnum.INDEED, fast=False)
    adzuna = FakeAdapter(SourceEnum.ADZUNA, fast=False, paid=True)
    jooble = FakeAdapter(SourceEnum.JOOBLE, fast=False, paid=True, available=False)
    registry = AdapterRegistry([remotive, remoteok, offline, indeed, adzuna, jooble])

    assert registry.fast() == [remotive, remoteok]
    assert registry.fast(['remoteok']) == [remoteok]
    assert registry.ordered(['jooble', 'adzuna', 'unknown', 'remotive']) == [adzuna, remotive]
    assert registry.paid() == [adzuna]
    assert len(registry) == 6


# ----------------------------------------------------------------------
# Parsers
# ----------------------------------------------------------------------
def test_proxy_manager_rotates():
    manager = ProxyManager(['p1:8080', 'p2:8080'])
    picked = [manager.get_proxy()['https'] for _ in range(3)]
    assert picked == ['http://p1:8080', 'http://p2:8080', 'http://p1:8080']
    assert ProxyManager([]).get_proxy() is None


def test_linkedin_cards():
    html = """
    <ul>
      <li><div data-entity-urn="urn:li:jobPosting:42">
        <a class="base-card__full-link" href="https://linkedin.com/jobs/view/42"></a>
        <h3 class="base-search-card__title"> Golang Developer </h3>
        <h4 class="base-search-card__subtitle">Acme</h4>
        <span class="job-search-card__location">Remote, India</span>
        <time datetime="2024-05-01"></time>
      </div></li>
      <li><h3 class="base-search-card__title">No company</h3></li>
    </ul>
    """
    jobs = LinkedInAdapter().parse_cards(html)
    assert len(jobs) == 1
    job = jobs[0]
    assert (job.title, job.company, job.external_id) == ('Golang Developer', 'Acme', 'urn:li:jobPosting:42')
    assert job.apply_link == 'https://linkedin.com/jobs/view/42'
    assert job.is_remote
    assert job.posted_at_source == datetime(2024, 5, 1)


def test_indeed_mosaic_data():
    payload = {'metaData': {'mosaicProviderJobCardsModel': {'results': [{
        'title': 'Backend Engineer', 'company': 'Globex', 'formattedLocation': 'Austin, TX',
        'jobkey': 'abc123', 'salarySnippet': {'text': '$90,000 - $120,000 a year'},
        'jobTypes': ['Full-time'], 'summary': 'Go services',
    }]}}}
    html = f'<html><script id="mosaic-data">{json.dumps(payload)}</script></html>'
    jobs = IndeedAdapter().parse_page(html)
    assert len(jobs) == 1
    job = jobs[0]
    assert (job.salary_min, job.salary_max) == (90000, 120000)
    assert job.employment_type == 'full-time'
    assert job.apply_link.endswith('jk=abc123')
    assert not job.is_remote
    assert IndeedAdapter().parse_page('<html></html>') == []


def test_naukri_salary_and_jobs():
    adapter = NaukriAdapter()
    assert adapter._parse_naukri_salary('5-10 Lacs PA') == (500000, 1000000)
    assert adapter._parse_naukri_salary('1 - 2 Crores') == (10000000, 20000000)
    assert adapter._parse_naukri_salary('Not disclosed') == (None, None)

    jobs = adapter.parse_jobs({'jobDetails': [{
        'title': 'DevOps Engineer', 'companyName': 'Infy', 'jobId': '777',
        'salaryDetail': {'label': '12-18 Lacs'}, 'placeholders': [{'label': 'Bangalore'}],
    }]})
    assert jobs[0].location == 'Bangalore'
    assert jobs[0].currency == 'INR'
    assert jobs[0].salary_min == 1200000


def test_weworkremotely_feed():
    xml = """<rss><channel>
      <item>
        <title>Acme: Senior Golang Developer</title>
        <region>Anywhere in the World</region>
        <type>Full-Time</type>
        <description>Build golang developer tooling</description>
        <guid>https://weworkremotely.com/jobs/1</guid>
        <pubDate>Wed, 01 May 2024 10:00:00 +0000</pubDate>
      </item>
      <item>
        <title>Globex: Designer</title>
        <description>Figma work</description>
        <guid>https://weworkremotely.com/jobs/2</guid>
      </item>
    </channel></rss>"""
    jobs = WeWorkRemotelyAdapter().parse_feed(xml, 'golang developer')
    assert len(jobs) == 1
    job = jobs[0]
    assert (job.company, job.title) == ('Acme', 'Senior Golang Developer')
    assert job.external_id == 'https://weworkremotely.com/jobs/1'
    assert job.employment_type == 'full-time'
    assert job.posted_at_source == datetime(2024, 5, 1, 10, 0)
    assert job.is_remote


def test_remotive_job():
    job = RemotiveAdapter()._parse_job({
        'id': 9, 'title': 'Golang Developer', 'company_name': 'Acme', 'job_type': 'full_time',
        'candidate_required_location': 'Worldwide', 'publication_date': '2024-05-01T08:00:00',
        'url': 'https://remotive.com/9',
    })
    assert job.external_id == '9'
    assert job.employment_type == 'full-time'
    assert job.posted_at_source == datetime(2024, 5, 1, 8, 0)
    assert RemotiveAdapter()._parse_job({'id': 10}) is None


def test_remoteok_skips_legal_notice_and_filters():
    data = [
        {'legal': 'API terms'},
        {'id': 1, 'position': 'Golang Developer', 'company': 'Acme', 'tags': ['go'],
         'description': '<p>Write <b>developer</b> tools</p>', 'salary_min': 100000, 'salary_max': 150000,
         'epoch': 1714550400},
        {'id': 2, 'position': 'Designer', 'company': 'Globex', 'tags': ['figma']},
    ]
    jobs = RemoteOKAdapter().parse_jobs(data, 'golang developer')
    assert [job.external_id for job in jobs] == ['1']
    assert jobs[0].description == 'Write developer tools'
    assert jobs[0].salary_text == '$100,000 - $150,000'
    assert jobs[0].posted_at_source == datetime(2024, 5, 1, 8, 0)
    assert len(RemoteOKAdapter().parse_jobs(data)) == 2


def test_adzuna_job_and_country():
    adapter = AdzunaAdapter('id', 'key')
    assert adapter._country_and_location(None) == ('us', '')
    assert adapter._country_and_location('Delhi') == ('in', 'delhi')

    job = adapter._parse_job({
        'id': 55, 'title': '<strong>Go</strong> Developer', 'company': {'display_name': 'Initech'},
        'location': {'display_name': 'Delhi'}, 'salary_min': 600000.0, 'salary_max': 900000.0,
        'contract_time': 'full_time', 'redirect_url': 'https://adzuna/55',
    })
    assert job.title == 'Go Developer'
    assert (job.company, job.location) == ('Initech', 'Delhi')
    assert job.salary_text == '600,000 - 900,000'
    assert adapter._parse_job({'id': 56}) is None


def test_jsearch_jobs():
    jobs = JSearchAdapter('key').parse_jobs({'data': [
        {'job_id': 'j1', 'job_title': 'Go Engineer', 'employer_name': 'Hooli', 'job_city': 'Pune',
         'job_country': 'IN', 'job_is_remote': False, 'job_employment_type': 'FULLTIME'},
        {'job_id': 'j2', 'job_title': 'Remote Go Engineer', 'job_is_remote': True},
        {'job_id': 'j3'},
    ]})
    assert [job.external_id for job in jobs] == ['j1', 'j2']
    assert jobs[0].location == 'Pune, IN'
    assert jobs[1].location == 'Remote'
    assert jobs[1].company == 'Unknown Company'


def test_jooble_jobs():
    jobs = JoobleAdapter('key').parse_jobs({'jobs': [
        {'id': 31, 'title': 'Go Dev', 'company': 'Umbrella', 'location': 'Remote', 'snippet': 'go',
         'link': 'https://jooble/31', 'updated': '2024-05-01T00:00:00.0000000'},
    ]})
    assert jobs[0].external_id == '31'
    assert jobs[0].is_remote


def test_telegram_message():
    message = SimpleNamespace(id=7, chat_id=-100, date=datetime(2024, 5, 1),
                              text="Golang Developer wanted\nApply at https://example.com/apply now")
    job = TelegramAdapter(1, 'h', 's', ['gojobs'])._parse_message(message, 'gojobs')
    assert job.external_id == 'gojobs:7'
    assert job.title == 'Golang Developer wanted'
    assert job.apply_link == 'https://example.com/apply'


def test_strip_html():
    assert strip_html('<p>Hello <b>world</b></p>\n') == 'Hello world'
    assert strip_html(None) == ''
