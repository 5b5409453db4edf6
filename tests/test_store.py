from datetime import timedelta

import pytest

from jobfeed.database import Job, SourceEnum, utcnow
from jobfeed.models import SearchSpecification
from conftest import make_job


def _age_rows(db, hours):
    with db.session_scope() as session:
        session.query(Job).update({Job.acquired_at: utcnow() - timedelta(hours=hours)})


async def test_upsert_is_idempotent(store):
    first = await store.upsert([make_job(1)])
    second = await store.upsert([make_job(1)])
    assert (first.stored, first.duplicates, first.errors) == (1, 0, 0)
    assert (second.stored, second.duplicates, second.errors) == (0, 1, 0)
    assert first.ids == second.ids
    assert await store.count() == 1


async def test_malformed_item_does_not_abort_batch(store):
    items = [make_job(1), make_job(2), make_job(3, title=None), make_job(4), make_job(5)]
    result = await store.upsert(items)
    assert (result.stored, result.duplicates, result.errors) == (4, 0, 1)
    assert len(result.ids) == 4
    assert await store.count() == 4


async def test_unknown_source_and_non_jobs_are_errors(store):
    result = await store.upsert([make_job(1, source='myspace'), {'title': 'x'}, make_job(2, source='')])
    assert (result.stored, result.errors) == (0, 3)


async def test_same_external_id_on_two_sources_are_two_items(store):
    result = await store.upsert([make_job(1, source='remotive'), make_job(1, source='remoteok')])
    assert result.stored == 2


async def test_missing_external_id_uses_content_hash(store):
    first = await store.upsert([make_job(1, external_id=None)])
    second = await store.upsert([make_job(1, external_id=None, description='updated')])
    assert first.stored == 1
    assert second.duplicates == 1
    rows = await store.get_by_ids(first.ids)
    assert rows[0].external_id == make_job(1).get_content_hash()
    assert rows[0].description_html == 'updated'


async def test_reacquisition_updates_mutable_fields_but_keeps_acquired_at(store, db):
    first = await store.upsert([make_job(1, salary_text='$100k')])
    _age_rows(db, 5)
    original = (await store.get_by_ids(first.ids))[0].acquired_at

    await store.upsert([make_job(1, description='new description', salary_text='$120k')])
    row = (await store.get_by_ids(first.ids))[0]
    assert row.description_html == 'new description'
    assert row.salary_text == '$120k'
    assert row.acquired_at == original
    assert row.last_seen_at > original

    await store.upsert([make_job(1)], refresh=True)
    assert (await store.get_by_ids(first.ids))[0].acquired_at > original


async def test_query_applies_age_ceiling_without_deleting(store, db):
    await store.upsert([make_job(1)])
    _age_rows(db, 48)
    spec = SearchSpecification.normalize(keywords="golang")
    assert await store.query(spec, max_age_hours=24) == []
    assert len(await store.query(spec, max_age_hours=72)) == 1
    assert await store.count() == 1


async def test_query_filters(store):
    await store.upsert([
        make_job(1, title='Python Developer', location='Berlin', is_remote=False, employment_type='full-time',
                 salary_min=60000, salary_max=80000, description='django'),
        make_job(2, title='Golang Developer', location='Remote', employment_type='contract'),
        make_job(3, title='Python Engineer', location='Remote - EU', is_remote=False, description='fastapi'),
    ])

    async def titles(**kwargs):
        rows = await store.query(SearchSpecification.normalize(**kwargs))
        return sorted(row.title for row in rows)

    assert await titles(keywords='python') == ['Python Developer', 'Python Engineer']
    assert await titles(keywords='python django') == ['Python Developer']
    assert await titles(keywords='acme 2') == ['Golang Developer']
    assert await titles(location='berlin') == ['Python Developer']
    assert await titles(location='remote') == ['Golang Developer', 'Python Engineer']
    assert await titles(employment_type='Full Time') == ['Python Developer']
    assert await titles(salary_min=90000) == ['Golang Developer', 'Python Engineer']
    assert await titles(salary_max=50000) == ['Golang Developer', 'Python Engineer']
    assert await titles(salary_min=70000, salary_max=75000) == ['Golang Developer', 'Python Developer',
                                                                'Python Engineer']


async def test_query_pages_newest_first(store, db):
    await store.upsert([make_job(n) for n in range(1, 6)])
    spec = SearchSpecification.normalize(keywords='golang')
    first_page = await store.query(spec, limit=2, offset=0)
    second_page = await store.query(spec, limit=2, offset=2)
    assert len(first_page) == 2 and len(second_page) == 2
    assert not {r.id for r in first_page} & {r.id for r in second_page}
    assert await store.count_matching(spec) == 5


async def test_get_by_ids_preserves_order_and_skips_missing(store):
    result = await store.upsert([make_job(1), make_job(2), make_job(3)])
    a, b, c = result.ids
    rows = await store.get_by_ids([c, 999, a, b])
    assert [row.id for row in rows] == [c, a, b]
    assert await store.get_by_ids([]) == []


async def test_to_dict_shape(store):
    result = await store.upsert([make_job(1, apply_link='https://example.com/1')])
    item = (await store.get_by_ids(result.ids))[0].to_dict()
    assert item['source'] == 'remotive'
    assert item['externalId'] == 'ext-1'
    assert item['url'] == 'https://example.com/1'
    assert item['acquiredAt'] is not None


async def test_stats_and_purge(store, db):
    await store.upsert([make_job(1), make_job(2, source='remoteok')])
    stats = await store.stats()
    assert stats['total'] == 2
    assert stats['by_source'] == {'remotive': 1, 'remoteok': 1}

    _age_rows(db, 200)
    await store.upsert([make_job(3)])
    assert await store.purge_older_than(100) == 2
    assert await store.count() == 1
