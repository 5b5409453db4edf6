import pytest

from jobfeed.models import (SearchSpecification, UnifiedJob, fingerprint, looks_remote,
                            normalize_employment_type, parse_timestamp)


def test_equal_specs_share_a_fingerprint():
    a = SearchSpecification.normalize(keywords="  Golang   Developer ", location="REMOTE", page=1)
    b = SearchSpecification.normalize(keywords="golang developer", location="remote")
    assert a == b
    assert fingerprint(a) == fingerprint(b)


def test_fingerprint_is_stable_across_calls():
    spec = SearchSpecification.normalize(keywords="python", location="Berlin", salary_min=50000)
    assert fingerprint(spec) == fingerprint(SearchSpecification.normalize(keywords="PYTHON", location=" berlin ",
                                                                          salary_min="50000"))
    assert len(fingerprint(spec)) == 64


def test_page_changes_fingerprint():
    spec = SearchSpecification.normalize(keywords="python")
    assert fingerprint(spec) != fingerprint(spec.with_page(2))


@pytest.mark.parametrize("raw", ["Full-Time", "full_time", "FULL TIME", " full-time "])
def test_employment_type_variants_collapse(raw):
    assert normalize_employment_type(raw) == "full-time"
    assert SearchSpecification.normalize(employment_type=raw).employment_type == "full-time"


def test_salary_bounds_are_ordered_and_validated():
    spec = SearchSpecification.normalize(salary_min=90000, salary_max="50000")
    assert (spec.salary_min, spec.salary_max) == (50000, 90000)
    with pytest.raises(ValueError):
        SearchSpecification.normalize(salary_min=-1)


def test_defaults_and_page_clamping():
    spec = SearchSpecification.normalize(location="   ", page=0)
    assert spec.location is None
    assert spec.keywords == ""
    assert spec.page == 1
    assert SearchSpecification.normalize(page="abc").page == 1


def test_remote_location_implies_remote_flag():
    assert SearchSpecification.normalize(location="Remote").remote is True
    assert SearchSpecification.normalize(location="Berlin").remote is False


def test_from_request_accepts_camel_case():
    spec = SearchSpecification.from_request({
        'keywords': 'Data Engineer', 'location': 'Berlin', 'employmentType': 'Contract',
        'remote': 'false', 'salaryMin': '40000', 'salaryMax': 80000, 'page': '3',
    })
    assert spec == SearchSpecification(keywords='data engineer', location='berlin', employment_type='contract',
                                       remote=False, salary_min=40000, salary_max=80000, page=3)


def test_job_identity_falls_back_to_content_hash():
    job = UnifiedJob(title="Engineer", company="Acme", location="Remote", description="", source="remotive")
    assert job.identity == ("remotive", job.get_content_hash())
    job.external_id = "42"
    assert job.identity == ("remotive", "42")


def test_parse_timestamp_normalizes_to_naive_utc():
    parsed = parse_timestamp("2024-03-01T12:00:00+02:00")
    assert parsed.tzinfo is None
    assert parsed.hour == 10
    assert parse_timestamp(0).year == 1970
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_looks_remote():
    assert looks_remote("Remote - Europe")
    assert looks_remote("Anywhere")
    assert not looks_remote("Mumbai")
