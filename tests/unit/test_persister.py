from __future__ import annotations

from sqlalchemy import func, select

from app.core.constants import CallerRole, QualityStatus
from app.db.session import session_scope
from app.models import Record
from app.schemas.job import CallerScope
from app.services import repository
from app.services.cache import TTLCache, records_key
from app.services.persister import RecordFields, RecordPersister, list_records, to_record_out


def _fields(**overrides) -> RecordFields:
    values = dict(
        transcript="hello\nworld",
        outputs={"lor": "Recommended"},
        work_items=["Built the API"],
        quality_status=QualityStatus.PARTIAL,
        success_rate=0.875,
        warnings=[{"code": "CHUNK_PROCESS_FAILED", "chunk_index": 3, "error": "boom"}],
        user_id=1,
        company_id=10,
    )
    values.update(overrides)
    return RecordFields(**values)


def test_persist_is_idempotent_per_job(session_factory, make_job) -> None:
    job_id = make_job()
    persister = RecordPersister(session_factory, TTLCache())

    first = persister.persist(job_id, _fields())
    second = persister.persist(job_id, _fields(transcript="rewritten", quality_status=QualityStatus.COMPLETE, success_rate=1.0))

    assert first.created is True
    assert second.created is False
    assert second.record_id == first.record_id

    with session_scope(session_factory) as db:
        assert db.scalar(select(func.count()).select_from(Record)) == 1
        record = db.get(Record, first.record_id)
        out = to_record_out(record)
        assert out.transcript == "rewritten"
        assert out.quality_status == "complete"
        assert out.chunk_success_rate == 100.0
        assert repository.require_job(db, job_id).record_id == first.record_id


def test_success_rate_is_stored_as_percentage(session_factory, make_job) -> None:
    job_id = make_job()
    result = RecordPersister(session_factory, TTLCache()).persist(job_id, _fields())

    with session_scope(session_factory) as db:
        out = to_record_out(db.get(Record, result.record_id))
    assert out.chunk_success_rate == 87.5
    assert out.work_items == ["Built the API"]
    assert out.warnings[0]["chunk_index"] == 3


def test_persist_invalidates_company_cache_entries(session_factory, make_job) -> None:
    cache = TTLCache()
    cache.set(records_key(10, "member:1:50"), ["stale"])
    cache.set(records_key("all", "admin:None:50"), ["stale"])
    cache.set(records_key(20, "member:3:50"), ["other company"])

    RecordPersister(session_factory, cache).persist(make_job(), _fields(company_id=10))

    assert cache.get(records_key(10, "member:1:50")) is None
    assert cache.get(records_key("all", "admin:None:50")) is None
    assert cache.get(records_key(20, "member:3:50")) == ["other company"]


def test_list_records_is_scoped(session_factory, make_job) -> None:
    persister = RecordPersister(session_factory, TTLCache())
    persister.persist(make_job(user_id=1, company_id=10), _fields(user_id=1, company_id=10))
    persister.persist(make_job(user_id=2, company_id=10), _fields(user_id=2, company_id=10))
    persister.persist(make_job(user_id=3, company_id=20), _fields(user_id=3, company_id=20))

    with session_scope(session_factory) as db:
        member = list_records(db, CallerScope(user_id=1, company_id=10))
        company = list_records(db, CallerScope(user_id=2, company_id=10, role=CallerRole.COMPANY_ADMIN))
        everyone = list_records(db, CallerScope(role=CallerRole.ADMIN))

    assert [r.user_id for r in member] == [1]
    assert sorted(r.user_id for r in company) == [1, 2]
    assert len(everyone) == 3


def test_ttl_cache_expires_and_evicts() -> None:
    now = {"t": 0.0}
    cache = TTLCache(ttl_s=30, max_entries=2, clock=lambda: now["t"])

    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    # "b" was least recently used.
    assert cache.get("b") is None
    assert len(cache) == 2

    now["t"] = 31.0
    assert cache.get("a") is None


def test_get_or_load_calls_loader_once_while_fresh() -> None:
    cache = TTLCache()
    calls: list[int] = []

    def load() -> list[str]:
        calls.append(1)
        return ["row"]

    assert cache.get_or_load("k", load) == ["row"]
    assert cache.get_or_load("k", load) == ["row"]
    assert len(calls) == 1
    assert cache.invalidate_pattern("k*") == 1
    cache.get_or_load("k", load)
    assert len(calls) == 2
