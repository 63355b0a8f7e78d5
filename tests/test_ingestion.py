from __future__ import annotations

import asyncio

import pytest

from busqueda.schemas.facts import FactIn, PoiIn
from busqueda.services.ingestion import IngestionFailedError, IngestionService, RetryPolicy
from busqueda.services.repository import RepositoryUnavailableError
from busqueda.services.store import InMemoryAggregateRepository


class FlakyRepository(InMemoryAggregateRepository):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def find_by_fact_id(self, fact_id: str):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RepositoryUnavailableError("database unavailable: ConnectionResetError")
        return await super().find_by_fact_id(fact_id)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _fact(fact_id: str = "f-1", **overrides) -> FactIn:
    payload = {"fact_id": fact_id, "collection_name": "Incendios", "title": "Incendio en Bosque Norte"}
    payload.update(overrides)
    return FactIn(**payload)


def _poi(poi_id: str = "p-1", fact_id: str = "f-1", **overrides) -> PoiIn:
    payload = {"poi_id": poi_id, "fact_id": fact_id, "description": "Foto del frente"}
    payload.update(overrides)
    return PoiIn(**payload)


def _service(repository: InMemoryAggregateRepository, sleep: RecordingSleep | None = None) -> IngestionService:
    return IngestionService(repository, RetryPolicy(max_attempts=3, base_delay_seconds=1.0), sleep=sleep or RecordingSleep())


def test_retry_policy_backs_off_exponentially_with_cap() -> None:
    policy = RetryPolicy(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=3.0)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]
    assert RetryPolicy(base_delay_seconds=0.0).delay_for(3) == 0.0


def test_ingest_fact_indexes_then_updates() -> None:
    repository = InMemoryAggregateRepository()
    service = _service(repository)

    first = asyncio.run(service.ingest_fact(_fact()))
    second = asyncio.run(service.ingest_fact(_fact(description="Columna de humo")))

    assert (first.outcome, first.version) == ("indexed", 1)
    assert (second.outcome, second.version) == ("updated", 2)
    assert repository.documents["f-1"].description == "Columna de humo"


def test_ingest_poi_defers_until_fact_is_indexed() -> None:
    repository = InMemoryAggregateRepository()
    service = _service(repository)

    deferred = asyncio.run(service.ingest_poi(_poi()))
    assert deferred.outcome == "deferred"
    assert deferred.detail == "fact_not_indexed"
    assert repository.documents == {}

    asyncio.run(service.ingest_fact(_fact()))
    attached = asyncio.run(service.ingest_poi(_poi()))
    repeated = asyncio.run(service.ingest_poi(_poi()))
    refreshed = asyncio.run(service.ingest_poi(_poi(processing_state="processed")))

    assert (attached.outcome, attached.detail, attached.version) == ("updated", "poi_attached", 2)
    assert (repeated.outcome, repeated.version) == ("unchanged", 2)
    assert (refreshed.outcome, refreshed.detail, refreshed.version) == ("updated", "poi_refreshed", 3)
    assert repository.documents["f-1"].poi_ids == ["p-1"]


def test_ingest_censorship_outcomes() -> None:
    repository = InMemoryAggregateRepository()
    service = _service(repository)

    unknown = asyncio.run(service.ingest_censorship("f-1", "req-1"))
    asyncio.run(service.ingest_fact(_fact()))
    applied = asyncio.run(service.ingest_censorship("f-1", "req-1"))
    repeated = asyncio.run(service.ingest_censorship("f-1", "req-2"))

    assert (unknown.outcome, unknown.detail) == ("deferred", "fact_not_indexed")
    assert (applied.outcome, applied.detail) == ("updated", "censored")
    assert (repeated.outcome, repeated.detail) == ("unchanged", "already_censored")
    assert repository.documents["f-1"].censored_by_request_id == "req-1"


def test_transient_store_failures_are_retried_with_backoff() -> None:
    repository = FlakyRepository(failures=2)
    sleep = RecordingSleep()
    service = _service(repository, sleep)

    result = asyncio.run(service.ingest_fact(_fact()))

    assert result.outcome == "indexed"
    assert repository.calls == 3
    assert sleep.delays == [1.0, 2.0]


def test_exhausted_retries_raise_ingestion_failed() -> None:
    repository = FlakyRepository(failures=10)
    sleep = RecordingSleep()
    service = _service(repository, sleep)

    with pytest.raises(IngestionFailedError):
        asyncio.run(service.ingest_fact(_fact()))

    assert repository.calls == 3
    assert sleep.delays == [1.0, 2.0]
    assert repository.documents == {}


def test_bulk_loads_count_each_item_independently() -> None:
    repository = InMemoryAggregateRepository()
    service = _service(repository)

    facts = asyncio.run(service.ingest_facts_bulk([_fact("f-1"), _fact("f-2")]))
    pois = asyncio.run(service.ingest_pois_bulk([_poi("p-1", "f-1"), _poi("p-2", "f-404")]))

    assert (facts.total, facts.succeeded, facts.failed) == (2, 2, 0)
    assert (pois.total, pois.succeeded, pois.deferred, pois.failed) == (2, 1, 1, 0)


def test_bulk_load_isolates_failed_items() -> None:
    repository = FlakyRepository(failures=3)
    service = _service(repository)

    report = asyncio.run(service.ingest_facts_bulk([_fact("f-1"), _fact("f-2")]))

    assert (report.total, report.succeeded, report.failed) == (2, 1, 1)
    assert list(repository.documents) == ["f-2"]


class CorruptDocumentRepository(InMemoryAggregateRepository):
    def __init__(self, corrupt_ids: set[str]) -> None:
        super().__init__()
        self.corrupt_ids = corrupt_ids

    async def find_by_fact_id(self, fact_id: str):
        if fact_id in self.corrupt_ids:
            raise ValueError(f"stored document for {fact_id} does not validate")
        return await super().find_by_fact_id(fact_id)


def test_bulk_load_counts_non_transient_errors_as_failures() -> None:
    repository = CorruptDocumentRepository({"f-bad"})
    sleep = RecordingSleep()
    service = _service(repository, sleep)

    facts = asyncio.run(service.ingest_facts_bulk([_fact("f-bad"), _fact("f-1")]))
    pois = asyncio.run(service.ingest_pois_bulk([_poi("p-1", "f-bad"), _poi("p-2", "f-1")]))

    assert (facts.total, facts.succeeded, facts.failed) == (2, 1, 1)
    assert (pois.total, pois.succeeded, pois.deferred, pois.failed) == (2, 1, 0, 1)
    assert repository.documents["f-1"].poi_ids == ["p-2"]
    # Only store outages are retried.
    assert sleep.delays == []
