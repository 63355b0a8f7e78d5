from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from busqueda.schemas.facts import FactAggregate, PoiSummary
from busqueda.services.repository import SearchCriteria
from busqueda.services.store import InMemoryAggregateRepository

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _aggregate(fact_id: str, **overrides) -> FactAggregate:
    payload = {
        "fact_id": fact_id,
        "collection_name": "C1",
        "collections": ["C1"],
        "created_at": T0,
        "indexed_at": T0,
        "last_updated_at": T0,
    }
    payload.update(overrides)
    return FactAggregate(**payload)


def _seeded(*aggregates: FactAggregate) -> InMemoryAggregateRepository:
    repository = InMemoryAggregateRepository()
    for aggregate in aggregates:
        asyncio.run(repository.upsert(aggregate))
    return repository


def test_reads_return_independent_copies() -> None:
    repository = _seeded(_aggregate("f-1", title="Incendio"))

    loaded = asyncio.run(repository.find_by_fact_id("f-1"))
    assert loaded is not None
    loaded.title = "changed"

    assert repository.documents["f-1"].title == "Incendio"
    assert asyncio.run(repository.find_by_fact_id("missing")) is None


def test_text_search_requires_every_term() -> None:
    repository = _seeded(
        _aggregate("f-1", title="Incendio forestal", description="humo en la ruta"),
        _aggregate("f-2", title="Incendio urbano"),
    )

    page = asyncio.run(repository.search(SearchCriteria(query="incendio humo")))

    assert [row.aggregate.fact_id for row in page.items] == ["f-1"]
    assert page.total == 1


def test_text_search_reaches_point_of_interest_text() -> None:
    repository = _seeded(
        _aggregate("f-1", title="Hecho", pois=[PoiSummary(poi_id="p-1", ocr_text="PELIGRO derrumbe")], poi_ids=["p-1"]),
        _aggregate("f-2", title="Derrumbe en ruta"),
    )

    page = asyncio.run(repository.search(SearchCriteria(query="derrumbe")))

    # Title hits outrank point-of-interest hits.
    assert [row.aggregate.fact_id for row in page.items] == ["f-2", "f-1"]
    assert page.items[0].score > page.items[1].score


def test_relevance_order_follows_requested_direction() -> None:
    repository = _seeded(
        _aggregate("f-1", title="Hecho", pois=[PoiSummary(poi_id="p-1", ocr_text="PELIGRO derrumbe")], poi_ids=["p-1"]),
        _aggregate("f-2", title="Derrumbe en ruta"),
    )

    page = asyncio.run(repository.search(SearchCriteria(query="derrumbe", sort_dir="asc")))

    assert [row.aggregate.fact_id for row in page.items] == ["f-1", "f-2"]


def test_collection_filter_matches_secondary_collections() -> None:
    repository = _seeded(
        _aggregate("f-1", collections=["C1", "C2"]),
        _aggregate("f-2"),
    )

    page = asyncio.run(repository.search(SearchCriteria(collection="C2")))

    assert [row.aggregate.fact_id for row in page.items] == ["f-1"]


def test_date_sort_places_undated_facts_last() -> None:
    repository = _seeded(
        _aggregate("f-1", occurred_at=datetime(2024, 5, 1, tzinfo=timezone.utc)),
        _aggregate("f-2"),
        _aggregate("f-3", occurred_at=datetime(2025, 5, 1, tzinfo=timezone.utc)),
    )

    desc = asyncio.run(repository.search(SearchCriteria(sort_by="date", sort_dir="desc")))
    asc = asyncio.run(repository.search(SearchCriteria(sort_by="date", sort_dir="asc")))

    assert [row.aggregate.fact_id for row in desc.items] == ["f-3", "f-1", "f-2"]
    assert [row.aggregate.fact_id for row in asc.items] == ["f-1", "f-3", "f-2"]


def test_delete_and_stats() -> None:
    repository = _seeded(_aggregate("f-1"), _aggregate("f-2", censored=True), _aggregate("f-3"))

    assert asyncio.run(repository.delete("f-1")) is True
    assert asyncio.run(repository.delete("f-1")) is False

    stats = asyncio.run(repository.count_stats())
    assert (stats.total, stats.active, stats.censored) == (2, 1, 1)

    assert asyncio.run(repository.delete_all()) == 2
    assert asyncio.run(repository.exists("f-3")) is False
