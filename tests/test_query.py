from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from busqueda.schemas.facts import FactAggregate
from busqueda.schemas.search import SearchRequest
from busqueda.services.query import SearchService, SearchValidationError, dedupe_by_title, page_bounds, select_strategy
from busqueda.services.repository import ScoredAggregate
from busqueda.services.store import InMemoryAggregateRepository

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _aggregate(fact_id: str, title: str | None, collection: str, minutes: int, **overrides) -> FactAggregate:
    updated_at = T0 + timedelta(minutes=minutes)
    payload = {
        "fact_id": fact_id,
        "collection_name": collection,
        "collections": [collection],
        "title": title,
        "created_at": updated_at,
        "indexed_at": updated_at,
        "last_updated_at": updated_at,
    }
    payload.update(overrides)
    return FactAggregate(**payload)


def _service(*aggregates: FactAggregate) -> SearchService:
    repository = InMemoryAggregateRepository()
    for aggregate in aggregates:
        asyncio.run(repository.upsert(aggregate))
    return SearchService(repository, max_size=50)


def test_select_strategy_covers_every_filter_combination() -> None:
    assert select_strategy(query="fuego", tags=[], collection=None) == "text"
    assert select_strategy(query="fuego", tags=["a"], collection=None) == "text_tags"
    assert select_strategy(query="fuego", tags=[], collection="C1") == "text_collection"
    assert select_strategy(query="fuego", tags=["a"], collection="C1") == "text_tags_collection"
    assert select_strategy(query=None, tags=["a"], collection=None) == "tags"
    assert select_strategy(query=None, tags=["a"], collection="C1") == "tags_collection"
    assert select_strategy(query=None, tags=[], collection="C1") == "collection"
    assert select_strategy(query=None, tags=[], collection=None) == "active"


def test_page_bounds() -> None:
    assert page_bounds(total=25, page=0, size=10) == (3, True, False)
    assert page_bounds(total=25, page=2, size=10) == (3, False, True)
    assert page_bounds(total=0, page=0, size=10) == (0, False, False)


def test_dedupe_by_title_keeps_latest_and_unions_collections() -> None:
    rows = [
        ScoredAggregate(_aggregate("a", "Incendio", "C1", 1), score=0.9),
        ScoredAggregate(_aggregate("x", "Otro hecho", "C3", 5), score=0.5),
        ScoredAggregate(_aggregate("b", " incendio ", "C2", 10), score=0.4),
    ]

    results = dedupe_by_title(rows)

    assert [result.fact_id for result in results] == ["b", "x"]
    assert results[0].collections == ["C2", "C1"]
    assert results[0].score == 0.4


def test_dedupe_by_title_never_groups_untitled_rows() -> None:
    rows = [
        ScoredAggregate(_aggregate("a", None, "C1", 1)),
        ScoredAggregate(_aggregate("b", "  ", "C2", 2)),
    ]

    assert [result.fact_id for result in dedupe_by_title(rows)] == ["a", "b"]


def test_search_collapses_same_title_across_collections() -> None:
    service = _service(
        _aggregate("fire-1", "Incendio", "C1", 1),
        _aggregate("fire-2", "Incendio", "C2", 10),
    )

    response = asyncio.run(service.search(SearchRequest(query="incendio")))

    assert response.total == 2
    assert response.strategy == "text"
    assert len(response.results) == 1
    assert response.results[0].fact_id == "fire-2"
    assert sorted(response.results[0].collections) == ["C1", "C2"]


def test_search_paginates_with_total_before_dedupe() -> None:
    service = _service(*[_aggregate(f"f-{index:02d}", f"Evento {index}", "C1", index) for index in range(25)])

    last_page = asyncio.run(service.search(SearchRequest(page=2, size=10)))

    assert last_page.total == 25
    assert last_page.total_pages == 3
    assert len(last_page.results) == 5
    assert last_page.has_next is False
    assert last_page.has_previous is True
    assert last_page.strategy == "active"
    # Without a text query the newest documents come first.
    assert last_page.results[0].fact_id == "f-04"


def test_search_never_returns_censored_facts() -> None:
    service = _service(
        _aggregate("f-1", "Incendio", "C1", 1, censored=True),
        _aggregate("f-2", "Inundación", "C1", 2),
    )

    response = asyncio.run(service.search(SearchRequest(collection="C1")))

    assert [result.fact_id for result in response.results] == ["f-2"]
    assert response.total == 1


def test_search_tag_match_any_and_all() -> None:
    service = _service(
        _aggregate("f-1", "Uno", "C1", 1, tags=["incendio"], ai_tags=["humo"]),
        _aggregate("f-2", "Dos", "C1", 2, tags=["incendio"]),
    )

    any_match = asyncio.run(service.search(SearchRequest(tags=["humo", "incendio"])))
    all_match = asyncio.run(service.search(SearchRequest(tags=["humo", "incendio"], tag_match="all")))

    assert {result.fact_id for result in any_match.results} == {"f-1", "f-2"}
    assert [result.fact_id for result in all_match.results] == ["f-1"]


def test_search_sorts_by_title_ascending() -> None:
    service = _service(
        _aggregate("f-1", "beta", "C1", 1),
        _aggregate("f-2", "Alfa", "C1", 2),
        _aggregate("f-3", None, "C1", 3),
    )

    response = asyncio.run(service.search(SearchRequest(sort_by="title", sort_dir="asc")))

    assert [result.fact_id for result in response.results] == ["f-2", "f-1", "f-3"]


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"page": -1},
        {"size": 0},
        {"size": 51},
        {"query": "   "},
    ],
)
def test_search_rejects_malformed_requests(request_kwargs: dict[str, object]) -> None:
    service = _service()
    with pytest.raises(SearchValidationError):
        asyncio.run(service.search(SearchRequest(**request_kwargs)))


def test_stats_counts_censored_separately() -> None:
    service = _service(
        _aggregate("f-1", "Uno", "C1", 1),
        _aggregate("f-2", "Dos", "C1", 2, censored=True),
    )

    stats = asyncio.run(service.stats())

    assert (stats.total_indexed, stats.active, stats.censored) == (2, 1, 1)
