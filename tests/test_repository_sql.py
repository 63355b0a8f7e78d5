from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone

import asyncpg
import pytest

from busqueda.schemas.facts import FactAggregate, PoiSummary
from busqueda.services.repository import PostgresAggregateRepository, RepositoryUnavailableError, SearchCriteria


def test_search_sql_always_excludes_censored_facts() -> None:
    where_sql, order_by_sql, rank_sql, params = PostgresAggregateRepository.build_search_sql(SearchCriteria())

    assert where_sql == "a.censored = false"
    assert order_by_sql == "a.last_updated_at desc, a.fact_id asc"
    assert rank_sql == "0::real"
    assert params == []


def test_search_sql_binds_query_tags_and_collection() -> None:
    where_sql, order_by_sql, rank_sql, params = PostgresAggregateRepository.build_search_sql(
        SearchCriteria(query=" incendio ", tags=["humo"], collection="C1")
    )

    assert params == ["incendio", ["humo"], "C1"]
    assert "a.search_vector @@ websearch_to_tsquery('spanish', $1)" in where_sql
    assert "(a.tags && $2::text[] or a.ai_tags && $2::text[])" in where_sql
    assert "(a.collection_name = $3 or $3 = any(a.collections))" in where_sql
    assert rank_sql == "ts_rank_cd(a.search_vector, websearch_to_tsquery('spanish', $1))"
    assert order_by_sql.startswith("score desc")


def test_search_sql_relevance_honors_sort_direction() -> None:
    _, order_by_sql, _, _ = PostgresAggregateRepository.build_search_sql(
        SearchCriteria(query="incendio", sort_dir="asc")
    )

    assert order_by_sql == "score asc, a.last_updated_at desc, a.fact_id asc"


def test_search_sql_strict_tag_match_and_date_sort() -> None:
    where_sql, order_by_sql, _, params = PostgresAggregateRepository.build_search_sql(
        SearchCriteria(tags=["a", "b"], tag_match="all", sort_by="date", sort_dir="asc")
    )

    assert "(a.tags || a.ai_tags) @> $1::text[]" in where_sql
    assert params == [["a", "b"]]
    assert order_by_sql == "(a.occurred_at is null) asc, a.occurred_at asc, a.last_updated_at desc, a.fact_id asc"


def test_missing_database_url_is_reported_as_unavailable() -> None:
    repository = PostgresAggregateRepository(database_url=None, min_pool_size=1, max_pool_size=2)

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(repository.find_by_fact_id("f-1"))


def test_concurrent_first_use_creates_a_single_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[object] = []

    async def fake_create_pool(**kwargs):
        await asyncio.sleep(0.01)
        pool = object()
        created.append(pool)
        return pool

    monkeypatch.setattr(asyncpg, "create_pool", fake_create_pool)
    repository = PostgresAggregateRepository(database_url="postgresql://db/busqueda", min_pool_size=1, max_pool_size=2)

    async def scenario():
        return await asyncio.gather(*(repository._get_pool() for _ in range(4)))

    pools = asyncio.run(scenario())

    assert len(created) == 1
    assert all(pool is created[0] for pool in pools)


@pytest.fixture
def postgres_repository() -> PostgresAggregateRepository:
    url = os.getenv("BQ_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require BQ_DATABASE_URL or DATABASE_URL")
    return PostgresAggregateRepository(database_url=url, min_pool_size=1, max_pool_size=2)


def test_postgres_round_trip_and_full_text_search(postgres_repository: PostgresAggregateRepository) -> None:
    now = datetime.now(timezone.utc)
    aggregate = FactAggregate(
        fact_id="it-fire-1",
        collection_name="C1",
        collections=["C1"],
        title="Incendio en Bosque Norte",
        description="Columna de humo visible",
        tags=["incendio"],
        pois=[PoiSummary(poi_id="it-p-1", ocr_text="PELIGRO derrumbe")],
        poi_ids=["it-p-1"],
        created_at=now,
        indexed_at=now,
        last_updated_at=now,
    )

    async def scenario():
        try:
            await postgres_repository.ensure_schema()
            await postgres_repository.delete("it-fire-1")
            await postgres_repository.upsert(aggregate)
            loaded = await postgres_repository.find_by_fact_id("it-fire-1")
            by_title = await postgres_repository.search(SearchCriteria(query="incendios", limit=10))
            by_poi = await postgres_repository.search(SearchCriteria(query="derrumbe", limit=10))
            await postgres_repository.delete("it-fire-1")
            return loaded, by_title, by_poi
        finally:
            await postgres_repository.close()

    loaded, by_title, by_poi = asyncio.run(scenario())

    assert loaded == aggregate
    assert "it-fire-1" in [row.aggregate.fact_id for row in by_title.items]
    assert "it-fire-1" in [row.aggregate.fact_id for row in by_poi.items]
