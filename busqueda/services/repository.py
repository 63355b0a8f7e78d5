from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from busqueda.core.config import get_settings
from busqueda.schemas.facts import FactAggregate

logger = logging.getLogger(__name__)

TEXT_SEARCH_CONFIG = "spanish"

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    pg_exc.PostgresConnectionError,
    pg_exc.CannotConnectNowError,
    pg_exc.TooManyConnectionsError,
    pg_exc.QueryCanceledError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)

SCHEMA_SQL = f"""
create table if not exists fact_aggregates (
  fact_id text primary key,
  collection_name text not null,
  collections text[] not null default '{{}}',
  title text,
  description text,
  location text,
  occurred_at timestamptz,
  tags text[] not null default '{{}}',
  ai_tags text[] not null default '{{}}',
  poi_ocr_text text not null default '',
  poi_description_text text not null default '',
  poi_content_text text not null default '',
  censored boolean not null default false,
  version integer not null default 1,
  last_updated_at timestamptz not null,
  document jsonb not null,
  search_vector tsvector generated always as (
    setweight(to_tsvector('{TEXT_SEARCH_CONFIG}', coalesce(title, '')), 'A')
    || setweight(to_tsvector('{TEXT_SEARCH_CONFIG}', coalesce(description, '') || ' ' || poi_ocr_text), 'B')
    || setweight(to_tsvector('{TEXT_SEARCH_CONFIG}', coalesce(location, '') || ' ' || poi_description_text), 'C')
    || setweight(to_tsvector('{TEXT_SEARCH_CONFIG}', poi_content_text), 'D')
  ) stored
);

create index if not exists fact_aggregates_search_idx on fact_aggregates using gin (search_vector);
create index if not exists fact_aggregates_tags_idx on fact_aggregates using gin (tags);
create index if not exists fact_aggregates_ai_tags_idx on fact_aggregates using gin (ai_tags);
create index if not exists fact_aggregates_censored_collection_idx on fact_aggregates (censored, collection_name);
create index if not exists fact_aggregates_last_updated_idx on fact_aggregates (last_updated_at desc);
"""


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the backing store is unreachable or not configured."""


@dataclass(slots=True)
class SearchCriteria:
    query: str | None = None
    tags: list[str] = field(default_factory=list)
    tag_match: str = "any"
    collection: str | None = None
    sort_by: str = "relevance"
    sort_dir: str = "desc"
    limit: int = 10
    offset: int = 0


@dataclass(slots=True)
class ScoredAggregate:
    aggregate: FactAggregate
    score: float = 0.0


@dataclass(slots=True)
class SearchPage:
    items: list[ScoredAggregate]
    total: int


@dataclass(slots=True)
class IndexStats:
    total: int
    active: int
    censored: int


class AggregateRepository(Protocol):
    async def find_by_fact_id(self, fact_id: str) -> FactAggregate | None: ...

    async def upsert(self, aggregate: FactAggregate) -> None: ...

    async def exists(self, fact_id: str) -> bool: ...

    async def delete(self, fact_id: str) -> bool: ...

    async def delete_all(self) -> int: ...

    async def search(self, criteria: SearchCriteria) -> SearchPage: ...

    async def count_stats(self) -> IndexStats: ...

    async def ensure_schema(self) -> None: ...

    async def close(self) -> None: ...


class PostgresAggregateRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        async with self._connection() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("aggregate schema ensured table=fact_aggregates")

    async def find_by_fact_id(self, fact_id: str) -> FactAggregate | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("select document from fact_aggregates where fact_id = $1", fact_id)
        if not row:
            return None
        return self._document_to_aggregate(row["document"])

    async def exists(self, fact_id: str) -> bool:
        async with self._connection() as conn:
            found = await conn.fetchval("select exists(select 1 from fact_aggregates where fact_id = $1)", fact_id)
        return bool(found)

    async def upsert(self, aggregate: FactAggregate) -> None:
        document = json.dumps(aggregate.model_dump(mode="json", by_alias=True))
        async with self._connection() as conn:
            await conn.execute(
                """
                insert into fact_aggregates (
                  fact_id,
                  collection_name,
                  collections,
                  title,
                  description,
                  location,
                  occurred_at,
                  tags,
                  ai_tags,
                  poi_ocr_text,
                  poi_description_text,
                  poi_content_text,
                  censored,
                  version,
                  last_updated_at,
                  document
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16::jsonb)
                on conflict (fact_id) do update
                set
                  collection_name = excluded.collection_name,
                  collections = excluded.collections,
                  title = excluded.title,
                  description = excluded.description,
                  location = excluded.location,
                  occurred_at = excluded.occurred_at,
                  tags = excluded.tags,
                  ai_tags = excluded.ai_tags,
                  poi_ocr_text = excluded.poi_ocr_text,
                  poi_description_text = excluded.poi_description_text,
                  poi_content_text = excluded.poi_content_text,
                  censored = excluded.censored,
                  version = excluded.version,
                  last_updated_at = excluded.last_updated_at,
                  document = excluded.document
                """,
                *self._aggregate_to_params(aggregate),
                document,
            )

    async def delete(self, fact_id: str) -> bool:
        async with self._connection() as conn:
            deleted = await conn.fetchval("delete from fact_aggregates where fact_id = $1 returning fact_id", fact_id)
        return deleted is not None

    async def delete_all(self) -> int:
        async with self._connection() as conn:
            async with conn.transaction():
                count = await conn.fetchval("select count(*) from fact_aggregates")
                await conn.execute("delete from fact_aggregates")
        return int(count or 0)

    async def count_stats(self) -> IndexStats:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select
                  count(*) as total,
                  count(*) filter (where censored) as censored
                from fact_aggregates
                """
            )
        total = int(row["total"]) if row else 0
        censored = int(row["censored"]) if row else 0
        return IndexStats(total=total, active=total - censored, censored=censored)

    async def search(self, criteria: SearchCriteria) -> SearchPage:
        where_sql, order_by_sql, rank_sql, params = self.build_search_sql(criteria)
        limit_token = f"${len(params) + 1}"
        offset_token = f"${len(params) + 2}"
        async with self._connection() as conn:
            total = await conn.fetchval(f"select count(*) from fact_aggregates a where {where_sql}", *params)
            rows = await conn.fetch(
                f"""
                select
                  a.document,
                  {rank_sql} as score
                from fact_aggregates a
                where {where_sql}
                order by {order_by_sql}
                limit {limit_token}
                offset {offset_token}
                """,
                *params,
                criteria.limit,
                criteria.offset,
            )
        items = [
            ScoredAggregate(
                aggregate=self._document_to_aggregate(row["document"]),
                score=float(row["score"] or 0.0),
            )
            for row in rows
        ]
        return SearchPage(items=items, total=int(total or 0))

    @staticmethod
    def build_search_sql(criteria: SearchCriteria) -> tuple[str, str, str, list[Any]]:
        conditions: list[str] = ["a.censored = false"]
        params: list[Any] = []
        rank_sql = "0::real"

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        normalized_query = (criteria.query or "").strip()
        if normalized_query:
            token = bind(normalized_query)
            tsquery_sql = f"websearch_to_tsquery('{TEXT_SEARCH_CONFIG}', {token})"
            conditions.append(f"a.search_vector @@ {tsquery_sql}")
            rank_sql = f"ts_rank_cd(a.search_vector, {tsquery_sql})"

        tags = [tag for tag in criteria.tags if tag]
        if tags:
            token = bind(tags)
            if criteria.tag_match == "all":
                conditions.append(f"(a.tags || a.ai_tags) @> {token}::text[]")
            else:
                conditions.append(f"(a.tags && {token}::text[] or a.ai_tags && {token}::text[])")

        collection = (criteria.collection or "").strip()
        if collection:
            token = bind(collection)
            conditions.append(f"(a.collection_name = {token} or {token} = any(a.collections))")

        direction = "asc" if criteria.sort_dir == "asc" else "desc"
        tie_break_sql = "a.last_updated_at desc, a.fact_id asc"
        if criteria.sort_by == "date":
            order_by_sql = f"(a.occurred_at is null) asc, a.occurred_at {direction}, {tie_break_sql}"
        elif criteria.sort_by == "title":
            order_by_sql = f"(a.title is null) asc, lower(a.title) {direction}, {tie_break_sql}"
        elif normalized_query:
            order_by_sql = f"score {direction}, {tie_break_sql}"
        else:
            order_by_sql = f"a.last_updated_at {direction}, a.fact_id asc"

        return " and ".join(conditions), order_by_sql, rank_sql, params

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _TRANSIENT_ERRORS as exc:
            raise RepositoryUnavailableError(f"database unavailable: {exc.__class__.__name__}") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("BQ_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=self.command_timeout_seconds,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc
            return self._pool

    @staticmethod
    def _aggregate_to_params(aggregate: FactAggregate) -> list[Any]:
        return [
            aggregate.fact_id,
            aggregate.collection_name,
            list(aggregate.collections),
            aggregate.title,
            aggregate.description,
            aggregate.location,
            aggregate.occurred_at,
            list(aggregate.tags),
            list(aggregate.ai_tags),
            _join_text(poi.ocr_text for poi in aggregate.pois),
            _join_text(poi.description for poi in aggregate.pois),
            _join_text(poi.content for poi in aggregate.pois),
            aggregate.censored,
            aggregate.version,
            aggregate.last_updated_at,
        ]

    @staticmethod
    def _document_to_aggregate(document: Any) -> FactAggregate:
        if isinstance(document, str):
            document = json.loads(document)
        return FactAggregate.model_validate(document)


def _join_text(values: Any) -> str:
    return " ".join(value.strip() for value in values if isinstance(value, str) and value.strip())


@lru_cache
def get_repository() -> AggregateRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from busqueda.services.store import InMemoryAggregateRepository

        return InMemoryAggregateRepository()
    return PostgresAggregateRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
