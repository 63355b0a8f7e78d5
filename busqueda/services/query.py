from __future__ import annotations

import logging
import math
import time

from fastapi import Depends
from opentelemetry import trace

from busqueda.core.config import Settings, get_settings
from busqueda.schemas.facts import dedupe_text_list
from busqueda.schemas.search import IndexStatsOut, SearchRequest, SearchResponse, SearchResultOut, SearchStrategy
from busqueda.services.repository import AggregateRepository, ScoredAggregate, SearchCriteria, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class SearchValidationError(ValueError):
    """Raised when a search request is malformed."""


def select_strategy(*, query: str | None, tags: list[str], collection: str | None) -> SearchStrategy:
    if query:
        if tags and collection:
            return "text_tags_collection"
        if tags:
            return "text_tags"
        if collection:
            return "text_collection"
        return "text"
    if tags:
        return "tags_collection" if collection else "tags"
    if collection:
        return "collection"
    return "active"


def page_bounds(*, total: int, page: int, size: int) -> tuple[int, bool, bool]:
    total_pages = math.ceil(total / size) if size > 0 else 0
    return total_pages, page < total_pages - 1, page > 0


def dedupe_by_title(rows: list[ScoredAggregate]) -> list[SearchResultOut]:
    """Collapse rows sharing a title into one result per title.

    The most recently updated row represents the group and carries the union of
    every collection seen under that title. Group order follows first
    appearance; untitled rows are never grouped.
    """
    groups: dict[str, list[ScoredAggregate]] = {}
    for index, row in enumerate(rows):
        title = (row.aggregate.title or "").strip()
        key = f"title:{title.casefold()}" if title else f"untitled:{index}"
        groups.setdefault(key, []).append(row)

    results: list[SearchResultOut] = []
    for members in groups.values():
        representative = members[0]
        for candidate in members[1:]:
            if candidate.aggregate.last_updated_at > representative.aggregate.last_updated_at:
                representative = candidate
        collections = list(representative.aggregate.collections or [representative.aggregate.collection_name])
        for member in members:
            collections.extend(member.aggregate.collections or [member.aggregate.collection_name])
        result = SearchResultOut.from_aggregate(representative.aggregate, score=representative.score)
        result.collections = dedupe_text_list(collections)
        results.append(result)
    return results


class SearchService:
    def __init__(self, repository: AggregateRepository, *, default_size: int = 10, max_size: int = 50) -> None:
        self.repository = repository
        self.default_size = default_size
        self.max_size = max_size

    def normalize_request(self, request: SearchRequest) -> SearchRequest:
        if request.page < 0:
            raise SearchValidationError("page must be >= 0")
        if request.size < 1 or request.size > self.max_size:
            raise SearchValidationError(f"size must be between 1 and {self.max_size}")

        query = request.query
        if query is not None:
            query = query.strip()
            if not query:
                raise SearchValidationError("query must not be blank")

        collection = (request.collection or "").strip() or None
        return request.model_copy(
            update={
                "query": query,
                "collection": collection,
                "tags": dedupe_text_list(request.tags),
            }
        )

    async def search(self, request: SearchRequest) -> SearchResponse:
        started_at = time.perf_counter()
        normalized = self.normalize_request(request)
        strategy = select_strategy(
            query=normalized.query,
            tags=normalized.tags,
            collection=normalized.collection,
        )
        sort_by = normalized.sort_by
        if sort_by == "relevance" and not normalized.query:
            sort_by = "recent"

        with tracer.start_as_current_span("search.query") as span:
            span.set_attribute("search.strategy", strategy)
            span.set_attribute("search.page", normalized.page)
            span.set_attribute("search.size", normalized.size)
            page = await self.repository.search(
                SearchCriteria(
                    query=normalized.query,
                    tags=normalized.tags,
                    tag_match=normalized.tag_match,
                    collection=normalized.collection,
                    sort_by=sort_by,
                    sort_dir=normalized.sort_dir,
                    limit=normalized.size,
                    offset=normalized.page * normalized.size,
                )
            )
            results = dedupe_by_title(page.items)
            span.set_attribute("search.total", page.total)

        total_pages, has_next, has_previous = page_bounds(total=page.total, page=normalized.page, size=normalized.size)
        took_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "search completed strategy=%s query=%r tags=%s collection=%s page=%s total=%s unique=%s duration_ms=%.2f",
            strategy,
            normalized.query,
            normalized.tags,
            normalized.collection,
            normalized.page,
            page.total,
            len(results),
            took_ms,
        )
        return SearchResponse(
            results=results,
            page=normalized.page,
            size=normalized.size,
            total=page.total,
            total_pages=total_pages,
            has_next=has_next,
            has_previous=has_previous,
            query=normalized.query,
            tags=normalized.tags,
            strategy=strategy,
            took_ms=round(took_ms, 3),
        )

    async def stats(self) -> IndexStatsOut:
        stats = await self.repository.count_stats()
        return IndexStatsOut(total_indexed=stats.total, active=stats.active, censored=stats.censored)


def get_search_service(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> SearchService:
    return SearchService(
        repository,
        default_size=settings.search_default_size,
        max_size=settings.search_max_size,
    )
