from datetime import datetime
from typing import Literal

from pydantic import Field

from busqueda.schemas.facts import FactAggregate, IndexModel

SearchSortBy = Literal["relevance", "date", "title"]
SortDir = Literal["asc", "desc"]
TagMatch = Literal["any", "all"]
SearchStrategy = Literal[
    "text",
    "text_tags",
    "text_collection",
    "text_tags_collection",
    "tags",
    "tags_collection",
    "collection",
    "active",
]


class SearchRequest(IndexModel):
    query: str | None = None
    tags: list[str] = Field(default_factory=list)
    tag_match: TagMatch = "any"
    collection: str | None = None
    page: int = 0
    size: int = 10
    sort_by: SearchSortBy = "relevance"
    sort_dir: SortDir = "desc"


class SearchResultOut(IndexModel):
    fact_id: str
    title: str | None = None
    description: str | None = None
    collection_name: str
    collections: list[str] = Field(default_factory=list)
    location: str | None = None
    category: str | None = None
    occurred_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    ai_tags: list[str] = Field(default_factory=list)
    origin: str | None = None
    poi_count: int = 0
    has_images: bool = False
    score: float = 0.0
    last_updated_at: datetime

    @classmethod
    def from_aggregate(cls, aggregate: FactAggregate, *, score: float = 0.0) -> "SearchResultOut":
        return cls(
            fact_id=aggregate.fact_id,
            title=aggregate.title,
            description=aggregate.description,
            collection_name=aggregate.collection_name,
            collections=list(aggregate.collections or [aggregate.collection_name]),
            location=aggregate.location,
            category=aggregate.category,
            occurred_at=aggregate.occurred_at,
            tags=list(aggregate.tags),
            ai_tags=list(aggregate.ai_tags),
            origin=aggregate.origin,
            poi_count=len(aggregate.pois),
            has_images=any(poi.image_url for poi in aggregate.pois),
            score=score,
            last_updated_at=aggregate.last_updated_at,
        )


class SearchResponse(IndexModel):
    results: list[SearchResultOut] = Field(default_factory=list)
    page: int
    size: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool
    query: str | None = None
    tags: list[str] = Field(default_factory=list)
    strategy: SearchStrategy
    took_ms: float = 0.0


class IndexStatsOut(IndexModel):
    total_indexed: int
    active: int
    censored: int
