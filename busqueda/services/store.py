from __future__ import annotations

import re
from datetime import datetime, timezone

from busqueda.schemas.facts import FactAggregate
from busqueda.services.repository import IndexStats, ScoredAggregate, SearchCriteria, SearchPage

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Field weights mirror the tsvector setweight() layout of the Postgres table.
_FIELD_WEIGHTS = (
    ("title", 1.0),
    ("description", 0.4),
    ("poi_ocr_text", 0.4),
    ("location", 0.2),
    ("poi_description_text", 0.2),
    ("poi_content_text", 0.1),
)


class InMemoryAggregateRepository:
    """Process-local aggregate store for development and tests."""

    def __init__(self) -> None:
        self.documents: dict[str, FactAggregate] = {}

    async def close(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

    async def find_by_fact_id(self, fact_id: str) -> FactAggregate | None:
        aggregate = self.documents.get(fact_id)
        return aggregate.model_copy(deep=True) if aggregate is not None else None

    async def exists(self, fact_id: str) -> bool:
        return fact_id in self.documents

    async def upsert(self, aggregate: FactAggregate) -> None:
        self.documents[aggregate.fact_id] = aggregate.model_copy(deep=True)

    async def delete(self, fact_id: str) -> bool:
        return self.documents.pop(fact_id, None) is not None

    async def delete_all(self) -> int:
        count = len(self.documents)
        self.documents.clear()
        return count

    async def count_stats(self) -> IndexStats:
        total = len(self.documents)
        censored = sum(1 for aggregate in self.documents.values() if aggregate.censored)
        return IndexStats(total=total, active=total - censored, censored=censored)

    async def search(self, criteria: SearchCriteria) -> SearchPage:
        terms = _tokenize(criteria.query)
        wanted_tags = [tag for tag in criteria.tags if tag]
        collection = (criteria.collection or "").strip()

        matches: list[ScoredAggregate] = []
        for aggregate in self.documents.values():
            if aggregate.censored:
                continue
            if wanted_tags and not _tags_match(aggregate, wanted_tags, criteria.tag_match):
                continue
            if collection and collection != aggregate.collection_name and collection not in aggregate.collections:
                continue
            score = 0.0
            if terms:
                score = _score(aggregate, terms)
                if score <= 0.0:
                    continue
            matches.append(ScoredAggregate(aggregate=aggregate.model_copy(deep=True), score=score))

        _sort(matches, criteria, has_query=bool(terms))
        window = matches[criteria.offset : criteria.offset + criteria.limit]
        return SearchPage(items=window, total=len(matches))


def _tokenize(value: str | None) -> set[str]:
    if not value:
        return set()
    return {token for token in _TOKEN_RE.findall(value.casefold()) if token}


def _tags_match(aggregate: FactAggregate, wanted: list[str], tag_match: str) -> bool:
    available = {*aggregate.tags, *aggregate.ai_tags}
    if tag_match == "all":
        return all(tag in available for tag in wanted)
    return any(tag in available for tag in wanted)


def _field_texts(aggregate: FactAggregate) -> dict[str, str]:
    return {
        "title": aggregate.title or "",
        "description": aggregate.description or "",
        "location": aggregate.location or "",
        "poi_ocr_text": " ".join(poi.ocr_text or "" for poi in aggregate.pois),
        "poi_description_text": " ".join(poi.description or "" for poi in aggregate.pois),
        "poi_content_text": " ".join(poi.content or "" for poi in aggregate.pois),
    }


def _score(aggregate: FactAggregate, terms: set[str]) -> float:
    texts = _field_texts(aggregate)
    tokens_by_field = {name: _TOKEN_RE.findall(text.casefold()) for name, text in texts.items()}
    matched_terms: set[str] = set()
    score = 0.0
    for name, weight in _FIELD_WEIGHTS:
        tokens = tokens_by_field[name]
        for term in terms:
            hits = tokens.count(term)
            if hits:
                matched_terms.add(term)
                score += weight * hits
    # websearch_to_tsquery joins bare terms with AND.
    if matched_terms != terms:
        return 0.0
    return score


def _sort(matches: list[ScoredAggregate], criteria: SearchCriteria, *, has_query: bool) -> None:
    descending = criteria.sort_dir != "asc"
    # Stable sorts, applied from the weakest key to the strongest.
    matches.sort(key=lambda row: row.aggregate.fact_id)
    matches.sort(key=lambda row: row.aggregate.last_updated_at, reverse=True)

    if criteria.sort_by == "date":
        dated = [row for row in matches if row.aggregate.occurred_at is not None]
        undated = [row for row in matches if row.aggregate.occurred_at is None]
        dated.sort(key=lambda row: row.aggregate.occurred_at or _EPOCH, reverse=descending)
        matches[:] = [*dated, *undated]
    elif criteria.sort_by == "title":
        titled = [row for row in matches if row.aggregate.title is not None]
        untitled = [row for row in matches if row.aggregate.title is None]
        titled.sort(key=lambda row: (row.aggregate.title or "").lower(), reverse=descending)
        matches[:] = [*titled, *untitled]
    elif has_query:
        matches.sort(key=lambda row: row.score, reverse=descending)
    elif not descending:
        matches.sort(key=lambda row: row.aggregate.last_updated_at)
