from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Category = Literal[
    "entertainment",
    "education",
    "sports",
    "politics",
    "health",
    "security",
    "environment",
    "infrastructure",
    "culture",
    "other",
]
ProcessingState = Literal["pending", "processed", "failed"]

CATEGORIES: frozenset[str] = frozenset(Category.__args__)
PROCESSING_STATES: frozenset[str] = frozenset(ProcessingState.__args__)

# Upstream systems publish their enum names in Spanish.
_CATEGORY_ALIASES = {
    "entretenimiento": "entertainment",
    "educacion": "education",
    "educación": "education",
    "deportes": "sports",
    "politica": "politics",
    "política": "politics",
    "salud": "health",
    "seguridad": "security",
    "medio_ambiente": "environment",
    "ambiente": "environment",
    "infraestructura": "infrastructure",
    "cultura": "culture",
    "otro": "other",
    "otros": "other",
}
_PROCESSING_STATE_ALIASES = {
    "pendiente": "pending",
    "procesado": "processed",
    "procesada": "processed",
    "error": "failed",
    "fallido": "failed",
    "fallida": "failed",
}


def dedupe_text_list(values: list[str]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []
    for value in values:
        stripped = value.strip()
        if not stripped:
            continue
        key = stripped.casefold()
        if key in seen:
            continue
        seen.add(key)
        deduped.append(stripped)
    return deduped


def coerce_category(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().casefold().replace(" ", "_")
    if not normalized:
        return None
    if normalized in CATEGORIES:
        return normalized
    return _CATEGORY_ALIASES.get(normalized, "other")


def coerce_processing_state(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().casefold()
    if not normalized:
        return None
    if normalized in PROCESSING_STATES:
        return normalized
    return _PROCESSING_STATE_ALIASES.get(normalized)


class IndexModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FactIn(IndexModel):
    fact_id: str = Field(min_length=1)
    collection_name: str = Field(min_length=1)
    origin: str | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    category: Category | None = None
    occurred_at: datetime | None = None
    tags: list[str] | None = None

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: Any) -> str | None:
        return coerce_category(value)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return dedupe_text_list(value)


class PoiIn(IndexModel):
    poi_id: str = Field(min_length=1)
    fact_id: str = Field(min_length=1)
    description: str | None = None
    place: str | None = None
    content: str | None = None
    occurred_at: datetime | None = None
    image_url: str | None = None
    ocr_text: str | None = None
    ai_tags: list[str] | None = None
    processing_state: ProcessingState | None = None
    processed_at: datetime | None = None

    @field_validator("processing_state", mode="before")
    @classmethod
    def _normalize_processing_state(cls, value: Any) -> str | None:
        return coerce_processing_state(value)

    @field_validator("ai_tags")
    @classmethod
    def _normalize_ai_tags(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return dedupe_text_list(value)


class CensorshipIn(IndexModel):
    fact_id: str = Field(min_length=1)
    request_id: str = Field(min_length=1)


class PoiSummary(IndexModel):
    poi_id: str
    description: str | None = None
    content: str | None = None
    place: str | None = None
    occurred_at: datetime | None = None
    image_url: str | None = None
    ocr_text: str | None = None
    ai_tags: list[str] = Field(default_factory=list)
    processing_state: ProcessingState = "pending"
    processed_at: datetime | None = None


class FactAggregate(IndexModel):
    """Denormalized search document for one fact and its points of interest."""

    fact_id: str
    collection_name: str
    collections: list[str] = Field(default_factory=list)
    origin: str | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    category: Category | None = None
    occurred_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    ai_tags: list[str] = Field(default_factory=list)
    pois: list[PoiSummary] = Field(default_factory=list)
    poi_ids: list[str] = Field(default_factory=list)
    censored: bool = False
    censored_at: datetime | None = None
    censored_by_request_id: str | None = None
    version: int = 1
    created_at: datetime
    indexed_at: datetime
    last_updated_at: datetime

    def find_poi(self, poi_id: str) -> PoiSummary | None:
        if poi_id not in self.poi_ids:
            return None
        return next((poi for poi in self.pois if poi.poi_id == poi_id), None)
