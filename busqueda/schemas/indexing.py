from typing import Annotated, Literal

from pydantic import Field

from busqueda.schemas.facts import CensorshipIn, FactIn, IndexModel, PoiIn

IngestOutcome = Literal["indexed", "updated", "unchanged", "deferred"]


class FactEvent(IndexModel):
    kind: Literal["fact"] = "fact"
    fact: FactIn


class PoiEvent(IndexModel):
    kind: Literal["poi"] = "poi"
    poi: PoiIn


class CensorshipEvent(IndexModel):
    kind: Literal["censorship"] = "censorship"
    censorship: CensorshipIn


IndexEvent = Annotated[FactEvent | PoiEvent | CensorshipEvent, Field(discriminator="kind")]


class IngestResultOut(IndexModel):
    outcome: IngestOutcome
    fact_id: str
    version: int | None = None
    detail: str | None = None


class EventAccepted(IndexModel):
    queued: bool = True
    kind: str
    queue_depth: int


class BulkIngestOut(IndexModel):
    total: int
    succeeded: int
    deferred: int
    failed: int


class SweepReportOut(IndexModel):
    collections: int
    facts_seen: int
    facts_ingested: int
    facts_failed: int
    pois_seen: int
    pois_ingested: int
    pois_deferred: int
    pois_failed: int
    skipped_steps: list[str] = Field(default_factory=list)
    duration_ms: float
