from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from fastapi import Depends
from opentelemetry import trace

from busqueda.core.config import Settings, get_settings
from busqueda.schemas.facts import FactIn, PoiIn
from busqueda.schemas.indexing import IngestOutcome
from busqueda.services.merge import censor, merge_fact, merge_poi
from busqueda.services.repository import AggregateRepository, RepositoryUnavailableError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


class IngestionError(Exception):
    """Base ingestion error."""


class IngestionFailedError(IngestionError):
    """Raised when a transient store failure outlives the retry budget."""


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=max(1, settings.ingest_max_attempts),
            base_delay_seconds=max(0.0, settings.ingest_retry_base_seconds),
            max_delay_seconds=max(0.0, settings.ingest_retry_max_seconds),
        )

    def delay_for(self, attempt: int) -> float:
        if self.base_delay_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = self.base_delay_seconds * (2**multiplier)
        return min(delay, self.max_delay_seconds)


@dataclass(slots=True)
class IngestResult:
    outcome: IngestOutcome
    fact_id: str
    version: int | None = None
    detail: str | None = None


@dataclass(slots=True)
class BulkIngestReport:
    total: int = 0
    succeeded: int = 0
    deferred: int = 0
    failed: int = 0


class IngestionService:
    """Single entry point for pushed events and reconciliation replays.

    Every operation reads the current aggregate, folds the payload in with the
    pure merge functions and commits the result with one ``upsert``. Transient
    store failures are retried with exponential backoff; once the budget is
    spent the failure is raised to the caller and nothing is requeued.
    """

    def __init__(
        self,
        repository: AggregateRepository,
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def ingest_fact(self, payload: FactIn) -> IngestResult:
        with tracer.start_as_current_span("ingest.fact") as span:
            span.set_attribute("fact.id", payload.fact_id)
            span.set_attribute("fact.collection", payload.collection_name)

            async def apply() -> IngestResult:
                existing = await self.repository.find_by_fact_id(payload.fact_id)
                merged = merge_fact(existing, payload)
                await self.repository.upsert(merged)
                return IngestResult(
                    outcome="indexed" if existing is None else "updated",
                    fact_id=merged.fact_id,
                    version=merged.version,
                )

            result = await self._run_with_retry("ingest_fact", payload.fact_id, apply)
            span.set_attribute("ingest.outcome", result.outcome)
            logger.info(
                "fact ingested fact_id=%s collection=%s outcome=%s version=%s",
                payload.fact_id,
                payload.collection_name,
                result.outcome,
                result.version,
            )
            return result

    async def ingest_poi(self, payload: PoiIn) -> IngestResult:
        with tracer.start_as_current_span("ingest.poi") as span:
            span.set_attribute("fact.id", payload.fact_id)
            span.set_attribute("poi.id", payload.poi_id)

            async def apply() -> IngestResult:
                existing = await self.repository.find_by_fact_id(payload.fact_id)
                if existing is None:
                    return IngestResult(outcome="deferred", fact_id=payload.fact_id, detail="fact_not_indexed")
                attached = payload.poi_id in existing.poi_ids
                merged = merge_poi(existing, payload)
                if merged.version == existing.version:
                    return IngestResult(outcome="unchanged", fact_id=existing.fact_id, version=existing.version)
                await self.repository.upsert(merged)
                return IngestResult(
                    outcome="updated",
                    fact_id=merged.fact_id,
                    version=merged.version,
                    detail="poi_refreshed" if attached else "poi_attached",
                )

            result = await self._run_with_retry("ingest_poi", payload.poi_id, apply)
            span.set_attribute("ingest.outcome", result.outcome)
            if result.outcome == "deferred":
                logger.warning(
                    "poi deferred until its fact is indexed poi_id=%s fact_id=%s",
                    payload.poi_id,
                    payload.fact_id,
                )
            else:
                logger.info(
                    "poi ingested poi_id=%s fact_id=%s outcome=%s version=%s",
                    payload.poi_id,
                    payload.fact_id,
                    result.outcome,
                    result.version,
                )
            return result

    async def ingest_censorship(self, fact_id: str, request_id: str) -> IngestResult:
        with tracer.start_as_current_span("ingest.censorship") as span:
            span.set_attribute("fact.id", fact_id)
            span.set_attribute("censorship.request_id", request_id)

            async def apply() -> IngestResult:
                existing = await self.repository.find_by_fact_id(fact_id)
                if existing is None:
                    return IngestResult(outcome="deferred", fact_id=fact_id, detail="fact_not_indexed")
                merged = censor(existing, request_id=request_id)
                if merged.version == existing.version:
                    return IngestResult(
                        outcome="unchanged",
                        fact_id=fact_id,
                        version=existing.version,
                        detail="already_censored",
                    )
                await self.repository.upsert(merged)
                return IngestResult(outcome="updated", fact_id=fact_id, version=merged.version, detail="censored")

            result = await self._run_with_retry("ingest_censorship", fact_id, apply)
            span.set_attribute("ingest.outcome", result.outcome)
            if result.outcome == "deferred":
                logger.warning("censorship for unknown fact dropped fact_id=%s request_id=%s", fact_id, request_id)
            else:
                logger.info(
                    "censorship applied fact_id=%s request_id=%s outcome=%s",
                    fact_id,
                    request_id,
                    result.outcome,
                )
            return result

    async def ingest_facts_bulk(self, payloads: Iterable[FactIn]) -> BulkIngestReport:
        report = BulkIngestReport()
        for payload in payloads:
            report.total += 1
            try:
                await self.ingest_fact(payload)
            except IngestionFailedError:
                report.failed += 1
                continue
            except Exception:
                report.failed += 1
                logger.exception("bulk fact load item failed fact_id=%s", payload.fact_id)
                continue
            report.succeeded += 1
        logger.info(
            "bulk fact load completed total=%s succeeded=%s failed=%s",
            report.total,
            report.succeeded,
            report.failed,
        )
        return report

    async def ingest_pois_bulk(self, payloads: Iterable[PoiIn]) -> BulkIngestReport:
        report = BulkIngestReport()
        for payload in payloads:
            report.total += 1
            try:
                result = await self.ingest_poi(payload)
            except IngestionFailedError:
                report.failed += 1
                continue
            except Exception:
                report.failed += 1
                logger.exception("bulk poi load item failed poi_id=%s fact_id=%s", payload.poi_id, payload.fact_id)
                continue
            if result.outcome == "deferred":
                report.deferred += 1
            else:
                report.succeeded += 1
        logger.info(
            "bulk poi load completed total=%s succeeded=%s deferred=%s failed=%s",
            report.total,
            report.succeeded,
            report.deferred,
            report.failed,
        )
        return report

    async def _run_with_retry(self, operation: str, key: str, apply: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await apply()
            except RepositoryUnavailableError as exc:
                if attempt >= self.retry_policy.max_attempts:
                    logger.exception(
                        "ingestion failed operation=%s key=%s attempts=%s",
                        operation,
                        key,
                        attempt,
                    )
                    raise IngestionFailedError(f"{operation} failed for {key} after {attempt} attempts: {exc}") from exc
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "transient store failure operation=%s key=%s attempt=%s retry_in=%.2fs error=%s",
                    operation,
                    key,
                    attempt,
                    delay,
                    exc,
                )
                await self._sleep(delay)


def build_ingestion_service(settings: Settings | None = None) -> IngestionService:
    resolved = settings or get_settings()
    return IngestionService(get_repository(), RetryPolicy.from_settings(resolved))


def get_ingestion_service(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> IngestionService:
    return IngestionService(repository, RetryPolicy.from_settings(settings))
