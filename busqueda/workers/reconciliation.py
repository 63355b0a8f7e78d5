from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field

from opentelemetry import trace

from busqueda.core.config import Settings
from busqueda.services.ingestion import IngestionFailedError, IngestionService
from busqueda.services.sources import (
    UpstreamRecordError,
    UpstreamSourceClient,
    UpstreamUnavailableError,
    normalize_fact_record,
    normalize_poi_record,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class SweepReport:
    collections: int = 0
    facts_seen: int = 0
    facts_ingested: int = 0
    facts_failed: int = 0
    pois_seen: int = 0
    pois_ingested: int = 0
    pois_deferred: int = 0
    pois_failed: int = 0
    skipped_steps: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


async def run_reconciliation_sweep(source: UpstreamSourceClient, ingestion: IngestionService) -> SweepReport:
    """Re-pull every collection's facts and every point of interest and replay them.

    Facts are replayed before points of interest so attachments find their
    parent. Failures are counted per item and per collection; an unreachable
    upstream skips its step and the sweep still completes.
    """
    started_at = time.perf_counter()
    report = SweepReport()
    with tracer.start_as_current_span("reconciliation.sweep") as span:
        await _sweep_facts(source, ingestion, report)
        await _sweep_pois(source, ingestion, report)

        report.duration_ms = round((time.perf_counter() - started_at) * 1000.0, 3)
        span.set_attribute("sweep.collections", report.collections)
        span.set_attribute("sweep.facts_ingested", report.facts_ingested)
        span.set_attribute("sweep.pois_ingested", report.pois_ingested)
        span.set_attribute("sweep.skipped_steps", len(report.skipped_steps))

    logger.info(
        "reconciliation sweep completed collections=%s facts=%s/%s failed=%s pois=%s/%s deferred=%s failed=%s "
        "skipped=%s duration_ms=%.2f",
        report.collections,
        report.facts_ingested,
        report.facts_seen,
        report.facts_failed,
        report.pois_ingested,
        report.pois_seen,
        report.pois_deferred,
        report.pois_failed,
        report.skipped_steps,
        report.duration_ms,
    )
    return report


async def _sweep_facts(source: UpstreamSourceClient, ingestion: IngestionService, report: SweepReport) -> None:
    try:
        collections = await source.list_collections()
    except UpstreamUnavailableError as exc:
        logger.warning("fact source unavailable, skipping fact step: %s", exc)
        report.skipped_steps.append("facts")
        return
    except Exception:
        logger.exception("fact source listing failed, skipping fact step")
        report.skipped_steps.append("facts")
        return

    report.collections = len(collections)
    for name in collections:
        try:
            records = await source.list_facts_in_collection(name)
        except UpstreamUnavailableError as exc:
            logger.warning("skipping collection=%s: %s", name, exc)
            report.skipped_steps.append(f"collection:{name}")
            continue
        except Exception:
            logger.exception("skipping collection=%s after unexpected error", name)
            report.skipped_steps.append(f"collection:{name}")
            continue

        for record in records:
            report.facts_seen += 1
            try:
                payload = normalize_fact_record(record, collection_name=name)
                await ingestion.ingest_fact(payload)
            except UpstreamRecordError as exc:
                report.facts_failed += 1
                logger.warning("unparseable fact record collection=%s: %s", name, exc)
                continue
            except IngestionFailedError:
                report.facts_failed += 1
                continue
            except Exception:
                report.facts_failed += 1
                logger.exception("fact record failed collection=%s record_id=%s", name, _record_id(record))
                continue
            report.facts_ingested += 1


async def _sweep_pois(source: UpstreamSourceClient, ingestion: IngestionService, report: SweepReport) -> None:
    try:
        records = await source.list_all_pois()
    except UpstreamUnavailableError as exc:
        logger.warning("poi source unavailable, skipping poi step: %s", exc)
        report.skipped_steps.append("pois")
        return
    except Exception:
        logger.exception("poi source listing failed, skipping poi step")
        report.skipped_steps.append("pois")
        return

    for record in records:
        report.pois_seen += 1
        try:
            payload = normalize_poi_record(record)
            result = await ingestion.ingest_poi(payload)
        except UpstreamRecordError as exc:
            report.pois_failed += 1
            logger.warning("unparseable poi record: %s", exc)
            continue
        except IngestionFailedError:
            report.pois_failed += 1
            continue
        except Exception:
            report.pois_failed += 1
            logger.exception("poi record failed record_id=%s", _record_id(record))
            continue
        if result.outcome == "deferred":
            report.pois_deferred += 1
        else:
            report.pois_ingested += 1


def _record_id(record: object) -> object:
    return record.get("id") if isinstance(record, dict) else None


class ReconciliationScheduler:
    """Runs sweeps once at startup and then every ``interval_seconds``; sweeps never overlap."""

    def __init__(
        self,
        source: UpstreamSourceClient,
        ingestion: IngestionService,
        *,
        interval_seconds: float = 300.0,
        initial_delay_seconds: float = 60.0,
        run_on_startup: bool = True,
    ) -> None:
        self.source = source
        self.ingestion = ingestion
        self.interval_seconds = max(0.0, interval_seconds)
        self.initial_delay_seconds = max(0.0, initial_delay_seconds)
        self.run_on_startup = run_on_startup
        self.last_report: SweepReport | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ingestion: IngestionService,
        source: UpstreamSourceClient | None = None,
    ) -> ReconciliationScheduler:
        return cls(
            source or UpstreamSourceClient.from_settings(settings),
            ingestion,
            interval_seconds=settings.sync_interval_seconds,
            initial_delay_seconds=settings.sync_initial_delay_seconds,
            run_on_startup=settings.sync_run_on_startup,
        )

    @property
    def is_sweeping(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> SweepReport | None:
        if self._lock.locked():
            logger.info("reconciliation sweep already running, skipping trigger")
            return None
        async with self._lock:
            self.last_report = await run_reconciliation_sweep(self.source, self.ingestion)
            return self.last_report

    async def trigger(self) -> SweepReport | None:
        return await self.run_once()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="reconciliation-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        if self.run_on_startup:
            await self._run_guarded()
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            await self._run_guarded()
            await asyncio.sleep(self.interval_seconds)

    async def _run_guarded(self) -> None:
        try:
            await self.run_once()
        except Exception as exc:  # pragma: no cover - scheduler robustness
            logger.exception("reconciliation sweep failed: %s", exc)
