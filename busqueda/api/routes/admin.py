import dataclasses

from fastapi import APIRouter, Depends, HTTPException, Query, status

from busqueda.api.dependencies import get_scheduler
from busqueda.core.config import Settings, get_settings
from busqueda.schemas.facts import FactIn, PoiIn
from busqueda.schemas.indexing import BulkIngestOut, SweepReportOut
from busqueda.schemas.search import IndexStatsOut
from busqueda.services.ingestion import get_ingestion_service
from busqueda.services.query import get_search_service
from busqueda.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("/stats", response_model=IndexStatsOut)
async def index_stats(service=Depends(get_search_service)) -> IndexStatsOut:
    try:
        return await service.stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/sync/facts", response_model=BulkIngestOut)
async def sync_facts(payload: list[FactIn], ingestion=Depends(get_ingestion_service)) -> BulkIngestOut:
    report = await ingestion.ingest_facts_bulk(payload)
    return BulkIngestOut(**dataclasses.asdict(report))


@router.post("/sync/pois", response_model=BulkIngestOut)
async def sync_pois(payload: list[PoiIn], ingestion=Depends(get_ingestion_service)) -> BulkIngestOut:
    report = await ingestion.ingest_pois_bulk(payload)
    return BulkIngestOut(**dataclasses.asdict(report))


@router.post("/reconciliation", response_model=SweepReportOut)
async def run_reconciliation(scheduler=Depends(get_scheduler)) -> SweepReportOut:
    report = await scheduler.trigger()
    if report is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="reconciliation sweep already running")
    return SweepReportOut(**dataclasses.asdict(report))


@router.delete("/facts/{fact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_fact(fact_id: str, repository=Depends(get_repository)) -> None:
    try:
        deleted = await repository.delete(fact_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"fact not indexed: {fact_id}")


@router.delete("/index")
async def reset_index(
    confirm: bool = Query(default=False),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> dict[str, int]:
    if not settings.admin_reset_enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="index reset is disabled")
    if not confirm:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="confirm=true is required")
    try:
        deleted = await repository.delete_all()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"deleted": deleted}
