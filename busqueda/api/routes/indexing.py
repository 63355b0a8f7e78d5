from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status

from busqueda.api.dependencies import get_dispatcher
from busqueda.schemas.facts import CensorshipIn, FactIn, PoiIn
from busqueda.schemas.indexing import CensorshipEvent, EventAccepted, FactEvent, IngestResultOut, PoiEvent
from busqueda.services.ingestion import IngestionFailedError, IngestResult, get_ingestion_service
from busqueda.workers.dispatcher import DispatcherNotRunningError, DispatcherSaturatedError

router = APIRouter()


def _result_out(result: IngestResult, response: Response) -> IngestResultOut:
    if result.outcome == "deferred":
        response.status_code = status.HTTP_202_ACCEPTED
    return IngestResultOut(
        outcome=result.outcome,
        fact_id=result.fact_id,
        version=result.version,
        detail=result.detail,
    )


@router.post("/facts", response_model=IngestResultOut)
async def index_fact(
    payload: FactIn,
    response: Response,
    ingestion=Depends(get_ingestion_service),
) -> IngestResultOut:
    try:
        result = await ingestion.ingest_fact(payload)
    except IngestionFailedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _result_out(result, response)


@router.post("/pois", response_model=IngestResultOut)
async def index_poi(
    payload: PoiIn,
    response: Response,
    ingestion=Depends(get_ingestion_service),
) -> IngestResultOut:
    try:
        result = await ingestion.ingest_poi(payload)
    except IngestionFailedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _result_out(result, response)


@router.post("/censorships", response_model=IngestResultOut)
async def index_censorship(
    payload: CensorshipIn,
    response: Response,
    ingestion=Depends(get_ingestion_service),
) -> IngestResultOut:
    try:
        result = await ingestion.ingest_censorship(payload.fact_id, payload.request_id)
    except IngestionFailedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _result_out(result, response)


@router.post("/events", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_event(
    event: Annotated[FactEvent | PoiEvent | CensorshipEvent, Body(discriminator="kind")],
    dispatcher=Depends(get_dispatcher),
) -> EventAccepted:
    try:
        depth = dispatcher.submit(event)
    except (DispatcherSaturatedError, DispatcherNotRunningError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return EventAccepted(queued=True, kind=event.kind, queue_depth=depth)
