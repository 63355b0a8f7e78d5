from fastapi import HTTPException, Request, status

from busqueda.workers.dispatcher import IngestionDispatcher
from busqueda.workers.reconciliation import ReconciliationScheduler


def get_dispatcher(request: Request) -> IngestionDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="ingestion dispatcher not started")
    return dispatcher


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="reconciliation scheduler not started")
    return scheduler
