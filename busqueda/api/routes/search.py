from fastapi import APIRouter, Depends, HTTPException, Query, status

from busqueda.schemas.search import SearchRequest, SearchResponse, SearchSortBy, SortDir, TagMatch
from busqueda.services.query import SearchValidationError, get_search_service
from busqueda.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=SearchResponse)
async def search_facts(
    service=Depends(get_search_service),
    q: str | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    tag_match: TagMatch = Query(default="any"),
    collection: str | None = Query(default=None),
    page: int = Query(default=0),
    size: int | None = Query(default=None),
    sort_by: SearchSortBy = Query(default="relevance"),
    sort_dir: SortDir = Query(default="desc"),
) -> SearchResponse:
    request = SearchRequest(
        query=q,
        tags=tags or [],
        tag_match=tag_match,
        collection=collection,
        page=page,
        size=size if size is not None else service.default_size,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
    try:
        return await service.search(request)
    except SearchValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
