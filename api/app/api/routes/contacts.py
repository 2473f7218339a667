import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.auth import Principal
from app.core.security import get_principal
from app.schemas.contacts import ContactOut, ContactPage, CsvImportResult
from app.services.contact_store import ContactStoreUnavailableError
from app.services.container import ServiceContainer, get_container
from app.services.csv_import import import_contacts_csv

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_CSV_BYTES = 5 * 1024 * 1024


@router.get("", response_model=ContactPage)
async def list_contacts(
    cursor: int | None = Query(default=None, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    q: str | None = Query(default=None, max_length=200),
    tag: str | None = Query(default=None, max_length=100),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> ContactPage:
    try:
        rows = await container.contact_store.find_contacts(query=q, tag=tag, after_id=cursor, limit=limit + 1)
    except ContactStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    has_more = len(rows) > limit
    items = [ContactOut(**row) for row in rows[:limit]]
    return ContactPage(items=items, next_cursor=items[-1].id if has_more and items else None)


@router.post("/import", response_model=CsvImportResult)
async def import_contacts(
    request: Request,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> CsvImportResult:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("text/csv"):
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="expected text/csv body")

    body = await request.body()
    if len(body) > MAX_CSV_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="csv body too large")
    try:
        text = body.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="csv body must be utf-8") from exc

    settings = container.settings
    try:
        result = await import_contacts_csv(
            container.contact_store,
            text,
            batch_size=settings.import_batch_size,
            max_concurrent_batches=settings.import_max_concurrent_batches,
        )
    except ContactStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info("csv contacts imported by=%s inserted=%s", principal.user_id, result.inserted)
    return result
