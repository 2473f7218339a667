import json
import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from starlette.responses import StreamingResponse

from app.api.errors import http_error
from app.core.auth import Principal
from app.core.errors import RateLimitedError, SearchError
from app.core.security import get_principal
from app.schemas.search import (
    CancelRequest,
    CandidateContact,
    ImportRequest,
    ImportResult,
    SearchJob,
    SearchRequest,
    SubmitSearchResponse,
)
from app.services.container import ServiceContainer, get_container
from app.services.rate_limiter import RateLimitResult, rate_limit_headers

router = APIRouter()
logger = logging.getLogger(__name__)


def sse_frame(event_type: str, data: dict[str, Any], event_id: int) -> str:
    return f"id: {event_id}\nevent: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


@router.post("", response_model=SubmitSearchResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_search(
    payload: SearchRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> SubmitSearchResponse:
    orchestrator = container.orchestrator
    try:
        submission = await orchestrator.submit(principal, payload)
    except RateLimitedError as exc:
        limit = exc.details.get("rate_limit")
        headers = rate_limit_headers(limit) if isinstance(limit, RateLimitResult) else None
        if headers is not None and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(int(exc.retry_after_seconds))
        raise http_error(exc, headers=headers) from exc
    except SearchError as exc:
        raise http_error(exc) from exc

    if submission.rate_limit is not None:
        limiter = orchestrator.rate_limiters["admin" if principal.is_admin else "research"]
        response.headers.update(rate_limit_headers(submission.rate_limit, limiter.now()))
    return SubmitSearchResponse(
        search_id=submission.job_id,
        status=submission.status,
        estimated_duration=submission.estimated_duration_seconds,
    )


@router.get("/{search_id}", response_model=SearchJob)
async def get_search(
    search_id: str,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> SearchJob:
    try:
        return container.orchestrator.get_status(search_id, principal)
    except SearchError as exc:
        raise http_error(exc) from exc


@router.post("/{search_id}/cancel", response_model=SearchJob)
async def cancel_search(
    search_id: str,
    payload: CancelRequest | None = None,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> SearchJob:
    reason = payload.reason if payload is not None else None
    try:
        return await container.orchestrator.cancel(search_id, principal, reason)
    except SearchError as exc:
        raise http_error(exc) from exc


@router.get("/{search_id}/events")
async def stream_search_events(
    search_id: str,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    try:
        snapshot = container.orchestrator.get_status(search_id, principal)
    except SearchError as exc:
        raise http_error(exc) from exc
    # Opened right after the snapshot with no await in between, so no event falls in the gap.
    stream = container.channel.stream(search_id)

    async def event_source():
        try:
            yield sse_frame("snapshot", snapshot.model_dump(mode="json"), snapshot.last_sequence_number)
            if snapshot.status.is_terminal:
                return
            async for event in stream:
                if event.sequence_number <= snapshot.last_sequence_number:
                    continue
                yield sse_frame(event.type.value, event.as_dict(), event.sequence_number)
        finally:
            await stream.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Search-Id": search_id,
        },
    )


@router.get("/{search_id}/results")
async def list_search_results(
    search_id: str,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> list[dict[str, Any]]:
    try:
        results = container.orchestrator.results(search_id, principal)
    except SearchError as exc:
        raise http_error(exc) from exc
    return [asdict(result) for result in results]


@router.get("/{search_id}/candidates", response_model=list[CandidateContact])
async def list_candidates(
    search_id: str,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> list[CandidateContact]:
    try:
        return container.orchestrator.candidates(search_id, principal)
    except SearchError as exc:
        raise http_error(exc) from exc


@router.post("/{search_id}/import", response_model=ImportResult)
async def import_candidates(
    search_id: str,
    payload: ImportRequest,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> ImportResult:
    try:
        return await container.orchestrator.import_selected(search_id, principal, payload)
    except SearchError as exc:
        raise http_error(exc) from exc
    except Exception as exc:
        logger.exception("candidate import failed search_id=%s", search_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL", "message": "internal error", "retryable": False},
        ) from exc
