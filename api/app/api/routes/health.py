from fastapi import APIRouter, Depends

from app.schemas.search import ProviderHealthOut, SearchHealthOut
from app.services.container import ServiceContainer, get_container

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/providers", response_model=SearchHealthOut)
async def provider_health(container: ServiceContainer = Depends(get_container)) -> SearchHealthOut:
    orchestrator = container.orchestrator
    rows = await orchestrator.health()
    providers = [
        ProviderHealthOut(
            provider=health.provider,
            status=health.status,
            response_time_seconds=health.response_time_seconds,
            error_rate=health.error_rate,
            last_error=health.last_error,
            breaker_state=breaker_state,
            metrics=provider.metrics.as_dict() if hasattr(provider, "metrics") else {},
        )
        for provider, (health, breaker_state) in zip(orchestrator.providers, rows)
    ]

    statuses = {row.status for row in providers}
    if not providers or statuses == {"unhealthy"}:
        overall = "unhealthy"
    elif statuses == {"healthy"}:
        overall = "healthy"
    else:
        overall = "degraded"
    return SearchHealthOut(status=overall, providers=providers, active_jobs=orchestrator.active_jobs)
