from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.auth import Principal
from app.core.security import get_principal
from app.schemas.costs import BudgetOut, CostAlertOut
from app.services.container import ServiceContainer, get_container
from app.services.cost_ledger import BudgetPeriod

router = APIRouter()


@router.get("/budget", response_model=BudgetOut)
async def get_budget(
    period: BudgetPeriod = Query(default=BudgetPeriod.DAILY),
    user_id: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> BudgetOut:
    target = user_id or principal.user_id
    if not principal.can_access(target):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot read another user's budget")

    budget = container.ledger.check_budget(target, period)
    return BudgetOut(
        user_id=budget.user_id,
        period=budget.period.value,
        used=budget.used,
        limit=budget.limit,
        remaining=budget.remaining,
        exceeded=budget.exceeded,
        percent_used=budget.percent_used,
    )


@router.get("/alerts", response_model=list[CostAlertOut])
async def list_alerts(
    acknowledged: bool | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> list[CostAlertOut]:
    alerts = container.ledger.alerts(principal.user_id, acknowledged=acknowledged)
    return [
        CostAlertOut(
            id=alert.id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            message=alert.message,
            created_at=alert.created_at,
            threshold=alert.threshold,
            value=alert.value,
            acknowledged=alert.acknowledged,
            metadata=alert.metadata,
        )
        for alert in alerts
    ]


@router.post("/alerts/{alert_id}/acknowledge", status_code=status.HTTP_204_NO_CONTENT)
async def acknowledge_alert(
    alert_id: str,
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
) -> None:
    owner = None if principal.is_admin else principal.user_id
    if not container.ledger.acknowledge_alert(alert_id, user_id=owner):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="alert not found")
