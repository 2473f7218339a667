from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class BudgetOut(BaseModel):
    user_id: str
    period: str
    used: float
    limit: float | None = None
    remaining: float | None = None
    exceeded: bool
    percent_used: float | None = None


class CostAlertOut(BaseModel):
    id: str
    alert_type: str
    severity: str
    message: str
    created_at: datetime
    threshold: float | None = None
    value: float | None = None
    acknowledged: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
