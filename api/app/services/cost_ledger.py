from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

import httpx

from app.core.config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BudgetPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    TOTAL = "total"


def period_start(period: BudgetPeriod, now: datetime) -> datetime:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is BudgetPeriod.DAILY:
        return midnight
    if period is BudgetPeriod.WEEKLY:
        return midnight - timedelta(days=midnight.weekday())
    if period is BudgetPeriod.MONTHLY:
        return midnight.replace(day=1)
    return datetime.min.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class CostEntry:
    id: str
    user_id: str
    operation: str
    provider: str
    tokens_used: int
    cost: float
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def job_id(self) -> str | None:
        value = self.metadata.get("job_id")
        return str(value) if value is not None else None


@dataclass(slots=True, frozen=True)
class BudgetStatus:
    user_id: str
    period: BudgetPeriod
    used: float
    limit: float | None
    remaining: float | None
    exceeded: bool

    @property
    def percent_used(self) -> float | None:
        if not self.limit:
            return None
        return (self.used / self.limit) * 100.0


@dataclass(slots=True)
class CostAlert:
    id: str
    user_id: str
    alert_type: str
    severity: str
    message: str
    created_at: datetime
    threshold: float | None = None
    value: float | None = None
    acknowledged: bool = False
    acknowledged_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "threshold": self.threshold,
            "value": self.value,
            "metadata": self.metadata,
        }


class AlertNotifier(Protocol):
    async def notify(self, alert: CostAlert) -> None: ...


class LoggingNotifier:
    async def notify(self, alert: CostAlert) -> None:
        logger.warning(
            "cost alert user_id=%s type=%s severity=%s message=%s",
            alert.user_id,
            alert.alert_type,
            alert.severity,
            alert.message,
        )


class WebhookNotifier:
    def __init__(self, url: str, *, timeout_seconds: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def notify(self, alert: CostAlert) -> None:
        payload = {"event": "cost_alert", "alert": alert.as_payload()}
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self._timeout_seconds)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


@dataclass(slots=True, frozen=True)
class CostLedgerConfig:
    daily_limit: float | None = 25.0
    hard_stop: bool = True
    operation_cost_threshold: float = 1.0
    tokens_threshold: int = 10000
    budget_thresholds: tuple[int, ...] = (50, 75, 90)

    @classmethod
    def from_settings(cls, settings: Settings) -> CostLedgerConfig:
        return cls(
            daily_limit=settings.budget_daily_limit,
            hard_stop=settings.budget_hard_stop,
            operation_cost_threshold=settings.alert_operation_cost_threshold,
            tokens_threshold=settings.alert_tokens_threshold,
            budget_thresholds=tuple(sorted(settings.alert_budget_thresholds)),
        )


def _threshold_severity(threshold: int) -> str:
    if threshold >= 100:
        return "critical"
    if threshold >= 90:
        return "error"
    if threshold >= 75:
        return "warning"
    return "info"


class CostLedger:
    """Append-only record of provider spend with budget checks and alert rules.

    The ledger only advises: it raises alerts when thresholds are crossed. The
    orchestrator is the one that refuses to dispatch once `blocking_budget`
    reports an exceeded hard limit.
    """

    def __init__(
        self,
        config: CostLedgerConfig | None = None,
        notifiers: Iterable[AlertNotifier] = (),
        clock: Clock = _utcnow,
    ) -> None:
        self.config = config or CostLedgerConfig()
        self._notifiers = list(notifiers)
        self._clock = clock
        self._entries: list[CostEntry] = []
        self._limits: dict[tuple[str, BudgetPeriod], float] = {}
        self._thresholds_sent: dict[tuple[str, BudgetPeriod, datetime], set[int]] = defaultdict(set)
        self._alerts: dict[str, CostAlert] = {}
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def hard_stop(self) -> bool:
        return self.config.hard_stop

    def add_notifier(self, notifier: AlertNotifier) -> None:
        self._notifiers.append(notifier)

    async def record_cost(
        self,
        *,
        user_id: str,
        operation: str,
        provider: str,
        cost: float,
        tokens_used: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        if not math.isfinite(cost) or cost < 0:
            raise ValueError(f"cost must be a non-negative number, got {cost!r}")
        if tokens_used < 0:
            raise ValueError(f"tokens_used must be non-negative, got {tokens_used!r}")

        entry = CostEntry(
            id=str(uuid4()),
            user_id=user_id,
            operation=operation,
            provider=provider,
            tokens_used=tokens_used,
            cost=float(cost),
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        self._entries.append(entry)
        logger.debug(
            "cost recorded id=%s user_id=%s operation=%s provider=%s cost=%.6f tokens=%s",
            entry.id,
            user_id,
            operation,
            provider,
            entry.cost,
            tokens_used,
        )

        for alert in self._evaluate_rules(entry) + self._evaluate_budgets(user_id):
            self._raise_alert(alert)
        return entry.id

    def set_budget(self, user_id: str, limit: float, period: BudgetPeriod = BudgetPeriod.DAILY) -> None:
        if not math.isfinite(limit) or limit < 0:
            raise ValueError(f"budget limit must be non-negative, got {limit!r}")
        self._limits[(user_id, period)] = float(limit)

    def clear_budget(self, user_id: str, period: BudgetPeriod = BudgetPeriod.DAILY) -> None:
        self._limits.pop((user_id, period), None)

    def budget_limit(self, user_id: str, period: BudgetPeriod) -> float | None:
        limit = self._limits.get((user_id, period))
        if limit is not None:
            return limit
        if period is BudgetPeriod.DAILY:
            return self.config.daily_limit
        return None

    def check_budget(self, user_id: str, period: BudgetPeriod = BudgetPeriod.DAILY) -> BudgetStatus:
        since = period_start(period, self._clock())
        used = math.fsum(entry.cost for entry in self._entries if entry.user_id == user_id and entry.timestamp >= since)
        limit = self.budget_limit(user_id, period)
        if limit is None:
            return BudgetStatus(user_id=user_id, period=period, used=used, limit=None, remaining=None, exceeded=False)
        return BudgetStatus(
            user_id=user_id,
            period=period,
            used=used,
            limit=limit,
            remaining=max(0.0, limit - used),
            exceeded=used >= limit,
        )

    def blocking_budget(self, user_id: str) -> BudgetStatus | None:
        """First exceeded budget for the user when hard stops are on, else None."""
        if not self.config.hard_stop:
            return None
        for period in BudgetPeriod:
            if self.budget_limit(user_id, period) is None:
                continue
            status = self.check_budget(user_id, period)
            if status.exceeded:
                return status
        return None

    def recent_entries(
        self,
        user_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[CostEntry]:
        rows = [
            entry
            for entry in reversed(self._entries)
            if (user_id is None or entry.user_id == user_id) and (since is None or entry.timestamp >= since)
        ]
        return rows[:limit]

    def entries_for_job(self, job_id: str) -> list[CostEntry]:
        return [entry for entry in self._entries if entry.job_id == job_id]

    def total_for_job(self, job_id: str) -> float:
        return math.fsum(entry.cost for entry in self._entries if entry.job_id == job_id)

    def summary(self, user_id: str | None = None) -> dict[str, Any]:
        rows = [entry for entry in self._entries if user_id is None or entry.user_id == user_id]
        by_operation: dict[str, float] = defaultdict(float)
        by_provider: dict[str, float] = defaultdict(float)
        for entry in rows:
            by_operation[entry.operation] += entry.cost
            by_provider[entry.provider] += entry.cost
        return {
            "entry_count": len(rows),
            "total_cost": math.fsum(entry.cost for entry in rows),
            "total_tokens": sum(entry.tokens_used for entry in rows),
            "by_operation": dict(by_operation),
            "by_provider": dict(by_provider),
        }

    def prune(self, max_age: timedelta) -> int:
        cutoff = self._clock() - max_age
        kept = [entry for entry in self._entries if entry.timestamp >= cutoff]
        removed = len(self._entries) - len(kept)
        self._entries = kept
        return removed

    def alerts(self, user_id: str, acknowledged: bool | None = None) -> list[CostAlert]:
        rows = [
            alert
            for alert in self._alerts.values()
            if alert.user_id == user_id and (acknowledged is None or alert.acknowledged == acknowledged)
        ]
        return sorted(rows, key=lambda alert: alert.created_at, reverse=True)

    def acknowledge_alert(self, alert_id: str, user_id: str | None = None) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or (user_id is not None and alert.user_id != user_id):
            return False
        alert.acknowledged = True
        alert.acknowledged_at = self._clock()
        return True

    async def drain(self) -> None:
        """Wait for in-flight notifications to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _evaluate_rules(self, entry: CostEntry) -> list[CostAlert]:
        alerts: list[CostAlert] = []
        if entry.cost > self.config.operation_cost_threshold:
            alerts.append(
                self._new_alert(
                    entry.user_id,
                    alert_type="cost_spike",
                    severity="warning",
                    message=f"{entry.operation} on {entry.provider} cost ${entry.cost:.2f}",
                    threshold=self.config.operation_cost_threshold,
                    value=entry.cost,
                    metadata={"cost_entry_id": entry.id, **_job_metadata(entry)},
                )
            )
        if entry.tokens_used > self.config.tokens_threshold:
            alerts.append(
                self._new_alert(
                    entry.user_id,
                    alert_type="token_spike",
                    severity="warning",
                    message=f"{entry.operation} on {entry.provider} used {entry.tokens_used} tokens",
                    threshold=float(self.config.tokens_threshold),
                    value=float(entry.tokens_used),
                    metadata={"cost_entry_id": entry.id, **_job_metadata(entry)},
                )
            )
        return alerts

    def _evaluate_budgets(self, user_id: str) -> list[CostAlert]:
        alerts: list[CostAlert] = []
        now = self._clock()
        for period in BudgetPeriod:
            limit = self.budget_limit(user_id, period)
            if not limit:
                continue
            status = self.check_budget(user_id, period)
            percent = status.percent_used or 0.0
            sent = self._thresholds_sent[(user_id, period, period_start(period, now))]
            for threshold in (*self.config.budget_thresholds, 100):
                if percent < threshold or threshold in sent:
                    continue
                sent.add(threshold)
                alert_type = "budget_exceeded" if threshold >= 100 else "budget_threshold"
                alerts.append(
                    self._new_alert(
                        user_id,
                        alert_type=alert_type,
                        severity=_threshold_severity(threshold),
                        message=(
                            f"{period.value} budget reached {threshold}% "
                            f"(${status.used:.2f} of ${limit:.2f})"
                        ),
                        threshold=float(threshold),
                        value=status.used,
                        metadata={"period": period.value},
                    )
                )
        return alerts

    def _new_alert(self, user_id: str, **fields: Any) -> CostAlert:
        return CostAlert(id=str(uuid4()), user_id=user_id, created_at=self._clock(), **fields)

    def _raise_alert(self, alert: CostAlert) -> None:
        self._alerts[alert.id] = alert
        for notifier in self._notifiers:
            task = asyncio.create_task(self._deliver(notifier, alert))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, notifier: AlertNotifier, alert: CostAlert) -> None:
        try:
            await notifier.notify(alert)
        except Exception:
            logger.exception(
                "cost alert delivery failed notifier=%s alert_id=%s type=%s",
                type(notifier).__name__,
                alert.id,
                alert.alert_type,
            )


def _job_metadata(entry: CostEntry) -> dict[str, Any]:
    return {"job_id": entry.job_id} if entry.job_id else {}


def build_notifiers(settings: Settings) -> list[AlertNotifier]:
    notifiers: list[AlertNotifier] = [LoggingNotifier()]
    if settings.alert_webhook_url:
        notifiers.append(WebhookNotifier(settings.alert_webhook_url, timeout_seconds=settings.alert_timeout_seconds))
    return notifiers
