"""Transcription cost estimation and budget monitoring.

Converts audio duration (or, as a fallback, file size) into an estimated
cost, accumulates daily, monthly and lifetime usage ledgers, and raises
WARNING/CRITICAL alerts as spend approaches the configured budgets. Alerts
are logged and kept for the usage endpoint; they never block work.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Literal

logger = logging.getLogger(__name__)

COST_PER_MINUTE = 0.006
CURRENCY = "USD"

DEFAULT_DAILY_BUDGET = 10.0
DEFAULT_MONTHLY_BUDGET = 200.0
WARNING_THRESHOLD = 0.8
CRITICAL_THRESHOLD = 0.95

# Rough bitrates (bits/s) for estimating duration from file size
ESTIMATED_BITRATES: dict[str, int] = {
    "mp3": 128_000,
    "aac": 128_000,
    "wav": 1_411_200,
    "flac": 1_000_000,
    "ogg": 128_000,
    "webm": 128_000,
    "unknown": 128_000,
}

MAX_RECENT_ALERTS = 50


@dataclass
class UsageRecord:
    """Accumulated usage for one ledger key."""

    cost: float = 0.0
    minutes: float = 0.0
    requests: int = 0

    def add(self, cost: float, minutes: float) -> None:
        self.cost += cost
        self.minutes += minutes
        self.requests += 1


@dataclass
class BudgetAlert:
    """A budget threshold crossing for one scope."""

    level: Literal["WARNING", "CRITICAL"]
    scope: Literal["daily", "monthly"]
    percentage: int
    current_cost: float
    budget_limit: float
    message: str


@dataclass
class CostRecord:
    """Outcome of tracking one successful transcription."""

    request_id: str
    cost: float
    calculation_method: Literal["duration", "filesize_estimation", "unknown"]
    duration_seconds: float | None
    estimated: bool
    alerts: list[BudgetAlert]

    def cost_info(self) -> dict[str, Any]:
        """Cost block attached to job metadata."""
        return {
            "cost": self.cost,
            "currency": CURRENCY,
            "calculation_method": self.calculation_method,
            "duration_seconds": self.duration_seconds,
            "estimated": self.estimated,
        }


def calculate_cost_from_duration(
    duration_seconds: float | None, rate_per_minute: float = COST_PER_MINUTE
) -> float:
    """Return the cost of ``duration_seconds`` of audio, rounded to 4 places."""
    if not duration_seconds or duration_seconds <= 0:
        return 0.0
    return round(duration_seconds / 60 * rate_per_minute, 4)


def estimate_duration_from_file_size(
    file_size_bytes: int, audio_codec: str | None = None
) -> float:
    """Estimate audio duration in seconds from size and a codec hint."""
    codec = (audio_codec or "unknown").lower().lstrip(".")
    bitrate = ESTIMATED_BITRATES.get(codec, ESTIMATED_BITRATES["unknown"])
    return file_size_bytes * 8 / bitrate


class CostTracker:
    """Process-lifetime usage ledger with budget alerts.

    Args:
        daily_budget: Daily spend ceiling in USD.
        monthly_budget: Monthly spend ceiling in USD.
        warning_threshold: Fraction of a ceiling that triggers WARNING.
        critical_threshold: Fraction of a ceiling that triggers CRITICAL.
        rate_per_minute: Price of one minute of audio in USD.
        clock: Returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        daily_budget: float = DEFAULT_DAILY_BUDGET,
        monthly_budget: float = DEFAULT_MONTHLY_BUDGET,
        warning_threshold: float = WARNING_THRESHOLD,
        critical_threshold: float = CRITICAL_THRESHOLD,
        rate_per_minute: float = COST_PER_MINUTE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.daily_budget = daily_budget
        self.monthly_budget = monthly_budget
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.rate_per_minute = rate_per_minute
        self._clock = clock or (lambda: datetime.now(UTC))
        self.daily_usage: dict[str, UsageRecord] = {}
        self.monthly_usage: dict[str, UsageRecord] = {}
        self.total_usage = UsageRecord()
        self.recent_alerts: deque[BudgetAlert] = deque(maxlen=MAX_RECENT_ALERTS)

    def _keys(self) -> tuple[str, str]:
        now = self._clock()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")

    def track(
        self,
        request_id: str,
        duration_seconds: float | None,
        file_size: int | None = None,
        audio_format: str | None = None,
    ) -> CostRecord:
        """Record one successful transcription and check budgets.

        Duration is preferred; when it is missing or not positive the
        duration is estimated from ``file_size`` and the record is flagged
        as estimated.

        Args:
            request_id: Identifier of the transcription request.
            duration_seconds: Probed audio duration, if known.
            file_size: Size of the submitted file in bytes.
            audio_format: Extension or codec name used for the estimate.

        Returns:
            CostRecord with the computed cost and any alerts raised.
        """
        estimated = False
        method: Literal["duration", "filesize_estimation", "unknown"] = "unknown"
        effective_duration: float | None = None

        if duration_seconds and duration_seconds > 0:
            effective_duration = duration_seconds
            method = "duration"
        elif file_size:
            effective_duration = estimate_duration_from_file_size(
                file_size, audio_format
            )
            method = "filesize_estimation"
            estimated = True

        cost = calculate_cost_from_duration(effective_duration, self.rate_per_minute)
        minutes = (effective_duration or 0.0) / 60

        day_key, month_key = self._keys()
        self.daily_usage.setdefault(day_key, UsageRecord()).add(cost, minutes)
        self.monthly_usage.setdefault(month_key, UsageRecord()).add(cost, minutes)
        self.total_usage.add(cost, minutes)

        alerts = self.check_budget_alerts()
        for alert in alerts:
            self._log_alert(alert, request_id)
            self.recent_alerts.append(alert)

        logger.info(
            "Tracked transcription cost $%.4f (%s)",
            cost,
            method,
            extra={"request_id": request_id, "duration_seconds": effective_duration},
        )

        return CostRecord(
            request_id=request_id,
            cost=cost,
            calculation_method=method,
            duration_seconds=effective_duration,
            estimated=estimated,
            alerts=alerts,
        )

    def check_budget_alerts(self) -> list[BudgetAlert]:
        """Compare today's and this month's spend against their ceilings."""
        day_key, month_key = self._keys()
        alerts: list[BudgetAlert] = []
        for scope, usage, budget in (
            ("daily", self.daily_usage.get(day_key), self.daily_budget),
            ("monthly", self.monthly_usage.get(month_key), self.monthly_budget),
        ):
            if usage is None or budget <= 0:
                continue
            alert = self._evaluate(scope, usage.cost, budget)
            if alert is not None:
                alerts.append(alert)
        return alerts

    def _evaluate(
        self, scope: Literal["daily", "monthly"], cost: float, budget: float
    ) -> BudgetAlert | None:
        ratio = cost / budget
        if ratio >= self.critical_threshold:
            level: Literal["WARNING", "CRITICAL"] = "CRITICAL"
        elif ratio >= self.warning_threshold:
            level = "WARNING"
        else:
            return None
        percentage = round(ratio * 100)
        return BudgetAlert(
            level=level,
            scope=scope,
            percentage=percentage,
            current_cost=cost,
            budget_limit=budget,
            message=(
                f"{level.capitalize()}: {scope.capitalize()} budget {percentage}% "
                f"used (${cost:.4f}/${budget})"
            ),
        )

    @staticmethod
    def _log_alert(alert: BudgetAlert, request_id: str) -> None:
        level = logging.CRITICAL if alert.level == "CRITICAL" else logging.WARNING
        logger.log(
            level,
            "Budget alert: %s",
            alert.message,
            extra={"request_id": request_id, "alert_level": alert.level},
        )

    def summary(self) -> dict[str, Any]:
        """Current usage for today, this month and the process lifetime."""
        day_key, month_key = self._keys()
        return {
            "today": asdict(self.daily_usage.get(day_key, UsageRecord())),
            "this_month": asdict(self.monthly_usage.get(month_key, UsageRecord())),
            "total": asdict(self.total_usage),
            "budgets": {"daily": self.daily_budget, "monthly": self.monthly_budget},
            "currency": CURRENCY,
            "recent_alerts": [asdict(alert) for alert in self.recent_alerts],
        }

    def usage_for_period(
        self, period: Literal["daily", "monthly"] = "daily", limit: int = 30
    ) -> list[dict[str, Any]]:
        """Ledger entries for ``period``, newest first."""
        store = self.daily_usage if period == "daily" else self.monthly_usage
        keys = sorted(store, reverse=True)[:limit]
        return [{"date": key, **asdict(store[key])} for key in keys]
