"""
Cost estimates from plan pricing and instance uptime.
"""

import math
from datetime import datetime, timezone

from ...types import CostSummary, PlanData, ProviderInstance
from ..utils.logging import get_logger

logger = get_logger(__name__)

HOURS_PER_MONTH = 730  # 365 * 24 / 12


def parse_provider_datetime(value: str | None) -> datetime | None:
    """Parse a provider ISO-8601 timestamp into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable provider timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def plan_prices(plans: list[PlanData]) -> dict[str, float]:
    """Map plan id to monthly cost, skipping entries without a numeric price."""
    prices = {}
    for plan in plans:
        cost = plan.get("monthly_cost")
        if plan.get("id") and isinstance(cost, (int, float)):
            prices[plan["id"]] = float(cost)
    return prices


def billed_cost(monthly_cost: float, start: datetime, end: datetime) -> float:
    """Cost of running from start to end, rounded up to whole hours."""
    uptime_seconds = (end - start).total_seconds()
    if uptime_seconds <= 0:
        return 0.0
    uptime_hours = math.ceil(uptime_seconds / 3600)
    return uptime_hours * (monthly_cost / HOURS_PER_MONTH)


def instance_cost(
    instance: ProviderInstance, prices: dict[str, float], now: datetime
) -> float | None:
    """Approximate cost so far, or None when plan or creation date is unknown."""
    created_at = parse_provider_datetime(instance.get("date_created"))
    monthly_cost = prices.get(instance.get("plan", ""))
    if created_at is None or monthly_cost is None:
        return None
    return billed_cost(monthly_cost, created_at, now)


def format_cost(cost: float | None) -> str:
    return "unavailable" if cost is None else f"${cost:.2f}"


def month_to_date_cost(
    instances: list[ProviderInstance], prices: dict[str, float], now: datetime
) -> CostSummary:
    """Total estimated cost since the first day of the current month."""
    first_day = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    total = 0.0
    count = 0

    for instance in instances:
        created_at = parse_provider_datetime(instance.get("date_created"))
        monthly_cost = prices.get(instance.get("plan", ""))
        if created_at is None or monthly_cost is None or created_at > now:
            continue

        start = max(created_at, first_day)
        cost = billed_cost(monthly_cost, start, now)
        if cost > 0:
            total += cost
            count += 1

    return {"total": total, "count": count}
