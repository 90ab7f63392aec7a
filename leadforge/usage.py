"""
Usage cap tracking for paid places API calls.

Counters live in the api_usage table keyed by (UTC date, resource).
Paid calls reserve their slot first: reserve_request() checks both caps
and increments under one database write lock, so concurrent search runs
cannot race each other past a cap.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from leadforge import config
from leadforge.db import get_usage, increment_usage, reserve_usage, utc_today
from leadforge.errors import CapExceededError, ValidationError

logger = logging.getLogger(__name__)

SEARCH = "search"
DETAIL = "detail"
RESOURCES = (SEARCH, DETAIL)


@dataclass
class CapCheck:
    allowed: bool
    remaining: int
    percent_used: float
    used: int
    limit: int
    warning: Optional[str] = None


def _check_resource(resource: str) -> None:
    if resource not in RESOURCES:
        raise ValidationError(f"Unknown usage resource '{resource}'")


def _price_per_thousand(resource: str) -> float:
    return config.SEARCH_PRICE_PER_THOUSAND if resource == SEARCH else config.DETAIL_PRICE_PER_THOUSAND


def _daily_limit(resource: str) -> int:
    return config.DAILY_SEARCH_LIMIT if resource == SEARCH else config.DAILY_DETAIL_LIMIT


def _monthly_limit(resource: str) -> int:
    return config.MONTHLY_SEARCH_LIMIT if resource == SEARCH else config.MONTHLY_DETAIL_LIMIT


def _current_month() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m")


def _round_cents(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def track_request(resource: str, count: int = 1) -> None:
    """Record `count` requests (and their cost) against today's counter."""
    _check_resource(resource)
    cost = count * _price_per_thousand(resource) / 1000
    increment_usage(resource, count, cost)
    logger.debug("Tracked %d %s request(s)", count, resource)


def reserve_request(resource: str, count: int = 1) -> None:
    """
    Claim `count` requests against the daily and monthly caps before a
    paid call. Raises CapExceededError when either cap has no room left.
    """
    _check_resource(resource)
    cost = count * _price_per_thousand(resource) / 1000
    scope, used = reserve_usage(resource, cost, _daily_limit(resource), _monthly_limit(resource), count)
    if scope is not None:
        limit = _daily_limit(resource) if scope == "daily" else _monthly_limit(resource)
        raise CapExceededError(resource, scope, limit, used)
    _build_check(resource, "daily", used, _daily_limit(resource))


def release_request(resource: str, count: int = 1) -> None:
    """Give back a reservation for a call that failed. Only successful calls count."""
    _check_resource(resource)
    cost = count * _price_per_thousand(resource) / 1000
    increment_usage(resource, -count, -cost)
    logger.debug("Released %d %s request(s)", count, resource)


def _build_check(resource: str, scope: str, used: int, limit: int) -> CapCheck:
    remaining = max(0, limit - used)
    percent_used = (used / limit * 100) if limit > 0 else 0.0

    warning = None
    if config.WARN_AT_95 and percent_used >= 95:
        warning = f"CRITICAL: {scope} {resource} usage at {percent_used:.0f}% ({used}/{limit})"
    elif config.WARN_AT_80 and percent_used >= 80:
        warning = f"WARNING: {scope} {resource} usage at {percent_used:.0f}% ({used}/{limit})"

    if warning:
        logger.warning(warning)

    return CapCheck(
        allowed=remaining > 0,
        remaining=remaining,
        percent_used=round(percent_used, 2),
        used=used,
        limit=limit,
        warning=warning,
    )


def check_daily_cap(resource: str) -> CapCheck:
    _check_resource(resource)
    used, _ = get_usage(resource, utc_today())
    return _build_check(resource, "daily", used, _daily_limit(resource))


def check_monthly_cap(resource: str) -> CapCheck:
    _check_resource(resource)
    used, _ = get_usage(resource, _current_month())
    return _build_check(resource, "monthly", used, _monthly_limit(resource))


def estimate_cost(
    search_count: int,
    detail_count: int,
    price_per_thousand_search: Optional[float] = None,
    price_per_thousand_detail: Optional[float] = None,
) -> dict:
    """Pure cost estimate, each figure rounded to cents."""
    if price_per_thousand_search is None:
        price_per_thousand_search = config.SEARCH_PRICE_PER_THOUSAND
    if price_per_thousand_detail is None:
        price_per_thousand_detail = config.DETAIL_PRICE_PER_THOUSAND

    search_cost = _round_cents(search_count / 1000 * price_per_thousand_search)
    detail_cost = _round_cents(detail_count / 1000 * price_per_thousand_detail)
    return {
        'search_cost': search_cost,
        'detail_cost': detail_cost,
        'total_cost': _round_cents(search_cost + detail_cost),
    }


def get_usage_summary() -> dict:
    """Daily and monthly usage for every resource, for display."""
    summary = {'date': utc_today(), 'month': _current_month(), 'resources': {}}
    today_cost = 0.0
    month_cost = 0.0

    for resource in RESOURCES:
        daily = check_daily_cap(resource)
        monthly = check_monthly_cap(resource)
        _, day_cost = get_usage(resource, utc_today())
        _, mon_cost = get_usage(resource, _current_month())
        today_cost += day_cost
        month_cost += mon_cost
        summary['resources'][resource] = {'daily': daily, 'monthly': monthly}

    summary['cost_today'] = _round_cents(today_cost)
    summary['cost_month'] = _round_cents(month_cost)
    return summary
