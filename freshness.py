from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


WILDCARD = "*"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


@dataclass(frozen=True)
class FreshnessDecision:
    should_process: bool
    replace_existing: bool


PLAIN_INSERT = FreshnessDecision(should_process=True, replace_existing=False)
REPLACE_STALE = FreshnessDecision(should_process=True, replace_existing=True)
KEEP_FRESH = FreshnessDecision(should_process=False, replace_existing=False)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value or len(value) != 14 or not value.isdigit():
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def evaluate(timestamp: Optional[str], freshness_days: float, now: Optional[datetime] = None) -> FreshnessDecision:
    if timestamp is None:
        return PLAIN_INSERT
    if timestamp == WILDCARD:
        return REPLACE_STALE
    captured = parse_timestamp(timestamp)
    if captured is None:
        return REPLACE_STALE
    # no window: a dated annotation never goes stale
    if freshness_days <= 0:
        return KEEP_FRESH
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    if current - captured < timedelta(days=freshness_days):
        return KEEP_FRESH
    return REPLACE_STALE


def is_fresh(timestamp: Optional[str], freshness_days: float, now: Optional[datetime] = None) -> bool:
    return not evaluate(timestamp, freshness_days, now).should_process
