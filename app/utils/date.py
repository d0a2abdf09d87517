"""
Date parsing for event timestamps.

Row values arrive as ISO strings, locale-formatted strings (10/20/2025),
datetimes from spreadsheets, or epoch numbers. Everything is normalized to
timezone-aware UTC datetimes.
"""
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

import pandas as pd

from app.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

# Plausible epoch-second range (2001-09-09 .. 5138-11-16)
_EPOCH_SECONDS_MIN = 1_000_000_000
_EPOCH_SECONDS_MAX = 100_000_000_000

_NUMERIC_DATE_RE = re.compile(r"^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}")

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _prefer_dayfirst(text: str) -> Optional[bool]:
    match = _NUMERIC_DATE_RE.match(text)
    if not match:
        return None
    parts = re.split(r"[/-]", match.group(0))
    first, second = int(parts[0]), int(parts[1])
    if first > 12 and second <= 31:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_flexible_date(
    value: Any,
    *,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[datetime]:
    """
    Parse ``value`` into an aware UTC datetime, or None when it is not a date.

    Naive inputs are assumed to be UTC. Ambiguous numeric dates such as
    03/04/2025 follow ``settings.date_default_dayfirst``.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        if value != value or not (_EPOCH_SECONDS_MIN <= value < _EPOCH_SECONDS_MAX):
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value).strip()
    if not text:
        return None

    dayfirst = _prefer_dayfirst(text)
    attempts = []
    if dayfirst is not None:
        attempts.append(dayfirst)
        attempts.append(not dayfirst)
    attempts.append(None)

    last_error: Optional[Exception] = None
    for attempt in attempts:
        try:
            if attempt is None:
                ts = pd.to_datetime(text, utc=True)
            else:
                ts = pd.to_datetime(text, utc=True, dayfirst=attempt)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if ts is pd.NaT:
            continue
        return ts.to_pydatetime()

    if log_failures:
        _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None


def to_iso_z(dt: datetime) -> str:
    """Format an aware datetime as ``YYYY-MM-DDTHH:MM:SSZ``."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
