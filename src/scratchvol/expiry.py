"""Expiry labels: an expiry day embedded in a volume's display name.

Labels look like ``EXPIRES-20240108``. The upper-case prefix followed by
exactly eight digits is reserved for generated labels, so a descriptive name
chosen by a user never decodes to an instant. Everything about the label
format lives here; callers only see ``encode``/``decode``.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional

LABEL_PREFIX = "EXPIRES-"
DATE_FORMAT = "%Y%m%d"

_LABEL_RE = re.compile(r"EXPIRES-([0-9]{8})")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expiry_day(now: datetime, ttl_days: int) -> datetime:
    """Midnight UTC of the day ``ttl_days`` after ``now``."""
    if ttl_days < 0:
        raise ValueError(f"ttl_days must not be negative, got {ttl_days}")
    day = (_as_utc(now) + timedelta(days=ttl_days)).date()
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def encode(now: datetime, ttl_days: int) -> str:
    return LABEL_PREFIX + expiry_day(now, ttl_days).strftime(DATE_FORMAT)


def decode(label: str) -> Optional[datetime]:
    """Return the embedded expiry, or None when ``label`` is a plain name."""
    if not label:
        return None
    match = _LABEL_RE.fullmatch(label)
    if not match:
        return None
    try:
        day = datetime.strptime(match.group(1), DATE_FORMAT)
    except ValueError:
        # EXPIRES-20241341 and the like
        return None
    return day.replace(tzinfo=timezone.utc)


def is_expiry_label(label: str) -> bool:
    return decode(label) is not None
