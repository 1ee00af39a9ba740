"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

_RELATIVE_RE = re.compile(r"^(\d+)\s*([smhdw])$", re.IGNORECASE)
_RELATIVE_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}
# Epoch values above this are milliseconds (2001-09-09 in ms).
_EPOCH_MS_THRESHOLD = 1_000_000_000_000


def format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S.%f"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def from_epoch(value: float) -> datetime | None:
    seconds = value / 1000.0 if abs(value) >= _EPOCH_MS_THRESHOLD else float(value)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings and epoch seconds/milliseconds into aware UTC datetimes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return from_epoch(value)
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if token.isdigit():
            return from_epoch(int(token))
        parsed = _parse_datetime_token(token)
        if parsed is None:
            return None
        dt = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def parse_since(value: str | None, now: datetime | None = None) -> datetime | None:
    """Accept relative windows (``7d``, ``24h``, ``30m``) or absolute timestamps."""
    token = (value or "").strip()
    if not token:
        return None
    match = _RELATIVE_RE.match(token)
    if match:
        amount = int(match.group(1))
        unit = _RELATIVE_UNITS[match.group(2).lower()]
        reference = now or datetime.now(timezone.utc)
        return reference - timedelta(**{unit: amount})
    return parse_timestamp(token)


def utc_now_iso() -> str:
    return format_datetime_utc(datetime.now(timezone.utc))
