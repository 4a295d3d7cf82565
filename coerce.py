"""Helpers for turning loosely-typed KV/env values into numbers, timestamps and flags."""

import math
from datetime import datetime, timezone


def normalize_address(value) -> str:
    return str(value).strip().lower() if value else ""


def to_number(value, fallback=0.0):
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(num):
        return fallback
    return num


def to_ms(value, fallback=None):
    """Epoch value -> integer ms. Values below 1e12 are taken as seconds."""
    num = to_number(value, None)
    if num is None or num <= 0:
        return fallback
    if num < 1e12:
        return int(math.floor(num * 1000))
    return int(math.floor(num))


def to_bool(value) -> bool:
    return value is True or value == 1 or value in ("1", "true", "TRUE")


def round6(value) -> float:
    num = to_number(value, None)
    if num is None:
        return 0.0
    # half-up, not banker's rounding
    return math.floor(num * 1e6 + 0.5) / 1e6


def floor6(value) -> float:
    num = to_number(value, None)
    if num is None:
        return 0.0
    return math.floor(num * 1e6) / 1e6


def clamp(value, lo, hi, fallback):
    num = to_number(value, None)
    if num is None:
        return fallback
    return min(hi, max(lo, num))


def parse_time_ms(value):
    """ISO-8601 string (naive = UTC) or epoch number -> ms, else None."""
    s = str(value or "").strip()
    if not s:
        return None
    if s.lstrip("-").replace(".", "", 1).isdigit():
        return to_ms(s, None)
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)
