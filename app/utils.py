"""Utility helpers for the Troxide service."""

from __future__ import annotations

import html
import re
from datetime import date, datetime, timezone


TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_date(value: object) -> date | None:
    """Parse an ISO ``YYYY-MM-DD`` string, returning ``None`` when blank or invalid."""

    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def parse_datetime(value: object) -> datetime | None:
    """Parse an ISO 8601 timestamp into naive UTC."""

    if isinstance(value, datetime):
        return as_naive_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_naive_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def strip_html(value: str | None) -> str | None:
    """Return plain text from the HTML fragments the catalog uses for summaries."""

    if not value:
        return None
    text = html.unescape(TAG_RE.sub(" ", value))
    text = WHITESPACE_RE.sub(" ", text).strip()
    return text or None
