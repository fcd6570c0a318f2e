"""Calendar-day normalisation for walk dates.

Walk dates arrive as ``YYYY-MM-DD`` strings, full ISO timestamps, free-form
strings from older exports, or ``date``/``datetime`` objects. Everything that
compares or buckets walks by day goes through :func:`normalize_date` so that a
walk never drifts onto a neighbouring day because of a UTC conversion.
"""

from __future__ import annotations

import datetime as dt
import logging
import re

from dateutil import parser as date_parser

from .errors import InvalidDate

logger = logging.getLogger(__name__)

DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _to_local_date(value: dt.datetime) -> dt.date:
    # Naive values are already local wall-clock time.
    if value.tzinfo is not None:
        value = value.astimezone()
    return value.date()


def normalize_date(value: str | dt.date | dt.datetime) -> str:
    """Return the ``YYYY-MM-DD`` key for ``value`` using local calendar fields."""

    if isinstance(value, dt.datetime):
        return _to_local_date(value).isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    if not isinstance(value, str) or not value.strip():
        raise InvalidDate(f"Invalid date: {value!r}")

    text = value.strip()
    if DATE_KEY_PATTERN.match(text):
        return text

    try:
        parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError) as exc:
            raise InvalidDate(f"Invalid date: {value!r}") from exc
    return _to_local_date(parsed).isoformat()


def try_normalize_date(value: str | dt.date | dt.datetime | None) -> str | None:
    """Like :func:`normalize_date` but returns ``None`` for unusable input."""

    if value is None:
        return None
    try:
        return normalize_date(value)
    except InvalidDate:
        logger.warning("Ignoring record with invalid date %r", value)
        return None


def parse_date_key(value: str | dt.date | dt.datetime) -> dt.date:
    """Return the local calendar ``date`` for ``value``, raising :class:`InvalidDate`."""

    try:
        return dt.date.fromisoformat(normalize_date(value))
    except ValueError as exc:
        raise InvalidDate(f"Invalid date: {value!r}") from exc


def format_display_date(value: str | dt.date | dt.datetime) -> str:
    return parse_date_key(value).strftime("%b %d, %Y")
