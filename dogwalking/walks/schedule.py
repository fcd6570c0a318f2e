"""Week-at-a-glance aggregation and schedule helpers."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .dates import parse_date_key, try_normalize_date
from .errors import InvalidDate
from .records import COMPLETED, DEFAULT_DURATION_MINUTES, OVERNIGHT, SCHEDULED, Walk

DAYS_IN_WEEK = 7
ACTIVE_STATUSES = (SCHEDULED, COMPLETED)
UNASSIGNED = "Unassigned"

# Named slots offered when booking a walk.
TIME_SLOT_STARTS = {
    "morning": 8 * 60,
    "midday": 11 * 60,
    "early_evening": 14 * 60,
    "late_evening": 17 * 60,
}


@dataclass(frozen=True)
class WalkerCount:
    walker_id: int | None
    name: str
    count: int
    color: str | None = None

    def to_dict(self) -> dict:
        return {
            "walker_id": self.walker_id,
            "name": self.name,
            "count": self.count,
            "color": self.color,
        }


@dataclass(frozen=True)
class WeekDay:
    date: dt.date
    date_string: str
    is_today: bool
    walker_counts: list[WalkerCount] = field(default_factory=list)
    total_walks: int = 0

    def to_dict(self) -> dict:
        return {
            "date": self.date_string,
            "weekday": self.date.strftime("%A"),
            "is_today": self.is_today,
            "walker_counts": [count.to_dict() for count in self.walker_counts],
            "total_walks": self.total_walks,
        }


def start_of_week(day: dt.date) -> dt.date:
    """Return the Monday on or before ``day``."""

    return day - dt.timedelta(days=day.weekday())


def shift_week(start: dt.date, weeks: int) -> dt.date:
    return start + dt.timedelta(days=DAYS_IN_WEEK * weeks)


def _walker_label(walk: Walk) -> str:
    if not walk.walker_name:
        return UNASSIGNED
    return walk.walker_name.split(" ")[0]


def _active_walks_by_day(walks: Iterable[Walk]) -> dict[str, list[Walk]]:
    by_day: dict[str, list[Walk]] = {}
    for walk in walks:
        if walk.status not in ACTIVE_STATUSES:
            continue
        key = try_normalize_date(walk.date)
        if key is None:
            continue
        by_day.setdefault(key, []).append(walk)
    return by_day


def _count_walkers(day_walks: Sequence[Walk]) -> list[WalkerCount]:
    groups: dict[int | None, dict] = {}
    for walk in day_walks:
        group = groups.get(walk.walker_id)
        if group is None:
            groups[walk.walker_id] = {
                "name": _walker_label(walk),
                "count": 1,
                "color": walk.walker_color,
            }
            continue
        group["count"] += 1
        if group["name"] == UNASSIGNED and walk.walker_name:
            group["name"] = _walker_label(walk)
        group["color"] = group["color"] or walk.walker_color
    counts = [
        WalkerCount(walker_id=walker_id, name=data["name"], count=data["count"], color=data["color"])
        for walker_id, data in groups.items()
    ]
    # sorted() is stable, so ties keep first-seen order.
    return sorted(counts, key=lambda item: item.count, reverse=True)


def build_week(
    reference_start: dt.date,
    walks: Iterable[Walk],
    today: dt.date | None = None,
) -> list[WeekDay]:
    """Bucket ``walks`` into the seven days starting at ``reference_start``.

    Cancelled walks and walks whose date cannot be read are left out. Within a
    day, walkers are ordered by walk count, busiest first; walks without a
    walker are grouped under ``"Unassigned"``. ``today`` defaults to the local
    date at the time of the call.
    """

    if isinstance(reference_start, dt.datetime):
        reference_start = reference_start.date()
    today = today or dt.date.today()
    by_day = _active_walks_by_day(walks)

    week: list[WeekDay] = []
    for offset in range(DAYS_IN_WEEK):
        day = reference_start + dt.timedelta(days=offset)
        key = day.isoformat()
        day_walks = by_day.get(key, [])
        week.append(
            WeekDay(
                date=day,
                date_string=key,
                is_today=day == today,
                walker_counts=_count_walkers(day_walks),
                total_walks=len(day_walks),
            )
        )
    return week


def walks_for_day(
    walks: Iterable[Walk],
    day: dt.date | str,
    *,
    walker_name: str | None = None,
) -> list[Walk]:
    """Return the active walks on ``day``, optionally for one walker's first name."""

    key = day.isoformat() if isinstance(day, dt.date) else parse_date_key(day).isoformat()
    selected = _active_walks_by_day(walks).get(key, [])
    if walker_name is not None:
        wanted = walker_name.split(" ")[0].lower()
        selected = [walk for walk in selected if _walker_label(walk).lower() == wanted]
    return sorted(selected, key=lambda walk: (slot_start_minutes(walk.time), walk.id))


def slot_start_minutes(time_slot: str | None) -> int:
    """Minutes from midnight at which a walk's time slot begins."""

    if not time_slot:
        return 0
    if time_slot in TIME_SLOT_STARTS:
        return TIME_SLOT_STARTS[time_slot]
    parts = time_slot.split(":")
    if len(parts) >= 2:
        try:
            return int(parts[0]) * 60 + int(parts[1])
        except ValueError:
            return 0
    return 0


def has_elapsed(walk: Walk, now: dt.datetime) -> bool:
    try:
        walk_day = parse_date_key(walk.date)
    except InvalidDate:
        return False
    today = now.date()
    if walk.duration == OVERNIGHT:
        return walk_day < today
    if walk_day < today:
        return True
    if walk_day > today:
        return False
    duration = walk.duration if isinstance(walk.duration, int) else DEFAULT_DURATION_MINUTES
    now_minutes = now.hour * 60 + now.minute
    return now_minutes >= slot_start_minutes(walk.time) + duration


def elapsed_walks(walks: Iterable[Walk], now: dt.datetime | None = None) -> list[Walk]:
    """Scheduled walks whose time slot has already finished."""

    now = now or dt.datetime.now()
    return [walk for walk in walks if walk.status == SCHEDULED and has_elapsed(walk, now)]


def select_sample_for_completion(walks: Iterable[Walk], limit: int = 3) -> list[Walk]:
    """First ``limit`` scheduled walks, used to seed completed walks for testing billing."""

    if limit <= 0:
        return []
    sample: list[Walk] = []
    for walk in walks:
        if walk.status != SCHEDULED:
            continue
        sample.append(walk)
        if len(sample) >= limit:
            break
    return sample


def upcoming_walks(walks: Iterable[Walk], today: dt.date | None = None, limit: int = 5) -> list[Walk]:
    """Next scheduled walks from ``today`` on, earliest first."""

    today = today or dt.date.today()
    dated = []
    for walk in walks:
        if walk.status != SCHEDULED:
            continue
        key = try_normalize_date(walk.date)
        if key is None or key < today.isoformat():
            continue
        dated.append((key, slot_start_minutes(walk.time), walk.id, walk))
    dated.sort(key=lambda item: item[:3])
    return [item[3] for item in dated[:limit]]
