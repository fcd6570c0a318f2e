"""Strict record types for walks and clients.

Rows coming out of SQLite and JSON bodies coming in over the API are both
loosely typed: amounts may be strings, floats or missing, flags may be ``0``/``1``
and keys may be camelCase. Everything is converted here before it reaches the
scheduling and billing code.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from .errors import ValidationError

SCHEDULED = "scheduled"
COMPLETED = "completed"
CANCELLED = "cancelled"
WALK_STATUSES = (SCHEDULED, COMPLETED, CANCELLED)

OVERNIGHT = "overnight"
DEFAULT_DURATION_MINUTES = 30

CENT = Decimal("0.01")
ZERO = Decimal("0")


def parse_amount(value: Any) -> Decimal | None:
    """Return ``value`` as a ``Decimal`` or ``None`` when it is absent or unparseable."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    text = str(value).strip().replace("$", "").replace(",", "")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT)


def format_currency(amount: Decimal | None) -> str:
    amount = amount if amount is not None else ZERO
    rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if rounded < 0 else ""
    return f"{sign}${abs(rounded):,.2f}"


def parse_duration(value: Any) -> int | str | None:
    """Return minutes as ``int``, the string ``"overnight"`` or ``None``."""

    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text == OVERNIGHT:
            return OVERNIGHT
        try:
            return int(float(text))
        except ValueError as exc:
            raise ValidationError(f"Invalid walk duration: {value!r}") from exc
    return int(value)


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Expected an integer id, got {value!r}") from exc


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


@dataclass(frozen=True)
class Walk:
    id: int
    client_id: int
    pet_id: int | None
    date: str
    time: str = "morning"
    duration: int | str | None = DEFAULT_DURATION_MINUTES
    status: str = SCHEDULED
    walker_id: int | None = None
    billing_amount: Decimal | None = None
    is_paid: bool = False
    is_balance_applied: bool = False
    walker_name: str | None = None
    walker_color: str | None = None
    notes: str | None = None

    @property
    def is_billable(self) -> bool:
        return self.status == COMPLETED and not self.is_balance_applied

    def to_dict(self) -> dict:
        data = asdict(self)
        data["billing_amount"] = (
            str(self.billing_amount.quantize(CENT)) if self.billing_amount is not None else None
        )
        return data


@dataclass(frozen=True)
class Client:
    id: int
    user_id: int | None = None
    balance: Decimal = ZERO
    last_payment_date: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["balance"] = str(self.balance.quantize(CENT))
        return data


@dataclass(frozen=True)
class Walker:
    id: int
    user_id: int | None = None
    name: str | None = None
    color: str = "#4f46e5"
    rate_20_min: Decimal = Decimal("15.00")
    rate_30_min: Decimal = Decimal("20.00")
    rate_60_min: Decimal = Decimal("35.00")
    rate_overnight: Decimal = Decimal("80.00")


def walk_from_payload(payload: Mapping[str, Any]) -> Walk:
    """Build a :class:`Walk` from a loosely typed mapping (row or JSON body)."""

    status = str(_pick(payload, "status", default=SCHEDULED)).lower()
    if status not in WALK_STATUSES:
        raise ValidationError(f"Unknown walk status: {status!r}")
    walk_date = _pick(payload, "date")
    if walk_date is None:
        raise ValidationError("Walk date is required")
    if isinstance(walk_date, (dt.date, dt.datetime)):
        walk_date = walk_date.isoformat()
    billing = _pick(payload, "billing_amount", "billingAmount")
    billing_cents = payload.get("billing_amount_cents")
    client_id = _optional_int(_pick(payload, "client_id", "clientId"))
    if client_id is None:
        raise ValidationError("Walk client is required")
    return Walk(
        id=_optional_int(_pick(payload, "id", default=0)) or 0,
        client_id=client_id,
        pet_id=_optional_int(_pick(payload, "pet_id", "petId")),
        date=str(walk_date),
        time=str(_pick(payload, "time", default="morning")),
        duration=parse_duration(_pick(payload, "duration", default=DEFAULT_DURATION_MINUTES)),
        status=status,
        walker_id=_optional_int(_pick(payload, "walker_id", "walkerId")),
        billing_amount=(
            from_cents(billing_cents) if billing_cents is not None else parse_amount(billing)
        ),
        is_paid=_flag(_pick(payload, "is_paid", "isPaid", default=False)),
        is_balance_applied=_flag(
            _pick(payload, "is_balance_applied", "isBalanceApplied", default=False)
        ),
        walker_name=_pick(payload, "walker_name", "walkerName"),
        walker_color=_pick(payload, "walker_color", "walkerColor"),
        notes=_pick(payload, "notes"),
    )


def client_from_row(row: Mapping[str, Any]) -> Client:
    first = row.get("first_name") or ""
    last = row.get("last_name") or ""
    name = f"{first} {last}".strip() or None
    balance = from_cents(row.get("balance_cents"))
    return Client(
        id=int(row["id"]),
        user_id=row.get("user_id"),
        balance=balance if balance is not None else parse_amount(row.get("balance")) or ZERO,
        last_payment_date=row.get("last_payment_date"),
        name=name,
        email=row.get("email"),
        phone=row.get("phone"),
        address=row.get("address"),
    )


def walker_from_row(row: Mapping[str, Any]) -> Walker:
    first = row.get("first_name") or ""
    last = row.get("last_name") or ""
    return Walker(
        id=int(row["id"]),
        user_id=row.get("user_id"),
        name=f"{first} {last}".strip() or None,
        color=row.get("color") or "#4f46e5",
        rate_20_min=from_cents(row.get("rate_20_min_cents")) or ZERO,
        rate_30_min=from_cents(row.get("rate_30_min_cents")) or ZERO,
        rate_60_min=from_cents(row.get("rate_60_min_cents")) or ZERO,
        rate_overnight=from_cents(row.get("rate_overnight_cents")) or ZERO,
    )
