"""Balance reconciliation for completed walks.

A completed walk is billed to its client exactly once. Each walk is first
*claimed* by flipping ``is_balance_applied`` from false to true in the walk
store, and only then credited to the client's balance. The credit is keyed by
walk id, so a run that stopped between the two steps can be finished later by
:func:`resume_pending_credits` without double billing.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Iterator, Mapping, Protocol

from .errors import ClientNotFound, MissingBillingAmount, StoreUnavailable, ValidationError
from .records import COMPLETED, DEFAULT_DURATION_MINUTES, OVERNIGHT, ZERO, Client, Walk, Walker

logger = logging.getLogger(__name__)


class ClientStore(Protocol):
    def get_client(self, client_id: int) -> Client | None:
        ...

    def update_balance(self, client_id: int, amount: Decimal, *, walk_id: int) -> bool:
        """Add ``amount`` to the balance once per ``walk_id``; ``False`` if already credited."""


class WalkStore(Protocol):
    def mark_applied(self, walk_id: int) -> bool:
        """Atomically flip ``is_balance_applied`` to true; ``False`` if it already was."""


class ClientLocks:
    """One lock per client so same-client balance updates never interleave."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, client_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks[client_id]
        with lock:
            yield


@dataclass
class ReconciliationResult:
    applied: list[int] = field(default_factory=list)
    missing_billing_amount: list[int] = field(default_factory=list)
    client_not_found: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def skipped_count(self) -> int:
        return len(self.missing_billing_amount) + len(self.client_not_found)

    def to_dict(self) -> dict:
        return {
            "applied_count": self.applied_count,
            "applied": list(self.applied),
            "skipped_count": self.skipped_count,
            "missing_billing_amount": list(self.missing_billing_amount),
            "client_not_found": list(self.client_not_found),
            "failed": list(self.failed),
        }


def _check_billable(walk: Walk, clients: ClientStore) -> Decimal:
    if walk.billing_amount is None:
        raise MissingBillingAmount(f"Walk {walk.id} has no billing amount")
    if clients.get_client(walk.client_id) is None:
        raise ClientNotFound(f"Client {walk.client_id} for walk {walk.id} not found")
    return walk.billing_amount


def apply_completed_walks(
    walks: Iterable[Walk],
    clients: ClientStore,
    walk_store: WalkStore,
    locks: ClientLocks | None = None,
) -> ReconciliationResult:
    """Credit every completed, not yet applied walk to its client's balance."""

    locks = locks or ClientLocks()
    result = ReconciliationResult()
    for walk in walks:
        if not walk.is_billable:
            continue
        try:
            amount = _check_billable(walk, clients)
        except MissingBillingAmount:
            logger.warning("Skipping walk %s: no billing amount", walk.id)
            result.missing_billing_amount.append(walk.id)
            continue
        except ClientNotFound:
            logger.warning("Skipping walk %s: client %s not found", walk.id, walk.client_id)
            result.client_not_found.append(walk.id)
            continue

        if not walk_store.mark_applied(walk.id):
            logger.debug("Walk %s already claimed by another run", walk.id)
            continue

        try:
            with locks.hold(walk.client_id):
                clients.update_balance(walk.client_id, amount, walk_id=walk.id)
        except (StoreUnavailable, ValidationError):
            logger.exception("Walk %s claimed but balance credit failed", walk.id)
            result.failed.append(walk.id)
            continue
        result.applied.append(walk.id)

    logger.info(
        "Applied %d walks to client balances (%d skipped, %d failed)",
        result.applied_count,
        result.skipped_count,
        len(result.failed),
    )
    return result


def resume_pending_credits(
    walks: Iterable[Walk],
    clients: ClientStore,
    locks: ClientLocks | None = None,
) -> int:
    """Retry the credit step for claimed walks; returns how many were newly credited."""

    locks = locks or ClientLocks()
    credited = 0
    for walk in walks:
        if walk.status != COMPLETED or not walk.is_balance_applied or walk.billing_amount is None:
            continue
        if clients.get_client(walk.client_id) is None:
            continue
        with locks.hold(walk.client_id):
            if clients.update_balance(walk.client_id, walk.billing_amount, walk_id=walk.id):
                logger.info("Recovered balance credit for walk %s", walk.id)
                credited += 1
    return credited


def expected_balance(walks: Iterable[Walk], payments: Iterable[Decimal]) -> Decimal:
    """Applied billing amounts minus payments, the value a client balance should hold."""

    charges = sum(
        (walk.billing_amount for walk in walks if walk.is_balance_applied and walk.billing_amount is not None),
        ZERO,
    )
    return charges - sum(payments, ZERO)


# ----------------------------------------------------------------------
# Walker earnings
# ----------------------------------------------------------------------
def walker_rate_for_duration(walker: Walker, duration: int | str | None) -> Decimal:
    """Pay rate for a walk, picked from the walker's duration buckets."""

    if duration == OVERNIGHT:
        return walker.rate_overnight
    minutes = duration if isinstance(duration, int) else DEFAULT_DURATION_MINUTES
    if minutes <= 20:
        return walker.rate_20_min
    if minutes <= 30:
        return walker.rate_30_min
    return walker.rate_60_min


@dataclass(frozen=True)
class WalkerEarning:
    walker_id: int
    walk_id: int
    amount: Decimal


def compute_walker_earnings(
    walks: Iterable[Walk],
    walkers: Mapping[int, Walker],
    already_earned: Iterable[int] = (),
) -> list[WalkerEarning]:
    """Earnings owed for completed walks that have no earning record yet."""

    seen = set(already_earned)
    earnings: list[WalkerEarning] = []
    for walk in walks:
        if walk.status != COMPLETED or walk.walker_id is None or walk.id in seen:
            continue
        walker = walkers.get(walk.walker_id)
        if walker is None:
            logger.warning("Walk %s references unknown walker %s", walk.id, walk.walker_id)
            continue
        rate = walker_rate_for_duration(walker, walk.duration)
        if rate <= 0:
            continue
        seen.add(walk.id)
        earnings.append(WalkerEarning(walker_id=walker.id, walk_id=walk.id, amount=rate))
    return earnings


def allocate_walker_payment(
    unpaid: Iterable[tuple[int, Decimal]],
    amount: Decimal,
) -> tuple[list[int], Decimal]:
    """Settle unpaid earnings oldest first with a payout of ``amount``.

    ``unpaid`` holds ``(earning_id, amount)`` pairs in the order they were
    earned. Only earnings the payout covers in full are settled; allocation
    stops at the first one it cannot cover. Returns the settled ids and the
    part of the payout left over.
    """

    settled: list[int] = []
    remaining = amount
    for earning_id, earning_amount in unpaid:
        if earning_amount > remaining:
            break
        settled.append(earning_id)
        remaining -= earning_amount
    return settled, remaining
