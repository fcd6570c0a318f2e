"""Client and walk stores used by the reconciliation engine."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from decimal import Decimal
from typing import Iterable

from .errors import ClientNotFound, StoreUnavailable
from .records import COMPLETED, SCHEDULED, Client, Walk, client_from_row, to_cents, walk_from_payload

WALK_SELECT = """
    SELECT walks.*,
           users.first_name || ' ' || users.last_name AS walker_name,
           walkers.color AS walker_color
    FROM walks
    LEFT JOIN walkers ON walkers.id = walks.walker_id
    LEFT JOIN users ON users.id = walkers.user_id
"""

CLIENT_SELECT = """
    SELECT clients.*, users.first_name, users.last_name, users.email, users.phone
    FROM clients
    JOIN users ON users.id = clients.user_id
"""


class InMemoryClientStore:
    def __init__(self, clients: Iterable[Client] = ()) -> None:
        self._lock = threading.Lock()
        self._clients = {client.id: client for client in clients}
        self._credited: set[int] = set()
        self.payments: dict[int, list[Decimal]] = {}

    def get_client(self, client_id: int) -> Client | None:
        return self._clients.get(client_id)

    def update_balance(self, client_id: int, amount: Decimal, *, walk_id: int) -> bool:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise ClientNotFound(f"Client {client_id} not found")
            if walk_id in self._credited:
                return False
            self._credited.add(walk_id)
            self._clients[client_id] = replace(client, balance=client.balance + amount)
            return True

    def record_payment(self, client_id: int, amount: Decimal, payment_date: str) -> Client:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise ClientNotFound(f"Client {client_id} not found")
            self.payments.setdefault(client_id, []).append(amount)
            updated = replace(client, balance=client.balance - amount, last_payment_date=payment_date)
            self._clients[client_id] = updated
            return updated


class InMemoryWalkStore:
    def __init__(self, walks: Iterable[Walk] = ()) -> None:
        self._lock = threading.Lock()
        self._walks = {walk.id: walk for walk in walks}

    def fetch_all_walks(self) -> list[Walk]:
        return list(self._walks.values())

    def fetch_walks_for_client(self, client_id: int) -> list[Walk]:
        return [walk for walk in self._walks.values() if walk.client_id == client_id]

    def fetch_walks_for_walker(self, walker_id: int) -> list[Walk]:
        return [walk for walk in self._walks.values() if walk.walker_id == walker_id]

    def get_walk(self, walk_id: int) -> Walk | None:
        return self._walks.get(walk_id)

    def mark_applied(self, walk_id: int) -> bool:
        with self._lock:
            walk = self._walks.get(walk_id)
            if walk is None or walk.status != COMPLETED or walk.is_balance_applied:
                return False
            self._walks[walk_id] = replace(walk, is_balance_applied=True)
            return True

    def mark_completed(self, walk_id: int) -> bool:
        with self._lock:
            walk = self._walks.get(walk_id)
            if walk is None or walk.status != SCHEDULED:
                return False
            self._walks[walk_id] = replace(walk, status=COMPLETED, is_paid=False)
            return True


class SqliteClientStore:
    """Client balances kept in SQLite, credited through the ``balance_entries`` ledger."""

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock) -> None:
        self.conn = conn
        self.lock = lock

    def get_client(self, client_id: int) -> Client | None:
        try:
            with self.lock:
                row = self.conn.execute(CLIENT_SELECT + " WHERE clients.id = ?", (client_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Could not load client {client_id}") from exc
        return client_from_row(row) if row else None

    def fetch_all_clients(self) -> list[Client]:
        try:
            with self.lock:
                rows = self.conn.execute(CLIENT_SELECT + " ORDER BY users.last_name, users.first_name").fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable("Could not load clients") from exc
        return [client_from_row(row) for row in rows]

    def update_balance(self, client_id: int, amount: Decimal, *, walk_id: int) -> bool:
        cents = to_cents(amount)
        with self.lock:
            try:
                with self.conn:
                    credited = self.conn.execute(
                        "SELECT 1 FROM balance_entries WHERE walk_id = ?", (walk_id,)
                    ).fetchone()
                    if credited:
                        return False
                    cur = self.conn.execute(
                        "UPDATE clients SET balance_cents = balance_cents + ? WHERE id = ?",
                        (cents, client_id),
                    )
                    if cur.rowcount == 0:
                        raise ClientNotFound(f"Client {client_id} not found")
                    # The unique walk_id makes a concurrent second credit fail and roll back.
                    self.conn.execute(
                        """
                        INSERT INTO balance_entries(walk_id, client_id, amount_cents)
                        VALUES (?, ?, ?)
                        """,
                        (walk_id, client_id, cents),
                    )
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Could not credit walk {walk_id}") from exc
        return True

    def record_payment(
        self,
        client_id: int,
        amount: Decimal,
        payment_date: str,
        *,
        method: str = "cash",
        reference: str | None = None,
    ) -> Client:
        cents = to_cents(amount)
        with self.lock:
            try:
                with self.conn:
                    cur = self.conn.execute(
                        """
                        UPDATE clients
                        SET balance_cents = balance_cents - ?, last_payment_date = ?
                        WHERE id = ?
                        """,
                        (cents, payment_date, client_id),
                    )
                    if cur.rowcount == 0:
                        raise ClientNotFound(f"Client {client_id} not found")
                    self.conn.execute(
                        """
                        INSERT INTO payments(client_id, amount_cents, payment_date, method, reference)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (client_id, cents, payment_date, method, reference),
                    )
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Could not record payment for client {client_id}") from exc
        client = self.get_client(client_id)
        if client is None:
            raise ClientNotFound(f"Client {client_id} not found")
        return client


class SqliteWalkStore:
    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock) -> None:
        self.conn = conn
        self.lock = lock

    def _fetch(self, where: str = "", params: tuple = ()) -> list[Walk]:
        try:
            with self.lock:
                rows = self.conn.execute(
                    WALK_SELECT + where + " ORDER BY walks.date, walks.time, walks.id", params
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable("Could not load walks") from exc
        return [walk_from_payload(row) for row in rows]

    def fetch_all_walks(self) -> list[Walk]:
        return self._fetch()

    def fetch_walks_for_client(self, client_id: int) -> list[Walk]:
        return self._fetch(" WHERE walks.client_id = ?", (client_id,))

    def fetch_walks_for_walker(self, walker_id: int) -> list[Walk]:
        return self._fetch(" WHERE walks.walker_id = ?", (walker_id,))

    def fetch_walks_between(self, start: str, end: str) -> list[Walk]:
        return self._fetch(" WHERE walks.date >= ? AND walks.date <= ?", (start, end))

    def get_walk(self, walk_id: int) -> Walk | None:
        walks = self._fetch(" WHERE walks.id = ?", (walk_id,))
        return walks[0] if walks else None

    def _conditional_update(self, sql: str, params: tuple) -> bool:
        with self.lock:
            try:
                with self.conn:
                    cur = self.conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise StoreUnavailable("Could not update walk") from exc
        return cur.rowcount == 1

    def mark_applied(self, walk_id: int) -> bool:
        return self._conditional_update(
            """
            UPDATE walks SET is_balance_applied = 1
            WHERE id = ? AND status = 'completed' AND is_balance_applied = 0
            """,
            (walk_id,),
        )

    def mark_completed(self, walk_id: int) -> bool:
        return self._conditional_update(
            "UPDATE walks SET status = 'completed', is_paid = 0 WHERE id = ? AND status = 'scheduled'",
            (walk_id,),
        )

    def mark_cancelled(self, walk_id: int) -> bool:
        return self._conditional_update(
            "UPDATE walks SET status = 'cancelled' WHERE id = ? AND status = 'scheduled'",
            (walk_id,),
        )
