"""Core orchestration logic for the dog walking platform."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from decimal import Decimal
from typing import Any, Sequence

from . import billing, schedule
from .database import (
    DEFAULT_BUSY_TIMEOUT_MS,
    get_connection,
    get_metadata,
    initialize_database,
    set_metadata,
)
from .dates import normalize_date, parse_date_key
from .errors import ValidationError
from .invoices import DEFAULT_DUE_DAYS, BusinessDetails, InvoiceDocument, compile_invoice, invoice_pdf_bytes
from .records import (
    CANCELLED,
    CENT,
    COMPLETED,
    SCHEDULED,
    ZERO,
    Client,
    Walk,
    Walker,
    from_cents,
    parse_amount,
    parse_duration,
    to_cents,
    walker_from_row,
)
from .stores import SqliteClientStore, SqliteWalkStore

logger = logging.getLogger(__name__)

ROLES = ("admin", "client", "walker")
EDITABLE_WALK_FIELDS = ("pet_id", "walker_id", "date", "time", "duration", "billing_amount", "notes")


class WalkingSystem:
    """High level façade that exposes application level behaviours."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        business: BusinessDetails | None = None,
        invoice_due_days: int = DEFAULT_DUE_DAYS,
    ) -> None:
        self.conn = get_connection(db_path, busy_timeout_ms)
        initialize_database(self.conn)
        self._write_lock = threading.RLock()
        self.clients = SqliteClientStore(self.conn, self._write_lock)
        self.walks = SqliteWalkStore(self.conn, self._write_lock)
        self.client_locks = billing.ClientLocks()
        self.business = business or BusinessDetails()
        self.invoice_due_days = invoice_due_days

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_next_sequence(self, name: str) -> int:
        key = f"seq_{name}"
        with self._write_lock:
            next_value = int(get_metadata(self.conn, key, "0")) + 1
            set_metadata(self.conn, key, next_value)
        return next_value

    def _insert(self, sql: str, params: Sequence[Any]) -> int:
        with self._write_lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        return cur.lastrowid

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def register_user(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        role: str,
        phone: str | None = None,
    ) -> dict:
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        if not email or not first_name:
            raise ValidationError("Email and first name are required")
        existing = self.conn.execute(
            "SELECT id FROM users WHERE email = ?", (email.lower(),)
        ).fetchone()
        if existing:
            raise ValidationError("A user with that email already exists")
        user_id = self._insert(
            """
            INSERT INTO users(email, first_name, last_name, phone, role)
            VALUES (?, ?, ?, ?, ?)
            """,
            (email.lower(), first_name, last_name, phone, role),
        )
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise ValidationError("User not found")
        return row

    def list_users(self, *, role: str | None = None) -> list[dict]:
        """Return active users, optionally filtered by role."""

        params: list[Any] = []
        where = " WHERE is_active = 1"
        if role is not None:
            where += " AND role = ?"
            params.append(role)
        return self.conn.execute(
            "SELECT * FROM users" + where + " ORDER BY role, last_name, first_name",
            params,
        ).fetchall()

    # ------------------------------------------------------------------
    # Clients, walkers & pets
    # ------------------------------------------------------------------
    def register_client(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
        address: str | None = None,
        emergency_contact: str | None = None,
        notes: str | None = None,
        opening_balance: Decimal | str | float | None = None,
    ) -> Client:
        user = self.register_user(
            email=email, first_name=first_name, last_name=last_name, role="client", phone=phone
        )
        balance = parse_amount(opening_balance) or ZERO
        client_id = self._insert(
            """
            INSERT INTO clients(
                user_id, address, emergency_contact, notes, opening_balance_cents, balance_cents
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user["id"], address, emergency_contact, notes, to_cents(balance), to_cents(balance)),
        )
        return self.get_client(client_id)

    def get_client(self, client_id: int) -> Client:
        client = self.clients.get_client(client_id)
        if client is None:
            raise ValidationError("Client not found")
        return client

    def list_clients(self) -> list[Client]:
        return self.clients.fetch_all_clients()

    def register_walker(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
        bio: str | None = None,
        color: str | None = None,
        rates: dict[str, Any] | None = None,
    ) -> Walker:
        user = self.register_user(
            email=email, first_name=first_name, last_name=last_name, role="walker", phone=phone
        )
        columns = ["user_id", "bio", "color"]
        params: list[Any] = [user["id"], bio, color or "#4f46e5"]
        for key, value in (rates or {}).items():
            if key not in ("rate_20_min", "rate_30_min", "rate_60_min", "rate_overnight"):
                raise ValidationError(f"Unknown walker rate: {key}")
            amount = parse_amount(value)
            if amount is None or amount < 0:
                raise ValidationError(f"Invalid walker rate for {key}")
            columns.append(f"{key}_cents")
            params.append(to_cents(amount))
        placeholders = ", ".join("?" for _ in columns)
        walker_id = self._insert(
            f"INSERT INTO walkers({', '.join(columns)}) VALUES ({placeholders})", params
        )
        return self.get_walker(walker_id)

    def get_walker(self, walker_id: int) -> Walker:
        row = self.conn.execute(
            """
            SELECT walkers.*, users.first_name, users.last_name
            FROM walkers JOIN users ON users.id = walkers.user_id
            WHERE walkers.id = ?
            """,
            (walker_id,),
        ).fetchone()
        if not row:
            raise ValidationError("Walker not found")
        return walker_from_row(row)

    def list_walkers(self) -> list[Walker]:
        rows = self.conn.execute(
            """
            SELECT walkers.*, users.first_name, users.last_name
            FROM walkers JOIN users ON users.id = walkers.user_id
            WHERE users.is_active = 1
            ORDER BY users.first_name, users.last_name
            """
        ).fetchall()
        return [walker_from_row(row) for row in rows]

    def add_pet(
        self,
        *,
        client_id: int,
        name: str,
        breed: str | None = None,
        age: int | None = None,
        size: str | None = None,
        notes: str | None = None,
    ) -> dict:
        self.get_client(client_id)
        if not name:
            raise ValidationError("Pet name is required")
        pet_id = self._insert(
            """
            INSERT INTO pets(client_id, name, breed, age, size, notes)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (client_id, name, breed, age, size, notes),
        )
        return self.get_pet(pet_id)

    def get_pet(self, pet_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        if not row:
            raise ValidationError("Pet not found")
        return row

    def list_pets(self, *, client_id: int | None = None) -> list[dict]:
        params: list[Any] = []
        where = " WHERE is_active = 1"
        if client_id is not None:
            where += " AND client_id = ?"
            params.append(client_id)
        return self.conn.execute("SELECT * FROM pets" + where + " ORDER BY name", params).fetchall()

    # ------------------------------------------------------------------
    # Walks
    # ------------------------------------------------------------------
    def schedule_walk(
        self,
        *,
        client_id: int,
        pet_id: int,
        date: str,
        time: str,
        duration: int | str | None = 30,
        walker_id: int | None = None,
        billing_amount: Decimal | str | float | None = None,
        notes: str | None = None,
        number_of_weeks: int = 1,
    ) -> list[Walk]:
        """Create a walk, repeated weekly when ``number_of_weeks`` is above one."""

        self.get_client(client_id)
        pet = self.get_pet(pet_id)
        if pet["client_id"] != client_id:
            raise ValidationError("Pet does not belong to this client")
        if walker_id is not None:
            self.get_walker(walker_id)
        if number_of_weeks < 1:
            raise ValidationError("Number of weeks must be at least 1")
        if not time:
            raise ValidationError("Walk time is required")
        first_day = parse_date_key(date)
        parsed_duration = parse_duration(duration)
        amount = parse_amount(billing_amount)
        if billing_amount not in (None, "") and amount is None:
            raise ValidationError(f"Invalid billing amount: {billing_amount!r}")

        walk_ids = []
        for week in range(number_of_weeks):
            day = schedule.shift_week(first_day, week)
            walk_ids.append(
                self._insert(
                    """
                    INSERT INTO walks(
                        client_id, walker_id, pet_id, date, time, duration,
                        billing_amount_cents, notes
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        client_id,
                        walker_id,
                        pet_id,
                        day.isoformat(),
                        time,
                        str(parsed_duration) if parsed_duration is not None else None,
                        to_cents(amount) if amount is not None else None,
                        notes,
                    ),
                )
            )
        return [self.get_walk(walk_id) for walk_id in walk_ids]

    def get_walk(self, walk_id: int) -> Walk:
        walk = self.walks.get_walk(walk_id)
        if walk is None:
            raise ValidationError("Walk not found")
        return walk

    def list_walks(
        self,
        *,
        client_id: int | None = None,
        walker_id: int | None = None,
        status: str | None = None,
    ) -> list[Walk]:
        if client_id is not None:
            walks = self.walks.fetch_walks_for_client(client_id)
        elif walker_id is not None:
            self.get_walker(walker_id)
            walks = self.walks.fetch_walks_for_walker(walker_id)
        else:
            walks = self.walks.fetch_all_walks()
        if status is not None:
            walks = [walk for walk in walks if walk.status == status]
        return walks

    def upcoming_walks(self, *, today: dt.date | None = None, limit: int = 5) -> list[Walk]:
        return schedule.upcoming_walks(self.walks.fetch_all_walks(), today, limit)

    def update_walk(self, walk_id: int, **changes: Any) -> Walk:
        """Edit a scheduled walk. Completed and cancelled walks are read-only."""

        unknown = sorted(set(changes) - set(EDITABLE_WALK_FIELDS))
        if unknown:
            raise ValidationError(f"Cannot update walk fields: {', '.join(unknown)}")
        walk = self.get_walk(walk_id)
        if walk.status != SCHEDULED:
            raise ValidationError(f"Cannot edit a {walk.status} walk")

        columns: dict[str, Any] = {}
        if "pet_id" in changes:
            pet = self.get_pet(changes["pet_id"])
            if pet["client_id"] != walk.client_id:
                raise ValidationError("Pet does not belong to this client")
            columns["pet_id"] = pet["id"]
        if "walker_id" in changes:
            walker_id = changes["walker_id"]
            if walker_id is not None:
                walker_id = self.get_walker(walker_id).id
            columns["walker_id"] = walker_id
        if "date" in changes:
            columns["date"] = parse_date_key(changes["date"]).isoformat()
        if "time" in changes:
            if not changes["time"]:
                raise ValidationError("Walk time is required")
            columns["time"] = changes["time"]
        if "duration" in changes:
            duration = parse_duration(changes["duration"])
            columns["duration"] = str(duration) if duration is not None else None
        if "billing_amount" in changes:
            raw = changes["billing_amount"]
            amount = parse_amount(raw)
            if raw not in (None, "") and amount is None:
                raise ValidationError(f"Invalid billing amount: {raw!r}")
            columns["billing_amount_cents"] = to_cents(amount) if amount is not None else None
        if "notes" in changes:
            columns["notes"] = changes["notes"]

        if columns:
            assignments = ", ".join(f"{column} = ?" for column in columns)
            with self._write_lock:
                cur = self.conn.execute(
                    f"UPDATE walks SET {assignments} WHERE id = ? AND status = 'scheduled'",
                    [*columns.values(), walk_id],
                )
                self.conn.commit()
            if cur.rowcount == 0:
                raise ValidationError("Walk is no longer scheduled")
        return self.get_walk(walk_id)

    def delete_walk(self, walk_id: int) -> None:
        walk = self.get_walk(walk_id)
        if walk.status == COMPLETED:
            raise ValidationError("Completed walks cannot be deleted")
        with self._write_lock:
            cur = self.conn.execute(
                "DELETE FROM walks WHERE id = ? AND status != 'completed'", (walk_id,)
            )
            self.conn.commit()
        if cur.rowcount == 0:
            raise ValidationError("Completed walks cannot be deleted")
        logger.info("Deleted walk %s", walk_id)

    def update_walk_status(self, walk_id: int, status: str) -> Walk:
        """Move a scheduled walk to completed or cancelled.

        Completing a walk only flips its status in the store. The walk is then
        billed through the normal claim-then-credit reconciliation, and the
        walker's earning is recorded.
        """

        walk = self.get_walk(walk_id)
        if status == walk.status:
            return walk
        if walk.status != SCHEDULED:
            raise ValidationError(f"Cannot change a {walk.status} walk to {status}")
        if status == COMPLETED:
            self.walks.mark_completed(walk_id)
            completed = self.get_walk(walk_id)
            billing.apply_completed_walks(
                [completed], self.clients, self.walks, self.client_locks
            )
            self.apply_walker_earnings()
        elif status == CANCELLED:
            self.walks.mark_cancelled(walk_id)
        else:
            raise ValidationError(f"Unknown walk status: {status}")
        return self.get_walk(walk_id)

    # ------------------------------------------------------------------
    # Schedule views
    # ------------------------------------------------------------------
    def week_at_a_glance(
        self,
        *,
        start: str | dt.date | None = None,
        today: dt.date | None = None,
    ) -> list[schedule.WeekDay]:
        today = today or dt.date.today()
        if start is None:
            reference = schedule.start_of_week(today)
        elif isinstance(start, dt.date):
            reference = start
        else:
            reference = parse_date_key(start)
        last_day = reference + dt.timedelta(days=schedule.DAYS_IN_WEEK - 1)
        walks = self.walks.fetch_walks_between(reference.isoformat(), last_day.isoformat())
        return schedule.build_week(reference, walks, today=today)

    def day_schedule(self, *, day: str, walker_name: str | None = None) -> list[Walk]:
        key = parse_date_key(day).isoformat()
        walks = self.walks.fetch_walks_between(key, key)
        return schedule.walks_for_day(walks, key, walker_name=walker_name)

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def apply_completed_walks(self) -> billing.ReconciliationResult:
        walks = self.walks.fetch_all_walks()
        return billing.apply_completed_walks(walks, self.clients, self.walks, self.client_locks)

    def resume_pending_credits(self) -> int:
        walks = self.walks.fetch_all_walks()
        return billing.resume_pending_credits(walks, self.clients, self.client_locks)

    def complete_elapsed_walks(self, *, now: dt.datetime | None = None) -> dict:
        """Mark finished walks completed, then bill them and record walker earnings."""

        elapsed = schedule.elapsed_walks(self.walks.fetch_all_walks(), now)
        completed_count = sum(1 for walk in elapsed if self.walks.mark_completed(walk.id))
        result = self.apply_completed_walks()
        earnings_count = self.apply_walker_earnings()
        logger.info(
            "%d walks marked as completed, %d applied to balances, %d earnings recorded",
            completed_count,
            result.applied_count,
            earnings_count,
        )
        return {
            "completed_count": completed_count,
            "balance": result.to_dict(),
            "earnings_count": earnings_count,
        }

    def mark_test_walks_completed(self, *, limit: int = 3) -> list[int]:
        """Complete a small sample of scheduled walks without touching balances."""

        sample = schedule.select_sample_for_completion(self.walks.fetch_all_walks(), limit)
        marked = [walk.id for walk in sample if self.walks.mark_completed(walk.id)]
        logger.info("Marked %d test walks as completed", len(marked))
        return marked

    def apply_walker_earnings(self, *, earned_date: str | None = None) -> int:
        earned_date = earned_date or dt.date.today().isoformat()
        walkers = {walker.id: walker for walker in self.list_walkers()}
        existing = [
            row["walk_id"] for row in self.conn.execute("SELECT walk_id FROM walker_earnings").fetchall()
        ]
        earnings = billing.compute_walker_earnings(self.walks.fetch_all_walks(), walkers, existing)
        with self._write_lock:
            with self.conn:
                for earning in earnings:
                    self.conn.execute(
                        """
                        INSERT OR IGNORE INTO walker_earnings(walker_id, walk_id, amount_cents, earned_date)
                        VALUES (?, ?, ?, ?)
                        """,
                        (earning.walker_id, earning.walk_id, to_cents(earning.amount), earned_date),
                    )
        return len(earnings)

    def list_walker_earnings(self, *, walker_id: int, unpaid_only: bool = False) -> list[dict]:
        self.get_walker(walker_id)
        where = " WHERE walker_earnings.walker_id = ?"
        if unpaid_only:
            where += " AND walker_earnings.is_paid = 0"
        rows = self.conn.execute(
            """
            SELECT walker_earnings.*, walks.date AS walk_date, walks.time AS walk_time,
                   walks.duration AS walk_duration, pets.name AS pet_name
            FROM walker_earnings
            JOIN walks ON walks.id = walker_earnings.walk_id
            LEFT JOIN pets ON pets.id = walks.pet_id
            """
            + where
            + " ORDER BY walks.date, walks.time",
            (walker_id,),
        ).fetchall()
        for row in rows:
            row["amount"] = str(from_cents(row.pop("amount_cents")))
        return rows

    def pay_walker(
        self,
        *,
        walker_id: int,
        amount: Decimal | str | float,
        payment_date: str,
        method: str = "cash",
        notes: str | None = None,
    ) -> dict:
        """Record a payout and mark the unpaid earnings it covers as paid."""

        value = parse_amount(amount)
        if value is None or value <= 0:
            raise ValidationError("Payment amount must be a positive number")
        self.get_walker(walker_id)
        day = normalize_date(payment_date)
        with self._write_lock:
            rows = self.conn.execute(
                """
                SELECT id, amount_cents FROM walker_earnings
                WHERE walker_id = ? AND is_paid = 0
                ORDER BY earned_date, id
                """,
                (walker_id,),
            ).fetchall()
            settled, remaining = billing.allocate_walker_payment(
                [(row["id"], from_cents(row["amount_cents"])) for row in rows], value
            )
            with self.conn:
                cur = self.conn.execute(
                    """
                    INSERT INTO walker_payments(walker_id, amount_cents, payment_date, method, notes)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (walker_id, to_cents(value), day, method, notes),
                )
                payment_id = cur.lastrowid
                self.conn.executemany(
                    "UPDATE walker_earnings SET is_paid = 1, payment_id = ? WHERE id = ?",
                    [(payment_id, earning_id) for earning_id in settled],
                )
        logger.info(
            "Paid walker %s %s covering %d earnings (%s unallocated)",
            walker_id,
            value,
            len(settled),
            remaining,
        )
        return {
            "id": payment_id,
            "walker_id": walker_id,
            "amount": str(value.quantize(CENT)),
            "payment_date": day,
            "method": method,
            "notes": notes,
            "settled_earnings": settled,
            "unallocated": str(remaining.quantize(CENT)),
        }

    def list_walker_payments(self, *, walker_id: int) -> list[dict]:
        self.get_walker(walker_id)
        rows = self.conn.execute(
            "SELECT * FROM walker_payments WHERE walker_id = ? ORDER BY payment_date, id",
            (walker_id,),
        ).fetchall()
        for row in rows:
            row["amount"] = str(from_cents(row.pop("amount_cents")))
        return rows

    def record_payment(
        self,
        *,
        client_id: int,
        amount: Decimal | str | float,
        payment_date: str,
        method: str = "cash",
        reference: str | None = None,
    ) -> Client:
        value = parse_amount(amount)
        if value is None or value <= 0:
            raise ValidationError("Payment amount must be a positive number")
        self.get_client(client_id)
        with self.client_locks.hold(client_id):
            client = self.clients.record_payment(
                client_id,
                value,
                normalize_date(payment_date),
                method=method,
                reference=reference,
            )
        logger.info("Recorded payment of %s for client %s", value, client_id)
        return client

    def list_payments(self, *, client_id: int) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM payments WHERE client_id = ? ORDER BY payment_date, id",
            (client_id,),
        ).fetchall()
        for row in rows:
            row["amount"] = str(from_cents(row.pop("amount_cents")))
        return rows

    def audit_balances(self) -> list[dict]:
        """Clients whose stored balance differs from applied walks minus payments."""

        mismatches = []
        for client in self.list_clients():
            payments = [parse_amount(row["amount"]) for row in self.list_payments(client_id=client.id)]
            walks = self.walks.fetch_walks_for_client(client.id)
            opening = self.conn.execute(
                "SELECT opening_balance_cents FROM clients WHERE id = ?", (client.id,)
            ).fetchone()["opening_balance_cents"]
            expected = from_cents(opening) + billing.expected_balance(walks, payments)
            if expected != client.balance:
                mismatches.append(
                    {"client_id": client.id, "balance": str(client.balance), "expected": str(expected)}
                )
        return mismatches

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def _generate_invoice_number(self, issue_date: dt.date) -> str:
        sequence = self._get_next_sequence(f"invoice_{issue_date.year}")
        return f"INV-{issue_date.year}-{sequence:05d}"

    def compile_invoice(self, *, client_id: int, issue_date: dt.date | None = None) -> InvoiceDocument:
        client = self.get_client(client_id)
        issue_date = issue_date or dt.date.today()
        pets = {pet["id"]: pet["name"] for pet in self.list_pets(client_id=client_id)}
        return compile_invoice(
            client,
            self.walks.fetch_walks_for_client(client_id),
            self.business,
            issue_date=issue_date,
            invoice_number=self._generate_invoice_number(issue_date),
            pet_names=pets,
            due_days=self.invoice_due_days,
        )

    def invoice_pdf(self, *, client_id: int, issue_date: dt.date | None = None) -> tuple[InvoiceDocument, bytes]:
        document = self.compile_invoice(client_id=client_id, issue_date=issue_date)
        return document, invoice_pdf_bytes(document)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def send_message(self, *, sender_id: int, receiver_id: int, content: str) -> dict:
        self.get_user(sender_id)
        self.get_user(receiver_id)
        if not content or not content.strip():
            raise ValidationError("Message content is required")
        message_id = self._insert(
            "INSERT INTO messages(sender_id, receiver_id, content) VALUES (?, ?, ?)",
            (sender_id, receiver_id, content.strip()),
        )
        return self.conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()

    def list_messages(self, *, user_id: int, other_user_id: int | None = None) -> list[dict]:
        params: list[Any] = [user_id, user_id]
        where = " WHERE (sender_id = ? OR receiver_id = ?)"
        if other_user_id is not None:
            where += " AND (sender_id = ? OR receiver_id = ?)"
            params.extend([other_user_id, other_user_id])
        return self.conn.execute(
            "SELECT * FROM messages" + where + " ORDER BY sent_at, id", params
        ).fetchall()

    def mark_message_read(self, message_id: int) -> dict:
        with self._write_lock:
            cur = self.conn.execute("UPDATE messages SET is_read = 1 WHERE id = ?", (message_id,))
            self.conn.commit()
        if cur.rowcount == 0:
            raise ValidationError("Message not found")
        return self.conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()

    def unread_message_count(self, user_id: int) -> int:
        self.get_user(user_id)
        row = self.conn.execute(
            "SELECT COUNT(*) AS unread FROM messages WHERE receiver_id = ? AND is_read = 0",
            (user_id,),
        ).fetchone()
        return row["unread"]

    def close(self) -> None:
        self.conn.close()
