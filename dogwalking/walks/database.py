"""Database utilities for the dog walking operations platform."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1
DEFAULT_BUSY_TIMEOUT_MS = 5000


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    The connection may be shared between request threads; callers serialise
    writes themselves.
    """

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    return conn


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            phone TEXT,
            role TEXT NOT NULL,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL UNIQUE,
            address TEXT,
            emergency_contact TEXT,
            notes TEXT,
            opening_balance_cents INTEGER NOT NULL DEFAULT 0,
            balance_cents INTEGER NOT NULL DEFAULT 0,
            last_payment_date TEXT,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS walkers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL UNIQUE,
            bio TEXT,
            color TEXT DEFAULT '#4f46e5',
            rate_20_min_cents INTEGER DEFAULT 1500,
            rate_30_min_cents INTEGER DEFAULT 2000,
            rate_60_min_cents INTEGER DEFAULT 3500,
            rate_overnight_cents INTEGER DEFAULT 8000,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS pets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            breed TEXT,
            age INTEGER,
            size TEXT,
            notes TEXT,
            is_active INTEGER DEFAULT 1,
            FOREIGN KEY(client_id) REFERENCES clients(id)
        );

        CREATE TABLE IF NOT EXISTS walks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            walker_id INTEGER,
            pet_id INTEGER,
            date TEXT NOT NULL,
            time TEXT NOT NULL,
            duration TEXT DEFAULT '30',
            billing_amount_cents INTEGER,
            is_paid INTEGER DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'scheduled',
            is_balance_applied INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(client_id) REFERENCES clients(id),
            FOREIGN KEY(walker_id) REFERENCES walkers(id),
            FOREIGN KEY(pet_id) REFERENCES pets(id)
        );

        CREATE INDEX IF NOT EXISTS idx_walks_date ON walks(date);
        CREATE INDEX IF NOT EXISTS idx_walks_client ON walks(client_id);

        CREATE TABLE IF NOT EXISTS balance_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walk_id INTEGER NOT NULL UNIQUE,
            client_id INTEGER NOT NULL,
            amount_cents INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(walk_id) REFERENCES walks(id),
            FOREIGN KEY(client_id) REFERENCES clients(id)
        );

        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            amount_cents INTEGER NOT NULL,
            payment_date TEXT NOT NULL,
            method TEXT DEFAULT 'cash',
            reference TEXT,
            metadata TEXT,
            FOREIGN KEY(client_id) REFERENCES clients(id)
        );

        CREATE TABLE IF NOT EXISTS walker_earnings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walker_id INTEGER NOT NULL,
            walk_id INTEGER NOT NULL UNIQUE,
            amount_cents INTEGER NOT NULL,
            earned_date TEXT NOT NULL,
            is_paid INTEGER DEFAULT 0,
            payment_id INTEGER,
            FOREIGN KEY(walker_id) REFERENCES walkers(id),
            FOREIGN KEY(walk_id) REFERENCES walks(id),
            FOREIGN KEY(payment_id) REFERENCES walker_payments(id)
        );

        CREATE TABLE IF NOT EXISTS walker_payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walker_id INTEGER NOT NULL,
            amount_cents INTEGER NOT NULL,
            payment_date TEXT NOT NULL,
            method TEXT DEFAULT 'cash',
            notes TEXT,
            FOREIGN KEY(walker_id) REFERENCES walkers(id)
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sender_id INTEGER NOT NULL,
            receiver_id INTEGER NOT NULL,
            content TEXT NOT NULL,
            sent_at TEXT DEFAULT CURRENT_TIMESTAMP,
            is_read INTEGER DEFAULT 0,
            FOREIGN KEY(sender_id) REFERENCES users(id),
            FOREIGN KEY(receiver_id) REFERENCES users(id)
        );
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )
    conn.commit()


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default
