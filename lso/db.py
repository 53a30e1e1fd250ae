from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount created by docker
    before the file existed), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "lso.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              unit_name TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS transitions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              unit_name TEXT NOT NULL,
              from_state TEXT NOT NULL,
              to_state TEXT NOT NULL,
              detail TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_transitions_unit ON transitions(unit_name);
            """
        )


def log_event(level: str, message: str, unit_name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, unit_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), unit_name, message),
        )


def record_transition(unit_name: str, from_state: str, to_state: str, detail: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO transitions (ts, unit_name, from_state, to_state, detail) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), unit_name, from_state, to_state, detail),
        )


def latest_events(limit: int = 100, unit_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if unit_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE unit_name=? ORDER BY id DESC LIMIT ?", (unit_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def unit_history(unit_name: str, limit: int = 50) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM transitions WHERE unit_name=? ORDER BY id DESC LIMIT ?", (unit_name, limit)
        ).fetchall()
        return [dict(r) for r in rows]
