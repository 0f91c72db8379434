"""
db_store.py

SQLite persistence layer for Run Board:
- Athletes (Strava OAuth credentials, one row per authorized athlete)
- Activities (club feed + athlete feed, deduplicated by dedup_key)
- Settings (key/value, e.g. the rotated club master refresh token)

- Creates the database directory on first use
- Uses CREATE TABLE IF NOT EXISTS
- Includes lightweight, safe migrations for new columns
"""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional

from normalize import ActivityRow


# -----------------------------
# Database location
# -----------------------------
DB_DIR = os.environ.get("RUNBOARD_DB_DIR", "data")
DB_PATH = os.environ.get("RUNBOARD_DB_PATH", os.path.join(DB_DIR, "runboard.db"))


def get_conn() -> sqlite3.Connection:
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def _table_columns(cur: sqlite3.Cursor, table_name: str) -> List[str]:
    cur.execute(f"PRAGMA table_info({table_name})")
    return [r[1] for r in cur.fetchall()]


def _ensure_column(cur: sqlite3.Cursor, table: str, col: str, ddl: str) -> None:
    cols = _table_columns(cur, table)
    if col not in cols:
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {ddl}")


# -----------------------------
# Init / migrations
# -----------------------------
def init_db() -> None:
    conn = get_conn()
    cur = conn.cursor()

    cur.execute("""
    CREATE TABLE IF NOT EXISTS athletes (
        athlete_id INTEGER PRIMARY KEY,       -- Strava athlete id
        firstname TEXT,
        lastname TEXT,
        display_name TEXT,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        expires_at INTEGER,                   -- epoch seconds
        scope TEXT,
        created_at TEXT DEFAULT (datetime('now')),
        updated_at TEXT DEFAULT (datetime('now'))
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS activities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dedup_key TEXT NOT NULL UNIQUE,
        source TEXT NOT NULL,                 -- club/athlete
        activity_id INTEGER,
        athlete_id INTEGER,
        athlete_name TEXT,
        full_name TEXT,
        name TEXT,
        sport_type TEXT,
        activity_date TEXT,                   -- YYYY-MM-DD HH:MM:SS
        activity_day TEXT,                    -- YYYY-MM-DD
        date_estimated INTEGER NOT NULL DEFAULT 0,
        distance_km REAL,
        moving_time_seconds INTEGER,
        elapsed_time_seconds INTEGER,
        elevation_meters REAL,
        pace_display TEXT,
        athlete_photo TEXT,
        first_seen_at TEXT DEFAULT (datetime('now')),
        updated_at TEXT DEFAULT (datetime('now'))
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TEXT DEFAULT (datetime('now'))
    )
    """)

    # older databases predate these columns
    _ensure_column(cur, "activities", "elapsed_time_seconds", "elapsed_time_seconds INTEGER")
    _ensure_column(cur, "activities", "date_estimated", "date_estimated INTEGER NOT NULL DEFAULT 0")
    _ensure_column(cur, "activities", "athlete_photo", "athlete_photo TEXT")

    cur.execute("CREATE INDEX IF NOT EXISTS idx_activities_day ON activities(activity_day)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_activities_athlete ON activities(athlete_id)")

    conn.commit()
    conn.close()


# -----------------------------
# Athletes / OAuth tokens
# -----------------------------
@contextmanager
def _connection(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Reuse the caller's connection, or open one for this call and close it after."""
    if conn is not None:
        yield conn
        return
    own = get_conn()
    try:
        yield own
    finally:
        own.close()


def save_athlete_tokens(
    athlete_id: int,
    access_token: str,
    refresh_token: str,
    expires_at: Optional[int],
    scope: Optional[str] = None,
    firstname: Optional[str] = None,
    lastname: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> None:
    display_name = " ".join(p for p in (firstname, lastname) if p) or None
    with _connection(conn) as c:
        c.execute("""
            INSERT INTO athletes(athlete_id, firstname, lastname, display_name, access_token, refresh_token, expires_at, scope)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(athlete_id) DO UPDATE SET
                firstname=COALESCE(excluded.firstname, athletes.firstname),
                lastname=COALESCE(excluded.lastname, athletes.lastname),
                display_name=COALESCE(excluded.display_name, athletes.display_name),
                access_token=excluded.access_token,
                refresh_token=excluded.refresh_token,
                expires_at=excluded.expires_at,
                scope=COALESCE(excluded.scope, athletes.scope),
                updated_at=datetime('now')
        """, (int(athlete_id), firstname, lastname, display_name, access_token, refresh_token, expires_at, scope))
        c.commit()


def get_athlete_tokens(athlete_id: int) -> Optional[Dict[str, Any]]:
    conn = get_conn()
    cur = conn.cursor()
    cur.execute("""
        SELECT athlete_id, firstname, lastname, display_name, access_token, refresh_token, expires_at, scope
        FROM athletes
        WHERE athlete_id = ?
    """, (int(athlete_id),))
    row = cur.fetchone()
    conn.close()
    return dict(row) if row is not None else None


def list_athletes(conn: Optional[sqlite3.Connection] = None) -> List[Dict[str, Any]]:
    with _connection(conn) as c:
        rows = c.execute("""
            SELECT athlete_id, firstname, lastname, display_name, access_token, refresh_token, expires_at, scope, updated_at
            FROM athletes
            ORDER BY athlete_id ASC
        """).fetchall()
    return [dict(r) for r in rows]


# -----------------------------
# Settings (key/value)
# -----------------------------
def get_setting(key: str, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
    with _connection(conn) as c:
        row = c.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row is not None else None


def save_setting(key: str, value: Optional[str], conn: Optional[sqlite3.Connection] = None) -> None:
    with _connection(conn) as c:
        c.execute("""
            INSERT INTO settings(key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value=excluded.value,
                updated_at=datetime('now')
        """, (key, value))
        c.commit()


# -----------------------------
# Activities
# -----------------------------
def upsert_activity(conn: sqlite3.Connection, row: ActivityRow) -> str:
    """
    Insert or update by dedup_key. Returns "inserted" or "updated".
    Display fields are overwritten; an estimated date never replaces a stored one.
    """
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM activities WHERE dedup_key = ? LIMIT 1", (row.dedup_key,))
    exists = cur.fetchone() is not None

    values = asdict(row)
    values["date_estimated"] = int(row.date_estimated)
    cur.execute("""
        INSERT INTO activities(
            dedup_key, source, activity_id, athlete_id, athlete_name, full_name, name, sport_type,
            activity_date, activity_day, date_estimated, distance_km, moving_time_seconds,
            elapsed_time_seconds, elevation_meters, pace_display, athlete_photo
        )
        VALUES (
            :dedup_key, :source, :activity_id, :athlete_id, :athlete_name, :full_name, :name, :sport_type,
            :activity_date, :activity_day, :date_estimated, :distance_km, :moving_time_seconds,
            :elapsed_time_seconds, :elevation_meters, :pace_display, :athlete_photo
        )
        ON CONFLICT(dedup_key) DO UPDATE SET
            activity_id=COALESCE(excluded.activity_id, activities.activity_id),
            athlete_id=COALESCE(excluded.athlete_id, activities.athlete_id),
            athlete_name=excluded.athlete_name,
            full_name=excluded.full_name,
            name=excluded.name,
            sport_type=excluded.sport_type,
            activity_date=CASE WHEN excluded.date_estimated = 1 THEN activities.activity_date ELSE excluded.activity_date END,
            activity_day=CASE WHEN excluded.date_estimated = 1 THEN activities.activity_day ELSE excluded.activity_day END,
            date_estimated=MIN(activities.date_estimated, excluded.date_estimated),
            distance_km=excluded.distance_km,
            moving_time_seconds=excluded.moving_time_seconds,
            elapsed_time_seconds=excluded.elapsed_time_seconds,
            elevation_meters=excluded.elevation_meters,
            pace_display=excluded.pace_display,
            athlete_photo=COALESCE(excluded.athlete_photo, activities.athlete_photo),
            updated_at=datetime('now')
    """, values)
    conn.commit()
    return "updated" if exists else "inserted"


def count_activities(source: Optional[str] = None) -> int:
    conn = get_conn()
    cur = conn.cursor()
    if source:
        cur.execute("SELECT COUNT(*) FROM activities WHERE source = ?", (source,))
    else:
        cur.execute("SELECT COUNT(*) FROM activities")
    n = cur.fetchone()[0]
    conn.close()
    return int(n)


def fetch_activities(since: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = get_conn()
    cur = conn.cursor()
    query = """
        SELECT dedup_key, source, activity_id, athlete_id, athlete_name, full_name, name, sport_type,
               activity_date, activity_day, date_estimated, distance_km, moving_time_seconds,
               elapsed_time_seconds, elevation_meters, pace_display, athlete_photo
        FROM activities
    """
    params: tuple = ()
    if since:
        query += " WHERE activity_day >= ?"
        params = (since,)
    query += " ORDER BY activity_date DESC, id DESC"
    cur.execute(query, params)
    rows = cur.fetchall()
    conn.close()
    return [dict(r) for r in rows]
