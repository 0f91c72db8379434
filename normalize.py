"""
normalize.py

Maps raw Strava activity payloads (club feed or athlete feed) to flat
activity rows ready for db_store.upsert_activity.

Club feed payloads are usually redacted: no id, no start date, athlete
reduced to firstname/lastname. The dedup key degrades accordingly:

    id:<activity_id>                                  real id present
    ath:<athlete>:<start>:<km>:<seconds>              id missing, date present
    hash:<n>                                          id and date missing
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

RUN_TYPES = {"Run", "TrailRun", "VirtualRun"}

SOURCE_CLUB = "club"
SOURCE_ATHLETE = "athlete"

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ActivityRow:
    dedup_key: str
    source: str
    activity_id: Optional[int]
    athlete_id: Optional[int]
    athlete_name: str
    full_name: str
    name: str
    sport_type: str
    activity_date: str
    activity_day: str
    date_estimated: bool
    distance_km: float
    moving_time_seconds: int
    elapsed_time_seconds: int
    elevation_meters: float
    pace_display: str
    athlete_photo: Optional[str]


def is_run(raw: dict[str, Any]) -> bool:
    sport = raw.get("sport_type") or raw.get("type")
    return sport in RUN_TYPES


def _parse_datetime(value: str) -> datetime:
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1]
    parsed = datetime.fromisoformat(value)
    # compare in the activity's own wall-clock time
    return parsed.replace(tzinfo=None)


def parse_activity_date(raw: dict[str, Any]) -> Optional[datetime]:
    value = raw.get("start_date_local") or raw.get("start_date")
    if not value:
        return None
    return _parse_datetime(str(value))


def parse_cutoff(value: Optional[str | date | datetime]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return _parse_datetime(value)
    except ValueError as exc:
        raise ValueError(f"Invalid start date {value!r}; expected YYYY-MM-DD.") from exc


def format_pace(moving_time_seconds: float, distance_km: float) -> str:
    """Pace per kilometre as m:ss, both parts floored."""
    if distance_km <= 0:
        return "0:00"
    pace_seconds = moving_time_seconds / distance_km
    mins = int(pace_seconds // 60)
    secs = int(pace_seconds % 60)
    return f"{mins}:{secs:02d}"


def short_name(firstname: str, lastname: str) -> str:
    firstname = (firstname or "").strip()
    lastname = (lastname or "").strip()
    if lastname:
        return f"{firstname} {lastname[0]}."
    return firstname


def legacy_hash(text: str) -> int:
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def dedup_key(
    activity_id: Optional[int],
    athlete: str,
    firstname: str,
    start: Optional[datetime],
    distance_km: float,
    moving_time_seconds: int,
) -> str:
    if activity_id:
        return f"id:{int(activity_id)}"
    km = f"{distance_km:.2f}"
    if start is not None:
        athlete_part = _WHITESPACE.sub("", athlete)
        return f"ath:{athlete_part}:{start.isoformat(timespec='seconds')}:{km}:{int(moving_time_seconds)}"
    pseudo = _WHITESPACE.sub("", f"{firstname}{km}{int(moving_time_seconds)}")
    return f"hash:{legacy_hash(pseudo)}"


def normalize_activity(
    raw: dict[str, Any],
    source: str,
    cutoff: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[ActivityRow]:
    """
    Returns None for non-run activities and for dated activities before cutoff.
    Undated activities are kept and stamped with `now` (date_estimated=True).
    """
    if not is_run(raw):
        return None

    start = parse_activity_date(raw)
    if start is not None and cutoff is not None and start < cutoff:
        return None

    athlete = raw.get("athlete") or {}
    firstname = athlete.get("firstname") or ""
    lastname = athlete.get("lastname") or ""
    full_name = f"{firstname} {lastname}".strip()
    athlete_id = athlete.get("id")

    distance_km = float(raw.get("distance") or 0) / 1000.0
    moving_time = int(raw.get("moving_time") or 0)
    elapsed_time = int(raw.get("elapsed_time") or moving_time)
    elevation = float(raw.get("total_elevation_gain") or 0)

    key = dedup_key(
        raw.get("id"),
        str(athlete_id) if athlete_id else full_name,
        firstname,
        start,
        distance_km,
        moving_time,
    )

    stamp = start or (now or datetime.now()).replace(microsecond=0)
    return ActivityRow(
        dedup_key=key,
        source=source,
        activity_id=int(raw["id"]) if raw.get("id") else None,
        athlete_id=int(athlete_id) if athlete_id else None,
        athlete_name=short_name(firstname, lastname),
        full_name=full_name,
        name=raw.get("name") or "",
        sport_type=raw.get("sport_type") or raw.get("type") or "",
        activity_date=stamp.strftime("%Y-%m-%d %H:%M:%S"),
        activity_day=stamp.strftime("%Y-%m-%d"),
        date_estimated=start is None,
        distance_km=round(distance_km, 3),
        moving_time_seconds=moving_time,
        elapsed_time_seconds=elapsed_time,
        elevation_meters=elevation,
        pace_display=format_pace(moving_time, distance_km),
        athlete_photo=athlete.get("profile_medium") or athlete.get("profile") or None,
    )
