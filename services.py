from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import pandas as pd

import config
import db_store as db
from normalize import SOURCE_ATHLETE, SOURCE_CLUB, normalize_activity, parse_cutoff
from ranking import activities_to_leaderboard
from strava import (
    TokenSet,
    ensure_fresh_token,
    exchange_code_for_token,
    fetch_pages,
    list_athlete_activities,
    list_club_activities,
    refresh_access_token,
)

logger = logging.getLogger(__name__)

SOURCES = (SOURCE_CLUB, SOURCE_ATHLETE)

MASTER_SEED_KEY = "club_master_refresh_seed"
MASTER_TOKEN_KEY = "club_master_refresh_token"


@dataclass
class SourceCounts:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def upserted(self) -> int:
        return self.inserted + self.updated

    def add(self, other: "SourceCounts") -> None:
        self.fetched += other.fetched
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed


@dataclass
class SyncSummary:
    cutoff: Optional[str]
    club: SourceCounts = field(default_factory=SourceCounts)
    athlete: SourceCounts = field(default_factory=SourceCounts)
    athletes_synced: list[int] = field(default_factory=list)
    athletes_failed: dict[int, str] = field(default_factory=dict)

    @property
    def upserted(self) -> int:
        return self.club.upserted + self.athlete.upserted

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "cutoff": self.cutoff,
            "upserted": self.upserted,
            "club": {**asdict(self.club), "upserted": self.club.upserted},
            "athlete": {**asdict(self.athlete), "upserted": self.athlete.upserted},
            "athletes_synced": self.athletes_synced,
            "athletes_failed": {str(k): v for k, v in self.athletes_failed.items()},
        }


def _tokens_from_record(record: dict[str, Any]) -> TokenSet:
    return TokenSet(
        access_token=record["access_token"],
        refresh_token=record["refresh_token"],
        expires_at=record.get("expires_at"),
        athlete_id=record.get("athlete_id"),
        scope=record.get("scope"),
        firstname=record.get("firstname"),
        lastname=record.get("lastname"),
    )


def _persist_tokens(tokens: TokenSet, conn: Optional[sqlite3.Connection] = None) -> None:
    if tokens.athlete_id is None:
        raise ValueError("Strava token response did not include an athlete id.")
    db.save_athlete_tokens(
        tokens.athlete_id,
        tokens.access_token,
        tokens.refresh_token,
        tokens.expires_at,
        tokens.scope,
        tokens.firstname,
        tokens.lastname,
        conn=conn,
    )


def connect_athlete(code: str, scope: Optional[str] = None) -> dict[str, Any]:
    if not code:
        raise ValueError("Missing Strava authorization code.")
    tokens = exchange_code_for_token(code)
    if scope and not tokens.scope:
        tokens.scope = scope
    _persist_tokens(tokens)
    logger.info("Authorized athlete %s (%s %s)", tokens.athlete_id, tokens.firstname, tokens.lastname)
    return {
        "athlete_id": tokens.athlete_id,
        "firstname": tokens.firstname,
        "lastname": tokens.lastname,
        "scope": tokens.scope,
        "expires_at": tokens.expires_at,
    }


def fresh_tokens_for_athlete(record: dict[str, Any], conn: Optional[sqlite3.Connection] = None) -> TokenSet:
    tokens, refreshed = ensure_fresh_token(_tokens_from_record(record))
    if refreshed:
        _persist_tokens(tokens, conn=conn)
    return tokens


def _master_refresh_token(conn: Optional[sqlite3.Connection] = None) -> str:
    """
    Strava rotates refresh tokens, so the latest one is kept in settings.
    A changed STRAVA_REFRESH_TOKEN_MASTER replaces whatever was stored.
    """
    seed = config.STRAVA_REFRESH_TOKEN_MASTER
    if db.get_setting(MASTER_SEED_KEY, conn=conn) == seed:
        return db.get_setting(MASTER_TOKEN_KEY, conn=conn) or seed
    return seed


def club_access_token(conn: Optional[sqlite3.Connection] = None) -> str:
    """
    The club feed only needs one authorized viewer: the master refresh token
    from the environment when set, otherwise the first stored athlete.
    """
    if config.STRAVA_REFRESH_TOKEN_MASTER:
        refresh_token = _master_refresh_token(conn)
        tokens = refresh_access_token(refresh_token)
        if tokens.refresh_token and tokens.refresh_token != refresh_token:
            logger.warning("Strava rotated the club master refresh token; storing the new one")
        db.save_setting(MASTER_SEED_KEY, config.STRAVA_REFRESH_TOKEN_MASTER, conn=conn)
        db.save_setting(MASTER_TOKEN_KEY, tokens.refresh_token or refresh_token, conn=conn)
        return tokens.access_token

    athletes = db.list_athletes(conn=conn)
    if not athletes:
        raise config.ConfigError(
            "STRAVA_REFRESH_TOKEN_MASTER is not set and no athlete has authorized the app."
        )
    return fresh_tokens_for_athlete(athletes[0], conn=conn).access_token


def _store_batch(
    conn: sqlite3.Connection,
    raw_activities: Iterable[Any],
    source: str,
    cutoff: Optional[datetime],
    now: datetime,
    prepare: Optional[Callable[[dict[str, Any]], None]] = None,
) -> SourceCounts:
    counts = SourceCounts()
    for raw in raw_activities:
        counts.fetched += 1
        try:
            if prepare is not None:
                prepare(raw)
            row = normalize_activity(raw, source, cutoff=cutoff, now=now)
            if row is None:
                counts.skipped += 1
                continue
            outcome = db.upsert_activity(conn, row)
        except Exception:
            # one malformed payload must not abort the pass
            counts.failed += 1
            label = (raw.get("id") or raw.get("name")) if isinstance(raw, dict) else raw
            logger.exception("Skipping %s activity %s", source, label)
            continue
        if outcome == "inserted":
            counts.inserted += 1
        else:
            counts.updated += 1
        logger.debug("%s %s (%s)", outcome, row.dedup_key, row.athlete_name)
    return counts


def sync_club(conn: sqlite3.Connection, cutoff: Optional[datetime], now: datetime) -> SourceCounts:
    club_id = config.require(config.STRAVA_CLUB_ID, "STRAVA_CLUB_ID")
    access_token = club_access_token(conn)
    raw = fetch_pages(
        lambda page, per_page: list_club_activities(access_token, club_id, page=page, per_page=per_page),
        per_page=config.PER_PAGE,
        max_pages=config.MAX_PAGES,
    )
    logger.info("Club %s: fetched %s activities", club_id, len(raw))
    return _store_batch(conn, raw, SOURCE_CLUB, cutoff, now)


def sync_athlete(
    conn: sqlite3.Connection,
    record: dict[str, Any],
    cutoff: Optional[datetime],
    now: datetime,
) -> SourceCounts:
    tokens = fresh_tokens_for_athlete(record, conn=conn)
    after_epoch = int(pd.Timestamp(cutoff).timestamp()) if cutoff is not None else None
    raw = fetch_pages(
        lambda page, per_page: list_athlete_activities(
            tokens.access_token, page=page, per_page=per_page, after_epoch=after_epoch
        ),
        per_page=config.PER_PAGE,
        max_pages=config.MAX_PAGES,
    )
    logger.info("Athlete %s: fetched %s activities", record["athlete_id"], len(raw))

    # athlete feed payloads carry only the athlete id
    def fill_athlete(item: dict[str, Any]) -> None:
        athlete = item.get("athlete") or {}
        athlete["id"] = athlete.get("id") or record["athlete_id"]
        athlete["firstname"] = athlete.get("firstname") or record.get("firstname")
        athlete["lastname"] = athlete.get("lastname") or record.get("lastname")
        item["athlete"] = athlete

    return _store_batch(conn, raw, SOURCE_ATHLETE, cutoff, now, prepare=fill_athlete)


def run_sync(sources: Iterable[str] = SOURCES, start_date: Optional[str] = None) -> SyncSummary:
    sources = tuple(sources)
    unknown = [s for s in sources if s not in SOURCES]
    if unknown:
        raise ValueError(f"Unknown source(s): {', '.join(unknown)}")

    cutoff = parse_cutoff(start_date or config.START_DATE)
    now = datetime.now().replace(microsecond=0)
    summary = SyncSummary(cutoff=cutoff.strftime("%Y-%m-%d %H:%M:%S") if cutoff else None)

    conn = db.get_conn()
    try:
        if SOURCE_CLUB in sources:
            summary.club = sync_club(conn, cutoff, now)

        if SOURCE_ATHLETE in sources:
            for record in db.list_athletes(conn=conn):
                athlete_id = int(record["athlete_id"])
                try:
                    counts = sync_athlete(conn, record, cutoff, now)
                except Exception as exc:
                    # one athlete's revoked or failing token must not block the rest
                    logger.exception("Athlete %s sync failed", athlete_id)
                    summary.athletes_failed[athlete_id] = str(exc)
                    continue
                summary.athlete.add(counts)
                summary.athletes_synced.append(athlete_id)
    finally:
        conn.close()

    logger.info(
        "Sync finished: %s upserted (club %s, athlete %s)",
        summary.upserted,
        summary.club.upserted,
        summary.athlete.upserted,
    )
    return summary


def list_authorized_athletes() -> list[dict[str, Any]]:
    return [
        {
            "athlete_id": r["athlete_id"],
            "display_name": r["display_name"],
            "scope": r["scope"],
            "expires_at": r["expires_at"],
            "updated_at": r["updated_at"],
        }
        for r in db.list_athletes()
    ]


def leaderboard(since: Optional[str] = None) -> pd.DataFrame:
    cutoff = parse_cutoff(since or config.START_DATE)
    since_day = cutoff.strftime("%Y-%m-%d") if cutoff else None
    activities_df = pd.DataFrame(
        db.fetch_activities(since=since_day),
        columns=["full_name", "athlete_name", "distance_km", "moving_time_seconds", "elevation_meters", "athlete_photo"],
    )
    return activities_to_leaderboard(activities_df)
