"""
End-to-end sync passes against the fake Strava endpoints and a temp database.
"""
import time

import pytest

import config
import db_store
import services
from conftest import run_payload, token_payload


def _store_athlete(athlete_id, access, refresh, expires_at, firstname="Ana", lastname="Souza"):
    db_store.save_athlete_tokens(athlete_id, access, refresh, expires_at, "read,activity:read_all", firstname, lastname)


@pytest.fixture
def club_feed(fake_strava, monkeypatch):
    monkeypatch.setattr(config, "STRAVA_REFRESH_TOKEN_MASTER", "master-refresh")
    fake_strava.token_responses["master-refresh"] = token_payload("club-access", "master-refresh")
    fake_strava.club_activities = [
        run_payload(start=None, firstname="Ana", lastname="Souza", distance=10000.0, moving_time=3600),
        run_payload(start=None, firstname="Bruno", lastname="Lima", distance=5000.0, moving_time=1500),
        run_payload(start=None, firstname="Carla", lastname="Dias", type="Ride"),
        run_payload(start="2026-01-15T07:00:00Z", firstname="Davi", lastname="Reis"),
    ]
    return fake_strava


class TestClubSync:
    def test_club_pass_upserts_runs_after_cutoff(self, club_feed):
        summary = services.run_sync(["club"], start_date="2026-02-01")

        assert summary.club.fetched == 4
        assert summary.club.inserted == 2
        assert summary.club.skipped == 2
        assert summary.upserted == 2
        assert db_store.count_activities("club") == 2
        url, params = club_feed.gets[0]
        assert "/clubs/1877008/activities" in url

    def test_repeated_pass_does_not_duplicate(self, club_feed):
        services.run_sync(["club"], start_date="2026-02-01")
        second = services.run_sync(["club"], start_date="2026-02-01")

        assert second.club.inserted == 0
        assert second.club.updated == 2
        assert db_store.count_activities() == 2

    def test_bad_record_is_skipped_not_fatal(self, club_feed):
        club_feed.club_activities.append(run_payload(start=None, firstname="Eva", distance="not-a-number"))

        summary = services.run_sync(["club"], start_date="2026-02-01")

        assert summary.club.failed == 1
        assert summary.club.inserted == 2

    def test_club_token_falls_back_to_stored_athlete(self, fake_strava, monkeypatch):
        monkeypatch.setattr(config, "STRAVA_REFRESH_TOKEN_MASTER", None)
        _store_athlete(42, "ana-access", "ana-refresh", int(time.time()) + 3600)
        fake_strava.club_activities = [run_payload(start=None)]

        summary = services.run_sync(["club"])

        assert summary.club.inserted == 1
        assert fake_strava.posts == []

    def test_club_without_any_token_is_a_config_error(self, fake_strava):
        with pytest.raises(config.ConfigError):
            services.run_sync(["club"])

    def test_club_requires_club_id(self, club_feed, monkeypatch):
        monkeypatch.setattr(config, "STRAVA_CLUB_ID", None)
        with pytest.raises(config.ConfigError, match="STRAVA_CLUB_ID"):
            services.run_sync(["club"])

    def test_malformed_records_do_not_abort_the_pass(self, club_feed):
        club_feed.club_activities = [
            run_payload(start=None),
            {"type": "Run", "distance": 3000.0, "moving_time": 900, "athlete": "redacted"},
            run_payload(start=None, firstname=7, lastname="Reis"),
            "not-an-activity",
        ]

        summary = services.run_sync(["club"])

        assert summary.club.fetched == 4
        assert summary.club.failed == 3
        assert summary.club.inserted == 1
        assert db_store.count_activities() == 1

    def test_rotated_master_token_is_kept_for_next_pass(self, club_feed):
        club_feed.token_responses["master-refresh"] = token_payload("club-access", "master-rotated")
        club_feed.token_responses["master-rotated"] = token_payload("club-access-2", "master-rotated")

        services.run_sync(["club"])
        services.run_sync(["club"])

        assert [p["refresh_token"] for p in club_feed.posts] == ["master-refresh", "master-rotated"]
        assert db_store.get_setting(services.MASTER_TOKEN_KEY) == "master-rotated"

    def test_new_master_token_in_environment_wins_over_stored_one(self, club_feed):
        db_store.save_setting(services.MASTER_SEED_KEY, "previous-master")
        db_store.save_setting(services.MASTER_TOKEN_KEY, "stale-rotated")

        services.run_sync(["club"])

        assert club_feed.posts[0]["refresh_token"] == "master-refresh"
        assert db_store.get_setting(services.MASTER_SEED_KEY) == "master-refresh"


class TestAthleteSync:
    def test_expiring_token_is_refreshed_and_persisted(self, fake_strava):
        _store_athlete(42, "old-access", "old-refresh", int(time.time()) + 20)
        fake_strava.token_responses["old-refresh"] = token_payload("new-access", "new-refresh")
        fake_strava.athlete_activities["new-access"] = [
            run_payload(activity_id=1001, athlete_id=42, firstname=None, lastname=None),
        ]

        summary = services.run_sync(["athlete"])

        assert summary.athletes_synced == [42]
        assert summary.athlete.inserted == 1
        record = db_store.get_athlete_tokens(42)
        assert record["access_token"] == "new-access"
        assert record["refresh_token"] == "new-refresh"
        stored = db_store.fetch_activities()[0]
        assert stored["dedup_key"] == "id:1001"
        assert stored["athlete_name"] == "Ana S."

    def test_failing_athlete_does_not_block_others(self, fake_strava):
        _store_athlete(1, "a1", "revoked", None, firstname="Bruno", lastname="Lima")
        _store_athlete(2, "a2", "r2", int(time.time()) + 3600)
        fake_strava.athlete_activities["a2"] = [
            run_payload(activity_id=2001, athlete_id=2),
            run_payload(activity_id=2002, athlete_id=2),
        ]

        summary = services.run_sync(["athlete"])

        assert summary.athletes_synced == [2]
        assert list(summary.athletes_failed) == [1]
        assert summary.athlete.inserted == 2

    def test_cutoff_passed_as_after(self, fake_strava):
        _store_athlete(2, "a2", "r2", int(time.time()) + 3600)
        services.run_sync(["athlete"], start_date="2026-02-01")
        _, params = fake_strava.gets[0]
        assert params["after"] == 1769904000

    def test_malformed_feed_item_does_not_fail_the_athlete(self, fake_strava):
        _store_athlete(2, "a2", "r2", int(time.time()) + 3600)
        fake_strava.athlete_activities["a2"] = [
            "junk",
            {"id": 3000, "type": "Run", "athlete": "redacted"},
            run_payload(activity_id=3001, athlete_id=2),
        ]

        summary = services.run_sync(["athlete"])

        assert summary.athletes_synced == [2]
        assert summary.athletes_failed == {}
        assert summary.athlete.failed == 2
        assert summary.athlete.inserted == 1

    def test_club_and_athlete_feeds_share_the_table(self, club_feed):
        _store_athlete(42, "ana-access", "ana-refresh", int(time.time()) + 3600)
        club_feed.athlete_activities["ana-access"] = [run_payload(activity_id=555, athlete_id=42)]

        summary = services.run_sync(start_date="2026-02-01")

        assert summary.club.upserted == 2
        assert summary.athlete.upserted == 1
        assert summary.as_dict()["upserted"] == 3
        assert db_store.count_activities() == 3


class TestConnect:
    def test_connect_persists_credentials(self, fake_strava):
        fake_strava.code_responses["the-code"] = token_payload(
            "a1", "r1", athlete={"id": 77, "firstname": "Gabi", "lastname": "Rocha"}
        )

        athlete = services.connect_athlete("the-code", scope="read,activity:read_all")

        assert athlete["athlete_id"] == 77
        record = db_store.get_athlete_tokens(77)
        assert record["display_name"] == "Gabi Rocha"
        assert record["scope"] == "read,activity:read_all"

    def test_missing_code(self):
        with pytest.raises(ValueError):
            services.connect_athlete("")


def test_unknown_source_rejected():
    with pytest.raises(ValueError):
        services.run_sync(["garmin"])


def test_leaderboard_reads_stored_runs(club_feed):
    services.run_sync(["club"], start_date="2026-02-01")
    board = services.leaderboard("2026-02-01")
    assert list(board["athlete"]) == ["Ana Souza", "Bruno Lima"]
    assert list(board["rank"]) == [1, 2]


def test_sync_pass_uses_one_connection(club_feed, monkeypatch):
    _store_athlete(42, "old-access", "old-refresh", int(time.time()) + 10)
    club_feed.token_responses["old-refresh"] = token_payload("new-access", "new-refresh")
    club_feed.athlete_activities["new-access"] = [run_payload(activity_id=4001, athlete_id=42)]

    opened = []
    real_get_conn = db_store.get_conn

    def counting_get_conn():
        conn = real_get_conn()
        opened.append(conn)
        return conn

    monkeypatch.setattr(db_store, "get_conn", counting_get_conn)

    summary = services.run_sync()

    assert len(opened) == 1
    assert summary.athletes_synced == [42]
    monkeypatch.setattr(db_store, "get_conn", real_get_conn)
    assert db_store.get_athlete_tokens(42)["refresh_token"] == "new-refresh"
