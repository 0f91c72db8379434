"""
Shared fixtures: every test runs against a throwaway SQLite file and a fake
Strava HTTP layer patched in at strava.requests.
"""
import time
from typing import Any

import pytest
import requests

import config
import db_store
import strava


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self) -> Any:
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeStrava:
    """
    Minimal stand-in for the Strava endpoints used by the service.

    token_responses: refresh_token -> token payload (or an int status code to fail)
    code_responses:  authorization code -> token payload
    club_activities: list served page by page from /clubs/<id>/activities
    athlete_activities: access_token -> list served from /athlete/activities
    """

    def __init__(self):
        self.token_responses: dict[str, Any] = {}
        self.code_responses: dict[str, Any] = {}
        self.club_activities: list[dict[str, Any]] = []
        self.athlete_activities: dict[str, Any] = {}
        self.posts: list[dict[str, Any]] = []
        self.gets: list[tuple[str, dict[str, Any]]] = []

    def post(self, url, data=None, timeout=None):
        self.posts.append(dict(data or {}))
        if data["grant_type"] == "authorization_code":
            payload = self.code_responses.get(data["code"], 400)
        else:
            payload = self.token_responses.get(data["refresh_token"], 401)
        if isinstance(payload, int):
            return FakeResponse({"message": "Bad Request"}, status_code=payload)
        return FakeResponse(payload)

    def get(self, url, headers=None, params=None, timeout=None):
        params = dict(params or {})
        self.gets.append((url, params))
        token = headers["Authorization"].split(" ", 1)[1]
        if "/clubs/" in url:
            items = self.club_activities
        else:
            items = self.athlete_activities.get(token, [])
        if isinstance(items, int):
            return FakeResponse({"message": "Authorization Error"}, status_code=items)
        page, per_page = int(params["page"]), int(params["per_page"])
        start = (page - 1) * per_page
        return FakeResponse(items[start:start + per_page])


def token_payload(access: str, refresh: str, expires_in: int = 6 * 3600, athlete: dict | None = None) -> dict:
    payload = {
        "token_type": "Bearer",
        "access_token": access,
        "refresh_token": refresh,
        "expires_at": int(time.time()) + expires_in,
        "expires_in": expires_in,
    }
    if athlete is not None:
        payload["athlete"] = athlete
    return payload


def run_payload(activity_id=None, firstname="Ana", lastname="Souza", athlete_id=None,
                start="2026-02-10T06:30:00Z", distance=10000.0, moving_time=3600, **extra) -> dict:
    athlete = {"firstname": firstname, "lastname": lastname}
    if athlete_id is not None:
        athlete["id"] = athlete_id
    raw = {
        "name": extra.pop("name", "Morning Run"),
        "type": extra.pop("type", "Run"),
        "distance": distance,
        "moving_time": moving_time,
        "elapsed_time": extra.pop("elapsed_time", moving_time + 60),
        "total_elevation_gain": extra.pop("total_elevation_gain", 42.0),
        "athlete": athlete,
    }
    if activity_id is not None:
        raw["id"] = activity_id
    if start is not None:
        raw["start_date_local"] = start
    raw.update(extra)
    return raw


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db_store, "DB_PATH", str(tmp_path / "runboard-test.db"))
    db_store.init_db()
    yield db_store.DB_PATH


@pytest.fixture(autouse=True)
def strava_config(monkeypatch):
    monkeypatch.setattr(config, "STRAVA_CLIENT_ID", "12345")
    monkeypatch.setattr(config, "STRAVA_CLIENT_SECRET", "shh")
    monkeypatch.setattr(config, "STRAVA_REDIRECT_URI", "http://localhost:3000/strava/callback")
    monkeypatch.setattr(config, "STRAVA_REFRESH_TOKEN_MASTER", None)
    monkeypatch.setattr(config, "STRAVA_CLUB_ID", "1877008")
    monkeypatch.setattr(config, "START_DATE", None)
    monkeypatch.setattr(config, "PER_PAGE", 50)
    monkeypatch.setattr(config, "MAX_PAGES", 5)


@pytest.fixture
def fake_strava(monkeypatch):
    fake = FakeStrava()
    monkeypatch.setattr(strava.requests, "post", fake.post)
    monkeypatch.setattr(strava.requests, "get", fake.get)
    return fake
