from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import requests

import config

logger = logging.getLogger(__name__)

AUTH_URL = "https://www.strava.com/oauth/authorize"
TOKEN_URL = "https://www.strava.com/oauth/token"
API_BASE = "https://www.strava.com/api/v3"

DEFAULT_SCOPE = "read,activity:read_all"
REFRESH_LEEWAY_SECONDS = 60
REQUEST_TIMEOUT = 20


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: Optional[int]
    athlete_id: Optional[int] = None
    scope: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict[str, Any], fallback: Optional["TokenSet"] = None) -> "TokenSet":
        # refresh responses omit the athlete block and may omit scope
        athlete = data.get("athlete") or {}
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or (fallback.refresh_token if fallback else ""),
            expires_at=int(expires_at) if expires_at is not None else None,
            athlete_id=athlete.get("id") or (fallback.athlete_id if fallback else None),
            scope=data.get("scope") or (fallback.scope if fallback else None),
            firstname=athlete.get("firstname") or (fallback.firstname if fallback else None),
            lastname=athlete.get("lastname") or (fallback.lastname if fallback else None),
        )


def _client_credentials() -> dict[str, str]:
    return {
        "client_id": config.require(config.STRAVA_CLIENT_ID, "STRAVA_CLIENT_ID"),
        "client_secret": config.require(config.STRAVA_CLIENT_SECRET, "STRAVA_CLIENT_SECRET"),
    }


def build_auth_url(state: Optional[str] = None, scope: str = DEFAULT_SCOPE) -> str:
    # activity:read_all is needed to see "Only Me" activities
    params = {
        "client_id": config.require(config.STRAVA_CLIENT_ID, "STRAVA_CLIENT_ID"),
        "redirect_uri": config.require(config.STRAVA_REDIRECT_URI, "STRAVA_REDIRECT_URI"),
        "response_type": "code",
        "approval_prompt": "auto",
        "scope": scope,
    }
    if state:
        params["state"] = state
    return f"{AUTH_URL}?{urlencode(params)}"


def exchange_code_for_token(code: str) -> TokenSet:
    r = requests.post(TOKEN_URL, data={
        **_client_credentials(),
        "code": code,
        "grant_type": "authorization_code",
    }, timeout=REQUEST_TIMEOUT)
    r.raise_for_status()
    return TokenSet.from_response(r.json())


def refresh_access_token(refresh_token: str, current: Optional[TokenSet] = None) -> TokenSet:
    r = requests.post(TOKEN_URL, data={
        **_client_credentials(),
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }, timeout=REQUEST_TIMEOUT)
    r.raise_for_status()
    return TokenSet.from_response(r.json(), fallback=current)


def token_needs_refresh(expires_at: Optional[int], now: Optional[float] = None) -> bool:
    if not expires_at:
        return True
    now = time.time() if now is None else now
    return int(expires_at) - now <= REFRESH_LEEWAY_SECONDS


def ensure_fresh_token(tokens: TokenSet, now: Optional[float] = None) -> tuple[TokenSet, bool]:
    """
    Returns (tokens, refreshed). Refreshes when the stored expiry is missing
    or falls within REFRESH_LEEWAY_SECONDS of now.
    """
    if not token_needs_refresh(tokens.expires_at, now):
        return tokens, False

    logger.info("Refreshing Strava token for athlete %s", tokens.athlete_id)
    return refresh_access_token(tokens.refresh_token, current=tokens), True


def _get(path: str, access_token: str, params: dict[str, Any]) -> list[dict[str, Any]]:
    headers = {"Authorization": f"Bearer {access_token}"}
    r = requests.get(f"{API_BASE}{path}", headers=headers, params=params, timeout=REQUEST_TIMEOUT)
    r.raise_for_status()
    return r.json()


def list_club_activities(access_token: str, club_id: str, page: int = 1, per_page: int = 50) -> list[dict[str, Any]]:
    return _get(f"/clubs/{club_id}/activities", access_token, {"page": page, "per_page": per_page})


def list_athlete_activities(
    access_token: str,
    page: int = 1,
    per_page: int = 50,
    after_epoch: Optional[int] = None,
) -> list[dict[str, Any]]:
    params: dict[str, Any] = {"page": page, "per_page": per_page}
    if after_epoch:
        params["after"] = after_epoch
    return _get("/athlete/activities", access_token, params)


def fetch_pages(
    fetch_page: Callable[[int, int], list[dict[str, Any]]],
    per_page: int,
    max_pages: int,
) -> list[dict[str, Any]]:
    """Accumulate pages until a short page (end of data) or max_pages."""
    items: list[dict[str, Any]] = []
    for page in range(1, max_pages + 1):
        batch = fetch_page(page, per_page)
        items.extend(batch)
        logger.debug("Fetched page %s with %s items", page, len(batch))
        if len(batch) < per_page:
            break
    return items
