from __future__ import annotations

import logging
from typing import Any, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

import services
from strava import build_auth_url

logger = logging.getLogger(__name__)

app = FastAPI(title="Run Board API")


class SourceSummary(BaseModel):
    fetched: int
    inserted: int
    updated: int
    skipped: int
    failed: int
    upserted: int


class SyncResponse(BaseModel):
    status: str
    cutoff: Optional[str] = None
    upserted: int
    club: SourceSummary
    athlete: SourceSummary
    athletes_synced: list[int]
    athletes_failed: dict[str, str]


class AthleteConnected(BaseModel):
    status: str
    athlete_id: int
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[int] = None


_SOURCE_CHOICES = {
    "all": services.SOURCES,
    "club": ("club",),
    "athlete": ("athlete",),
}


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Request %s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


def _serialize_frame(frame: pd.DataFrame) -> list[dict[str, Any]]:
    if frame.empty:
        return []
    data = frame.astype(object).where(pd.notna(frame), None)
    return data.to_dict(orient="records")


@app.get("/")
def health() -> dict[str, Any]:
    return {"status": "ok", "service": "runboard"}


@app.get("/strava/authorize")
def get_strava_authorize(state: Optional[str] = None) -> RedirectResponse:
    return RedirectResponse(build_auth_url(state=state))


@app.get("/strava/callback", response_model=AthleteConnected)
def get_strava_callback(
    code: Optional[str] = None,
    scope: Optional[str] = None,
    error: Optional[str] = None,
) -> dict[str, Any]:
    if error:
        raise HTTPException(status_code=400, detail=f"Strava authorization failed: {error}")
    try:
        athlete = services.connect_athlete(code or "", scope=scope)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "connected", **athlete}


def _run_sync(source: str, start_date: Optional[str]) -> dict[str, Any]:
    sources = _SOURCE_CHOICES.get(source)
    if sources is None:
        raise HTTPException(status_code=400, detail=f"Unknown source {source!r}; expected all, club or athlete.")
    try:
        summary = services.run_sync(sources, start_date=start_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return summary.as_dict()


@app.get("/sync", response_model=SyncResponse)
def get_sync(source: str = "all", start_date: Optional[str] = None) -> dict[str, Any]:
    return _run_sync(source, start_date)


@app.post("/sync", response_model=SyncResponse)
def post_sync(source: str = "all", start_date: Optional[str] = None) -> dict[str, Any]:
    return _run_sync(source, start_date)


@app.get("/atualizar-clube", response_model=SyncResponse)
def get_atualizar_clube() -> dict[str, Any]:
    return _run_sync("club", None)


@app.get("/athletes")
def get_athletes() -> dict[str, Any]:
    return {"athletes": services.list_authorized_athletes()}


@app.get("/leaderboard")
def get_leaderboard(since: Optional[str] = None) -> dict[str, Any]:
    try:
        board = services.leaderboard(since)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"since": since, "leaderboard": _serialize_frame(board)}
