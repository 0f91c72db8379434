from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

import config
import db_store
from api import app as api_app

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    config.configure_logging()
    db_store.init_db()
    logger.info("Run Board ready (db=%s, club=%s)", db_store.DB_PATH, config.STRAVA_CLUB_ID)
    yield


app = FastAPI(title="Run Board", lifespan=lifespan)

app.mount("/", api_app)


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT)
