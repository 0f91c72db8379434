import logging
import os

from dotenv import load_dotenv

load_dotenv()


class ConfigError(RuntimeError):
    """Raised when a required setting is missing from the environment."""


STRAVA_CLIENT_ID = os.environ.get("STRAVA_CLIENT_ID")
STRAVA_CLIENT_SECRET = os.environ.get("STRAVA_CLIENT_SECRET")
STRAVA_REDIRECT_URI = os.environ.get("STRAVA_REDIRECT_URI")
STRAVA_REFRESH_TOKEN_MASTER = os.environ.get("STRAVA_REFRESH_TOKEN_MASTER")
STRAVA_CLUB_ID = os.environ.get("STRAVA_CLUB_ID")

START_DATE = os.environ.get("RUNBOARD_START_DATE")
PER_PAGE = int(os.environ.get("RUNBOARD_PER_PAGE", "50"))
MAX_PAGES = int(os.environ.get("RUNBOARD_MAX_PAGES", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
PORT = int(os.environ.get("PORT", "3000"))


def require(value: str | None, env_var: str) -> str:
    if not value:
        raise ConfigError(f"{env_var} is not set.")
    return value


def configure_logging(level: str | None = None) -> None:
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(handler)
