import streamlit as st

# -------------------------------------------------
# Streamlit app config (MUST be first Streamlit call)
# -------------------------------------------------
st.set_page_config(
    page_title="Run Board | Club leaderboard",
    layout="wide",
)

import pandas as pd
from datetime import date

import config
import db_store as db
import services
from normalize import parse_cutoff
from strava import build_auth_url

config.configure_logging()
db.init_db()

st.title("Run Board – Club leaderboard")


# -------------------------------------------------------------------
# Sidebar: period + sync
# -------------------------------------------------------------------
st.sidebar.header("Period")
default_since = parse_cutoff(config.START_DATE)
since = st.sidebar.date_input(
    "Runs since",
    value=default_since.date() if default_since else date(date.today().year, 1, 1),
)

st.sidebar.divider()
st.sidebar.subheader("Strava")
st.sidebar.caption(f"Authorized athletes: {len(services.list_authorized_athletes())}")
if config.STRAVA_CLIENT_ID and config.STRAVA_REDIRECT_URI:
    st.sidebar.link_button("Authorize an athlete", build_auth_url())

if st.sidebar.button("Sync now"):
    summary = services.run_sync(start_date=since.isoformat())
    st.sidebar.success(f"Upserted {summary.upserted} activities.")
    if summary.athletes_failed:
        st.sidebar.warning(f"{len(summary.athletes_failed)} athlete(s) failed to sync.")
    st.rerun()


# -------------------------------------------------------------------
# Leaderboard
# -------------------------------------------------------------------
board = services.leaderboard(since.isoformat())

col1, col2, col3 = st.columns(3)
col1.metric("Athletes", len(board))
col2.metric("Runs", int(board["runs"].sum()) if not board.empty else 0)
col3.metric("Total km", f"{board['total_km'].sum():.1f}" if not board.empty else "0.0")

st.subheader("Leaderboard")
if board.empty:
    st.caption("No runs stored for this period yet.")
else:
    st.dataframe(
        board.drop(columns=["athlete_photo"]),
        use_container_width=True,
        hide_index=True,
    )

st.divider()
st.subheader("Recent runs")
recent = pd.DataFrame(db.fetch_activities(since=since.isoformat()))
if recent.empty:
    st.caption("Nothing synced yet.")
else:
    st.dataframe(
        recent[["activity_date", "athlete_name", "name", "distance_km", "pace_display", "elevation_meters", "source"]],
        use_container_width=True,
        hide_index=True,
    )
