import pandas as pd

from normalize import format_pace

LEADERBOARD_COLUMNS = [
    "rank",
    "athlete",
    "athlete_name",
    "runs",
    "total_km",
    "total_moving_seconds",
    "total_elevation_m",
    "avg_pace",
    "athlete_photo",
]


def activities_to_leaderboard(activities_df: pd.DataFrame) -> pd.DataFrame:
    """
    activities_df columns: full_name, athlete_name, distance_km, moving_time_seconds,
                           elevation_meters, athlete_photo
    returns one row per athlete ranked by total_km (rank 1 = most km)
    """
    if activities_df.empty:
        return pd.DataFrame(columns=LEADERBOARD_COLUMNS)

    d = activities_df.copy()
    d["athlete"] = d["full_name"].fillna("").astype(str).str.strip()
    d.loc[d["athlete"] == "", "athlete"] = d["athlete_name"].fillna("").astype(str)
    for col in ["distance_km", "moving_time_seconds", "elevation_meters"]:
        d[col] = pd.to_numeric(d[col], errors="coerce").fillna(0)

    out = (
        d.groupby("athlete", as_index=False)
         .agg(
            athlete_name=("athlete_name", "first"),
            runs=("distance_km", "count"),
            total_km=("distance_km", "sum"),
            total_moving_seconds=("moving_time_seconds", "sum"),
            total_elevation_m=("elevation_meters", "sum"),
            athlete_photo=("athlete_photo", "first"),
         )
    )
    out["total_km"] = out["total_km"].round(2)
    out["total_moving_seconds"] = out["total_moving_seconds"].astype(int)
    out["avg_pace"] = [
        format_pace(secs, km) for secs, km in zip(out["total_moving_seconds"], out["total_km"])
    ]
    out = out.sort_values(["total_km", "runs"], ascending=[False, False]).reset_index(drop=True)
    out["rank"] = range(1, len(out) + 1)
    return out[LEADERBOARD_COLUMNS]
