"""
Ledger and survey loading.

The ledger export stores local wall-clock times at a fixed offset from UTC;
the survey platform stores UTC. Both come out of here tz-aware in UTC so the
matcher can compare them directly.
"""

import pandas as pd

LEDGER_COLS = ["donor_id", "amount", "created_at", "age", "gender"]
SURVEY_COLS = ["response_id", "responded_at", "response"]


def _require(df, cols, name):
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{name} is missing columns: {missing}")


def to_utc(ts, utc_offset_hours=0):
    """Naive local timestamps at a fixed offset -> tz-aware UTC."""
    ts = pd.to_datetime(ts)
    if ts.dt.tz is not None:
        return ts.dt.tz_convert("UTC")
    return (ts - pd.Timedelta(hours=utc_offset_hours)).dt.tz_localize("UTC")


def prepare_ledger(df, utc_offset_hours=0):
    _require(df, LEDGER_COLS, "ledger")
    df = df.copy()
    df["donor_id"] = df["donor_id"].astype(str)
    df["amount"] = pd.to_numeric(df["amount"], errors="raise").astype(float)
    df["created_at"] = to_utc(df["created_at"], utc_offset_hours)
    df["age"] = pd.to_numeric(df["age"], errors="coerce")
    return df.reset_index(drop=True)


def prepare_survey(df):
    _require(df, SURVEY_COLS, "survey")
    df = df.copy()
    df["response_id"] = df["response_id"].astype(str)
    if df["response_id"].duplicated().any():
        dupes = df.loc[df["response_id"].duplicated(), "response_id"].unique()[:5]
        raise ValueError(f"survey response_id is not unique, e.g. {list(dupes)}")
    df["responded_at"] = to_utc(df["responded_at"])
    df["response"] = df["response"].astype(str).str.strip()
    if "age" in df.columns:
        df["age"] = pd.to_numeric(df["age"], errors="coerce")
    return df.reset_index(drop=True)


def load_ledger(path, utc_offset_hours=0):
    return prepare_ledger(pd.read_csv(path), utc_offset_hours)


def load_survey(path):
    return prepare_survey(pd.read_csv(path))
