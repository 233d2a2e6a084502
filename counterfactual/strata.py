"""
Demographic strata
==================
Strata are (age band, gender) cells. Age bands are right-open intervals
over fixed breakpoints, so with the default breaks {0,20,30,...,70,inf}:

    [0, 20)  -> "<21"      [20, 30) -> "21-30"   ...   [70, inf) -> "71+"

Ledger and survey go through the same functions so the sample and the
population partition identically. Missing or negative ages and missing
genders become "unknown" and are left out of every proportion.
"""

import math
import warnings

import numpy as np
import pandas as pd

from .config import DEFAULTS, validate_age_breaks
from .errors import UnknownDemographic

UNKNOWN = "unknown"
DEFAULT_BREAKS = validate_age_breaks(DEFAULTS["age_breaks"])


def _fmt(x):
    return str(int(x)) if float(x).is_integer() else f"{x:g}"


def age_band_labels(breaks=DEFAULT_BREAKS):
    breaks = validate_age_breaks(breaks)
    labels = [f"<{_fmt(breaks[1] + 1)}"]
    for lo, hi in zip(breaks[1:-2], breaks[2:-1]):
        labels.append(f"{_fmt(lo + 1)}-{_fmt(hi)}")
    labels.append(f"{_fmt(breaks[-2] + 1)}+")
    return labels


def bucket_age(age, breaks=DEFAULT_BREAKS):
    """Age (scalar or array-like) -> band label, UNKNOWN when missing/negative."""
    breaks = validate_age_breaks(breaks)
    labels = age_band_labels(breaks)
    scalar = np.ndim(age) == 0
    vals = pd.to_numeric(pd.Series([age] if scalar else list(age)), errors="coerce")
    vals = vals.where(vals >= 0)
    bands = pd.cut(vals, bins=list(breaks), right=False, labels=labels)
    out = bands.astype(object).where(bands.notna(), UNKNOWN).to_numpy()
    if scalar:
        return out[0]
    index = age.index if isinstance(age, pd.Series) else None
    return pd.Series(out, index=index, name="age_band", dtype=object)


def normalize_gender(gender):
    s = pd.Series(gender, dtype=object)
    s = s.where(s.notna(), "").astype(str).str.strip().str.lower()
    return s.mask(s.isin(["", "nan", "none"]), UNKNOWN).rename("gender_group")


def stratum(age_band, gender):
    return (age_band, gender)


def add_strata(df, breaks=DEFAULT_BREAKS, age_col="age", gender_col="gender"):
    df = df.copy()
    df["age_band"] = bucket_age(df[age_col], breaks).to_numpy()
    df["gender_group"] = normalize_gender(df[gender_col]).to_numpy()
    return df


def count_unknown(df):
    """Unknown-demographic counts on a frame that has gone through add_strata."""
    age_unk = df["age_band"] == UNKNOWN
    gen_unk = df["gender_group"] == UNKNOWN
    return {
        "n": len(df),
        "unknown_age": int(age_unk.sum()),
        "unknown_gender": int(gen_unk.sum()),
        "excluded": int((age_unk | gen_unk).sum()),
    }


def stratum_index(breaks=DEFAULT_BREAKS, genders=("female", "male")):
    return pd.MultiIndex.from_product(
        [age_band_labels(breaks), sorted(genders)], names=["age_band", "gender_group"])


def known_genders(df):
    g = normalize_gender(df["gender"])
    return sorted(set(g) - {UNKNOWN})


def _proportions(df, index, what):
    counts = count_unknown(df)
    if counts["excluded"]:
        warnings.warn(
            f"{counts['excluded']} of {counts['n']} {what} have unknown age or gender "
            f"and were excluded from stratum proportions",
            UnknownDemographic, stacklevel=3)
    known = df[(df["age_band"] != UNKNOWN) & (df["gender_group"] != UNKNOWN)]
    if known.empty:
        raise ValueError(f"no {what} with known age and gender")
    cells = known.groupby(["age_band", "gender_group"]).size()
    outside = cells.index.difference(index)
    if len(outside):
        warnings.warn(
            f"{int(cells.loc[outside].sum())} {what} fall in strata absent from the "
            f"population ({list(outside)}) and were excluded",
            UnknownDemographic, stacklevel=3)
    cells = cells.reindex(index, fill_value=0)
    total = cells.sum()
    if total == 0:
        raise ValueError(f"no {what} fall inside the stratum index")
    return (cells / total).rename("proportion")


def population_proportions(ledger, breaks=DEFAULT_BREAKS, genders=None):
    """Share of each stratum among distinct donors (first record per donor_id)."""
    donors = ledger.sort_values("created_at", kind="stable").drop_duplicates("donor_id")
    donors = add_strata(donors, breaks)
    if genders is None:
        genders = known_genders(donors)
    return _proportions(donors, stratum_index(breaks, genders), "donors")


def sample_proportions(pairs, breaks=DEFAULT_BREAKS, genders=None):
    """Share of each stratum among matched pairs (one per retained response)."""
    pairs = add_strata(pairs, breaks)
    if genders is None:
        genders = known_genders(pairs)
    return _proportions(pairs, stratum_index(breaks, genders), "matched responses")


def is_partition(proportions, tol=1e-9):
    return math.isclose(float(proportions.sum()), 1.0, abs_tol=tol) and bool((proportions >= 0).all())
