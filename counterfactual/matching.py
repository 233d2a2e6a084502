"""
Survey ↔ ledger event matching
==============================
The survey is anonymous, so the only link between a response and a donation
is time: the survey is offered right after checkout. A response is a
candidate match for a donation when

    min_seconds <= responded_at - created_at <= max_seconds

(both ends inclusive). Busy periods produce responses with several candidate
donations. Those are dropped from the analysis sample outright rather than
resolved to the nearest donation: guessing would tie responses to the wrong
amounts, and that error goes straight into the amount-weighted estimates.
"""

import warnings

import numpy as np
import pandas as pd

from .errors import AmbiguousMatch

NS_PER_SECOND = 1_000_000_000


def _epoch_ns(ts):
    return ts.dt.tz_convert("UTC").dt.tz_localize(None).to_numpy(dtype="datetime64[ns]").astype(np.int64)


def candidate_pairs(ledger, survey, min_seconds, max_seconds):
    """All (donation, response) pairs inside the window.

    Returns a frame with columns donation_index, response_id, time_delta
    (seconds). One response can appear many times here.
    """
    if min_seconds > max_seconds:
        raise ValueError(f"min_seconds ({min_seconds}) exceeds max_seconds ({max_seconds})")

    don_ns = _epoch_ns(ledger["created_at"])
    order = np.argsort(don_ns, kind="stable")
    don_sorted = don_ns[order]
    resp_ns = _epoch_ns(survey["responded_at"])

    # delta in [min, max]  <=>  created_at in [responded_at - max, responded_at - min]
    lo_ns = resp_ns - int(round(max_seconds * NS_PER_SECOND))
    hi_ns = resp_ns - int(round(min_seconds * NS_PER_SECOND))
    start = np.searchsorted(don_sorted, lo_ns, side="left")
    stop = np.searchsorted(don_sorted, hi_ns, side="right")

    counts = np.maximum(stop - start, 0)
    resp_pos = np.repeat(np.arange(len(survey)), counts)
    don_pos = np.concatenate(
        [order[a:b] for a, b in zip(start, stop) if b > a] or [np.empty(0, dtype=np.int64)]
    ).astype(np.int64)

    delta_ns = resp_ns[resp_pos] - don_ns[don_pos]
    return pd.DataFrame({
        "donation_index": ledger.index.to_numpy()[don_pos],
        "response_id": survey["response_id"].to_numpy()[resp_pos],
        "time_delta": delta_ns / NS_PER_SECOND,
    })


def resolve_ambiguity(candidates):
    """Keep only responses with exactly one candidate donation."""
    n_cand = candidates.groupby("response_id")["donation_index"].transform("size")
    return candidates[n_cand == 1]


def match_events(ledger, survey, min_seconds, max_seconds):
    """Link survey responses to donations.

    Parameters
    ----------
    ledger : pd.DataFrame
        donor_id, amount, created_at (tz-aware), age, gender
    survey : pd.DataFrame
        response_id, responded_at (tz-aware), response, optional age/gender
    min_seconds, max_seconds : float
        Inclusive bounds on responded_at - created_at.

    Returns
    -------
    (pairs, diagnostics)
        pairs has one row per retained response: the donation's columns,
        donation_index, the survey columns (demographics suffixed _survey)
        and time_delta in seconds. diagnostics counts unmatched, ambiguous
        and retained responses.
    """
    cand = candidate_pairs(ledger, survey, min_seconds, max_seconds)
    kept = resolve_ambiguity(cand)

    per_resp = cand.groupby("response_id").size()
    n_resp = len(survey)
    n_ambiguous = int((per_resp >= 2).sum())
    diagnostics = {
        "n_responses": n_resp,
        "n_candidate_pairs": len(cand),
        "n_unmatched": int(n_resp - len(per_resp)),
        "n_ambiguous": n_ambiguous,
        "n_retained": len(kept),
        "retained_fraction": len(kept) / n_resp if n_resp else 0.0,
    }
    if n_ambiguous:
        warnings.warn(
            f"{n_ambiguous} survey responses matched 2+ donations and were dropped",
            AmbiguousMatch, stacklevel=2)

    donations = ledger.rename_axis("donation_index").reset_index()
    survey_side = survey.rename(columns={c: f"{c}_survey" for c in survey.columns
                                         if c in ledger.columns})
    pairs = (kept
             .merge(donations, on="donation_index", how="left")
             .merge(survey_side, on="response_id", how="left"))
    pairs = pairs.sort_values(["created_at", "response_id"], kind="stable").reset_index(drop=True)
    return pairs, diagnostics


def sweep_windows(min_seconds, max_seconds, factors=(0.25, 0.5, 1, 2)):
    """Windows sharing min_seconds whose span is the configured one scaled by each factor."""
    span = max_seconds - min_seconds
    return sorted({(min_seconds, min_seconds + span * f) for f in factors})


def window_sweep(ledger, survey, windows):
    """Match diagnostics for several (min_seconds, max_seconds) windows."""
    rows = []
    for lo, hi in windows:
        cand = candidate_pairs(ledger, survey, lo, hi)
        per_resp = cand.groupby("response_id").size()
        rows.append({
            "min_seconds": lo,
            "max_seconds": hi,
            "n_unmatched": int(len(survey) - len(per_resp)),
            "n_ambiguous": int((per_resp >= 2).sum()),
            "n_retained": int((per_resp == 1).sum()),
        })
    out = pd.DataFrame(rows)
    out["retained_fraction"] = out["n_retained"] / max(len(survey), 1)
    return out
