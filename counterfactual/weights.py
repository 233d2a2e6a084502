"""
Counterfactual weights
======================
Each survey answer is coded with an adjustment weight w >= 1: for every
dollar actually given, how many dollars of impact it represents relative to
what the donor would otherwise have done. The share of a cohort's money that
*would* have been given just as effectively anyway is 1/w, so the part we
can credit ourselves with is

    adjusted_total(w) = total(w) * (w - 1) / w

except for w == 1, which codes "would not have donated at all" and is
credited in full. The counterfactual percentage is

    (sum_{w != 1} adjusted_total(w) + total(1)) / sum_w total(w) * 100

The same arithmetic runs on donation amounts (matched sample) or on response
counts (raw survey).
"""

import numpy as np
import pandas as pd

from .errors import UnmappedCategory


def assign(category, category_weights):
    try:
        return float(category_weights[category])
    except KeyError:
        raise UnmappedCategory([category]) from None


def assign_weights(responses, category_weights):
    """Map a Series of response categories to weights.

    Raises UnmappedCategory listing every category without a weight.
    """
    responses = pd.Series(responses)
    unmapped = set(responses.unique()) - set(category_weights)
    if unmapped:
        raise UnmappedCategory(unmapped)
    return responses.map(lambda c: float(category_weights[c])).astype(float).rename("weight")


def weight_totals(values, weights):
    """total(w): sum of values per weight."""
    values = pd.Series(np.asarray(values, dtype=float))
    weights = pd.Series(np.asarray(weights, dtype=float))
    return values.groupby(weights).sum().rename_axis("weight").rename("total")


def adjusted_totals(totals):
    w = totals.index.to_numpy(dtype=float)
    t = totals.to_numpy(dtype=float)
    adj = np.where(w == 1, t, t * (w - 1) / w)
    return pd.Series(adj, index=totals.index, name="adjusted")


def counterfactual_percentage(totals):
    """Counterfactual percentage from per-weight totals (Series indexed by weight)."""
    grand = float(totals.sum())
    if len(totals) == 0 or grand <= 0:
        raise ValueError("cannot compute a percentage from an empty or zero total")
    return float(adjusted_totals(totals).sum()) / grand * 100


def weight_summary(totals):
    """Per-weight table: total, adjusted total, share of grand total."""
    out = pd.DataFrame({"total": totals, "adjusted": adjusted_totals(totals)})
    out["share"] = out["total"] / out["total"].sum()
    return out


def in_sample_percentage(pairs, category_weights):
    """Amount-based percentage on matched pairs, no reweighting."""
    w = assign_weights(pairs["response"], category_weights)
    return counterfactual_percentage(weight_totals(pairs["amount"], w))


def donor_count_percentage(survey, category_weights):
    """Count-based percentage on the raw survey (every response counts once)."""
    w = assign_weights(survey["response"], category_weights)
    return counterfactual_percentage(weight_totals(np.ones(len(w)), w))
