"""
Poststratification
==================
Turns model draws for every (stratum, category) cell into a population-level
counterfactual percentage:

  1. predict log amount for the full stratum x category grid (one batched call)
  2. exponentiate each draw
  3. weight by the stratum's share of the donor population
  4. sum over strata within the draw -> per-category amount, per draw
  5. collapse categories to adjustment weights, apply the counterfactual
     formula per draw
  6. summarize the percentage draws: median + highest-density interval

Aggregation always happens draw by draw. Averaging predictions first and
exponentiating or combining afterwards gives a different (biased) answer
because exp() is convex.
"""

import arviz as az
import numpy as np
import pandas as pd

from .weights import assign_weights

TOL = 1e-6


def prediction_grid(population, categories):
    """Full Cartesian product of strata and categories."""
    strata = population.index.to_frame(index=False)
    grid = strata.merge(pd.DataFrame({"category": list(categories)}), how="cross")
    return grid[["category", "age_band", "gender_group"]]


def percentage_draws(category_amounts, category_weights):
    """Counterfactual percentage per draw.

    category_amounts : (n_draws, n_categories) DataFrame of amounts.
    """
    w = assign_weights(pd.Series(category_amounts.columns), category_weights).to_numpy()
    amounts = category_amounts.to_numpy(dtype=float)
    factor = np.where(w == 1, 1.0, (w - 1) / w)
    grand = amounts.sum(axis=1)
    return (amounts * factor).sum(axis=1) / grand * 100


def summarize_draws(draws, hdi_prob=0.95):
    draws = np.asarray(draws, dtype=float)
    lo, hi = az.hdi(draws, hdi_prob=hdi_prob)
    return {
        "median": float(np.median(draws)),
        "mean": float(np.mean(draws)),
        "sd": float(np.std(draws, ddof=1)) if len(draws) > 1 else 0.0,
        "hdi_low": float(lo),
        "hdi_high": float(hi),
        "hdi_prob": hdi_prob,
    }


def poststratify(model, population, category_weights, hdi_prob=0.95, categories=None):
    """Population counterfactual percentage from a fitted model.

    Parameters
    ----------
    model : FittedModel
        Anything with predict(cells) -> (n_draws, n_cells) log-amount draws.
    population : pd.Series
        Stratum proportions indexed by (age_band, gender_group); sums to 1.
    category_weights : mapping
        Category -> adjustment weight.
    categories : list, optional
        Categories to poststratify; defaults to every configured category.

    Returns
    -------
    dict with the per-draw percentages ("draws"), their summary (median,
    HDI bounds), per-category amount summaries ("category_totals") and the
    configured categories left out of the grid ("unmodelled_categories").
    """
    if abs(float(population.sum()) - 1.0) > TOL:
        raise ValueError(f"population proportions sum to {population.sum():.6f}, not 1")
    if (population < 0).any():
        raise ValueError("population proportions must be non-negative")
    if categories is None:
        categories = list(category_weights)
    assign_weights(pd.Series(categories), category_weights)

    grid = prediction_grid(population, categories)
    log_draws = np.asarray(model.predict(grid))
    if log_draws.ndim != 2 or log_draws.shape[1] != len(grid):
        raise ValueError(f"model returned draws of shape {log_draws.shape}, "
                         f"expected (n_draws, {len(grid)})")
    if not np.isfinite(log_draws).all():
        raise ValueError("model returned non-finite draws")

    props = population.reindex(pd.MultiIndex.from_frame(grid[["age_band", "gender_group"]])).to_numpy()
    weighted = np.exp(log_draws) * props[None, :]

    # sum over strata within each draw
    codes = pd.Categorical(grid["category"], categories=categories).codes
    per_cat = np.zeros((log_draws.shape[0], len(categories)))
    for k in range(len(categories)):
        per_cat[:, k] = weighted[:, codes == k].sum(axis=1)
    per_cat = pd.DataFrame(per_cat, columns=categories)

    pct = percentage_draws(per_cat, category_weights)
    summary = summarize_draws(pct, hdi_prob)

    cat_summary = pd.DataFrame({
        "weight": [float(category_weights[c]) for c in categories],
        "median_amount": per_cat.median(axis=0).to_numpy(),
        "hdi_low": [az.hdi(per_cat[c].to_numpy(), hdi_prob=hdi_prob)[0] for c in categories],
        "hdi_high": [az.hdi(per_cat[c].to_numpy(), hdi_prob=hdi_prob)[1] for c in categories],
    }, index=pd.Index(categories, name="category"))

    unmodelled = sorted(set(category_weights) - set(categories))
    out = {"draws": pct, "category_totals": cat_summary, "n_draws": int(len(pct)),
           "unmodelled_categories": unmodelled}
    out.update(summary)
    return out
