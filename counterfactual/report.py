"""
Report tables, figures and QA checks
====================================
Derived, non-authoritative output that helps a reader judge the headline
numbers:

  - demographic comparison: matched sample vs donor population, per stratum
  - model check: observed vs fitted log amount, per stratum and overall
  - QA checks: match yield, ambiguity rate, small cells, fit warnings
"""

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

MIN_CELL_N = 5
MIN_RETAINED_FRACTION = 0.30
MAX_AMBIGUOUS_FRACTION = 0.20


def demographic_comparison(population, sample):
    """Population vs sample stratum shares, side by side."""
    df = pd.DataFrame({"population": population, "sample": sample.reindex(population.index, fill_value=0.0)})
    df["difference"] = df["sample"] - df["population"]
    return df


def representativeness_test(population, sample_counts):
    """Chi-square goodness of fit of sample counts against population shares.

    Strata with zero population share are left out.
    """
    pop = population[population > 0]
    obs = sample_counts.reindex(pop.index, fill_value=0).to_numpy(dtype=float)
    n = obs.sum()
    if n == 0:
        return {"chi2": None, "dof": 0, "p_value": None, "n": 0}
    expected = pop.to_numpy(dtype=float) / pop.sum() * n
    chi2, p = stats.chisquare(obs, expected)
    return {"chi2": float(chi2), "dof": int(len(obs) - 1), "p_value": float(p), "n": int(n)}


def model_check(observations, fitted):
    """Observed vs fitted log amount by stratum, plus overall fit metrics."""
    df = observations.assign(fitted=fitted)
    table = (df.groupby(["age_band", "gender_group"])
               .agg(n=("log_amount", "size"),
                    observed_mean=("log_amount", "mean"),
                    fitted_mean=("fitted", "mean")))
    table["residual"] = table["observed_mean"] - table["fitted_mean"]

    y, yhat = df["log_amount"].to_numpy(), df["fitted"].to_numpy()
    metrics = {
        "rmse": float(np.sqrt(mean_squared_error(y, yhat))),
        "mae": float(mean_absolute_error(y, yhat)),
        "r2": float(r2_score(y, yhat)) if len(y) > 1 else None,
    }
    return table, metrics


def _stratum_labels(index):
    return [f"{a} / {g}" for a, g in index]


def plot_demographic_comparison(table, path):
    fig, ax = plt.subplots(figsize=(9, 5))
    x = np.arange(len(table))
    ax.bar(x - 0.2, table["population"], width=0.4, label="Donor population")
    ax.bar(x + 0.2, table["sample"], width=0.4, label="Matched sample")
    ax.set_xticks(x)
    ax.set_xticklabels(_stratum_labels(table.index), rotation=60, ha="right", fontsize=8)
    ax.set_ylabel("Share")
    ax.set_title("Stratum shares: population vs matched sample")
    ax.legend()
    fig.tight_layout()
    fig.savefig(path, dpi=120)
    plt.close(fig)


def plot_model_check(table, path):
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(table["fitted_mean"], table["observed_mean"], s=10 + 4 * table["n"], alpha=0.7)
    lo = float(np.nanmin(table[["fitted_mean", "observed_mean"]].to_numpy()))
    hi = float(np.nanmax(table[["fitted_mean", "observed_mean"]].to_numpy()))
    ax.plot([lo, hi], [lo, hi], color="grey", linestyle="--", linewidth=1)
    ax.set_xlabel("Fitted mean log amount")
    ax.set_ylabel("Observed mean log amount")
    ax.set_title("Model check by stratum (point size ~ n)")
    fig.tight_layout()
    fig.savefig(path, dpi=120)
    plt.close(fig)


def plot_percentage_draws(draws, summary, path):
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.hist(draws, bins=60, color="steelblue", alpha=0.8)
    ax.axvline(summary["median"], color="black", label=f"median {summary['median']:.1f}%")
    ax.axvspan(summary["hdi_low"], summary["hdi_high"], color="orange", alpha=0.2,
               label=f"{summary['hdi_prob']:.0%} HDI")
    ax.set_xlabel("Counterfactual percentage")
    ax.set_title("Poststratified counterfactual percentage")
    ax.legend()
    fig.tight_layout()
    fig.savefig(path, dpi=120)
    plt.close(fig)


def qa_checks(match_stats, model_diag=None, sample_counts=None):
    """Collect passed / warnings / errors the way a delivery QA gate would."""
    passed, warns, errors = [], [], []

    retained = match_stats["retained_fraction"]
    if match_stats["n_retained"] == 0:
        errors.append("No survey responses could be matched to a donation")
    elif retained < MIN_RETAINED_FRACTION:
        warns.append(f"Low match yield: {retained:.1%} of responses retained")
    else:
        passed.append(f"Match yield {retained:.1%}")

    n = max(match_stats["n_responses"], 1)
    amb = match_stats["n_ambiguous"] / n
    if amb > MAX_AMBIGUOUS_FRACTION:
        warns.append(f"High ambiguity: {amb:.1%} of responses matched 2+ donations")
    else:
        passed.append(f"Ambiguity rate {amb:.1%}")

    if sample_counts is not None:
        small = sample_counts[sample_counts < MIN_CELL_N]
        for (band, gender), cnt in small.items():
            warns.append(f"Small cell: {band}/{gender} n={int(cnt)} (relies on pooling)")
        if small.empty:
            passed.append(f"All strata have n >= {MIN_CELL_N}")

    if model_diag is not None:
        if model_diag["warnings"]:
            for w in model_diag["warnings"]:
                warns.append(f"Fit warning: {w}")
        else:
            passed.append("Model fit converged without warnings")

    return {
        "status": "FAIL" if errors else "PASS",
        "passed": passed,
        "warnings": warns,
        "errors": errors,
    }
