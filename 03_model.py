"""
Counterfactual Giving Pipeline — Step 3: Multilevel Model & Poststratification
==============================================================================
Corrects the in-sample estimate for who answers the survey (MrP).

  1. Stratify every donor and every matched response into age band × gender
  2. Fit log(amount) ~ response category + (1 | age band) + (1 | gender)
  3. Predict every stratum × category cell, including cells with no
     matched responses at all (partial pooling fills them in)
  4. Weight the predictions by each stratum's share of the donor
     population (one vote per donor, not per donation) and recompute the
     counterfactual percentage draw by draw

Outputs
-------
data/strata.csv             population vs sample stratum shares and counts
data/observations.csv       model frame with fitted values
data/poststrat_draws.csv    counterfactual % per draw
data/model_results.json     fit diagnostics + poststratified estimate
"""

import json

import numpy as np
import pandas as pd

from counterfactual.config import load_config
from counterfactual.estimator import MixedLMEstimator, fitted_values, prepare_observations
from counterfactual.loaders import load_ledger
from counterfactual.poststratify import poststratify
from counterfactual.strata import (add_strata, count_unknown, population_proportions,
                                   sample_proportions)

cfg    = load_config("analysis_config.json")
ledger = load_ledger("data/ledger.csv", cfg["ledger_utc_offset_hours"])
pairs  = pd.read_csv("data/matched_pairs.csv")
breaks = cfg["age_breaks"]
print(f"Loaded {len(pairs):,} matched responses, {ledger['donor_id'].nunique():,} donors\n")

# ── Strata ───────────────────────────────────────────────────────────────

donors = ledger.sort_values("created_at", kind="stable").drop_duplicates("donor_id")
unk_pop = count_unknown(add_strata(donors, breaks))
unk_smp = count_unknown(add_strata(pairs, breaks))
print(f"Unknown demographics: {unk_pop['excluded']} of {unk_pop['n']:,} donors, "
      f"{unk_smp['excluded']} of {unk_smp['n']:,} matched responses (excluded)")

population = population_proportions(ledger, breaks)
genders = sorted(population.index.get_level_values("gender_group").unique())
sample = sample_proportions(pairs, breaks, genders)

obs = prepare_observations(pairs, breaks)
sample_n = (obs.groupby(["age_band", "gender_group"]).size()
               .reindex(population.index, fill_value=0))

print("\nStratum shares:")
for (band, gender), pop_pct in population.items():
    smp_pct = sample[(band, gender)]
    n = int(sample_n[(band, gender)])
    flag = " ⚠" if abs(smp_pct - pop_pct) > 0.03 else ""
    empty = "  (no responses: pooled)" if n == 0 else ""
    print(f"  {band:>6s} {gender:8s}  pop={pop_pct:.1%}  sample={smp_pct:.1%}  n={n}{flag}{empty}")

# ── Fit ──────────────────────────────────────────────────────────────────

print(f"\nFitting multilevel model on {len(obs):,} responses…")
est = MixedLMEstimator(n_draws=cfg["n_draws"], seed=cfg["seed"],
                       include_residual=cfg["include_residual"])
model = est.fit(obs)
diag = model.diagnostics

status = "✓ converged" if diag["converged"] and not diag["warnings"] else "⚠ see warnings"
print(f"  {status}")
print(f"  Reference category: {diag['reference_category']}")
for name, coef in diag["fixed_effects"].items():
    direction = "▲" if coef > 0 else "▼"
    print(f"  {direction} {name:70s} {coef:+.3f}")
for g, v in diag["variance_components"].items():
    print(f"  σ²({g}) = {v:.4f}")
print(f"  σ²(residual) = {diag['residual_variance']:.4f}")

obs["fitted"] = fitted_values(model, obs)

# ── Poststratify ─────────────────────────────────────────────────────────

weights = cfg["category_weights"]
post = poststratify(model, population, weights, hdi_prob=cfg["hdi_prob"],
                    categories=model.categories)
for cat in post["unmodelled_categories"]:
    print(f"  ⚠ no matched responses for '{cat}': left out of the poststratified estimate")

in_sample = json.load(open("data/match_stats.json"))["in_sample_pct"]
print(f"\nPer-category population amount (median of draws):")
for cat, r in post["category_totals"].iterrows():
    print(f"  w={r['weight']:<5g} ${r['median_amount']:>8,.2f}  "
          f"[{r['hdi_low']:,.2f}, {r['hdi_high']:,.2f}]  {cat}")

print(f"\nCounterfactual percentage:")
print(f"  In-sample:         {in_sample:.1f}%")
print(f"  Poststratified:    {post['median']:.1f}%  "
      f"({post['hdi_prob']:.0%} HDI {post['hdi_low']:.1f}% – {post['hdi_high']:.1f}%)")
print(f"  Correction:        {post['median'] - in_sample:+.1f}pp")

# ── Save ─────────────────────────────────────────────────────────────────

strata = pd.DataFrame({"population": population, "sample": sample, "sample_n": sample_n})
strata.to_csv("data/strata.csv")
obs.to_csv("data/observations.csv", index=False)
pd.DataFrame({"draw": np.arange(post["n_draws"]), "pct": post["draws"]}).to_csv(
    "data/poststrat_draws.csv", index=False)

with open("data/model_results.json", "w") as f:
    json.dump({
        "fit": diag,
        "unknown_demographics": {"population": unk_pop, "sample": unk_smp},
        "poststratified": {k: post[k] for k in
                           ["median", "mean", "sd", "hdi_low", "hdi_high", "hdi_prob", "n_draws"]},
        "category_totals": post["category_totals"].reset_index().to_dict(orient="records"),
        "unmodelled_categories": post["unmodelled_categories"],
    }, f, indent=2)

print("\n✓ data/strata.csv")
print("✓ data/observations.csv")
print("✓ data/poststrat_draws.csv")
print("✓ data/model_results.json")
