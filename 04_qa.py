"""
Counterfactual Giving Pipeline — Step 4: Quality Assurance & Report
===================================================================
Automated checks that run after every analysis. Outputs a structured QA
report plus the tables and figures that go into the write-up.

Checks
------
  1. Match yield and ambiguity rate
  2. Demographic representativeness of the matched sample (χ² vs population)
  3. Stratum cell sizes (cells below the minimum rely on pooling)
  4. Fit warnings surfaced from the model engine
  5. Model check: observed vs fitted log amount by stratum
  6. Headline estimates side by side (and vs. ground truth when simulated)

Output: data/qa_report.json, data/figures/*.png
"""

import json
import os
from pathlib import Path

import pandas as pd

from counterfactual.report import (demographic_comparison, model_check, plot_demographic_comparison,
                                   plot_model_check, plot_percentage_draws, qa_checks,
                                   representativeness_test)

match_stats = json.load(open("data/match_stats.json"))
results     = json.load(open("data/model_results.json"))
strata      = pd.read_csv("data/strata.csv", index_col=["age_band", "gender_group"])
obs         = pd.read_csv("data/observations.csv")
draws       = pd.read_csv("data/poststrat_draws.csv")["pct"].to_numpy()

FIG = Path("data/figures")
FIG.mkdir(parents=True, exist_ok=True)

print("=" * 60)
print("Counterfactual Giving QA Report")
print("=" * 60)

# ── 1. Matching ──────────────────────────────────────────────────────────

print("\n[1] Matching")
print(f"  Responses:  {match_stats['n_responses']:,}")
print(f"  Unmatched:  {match_stats['n_unmatched']:,}")
print(f"  Ambiguous:  {match_stats['n_ambiguous']:,}")
print(f"  Retained:   {match_stats['n_retained']:,}  ({match_stats['retained_fraction']:.1%})")

# ── 2. Representativeness ────────────────────────────────────────────────

print("\n[2] Demographic comparison (sample vs population)")
comp = demographic_comparison(strata["population"], strata["sample"])
chi = representativeness_test(strata["population"], strata["sample_n"])
for (band, gender), r in comp.iterrows():
    mark = "⚠" if abs(r["difference"]) > 0.03 else "✓"
    print(f"  {mark} {band:>6s} {gender:8s}  pop={r['population']:.3f}  "
          f"sample={r['sample']:.3f}  Δ={r['difference']:+.3f}")
if chi["p_value"] is not None:
    print(f"  χ²={chi['chi2']:.1f}  df={chi['dof']}  p={chi['p_value']:.1e}"
          f"  {'(sample differs from population: poststratification matters)' if chi['p_value'] < 0.05 else ''}")
plot_demographic_comparison(comp, FIG / "demographic_comparison.png")

# ── 3–5. Cell sizes, fit warnings, model check ───────────────────────────

qa = qa_checks(match_stats, results["fit"], strata["sample_n"])

print("\n[3] Stratum cell sizes")
small = [w for w in qa["warnings"] if w.startswith("Small cell")]
for w in small:
    print(f"  ⚠ {w}")
if not small:
    print("  ✓ every stratum has matched responses above the minimum")

print("\n[4] Fit warnings")
for w in results["fit"]["warnings"]:
    print(f"  ⚠ {w}")
if not results["fit"]["warnings"]:
    print("  ✓ none")

print("\n[5] Model check (log amount)")
table, metrics = model_check(obs[["log_amount", "age_band", "gender_group"]], obs["fitted"])
print(f"  RMSE={metrics['rmse']:.3f}  MAE={metrics['mae']:.3f}  R²={metrics['r2']:.3f}")
for (band, gender), r in table.iterrows():
    mark = "⚠" if abs(r["residual"]) > 0.25 else "✓"
    print(f"  {mark} {band:>6s} {gender:8s}  n={int(r['n']):>4d}  obs={r['observed_mean']:.2f}  "
          f"fit={r['fitted_mean']:.2f}")
plot_model_check(table, FIG / "model_check.png")

# ── 6. Headline ──────────────────────────────────────────────────────────

post = results["poststratified"]
print("\n[6] Counterfactual percentage")
print(f"  Donor count (raw survey):  {match_stats['donor_count_pct']:.1f}%")
print(f"  In-sample (matched):       {match_stats['in_sample_pct']:.1f}%")
print(f"  Poststratified (MrP):      {post['median']:.1f}%  "
      f"[{post['hdi_low']:.1f}%, {post['hdi_high']:.1f}%]")
truth = None
if os.path.exists("data/truth.json"):
    truth = json.load(open("data/truth.json"))
    print(f"  True (simulated ledger):   {truth['true_amount_pct']:.1f}%  ← ground truth")
plot_percentage_draws(draws, post, FIG / "poststratified_draws.png")

# ── Summary ──────────────────────────────────────────────────────────────

print(f"\n{'=' * 60}")
print(f"STATUS: {qa['status']}")
print(f"  ✓ Passed:   {len(qa['passed'])}")
print(f"  ⚠ Warnings: {len(qa['warnings'])}")
print(f"  ✗ Errors:   {len(qa['errors'])}")
for e in qa["errors"]:
    print(f"    ✗ {e}")
for w in qa["warnings"]:
    print(f"    ⚠ {w}")

report = dict(qa)
report.update({
    "match": {k: match_stats[k] for k in
              ["n_responses", "n_unmatched", "n_ambiguous", "n_retained", "retained_fraction"]},
    "representativeness": chi,
    "model_check": metrics,
    "estimates": {
        "donor_count_pct": match_stats["donor_count_pct"],
        "in_sample_pct":   match_stats["in_sample_pct"],
        "poststratified":  post,
        "truth":           truth,
    },
})
with open("data/qa_report.json", "w") as f:
    json.dump(report, f, indent=2)

print("\n✓ data/qa_report.json")
print(f"✓ {FIG}/demographic_comparison.png, model_check.png, poststratified_draws.png")
