"""
Counterfactual Giving Pipeline — Step 1: Data Generation
========================================================
Simulates one year of a donation platform's ledger and its anonymous
post-donation survey ("what would you have done with this money otherwise?").

Design choices for clarity:
  - Donors have an age and a gender; a few are missing either (~3%)
  - Some donors give more than once; demographics stay with the donor
  - Every donation carries a latent survey answer, so the true
    counterfactual percentage of the whole ledger is known
  - Intentional response bias: younger donors answer the survey far more
    often, and younger donors also give smaller amounts and answer
    differently, so the raw matched sample is not representative
  - The ledger is exported in local time (UTC-5); the survey in UTC
  - A few survey responses are junk with random timestamps (no donation)

Outputs
-------
data/ledger.csv   donor_id, amount, created_at (local), age, gender
data/survey.csv   response_id, responded_at (UTC), response, age, gender
data/truth.json   true ledger-wide counterfactual percentages
"""

import json
from pathlib import Path

import numpy as np
import pandas as pd
from scipy.special import expit

from counterfactual.config import load_config
from counterfactual.weights import counterfactual_percentage, weight_totals

cfg  = load_config("analysis_config.json")
SEED = cfg["seed"]
rng  = np.random.default_rng(SEED)

N_DONORS   = 5_000
N_JUNK     = 150       # survey rows not tied to any donation
YEAR_START = pd.Timestamp("2023-01-01")
OFFSET_H   = cfg["ledger_utc_offset_hours"]

CATS = list(cfg["category_weights"])
# answer propensities: young donors more often "would not have donated",
# older donors more often "would have given to a non-GiveWell charity"
CAT_BASE   = np.array([0.30, 0.35, 0.15, 0.20])
CAT_AGE    = np.array([-0.020, 0.000, 0.005, 0.025])   # log-odds per year over 40
CAT_AMOUNT = np.array([-0.20, 0.35, -0.10, 0.10])      # log-amount shift

Path("data").mkdir(exist_ok=True)

# ── Donors ───────────────────────────────────────────────────────────────

donors = pd.DataFrame({
    "donor_id": [f"D{i:05d}" for i in range(N_DONORS)],
    "age":      np.clip(rng.normal(44, 15, N_DONORS), 16, 92).round(),
    "gender":   rng.choice(["female", "male"], size=N_DONORS, p=[0.52, 0.48]),
})
donors.loc[rng.random(N_DONORS) < 0.03, "age"] = np.nan
donors.loc[rng.random(N_DONORS) < 0.02, "gender"] = None
donors["n_gifts"] = 1 + rng.poisson(0.5, N_DONORS)

# ── Ledger ───────────────────────────────────────────────────────────────

ledger = donors.loc[donors.index.repeat(donors["n_gifts"])].reset_index(drop=True)
n = len(ledger)
seconds = rng.uniform(0, 365 * 86_400, n)
ledger["created_utc"] = YEAR_START + pd.to_timedelta(seconds.round(), unit="s")

age_c = ledger["age"].fillna(44).to_numpy() - 40
logits = np.log(CAT_BASE)[None, :] + age_c[:, None] * CAT_AGE[None, :]
probs = np.exp(logits) / np.exp(logits).sum(axis=1, keepdims=True)
cat_idx = np.array([rng.choice(len(CATS), p=p) for p in probs])
ledger["latent_response"] = np.array(CATS, dtype=object)[cat_idx]

male = (ledger["gender"] == "male").to_numpy(dtype=float)
log_amt = (3.8 + 0.018 * age_c + 0.15 * male + CAT_AMOUNT[cat_idx]
           + rng.normal(0, 0.9, n))
ledger["amount"] = np.exp(log_amt).round(2)

# export in local time
ledger["created_at"] = (ledger["created_utc"] + pd.Timedelta(hours=OFFSET_H)).dt.strftime("%Y-%m-%d %H:%M:%S")

# ── Survey (biased toward young donors) ──────────────────────────────────

p_resp = expit(-1.6 - 0.045 * age_c)
answered = rng.random(n) < p_resp
resp = ledger.loc[answered].copy()
delay = np.clip(rng.exponential(240, len(resp)), 15, None).round()
resp["responded_at"] = resp["created_utc"] + pd.to_timedelta(delay, unit="s")
resp["response"] = resp["latent_response"]

junk = pd.DataFrame({
    "responded_at": YEAR_START + pd.to_timedelta(rng.uniform(0, 365 * 86_400, N_JUNK).round(), unit="s"),
    "response":     rng.choice(CATS, size=N_JUNK),
    "age":          np.nan,
    "gender":       None,
})
survey = pd.concat([resp[["responded_at", "response", "age", "gender"]], junk], ignore_index=True)
survey = survey.sort_values("responded_at").reset_index(drop=True)
survey.insert(0, "response_id", [f"S{i:05d}" for i in range(len(survey))])
survey["responded_at"] = survey["responded_at"].dt.strftime("%Y-%m-%dT%H:%M:%SZ")

# ── Ground truth ─────────────────────────────────────────────────────────

w = ledger["latent_response"].map(dict(cfg["category_weights"]))
truth = {
    "n_donations":   int(n),
    "n_donors":      int(N_DONORS),
    "n_responses":   int(len(survey)),
    "true_amount_pct": round(counterfactual_percentage(weight_totals(ledger["amount"], w)), 3),
    "true_count_pct":  round(counterfactual_percentage(weight_totals(np.ones(n), w)), 3),
}

ledger[["donor_id", "amount", "created_at", "age", "gender"]].to_csv("data/ledger.csv", index=False)
survey.to_csv("data/survey.csv", index=False)
with open("data/truth.json", "w") as f:
    json.dump(truth, f, indent=2)

print(f"Donations: {n:,} from {N_DONORS:,} donors")
print(f"Survey responses: {len(survey):,}  ({answered.mean():.1%} response rate + {N_JUNK} junk)")
print(f"True counterfactual % (amount-weighted): {truth['true_amount_pct']:.1f}%")
print(f"True counterfactual % (donor count):     {truth['true_count_pct']:.1f}%")

print("\nResponse bias by age (responders vs all donations):")
for lo, hi in [(16, 30), (30, 45), (45, 60), (60, 93)]:
    band = ledger["age"].between(lo, hi - 1)
    pop_pct = band.mean()
    samp_pct = band[answered].mean()
    flag = " ⚠" if abs(samp_pct - pop_pct) > 0.05 else ""
    print(f"  {lo:2d}-{hi - 1:2d}   all={pop_pct:.0%}  responders={samp_pct:.0%}{flag}")

print("\n✓ data/ledger.csv")
print("✓ data/survey.csv")
print("✓ data/truth.json")
