import numpy as np
import pandas as pd
import pytest

from counterfactual.report import (demographic_comparison, model_check, plot_demographic_comparison,
                                   plot_model_check, plot_percentage_draws, qa_checks,
                                   representativeness_test)
from counterfactual.strata import stratum_index

STATS = {"n_responses": 100, "n_candidate_pairs": 90, "n_unmatched": 20,
         "n_ambiguous": 5, "n_retained": 75, "retained_fraction": 0.75}


@pytest.fixture
def population():
    pop = pd.Series(0.0, index=stratum_index(genders=["female", "male"]))
    pop[("31-40", "female")] = 0.5
    pop[("41-50", "male")] = 0.5
    return pop


@pytest.fixture
def observations():
    return pd.DataFrame({
        "log_amount": [4.0, 4.2, 5.0, 5.4],
        "age_band": ["31-40", "31-40", "41-50", "41-50"],
        "gender_group": ["female", "female", "male", "male"],
    })


def test_demographic_comparison(population):
    sample = pd.Series({("31-40", "female"): 0.8, ("41-50", "male"): 0.2})
    table = demographic_comparison(population, sample)
    assert table.index.equals(population.index)
    assert table.loc[("31-40", "female"), "difference"] == pytest.approx(0.3)
    assert table.loc[("<21", "male"), "sample"] == 0.0


def test_representative_sample_passes_chi_square(population):
    counts = pd.Series({("31-40", "female"): 50, ("41-50", "male"): 50})
    res = representativeness_test(population, counts)
    assert res["chi2"] == pytest.approx(0.0)
    assert res["p_value"] == pytest.approx(1.0)
    assert res["dof"] == 1
    assert res["n"] == 100


def test_skewed_sample_fails_chi_square(population):
    counts = pd.Series({("31-40", "female"): 90, ("41-50", "male"): 10})
    assert representativeness_test(population, counts)["p_value"] < 0.001


def test_empty_sample_has_no_test(population):
    res = representativeness_test(population, pd.Series(0, index=population.index))
    assert res["n"] == 0
    assert res["p_value"] is None


def test_model_check(observations):
    fitted = pd.Series([4.1, 4.1, 5.2, 5.2])
    table, metrics = model_check(observations, fitted)
    assert list(table["n"]) == [2, 2]
    assert table["residual"].abs().max() == pytest.approx(0.0, abs=1e-12)
    assert metrics["mae"] == pytest.approx(0.15)
    assert 0 < metrics["r2"] <= 1


def test_qa_passes_on_healthy_run():
    diag = {"warnings": []}
    counts = pd.Series({("31-40", "female"): 40, ("41-50", "male"): 35})
    qa = qa_checks(STATS, diag, counts)
    assert qa["status"] == "PASS"
    assert qa["warnings"] == []
    assert len(qa["passed"]) == 4


def test_qa_fails_when_nothing_matched():
    stats = dict(STATS, n_retained=0, retained_fraction=0.0)
    qa = qa_checks(stats)
    assert qa["status"] == "FAIL"
    assert qa["errors"]


def test_qa_flags_small_cells_and_ambiguity():
    stats = dict(STATS, n_ambiguous=30)
    counts = pd.Series({("31-40", "female"): 40, ("71+", "male"): 2})
    qa = qa_checks(stats, {"warnings": ["Hessian not positive definite"]}, counts)
    assert qa["status"] == "PASS"
    assert any(w.startswith("Small cell: 71+/male") for w in qa["warnings"])
    assert any(w.startswith("High ambiguity") for w in qa["warnings"])
    assert any(w.startswith("Fit warning") for w in qa["warnings"])


def test_plots_write_files(tmp_path, population, observations):
    sample = pd.Series({("31-40", "female"): 0.8, ("41-50", "male"): 0.2})
    plot_demographic_comparison(demographic_comparison(population, sample), tmp_path / "demo.png")

    table, _ = model_check(observations, pd.Series([4.1, 4.1, 5.2, 5.2]))
    plot_model_check(table, tmp_path / "check.png")

    draws = np.random.default_rng(0).normal(20, 2, 500)
    summary = {"median": 20.0, "hdi_low": 16.0, "hdi_high": 24.0, "hdi_prob": 0.95}
    plot_percentage_draws(draws, summary, tmp_path / "draws.png")

    for name in ("demo.png", "check.png", "draws.png"):
        assert (tmp_path / name).stat().st_size > 0
