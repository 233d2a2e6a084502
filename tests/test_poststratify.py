import numpy as np
import pandas as pd
import pytest

from counterfactual.errors import UnmappedCategory
from counterfactual.poststratify import (percentage_draws, poststratify, prediction_grid,
                                         summarize_draws)
from counterfactual.strata import stratum_index


def _population(shares):
    idx = pd.MultiIndex.from_tuples(list(shares), names=["age_band", "gender_group"])
    return pd.Series(list(shares.values()), index=idx, name="proportion")


def test_single_stratum_matches_in_sample_formula(fake_model, example_weights):
    pop = _population({("31-40", "female"): 1.0})
    table = {
        ("non-GiveWell charity", "31-40", "female"): np.log(1000.0),
        ("non-donor", "31-40", "female"): np.log(500.0),
        ("GiveWell-equivalent", "31-40", "female"): np.log(8500.0),
    }
    out = poststratify(fake_model(table, n_draws=3), pop, example_weights)
    assert out["median"] == pytest.approx(21.727, abs=1e-3)
    assert np.allclose(out["draws"], out["median"])
    assert out["n_draws"] == 3


def test_grid_covers_every_stratum_and_category(fake_model, example_weights):
    pop = pd.Series(0.0, index=stratum_index(genders=["female", "male"]))
    pop.iloc[0] = 1.0
    model = fake_model({}, default=np.log(10.0), n_draws=2)
    poststratify(model, pop, example_weights)
    assert len(model.requested) == 14 * 3
    assert set(model.requested["category"]) == set(example_weights)


def test_drawwise_aggregation_not_pointwise(fake_model):
    weights = {"none": 1.0, "other": 10.0}
    pop = _population({("21-30", "female"): 0.5, ("61-70", "male"): 0.5})
    s1, s2 = ("21-30", "female"), ("61-70", "male")
    # right-skewed, draw-to-draw heterogeneous log amounts
    table = {
        ("none",) + s1:  [0.0, 3.0, 0.0],
        ("none",) + s2:  [0.0, 0.0, 0.0],
        ("other",) + s1: [1.0, 1.0, 1.0],
        ("other",) + s2: [0.0, 0.0, 4.0],
    }
    out = poststratify(fake_model(table, n_draws=3), pop, weights)

    def pct(none, other):
        return (none + other * 0.9) / (none + other) * 100

    def amount(cat, d):
        return 0.5 * np.exp(table[(cat,) + s1][d]) + 0.5 * np.exp(table[(cat,) + s2][d])

    drawwise = [pct(amount("none", d), amount("other", d)) for d in range(3)]
    np.testing.assert_allclose(out["draws"], drawwise)
    assert out["median"] == pytest.approx(np.median(drawwise))

    # exponentiating averaged log draws
    def point_amount(cat):
        return 0.5 * np.exp(np.mean(table[(cat,) + s1])) + 0.5 * np.exp(np.mean(table[(cat,) + s2]))

    # averaging amounts across draws before combining
    def mean_amount(cat):
        return np.mean([amount(cat, d) for d in range(3)])

    assert abs(pct(point_amount("none"), point_amount("other")) - out["median"]) > 1e-3
    assert abs(pct(mean_amount("none"), mean_amount("other")) - out["median"]) > 0.1


def test_proportions_must_sum_to_one(fake_model, example_weights):
    pop = _population({("31-40", "female"): 0.6, ("41-50", "male"): 0.3})
    with pytest.raises(ValueError):
        poststratify(fake_model({}), pop, example_weights)


def test_unmapped_category_is_fatal(fake_model, example_weights):
    pop = _population({("31-40", "female"): 1.0})
    with pytest.raises(UnmappedCategory):
        poststratify(fake_model({}), pop, example_weights, categories=["non-donor", "mystery"])


def test_bad_model_output_rejected(example_weights):
    class Broken:
        def predict(self, cells):
            return np.zeros((5, 1))

    pop = _population({("31-40", "female"): 1.0})
    with pytest.raises(ValueError):
        poststratify(Broken(), pop, example_weights)


def test_prediction_grid_columns():
    pop = _population({("31-40", "female"): 0.5, ("41-50", "male"): 0.5})
    grid = prediction_grid(pop, ["a", "b", "c"])
    assert list(grid.columns) == ["category", "age_band", "gender_group"]
    assert len(grid) == 6


def test_percentage_draws_matches_formula():
    amounts = pd.DataFrame({"x": [1000.0, 100.0], "y": [500.0, 100.0]})
    out = percentage_draws(amounts, {"x": 10, "y": 1})
    np.testing.assert_allclose(out, [(900 + 500) / 1500 * 100, (90 + 100) / 200 * 100])


def test_summarize_draws_interval_contains_median():
    draws = np.random.default_rng(0).lognormal(3, 0.5, 2000)
    s = summarize_draws(draws, hdi_prob=0.9)
    assert s["hdi_low"] < s["median"] < s["hdi_high"]
    # HDI of a right-skewed sample sits left of the equal-tailed interval
    assert s["hdi_low"] < np.quantile(draws, 0.05)
    assert s["hdi_prob"] == 0.9


def test_categories_without_data_are_reported(fake_model, example_weights):
    pop = _population({("31-40", "female"): 1.0})
    out = poststratify(fake_model({}, n_draws=2), pop, example_weights,
                       categories=["non-donor", "non-GiveWell charity"])
    assert out["unmodelled_categories"] == ["GiveWell-equivalent"]
    assert list(out["category_totals"].index) == ["non-donor", "non-GiveWell charity"]


def test_every_configured_category_modelled_by_default(fake_model, example_weights):
    pop = _population({("31-40", "female"): 1.0})
    out = poststratify(fake_model({}, n_draws=2), pop, example_weights)
    assert out["unmodelled_categories"] == []
