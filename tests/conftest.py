"""
Pytest fixtures: tiny ledgers and surveys with hand-checkable timing,
a three-category weight table (10 / 1 / 1.1), and a deterministic stand-in
for the fitted model.
"""
import numpy as np
import pandas as pd
import pytest

from counterfactual.estimator import FittedModel

T0 = pd.Timestamp("2023-03-01 12:00:00", tz="UTC")


def _at(seconds):
    return T0 + pd.Timedelta(seconds=seconds)


class FakeModel(FittedModel):
    """Returns fixed log-amount draws per (category, age_band, gender_group)."""

    def __init__(self, table, default=0.0, n_draws=1):
        self.table = table
        self.default = default
        self.n_draws = n_draws
        self.requested = None

    def predict(self, cells, include_residual=None):
        self.requested = cells.copy()
        cols = []
        for row in cells.itertuples(index=False):
            val = self.table.get((row.category, row.age_band, row.gender_group), self.default)
            cols.append(np.broadcast_to(np.asarray(val, dtype=float), (self.n_draws,)))
        return np.column_stack(cols)


@pytest.fixture
def at():
    """Timestamp `seconds` after a fixed UTC origin."""
    return _at


@pytest.fixture
def fake_model():
    return FakeModel


@pytest.fixture
def example_weights():
    return {
        "non-GiveWell charity": 10.0,
        "non-donor": 1.0,
        "GiveWell-equivalent": 1.1,
    }


@pytest.fixture
def ledger():
    return pd.DataFrame({
        "donor_id":   ["A", "B", "C", "A", "D"],
        "amount":     [100.0, 50.0, 20.0, 80.0, 500.0],
        "created_at": [_at(0), _at(1000), _at(1010), _at(5000), _at(9000)],
        "age":        [34, 19.9, 20, 34, np.nan],
        "gender":     ["female", "male", "female", "female", "male"],
    })


@pytest.fixture
def survey():
    return pd.DataFrame({
        "response_id":  ["r1", "r2", "r3", "r4", "r5"],
        # r1 -> A(0); r2 -> B and C (ambiguous); r3 -> A(5000);
        # r4 -> nothing; r5 -> D(9000) exactly at the upper bound
        "responded_at": [_at(30), _at(1040), _at(5000), _at(20000), _at(9600)],
        "response":     ["non-donor", "GiveWell-equivalent", "non-GiveWell charity",
                         "non-donor", "GiveWell-equivalent"],
    })
