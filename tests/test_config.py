import json
import math
from pathlib import Path

import pytest

from counterfactual.config import load_config, validate_config
from counterfactual.errors import ConfigError

WEIGHTS = {"would not have donated": 1, "another charity": 10}


def test_load_shipped_config():
    cfg = load_config(Path(__file__).parent.parent / "analysis_config.json")
    assert cfg["min_seconds"] <= cfg["max_seconds"]
    assert len(cfg["age_breaks"]) == 8
    assert all(w >= 1 for w in cfg["category_weights"].values())


def test_defaults_and_infinity(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"category_weights": WEIGHTS}))
    cfg = load_config(path)
    assert cfg["age_breaks"] == (0, 20, 30, 40, 50, 60, 70, math.inf)
    assert cfg["category_weights"]["another charity"] == 10.0
    assert cfg["seed"] == 42


def test_config_is_read_only():
    cfg = validate_config({"category_weights": WEIGHTS})
    with pytest.raises(TypeError):
        cfg["min_seconds"] = 5
    with pytest.raises(TypeError):
        cfg["category_weights"]["new"] = 2


@pytest.mark.parametrize("raw", [
    {},
    {"category_weights": {}},
    {"category_weights": {"a": 0.5}},
    {"category_weights": {"a": "lots"}},
    {"category_weights": WEIGHTS, "min_seconds": 60, "max_seconds": 0},
    {"category_weights": WEIGHTS, "age_breaks": [0, 30, 20, 40, 50, 60, 70]},
    {"category_weights": WEIGHTS, "hdi_prob": 1.5},
    {"category_weights": WEIGHTS, "n_draws": 0},
])
def test_bad_config_is_fatal(raw):
    with pytest.raises(ConfigError):
        validate_config(raw)


@pytest.mark.parametrize("key, value", [
    ("n_draws", "many"),
    ("n_draws", 10.5),
    ("n_draws", None),
    ("hdi_prob", "0.95"),
    ("hdi_prob", float("nan")),
    ("seed", "abc"),
    ("seed", -1),
    ("seed", True),
    ("ledger_utc_offset_hours", "EST"),
    ("ledger_utc_offset_hours", 30),
    ("include_residual", "yes"),
])
def test_bad_run_setting_is_config_error(key, value):
    with pytest.raises(ConfigError, match=key):
        validate_config({"category_weights": WEIGHTS, key: value})


def test_run_settings_normalized():
    cfg = validate_config({"category_weights": WEIGHTS, "n_draws": 200.0, "seed": 7,
                           "ledger_utc_offset_hours": -5, "hdi_prob": 0.9})
    assert cfg["n_draws"] == 200 and isinstance(cfg["n_draws"], int)
    assert cfg["seed"] == 7
    assert cfg["ledger_utc_offset_hours"] == -5.0
