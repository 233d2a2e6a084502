"""
Analysis configuration
======================
Everything the analyst decides up front lives in one JSON file:

  min_seconds / max_seconds   inclusion window for survey-after-donation
  age_breaks                  finite age breakpoints (infinity is appended)
  category_weights            survey response -> adjustment weight (>= 1)

plus run settings (ledger timezone offset, seed, number of draws, HDI mass).
The validated config is a read-only mapping so it can be passed around
without anyone mutating it mid-run.
"""

import json
import math
from types import MappingProxyType

from .errors import ConfigError

SEED = 42

DEFAULTS = {
    "min_seconds": 0,
    "max_seconds": 3600,
    "age_breaks": [0, 20, 30, 40, 50, 60, 70],
    "ledger_utc_offset_hours": 0,
    "seed": SEED,
    "n_draws": 4000,
    "hdi_prob": 0.95,
    "include_residual": True,
}

N_AGE_BANDS = 7


def validate_age_breaks(breaks):
    """Return breaks as a tuple of floats ending in infinity.

    Accepts the finite breakpoints with or without a trailing infinity.
    """
    try:
        vals = [float(b) for b in breaks]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"age_breaks must be numbers, got {breaks!r}") from exc
    if vals and math.isinf(vals[-1]):
        vals = vals[:-1]
    if len(vals) != N_AGE_BANDS:
        raise ConfigError(
            f"age_breaks must define {N_AGE_BANDS} bands "
            f"({N_AGE_BANDS} finite breakpoints), got {len(vals)}")
    if vals[0] != 0:
        raise ConfigError(f"age_breaks must start at 0, got {vals[0]}")
    if any(math.isnan(v) or math.isinf(v) for v in vals):
        raise ConfigError("age_breaks may only be infinite in the last position")
    if any(b <= a for a, b in zip(vals, vals[1:])):
        raise ConfigError(f"age_breaks must be strictly increasing: {vals}")
    return tuple(vals) + (math.inf,)


def validate_category_weights(weights):
    if not isinstance(weights, dict) or not weights:
        raise ConfigError("category_weights must be a non-empty mapping")
    clean = {}
    for cat, w in weights.items():
        try:
            w = float(w)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"weight for {cat!r} is not a number: {w!r}") from exc
        if not math.isfinite(w) or w < 1:
            raise ConfigError(f"weight for {cat!r} must be a finite number >= 1, got {w}")
        clean[str(cat)] = w
    return MappingProxyType(clean)


def _number(cfg, key):
    value = cfg[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigError(f"{key} must be a finite number, got {value!r}")
    return float(value)


def _integer(cfg, key):
    value = _number(cfg, key)
    if not value.is_integer():
        raise ConfigError(f"{key} must be a whole number, got {cfg[key]!r}")
    return int(value)


def validate_config(raw):
    cfg = dict(DEFAULTS)
    cfg.update(raw)

    if "category_weights" not in raw:
        raise ConfigError("config is missing category_weights")
    cfg["category_weights"] = validate_category_weights(raw["category_weights"])
    cfg["age_breaks"] = validate_age_breaks(cfg["age_breaks"])

    lo, hi = cfg["min_seconds"], cfg["max_seconds"]
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in (lo, hi)):
        raise ConfigError(f"window bounds must be finite numbers: {lo!r}, {hi!r}")
    if lo > hi:
        raise ConfigError(f"min_seconds ({lo}) exceeds max_seconds ({hi})")

    cfg["n_draws"] = _integer(cfg, "n_draws")
    if cfg["n_draws"] < 1:
        raise ConfigError("n_draws must be positive")
    cfg["seed"] = _integer(cfg, "seed")
    if cfg["seed"] < 0:
        raise ConfigError(f"seed must be non-negative, got {cfg['seed']}")
    cfg["hdi_prob"] = _number(cfg, "hdi_prob")
    if not 0 < cfg["hdi_prob"] < 1:
        raise ConfigError(f"hdi_prob must lie in (0, 1), got {cfg['hdi_prob']}")
    cfg["ledger_utc_offset_hours"] = _number(cfg, "ledger_utc_offset_hours")
    if not -24 < cfg["ledger_utc_offset_hours"] < 24:
        raise ConfigError(
            f"ledger_utc_offset_hours must lie in (-24, 24), got {cfg['ledger_utc_offset_hours']}")
    if not isinstance(cfg["include_residual"], bool):
        raise ConfigError(f"include_residual must be true or false, got {cfg['include_residual']!r}")

    return MappingProxyType(cfg)


def load_config(path):
    with open(path) as f:
        raw = json.load(f)
    return validate_config(raw)
