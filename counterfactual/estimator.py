"""
Hierarchical donation-amount model
==================================
log(amount) ~ response category (fixed) + age band + gender (random intercepts)

Why a multilevel model: the matched sample is small and lopsided. Some
(age band, gender) cells hold a handful of responses, some none. Random
intercepts let a thin cell borrow strength from the others (its estimate
is shrunk toward the overall mean) and give a sensible prediction for a
cell we never observed: the overall mean plus a fresh draw from the
group-level spread.

The fitting engine is statsmodels MixedLM (REML, crossed variance
components). Given its variance components, the joint Gaussian posterior
of fixed effects and group intercepts under a flat prior comes from
Henderson's mixed-model equations; draws from it (plus residual noise,
when requested) play the role of posterior-predictive draws downstream.

Everything random flows from one seeded generator, so a run is exactly
reproducible.
"""

import warnings

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .config import SEED
from .errors import FitConvergenceWarning, UnknownDemographic
from .strata import DEFAULT_BREAKS, UNKNOWN, add_strata

OBS_COLS = ["log_amount", "category", "age_band", "gender_group"]
CELL_COLS = ["category", "age_band", "gender_group"]
GROUPS = ["age_band", "gender_group"]
VAR_FLOOR = 1e-8


class FittedModel:
    """A fitted model: predict(cells) -> (n_draws, n_cells) log-amount draws."""

    n_draws = 0

    def predict(self, cells, include_residual=None):
        raise NotImplementedError


class Estimator:
    """fit(observations) -> FittedModel. observations has OBS_COLS."""

    def fit(self, observations):
        raise NotImplementedError


def prepare_observations(pairs, breaks=DEFAULT_BREAKS):
    """Matched pairs -> model frame (log_amount, category, age_band, gender_group).

    Rows with unknown demographics or a non-positive amount are dropped.
    """
    df = add_strata(pairs, breaks)
    unknown = (df["age_band"] == UNKNOWN) | (df["gender_group"] == UNKNOWN)
    if unknown.any():
        warnings.warn(
            f"{int(unknown.sum())} matched responses with unknown age or gender "
            f"left out of the model", UnknownDemographic, stacklevel=2)
    df = df[~unknown & (df["amount"] > 0)]
    return pd.DataFrame({
        "log_amount": np.log(df["amount"].to_numpy(dtype=float)),
        "category": df["response"].astype(str).to_numpy(),
        "age_band": df["age_band"].to_numpy(),
        "gender_group": df["gender_group"].to_numpy(),
        "amount": df["amount"].to_numpy(dtype=float),
    })


def _check_columns(df, cols, what):
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{what} is missing columns: {missing}")


def _indicators(values, levels):
    values = np.asarray(values, dtype=object)
    return (values[:, None] == np.asarray(levels, dtype=object)[None, :]).astype(float)


def _fixed_design(categories, levels):
    """Intercept + treatment-coded category (reference = levels[0])."""
    ind = _indicators(categories, levels)
    return np.column_stack([np.ones(len(ind)), ind[:, 1:]])


class MixedLMModel(FittedModel):

    def __init__(self, categories, levels, vcomp, scale, dof, mean, cov,
                 n_draws, seed, include_residual, diagnostics):
        self.categories = categories
        self.levels = levels          # {"age_band": [...], "gender_group": [...]}
        self.vcomp = vcomp            # {"age_band": var, "gender_group": var}
        self.scale = scale
        self.dof = dof
        self.mean = mean
        self.cov = cov
        self.n_draws = n_draws
        self.seed = seed
        self.include_residual = include_residual
        self.diagnostics = diagnostics

    @property
    def n_fixed(self):
        return len(self.categories)

    def _offsets(self):
        out, pos = {}, self.n_fixed
        for g in GROUPS:
            out[g] = pos
            pos += len(self.levels[g])
        return out

    def predict(self, cells, include_residual=None):
        _check_columns(cells, CELL_COLS, "cells")
        unseen = set(cells["category"]) - set(self.categories)
        if unseen:
            raise ValueError(f"no fitted effect for categories {sorted(unseen)}")
        if include_residual is None:
            include_residual = self.include_residual

        rng = np.random.default_rng(self.seed)
        theta = rng.multivariate_normal(self.mean, self.cov, size=self.n_draws)

        eta = theta[:, :self.n_fixed] @ _fixed_design(cells["category"], self.categories).T
        offsets = self._offsets()
        for g in GROUPS:
            seen = self.levels[g]
            wanted = sorted(set(cells[g]))
            effects = np.empty((self.n_draws, len(wanted)))
            for j, level in enumerate(wanted):
                if level in seen:
                    effects[:, j] = theta[:, offsets[g] + seen.index(level)]
                else:
                    # unseen level: fall back to the group-level distribution
                    effects[:, j] = rng.normal(0.0, np.sqrt(self.vcomp[g]), self.n_draws)
            codes = pd.Categorical(cells[g], categories=wanted).codes
            eta = eta + effects[:, codes]

        if include_residual:
            sigma2 = self.scale * self.dof / rng.chisquare(self.dof, self.n_draws)
            eta = eta + rng.standard_normal(eta.shape) * np.sqrt(sigma2)[:, None]
        return eta


class MixedLMEstimator(Estimator):

    def __init__(self, n_draws=4000, seed=SEED, include_residual=True,
                 reml=True, maxiter=200):
        self.n_draws = n_draws
        self.seed = seed
        self.include_residual = include_residual
        self.reml = reml
        self.maxiter = maxiter

    def _fit_engine(self, obs):
        data = obs[OBS_COLS].reset_index(drop=True).copy()
        categories = sorted(data["category"].unique())
        dummies = [f"cat_{i}" for i in range(1, len(categories))]
        for name, col in zip(dummies, _fixed_design(data["category"], categories)[:, 1:].T):
            data[name] = col
        data["fit_group"] = 0
        formula = "log_amount ~ " + (" + ".join(dummies) if dummies else "1")
        vc = {g: f"0 + C({g})" for g in GROUPS}

        model = smf.mixedlm(formula, data, groups="fit_group", re_formula="0", vc_formula=vc)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = model.fit(reml=self.reml, maxiter=self.maxiter)

        engine_warnings = []
        for w in caught:
            if issubclass(w.category, ConvergenceWarning):
                engine_warnings.append(str(w.message))
                warnings.warn(f"MixedLM: {w.message}", FitConvergenceWarning, stacklevel=3)
            else:
                warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)
        if not result.converged:
            engine_warnings.append("optimizer did not report convergence")
            warnings.warn("MixedLM: optimizer did not report convergence",
                          FitConvergenceWarning, stacklevel=3)
        return result, categories, engine_warnings

    def fit(self, observations):
        _check_columns(observations, OBS_COLS, "observations")
        obs = observations.dropna(subset=OBS_COLS)
        if len(obs) < 3:
            raise ValueError(f"need at least 3 observations to fit, got {len(obs)}")

        result, categories, engine_warnings = self._fit_engine(obs)
        vcomp = dict(zip(result.model.exog_vc.names, np.asarray(result.vcomp, dtype=float)))
        vcomp = {g: max(float(vcomp[g]), VAR_FLOOR) for g in GROUPS}
        scale = float(result.scale)

        # Henderson's mixed-model equations given the REML variance components
        levels = {g: sorted(obs[g].unique()) for g in GROUPS}
        X = _fixed_design(obs["category"], categories)
        W = np.hstack([X] + [_indicators(obs[g], levels[g]) for g in GROUPS])
        prior_prec = np.concatenate(
            [np.zeros(X.shape[1])] + [np.full(len(levels[g]), 1.0 / vcomp[g]) for g in GROUPS])
        precision = W.T @ W / scale + np.diag(prior_prec)
        cov = np.linalg.inv(precision)
        cov = (cov + cov.T) / 2
        mean = cov @ (W.T @ obs["log_amount"].to_numpy(dtype=float)) / scale

        diagnostics = {
            "n_obs": int(len(obs)),
            "converged": bool(result.converged),
            "warnings": engine_warnings,
            "fixed_effects": dict(zip(["Intercept"] + [f"category[{c}]" for c in categories[1:]],
                                      mean[:len(categories)].round(6).tolist())),
            "reference_category": categories[0],
            "variance_components": vcomp,
            "residual_variance": scale,
            "log_likelihood": float(result.llf) if np.isfinite(result.llf) else None,
        }
        return MixedLMModel(
            categories=categories, levels=levels, vcomp=vcomp, scale=scale,
            dof=max(len(obs) - X.shape[1], 1), mean=mean, cov=cov,
            n_draws=self.n_draws, seed=self.seed,
            include_residual=self.include_residual, diagnostics=diagnostics)


def fitted_values(model, observations):
    """Median predicted log amount per observation, without residual noise."""
    draws = model.predict(observations[CELL_COLS].reset_index(drop=True), include_residual=False)
    return pd.Series(np.median(draws, axis=0), index=observations.index, name="fitted")
