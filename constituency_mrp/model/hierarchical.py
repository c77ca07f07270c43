"""Hierarchical logistic vote model, fitted with PyMC 5+ NUTS sampling.

The latent probability that respondent *i* votes for the target party is a
logistic regression on:

* a global intercept
* reference-coded demographic indicators
* an area-level random intercept (non-centred, partial pooling)
* area-level covariates (extended model only)

This module is the PyMC implementation of
:class:`constituency_mrp.model.engine.PosteriorSamplingEngine`.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import arviz as az
import numpy as np
import pymc as pm

from constituency_mrp.config import (
    DEFAULT_CHAINS,
    DEFAULT_DRAWS,
    DEFAULT_RANDOM_SEED,
    DEFAULT_TARGET_ACCEPT,
    DEFAULT_TUNE,
    ESS_THRESHOLD,
    R_HAT_THRESHOLD,
)
from constituency_mrp.model.engine import (
    SamplingRequest,
    SamplingResult,
    available_chain_slots,
    fails_r_hat,
)
from constituency_mrp.model.specification import ModelSpecification, ModelVariant

logger = logging.getLogger(__name__)


def build_model(spec: ModelSpecification) -> pm.Model:
    """Construct the PyMC model for *spec*.

    Parameters
    ----------
    spec : ModelSpecification
        Model variant and training data.

    Returns
    -------
    pm.Model
        Compiled PyMC model (not yet sampled).

    Notes
    -----
    ``eta = eta_raw * tau`` is the non-centred form of
    ``eta ~ Normal(0, tau)``; ``eta`` is kept as a deterministic so the
    area intercepts appear in the posterior under their own name.
    """
    extended = spec.variant is ModelVariant.EXTENDED
    priors = spec.priors

    coords = {
        "obs": np.arange(spec.n_obs),
        "covariate": list(spec.schema.columns),
        "area": list(spec.area_index.codes),
    }
    if extended:
        coords["area_covariate"] = list(spec.area_covariate_names)

    with pm.Model(coords=coords) as model:
        # ------------------------------------------------------------------
        # Data containers
        # ------------------------------------------------------------------
        X_data = pm.Data("X", spec.X, dims=("obs", "covariate"))
        area_data = pm.Data("area_idx", spec.area_idx, dims="obs")
        y_data = pm.Data("y", spec.y.astype(float), dims="obs")

        # ------------------------------------------------------------------
        # Priors
        # ------------------------------------------------------------------
        alpha = pm.Normal("alpha", mu=0.0, sigma=priors.alpha_sigma)
        beta = pm.Normal("beta", mu=0.0, sigma=priors.beta_sigma, dims="covariate")

        # Area random intercepts (non-centred)
        tau = pm.HalfNormal("tau", sigma=priors.tau_sigma)
        eta_raw = pm.Normal("eta_raw", mu=0.0, sigma=1.0, dims="area")
        eta = pm.Deterministic("eta", eta_raw * tau, dims="area")

        # ------------------------------------------------------------------
        # Linear predictor
        # ------------------------------------------------------------------
        area_effect = eta
        if extended:
            Z_data = pm.Data("Z_area", spec.Z_area, dims=("area", "area_covariate"))
            gamma = pm.Normal(
                "gamma", mu=0.0, sigma=priors.gamma_sigma, dims="area_covariate"
            )
            area_effect = eta + pm.math.dot(Z_data, gamma)

        mu_logit = alpha + pm.math.dot(X_data, beta) + area_effect[area_data]

        # ------------------------------------------------------------------
        # Vote outcome likelihood
        # ------------------------------------------------------------------
        pm.Bernoulli("y_obs", logit_p=mu_logit, observed=y_data, dims="obs")

    return model


def sample_model(
    model: pm.Model,
    draws: int = DEFAULT_DRAWS,
    tune: int = DEFAULT_TUNE,
    chains: int = DEFAULT_CHAINS,
    target_accept: float = DEFAULT_TARGET_ACCEPT,
    random_seed: Optional[int] = DEFAULT_RANDOM_SEED,
    progressbar: bool = True,
    cores: Optional[int] = None,
) -> az.InferenceData:
    """Sample the posterior using NUTS.

    Parameters
    ----------
    model : pm.Model
        PyMC model as returned by :func:`build_model`.
    draws : int
        Number of posterior samples per chain.
    tune : int
        Number of tuning steps.
    chains : int
        Number of MCMC chains.
    target_accept : float
        Target acceptance rate for NUTS (0.95 recommended for hierarchical models).
    random_seed : int, optional
        Random seed for reproducibility.
    progressbar : bool
        Show a progress bar during sampling.
    cores : int, optional
        Chains run concurrently.  Defaults to, and is capped at,
        :func:`available_chain_slots`.

    Returns
    -------
    az.InferenceData
        Posterior trace with ``posterior``, ``sample_stats``, and
        ``observed_data`` groups.
    """
    slots = available_chain_slots()
    cores = min(chains, slots if cores is None else min(cores, slots))

    logger.info(
        "Sampling %d chain(s) x %d draws (%d tune) on %d core(s)", chains, draws, tune, cores
    )
    start = time.time()
    with model:
        trace = pm.sample(
            draws=draws,
            tune=tune,
            chains=chains,
            cores=cores,
            target_accept=target_accept,
            random_seed=random_seed,
            return_inferencedata=True,
            progressbar=progressbar,
        )
    logger.info("Sampling finished in %.1fs", time.time() - start)
    return trace


def max_r_hat(trace: az.InferenceData, var_names: list[str]) -> dict[str, float]:
    """Largest R-hat of each variable in *var_names*.

    A NaN in any component makes the variable's value NaN.
    """
    rhat = az.rhat(trace, var_names=var_names)
    return {name: float(np.max(rhat[name].values)) for name in var_names}


def min_ess_bulk(trace: az.InferenceData, var_names: list[str]) -> dict[str, float]:
    """Smallest bulk ESS of each variable in *var_names*."""
    ess = az.ess(trace, var_names=var_names, method="bulk")
    return {name: float(np.min(ess[name].values)) for name in var_names}


def check_convergence(
    trace: az.InferenceData,
    r_hat_threshold: float = R_HAT_THRESHOLD,
    ess_threshold: float = ESS_THRESHOLD,
    var_names: Optional[list[str]] = None,
) -> dict[str, list[str]]:
    """Flag variables whose worst component misses the R-hat or ESS bar.

    Parameters
    ----------
    trace : az.InferenceData
        Posterior trace from :func:`sample_model`.
    r_hat_threshold : float
        R-hat at or above which a variable is flagged (default 1.1).
    ess_threshold : float
        Minimum acceptable bulk ESS (default 400).
    var_names : list[str], optional
        Variables to check.  Defaults to all posterior variables.

    Returns
    -------
    dict[str, list[str]]
        ``"r_hat_warnings"`` and ``"ess_warnings"``, each listing the
        variables that failed.  An undefined (NaN) diagnostic fails.
    """
    if var_names is None:
        var_names = list(trace.posterior.data_vars)
    r_hat = max_r_hat(trace, var_names)
    ess = min_ess_bulk(trace, var_names)
    return {
        "r_hat_warnings": [
            name for name in var_names if fails_r_hat(r_hat[name], r_hat_threshold)
        ],
        "ess_warnings": [
            name
            for name in var_names
            if not (np.isfinite(ess[name]) and ess[name] >= ess_threshold)
        ],
    }


class PyMCSamplingEngine:
    """Posterior sampling backend built on PyMC's NUTS sampler."""

    def sample(self, request: SamplingRequest) -> SamplingResult:
        """Fit ``request.spec`` and return draws of the retained parameters."""
        spec = request.spec
        logger.info(
            "Fitting %s model: %d respondents, %d covariates, %d areas",
            spec.variant.value,
            spec.n_obs,
            spec.n_covariates,
            spec.n_areas,
        )
        model = build_model(spec)
        trace = sample_model(
            model,
            draws=request.iterations,
            tune=request.warmup,
            chains=request.chains,
            target_accept=request.target_accept,
            random_seed=request.random_seed,
            progressbar=request.progressbar,
        )

        names = request.param_names
        draws = {name: np.asarray(trace.posterior[name].values) for name in names}
        r_hat = max_r_hat(trace, names)

        diagnostics = check_convergence(trace, var_names=names)
        if diagnostics["r_hat_warnings"]:
            logger.warning(
                "R-hat >= %.2f or undefined for: %s",
                R_HAT_THRESHOLD,
                diagnostics["r_hat_warnings"],
            )
        if diagnostics["ess_warnings"]:
            logger.warning("Bulk ESS < %.0f for: %s", ESS_THRESHOLD, diagnostics["ess_warnings"])

        return SamplingResult(draws=draws, r_hat=r_hat, trace=trace)
