"""Posterior analysis and explainability helpers.

Uses ArviZ for trace diagnostics and posterior summaries.
"""

from __future__ import annotations

from typing import Optional

import arviz as az
import numpy as np
import pandas as pd

from constituency_mrp.config import DEFAULT_INTERVAL, EXTENDED_PARAMS
from constituency_mrp.model.posterior import PosteriorDraws
from constituency_mrp.model.poststratification import AggregatedEstimate


def summarize_posterior(
    trace: az.InferenceData,
    var_names: Optional[list[str]] = None,
) -> pd.DataFrame:
    """Return a tidy ArviZ summary DataFrame for selected variables.

    Parameters
    ----------
    trace : az.InferenceData
        Posterior samples from :func:`constituency_mrp.model.hierarchical.sample_model`.
    var_names : list[str], optional
        Variable names to include.  If ``None``, summarises the retained
        model parameters present in the trace.

    Returns
    -------
    pd.DataFrame
        ArviZ summary with columns ``mean``, ``sd``, ``hdi_3%``, ``hdi_97%``,
        ``r_hat``, ``ess_bulk``.
    """
    if var_names is None:
        var_names = [v for v in EXTENDED_PARAMS if v in trace.posterior]

    return az.summary(trace, var_names=var_names, round_to=4)


def coefficient_table(draws: PosteriorDraws) -> pd.DataFrame:
    """Posterior summary of every fixed-effect coefficient by column name.

    Parameters
    ----------
    draws : PosteriorDraws
        Posterior draws.

    Returns
    -------
    pd.DataFrame
        Columns ``feature``, ``mean``, ``sd`` and ``mean_abs_coef``, sorted
        descending by ``mean_abs_coef``.  Area-covariate coefficients are
        prefixed ``area:``.
    """
    rows: list[dict] = []

    for name, col in zip(draws.schema.columns, draws.beta.T):
        rows.append(
            {
                "feature": name,
                "mean": float(col.mean()),
                "sd": float(col.std()),
                "mean_abs_coef": float(np.abs(col).mean()),
            }
        )

    if draws.gamma is not None:
        for name, col in zip(draws.area_covariate_names, draws.gamma.T):
            rows.append(
                {
                    "feature": f"area:{name}",
                    "mean": float(col.mean()),
                    "sd": float(col.std()),
                    "mean_abs_coef": float(np.abs(col).mean()),
                }
            )

    df = pd.DataFrame(rows, columns=["feature", "mean", "sd", "mean_abs_coef"])
    df = df.sort_values("mean_abs_coef", ascending=False)
    df.reset_index(drop=True, inplace=True)
    return df


def area_estimate_table(
    estimate: AggregatedEstimate,
    interval: float = DEFAULT_INTERVAL,
) -> pd.DataFrame:
    """Per-area post-stratified estimates with uncertainty.

    Parameters
    ----------
    estimate : AggregatedEstimate
        Output of :meth:`PredictionAggregator.aggregate`.
    interval : float
        Mass of the equal-tailed interval across draws.

    Returns
    -------
    pd.DataFrame
        DataFrame with columns ``area_code``, ``estimate``, ``sd``,
        ``lower``, ``upper``, sorted by ``estimate`` descending.
    """
    df = estimate.to_frame(prob=interval).to_pandas()
    df = df.sort_values("estimate", ascending=False)
    df.reset_index(drop=True, inplace=True)
    return df
