"""Evaluation metrics for area-level vote-share estimates.

Includes bias, RMSE, Pearson correlation and a linear calibration fit of
observed on predicted shares.  All metrics are deterministic.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

import numpy as np
import polars as pl

from constituency_mrp.config import AREA_COL
from constituency_mrp.errors import DimensionMismatchError

logger = logging.getLogger(__name__)


def _paired(observed: np.ndarray, predicted: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    observed = np.asarray(observed, dtype=float)
    predicted = np.asarray(predicted, dtype=float)
    if observed.shape != predicted.shape or observed.ndim != 1:
        raise DimensionMismatchError(
            f"observed has shape {observed.shape}, predicted has shape {predicted.shape}"
        )
    if observed.size == 0:
        raise DimensionMismatchError("No areas to score")
    return observed, predicted


def bias(observed: np.ndarray, predicted: np.ndarray) -> float:
    """Mean signed error ``mean(observed - predicted)``.

    Positive values mean the estimates are too low on average.
    """
    observed, predicted = _paired(observed, predicted)
    return float(np.mean(observed - predicted))


def rmse(observed: np.ndarray, predicted: np.ndarray) -> float:
    """Root-mean-squared error."""
    observed, predicted = _paired(observed, predicted)
    return float(np.sqrt(np.mean((observed - predicted) ** 2)))


def correlation(observed: np.ndarray, predicted: np.ndarray) -> float:
    """Pearson correlation; ``nan`` when either vector is constant."""
    observed, predicted = _paired(observed, predicted)
    if observed.size < 2 or np.ptp(observed) == 0 or np.ptp(predicted) == 0:
        return float("nan")
    return float(np.corrcoef(observed, predicted)[0, 1])


def calibration_fit(observed: np.ndarray, predicted: np.ndarray) -> tuple[float, float]:
    """Least-squares fit of ``observed = intercept + slope * predicted``.

    Returns
    -------
    tuple[float, float]
        ``(slope, intercept)``; both ``nan`` when *predicted* is constant.
    """
    observed, predicted = _paired(observed, predicted)
    if observed.size < 2 or np.ptp(predicted) == 0:
        return float("nan"), float("nan")
    centred = predicted - predicted.mean()
    slope = float(np.dot(centred, observed - observed.mean()) / np.dot(centred, centred))
    intercept = float(observed.mean() - slope * predicted.mean())
    return slope, intercept


@dataclass(frozen=True)
class ReconciledAreas:
    """Predicted and observed shares joined on area code."""

    area_codes: list[str]
    predicted: np.ndarray
    observed: np.ndarray
    n_dropped_predicted: int
    n_dropped_observed: int

    @property
    def n_dropped(self) -> int:
        return self.n_dropped_predicted + self.n_dropped_observed


def reconcile(
    predicted: pl.DataFrame,
    observed: pl.DataFrame,
    predicted_col: str = "estimate",
    observed_col: str = "observed",
) -> ReconciledAreas:
    """Inner-join estimates and observations on ``area_code``.

    Areas present on only one side are dropped and counted.  A missing
    observed share means the party did not stand there and is scored as an
    explicit 0.

    Raises
    ------
    DimensionMismatchError
        If either side has duplicated area codes, an estimate is missing,
        or no area survives the join.
    """
    for name, df in (("predicted", predicted), ("observed", observed)):
        if df.height != df[AREA_COL].n_unique():
            raise DimensionMismatchError(f"{name} table has duplicated area codes")
    estimates = predicted[predicted_col].cast(pl.Float64)
    if estimates.null_count() > 0 or estimates.is_nan().any():
        raise DimensionMismatchError(f"predicted table has missing values in '{predicted_col}'")

    n_absent = observed[observed_col].null_count()
    if n_absent > 0:
        logger.info("%d area(s) with no observed share scored as 0", n_absent)

    joined = (
        predicted.select(pl.col(AREA_COL), pl.col(predicted_col).alias("_pred"))
        .join(
            observed.select(
                pl.col(AREA_COL), pl.col(observed_col).fill_null(0.0).alias("_obs")
            ),
            on=AREA_COL,
            how="inner",
        )
        .sort(AREA_COL)
    )
    if joined.height == 0:
        raise DimensionMismatchError("Predicted and observed tables share no areas")

    n_drop_pred = predicted.height - joined.height
    n_drop_obs = observed.height - joined.height
    if n_drop_pred or n_drop_obs:
        logger.warning(
            "Reconciliation dropped %d predicted-only and %d observed-only area(s)",
            n_drop_pred,
            n_drop_obs,
        )

    return ReconciledAreas(
        area_codes=joined[AREA_COL].to_list(),
        predicted=joined["_pred"].cast(pl.Float64).to_numpy(),
        observed=joined["_obs"].cast(pl.Float64).to_numpy(),
        n_dropped_predicted=n_drop_pred,
        n_dropped_observed=n_drop_obs,
    )


@dataclass(frozen=True)
class ValidationReport:
    """Accuracy of area estimates against observed results."""

    n_areas: int
    n_dropped: int
    bias: float
    rmse: float
    correlation: float
    calibration_slope: float
    calibration_intercept: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def evaluate_estimates(
    observed: np.ndarray,
    predicted: np.ndarray,
    n_dropped: int = 0,
) -> ValidationReport:
    """Compute all validation metrics for aligned vectors.

    Parameters
    ----------
    observed : np.ndarray, shape (n,)
        Observed vote shares in [0, 1].
    predicted : np.ndarray, shape (n,)
        Estimated vote shares in [0, 1], same area order.
    n_dropped : int
        Areas dropped during reconciliation, carried into the report.
    """
    slope, intercept = calibration_fit(observed, predicted)
    return ValidationReport(
        n_areas=int(np.asarray(observed).shape[0]),
        n_dropped=n_dropped,
        bias=bias(observed, predicted),
        rmse=rmse(observed, predicted),
        correlation=correlation(observed, predicted),
        calibration_slope=slope,
        calibration_intercept=intercept,
    )


def validate_area_estimates(
    predicted: pl.DataFrame,
    observed: pl.DataFrame,
    predicted_col: str = "estimate",
    observed_col: str = "observed",
) -> ValidationReport:
    """Reconcile by area code, then score.

    Parameters
    ----------
    predicted : pl.DataFrame
        ``area_code`` and *predicted_col*, e.g.
        :meth:`constituency_mrp.model.poststratification.AggregatedEstimate.to_frame`.
    observed : pl.DataFrame
        ``area_code`` and *observed_col*, e.g.
        :func:`constituency_mrp.data.ingestion.observed_shares`.
    """
    matched = reconcile(predicted, observed, predicted_col, observed_col)
    return evaluate_estimates(matched.observed, matched.predicted, n_dropped=matched.n_dropped)
