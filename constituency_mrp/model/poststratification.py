"""Post-stratification: posterior draws x population frame -> vote shares.

For every retained draw *s* the linear predictor of each frame cell is

    alpha[s] + X_cell . beta[s] + eta[s, area] (+ Z_area . gamma[s])

and the cell probability is its logistic transform.  Cell probabilities
are then averaged with population weights nationally and within each
area.  Point estimates are means over draws; the per-draw values are kept
for uncertainty summaries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import polars as pl
from scipy.special import expit

from constituency_mrp.config import AREA_COL, DEFAULT_INTERVAL, DEFAULT_N_SAMPLES
from constituency_mrp.errors import (
    ConvergenceError,
    DimensionMismatchError,
    EncodingError,
    InsufficientDrawsError,
    UndefinedAggregateError,
)
from constituency_mrp.features.engineering import FrameData
from constituency_mrp.model.posterior import PosteriorDraws

logger = logging.getLogger(__name__)


def inv_logit(x: np.ndarray) -> np.ndarray:
    """Logistic function, stable for large-magnitude inputs."""
    return expit(x)


def weighted_mean(values: np.ndarray, weights: np.ndarray) -> float:
    """Return ``sum(w * v) / sum(w)``.

    Raises
    ------
    DimensionMismatchError
        If *values* and *weights* differ in shape.
    UndefinedAggregateError
        If the weights sum to zero or are not all finite.
    """
    values = np.asarray(values, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if values.shape != weights.shape:
        raise DimensionMismatchError(
            f"values has shape {values.shape}, weights has shape {weights.shape}"
        )
    total = weights.sum()
    if not np.isfinite(total):
        raise UndefinedAggregateError("Weighted mean over missing or infinite weights")
    if total <= 0:
        raise UndefinedAggregateError("Weighted mean over zero total weight")
    return float(np.dot(weights, values) / total)


def thin_indices(n_available: int, n_samples: int) -> np.ndarray:
    """Evenly spaced, distinct draw indices covering all chains."""
    if n_samples > n_available:
        raise InsufficientDrawsError(
            f"Requested {n_samples} draws but only {n_available} are available"
        )
    if n_samples < 1:
        raise ValueError("n_samples must be at least 1")
    return np.round(np.linspace(0, n_available - 1, n_samples)).astype(np.int64)


@dataclass(frozen=True)
class AggregatedEstimate:
    """Per-draw and point vote-share estimates.

    Attributes
    ----------
    national_draws : np.ndarray, shape (S,)
        National weighted mean probability per draw.
    area_draws : np.ndarray, shape (S, A)
        Area weighted mean probability per draw.
    area_codes : tuple[str, ...]
        Codes of the ``A`` areas present in the frame, in column order.
    draw_indices : np.ndarray, shape (S,)
        Positions of the consumed draws in the posterior.
    """

    national_draws: np.ndarray
    area_draws: np.ndarray
    area_codes: tuple[str, ...]
    draw_indices: np.ndarray

    @property
    def n_samples(self) -> int:
        return self.national_draws.shape[0]

    @property
    def national(self) -> float:
        return float(self.national_draws.mean())

    @property
    def national_sd(self) -> float:
        return float(self.national_draws.std(ddof=1)) if self.n_samples > 1 else 0.0

    @property
    def area_means(self) -> np.ndarray:
        return self.area_draws.mean(axis=0)

    @property
    def area_sd(self) -> np.ndarray:
        if self.n_samples < 2:
            return np.zeros(len(self.area_codes))
        return self.area_draws.std(axis=0, ddof=1)

    def area_estimate(self, code: str) -> float:
        try:
            j = self.area_codes.index(code)
        except ValueError:
            raise KeyError(f"No estimate for area '{code}'") from None
        return float(self.area_draws[:, j].mean())

    def national_interval(self, prob: float = DEFAULT_INTERVAL) -> tuple[float, float]:
        """Equal-tailed interval of the national estimate across draws."""
        tail = (1.0 - prob) / 2.0
        lo, hi = np.quantile(self.national_draws, [tail, 1.0 - tail])
        return float(lo), float(hi)

    def to_frame(self, prob: float = DEFAULT_INTERVAL) -> pl.DataFrame:
        """Per-area table with ``estimate``, ``sd``, ``lower`` and ``upper``."""
        tail = (1.0 - prob) / 2.0
        lower, upper = np.quantile(self.area_draws, [tail, 1.0 - tail], axis=0)
        return pl.DataFrame(
            {
                AREA_COL: list(self.area_codes),
                "estimate": self.area_means,
                "sd": self.area_sd,
                "lower": lower,
                "upper": upper,
            }
        )


class PredictionAggregator:
    """Turn posterior draws and a frame into national and area estimates.

    Parameters
    ----------
    draws : PosteriorDraws
        Fitted posterior.  Must be flagged as converged.
    n_samples : int
        Number of draws to consume, at most ``draws.n_draws``.

    Raises
    ------
    ConvergenceError
        If *draws* are not flagged as converged.
    InsufficientDrawsError
        If *n_samples* exceeds the available draws.
    """

    def __init__(self, draws: PosteriorDraws, n_samples: int = DEFAULT_N_SAMPLES) -> None:
        if not draws.converged:
            raise ConvergenceError(
                f"Posterior draws are not converged (max R-hat {draws.max_r_hat:.3f})"
            )
        self.draw_indices = thin_indices(draws.n_draws, n_samples)
        self.draws = draws.select(self.draw_indices)
        logger.debug("Using %d of %d posterior draws", n_samples, draws.n_draws)

    @property
    def n_samples(self) -> int:
        return self.draws.n_draws

    def _area_effects(self, frame: FrameData) -> np.ndarray:
        """(S, J) area intercepts plus area-covariate contributions.

        The frame must be encoded with the area index the model was fitted
        on.  An equal index built separately (same codes, same order) is
        accepted.
        """
        draws = self.draws
        if frame.area_index != draws.area_index:
            fitted = set(draws.area_index.codes)
            unknown = [code for code in frame.area_index.codes if code not in fitted]
            raise EncodingError(
                "Frame was encoded with a different area index than the fitted "
                f"model (codes not fitted: {unknown[:10]})"
            )
        effects = draws.eta

        if draws.gamma is not None:
            if frame.Z_area is None:
                raise EncodingError("Model uses area covariates but the frame has none")
            gamma = draws.area_coefficients_for(frame.area_covariate_names)
            effects = effects + gamma @ frame.Z_area.T
        elif frame.Z_area is not None:
            raise EncodingError("Frame has area covariates but the model uses none")

        return effects

    def _cell_probabilities(
        self, frame: FrameData, beta: np.ndarray, effects: np.ndarray, s: int
    ) -> np.ndarray:
        """Probability of every frame cell under draw *s*."""
        linear = self.draws.alpha[s] + frame.X.values @ beta[s] + effects[s, frame.area_idx]
        return inv_logit(linear)

    def aggregate(self, frame: FrameData) -> AggregatedEstimate:
        """Post-stratify *frame*.

        Raises
        ------
        DimensionMismatchError
            If the frame's weights or area ids do not match its rows.
        EncodingError
            If the frame's columns, areas or area covariates do not match
            the fitted model.
        UndefinedAggregateError
            If any weight is missing or infinite, or if the frame or any
            area in it has zero total weight.
        """
        n_cells = frame.n_cells
        if frame.weights.shape != (n_cells,) or frame.area_idx.shape != (n_cells,):
            raise DimensionMismatchError(
                f"Frame has {n_cells} cells but weights {frame.weights.shape} "
                f"and area ids {frame.area_idx.shape}"
            )

        weights = np.asarray(frame.weights, dtype=float)
        if not np.all(np.isfinite(weights)):
            raise UndefinedAggregateError(
                f"{int(np.sum(~np.isfinite(weights)))} frame cell(s) have a missing "
                "or infinite population weight"
            )
        n_frame_areas = frame.area_index.n_areas
        present = np.unique(frame.area_idx)
        area_totals = np.bincount(frame.area_idx, weights=weights, minlength=n_frame_areas)[
            present
        ]
        empty = [frame.area_index.codes[j] for j, t in zip(present, area_totals) if t <= 0]
        if empty:
            raise UndefinedAggregateError(
                f"{len(empty)} area(s) have zero total population weight: {empty[:10]}"
            )

        beta = self.draws.coefficients_for(frame.X.schema)
        effects = self._area_effects(frame)

        n_samples = self.n_samples
        national = np.empty(n_samples)
        by_area = np.empty((n_samples, present.shape[0]))
        for s in range(n_samples):
            p = self._cell_probabilities(frame, beta, effects, s)
            national[s] = weighted_mean(p, weights)
            by_area[s] = (
                np.bincount(frame.area_idx, weights=weights * p, minlength=n_frame_areas)[present]
                / area_totals
            )

        national.setflags(write=False)
        by_area.setflags(write=False)
        estimate = AggregatedEstimate(
            national_draws=national,
            area_draws=by_area,
            area_codes=tuple(frame.area_index.codes[j] for j in present),
            draw_indices=self.draw_indices,
        )
        logger.info(
            "Post-stratified %d cells in %d areas over %d draws: national %.4f (sd %.4f)",
            n_cells,
            present.shape[0],
            n_samples,
            estimate.national,
            estimate.national_sd,
        )
        return estimate
