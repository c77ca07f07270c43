"""Immutable posterior draws, tied to the encodings used at fit time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import numpy as np

from constituency_mrp.config import R_HAT_THRESHOLD
from constituency_mrp.errors import DimensionMismatchError, EncodingError
from constituency_mrp.features.encoding import ColumnSchema
from constituency_mrp.features.engineering import AreaIndex
from constituency_mrp.model.engine import SamplingResult, fails_r_hat
from constituency_mrp.model.specification import ModelSpecification

logger = logging.getLogger(__name__)


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.float64, copy=True)
    out.setflags(write=False)
    return out


def _flatten(arr: np.ndarray) -> np.ndarray:
    """(chain, iteration, ...) -> (chain * iteration, ...), chain-major."""
    arr = np.asarray(arr)
    return arr.reshape(arr.shape[0] * arr.shape[1], *arr.shape[2:])


@dataclass(frozen=True)
class PosteriorDraws:
    """Flattened posterior draws of the vote model.

    Attributes
    ----------
    alpha : np.ndarray, shape (S,)
        Global intercept.
    beta : np.ndarray, shape (S, K)
        Coefficients, columns ordered as ``schema.columns``.
    eta : np.ndarray, shape (S, J)
        Area random intercepts, columns ordered as ``area_index.codes``.
    tau : np.ndarray, shape (S,)
        Scale of the area intercepts.
    schema : ColumnSchema
        Column schema of the training design matrix.
    area_index : AreaIndex
        Area mapping used at fit time.
    gamma : np.ndarray or None, shape (S, L)
        Area-covariate coefficients (extended model only).
    area_covariate_names : tuple[str, ...]
    r_hat : Mapping[str, float]
        Largest R-hat per parameter, as reported by the engine.
    converged : bool
        Whether every retained parameter met the R-hat bar.

    All arrays are read-only copies.
    """

    alpha: np.ndarray
    beta: np.ndarray
    eta: np.ndarray
    tau: np.ndarray
    schema: ColumnSchema
    area_index: AreaIndex
    gamma: Optional[np.ndarray] = None
    area_covariate_names: tuple[str, ...] = ()
    r_hat: Mapping[str, float] = field(default_factory=dict)
    converged: bool = True

    def __post_init__(self) -> None:
        alpha = _frozen(self.alpha).reshape(-1)
        n = alpha.shape[0]
        beta = _frozen(self.beta)
        eta = _frozen(self.eta)
        tau = _frozen(self.tau).reshape(-1)

        if beta.shape != (n, self.schema.n_columns):
            raise DimensionMismatchError(
                f"beta has shape {beta.shape}, expected ({n}, {self.schema.n_columns})"
            )
        if eta.shape != (n, self.area_index.n_areas):
            raise DimensionMismatchError(
                f"eta has shape {eta.shape}, expected ({n}, {self.area_index.n_areas})"
            )
        if tau.shape != (n,):
            raise DimensionMismatchError(f"tau has shape {tau.shape}, expected ({n},)")

        gamma = None
        if self.gamma is not None:
            gamma = _frozen(self.gamma)
            if gamma.shape != (n, len(self.area_covariate_names)):
                raise DimensionMismatchError(
                    f"gamma has shape {gamma.shape}, expected "
                    f"({n}, {len(self.area_covariate_names)})"
                )

        object.__setattr__(self, "alpha", alpha)
        object.__setattr__(self, "beta", beta)
        object.__setattr__(self, "eta", eta)
        object.__setattr__(self, "tau", tau)
        object.__setattr__(self, "gamma", gamma)
        object.__setattr__(self, "area_covariate_names", tuple(self.area_covariate_names))
        object.__setattr__(self, "r_hat", MappingProxyType(dict(self.r_hat)))

    @classmethod
    def from_result(
        cls,
        result: SamplingResult,
        spec: ModelSpecification,
        r_hat_threshold: float = R_HAT_THRESHOLD,
    ) -> "PosteriorDraws":
        """Collect draws from an engine response.

        The ``converged`` flag is set when every retained parameter has an
        R-hat below *r_hat_threshold*; a parameter with a missing or NaN
        R-hat counts as not converged.
        """
        names = spec.param_names
        missing = [name for name in names if name not in result.draws]
        if missing:
            raise DimensionMismatchError(f"Engine returned no draws for: {missing}")

        unchecked = [name for name in names if name not in result.r_hat]
        failing = [
            name for name in names if fails_r_hat(result.r_hat.get(name), r_hat_threshold)
        ]
        if unchecked:
            logger.warning("No R-hat reported for %s", unchecked)
        if failing:
            logger.warning(
                "Not converged (R-hat >= %.2f or undefined): %s", r_hat_threshold, failing
            )
        converged = not failing

        gamma = result.draws.get("gamma")
        return cls(
            alpha=_flatten(result.draws["alpha"]),
            beta=_flatten(result.draws["beta"]),
            eta=_flatten(result.draws["eta"]),
            tau=_flatten(result.draws["tau"]),
            schema=spec.schema,
            area_index=spec.area_index,
            gamma=None if gamma is None else _flatten(gamma),
            area_covariate_names=tuple(spec.area_covariate_names),
            r_hat={name: result.r_hat[name] for name in names if name in result.r_hat},
            converged=converged,
        )

    @property
    def n_draws(self) -> int:
        return self.alpha.shape[0]

    @property
    def max_r_hat(self) -> float:
        return float(np.max(list(self.r_hat.values()))) if self.r_hat else float("nan")

    def coefficients_for(self, schema: ColumnSchema) -> np.ndarray:
        """β draws with columns ordered as ``schema.columns``.

        Columns are matched by name, so a reordered but otherwise identical
        schema is accepted.

        Raises
        ------
        EncodingError
            If the column sets differ.
        """
        fitted = self.schema.column_index
        unknown = [c for c in schema.columns if c not in fitted]
        unused = [c for c in self.schema.columns if c not in schema.column_index]
        if unknown or unused:
            raise EncodingError(
                "Prediction columns do not match the fitted columns: "
                f"not fitted {unknown}, not supplied {unused}"
            )
        return self.beta[:, [fitted[c] for c in schema.columns]]

    def area_coefficients_for(self, names: Sequence[str]) -> np.ndarray:
        """γ draws with columns ordered as *names*.

        Raises
        ------
        EncodingError
            If the model has no area coefficients or the names differ.
        """
        if self.gamma is None:
            raise EncodingError("Posterior has no area-covariate coefficients")
        position = {name: i for i, name in enumerate(self.area_covariate_names)}
        if set(names) != set(position) or len(names) != len(position):
            raise EncodingError(
                f"Area covariates {list(names)} do not match fitted "
                f"{list(self.area_covariate_names)}"
            )
        return self.gamma[:, [position[n] for n in names]]

    def select(self, indices: Sequence[int]) -> "PosteriorDraws":
        """Return the draws at *indices* as a new object."""
        idx = np.asarray(indices, dtype=np.int64)
        return replace(
            self,
            alpha=self.alpha[idx],
            beta=self.beta[idx],
            eta=self.eta[idx],
            tau=self.tau[idx],
            gamma=None if self.gamma is None else self.gamma[idx],
        )
