"""Declarative specification of the hierarchical logistic vote model.

Base model::

    logit P(y_i = 1) = alpha + X_i beta + eta[area_i]
    alpha   ~ Normal(0, 1)
    beta_k  ~ Normal(0, 1)
    eta_j   ~ Normal(0, tau)
    tau     ~ HalfNormal(1)

The extended model adds ``Z[area_i] gamma`` with ``gamma_l ~ Normal(0, 1)``,
where ``Z`` holds area-level covariates shared by everyone in an area.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from constituency_mrp.config import BASE_PARAMS, EXTENDED_PARAMS
from constituency_mrp.errors import DimensionMismatchError
from constituency_mrp.features.encoding import ColumnSchema
from constituency_mrp.features.engineering import AreaIndex, ModelData


class ModelVariant(str, Enum):
    BASE = "base"
    EXTENDED = "extended"


@dataclass(frozen=True)
class Priors:
    """Prior scales; all priors are centred at zero."""

    alpha_sigma: float = 1.0
    beta_sigma: float = 1.0
    gamma_sigma: float = 1.0
    tau_sigma: float = 1.0


@dataclass
class ModelSpecification:
    """Everything the sampling engine needs to fit one model variant.

    Attributes
    ----------
    variant : ModelVariant
    X : np.ndarray, shape (n_obs, n_covariates)
        Individual-level design matrix.
    y : np.ndarray, shape (n_obs,)
        Binary outcome.
    area_idx : np.ndarray, shape (n_obs,)
        Contiguous zero-based area index of each respondent.
    n_areas : int
    schema : ColumnSchema
        Column semantics of ``X``.
    area_index : AreaIndex
        Code mapping behind ``area_idx``.
    Z_area : np.ndarray or None, shape (n_areas, n_area_covariates)
        Area-level covariates (extended model only).
    area_covariate_names : list[str]
    priors : Priors
    """

    variant: ModelVariant
    X: np.ndarray
    y: np.ndarray
    area_idx: np.ndarray
    n_areas: int
    schema: ColumnSchema
    area_index: AreaIndex
    Z_area: Optional[np.ndarray] = None
    area_covariate_names: list[str] = field(default_factory=list)
    priors: Priors = field(default_factory=Priors)

    def __post_init__(self) -> None:
        n = self.X.shape[0]
        if self.y.shape != (n,) or self.area_idx.shape != (n,):
            raise DimensionMismatchError(
                f"X has {n} rows but y has shape {self.y.shape} "
                f"and area_idx has shape {self.area_idx.shape}"
            )
        if self.X.shape[1] != self.schema.n_columns:
            raise DimensionMismatchError(
                f"X has {self.X.shape[1]} columns, schema declares {self.schema.n_columns}"
            )
        if self.n_areas != self.area_index.n_areas:
            raise DimensionMismatchError("n_areas does not match the area index")
        if n and (self.area_idx.min() < 0 or self.area_idx.max() >= self.n_areas):
            raise DimensionMismatchError("area_idx out of range 0..n_areas-1")

        if self.variant is ModelVariant.EXTENDED:
            if self.Z_area is None or not self.area_covariate_names:
                raise ValueError("Extended model requires area-level covariates")
            if self.Z_area.shape != (self.n_areas, len(self.area_covariate_names)):
                raise DimensionMismatchError(
                    f"Z_area has shape {self.Z_area.shape}, expected "
                    f"({self.n_areas}, {len(self.area_covariate_names)})"
                )
        elif self.Z_area is not None:
            raise ValueError("Base model takes no area-level covariates")

    @property
    def n_obs(self) -> int:
        return self.X.shape[0]

    @property
    def n_covariates(self) -> int:
        return self.X.shape[1]

    @property
    def n_area_covariates(self) -> int:
        return 0 if self.Z_area is None else self.Z_area.shape[1]

    @property
    def Z(self) -> Optional[np.ndarray]:
        """Area covariates broadcast to individual rows."""
        if self.Z_area is None:
            return None
        return self.Z_area[self.area_idx]

    @property
    def param_names(self) -> list[str]:
        """Parameters the engine must retain."""
        if self.variant is ModelVariant.EXTENDED:
            return list(EXTENDED_PARAMS)
        return list(BASE_PARAMS)

    def data_dict(self) -> dict:
        """Data block in the conventional ``N``/``K``/``J`` naming."""
        data = {
            "N": self.n_obs,
            "K": self.n_covariates,
            "J": self.n_areas,
            "X": self.X,
            "y": self.y,
            "area": self.area_idx + 1,  # 1..J
        }
        if self.variant is ModelVariant.EXTENDED:
            data["L"] = self.n_area_covariates
            data["Z"] = self.Z
        return data


def build_specification(
    data: ModelData,
    variant: Optional[ModelVariant] = None,
    priors: Optional[Priors] = None,
) -> ModelSpecification:
    """Build the specification for *data*.

    The variant defaults to ``EXTENDED`` when *data* carries area-level
    covariates and ``BASE`` otherwise.
    """
    if variant is None:
        variant = ModelVariant.EXTENDED if data.Z_area is not None else ModelVariant.BASE
    extended = variant is ModelVariant.EXTENDED
    return ModelSpecification(
        variant=variant,
        X=np.asarray(data.X.values),
        y=np.asarray(data.y),
        area_idx=np.asarray(data.area_idx),
        n_areas=data.area_index.n_areas,
        schema=data.X.schema,
        area_index=data.area_index,
        Z_area=data.Z_area if extended else None,
        area_covariate_names=list(data.area_covariate_names) if extended else [],
        priors=priors if priors is not None else Priors(),
    )
