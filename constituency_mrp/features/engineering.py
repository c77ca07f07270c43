"""Feature engineering: model-ready arrays for fitting and post-stratification.

The area index and the area-covariate scaler are built once, at fit time,
and passed explicitly to the prediction path.  Uses scikit-learn only for
scaling area-level covariates, never for the core model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np
import polars as pl
from sklearn.preprocessing import StandardScaler

from constituency_mrp.config import AREA_COL, OUTCOME_COL, RESPONDENT_COL, WEIGHT_COL
from constituency_mrp.errors import EncodingError
from constituency_mrp.features.encoding import DesignMatrix, DesignMatrixBuilder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AreaIndex:
    """Stable mapping from raw area codes to contiguous indices ``0..n-1``.

    Attributes
    ----------
    codes : tuple[str, ...]
        Area codes in index order.
    """

    codes: tuple[str, ...]

    def __post_init__(self) -> None:
        if len(set(self.codes)) != len(self.codes):
            raise ValueError("AreaIndex codes must be unique")

    @classmethod
    def from_codes(
        cls,
        codes: Iterable[str],
        extra_codes: Optional[Iterable[str]] = None,
    ) -> "AreaIndex":
        """Build an index from the observed area codes.

        Parameters
        ----------
        codes : iterable of str
            Area codes observed in the survey (duplicates allowed).
        extra_codes : iterable of str, optional
            Further areas to index, typically frame areas with no
            respondents.  Their random intercepts are informed by the
            hierarchical prior only.
        """
        observed = set(codes)
        if extra_codes is not None:
            observed |= set(extra_codes)
        return cls(tuple(sorted(observed)))

    @cached_property
    def positions(self) -> Mapping[str, int]:
        return MappingProxyType({code: i for i, code in enumerate(self.codes)})

    @property
    def n_areas(self) -> int:
        return len(self.codes)

    def lookup(self, codes: Sequence[str]) -> np.ndarray:
        """Map area codes to indices.

        Raises
        ------
        EncodingError
            If any code was not indexed at fit time.
        """
        positions = self.positions
        unknown = sorted({c for c in codes if c not in positions})
        if unknown:
            shown = unknown[:10]
            raise EncodingError(
                f"{len(unknown)} area code(s) not in the fitted area index: {shown}"
            )
        return np.array([positions[c] for c in codes], dtype=np.int64)


@dataclass
class AreaCovariates:
    """Standardised area-level covariates for the extended model.

    Attributes
    ----------
    names : list[str]
        Covariate column names, in matrix column order.
    codes : list[str]
        Area codes of the rows of ``values``.
    values : np.ndarray, shape (n_table_areas, n_covariates)
        Scaled covariates.
    scaler : StandardScaler
        Scaler fitted on the area table; reused unchanged for prediction.
    """

    names: list[str]
    codes: list[str]
    values: np.ndarray
    scaler: StandardScaler = field(repr=False)

    @classmethod
    def from_table(
        cls,
        areas: pl.DataFrame,
        columns: list[str],
        scaler: Optional[StandardScaler] = None,
        fit_scaler: bool = True,
    ) -> "AreaCovariates":
        """Extract and scale *columns* from an area table.

        Parameters
        ----------
        areas : pl.DataFrame
            One row per area with ``area_code`` and the covariate columns.
        columns : list[str]
            Covariates to use, e.g. prior vote share or demographic shares.
        scaler : StandardScaler, optional
            Pre-fitted scaler.  A new one is created when ``None``.
        fit_scaler : bool
            Whether to fit the scaler on *areas*.
        """
        missing = [c for c in columns if c not in areas.columns]
        if missing:
            raise EncodingError(f"Area table is missing covariate columns: {missing}")

        raw = areas.select(columns).cast(pl.Float64).to_numpy()
        if scaler is None:
            scaler = StandardScaler()
        values = scaler.fit_transform(raw) if fit_scaler else scaler.transform(raw)

        return cls(
            names=list(columns),
            codes=areas[AREA_COL].cast(pl.String).to_list(),
            values=np.asarray(values, dtype=np.float64),
            scaler=scaler,
        )

    @property
    def n_covariates(self) -> int:
        return len(self.names)

    def for_areas(self, area_index: AreaIndex) -> np.ndarray:
        """Return covariate rows aligned to *area_index* order.

        Raises
        ------
        EncodingError
            If an indexed area has no row, or has a missing covariate.
        """
        row_of = {code: i for i, code in enumerate(self.codes)}
        absent = [c for c in area_index.codes if c not in row_of]
        if absent:
            raise EncodingError(
                f"{len(absent)} indexed area(s) have no area-level covariates: {absent[:10]}"
            )
        aligned = self.values[[row_of[c] for c in area_index.codes]]
        incomplete = [c for c, row in zip(area_index.codes, aligned) if np.isnan(row).any()]
        if incomplete:
            raise EncodingError(
                f"{len(incomplete)} area(s) have missing covariate values: {incomplete[:10]}"
            )
        return aligned


@dataclass
class ModelData:
    """Model-ready training arrays.

    Attributes
    ----------
    X : DesignMatrix, shape (n_obs, n_covariates)
        Individual-level indicator matrix.
    y : np.ndarray, shape (n_obs,), dtype int
        Binary vote outcome (1 = target party).
    area_idx : np.ndarray, shape (n_obs,), dtype int
        Index of each respondent's area in ``area_index``.
    area_index : AreaIndex
        Area code mapping, shared with the prediction path.
    Z_area : np.ndarray or None, shape (n_areas, n_area_covariates)
        Area-level covariates per indexed area (extended model only).
    area_covariate_names : list[str]
        Names of the columns of ``Z_area``.
    respondent_ids : list[str]
        Respondent identifiers in row order.
    """

    X: DesignMatrix
    y: np.ndarray
    area_idx: np.ndarray
    area_index: AreaIndex
    Z_area: Optional[np.ndarray] = None
    area_covariate_names: list[str] = field(default_factory=list)
    respondent_ids: list[str] = field(default_factory=list)

    @property
    def n_obs(self) -> int:
        return self.X.n_rows

    @property
    def Z(self) -> Optional[np.ndarray]:
        """Area covariates broadcast to respondent rows."""
        if self.Z_area is None:
            return None
        return self.Z_area[self.area_idx]


@dataclass
class FrameData:
    """Post-stratification frame encoded with the fit-time schema and index.

    Attributes
    ----------
    X : DesignMatrix, shape (n_cells, n_covariates)
    weights : np.ndarray, shape (n_cells,)
        Population weight of each cell.
    area_idx : np.ndarray, shape (n_cells,), dtype int
        Index of each cell's area in the fit-time ``area_index``.
    area_index : AreaIndex
        The same object used when fitting.
    Z_area : np.ndarray or None, shape (n_areas, n_area_covariates)
    area_covariate_names : list[str]
    """

    X: DesignMatrix
    weights: np.ndarray
    area_idx: np.ndarray
    area_index: AreaIndex
    Z_area: Optional[np.ndarray] = None
    area_covariate_names: list[str] = field(default_factory=list)

    @property
    def n_cells(self) -> int:
        return self.X.n_rows

    @property
    def Z(self) -> Optional[np.ndarray]:
        if self.Z_area is None:
            return None
        return self.Z_area[self.area_idx]


def build_model_data(
    survey: pl.DataFrame,
    builder: DesignMatrixBuilder,
    area_index: Optional[AreaIndex] = None,
    area_covariates: Optional[AreaCovariates] = None,
    extra_area_codes: Optional[Iterable[str]] = None,
) -> ModelData:
    """Convert a cleaned survey into model-ready arrays.

    Parameters
    ----------
    survey : pl.DataFrame
        Cleaned survey as returned by
        :func:`constituency_mrp.data.ingestion.prepare_survey`.
    builder : DesignMatrixBuilder
        Encoder whose schema will also be used for the frame.
    area_index : AreaIndex, optional
        Pre-built area index.  Built from the survey's area codes (plus
        *extra_area_codes*) when ``None``.
    area_covariates : AreaCovariates, optional
        Area-level covariates; supplying them selects the extended model.
    extra_area_codes : iterable of str, optional
        Additional areas to index, see :meth:`AreaIndex.from_codes`.

    Returns
    -------
    ModelData
    """
    X = builder.encode(survey)
    area_codes = survey[AREA_COL].cast(pl.String).to_list()
    if area_index is None:
        area_index = AreaIndex.from_codes(area_codes, extra_codes=extra_area_codes)
    area_idx = area_index.lookup(area_codes)

    Z_area = None
    names: list[str] = []
    if area_covariates is not None:
        Z_area = area_covariates.for_areas(area_index)
        names = list(area_covariates.names)

    y = survey[OUTCOME_COL].to_numpy().astype(np.int32)
    respondent_ids = (
        survey[RESPONDENT_COL].cast(pl.String).to_list() if RESPONDENT_COL in survey.columns else []
    )

    logger.info(
        "Model data: %d respondents, %d design columns, %d areas",
        X.n_rows,
        X.schema.n_columns,
        area_index.n_areas,
    )

    return ModelData(
        X=X,
        y=y,
        area_idx=area_idx,
        area_index=area_index,
        Z_area=Z_area,
        area_covariate_names=names,
        respondent_ids=respondent_ids,
    )


def build_frame_data(
    frame: pl.DataFrame,
    builder: DesignMatrixBuilder,
    area_index: AreaIndex,
    area_covariates: Optional[AreaCovariates] = None,
) -> FrameData:
    """Encode a post-stratification frame for prediction.

    *builder* and *area_index* must be the objects used to build the
    training :class:`ModelData`.

    Raises
    ------
    EncodingError
        If a frame cell holds an undeclared level or an area code that was
        not indexed at fit time.
    ValueError
        If any cell weight is missing, infinite or negative.
    """
    X = builder.encode(frame)
    area_idx = area_index.lookup(frame[AREA_COL].cast(pl.String).to_list())

    weights = frame[WEIGHT_COL].cast(pl.Float64).to_numpy()
    if not np.all(np.isfinite(weights)) or np.any(weights < 0):
        raise ValueError("Frame weights must be finite and non-negative")

    Z_area = None
    names: list[str] = []
    if area_covariates is not None:
        Z_area = area_covariates.for_areas(area_index)
        names = list(area_covariates.names)

    return FrameData(
        X=X,
        weights=weights,
        area_idx=area_idx,
        area_index=area_index,
        Z_area=Z_area,
        area_covariate_names=names,
    )
