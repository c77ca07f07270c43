"""End-to-end MRP: encode, fit, post-stratify and validate.

The column schema and area index are created once here and handed to both
the fitting and the prediction path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import polars as pl

from constituency_mrp.config import (
    AREA_COL,
    DEFAULT_CHAINS,
    DEFAULT_DRAWS,
    DEFAULT_N_SAMPLES,
    DEFAULT_RANDOM_SEED,
    DEFAULT_TUNE,
    R_HAT_THRESHOLD,
)
from constituency_mrp.data.ingestion import observed_shares
from constituency_mrp.evaluate.metrics import ValidationReport, validate_area_estimates
from constituency_mrp.features.encoding import DesignMatrixBuilder
from constituency_mrp.features.engineering import (
    AreaCovariates,
    FrameData,
    ModelData,
    build_frame_data,
    build_model_data,
)
from constituency_mrp.model.engine import PosteriorSamplingEngine, SamplingRequest
from constituency_mrp.model.posterior import PosteriorDraws
from constituency_mrp.model.poststratification import AggregatedEstimate, PredictionAggregator
from constituency_mrp.model.specification import ModelSpecification, build_specification

logger = logging.getLogger(__name__)


@dataclass
class FittedModel:
    data: ModelData
    spec: ModelSpecification
    draws: PosteriorDraws
    builder: DesignMatrixBuilder
    area_covariates: Optional[AreaCovariates] = None


@dataclass
class MRPResult:
    """Outputs of one MRP run."""

    fitted: FittedModel
    frame: FrameData
    estimate: AggregatedEstimate
    report: Optional[ValidationReport] = None

    @property
    def n_dropped_areas(self) -> int:
        return 0 if self.report is None else self.report.n_dropped


def fit_model(
    survey: pl.DataFrame,
    engine: PosteriorSamplingEngine,
    frame: Optional[pl.DataFrame] = None,
    area_covariates: Optional[AreaCovariates] = None,
    builder: Optional[DesignMatrixBuilder] = None,
    chains: int = DEFAULT_CHAINS,
    iterations: int = DEFAULT_DRAWS,
    warmup: int = DEFAULT_TUNE,
    random_seed: Optional[int] = DEFAULT_RANDOM_SEED,
    progressbar: bool = True,
) -> FittedModel:
    """Encode *survey* and fit the base or extended model.

    Frame areas without respondents are added to the area index so that
    they receive random intercepts drawn from the hierarchical prior.
    """
    builder = builder if builder is not None else DesignMatrixBuilder()
    extra = frame[AREA_COL].cast(pl.String).unique().to_list() if frame is not None else None
    data = build_model_data(
        survey, builder, area_covariates=area_covariates, extra_area_codes=extra
    )
    spec = build_specification(data)

    request = SamplingRequest(
        spec=spec,
        chains=chains,
        iterations=iterations,
        warmup=warmup,
        random_seed=random_seed,
        progressbar=progressbar,
    )
    result = engine.sample(request)
    draws = PosteriorDraws.from_result(result, spec, r_hat_threshold=R_HAT_THRESHOLD)
    return FittedModel(
        data=data, spec=spec, draws=draws, builder=builder, area_covariates=area_covariates
    )


def poststratify(
    fitted: FittedModel,
    frame: pl.DataFrame,
    n_samples: int = DEFAULT_N_SAMPLES,
) -> tuple[FrameData, AggregatedEstimate]:
    """Encode *frame* with the fitted encodings and aggregate."""
    frame_data = build_frame_data(
        frame, fitted.builder, fitted.data.area_index, area_covariates=fitted.area_covariates
    )
    aggregator = PredictionAggregator(fitted.draws, n_samples=n_samples)
    return frame_data, aggregator.aggregate(frame_data)


def run_mrp(
    survey: pl.DataFrame,
    frame: pl.DataFrame,
    engine: PosteriorSamplingEngine,
    areas: Optional[pl.DataFrame] = None,
    target_party: Optional[str] = None,
    area_covariate_columns: Optional[list[str]] = None,
    n_samples: int = DEFAULT_N_SAMPLES,
    chains: int = DEFAULT_CHAINS,
    iterations: int = DEFAULT_DRAWS,
    warmup: int = DEFAULT_TUNE,
    random_seed: Optional[int] = DEFAULT_RANDOM_SEED,
    progressbar: bool = True,
) -> MRPResult:
    """Fit, post-stratify and (when results are given) validate.

    Parameters
    ----------
    survey : pl.DataFrame
        Cleaned survey (:func:`constituency_mrp.data.ingestion.prepare_survey`).
    frame : pl.DataFrame
        Post-stratification frame.
    engine : PosteriorSamplingEngine
        Sampling backend, e.g. :class:`constituency_mrp.model.hierarchical.PyMCSamplingEngine`.
    areas : pl.DataFrame, optional
        Area results / covariates table.
    target_party : str, optional
        Party to validate against; requires *areas*.
    area_covariate_columns : list[str], optional
        Columns of *areas* to use as area-level covariates; selects the
        extended model.
    n_samples : int
        Posterior draws consumed by the aggregator.
    """
    area_covariates = None
    if area_covariate_columns:
        if areas is None:
            raise ValueError("Area-level covariates require an area table")
        area_covariates = AreaCovariates.from_table(areas, area_covariate_columns)

    fitted = fit_model(
        survey,
        engine,
        frame=frame,
        area_covariates=area_covariates,
        chains=chains,
        iterations=iterations,
        warmup=warmup,
        random_seed=random_seed,
        progressbar=progressbar,
    )
    frame_data, estimate = poststratify(fitted, frame, n_samples=n_samples)

    report = None
    if target_party is not None:
        if areas is None:
            raise ValueError("Validation requires an area table")
        report = validate_area_estimates(estimate.to_frame(), observed_shares(areas, target_party))
        logger.info(
            "Validation over %d areas (%d dropped): bias %.4f, RMSE %.4f, r %.3f",
            report.n_areas,
            report.n_dropped,
            report.bias,
            report.rmse,
            report.correlation,
        )

    return MRPResult(fitted=fitted, frame=frame_data, estimate=estimate, report=report)
