"""Shared pytest fixtures for the test suite.

Synthetic datasets are small (a few hundred respondents, six areas) with
known edge cases:
  - An area with no survey respondents (frame only)
  - An area where the target party fielded no candidate
  - Respondents who did not vote or gave no party
"""

from __future__ import annotations

import itertools

import numpy as np
import polars as pl
import pytest

from constituency_mrp.config import (
    AGE_LEVELS,
    EDUCATION_LEVELS,
    HOUSING_LEVELS,
    SEX_LEVELS,
    SOCIAL_GRADE_LEVELS,
)
from constituency_mrp.features.encoding import DesignMatrixBuilder
from constituency_mrp.features.engineering import AreaCovariates, build_model_data
from constituency_mrp.model.engine import SamplingRequest, SamplingResult
from constituency_mrp.model.specification import build_specification

SURVEY_AREAS = ["E14000001", "E14000002", "E14000003", "E14000004", "E14000005"]
FRAME_ONLY_AREA = "E14000006"
ALL_AREAS = SURVEY_AREAS + [FRAME_ONLY_AREA]
PARTIES = ["Lab", "Con", "LD"]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_raw_survey(n: int = 300, seed: int = 0) -> pl.DataFrame:
    """Raw microdata, before turnout filtering."""
    rng = np.random.default_rng(seed)

    areas = [SURVEY_AREAS[i % len(SURVEY_AREAS)] for i in range(n)]
    vote = rng.choice(PARTIES, size=n, p=[0.4, 0.4, 0.2]).tolist()
    turnout = (rng.uniform(0, 1, n) > 0.15).astype(int)

    # A few respondents declined to say
    for i in range(0, n, 37):
        vote[i] = None

    return pl.DataFrame(
        {
            "respondent_id": [f"r{i:04d}" for i in range(n)],
            "area_code": areas,
            "sex": rng.choice(SEX_LEVELS, size=n).tolist(),
            "age": rng.choice(AGE_LEVELS, size=n).tolist(),
            "housing": rng.choice(HOUSING_LEVELS, size=n).tolist(),
            "social_grade": rng.choice(SOCIAL_GRADE_LEVELS, size=n).tolist(),
            "education": rng.choice(EDUCATION_LEVELS, size=n).tolist(),
            "turnout": turnout.tolist(),
            "vote": vote,
        }
    )


def _make_survey(n: int = 300, seed: int = 0) -> pl.DataFrame:
    """Cleaned survey with a binary Labour outcome."""
    raw = _make_raw_survey(n, seed)
    voted = raw.filter((pl.col("turnout") == 1) & pl.col("vote").is_not_null())
    return voted.select(
        "respondent_id",
        "area_code",
        "sex",
        "age",
        "housing",
        "social_grade",
        "education",
        (pl.col("vote") == "Lab").cast(pl.Int32).alias("vote_target"),
    )


def _make_frame(areas: list[str] = ALL_AREAS, seed: int = 1) -> pl.DataFrame:
    """Full cross-classification of covariates in every area."""
    rng = np.random.default_rng(seed)
    combos = list(
        itertools.product(
            SEX_LEVELS, AGE_LEVELS, HOUSING_LEVELS, SOCIAL_GRADE_LEVELS, EDUCATION_LEVELS
        )
    )
    rows = []
    for area in areas:
        for sex, age, housing, grade, edu in combos:
            rows.append(
                {
                    "area_code": area,
                    "sex": sex,
                    "age": age,
                    "housing": housing,
                    "social_grade": grade,
                    "education": edu,
                    "weight": float(rng.integers(0, 50)),
                }
            )
    return pl.DataFrame(rows)


def _make_areas(seed: int = 2) -> pl.DataFrame:
    """Area results with percent vote shares; Lab stood nowhere in the last area."""
    rng = np.random.default_rng(seed)
    n = len(ALL_AREAS)
    lab = rng.uniform(20, 50, n)
    con = rng.uniform(20, 40, n)
    ld = 100.0 - lab - con

    lab_col: list = lab.tolist()
    ld_col: list = ld.tolist()
    # No Labour candidate in the last area; LD takes the remainder
    lab_col[-1] = None
    ld_col[-1] = 100.0 - con[-1]

    return pl.DataFrame(
        {
            "area_code": ALL_AREAS,
            "electorate": rng.integers(60_000, 80_000, n).astype(float),
            "share_Lab": pl.Series(lab_col, dtype=pl.Float64),
            "share_Con": con,
            "share_LD": pl.Series(ld_col, dtype=pl.Float64),
            "prior_lab_share": rng.uniform(0.2, 0.5, n),
            "pct_degree": rng.uniform(0.15, 0.55, n),
        }
    )


class FakeSamplingEngine:
    """Deterministic stand-in for the NUTS sampler.

    Draws come from the priors, so the contract can be exercised without
    compiling a PyMC model.
    """

    def __init__(self, r_hat: float = 1.0, seed: int = 0) -> None:
        self.r_hat = r_hat
        self.seed = seed
        self.requests: list[SamplingRequest] = []

    def sample(self, request: SamplingRequest) -> SamplingResult:
        self.requests.append(request)
        rng = np.random.default_rng(self.seed)
        spec = request.spec
        c, i = request.chains, request.iterations
        tau = np.abs(rng.normal(0, 1, (c, i)))
        draws = {
            "alpha": rng.normal(0, 1, (c, i)),
            "beta": rng.normal(0, 1, (c, i, spec.n_covariates)),
            "eta": rng.normal(0, 1, (c, i, spec.n_areas)) * tau[..., None],
            "tau": tau,
        }
        if "gamma" in spec.param_names:
            draws["gamma"] = rng.normal(0, 1, (c, i, spec.n_area_covariates))
        return SamplingResult(draws=draws, r_hat={name: self.r_hat for name in draws})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def raw_survey() -> pl.DataFrame:
    return _make_raw_survey()


@pytest.fixture
def synthetic_survey() -> pl.DataFrame:
    """Cleaned 300-respondent survey across five areas."""
    return _make_survey(n=300, seed=42)


@pytest.fixture
def synthetic_survey_small() -> pl.DataFrame:
    """Small cleaned survey for sampling tests."""
    return _make_survey(n=120, seed=7)


@pytest.fixture
def synthetic_frame() -> pl.DataFrame:
    return _make_frame()


@pytest.fixture
def synthetic_areas() -> pl.DataFrame:
    return _make_areas()


@pytest.fixture
def builder() -> DesignMatrixBuilder:
    return DesignMatrixBuilder()


@pytest.fixture
def area_covariates(synthetic_areas) -> AreaCovariates:
    return AreaCovariates.from_table(synthetic_areas, ["prior_lab_share", "pct_degree"])


@pytest.fixture
def model_data(synthetic_survey, builder):
    return build_model_data(synthetic_survey, builder, extra_area_codes=[FRAME_ONLY_AREA])


@pytest.fixture
def model_data_small(synthetic_survey_small, builder):
    return build_model_data(synthetic_survey_small, builder)


@pytest.fixture
def base_spec(model_data):
    return build_specification(model_data)


@pytest.fixture
def extended_model_data(synthetic_survey, builder, area_covariates):
    return build_model_data(
        synthetic_survey,
        builder,
        area_covariates=area_covariates,
        extra_area_codes=[FRAME_ONLY_AREA],
    )


@pytest.fixture
def fake_engine() -> FakeSamplingEngine:
    return FakeSamplingEngine()


@pytest.fixture
def unconverged_engine() -> FakeSamplingEngine:
    return FakeSamplingEngine(r_hat=1.5)
