"""Tests for post-stratification: draw thinning, weighted means and area
aggregation."""

from __future__ import annotations

import numpy as np
import polars as pl
import pytest

from constituency_mrp.errors import (
    ConvergenceError,
    DimensionMismatchError,
    EncodingError,
    InsufficientDrawsError,
    UndefinedAggregateError,
)
from constituency_mrp.features.encoding import ColumnSchema, DesignMatrixBuilder
from constituency_mrp.features.engineering import AreaIndex, FrameData, build_frame_data
from constituency_mrp.model.posterior import PosteriorDraws
from constituency_mrp.model.poststratification import (
    PredictionAggregator,
    inv_logit,
    thin_indices,
    weighted_mean,
)

from conftest import ALL_AREAS, SURVEY_AREAS

SEX_ONLY = ColumnSchema.from_declarations([("sex", ("Male", "Female"), "Female")])

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _frame(areas, sexes, weights, area_index, schema=SEX_ONLY) -> FrameData:
    df = pl.DataFrame(
        {"area_code": areas, "sex": sexes, "weight": [float(w) for w in weights]}
    )
    return build_frame_data(df, DesignMatrixBuilder(schema), area_index)


def _draws(
    alpha,
    beta,
    eta,
    area_index,
    schema=SEX_ONLY,
    converged=True,
    gamma=None,
    area_covariate_names=(),
) -> PosteriorDraws:
    alpha = np.atleast_1d(np.asarray(alpha, dtype=float))
    n = alpha.shape[0]
    return PosteriorDraws(
        alpha=alpha,
        beta=np.asarray(beta, dtype=float).reshape(n, schema.n_columns),
        eta=np.asarray(eta, dtype=float).reshape(n, area_index.n_areas),
        tau=np.ones(n),
        schema=schema,
        area_index=area_index,
        gamma=gamma,
        area_covariate_names=area_covariate_names,
        r_hat={"alpha": 1.0},
        converged=converged,
    )


def _random_draws(n, area_index, schema=SEX_ONLY, seed=0) -> PosteriorDraws:
    rng = np.random.default_rng(seed)
    return _draws(
        rng.normal(0, 1, n),
        rng.normal(0, 1, (n, schema.n_columns)),
        rng.normal(0, 1, (n, area_index.n_areas)),
        area_index,
        schema=schema,
    )


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class TestInvLogit:
    def test_midpoint(self):
        assert inv_logit(np.array([0.0]))[0] == 0.5

    def test_extreme_logits_are_finite(self):
        p = inv_logit(np.array([-1000.0, 1000.0]))
        assert np.all(np.isfinite(p))
        assert p[0] == pytest.approx(0.0, abs=1e-300)
        assert p[1] == 1.0


class TestWeightedMean:
    def test_matches_direct_computation(self):
        rng = np.random.default_rng(3)
        values = rng.uniform(0, 1, 500)
        weights = rng.uniform(0, 100, 500)
        expected = (weights * values).sum() / weights.sum()
        assert weighted_mean(values, weights) == pytest.approx(expected, abs=1e-9)

    def test_zero_total_weight(self):
        with pytest.raises(UndefinedAggregateError):
            weighted_mean([0.2, 0.4], [0.0, 0.0])

    def test_shape_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            weighted_mean([0.2, 0.4, 0.6], [1.0, 1.0])

    def test_missing_weight(self):
        with pytest.raises(UndefinedAggregateError, match="missing"):
            weighted_mean([0.2, 0.4], [1.0, np.nan])


class TestThinIndices:
    def test_evenly_spaced_and_distinct(self):
        idx = thin_indices(200, 50)
        assert idx.shape == (50,)
        assert len(np.unique(idx)) == 50
        assert idx[0] == 0 and idx[-1] == 199

    def test_all_draws(self):
        np.testing.assert_array_equal(thin_indices(10, 10), np.arange(10))

    def test_more_than_available(self):
        with pytest.raises(InsufficientDrawsError):
            thin_indices(50, 100)

    def test_non_positive(self):
        with pytest.raises(ValueError):
            thin_indices(50, 0)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class TestPredictionAggregator:
    def test_two_area_scenario(self):
        index = AreaIndex(("A", "B"))
        frame = _frame(["A", "B"], ["Female", "Female"], [100, 200], index)
        draws = _draws([0.0], [[0.0]], [[1.0, -1.0]], index)

        estimate = PredictionAggregator(draws, n_samples=1).aggregate(frame)

        assert estimate.area_estimate("A") == pytest.approx(0.7310585786, abs=1e-9)
        assert estimate.area_estimate("B") == pytest.approx(0.2689414214, abs=1e-9)
        expected = (100 * inv_logit(1.0) + 200 * inv_logit(-1.0)) / 300
        assert estimate.national == pytest.approx(expected, abs=1e-12)
        assert estimate.national == pytest.approx(0.423, abs=1e-3)

    def test_half_probability_gives_half(self):
        index = AreaIndex(("A", "B", "C"))
        frame = _frame(
            ["A", "A", "B", "C"], ["Male", "Female", "Male", "Female"], [5, 5, 5, 5], index
        )
        draws = _draws(np.zeros(4), np.zeros((4, 1)), np.zeros((4, 3)), index)
        estimate = PredictionAggregator(draws, n_samples=4).aggregate(frame)
        assert estimate.national == 0.5
        np.testing.assert_array_equal(estimate.area_means, [0.5, 0.5, 0.5])

    def test_single_area_equals_national(self):
        index = AreaIndex(("A",))
        frame = _frame(["A", "A", "A"], ["Male", "Female", "Male"], [10, 30, 7], index)
        estimate = PredictionAggregator(_random_draws(20, index), n_samples=20).aggregate(frame)
        np.testing.assert_allclose(estimate.area_draws[:, 0], estimate.national_draws)
        assert estimate.area_estimate("A") == pytest.approx(estimate.national, abs=1e-12)

    def test_matches_direct_weighted_mean(self):
        index = AreaIndex(("A", "B"))
        sexes = ["Male", "Female", "Male", "Female", "Male"]
        areas = ["A", "A", "B", "B", "B"]
        weights = np.array([12.0, 3.0, 40.0, 1.0, 9.0])
        frame = _frame(areas, sexes, weights, index)
        draws = _random_draws(5, index, seed=11)

        estimate = PredictionAggregator(draws, n_samples=5).aggregate(frame)

        x = np.array([1.0 if s == "Male" else 0.0 for s in sexes])
        a = np.array([0, 0, 1, 1, 1])
        for s in range(5):
            p = inv_logit(draws.alpha[s] + x * draws.beta[s, 0] + draws.eta[s, a])
            assert estimate.national_draws[s] == pytest.approx(
                (weights * p).sum() / weights.sum(), abs=1e-9
            )
            in_b = a == 1
            assert estimate.area_draws[s, 1] == pytest.approx(
                (weights[in_b] * p[in_b]).sum() / weights[in_b].sum(), abs=1e-9
            )

    def test_more_draws_than_available(self):
        index = AreaIndex(("A",))
        with pytest.raises(InsufficientDrawsError):
            PredictionAggregator(_random_draws(50, index), n_samples=100)

    def test_unconverged_draws_rejected(self):
        index = AreaIndex(("A",))
        draws = _draws([0.0], [[0.0]], [[0.0]], index, converged=False)
        with pytest.raises(ConvergenceError):
            PredictionAggregator(draws, n_samples=1)

    def test_zero_weight_area(self):
        index = AreaIndex(("A", "B"))
        frame = _frame(["A", "B", "B"], ["Male", "Male", "Female"], [10, 0, 0], index)
        aggregator = PredictionAggregator(_random_draws(3, index), n_samples=3)
        with pytest.raises(UndefinedAggregateError, match="B"):
            aggregator.aggregate(frame)

    def test_areas_absent_from_frame_not_reported(self):
        index = AreaIndex(("A", "B", "C"))
        frame = _frame(["A", "C"], ["Male", "Female"], [1, 1], index)
        estimate = PredictionAggregator(_random_draws(4, index), n_samples=4).aggregate(frame)
        assert estimate.area_codes == ("A", "C")
        with pytest.raises(KeyError):
            estimate.area_estimate("B")

    def test_extreme_logits(self):
        index = AreaIndex(("A", "B"))
        frame = _frame(["A", "B"], ["Male", "Male"], [1, 1], index)
        draws = _draws([0.0], [[0.0]], [[800.0, -800.0]], index)
        estimate = PredictionAggregator(draws, n_samples=1).aggregate(frame)
        assert np.all(np.isfinite(estimate.area_draws))
        assert estimate.national == pytest.approx(0.5)

    def test_column_mismatch(self):
        index = AreaIndex(("A",))
        other = ColumnSchema.from_declarations([("housing", ("Owns", "Rents"), "Owns")])
        frame = build_frame_data(
            pl.DataFrame({"area_code": ["A"], "housing": ["Rents"], "weight": [1.0]}),
            DesignMatrixBuilder(other),
            index,
        )
        aggregator = PredictionAggregator(_random_draws(2, index), n_samples=2)
        with pytest.raises(EncodingError, match="housing"):
            aggregator.aggregate(frame)

    def test_reordered_schema_matched_by_name(self):
        index = AreaIndex(("A",))
        fitted = ColumnSchema.from_declarations(
            [("sex", ("Male", "Female"), "Female"), ("housing", ("Owns", "Rents"), "Owns")]
        )
        reordered = ColumnSchema.from_declarations(
            [("housing", ("Owns", "Rents"), "Owns"), ("sex", ("Male", "Female"), "Female")]
        )
        df = pl.DataFrame(
            {"area_code": ["A", "A"], "sex": ["Male", "Female"], "housing": ["Rents", "Owns"],
             "weight": [2.0, 3.0]}
        )
        draws = _random_draws(3, index, schema=fitted, seed=5)
        a = PredictionAggregator(draws, n_samples=3).aggregate(
            _frame_from(df, fitted, index)
        )
        b = PredictionAggregator(draws, n_samples=3).aggregate(
            _frame_from(df, reordered, index)
        )
        np.testing.assert_allclose(a.national_draws, b.national_draws)

    def test_frame_area_missing_from_fit(self):
        fit_index = AreaIndex(("A",))
        frame = _frame(["A", "B"], ["Male", "Male"], [1, 1], AreaIndex(("A", "B")))
        aggregator = PredictionAggregator(_random_draws(2, fit_index), n_samples=2)
        with pytest.raises(EncodingError, match="B"):
            aggregator.aggregate(frame)

    def test_equal_area_index_built_separately(self):
        draws = _random_draws(3, AreaIndex(("A", "B")), seed=2)
        frame = _frame(["A", "B"], ["Male", "Female"], [1, 3], AreaIndex(("A", "B")))
        shared = _frame(["A", "B"], ["Male", "Female"], [1, 3], draws.area_index)
        a = PredictionAggregator(draws, n_samples=3).aggregate(frame)
        b = PredictionAggregator(draws, n_samples=3).aggregate(shared)
        np.testing.assert_array_equal(a.area_draws, b.area_draws)

    def test_reordered_area_index_rejected(self):
        draws = _random_draws(2, AreaIndex(("A", "B")))
        frame = _frame(["A", "B"], ["Male", "Male"], [1, 1], AreaIndex(("B", "A")))
        with pytest.raises(EncodingError, match="different area index"):
            PredictionAggregator(draws, n_samples=2).aggregate(frame)

    def test_missing_weight_rejected(self):
        index = AreaIndex(("A", "B"))
        frame = _frame(["A", "B"], ["Male", "Female"], [1, 1], index)
        frame.weights = np.array([1.0, np.nan])
        aggregator = PredictionAggregator(_random_draws(2, index), n_samples=2)
        with pytest.raises(UndefinedAggregateError, match="missing"):
            aggregator.aggregate(frame)

    def test_weight_length_mismatch(self):
        index = AreaIndex(("A",))
        frame = _frame(["A", "A"], ["Male", "Female"], [1, 1], index)
        frame.weights = np.array([1.0])
        aggregator = PredictionAggregator(_random_draws(2, index), n_samples=2)
        with pytest.raises(DimensionMismatchError):
            aggregator.aggregate(frame)

    def test_outputs_are_read_only(self):
        index = AreaIndex(("A",))
        frame = _frame(["A"], ["Male"], [1], index)
        estimate = PredictionAggregator(_random_draws(2, index), n_samples=2).aggregate(frame)
        with pytest.raises(ValueError):
            estimate.national_draws[0] = 1.0

    def test_draws_left_unchanged(self):
        index = AreaIndex(("A", "B"))
        draws = _random_draws(10, index)
        before = draws.eta.copy()
        frame = _frame(["A", "B"], ["Male", "Female"], [1, 2], index)
        PredictionAggregator(draws, n_samples=5).aggregate(frame)
        np.testing.assert_array_equal(draws.eta, before)


class TestExtendedAggregation:
    def test_area_covariates_shift_linear_predictor(self):
        index = AreaIndex(("A", "B"))
        df = pl.DataFrame({"area_code": ["A", "B"], "sex": ["Female", "Female"], "weight": [1.0, 1.0]})
        frame = build_frame_data(df, DesignMatrixBuilder(SEX_ONLY), index)
        frame.Z_area = np.array([[1.0], [-2.0]])
        frame.area_covariate_names = ["prior_share"]
        draws = _draws(
            [0.0],
            [[0.0]],
            [[0.0, 0.0]],
            index,
            gamma=np.array([[0.5]]),
            area_covariate_names=("prior_share",),
        )
        estimate = PredictionAggregator(draws, n_samples=1).aggregate(frame)
        assert estimate.area_estimate("A") == pytest.approx(inv_logit(0.5))
        assert estimate.area_estimate("B") == pytest.approx(inv_logit(-1.0))

    def test_frame_without_covariates_rejected(self):
        index = AreaIndex(("A",))
        frame = _frame(["A"], ["Male"], [1], index)
        draws = _draws(
            [0.0], [[0.0]], [[0.0]], index,
            gamma=np.array([[0.5]]), area_covariate_names=("prior_share",),
        )
        with pytest.raises(EncodingError):
            PredictionAggregator(draws, n_samples=1).aggregate(frame)

    def test_covariate_names_must_match(self):
        index = AreaIndex(("A",))
        frame = _frame(["A"], ["Male"], [1], index)
        frame.Z_area = np.array([[1.0]])
        frame.area_covariate_names = ["pct_degree"]
        draws = _draws(
            [0.0], [[0.0]], [[0.0]], index,
            gamma=np.array([[0.5]]), area_covariate_names=("prior_share",),
        )
        with pytest.raises(EncodingError, match="pct_degree"):
            PredictionAggregator(draws, n_samples=1).aggregate(frame)


class TestEstimateSummaries:
    def test_frame_table(self, model_data, builder, synthetic_frame):
        draws = _random_draws(
            40, model_data.area_index, schema=model_data.X.schema, seed=2
        )
        frame = build_frame_data(synthetic_frame, builder, model_data.area_index)
        estimate = PredictionAggregator(draws, n_samples=30).aggregate(frame)

        table = estimate.to_frame(prob=0.8)
        assert table["area_code"].to_list() == ALL_AREAS
        assert table.columns == ["area_code", "estimate", "sd", "lower", "upper"]
        assert (table["lower"] <= table["upper"]).all()
        np.testing.assert_allclose(table["estimate"].to_numpy(), estimate.area_means)
        assert estimate.n_samples == 30

    def test_national_interval_brackets_mean(self):
        index = AreaIndex(tuple(SURVEY_AREAS))
        frame = _frame(SURVEY_AREAS, ["Male"] * 5, [1, 2, 3, 4, 5], index)
        estimate = PredictionAggregator(_random_draws(60, index), n_samples=60).aggregate(frame)
        lo, hi = estimate.national_interval(0.9)
        assert lo < hi
        assert estimate.national_interval(1.0) == (
            pytest.approx(estimate.national_draws.min()),
            pytest.approx(estimate.national_draws.max()),
        )
        assert estimate.national_sd > 0


def _frame_from(df: pl.DataFrame, schema: ColumnSchema, index: AreaIndex) -> FrameData:
    return build_frame_data(df, DesignMatrixBuilder(schema), index)
