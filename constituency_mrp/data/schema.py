"""Data schema definitions and validation for survey, frame and area tables."""

from __future__ import annotations

import polars as pl

from constituency_mrp.config import (
    AREA_COL,
    CATEGORICAL_COVARIATES,
    ELECTORATE_COL,
    OUTCOME_COL,
    RESPONDENT_COL,
    SHARE_PREFIX,
    SHARE_SUM_RTOL,
    WEIGHT_COL,
)

COVARIATE_COLUMNS: list[str] = [name for name, _, _ in CATEGORICAL_COVARIATES]

# ---------------------------------------------------------------------------
# Required columns per table
# ---------------------------------------------------------------------------

SURVEY_COLUMNS: list[str] = [
    RESPONDENT_COL,
    AREA_COL,  # constituency code the respondent lives in
    *COVARIATE_COLUMNS,
    OUTCOME_COL,  # 1 = voted for the target party, 0 = any other party
]

FRAME_COLUMNS: list[str] = [
    AREA_COL,
    *COVARIATE_COLUMNS,
    WEIGHT_COL,  # population count of the cell
]

AREA_COLUMNS: list[str] = [
    AREA_COL,
    ELECTORATE_COL,
]

STRING_COLUMNS: list[str] = [AREA_COL, *COVARIATE_COLUMNS]


def share_columns(df: pl.DataFrame) -> list[str]:
    """Return the observed vote-share columns (``share_<party>``) of *df*."""
    return [c for c in df.columns if c.startswith(SHARE_PREFIX)]


def _missing_columns(df: pl.DataFrame, required: list[str]) -> list[str]:
    missing = [c for c in required if c not in df.columns]
    if missing:
        return [f"Missing required columns: {missing}"]
    return []


def _string_dtype_errors(df: pl.DataFrame) -> list[str]:
    errors: list[str] = []
    for col in STRING_COLUMNS:
        if col not in df.columns:
            continue
        actual = df[col].dtype
        if actual != pl.String:
            errors.append(f"Column '{col}': expected {pl.String}, got {actual}")
    return errors


def _null_errors(df: pl.DataFrame, columns: list[str]) -> list[str]:
    errors: list[str] = []
    for col in columns:
        if col not in df.columns:
            continue
        n_null = df[col].null_count()
        if n_null > 0:
            errors.append(f"Column '{col}' has {n_null} missing value(s)")
    return errors


def validate_survey_schema(df: pl.DataFrame) -> list[str]:
    """Check a cleaned survey table.

    Parameters
    ----------
    df : pl.DataFrame
        One row per retained respondent.

    Returns
    -------
    list[str]
        Validation error messages.  Empty list means the table is valid.
    """
    errors = _missing_columns(df, SURVEY_COLUMNS)
    errors += _string_dtype_errors(df)
    errors += _null_errors(df, SURVEY_COLUMNS)

    if OUTCOME_COL in df.columns:
        bad = df.filter(~pl.col(OUTCOME_COL).is_in([0, 1])).height
        if bad > 0:
            errors.append(f"Column '{OUTCOME_COL}' has {bad} non-binary value(s)")

    return errors


def validate_frame_schema(df: pl.DataFrame) -> list[str]:
    """Check a post-stratification frame.

    Returns
    -------
    list[str]
        Validation error messages.  Empty list means the frame is valid.
    """
    errors = _missing_columns(df, FRAME_COLUMNS)
    errors += _string_dtype_errors(df)
    errors += _null_errors(df, FRAME_COLUMNS)

    if WEIGHT_COL in df.columns:
        if not df[WEIGHT_COL].dtype.is_numeric():
            errors.append(f"Column '{WEIGHT_COL}' must be numeric")
        else:
            bad = df.filter(pl.col(WEIGHT_COL) < 0).height
            if bad > 0:
                errors.append(f"Column '{WEIGHT_COL}' has {bad} negative value(s)")

    return errors


def validate_area_schema(df: pl.DataFrame, rtol: float = SHARE_SUM_RTOL) -> list[str]:
    """Check an area results table.

    Vote shares are percentages.  A missing share means the party did not
    stand in that area; the remaining shares of each row must still sum to
    100 within relative tolerance *rtol*.

    Returns
    -------
    list[str]
        Validation error messages.  Empty list means the table is valid.
    """
    errors = _missing_columns(df, AREA_COLUMNS)
    errors += _null_errors(df, AREA_COLUMNS)

    if AREA_COL in df.columns:
        if df[AREA_COL].dtype != pl.String:
            errors.append(f"Column '{AREA_COL}': expected {pl.String}, got {df[AREA_COL].dtype}")
        n_dup = df.height - df[AREA_COL].n_unique()
        if n_dup > 0:
            errors.append(f"Column '{AREA_COL}' has {n_dup} duplicated code(s)")

    if ELECTORATE_COL in df.columns:
        bad = df.filter(pl.col(ELECTORATE_COL) < 0).height
        if bad > 0:
            errors.append(f"Column '{ELECTORATE_COL}' has {bad} negative value(s)")

    shares = share_columns(df)
    if not shares:
        errors.append(f"No vote-share columns (prefix '{SHARE_PREFIX}') found")
        return errors

    for col in shares:
        bad = df.filter((pl.col(col) < 0.0) | (pl.col(col) > 100.0)).height
        if bad > 0:
            errors.append(f"Column '{col}' has {bad} value(s) outside [0, 100]")

    totals = df.select(pl.sum_horizontal([pl.col(c).fill_null(0.0) for c in shares]))
    off = totals.filter((pl.col(totals.columns[0]) - 100.0).abs() > 100.0 * rtol).height
    if off > 0:
        errors.append(f"{off} area(s) have vote shares not summing to 100")

    return errors
