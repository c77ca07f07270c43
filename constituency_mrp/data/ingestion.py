"""Data ingestion: load survey microdata, the post-stratification frame and
constituency results.

All data is wrangled with polars/duckdb.  Raw survey labels are mapped to
canonical categories through an external recode table supplied by the
caller; the core never hardcodes corpus-specific labels.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import duckdb
import polars as pl

from constituency_mrp.config import (
    AREA_COL,
    ELECTORATE_COL,
    OUTCOME_COL,
    SHARE_PREFIX,
    TURNOUT_COL,
    VOTE_COL,
    WEIGHT_COL,
)
from constituency_mrp.data.schema import (
    COVARIATE_COLUMNS,
    SURVEY_COLUMNS,
    validate_area_schema,
    validate_frame_schema,
    validate_survey_schema,
)

logger = logging.getLogger(__name__)


def load_table(path: str | Path) -> pl.DataFrame:
    """Load a CSV or Parquet file, with area codes as strings."""
    path = Path(path)
    if path.suffix == ".parquet":
        df = pl.read_parquet(path)
    else:
        df = pl.read_csv(path)
    if AREA_COL in df.columns and df[AREA_COL].dtype != pl.String:
        df = df.with_columns(pl.col(AREA_COL).cast(pl.String))
    return df


def recode_columns(
    df: pl.DataFrame,
    recodes: dict[str, dict[str, str]],
) -> pl.DataFrame:
    """Map raw labels to canonical categories, column by column.

    Parameters
    ----------
    df : pl.DataFrame
        Raw table.
    recodes : dict[str, dict[str, str]]
        ``{column: {raw_label: canonical_label}}``.  Labels not listed are
        left unchanged, so an unmapped label reaches the encoder and is
        rejected there rather than silently merged into another category.

    Returns
    -------
    pl.DataFrame
        Table with recoded columns cast to string.
    """
    exprs = []
    for col, mapping in recodes.items():
        if col not in df.columns:
            raise ValueError(f"Recode table refers to unknown column '{col}'")
        exprs.append(pl.col(col).cast(pl.String).replace(mapping).alias(col))
    return df.with_columns(exprs) if exprs else df


def prepare_survey(
    df: pl.DataFrame,
    target_party: str,
    recodes: Optional[dict[str, dict[str, str]]] = None,
    known_parties: Optional[list[str]] = None,
) -> pl.DataFrame:
    """Turn raw survey microdata into the cleaned modelling table.

    Only respondents who voted (``turnout`` truthy) for a known party are
    kept.  The outcome ``vote_target`` is 1 for a vote for *target_party*
    and 0 for any other party.  Rows with a missing covariate are dropped.

    Parameters
    ----------
    df : pl.DataFrame
        Raw microdata with ``respondent_id``, ``area_code``, the raw
        demographic columns, ``turnout`` and ``vote``.
    target_party : str
        Party whose vote share is being estimated.
    recodes : dict, optional
        Label recode table, see :func:`recode_columns`.
    known_parties : list[str], optional
        Valid party labels.  When ``None`` any non-null vote counts.

    Returns
    -------
    pl.DataFrame
        Table with the columns of :data:`constituency_mrp.data.schema.SURVEY_COLUMNS`.

    Raises
    ------
    ValueError
        If the cleaned table fails schema validation.
    """
    if recodes:
        df = recode_columns(df, recodes)

    n_raw = df.height
    voted = df.filter(pl.col(TURNOUT_COL).cast(pl.Boolean) & pl.col(VOTE_COL).is_not_null())
    if known_parties is not None:
        voted = voted.filter(pl.col(VOTE_COL).is_in(known_parties))
    logger.info("Kept %d of %d respondents with a valid party vote", voted.height, n_raw)

    complete = voted.drop_nulls(subset=[AREA_COL, *COVARIATE_COLUMNS])
    n_incomplete = voted.height - complete.height
    if n_incomplete > 0:
        logger.warning("Dropped %d respondent(s) with missing covariates", n_incomplete)

    cleaned = complete.with_columns(
        pl.col(AREA_COL).cast(pl.String),
        *[pl.col(c).cast(pl.String) for c in COVARIATE_COLUMNS],
        (pl.col(VOTE_COL) == target_party).cast(pl.Int32).alias(OUTCOME_COL),
    ).select(SURVEY_COLUMNS)

    errors = validate_survey_schema(cleaned)
    if errors:
        raise ValueError("Survey failed schema validation:\n" + "\n".join(errors))

    return cleaned


def load_survey(
    path: str | Path,
    target_party: str,
    recodes: Optional[dict[str, dict[str, str]]] = None,
    known_parties: Optional[list[str]] = None,
) -> pl.DataFrame:
    """Load raw microdata from disk and clean it with :func:`prepare_survey`."""
    return prepare_survey(load_table(path), target_party, recodes, known_parties)


def load_frame(path: str | Path) -> pl.DataFrame:
    """Load a post-stratification frame.

    Raises
    ------
    ValueError
        If the frame fails schema validation.
    """
    df = load_table(path)
    errors = validate_frame_schema(df)
    if errors:
        raise ValueError("Frame failed schema validation:\n" + "\n".join(errors))
    return df.with_columns(pl.col(WEIGHT_COL).cast(pl.Float64))


def load_area_results(path: str | Path) -> pl.DataFrame:
    """Load the per-area results / covariates table.

    Raises
    ------
    ValueError
        If the table fails schema validation.
    """
    df = load_table(path)
    errors = validate_area_schema(df)
    if errors:
        raise ValueError("Area results failed schema validation:\n" + "\n".join(errors))
    return df


def scale_frame_to_electorate(frame: pl.DataFrame, areas: pl.DataFrame) -> pl.DataFrame:
    """Rescale cell weights so they sum to each area's electorate.

    The census frame gives the population composition of an area; the
    electorate gives its size.  Each cell weight becomes
    ``weight / sum(weight in area) * electorate``.  Areas whose frame
    population is zero keep zero weights; frame areas absent from *areas*
    are dropped.

    Parameters
    ----------
    frame : pl.DataFrame
        Post-stratification frame (see :func:`load_frame`).
    areas : pl.DataFrame
        Area table with ``area_code`` and ``electorate``.

    Returns
    -------
    pl.DataFrame
        Frame with the same columns and rescaled ``weight``.
    """
    con = duckdb.connect()
    con.register("frame_tbl", frame.with_row_index("_row"))
    con.register("area_tbl", areas.select([AREA_COL, ELECTORATE_COL]))

    other_cols = ", ".join(f'f."{c}"' for c in frame.columns if c != WEIGHT_COL)
    query = f"""
        WITH totals AS (
            SELECT "{AREA_COL}", SUM("{WEIGHT_COL}") AS area_total
            FROM frame_tbl
            GROUP BY "{AREA_COL}"
        )
        SELECT
            {other_cols},
            CASE
                WHEN t.area_total > 0
                THEN CAST(f."{WEIGHT_COL}" AS DOUBLE) / t.area_total * a."{ELECTORATE_COL}"
                ELSE 0.0
            END AS "{WEIGHT_COL}"
        FROM frame_tbl AS f
        JOIN totals AS t ON f."{AREA_COL}" = t."{AREA_COL}"
        JOIN area_tbl AS a ON f."{AREA_COL}" = a."{AREA_COL}"
        ORDER BY f._row
    """

    scaled = con.execute(query).pl()
    con.close()

    n_dropped = frame.height - scaled.height
    if n_dropped > 0:
        logger.warning("Dropped %d frame cell(s) in areas without an electorate", n_dropped)

    return scaled.select(frame.columns)


def observed_shares(areas: pl.DataFrame, party: str) -> pl.DataFrame:
    """Return the observed vote share of *party* in each area, in [0, 1].

    A missing share means the party fielded no candidate there; it is
    recorded as an explicit 0 rather than dropped.  Areas where the party
    column is absent altogether are scored as 0 too.

    Returns
    -------
    pl.DataFrame
        Columns ``area_code`` and ``observed``.
    """
    col = f"{SHARE_PREFIX}{party}"
    if col not in areas.columns:
        logger.warning("No '%s' column; scoring every area as 0", col)
        return areas.select(pl.col(AREA_COL), pl.lit(0.0).alias("observed"))

    n_absent = areas[col].null_count()
    if n_absent > 0:
        logger.info("%d area(s) without a %s candidate scored as 0", n_absent, party)

    return areas.select(
        pl.col(AREA_COL),
        (pl.col(col).cast(pl.Float64).fill_null(0.0) / 100.0).alias("observed"),
    )
