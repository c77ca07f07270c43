"""Reference-category (dummy) encoding of categorical covariates.

One :class:`ColumnSchema` is built per model and shared by the training
design matrix and the post-stratification design matrix.  Each variable
contributes one indicator column per non-reference level, in declared
order; column names have the form ``"<variable>[<level>]"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import numpy as np
import polars as pl

from constituency_mrp.config import CATEGORICAL_COVARIATES
from constituency_mrp.errors import EncodingError


@dataclass(frozen=True)
class CategoricalVariable:
    """A categorical covariate with a fixed level set and reference level."""

    name: str
    levels: tuple[str, ...]
    reference: str

    def __post_init__(self) -> None:
        if len(set(self.levels)) != len(self.levels):
            raise ValueError(f"Variable '{self.name}' has duplicated levels")
        if self.reference not in self.levels:
            raise ValueError(
                f"Reference level '{self.reference}' is not a level of '{self.name}'"
            )

    @property
    def indicator_levels(self) -> tuple[str, ...]:
        """Levels that get an indicator column (all but the reference)."""
        return tuple(lvl for lvl in self.levels if lvl != self.reference)

    def column_name(self, level: str) -> str:
        return f"{self.name}[{level}]"


@dataclass(frozen=True)
class ColumnSchema:
    """Immutable description of the design-matrix columns.

    Attributes
    ----------
    variables : tuple[CategoricalVariable, ...]
        Encoded variables, in column order.
    """

    variables: tuple[CategoricalVariable, ...]

    def __post_init__(self) -> None:
        names = [v.name for v in self.variables]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicated variable names in schema: {names}")

    @classmethod
    def from_declarations(
        cls,
        declarations: Sequence[tuple[str, Sequence[str], str]] = CATEGORICAL_COVARIATES,
    ) -> "ColumnSchema":
        """Build a schema from ``(name, levels, reference)`` triples."""
        return cls(
            tuple(
                CategoricalVariable(name, tuple(levels), reference)
                for name, levels, reference in declarations
            )
        )

    @cached_property
    def columns(self) -> tuple[str, ...]:
        return tuple(
            var.column_name(lvl) for var in self.variables for lvl in var.indicator_levels
        )

    @cached_property
    def column_index(self) -> Mapping[str, int]:
        """Column name -> position mapping (read-only)."""
        return MappingProxyType({name: i for i, name in enumerate(self.columns)})

    @property
    def n_columns(self) -> int:
        return len(self.columns)

    @property
    def variable_names(self) -> list[str]:
        return [v.name for v in self.variables]

    def block(self, variable: str) -> slice:
        """Column slice holding the indicators of *variable*."""
        start = 0
        for var in self.variables:
            width = len(var.indicator_levels)
            if var.name == variable:
                return slice(start, start + width)
            start += width
        raise KeyError(f"Unknown variable '{variable}'")


@dataclass(frozen=True)
class DesignMatrix:
    """Numeric design matrix tied to the schema that produced it."""

    values: np.ndarray
    schema: ColumnSchema

    @property
    def n_rows(self) -> int:
        return self.values.shape[0]

    def column(self, name: str) -> np.ndarray:
        try:
            return self.values[:, self.schema.column_index[name]]
        except KeyError:
            raise EncodingError(f"Design matrix has no column '{name}'") from None


class DesignMatrixBuilder:
    """Encode categorical records into a :class:`DesignMatrix`.

    Parameters
    ----------
    schema : ColumnSchema, optional
        Column schema to encode with.  Defaults to the canonical covariates
        declared in :mod:`constituency_mrp.config`.
    """

    def __init__(self, schema: Optional[ColumnSchema] = None) -> None:
        self.schema = schema if schema is not None else ColumnSchema.from_declarations()

    def check_levels(self, df: pl.DataFrame) -> None:
        """Raise :class:`EncodingError` unless every value of every encoded
        variable is a declared level."""
        missing = [v.name for v in self.schema.variables if v.name not in df.columns]
        if missing:
            raise EncodingError(f"Missing covariate columns: {missing}")

        problems: list[str] = []
        for var in self.schema.variables:
            col = pl.col(var.name).cast(pl.String)
            n_null = df.select(col.is_null().sum()).item()
            if n_null:
                problems.append(f"'{var.name}' has {n_null} missing value(s)")
            unseen = (
                df.filter(col.is_not_null() & ~col.is_in(list(var.levels)))
                .select(col.unique().sort())
                .to_series()
                .to_list()
            )
            if unseen:
                problems.append(f"'{var.name}' has undeclared level(s) {unseen}")
        if problems:
            raise EncodingError("Cannot encode records: " + "; ".join(problems))

    def encode(self, df: pl.DataFrame) -> DesignMatrix:
        """Encode *df* into indicator columns.

        Parameters
        ----------
        df : pl.DataFrame
            Records with one string column per schema variable.  Extra
            columns are ignored.

        Returns
        -------
        DesignMatrix
            Read-only float64 matrix of shape ``(df.height, schema.n_columns)``.

        Raises
        ------
        EncodingError
            If a variable column is missing, holds nulls, or holds a level
            outside the declared level set.
        """
        self.check_levels(df)

        exprs = [
            (pl.col(var.name).cast(pl.String) == lvl).cast(pl.Float64).alias(var.column_name(lvl))
            for var in self.schema.variables
            for lvl in var.indicator_levels
        ]
        if exprs:
            values = np.ascontiguousarray(df.select(exprs).to_numpy(), dtype=np.float64)
        else:
            values = np.zeros((df.height, 0), dtype=np.float64)
        values.setflags(write=False)
        return DesignMatrix(values=values, schema=self.schema)
