"""Exception types raised by the MRP engine.

None of these are retried internally: an encoding, convergence or
aggregation problem invalidates the estimate being produced.
"""

from __future__ import annotations


class MRPError(Exception):
    """Base class for all errors raised by :mod:`constituency_mrp`."""


class EncodingError(MRPError, ValueError):
    """A categorical level, area code or design column does not match the
    declared encoding."""


class ConvergenceError(MRPError, RuntimeError):
    """Posterior draws were supplied without meeting the convergence bar."""


class InsufficientDrawsError(MRPError, ValueError):
    """More posterior draws were requested than are available."""


class DimensionMismatchError(MRPError, ValueError):
    """Vectors that must be aligned have inconsistent lengths or keys."""


class UndefinedAggregateError(MRPError, ArithmeticError):
    """A weighted mean was requested over a zero total weight."""
