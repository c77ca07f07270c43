"""Request/response contract with a posterior sampling backend.

The aggregator depends only on :class:`SamplingResult`; any backend that
implements :class:`PosteriorSamplingEngine` can replace the PyMC one.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import numpy as np

from constituency_mrp.config import (
    DEFAULT_CHAINS,
    DEFAULT_DRAWS,
    DEFAULT_RANDOM_SEED,
    DEFAULT_TARGET_ACCEPT,
    DEFAULT_TUNE,
)
from constituency_mrp.errors import DimensionMismatchError
from constituency_mrp.model.specification import ModelSpecification


def available_chain_slots() -> int:
    """Number of chains that may run concurrently on this machine."""
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)))
    return max(1, os.cpu_count() or 1)


def fails_r_hat(value: Optional[float], threshold: float) -> bool:
    """Whether an R-hat misses the convergence bar.

    A missing or non-finite R-hat (ArviZ reports NaN for stuck chains)
    fails.
    """
    return value is None or not np.isfinite(value) or bool(value >= threshold)


@dataclass(frozen=True)
class SamplingRequest:
    """A single model fit.

    Attributes
    ----------
    spec : ModelSpecification
        Data and model variant; carries the outcome vector, design
        matrices, area-id vector and area count.
    chains : int
        Number of independent chains.
    iterations : int
        Retained draws per chain.
    warmup : int
        Warm-up (tuning) iterations per chain, discarded.
    target_accept : float
    random_seed : int, optional
    progressbar : bool
    """

    spec: ModelSpecification
    chains: int = DEFAULT_CHAINS
    iterations: int = DEFAULT_DRAWS
    warmup: int = DEFAULT_TUNE
    target_accept: float = DEFAULT_TARGET_ACCEPT
    random_seed: Optional[int] = DEFAULT_RANDOM_SEED
    progressbar: bool = True

    def __post_init__(self) -> None:
        if self.chains < 2:
            raise ValueError("At least two chains are needed to diagnose convergence")
        if self.iterations < 1 or self.warmup < 0:
            raise ValueError("iterations must be positive and warmup non-negative")

    @property
    def param_names(self) -> list[str]:
        return self.spec.param_names


@dataclass
class SamplingResult:
    """Posterior draws returned by an engine.

    Attributes
    ----------
    draws : dict[str, np.ndarray]
        Draws per retained parameter, shape ``(chain, iteration, *param_shape)``.
    r_hat : dict[str, float]
        Largest potential-scale-reduction statistic per parameter.
    trace : Any, optional
        Raw backend output (e.g. ``az.InferenceData``) for diagnostics.
    """

    draws: dict[str, np.ndarray]
    r_hat: dict[str, float] = field(default_factory=dict)
    trace: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        shapes = {name: arr.shape[:2] for name, arr in self.draws.items()}
        if len(set(shapes.values())) > 1:
            raise DimensionMismatchError(f"Inconsistent (chain, iteration) shapes: {shapes}")

    @property
    def n_chains(self) -> int:
        return next(iter(self.draws.values())).shape[0]

    @property
    def n_iterations(self) -> int:
        return next(iter(self.draws.values())).shape[1]


class PosteriorSamplingEngine(Protocol):
    """Anything that turns a :class:`SamplingRequest` into posterior draws."""

    def sample(self, request: SamplingRequest) -> SamplingResult: ...
