"""
Description:
    Warmup adaptation of the step size and the mass matrix.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

Adaptors are mutable. The driver calls adapt(θ, α) once per warmup iteration
and finalize() exactly once, on the last warmup iteration; the sampler then
reads step_size / inv_mass (None when an adaptor does not tune that piece).
"""
import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import jax.numpy as jnp
import numpy as np

from AHMC.datatypes import AdaptationError, ConfigurationError
from AHMC.diagnostics import maxdiagdiff
from AHMC.metrics import (
    Metric, UnitEuclideanMetric, DiagEuclideanMetric, DenseEuclideanMetric,
)

logger = logging.getLogger(__name__)


class Adaptor:
    """Shared contract; concrete adaptors implement adapt and _finalize"""
    step_size: Optional[float] = None
    inv_mass: Optional[jnp.ndarray] = None
    is_finalized: bool = False

    def adapt(self, θ, α) -> None:
        raise NotImplementedError

    def finalize(self) -> None:
        if self.is_finalized:
            raise AdaptationError(f"{type(self).__name__} has already been finalized")
        self._finalize()
        self.is_finalized = True

    def _finalize(self) -> None:
        pass

    def _check_open(self) -> None:
        if self.is_finalized:
            raise AdaptationError(f"Cannot adapt {type(self).__name__} after finalize()")


class NoAdaptation(Adaptor):
    def adapt(self, θ, α) -> None:
        pass

    def __repr__(self) -> str:
        return "NoAdaptation()"


# ---------------------------
# Step size
# ---------------------------

@dataclass
class DAState:
    m: int # iterations since the last reset
    ϵ: float # current step size exp(x_m)
    μ: float # shrinkage target log(10 ϵ_0)
    x_bar: float # averaged log step size
    H_bar: float # averaged acceptance error


def _mean_accept(α) -> float:
    """Mean acceptance over chains, clipped to [0, 1] with NaN as 0"""
    a = np.nan_to_num(np.clip(np.asarray(α, dtype=float), 0.0, 1.0), nan=0.0)
    return float(np.mean(a))


class NesterovDualAveraging(Adaptor):
    """
    Dual averaging of log ϵ towards a target acceptance rate δ
    (Hoffman & Gelman 2014, Algorithm 5).

        H_bar_m = (1 - 1/(m+t_0)) H_bar_{m-1} + (δ - α_m)/(m+t_0)
        x_m     = μ - sqrt(m)/γ H_bar_m
        x_bar_m = m^{-κ} x_m + (1 - m^{-κ}) x_bar_{m-1}

    The final step size is exp(x_bar).
    """

    def __init__(self, δ: float, ϵ: float, γ: float = 0.05, t_0: float = 10.0, κ: float = 0.75):
        if not 0.0 < δ < 1.0:
            raise ConfigurationError(f"Target acceptance rate must lie in (0, 1), got {δ}")
        if not ϵ > 0.0:
            raise ConfigurationError(f"Initial step size must be positive, got {ϵ}")
        self.δ, self.γ, self.t_0, self.κ = float(δ), float(γ), float(t_0), float(κ)
        self.state = DAState(m=0, ϵ=float(ϵ), μ=math.log(10 * ϵ), x_bar=0.0, H_bar=0.0)

    @property
    def step_size(self) -> float:
        return self.state.ϵ

    def reset(self) -> None:
        """Restart the averages around the current step size"""
        ϵ = self.state.ϵ
        self.state = DAState(m=0, ϵ=ϵ, μ=math.log(10 * ϵ), x_bar=0.0, H_bar=0.0)

    def adapt(self, θ, α) -> None:
        self._check_open()
        s = self.state
        s.m += 1
        η_H = 1.0 / (s.m + self.t_0)
        s.H_bar = (1.0 - η_H) * s.H_bar + η_H * (self.δ - _mean_accept(α))
        x = s.μ - s.H_bar * math.sqrt(s.m) / self.γ
        η_x = s.m ** (-self.κ)
        s.x_bar = (1.0 - η_x) * s.x_bar + η_x * x
        s.ϵ = math.exp(x)

    def _finalize(self) -> None:
        if self.state.m > 0:
            self.state.ϵ = math.exp(self.state.x_bar)

    def __repr__(self) -> str:
        return f"NesterovDualAveraging(δ={self.δ}, ϵ={self.state.ϵ:.4g}, m={self.state.m})"


# ---------------------------
# Mass matrix
# ---------------------------

def _regularize(n: int, estimate: np.ndarray, shrink_to: np.ndarray) -> np.ndarray:
    """Stan's shrinkage: n/(n+5) Σ + 1e-3 * 5/(n+5) I"""
    return (n / (n + 5.0)) * estimate + 1e-3 * (5.0 / (n + 5.0)) * shrink_to


@dataclass
class WelfordVar:
    """Online mean and variance"""
    n: int
    μ: np.ndarray
    M: np.ndarray

    @classmethod
    def zeros(cls, dim: int) -> "WelfordVar":
        return cls(n=0, μ=np.zeros(dim), M=np.zeros(dim))

    def add_sample(self, x: np.ndarray) -> None:
        self.n += 1
        δ = x - self.μ
        self.μ = self.μ + δ / self.n
        self.M = self.M + δ * (x - self.μ)

    def get_estimate(self) -> np.ndarray:
        var = self.M / (self.n - 1)
        return _regularize(self.n, var, np.ones_like(var))

    def reset(self) -> None:
        self.n = 0
        self.μ = np.zeros_like(self.μ)
        self.M = np.zeros_like(self.M)


@dataclass
class WelfordCov:
    """Online mean and covariance"""
    n: int
    μ: np.ndarray
    M: np.ndarray

    @classmethod
    def zeros(cls, dim: int) -> "WelfordCov":
        return cls(n=0, μ=np.zeros(dim), M=np.zeros((dim, dim)))

    def add_sample(self, x: np.ndarray) -> None:
        self.n += 1
        δ = x - self.μ
        self.μ = self.μ + δ / self.n
        self.M = self.M + np.outer(x - self.μ, δ)

    def get_estimate(self) -> np.ndarray:
        cov = self.M / (self.n - 1)
        cov = 0.5 * (cov + cov.T)
        return _regularize(self.n, cov, np.eye(cov.shape[0]))

    def reset(self) -> None:
        self.n = 0
        self.μ = np.zeros_like(self.μ)
        self.M = np.zeros_like(self.M)


class UnitPreconditioner(Adaptor):
    """Identity metric: nothing to estimate"""

    def adapt(self, θ, α) -> None:
        self._check_open()

    def update_estimate(self) -> None:
        pass

    def __repr__(self) -> str:
        return "UnitPreconditioner()"


class _WelfordPreconditioner(Adaptor):
    """
    Accumulates positions (each row of a batch is one sample) and turns them
    into a regularised inverse mass matrix when a window closes.
    """
    _estimator_cls = WelfordVar

    def __init__(self, dim: int):
        self.estimator = self._estimator_cls.zeros(dim)
        self._inv_mass = None

    @property
    def inv_mass(self) -> Optional[jnp.ndarray]:
        return self._inv_mass

    def adapt(self, θ, α) -> None:
        self._check_open()
        for x in np.atleast_2d(np.asarray(θ, dtype=float)):
            self.estimator.add_sample(x)

    def update_estimate(self) -> None:
        """Close the current window; fewer than two samples keeps the old estimate"""
        if self.estimator.n >= 2:
            self._inv_mass = jnp.asarray(self.estimator.get_estimate())
        self.estimator.reset()

    def _finalize(self) -> None:
        self.update_estimate()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(dim={self.estimator.μ.shape[0]}, n={self.estimator.n})"


class DiagPreconditioner(_WelfordPreconditioner):
    _estimator_cls = WelfordVar


class DensePreconditioner(_WelfordPreconditioner):
    _estimator_cls = WelfordCov


def Preconditioner(metric: Metric) -> Adaptor:
    """Mass matrix adaptor matching the metric variant"""
    if isinstance(metric, UnitEuclideanMetric):
        return UnitPreconditioner()
    if isinstance(metric, DiagEuclideanMetric):
        return DiagPreconditioner(metric.dim)
    if isinstance(metric, DenseEuclideanMetric):
        return DensePreconditioner(metric.dim)
    raise ConfigurationError(f"No preconditioner for metric {type(metric).__name__}")


# ---------------------------
# Composition
# ---------------------------

class CompositeAdaptor(Adaptor):
    """Runs independent adaptors in order on the same inputs"""

    def __init__(self, *adaptors: Adaptor):
        self.adaptors = list(adaptors)

    @property
    def step_size(self) -> Optional[float]:
        return next((a.step_size for a in self.adaptors if a.step_size is not None), None)

    @property
    def inv_mass(self) -> Optional[jnp.ndarray]:
        return next((a.inv_mass for a in self.adaptors if a.inv_mass is not None), None)

    def adapt(self, θ, α) -> None:
        self._check_open()
        for adaptor in self.adaptors:
            adaptor.adapt(θ, α)

    def _finalize(self) -> None:
        for adaptor in self.adaptors:
            adaptor.finalize()

    def __repr__(self) -> str:
        return f"CompositeAdaptor({', '.join(map(repr, self.adaptors))})"


NaiveCompAdaptor = CompositeAdaptor


class WindowSchedule(NamedTuple):
    """Mass matrix windows [start, end) over 0-based warmup iterations"""
    n_adapts: int
    windows: Tuple[Tuple[int, int], ...]

    def in_window(self, i: int) -> bool:
        return any(start <= i < end for start, end in self.windows)

    def is_window_end(self, i: int) -> bool:
        return any(end == i + 1 for _, end in self.windows)


def make_window_schedule(
    n_adapts: int,
    init_buffer: int = 75,
    term_buffer: int = 50,
    window_size: int = 25,
) -> WindowSchedule:
    """
    Stan-like warmup windows.

    A step-size-only initial buffer, mass matrix windows doubling in width,
    and a step-size-only terminal buffer. The last window absorbs whatever
    would be too short to hold the next doubled window.
    """
    if n_adapts < 20:
        return WindowSchedule(n_adapts, ())
    if init_buffer + term_buffer + window_size > n_adapts:
        init_buffer = int(0.15 * n_adapts)
        term_buffer = int(0.1 * n_adapts)
        window_size = n_adapts - init_buffer - term_buffer

    windows = []
    start, size = init_buffer, window_size
    end_mass = n_adapts - term_buffer
    while start < end_mass:
        end = start + size
        if end + 2 * size > end_mass:
            end = end_mass
        windows.append((start, end))
        start, size = end, 2 * size
    return WindowSchedule(n_adapts, tuple(windows))


class StagedAdaptor(Adaptor):
    """
    Windowed adaptation: dual averaging on every warmup iteration, mass
    matrix estimation inside the windows of the schedule. Each window end
    installs a new mass matrix and restarts the step size averages.
    """

    def __init__(
        self,
        n_adapts: int,
        pc: Adaptor,
        ssa: NesterovDualAveraging,
        init_buffer: int = 75,
        term_buffer: int = 50,
        window_size: int = 25,
    ):
        self.pc = pc
        self.ssa = ssa
        self.schedule = make_window_schedule(n_adapts, init_buffer, term_buffer, window_size)
        self.i = 0

    @property
    def n_adapts(self) -> int:
        return self.schedule.n_adapts

    @property
    def step_size(self) -> float:
        return self.ssa.step_size

    @property
    def inv_mass(self) -> Optional[jnp.ndarray]:
        return self.pc.inv_mass

    def adapt(self, θ, α) -> None:
        self._check_open()
        if self.i >= self.n_adapts:
            raise AdaptationError(
                f"Adaptation past the {self.n_adapts} iterations of the warmup schedule"
            )
        i = self.i
        self.i += 1
        self.ssa.adapt(θ, α)
        if self.schedule.in_window(i):
            self.pc.adapt(θ, α)
            if self.schedule.is_window_end(i):
                previous = self.pc.inv_mass
                self.pc.update_estimate()
                self.ssa.reset()
                if previous is not None and self.pc.inv_mass is not None:
                    logger.debug(
                        "Closed mass matrix window at warmup iteration %d, diagonal moved by %.3g",
                        i + 1, maxdiagdiff(previous, self.pc.inv_mass),
                    )
                else:
                    logger.debug("Closed mass matrix window at warmup iteration %d", i + 1)

    def _finalize(self) -> None:
        self.ssa.finalize()
        self.pc.finalize()

    def __repr__(self) -> str:
        return f"StagedAdaptor(n_adapts={self.n_adapts}, windows={list(self.schedule.windows)}, pc={self.pc!r}, ssa={self.ssa!r})"


StanNUTSAdaptor = StagedAdaptor
