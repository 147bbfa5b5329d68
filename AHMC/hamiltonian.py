"""
Description:
    Hamiltonian structures: energies and phase points.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2
"""
from typing import NamedTuple, Optional, Callable
import jax
import jax.numpy as jnp

from AHMC.datatypes import (
    PhasePoint, ShapeMismatch, LogDensity, ValueAndGrad, PRNGKey,
)
from AHMC.metrics import Metric


class Hamiltonian(NamedTuple):
    """
    Hamiltonian(θ,r) = U(θ) + K(r)
    For standard HMC:
        U(θ) = -log π(θ)
        K(r) = 0.5 * r.T @ M^{-1} @ r

    A value: changing the metric builds a new Hamiltonian (see `update`).
    """
    metric: Metric
    logπ: LogDensity
    value_and_grad: ValueAndGrad # θ -> (log π(θ), ∇log π(θ))

    def potential_energy(self, z: PhasePoint) -> jnp.ndarray:
        return -z.logπ

    def kinetic_energy(self, r: jnp.ndarray) -> jnp.ndarray:
        return self.metric.kinetic_energy(r)

    def energy(self, z: PhasePoint) -> jnp.ndarray:
        """total energy H(θ,r) = U(θ) + K(r)"""
        return self.potential_energy(z) + self.kinetic_energy(z.r)

    def grad_θ(self, z: PhasePoint) -> jnp.ndarray:
        """∂H/∂θ = ∂U/∂θ, read from the cache"""
        return -z.dlogπ

    def grad_r(self, z: PhasePoint) -> jnp.ndarray:
        """∂H/∂r = ∂K/∂r"""
        return self.metric.velocity(z.r)

    def phasepoint(self, θ: jnp.ndarray, r: jnp.ndarray) -> PhasePoint:
        """
        Evaluate the oracle at θ and cache the result.

        Non-finite log density or gradient marks the point as rejected
        (log π = -inf, zero gradient) instead of carrying NaN forward.
        """
        θ = jnp.asarray(θ)
        r = jnp.asarray(r)
        if θ.shape != self.metric.shape:
            raise ShapeMismatch(
                f"Position shape {θ.shape} does not match metric shape {self.metric.shape}"
            )
        if r.shape != θ.shape:
            raise ShapeMismatch(f"Momentum shape {r.shape} does not match position {θ.shape}")
        return self.evaluate(θ, r)

    def evaluate(self, θ: jnp.ndarray, r: jnp.ndarray) -> PhasePoint:
        """`phasepoint` without the position checks; traceable under jit"""
        logπ, dlogπ = self.value_and_grad(θ)
        logπ = jnp.asarray(logπ)
        dlogπ = jnp.asarray(dlogπ)
        if dlogπ.shape != θ.shape:
            raise ShapeMismatch(f"Gradient shape {dlogπ.shape} does not match position {θ.shape}")

        finite = jnp.isfinite(logπ) & jnp.all(jnp.isfinite(dlogπ), axis=-1)
        return PhasePoint(
            θ=θ,
            r=r,
            logπ=jnp.where(finite, logπ, -jnp.inf),
            dlogπ=jnp.where(finite[..., None], dlogπ, 0.0),
        )

    def refresh(self, key: PRNGKey, z: PhasePoint) -> PhasePoint:
        """Keep θ, resample r ~ N(0, M)"""
        return z._replace(r=self.metric.sample_momentum(key))

    def update(self, metric: Metric) -> "Hamiltonian":
        """New Hamiltonian under `metric`; self is left untouched"""
        return self._replace(metric=metric)


# Hamiltonian constructors

def value_and_grad_oracle(logπ: LogDensity) -> ValueAndGrad:
    """
    Compiled (log π, ∇log π) via autodiff.

    Positions of shape (n_chains, dim) are mapped row by row.
    """
    single = jax.jit(jax.value_and_grad(logπ))
    batched = jax.jit(jax.vmap(jax.value_and_grad(logπ)))

    def oracle(θ: jnp.ndarray):
        return batched(θ) if θ.ndim == 2 else single(θ)
    return oracle


def standard_hamiltonian(
    metric: Metric,
    logπ: LogDensity,
    grad_logπ: Optional[Callable[[jnp.ndarray], jnp.ndarray]] = None,
) -> Hamiltonian:
    """
    Hamiltonian for target log π under `metric`.

    Args:
        metric: Mass matrix
        logπ: Log density (unnormalised)
        grad_logπ: Gradient of logπ; autodiff is used when omitted.
            A hand-written gradient must accept the same shapes as logπ.

    Returns:
        Hamiltonian
    """
    if grad_logπ is None:
        return Hamiltonian(metric, logπ, value_and_grad_oracle(logπ))

    def value_and_grad(θ: jnp.ndarray):
        return logπ(θ), grad_logπ(θ)
    return Hamiltonian(metric, logπ, value_and_grad)
