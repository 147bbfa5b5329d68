"""
Description:
    Numerical integrators for Hamiltonian dynamics.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2
"""
import jax
import jax.numpy as jnp
from functools import partial
from typing import NamedTuple, Tuple

from AHMC.datatypes import PhasePoint, ShapeMismatch
from AHMC.hamiltonian import Hamiltonian
from AHMC.metrics import Metric


def where_phasepoint(mask: jnp.ndarray, a: PhasePoint, b: PhasePoint) -> PhasePoint:
    """Row-wise select: a where mask, else b. mask has shape () or (n_chains,)"""
    m = mask[..., None]
    return PhasePoint(
        θ=jnp.where(m, a.θ, b.θ),
        r=jnp.where(m, a.r, b.r),
        logπ=jnp.where(mask, a.logπ, b.logπ),
        dlogπ=jnp.where(m, a.dlogπ, b.dlogπ),
    )


def lf_step(h: Hamiltonian, z: PhasePoint, τ: float) -> PhasePoint:
    """
    Single lf integration step.

    Does p-first. The gradient at z.θ comes from the phase point cache,
    which holds exactly ∇log π(z.θ), so the step stays reversible.
    """
    # Half step momentum
    r_half = z.r - 0.5 * τ * h.grad_θ(z)

    # Full step position
    θ_new = z.θ + τ * h.metric.velocity(r_half)
    z_new = h.evaluate(θ_new, r_half)

    # Half step momentum
    r_new = r_half - 0.5 * τ * h.grad_θ(z_new)
    return z_new._replace(r=r_new)


@partial(jax.jit, static_argnames=['oracle', 'N'])
def lf_integrate(
    metric: Metric,
    oracle: Hamiltonian,
    z: PhasePoint,
    τ: float,
    N: int
) -> Tuple[PhasePoint, jnp.ndarray]:
    """
    N lf steps under lax.scan.

    `oracle` is the Hamiltonian with its metric stripped (hashable, static);
    the metric is passed separately so its arrays are traced. Chains whose
    log density turned non-finite are frozen where they diverged.

    Returns:
        (final state, number of steps each chain actually took)
    """
    h = oracle._replace(metric=metric)

    def body(carry, _):
        z, n_taken = carry
        alive = jnp.isfinite(z.logπ)
        z = where_phasepoint(alive, lf_step(h, z, τ), z)
        return (z, n_taken + alive), None

    n_taken = jnp.zeros(jnp.shape(z.logπ), dtype=jnp.int32)
    (z, n_taken), _ = jax.lax.scan(body, (z, n_taken), None, length=N)
    return z, n_taken


class Leapfrog(NamedTuple):
    """Leapfrog integrator"""
    τ: float # time-step size

    def with_step_size(self, τ: float) -> "Leapfrog":
        return self._replace(τ=float(τ))

    def integrate(self, h: Hamiltonian, z: PhasePoint, n_steps: int = 1) -> Tuple[PhasePoint, jnp.ndarray]:
        """
        LF integration for |n_steps| steps; negative n_steps integrates
        backward in time.

        Returns:
            (final state, steps taken per chain). A chain whose energy turned
            non-finite stays at the point where it diverged.
        """
        if z.θ.shape != h.metric.shape:
            raise ShapeMismatch(
                f"Position shape {z.θ.shape} does not match metric shape {h.metric.shape}"
            )
        τ = self.τ if n_steps > 0 else -self.τ
        return lf_integrate(h.metric, h._replace(metric=None), z, τ, abs(n_steps))

    def step(self, h: Hamiltonian, z: PhasePoint, n_steps: int = 1) -> PhasePoint:
        """Final state of `integrate`"""
        return self.integrate(h, z, n_steps)[0]
