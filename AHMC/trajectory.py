"""
Description:
    Trajectories turning leapfrog integration into one Markov transition:
    fixed-length HMC and the No-U-Turn sampler.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1
"""
import logging
import math
import jax.numpy as jnp
import jax.random as jr
import numpy as np
from typing import NamedTuple, Tuple

from AHMC import keys
from AHMC.datatypes import (
    PhasePoint, Transition, TransitionStats, ConfigurationError, PRNGKey,
)
from AHMC.hamiltonian import Hamiltonian
from AHMC.integrator import Leapfrog, where_phasepoint

logger = logging.getLogger(__name__)


def _host(x):
    """Python scalar for a single chain, numpy array for a batch"""
    x = np.asarray(x)
    return x.item() if x.ndim == 0 else x


def acceptance_probability(delta_H: jnp.ndarray) -> jnp.ndarray:
    """min(1, exp(delta_H)); a NaN energy difference is never accepted"""
    alpha = jnp.minimum(1.0, jnp.exp(delta_H))
    return jnp.where(jnp.isnan(alpha), 0.0, alpha)


def accept_reject(delta_H: jnp.ndarray, key: PRNGKey) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Metropolis-Hastings accept/reject step, per chain.

    Args:
        delta_H: Energy differences (H_current - H_proposed)
        key: Random key

    Returns:
        (is_accepted, acceptance probability)
    """
    alpha = acceptance_probability(delta_H)
    u = keys.uniform(key, jnp.shape(alpha))
    return u < alpha, alpha


class StaticTrajectory(NamedTuple):
    """HMC with a fixed number of leapfrog steps and an end-point MH correction"""
    integrator: Leapfrog
    n_steps: int

    def transition(self, key: PRNGKey, h: Hamiltonian, z: PhasePoint) -> Transition:
        H0 = h.energy(z)
        z_star, n_taken = self.integrator.integrate(h, z, self.n_steps)
        # Negate momentum so the proposal is an involution
        z_star = z_star._replace(r=-z_star.r)
        H = h.energy(z_star)
        H = jnp.where(jnp.isnan(H), jnp.inf, H)

        is_accept, alpha = accept_reject(H0 - H, key)
        z_new = where_phasepoint(is_accept, z_star, z)
        stat = TransitionStats(
            n_steps=_host(n_taken),
            is_accept=_host(is_accept),
            acceptance_rate=_host(alpha),
            log_density=_host(z_new.logπ),
            hamiltonian_energy=_host(jnp.where(is_accept, H, H0)),
            hamiltonian_energy_error=_host(H - H0),
            step_size=self.integrator.τ,
            numerical_error=_host(~jnp.isfinite(H)),
        )
        return Transition(z_new, stat)


# ---------------------------
# No-U-Turn sampler
# ---------------------------

class Tree(NamedTuple):
    """Summary of a (sub)trajectory; leaves are ordered in simulated time"""
    z_minus: PhasePoint # leftmost leaf
    z_plus: PhasePoint # rightmost leaf
    candidate: PhasePoint # multinomial draw among the leaves
    logw: float # log Σ exp(H0 - H) over leaves
    sum_α: float
    n_α: int
    turning: bool
    divergent: bool


def is_turning(z_minus: PhasePoint, z_plus: PhasePoint) -> bool:
    """U-turn: either end's momentum points against θ+ - θ-"""
    dθ = z_plus.θ - z_minus.θ
    return bool((jnp.dot(dθ, z_minus.r) < 0) | (jnp.dot(dθ, z_plus.r) < 0))


def _take(key: PRNGKey, log_ratio: float) -> bool:
    """Bernoulli(min(1, exp(log_ratio)))"""
    return float(jr.uniform(key)) < math.exp(min(0.0, log_ratio))


class NUTS(NamedTuple):
    """
    No-U-Turn sampler with multinomial sampling over the trajectory.

    Each doubling extends the trajectory forward or backward by as many
    leapfrog steps as it already holds. Doubling stops on a U-turn, on an
    energy error above Δ_max, or after max_depth doublings.
    """
    integrator: Leapfrog
    max_depth: int = 10
    Δ_max: float = 1000.0

    def _leaf(self, h: Hamiltonian, z: PhasePoint, v: int, H0: float) -> Tree:
        z1 = self.integrator.step(h, z, v)
        H = float(h.energy(z1))
        if math.isnan(H):
            H = math.inf
        delta = H - H0
        return Tree(
            z_minus=z1,
            z_plus=z1,
            candidate=z1,
            logw=-delta,
            sum_α=math.exp(min(0.0, -delta)),
            n_α=1,
            turning=False,
            divergent=delta > self.Δ_max,
        )

    def _build_tree(
        self, key: PRNGKey, h: Hamiltonian, z: PhasePoint, v: int, j: int, H0: float
    ) -> Tree:
        """Tree of 2^j leaves starting one step from z in direction v"""
        if j == 0:
            return self._leaf(h, z, v, H0)

        k_left, k_right, k_select = jr.split(key, 3)
        left = self._build_tree(k_left, h, z, v, j - 1, H0)
        if left.turning or left.divergent:
            return left
        edge = left.z_minus if v < 0 else left.z_plus
        right = self._build_tree(k_right, h, edge, v, j - 1, H0)

        if v < 0:
            z_minus, z_plus = right.z_minus, left.z_plus
        else:
            z_minus, z_plus = left.z_minus, right.z_plus
        logw = float(np.logaddexp(left.logw, right.logw))
        # uniform progressive sampling inside a subtree
        candidate = right.candidate if _take(k_select, right.logw - logw) else left.candidate
        return Tree(
            z_minus=z_minus,
            z_plus=z_plus,
            candidate=candidate,
            logw=logw,
            sum_α=left.sum_α + right.sum_α,
            n_α=left.n_α + right.n_α,
            turning=right.turning or is_turning(z_minus, z_plus),
            divergent=right.divergent,
        )

    def transition(self, key: PRNGKey, h: Hamiltonian, z: PhasePoint) -> Transition:
        if z.is_batched:
            raise ConfigurationError("NUTS runs one chain at a time; got a batched phase point")
        if self.max_depth < 1:
            raise ConfigurationError(f"max_depth must be positive, got {self.max_depth}")

        H0 = float(h.energy(z))
        z_minus = z_plus = candidate = z
        logw = 0.0
        sum_α, n_α = 0.0, 0
        divergent = False
        depth = 0
        while depth < self.max_depth:
            key, k_dir, k_tree, k_select = jr.split(key, 4)
            v = 1 if bool(jr.bernoulli(k_dir)) else -1
            if v < 0:
                tree = self._build_tree(k_tree, h, z_minus, v, depth, H0)
                z_minus = tree.z_minus
            else:
                tree = self._build_tree(k_tree, h, z_plus, v, depth, H0)
                z_plus = tree.z_plus
            depth += 1
            sum_α += tree.sum_α
            n_α += tree.n_α

            if tree.divergent:
                divergent = True
                break
            if tree.turning:
                break
            # biased progressive sampling towards the new subtree
            if _take(k_select, tree.logw - logw):
                candidate = tree.candidate
            logw = float(np.logaddexp(logw, tree.logw))
            if is_turning(z_minus, z_plus):
                break
        else:
            logger.debug("NUTS reached max tree depth %d", self.max_depth)

        if divergent:
            logger.debug("Divergent transition at tree depth %d", depth)
        H = float(h.energy(candidate))
        stat = TransitionStats(
            n_steps=n_α,
            is_accept=True,
            acceptance_rate=sum_α / n_α,
            log_density=float(candidate.logπ),
            hamiltonian_energy=H,
            hamiltonian_energy_error=H - H0,
            step_size=self.integrator.τ,
            numerical_error=divergent,
            tree_depth=depth,
        )
        return Transition(candidate, stat)


def find_good_eps(
    key: PRNGKey,
    h: Hamiltonian,
    θ: jnp.ndarray,
    max_n_iters: int = 100,
) -> float:
    """
    Heuristic initial step size for a single chain.

    Doubles (or halves) ϵ until the one-step acceptance ratio crosses 1/2,
    then bisects the bracket until it lies in [0.25, 0.75].

    Args:
        key: Random key for the momentum draw
        h: Hamiltonian
        θ: Position
        max_n_iters: Iteration cap for each of the two phases

    Returns:
        Step size
    """
    log_a_min, log_a_cross, log_a_max = math.log(0.25), math.log(0.5), math.log(0.75)
    z = h.phasepoint(θ, h.metric.sample_momentum(key))
    H0 = float(h.energy(z))

    def delta_H(ϵ: float) -> float:
        H = float(h.energy(Leapfrog(ϵ).step(h, z)))
        return -math.inf if math.isnan(H) else H0 - H

    ϵ = 0.1
    direction = 1 if delta_H(ϵ) > log_a_cross else -1
    ϵ_new = ϵ
    for _ in range(max_n_iters):
        ϵ_new = 2.0 * ϵ if direction == 1 else 0.5 * ϵ
        dH = delta_H(ϵ_new)
        if direction == 1 and not dH > log_a_cross:
            break
        if direction == -1 and not dH < log_a_cross:
            break
        ϵ = ϵ_new

    lo, hi = min(ϵ, ϵ_new), max(ϵ, ϵ_new)
    for _ in range(max_n_iters):
        mid = 0.5 * (lo + hi)
        dH = delta_H(mid)
        if log_a_min < dH < log_a_max:
            return mid
        if dH >= log_a_max:
            lo = mid
        else:
            hi = mid
    return 0.5 * (lo + hi)
