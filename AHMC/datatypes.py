"""
Description:
    Core data structures for AHMC.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2

All modules import from here to ensure type consistency and avoid indexing bugs.
Batched chains live on the leading axis: θ.shape == (n_chains, dim).
"""
from typing import NamedTuple, Callable, Optional, Tuple, List, Any
import jax.numpy as jnp


class ShapeMismatch(ValueError):
    """Position/momentum shape disagrees with the metric."""


class ConfigurationError(ValueError):
    """Invalid sampler configuration, raised before any iteration runs."""


class AdaptationError(RuntimeError):
    """Adaptor used outside its warmup contract (finalised twice, adapted too long)."""


class PhasePoint(NamedTuple):
    """Phase space state (θ, r) with the oracle values cached at θ"""
    θ: jnp.ndarray # position
    r: jnp.ndarray # momentum
    logπ: jnp.ndarray # log density at θ, () or (n_chains,)
    dlogπ: jnp.ndarray # gradient of log density at θ

    @property
    def dim(self) -> int:
        """Dimension of configuration space"""
        return self.θ.shape[-1]

    @property
    def is_batched(self) -> bool:
        return self.θ.ndim == 2


class TransitionStats(NamedTuple):
    """Per-iteration statistics. Fields are arrays of shape (n_chains,) when batched."""
    n_steps: Any # leapfrog steps actually taken, per chain when batched
    is_accept: Any
    acceptance_rate: Any
    log_density: Any
    hamiltonian_energy: Any
    hamiltonian_energy_error: Any
    step_size: float
    numerical_error: Any # divergence flag
    tree_depth: Optional[int] = None # NUTS only
    is_adapt: bool = False


class Transition(NamedTuple):
    z: PhasePoint
    stat: TransitionStats


class SamplerOutput(NamedTuple):
    samples: jnp.ndarray # (n_keep, *θ.shape) - positions only
    stats: List[TransitionStats]
    ebfmi: Any # float, or (n_chains,) when batched
    accept_rate: float


# Type aliases for clarity
LogDensity = Callable[[jnp.ndarray], jnp.ndarray]
ValueAndGrad = Callable[[jnp.ndarray], Tuple[jnp.ndarray, jnp.ndarray]]
PRNGKey = jnp.ndarray # legacy uint32 key (2,), or per-chain keys (n_chains, 2)
InverseMassMatrix = jnp.ndarray
PrecisionMatrix = jnp.ndarray
