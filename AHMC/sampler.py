"""
Description:
    MCMC sampling driver: momentum refresh, transition, warmup adaptation.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2
"""
import contextlib
import logging
import time
from typing import Callable, Optional, Tuple, Union

import jax.numpy as jnp
import numpy as np
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeRemainingColumn

from AHMC import keys
from AHMC.adaptation import Adaptor, NoAdaptation, StagedAdaptor
from AHMC.datatypes import (
    PhasePoint, Transition, TransitionStats, SamplerOutput,
    ShapeMismatch, ConfigurationError, AdaptationError, PRNGKey,
)
from AHMC.diagnostics import ebfmi, mean_acceptance_rate
from AHMC.hamiltonian import Hamiltonian
from AHMC.metrics import Metric
from AHMC.trajectory import StaticTrajectory, NUTS

logger = logging.getLogger(__name__)

Proposal = Union[StaticTrajectory, NUTS]


def sample_init(h: Hamiltonian, θ: jnp.ndarray) -> Tuple[Hamiltonian, Transition]:
    """
    Initial transition at θ. Momentum stays zero until the first refresh.
    """
    θ = jnp.asarray(θ)
    if θ.shape != h.metric.shape:
        raise ShapeMismatch(
            f"Initial position shape {θ.shape} does not match metric shape {h.metric.shape}"
        )
    z = h.phasepoint(θ, jnp.zeros_like(θ))
    if not bool(jnp.all(jnp.isfinite(z.logπ))):
        raise ConfigurationError("Log density is not finite at the initial position")
    return h, Transition(z, None)


def step(key: PRNGKey, h: Hamiltonian, proposal: Proposal, z: PhasePoint) -> Transition:
    """A step is a momentum refreshment plus a transition"""
    k_momentum, k_transition = keys.split(key)
    z = h.refresh(k_momentum, z)
    return proposal.transition(k_transition, h, z)


def update(
    h: Hamiltonian, proposal: Proposal, adaptor: Adaptor, renew_metric: bool = True
) -> Tuple[Hamiltonian, Proposal]:
    """Rebuild Hamiltonian and proposal from the adaptor's current parameters"""
    inv_mass = adaptor.inv_mass
    if renew_metric and inv_mass is not None:
        h = h.update(h.metric.renew(inv_mass))
    ϵ = adaptor.step_size
    if ϵ is not None:
        proposal = proposal._replace(integrator=proposal.integrator.with_step_size(ϵ))
    return h, proposal


def adapt(
    h: Hamiltonian,
    proposal: Proposal,
    adaptor: Adaptor,
    i: int,
    n_adapts: int,
    θ: jnp.ndarray,
    α,
) -> Tuple[Hamiltonian, Proposal, bool]:
    """
    Adapt on warmup iteration i (1-based); finalize on i == n_adapts.

    Returns:
        (h, proposal, is_adapted)
    """
    if isinstance(adaptor, NoAdaptation) or i > n_adapts:
        return h, proposal, False
    inv_mass = adaptor.inv_mass
    adaptor.adapt(θ, α)
    if i == n_adapts:
        adaptor.finalize()
    # estimates are replaced, never mutated: a new object means a new metric
    h, proposal = update(h, proposal, adaptor, renew_metric=adaptor.inv_mass is not inv_mass)
    return h, proposal, True


def pm_next(pm, stat: TransitionStats, i: int, metric: Metric) -> None:
    """Progress update showing iteration, step size and acceptance rate"""
    progress, task = pm
    info = f"ϵ={stat.step_size:.3g} α={np.mean(stat.acceptance_rate):.2f}"
    if stat.tree_depth is not None:
        info += f" depth={stat.tree_depth}"
    progress.update(task, advance=1, info=info)


def simple_pm_next(pm, stat: TransitionStats, i: int, metric: Metric) -> None:
    progress, task = pm
    progress.update(task, advance=1)


@contextlib.contextmanager
def _progress_meter(enabled: bool, n_samples: int):
    if not enabled:
        yield None
        return
    with Progress(
        TextColumn("Sampling"),
        BarColumn(bar_width=31),
        MofNCompleteColumn(),
        TextColumn("{task.fields[info]}"),
        TimeRemainingColumn(),
    ) as progress:
        task = progress.add_task("Sampling", total=n_samples, info="")
        yield progress, task


def _check_config(
    h: Hamiltonian,
    proposal: Proposal,
    θ: jnp.ndarray,
    n_samples: int,
    adaptor: Adaptor,
    n_adapts: int,
    drop_warmup: bool,
) -> None:
    if n_samples < 1:
        raise ConfigurationError(f"n_samples must be positive, got {n_samples}")
    if not 0 <= n_adapts <= n_samples:
        raise ConfigurationError(f"n_adapts must lie in [0, {n_samples}], got {n_adapts}")
    if drop_warmup and isinstance(adaptor, NoAdaptation):
        raise ConfigurationError("Cannot drop warmup samples if there is no adaptation phase.")
    if adaptor.is_finalized:
        raise AdaptationError("Adaptor was finalized by an earlier run; build a fresh one")
    if isinstance(adaptor, StagedAdaptor) and adaptor.n_adapts != n_adapts:
        raise ConfigurationError(
            f"Warmup schedule covers {adaptor.n_adapts} iterations but n_adapts={n_adapts}"
        )
    if not proposal.integrator.τ > 0:
        raise ConfigurationError(f"Step size must be positive, got {proposal.integrator.τ}")
    if isinstance(proposal, StaticTrajectory) and proposal.n_steps < 1:
        raise ConfigurationError(f"n_steps must be positive, got {proposal.n_steps}")
    if isinstance(proposal, NUTS):
        if proposal.max_depth < 1:
            raise ConfigurationError(f"max_depth must be positive, got {proposal.max_depth}")
        if jnp.ndim(θ) == 2:
            raise ConfigurationError("NUTS runs one chain at a time; use StaticTrajectory for batches")


def sample(
    key: PRNGKey,
    h: Hamiltonian,
    proposal: Proposal,
    θ: jnp.ndarray,
    n_samples: int,
    adaptor: Optional[Adaptor] = None,
    n_adapts: Optional[int] = None,
    *,
    drop_warmup: bool = False,
    verbose: bool = True,
    progress: bool = False,
    callback: Optional[Callable[[int, TransitionStats], None]] = None,
    pm_next: Callable = pm_next,
) -> SamplerOutput:
    """
    Draw `n_samples` samples with `proposal` under Hamiltonian `h`.

    Args:
        key: Random key; a batched θ may also take per-chain keys (n_chains, 2)
        h: Hamiltonian
        proposal: StaticTrajectory or NUTS
        θ: Initial position (dim,) or (n_chains, dim)
        n_samples: Total number of iterations, warmup included
        adaptor: Warmup adaptor, NoAdaptation by default
        n_adapts: Warmup iterations, default min(n_samples // 10, 1000)
        drop_warmup: Leave the first n_adapts samples out of the output
        verbose: Log the end of adaptation and a run summary
        progress: Show a progress bar
        callback: Side-effect-only hook called as callback(i, stats)
        pm_next: Progress bar update, see `pm_next` / `simple_pm_next`

    Returns:
        SamplerOutput(samples, stats, ebfmi, accept_rate)
    """
    adaptor = NoAdaptation() if adaptor is None else adaptor
    n_adapts = min(n_samples // 10, 1_000) if n_adapts is None else int(n_adapts)
    θ = jnp.asarray(θ)
    _check_config(h, proposal, θ, n_samples, adaptor, n_adapts, drop_warmup)

    h, t = sample_init(h, θ)
    if t.z.is_batched:
        key = keys.chain_keys(key, θ.shape[0])
    elif keys.is_batched(key):
        raise ConfigurationError("Per-chain keys given for a single chain")

    θs, stats = [], []
    start = time.perf_counter()
    with _progress_meter(progress, n_samples) as pm:
        for i in range(1, n_samples + 1):
            key, subkey = keys.split(key)
            # Make a step
            t = step(subkey, h, proposal, t.z)
            # Adapt h and proposal; the adaptor is the only mutable piece
            h, proposal, isadapted = adapt(
                h, proposal, adaptor, i, n_adapts, t.z.θ, t.stat.acceptance_rate
            )
            tstat = t.stat._replace(is_adapt=isadapted)
            if callback is not None:
                callback(i, tstat)
            if pm is not None:
                pm_next(pm, tstat, i, h.metric)
            if verbose and isadapted and i == n_adapts:
                logger.info(
                    "Finished %d adaptation steps: adaptor=%r step_size=%.4g metric=%s",
                    n_adapts, adaptor, proposal.integrator.τ, type(h.metric).__name__,
                )
            # Store sample
            if not drop_warmup or i > n_adapts:
                θs.append(t.z.θ)
                stats.append(tstat)
    elapsed = time.perf_counter() - start

    ebfmi_est = ebfmi([s.hamiltonian_energy for s in stats])
    average_acceptance_rate = mean_acceptance_rate(stats)
    if verbose:
        logger.info(
            "Finished %d sampling steps in %.2f (s): proposal=%s EBFMI=%s average acceptance rate=%.3f",
            n_samples, elapsed, type(proposal).__name__, ebfmi_est, average_acceptance_rate,
        )
    samples = jnp.stack(θs) if θs else jnp.zeros((0,) + θ.shape)
    return SamplerOutput(
        samples=samples,
        stats=stats,
        ebfmi=ebfmi_est,
        accept_rate=average_acceptance_rate,
    )
