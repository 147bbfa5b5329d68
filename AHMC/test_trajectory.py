"""
Tests for the static trajectory and NUTS transitions.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from AHMC.datatypes import ConfigurationError
from AHMC.diagnostics import divergence_rate
from AHMC.hamiltonian import standard_hamiltonian
from AHMC.integrator import Leapfrog
from AHMC.metrics import unit_euclidean_metric, diag_euclidean_metric
from AHMC.sampler import sample
from AHMC.target import gen_gaussian, gen_gaussian_grad
from AHMC.trajectory import (
    StaticTrajectory, NUTS, acceptance_probability, accept_reject, find_good_eps, is_turning,
)


def _hamiltonian(dim=3, shape=None):
    metric = unit_euclidean_metric(dim if shape is None else shape)
    return standard_hamiltonian(metric, gen_gaussian(dim), gen_gaussian_grad(dim))


# ============================================================================
# Metropolis helpers
# ============================================================================

def test_acceptance_probability():
    alpha = acceptance_probability(jnp.array([0.5, -1.0, jnp.nan, -jnp.inf]))
    np.testing.assert_allclose(alpha, [1.0, np.exp(-1.0), 0.0, 0.0])


def test_accept_reject_shapes():
    is_accept, alpha = accept_reject(jnp.zeros(4), jax.random.PRNGKey(0))
    assert is_accept.shape == (4,)
    assert bool(jnp.all(is_accept))
    is_accept, _ = accept_reject(jnp.array(-jnp.inf), jax.random.PRNGKey(0))
    assert not bool(is_accept)


# ============================================================================
# Static trajectory
# ============================================================================

def test_static_transition_stats():
    h = _hamiltonian()
    z = h.refresh(jax.random.PRNGKey(1), h.phasepoint(jnp.ones(3), jnp.zeros(3)))
    t = StaticTrajectory(Leapfrog(0.1), 10).transition(jax.random.PRNGKey(2), h, z)

    s = t.stat
    assert s.n_steps == 10 and s.step_size == 0.1
    assert s.tree_depth is None
    assert 0.0 <= s.acceptance_rate <= 1.0
    assert not s.numerical_error
    # tiny steps on a Gaussian: energy nearly conserved
    assert abs(s.hamiltonian_energy_error) < 5e-2
    assert s.acceptance_rate > 0.95
    if s.is_accept:
        assert np.isclose(s.log_density, float(t.z.logπ))


def test_static_batched_matches_rows():
    dim, n_chains = 3, 4
    key_θ, key_r = jax.random.split(jax.random.PRNGKey(3))
    θ = jax.random.normal(key_θ, (n_chains, dim))
    r = 2.0 * jax.random.normal(key_r, (n_chains, dim))
    chain_keys = jax.random.split(jax.random.PRNGKey(4), n_chains)
    proposal = StaticTrajectory(Leapfrog(0.9), 7)

    h_batch = _hamiltonian(dim, (n_chains, dim))
    t_batch = proposal.transition(chain_keys, h_batch, h_batch.phasepoint(θ, r))

    h_single = _hamiltonian(dim)
    for c in range(n_chains):
        t = proposal.transition(chain_keys[c], h_single, h_single.phasepoint(θ[c], r[c]))
        np.testing.assert_allclose(t_batch.z.θ[c], t.z.θ, atol=1e-12)
        assert bool(t_batch.stat.is_accept[c]) == bool(t.stat.is_accept)
        np.testing.assert_allclose(t_batch.stat.acceptance_rate[c], t.stat.acceptance_rate, atol=1e-12)


def test_static_reports_steps_taken_on_divergence():
    def logπ(q):
        return jnp.where(jnp.abs(q[..., 0]) < 1.0, -0.5 * jnp.sum(q**2, axis=-1), jnp.nan)

    proposal = StaticTrajectory(Leapfrog(0.5), 6)
    h = standard_hamiltonian(unit_euclidean_metric(1), logπ)
    t = proposal.transition(jax.random.PRNGKey(0), h, h.phasepoint(jnp.zeros(1), jnp.array([5.0])))
    assert t.stat.n_steps == 1
    assert t.stat.numerical_error and not t.stat.is_accept

    h = standard_hamiltonian(unit_euclidean_metric((2, 1)), logπ)
    z = h.phasepoint(jnp.zeros((2, 1)), jnp.array([[5.0], [0.1]]))
    t = proposal.transition(jax.random.split(jax.random.PRNGKey(0), 2), h, z)
    np.testing.assert_array_equal(t.stat.n_steps, [1, 6])
    np.testing.assert_array_equal(t.stat.numerical_error, [True, False])


# ============================================================================
# NUTS
# ============================================================================

def test_is_turning():
    h = _hamiltonian(2)
    z_minus = h.phasepoint(jnp.array([0.0, 0.0]), jnp.array([1.0, 0.0]))
    z_plus = h.phasepoint(jnp.array([1.0, 0.0]), jnp.array([1.0, 0.0]))
    assert not is_turning(z_minus, z_plus)
    assert is_turning(z_minus, z_plus._replace(r=jnp.array([-1.0, 0.0])))


def test_nuts_respects_max_depth():
    """Tiny steps never U-turn, so every transition builds the full tree"""
    h = _hamiltonian()
    proposal = NUTS(Leapfrog(1e-3), max_depth=3)
    z = h.phasepoint(jnp.ones(3), jnp.zeros(3))
    key = jax.random.PRNGKey(0)
    for _ in range(10):
        key, k_r, k_t = jax.random.split(key, 3)
        t = proposal.transition(k_t, h, h.refresh(k_r, z))
        assert t.stat.tree_depth == 3
        assert t.stat.n_steps == 2**3 - 1
        assert not t.stat.numerical_error
        z = t.z


def test_nuts_first_step_divergence_stays_put():
    h = _hamiltonian()
    z = h.refresh(jax.random.PRNGKey(1), h.phasepoint(jnp.ones(3), jnp.zeros(3)))
    t = NUTS(Leapfrog(1e4)).transition(jax.random.PRNGKey(2), h, z)

    assert t.stat.numerical_error
    assert t.stat.tree_depth == 1
    assert t.stat.n_steps == 1
    assert t.stat.acceptance_rate < 1e-10
    np.testing.assert_array_equal(t.z.θ, z.θ)


def test_nuts_rejects_batches():
    h = _hamiltonian(3, (2, 3))
    z = h.phasepoint(jnp.zeros((2, 3)), jnp.ones((2, 3)))
    with pytest.raises(ConfigurationError):
        NUTS(Leapfrog(0.1)).transition(jax.random.PRNGKey(0), h, z)


def test_nuts_rejects_zero_depth():
    h = _hamiltonian()
    z = h.phasepoint(jnp.zeros(3), jnp.ones(3))
    with pytest.raises(ConfigurationError):
        NUTS(Leapfrog(0.1), max_depth=0).transition(jax.random.PRNGKey(0), h, z)


def test_subtree_candidate_is_multinomial(monkeypatch):
    """Within a subtree each leaf is drawn with probability ∝ exp(H0 - H_leaf)"""
    monkeypatch.setattr("AHMC.trajectory.is_turning", lambda z_minus, z_plus: False)
    h = _hamiltonian(1)
    z = h.phasepoint(jnp.array([1.0]), jnp.array([0.5]))
    lf = Leapfrog(1.5)
    H0 = float(h.energy(z))

    leaves, zk = [], z
    for _ in range(4):
        zk = lf.step(h, zk)
        leaves.append(zk)
    logw = np.array([H0 - float(h.energy(leaf)) for leaf in leaves])
    expected = np.exp(logw - logw.max())
    expected /= expected.sum()
    print(f"leaf weights: {expected}")

    proposal, n_draws = NUTS(lf), 1_000
    counts = np.zeros(4)
    for key in jax.random.split(jax.random.PRNGKey(0), n_draws):
        tree = proposal._build_tree(key, h, z, 1, 2, H0)
        assert tree.n_α == 4 and not tree.divergent
        np.testing.assert_allclose(tree.logw, np.logaddexp.reduce(logw), rtol=1e-10)
        k = int(np.argmin([abs(float(tree.candidate.θ[0] - leaf.θ[0])) for leaf in leaves]))
        counts[k] += 1
    np.testing.assert_allclose(counts / n_draws, expected, atol=0.05)


@pytest.mark.slow
def test_nuts_recovers_gaussian_moments():
    """Long chain on a standard normal: variance and fourth moment to a few percent"""
    dim, n_samples = 2, 20_000
    h = _hamiltonian(dim)
    out = sample(jax.random.PRNGKey(3), h, NUTS(Leapfrog(0.8)), jnp.zeros(dim), n_samples, verbose=False)
    x = np.asarray(out.samples[1_000:])
    print(f"mean={x.mean(axis=0)} var={x.var(axis=0)} E[x^4]={np.mean(x**4, axis=0)}")
    np.testing.assert_allclose(x.mean(axis=0), 0.0, atol=0.05)
    np.testing.assert_allclose(x.var(axis=0), 1.0, rtol=0.05)
    np.testing.assert_allclose(np.mean(x**4, axis=0), 3.0, rtol=0.1)


def test_nuts_moves_and_reports_acceptance():
    h = _hamiltonian()
    z = h.refresh(jax.random.PRNGKey(5), h.phasepoint(jnp.ones(3), jnp.zeros(3)))
    t = NUTS(Leapfrog(0.5)).transition(jax.random.PRNGKey(6), h, z)
    assert t.stat.tree_depth >= 1
    assert t.stat.n_steps >= 1
    assert 0.5 < t.stat.acceptance_rate <= 1.0
    assert np.isclose(t.stat.log_density, float(h.phasepoint(t.z.θ, t.z.r).logπ))


@pytest.mark.slow
def test_nuts_divergence_rate_near_zero():
    """Well-conditioned Gaussian: no depth overruns, (almost) no divergences"""
    dim = 5
    h = standard_hamiltonian(diag_euclidean_metric(dim), gen_gaussian(dim))
    proposal = NUTS(Leapfrog(0.8), max_depth=6)
    out = sample(jax.random.PRNGKey(11), h, proposal, jnp.zeros(dim), 10_000, verbose=False)

    assert max(s.tree_depth for s in out.stats) <= 6
    assert divergence_rate(out.stats) < 1e-3


# ============================================================================
# Step size search
# ============================================================================

def test_find_good_eps():
    h = _hamiltonian(5)
    ϵ = find_good_eps(jax.random.PRNGKey(0), h, jnp.ones(5))
    print(f"find_good_eps: {ϵ:.4f}")
    assert 0.05 < ϵ < 5.0
