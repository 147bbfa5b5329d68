"""
Test suite for the leapfrog integrator.

Compares the leapfrog against its analytical solution for a simple
harmonic oscillator and checks reversibility and energy behaviour.
"""

import jax
import jax.numpy as jnp
import numpy as np

from AHMC.hamiltonian import standard_hamiltonian
from AHMC.integrator import Leapfrog
from AHMC.metrics import unit_euclidean_metric, diag_euclidean_metric, dense_euclidean_metric
from AHMC.target import gen_gaussian, gen_gaussian_grad, gen_perturb_precision


# ============================================================================
# Analytical Solutions
# ============================================================================

def leapfrog_analytic(x: np.ndarray, tau: float) -> np.ndarray:
    """
    Analytical leapfrog step (momentum half step first) for
    H = q^2/2 + p^2/2, x = [q, p]
    """
    LF_step = np.array([
        [1 - tau**2/2, tau],
        [-tau + tau**3/4, 1 - tau**2/2]
    ])
    return LF_step @ x


# ============================================================================
# Tests
# ============================================================================

def test_leapfrog():
    """Test leapfrog integrator against analytical solution"""
    tau = 0.1
    h = standard_hamiltonian(unit_euclidean_metric(1), gen_gaussian(dim=1))

    key = jax.random.PRNGKey(1)
    x0 = jax.random.normal(key, shape=(2,))
    z0 = h.phasepoint(x0[:1], x0[1:])

    z1 = Leapfrog(tau).step(h, z0)
    x_lf = np.concatenate([np.asarray(z1.θ), np.asarray(z1.r)])
    x_analytic = leapfrog_analytic(np.asarray(x0), tau)

    print(f"Leapfrog (numerical): {x_lf}")
    print(f"Leapfrog (analytic) : {x_analytic}")
    assert np.allclose(x_lf, x_analytic, atol=1e-12), "Leapfrog test failed!"


def test_leapfrog_many_steps_matches_matrix_power():
    tau, N = 0.25, 12
    h = standard_hamiltonian(unit_euclidean_metric(1), gen_gaussian(dim=1))
    z0 = h.phasepoint(jnp.array([0.7]), jnp.array([-1.3]))

    zN = Leapfrog(tau).step(h, z0, N)

    x = np.array([0.7, -1.3])
    for _ in range(N):
        x = leapfrog_analytic(x, tau)
    np.testing.assert_allclose([zN.θ[0], zN.r[0]], x, atol=1e-12)


def test_leapfrog_reversible():
    """Forward n steps then backward n steps returns the start"""
    dim = 4
    prec = gen_perturb_precision(dim, 0.3)
    for metric in [
        unit_euclidean_metric(dim),
        diag_euclidean_metric(jnp.array([0.5, 1.0, 2.0, 4.0])),
        dense_euclidean_metric(jnp.linalg.inv(prec)),
    ]:
        h = standard_hamiltonian(metric, gen_gaussian(dim, precision_matrix=prec))
        key_q, key_p = jax.random.split(jax.random.PRNGKey(7))
        z0 = h.phasepoint(jax.random.normal(key_q, (dim,)), metric.sample_momentum(key_p))

        lf = Leapfrog(0.3)
        z1 = lf.step(h, z0, 10)
        z_back = lf.step(h, z1, -10)
        np.testing.assert_allclose(z_back.θ, z0.θ, atol=1e-10)
        np.testing.assert_allclose(z_back.r, z0.r, atol=1e-10)

        # negating momentum and stepping forward retraces the path
        z_flip = lf.step(h, z1._replace(r=-z1.r), 10)
        np.testing.assert_allclose(z_flip.θ, z0.θ, atol=1e-10)
        np.testing.assert_allclose(-z_flip.r, z0.r, atol=1e-10)


def test_energy_conservation():
    """Leapfrog energy error stays bounded over long trajectories"""
    tau, N = 0.1, 100
    h = standard_hamiltonian(unit_euclidean_metric(1), gen_gaussian(dim=1))
    z0 = h.phasepoint(jnp.array([1.0]), jnp.array([0.5]))

    H0 = h.energy(z0)
    H_lf = h.energy(Leapfrog(tau).step(h, z0, N))
    error_lf = float(jnp.abs(H_lf - H0))
    print(f"Leapfrog energy error after {N} steps (tau={tau}): {error_lf:.2e}")
    assert error_lf < 1e-2


def test_batched_step_matches_rows():
    dim, n_chains = 3, 5
    logπ, grad = gen_gaussian(dim), gen_gaussian_grad(dim)
    θ = jax.random.normal(jax.random.PRNGKey(0), (n_chains, dim))
    r = jax.random.normal(jax.random.PRNGKey(1), (n_chains, dim))

    h_batch = standard_hamiltonian(diag_euclidean_metric((n_chains, dim)), logπ, grad)
    z_batch = Leapfrog(0.2).step(h_batch, h_batch.phasepoint(θ, r), 8)

    h_single = standard_hamiltonian(diag_euclidean_metric(dim), logπ, grad)
    for c in range(n_chains):
        z = Leapfrog(0.2).step(h_single, h_single.phasepoint(θ[c], r[c]), 8)
        np.testing.assert_allclose(z_batch.θ[c], z.θ, atol=1e-12)
        np.testing.assert_allclose(z_batch.r[c], z.r, atol=1e-12)
        np.testing.assert_allclose(z_batch.logπ[c], z.logπ, atol=1e-12)


def test_divergent_chain_is_frozen():
    """Once the density turns non-finite the chain stops moving"""
    def logπ(q):
        return jnp.where(jnp.abs(q[..., 0]) < 1.0, -0.5 * jnp.sum(q**2, axis=-1), jnp.nan)

    h = standard_hamiltonian(unit_euclidean_metric((2, 1)), logπ)
    θ = jnp.array([[0.0], [0.0]])
    r = jnp.array([[5.0], [0.1]])
    z = Leapfrog(0.5).step(h, h.phasepoint(θ, r), 6)

    assert not jnp.isfinite(z.logπ[0])
    assert jnp.isfinite(z.logπ[1])
    # first chain leaves |q| < 1 on the first step and stays there
    np.testing.assert_allclose(z.θ[0], jnp.array([2.5]), atol=1e-12)


def test_integration_is_compiled_once():
    """The whole trajectory is one traced scan: the density is traced once, not per step"""
    calls = []

    def logπ(q):
        calls.append("logπ")
        return -0.5 * jnp.sum(q**2)

    def grad_logπ(q):
        calls.append("grad")
        return -q

    h = standard_hamiltonian(unit_euclidean_metric(2), logπ, grad_logπ)
    z0 = h.phasepoint(jnp.array([0.3, -0.2]), jnp.array([1.0, 0.5]))
    calls.clear()

    z1 = Leapfrog(0.1).step(h, z0, 50)
    n_traced = len(calls)
    assert 0 < n_traced <= 4
    # a new step size reuses the compiled trajectory
    Leapfrog(0.2).step(h, z1, 50)
    assert len(calls) == n_traced


def test_integrate_counts_steps_taken():
    def logπ(q):
        return jnp.where(jnp.abs(q[..., 0]) < 1.0, -0.5 * jnp.sum(q**2, axis=-1), jnp.nan)

    h = standard_hamiltonian(unit_euclidean_metric((2, 1)), logπ)
    z0 = h.phasepoint(jnp.zeros((2, 1)), jnp.array([[5.0], [0.1]]))
    _, n_taken = Leapfrog(0.5).integrate(h, z0, 6)
    np.testing.assert_array_equal(n_taken, [1, 6])
