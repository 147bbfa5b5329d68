"""
Tests for metrics and the Hamiltonian.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from AHMC.datatypes import ShapeMismatch, ConfigurationError
from AHMC.diagnostics import maxdiagdiff
from AHMC.hamiltonian import standard_hamiltonian
from AHMC.metrics import (
    UnitEuclideanMetric, DiagEuclideanMetric, DenseEuclideanMetric,
    unit_euclidean_metric, diag_euclidean_metric, dense_euclidean_metric, build_metric,
)
from AHMC.target import gen_gaussian, gen_gaussian_grad, gen_perturb_precision


# ============================================================================
# Metrics
# ============================================================================

def test_kinetic_energy_matches_quadratic_form():
    r = jnp.array([1.0, -2.0, 0.5])
    M_inv = jnp.array([[2.0, 0.3, 0.0], [0.3, 1.0, 0.1], [0.0, 0.1, 0.5]])

    assert np.isclose(unit_euclidean_metric(3).kinetic_energy(r), 0.5 * r @ r)
    d = jnp.array([2.0, 1.0, 0.5])
    assert np.isclose(diag_euclidean_metric(d).kinetic_energy(r), 0.5 * r @ (d * r))
    assert np.isclose(dense_euclidean_metric(M_inv).kinetic_energy(r), 0.5 * r @ M_inv @ r)


def test_kinetic_energy_batched_rows():
    r = jax.random.normal(jax.random.PRNGKey(0), (4, 3))
    metric = dense_euclidean_metric(jnp.linalg.inv(gen_perturb_precision(3, 0.2)), shape=(4, 3))
    K = metric.kinetic_energy(r)
    assert K.shape == (4,)
    for c in range(4):
        np.testing.assert_allclose(K[c], 0.5 * r[c] @ metric.inv_mass @ r[c], rtol=1e-12)


def test_dense_momentum_covariance_is_mass_matrix():
    M_inv = jnp.linalg.inv(gen_perturb_precision(3, 0.4))
    metric = dense_euclidean_metric(M_inv, shape=(20_000, 3))
    r = metric.sample_momentum(jax.random.PRNGKey(2))
    M = jnp.linalg.inv(M_inv)
    Σ = np.cov(np.asarray(r).T)
    assert maxdiagdiff(Σ, M) < 0.05
    np.testing.assert_allclose(Σ, M, atol=0.05)


def test_maxdiagdiff_reads_vectors_as_diagonals():
    A = np.array([[2.0, 0.5], [0.5, 1.0]])
    assert maxdiagdiff(A, np.array([1.5, 1.25])) == 0.5
    assert maxdiagdiff(np.array([1.0, 3.0]), np.array([1.0, 1.0])) == 2.0


def test_diag_momentum_scale():
    metric = diag_euclidean_metric(jnp.tile(jnp.array([4.0, 0.25]), (20_000, 1)))
    r = metric.sample_momentum(jax.random.PRNGKey(3))
    np.testing.assert_allclose(jnp.std(r, axis=0), [0.5, 2.0], rtol=0.05)


def test_build_metric_variants():
    assert isinstance(build_metric("unit", 3), UnitEuclideanMetric)
    assert isinstance(build_metric("diag", (2, 3)), DiagEuclideanMetric)
    dense = build_metric("dense", 3)
    assert isinstance(dense, DenseEuclideanMetric)
    assert dense.shape == (3,) and dense.dim == 3
    with pytest.raises(ConfigurationError):
        build_metric("riemannian", 3)


def test_invalid_metrics():
    with pytest.raises(ShapeMismatch):
        dense_euclidean_metric(jnp.ones((2, 3)))
    with pytest.raises(ShapeMismatch):
        dense_euclidean_metric(jnp.eye(3), shape=(5, 2))
    with pytest.raises(ShapeMismatch):
        unit_euclidean_metric((2, 3, 4))
    with pytest.raises(ConfigurationError):
        diag_euclidean_metric(jnp.array([1.0, -1.0]))
    with pytest.raises(ConfigurationError):
        dense_euclidean_metric(jnp.array([[1.0, 2.0], [2.0, 1.0]]))


def test_renew_and_resize_build_new_metrics():
    metric = diag_euclidean_metric((3, 2))
    renewed = metric.renew(jnp.array([2.0, 0.5]))
    assert renewed.shape == (3, 2)
    np.testing.assert_allclose(renewed.inv_mass, [[2.0, 0.5]] * 3)
    np.testing.assert_allclose(metric.inv_mass, jnp.ones((3, 2)))

    resized = dense_euclidean_metric(jnp.eye(2) * 3.0).resize(4)
    assert resized.shape == (4,)
    np.testing.assert_allclose(resized.inv_mass, jnp.eye(4))


# ============================================================================
# Hamiltonian
# ============================================================================

def test_energy_terms():
    prec = gen_perturb_precision(3, 0.2)
    h = standard_hamiltonian(unit_euclidean_metric(3), gen_gaussian(3, precision_matrix=prec))
    θ = jnp.array([0.3, -0.1, 1.2])
    r = jnp.array([1.0, 0.0, -1.0])
    z = h.phasepoint(θ, r)

    assert np.isclose(h.potential_energy(z), 0.5 * θ @ prec @ θ)
    assert np.isclose(h.energy(z), 0.5 * θ @ prec @ θ + 1.0)
    np.testing.assert_allclose(h.grad_θ(z), prec @ θ, rtol=1e-12)
    np.testing.assert_allclose(h.grad_r(z), r)


def test_autodiff_matches_analytic_gradient():
    prec = gen_perturb_precision(4, 0.3)
    θ = jax.random.normal(jax.random.PRNGKey(5), (6, 4))
    r = jnp.zeros_like(θ)
    metric = unit_euclidean_metric((6, 4))
    h_auto = standard_hamiltonian(metric, gen_gaussian(4, precision_matrix=prec))
    h_exact = standard_hamiltonian(
        metric, gen_gaussian(4, precision_matrix=prec), gen_gaussian_grad(4, precision_matrix=prec)
    )
    z_auto, z_exact = h_auto.phasepoint(θ, r), h_exact.phasepoint(θ, r)
    np.testing.assert_allclose(z_auto.logπ, z_exact.logπ, rtol=1e-12)
    np.testing.assert_allclose(z_auto.dlogπ, z_exact.dlogπ, rtol=1e-12)


def test_phasepoint_shape_mismatch():
    h = standard_hamiltonian(diag_euclidean_metric(3), gen_gaussian(3))
    with pytest.raises(ShapeMismatch):
        h.phasepoint(jnp.zeros(2), jnp.zeros(2))
    with pytest.raises(ShapeMismatch):
        h.phasepoint(jnp.zeros(3), jnp.zeros(4))


def test_non_finite_density_is_rejected_not_nan():
    h = standard_hamiltonian(unit_euclidean_metric(2), lambda q: jnp.log(q[0]) + 0.0 * q[1])
    z = h.phasepoint(jnp.array([-1.0, 0.0]), jnp.zeros(2))
    assert z.logπ == -jnp.inf
    np.testing.assert_array_equal(z.dlogπ, jnp.zeros(2))
    assert h.energy(z) == jnp.inf


def test_oracle_errors_propagate():
    def logπ(q):
        raise RuntimeError("model blew up")

    h = standard_hamiltonian(unit_euclidean_metric(2), logπ, lambda q: -q)
    with pytest.raises(RuntimeError, match="model blew up"):
        h.phasepoint(jnp.zeros(2), jnp.zeros(2))


def test_update_is_a_pure_reconstruction():
    h = standard_hamiltonian(diag_euclidean_metric(2), gen_gaussian(2))
    h2 = h.update(h.metric.renew(jnp.array([3.0, 3.0])))
    np.testing.assert_allclose(h.metric.inv_mass, jnp.ones(2))
    np.testing.assert_allclose(h2.metric.inv_mass, jnp.array([3.0, 3.0]))
    assert h2.logπ is h.logπ


def test_refresh_keeps_position():
    h = standard_hamiltonian(unit_euclidean_metric(3), gen_gaussian(3))
    z = h.phasepoint(jnp.ones(3), jnp.zeros(3))
    z2 = h.refresh(jax.random.PRNGKey(0), z)
    np.testing.assert_array_equal(z2.θ, z.θ)
    assert z2.logπ == z.logπ
    assert not np.allclose(z2.r, z.r)
