"""
Description:
    Euclidean metrics (mass matrices) for the kinetic energy.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2

K(r) = 0.5 * r.T @ M^{-1} @ r and r ~ N(0, M). Every metric stores M^{-1}.
A metric of shape (n_chains, dim) acts row-wise on batched momenta.
"""
import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular
from typing import NamedTuple, Tuple, Union

from AHMC import keys
from AHMC.datatypes import ShapeMismatch, ConfigurationError, InverseMassMatrix, PRNGKey


class UnitEuclideanMetric(NamedTuple):
    """M = I"""
    shape: Tuple[int, ...]

    @property
    def dim(self) -> int:
        return self.shape[-1]

    @property
    def inv_mass(self) -> InverseMassMatrix:
        return jnp.ones(self.shape)

    def kinetic_energy(self, r: jnp.ndarray) -> jnp.ndarray:
        return 0.5 * jnp.sum(r * r, axis=-1)

    def velocity(self, r: jnp.ndarray) -> jnp.ndarray:
        """∂K/∂r = M^{-1} r"""
        return r

    def sample_momentum(self, key: PRNGKey) -> jnp.ndarray:
        return keys.normal(key, self.shape)

    def renew(self, inv_mass: InverseMassMatrix) -> "UnitEuclideanMetric":
        return self

    def resize(self, shape) -> "UnitEuclideanMetric":
        return unit_euclidean_metric(shape)


class DiagEuclideanMetric(NamedTuple):
    """M^{-1} = diag(inv_mass); one diagonal per chain when batched"""
    inv_mass: InverseMassMatrix # (dim,) or (n_chains, dim)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.inv_mass.shape)

    @property
    def dim(self) -> int:
        return self.shape[-1]

    def kinetic_energy(self, r: jnp.ndarray) -> jnp.ndarray:
        return 0.5 * jnp.sum(r * r * self.inv_mass, axis=-1)

    def velocity(self, r: jnp.ndarray) -> jnp.ndarray:
        return self.inv_mass * r

    def sample_momentum(self, key: PRNGKey) -> jnp.ndarray:
        return keys.normal(key, self.shape) / jnp.sqrt(self.inv_mass)

    def renew(self, inv_mass: InverseMassMatrix) -> "DiagEuclideanMetric":
        """Same variant with new parameters, broadcast across chains"""
        return diag_euclidean_metric(jnp.broadcast_to(inv_mass, self.shape))

    def resize(self, shape) -> "DiagEuclideanMetric":
        return diag_euclidean_metric(shape)


class DenseEuclideanMetric(NamedTuple):
    """
    Full M^{-1} = L L.T, shared by every chain of a batch.

    Momentum: r = L^{-T} z with z ~ N(0, I), so Cov(r) = (L L.T)^{-1} = M.
    """
    inv_mass: InverseMassMatrix # (dim, dim)
    chol: jnp.ndarray # lower Cholesky factor of inv_mass
    shape: Tuple[int, ...]

    @property
    def dim(self) -> int:
        return self.shape[-1]

    def kinetic_energy(self, r: jnp.ndarray) -> jnp.ndarray:
        return 0.5 * jnp.sum(r * (r @ self.inv_mass), axis=-1)

    def velocity(self, r: jnp.ndarray) -> jnp.ndarray:
        # inv_mass is symmetric, so row-wise r @ M^{-1} == M^{-1} r
        return r @ self.inv_mass

    def sample_momentum(self, key: PRNGKey) -> jnp.ndarray:
        z = keys.normal(key, self.shape)
        return solve_triangular(self.chol, z.T, trans="T", lower=True).T

    def renew(self, inv_mass: InverseMassMatrix) -> "DenseEuclideanMetric":
        return dense_euclidean_metric(inv_mass, shape=self.shape)

    def resize(self, shape) -> "DenseEuclideanMetric":
        return dense_euclidean_metric(shape)


Metric = Union[UnitEuclideanMetric, DiagEuclideanMetric, DenseEuclideanMetric]


def _as_shape(shape) -> Tuple[int, ...]:
    shape = (shape,) if isinstance(shape, int) else tuple(int(s) for s in shape)
    if len(shape) not in (1, 2) or min(shape) < 1:
        raise ShapeMismatch(f"Metric shape must be (dim,) or (n_chains, dim), got {shape}")
    return shape


def _is_shape(x) -> bool:
    if isinstance(x, tuple):
        return all(isinstance(s, int) for s in x)
    return isinstance(x, int)


def unit_euclidean_metric(shape) -> UnitEuclideanMetric:
    return UnitEuclideanMetric(shape=_as_shape(shape))


def diag_euclidean_metric(shape_or_inv_mass) -> DiagEuclideanMetric:
    """
    Diagonal metric from a shape (identity) or an explicit M^{-1} diagonal.
    """
    if _is_shape(shape_or_inv_mass):
        return DiagEuclideanMetric(inv_mass=jnp.ones(_as_shape(shape_or_inv_mass)))

    inv_mass = jnp.asarray(shape_or_inv_mass)
    _as_shape(inv_mass.shape)
    if not bool(jnp.all(jnp.isfinite(inv_mass) & (inv_mass > 0))):
        raise ConfigurationError("Diagonal inverse mass matrix must be finite and positive")
    return DiagEuclideanMetric(inv_mass=inv_mass)


def dense_euclidean_metric(shape_or_inv_mass, shape=None) -> DenseEuclideanMetric:
    """
    Dense metric from a shape (identity) or an explicit (dim, dim) M^{-1}.

    Args:
        shape_or_inv_mass: dim, (dim,), (n_chains, dim) or a square matrix
        shape: batch shape to use with an explicit matrix, defaults to (dim,)
    """
    if _is_shape(shape_or_inv_mass):
        shape = _as_shape(shape_or_inv_mass)
        eye = jnp.eye(shape[-1])
        return DenseEuclideanMetric(inv_mass=eye, chol=eye, shape=shape)

    inv_mass = jnp.asarray(shape_or_inv_mass)
    if inv_mass.ndim != 2 or inv_mass.shape[0] != inv_mass.shape[1]:
        raise ShapeMismatch(f"Dense inverse mass matrix must be square, got {inv_mass.shape}")
    shape = _as_shape(inv_mass.shape[0] if shape is None else shape)
    if shape[-1] != inv_mass.shape[0]:
        raise ShapeMismatch(f"Metric shape {shape} does not match matrix {inv_mass.shape}")
    if not bool(jnp.allclose(inv_mass, inv_mass.T)):
        raise ConfigurationError("Dense inverse mass matrix must be symmetric")
    chol = jnp.linalg.cholesky(inv_mass)
    if not bool(jnp.all(jnp.isfinite(chol))):
        raise ConfigurationError("Dense inverse mass matrix must be positive definite")
    return DenseEuclideanMetric(inv_mass=inv_mass, chol=chol, shape=shape)


_BUILDERS = {
    "unit": unit_euclidean_metric,
    "diag": diag_euclidean_metric,
    "dense": dense_euclidean_metric,
}


def build_metric(kind: str, shape) -> Metric:
    """Metric from its name ("unit", "diag", "dense") and a dim / batch shape"""
    try:
        builder = _BUILDERS[kind]
    except KeyError:
        raise ConfigurationError(
            f"Unknown metric {kind!r}, expected one of {sorted(_BUILDERS)}"
        ) from None
    return builder(shape)
