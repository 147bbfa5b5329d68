"""
Description:
    Target log-density generators.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2

Targets accept a position (dim,) or a batch (n_chains, dim).
"""
import jax.numpy as jnp
from typing import Callable
from AHMC.datatypes import LogDensity, PrecisionMatrix


def _resolve_precision(dim, precision_matrix, cov) -> PrecisionMatrix:
    if precision_matrix is not None and cov is not None:
        raise ValueError(
            "Please supply either a precision_matrix or a cov, not both"
        )
    if precision_matrix is None and cov is not None:
        precision_matrix = jnp.linalg.inv(cov)
    if precision_matrix is None and cov is None:
        precision_matrix = jnp.eye(dim)
    return jnp.asarray(precision_matrix)


def gen_gaussian(
        dim: int = 2,
        precision_matrix: PrecisionMatrix = None,
        cov: jnp.ndarray = None
) -> LogDensity:
    precision_matrix = _resolve_precision(dim, precision_matrix, cov)

    def target(q: jnp.ndarray) -> jnp.ndarray:
        """Gaussian log density (unnormalized), zero mean"""
        return -0.5 * jnp.einsum("...i,ij,...j->...", q, precision_matrix, q)

    return target


def gen_gaussian_grad(
        dim: int = 2,
        precision_matrix: PrecisionMatrix = None,
        cov: jnp.ndarray = None
) -> Callable[[jnp.ndarray], jnp.ndarray]:
    """Analytic ∇ log π of gen_gaussian: -P q (row-wise for batches)"""
    precision_matrix = _resolve_precision(dim, precision_matrix, cov)

    def grad(q: jnp.ndarray) -> jnp.ndarray:
        return -q @ precision_matrix.T

    return grad


def gen_perturb_precision(
        dim: int = 2,
        perturbation: float = 0.05
) -> PrecisionMatrix:
    """Identity plus `perturbation` on the first off-diagonals"""
    prec = jnp.diag(jnp.ones(dim))
    prec += perturbation * jnp.diag(jnp.ones(dim-1), k=-1 )
    prec += perturbation * jnp.diag(jnp.ones(dim-1), k=1 )
    return prec
