"""
Description:
    PRNG key helpers that treat a stack of per-chain keys like a single key.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

A key is either a single legacy key of shape (2,) or per-chain keys of shape
(n_chains, 2). With per-chain keys every draw is made chain by chain, so row i
of a batched draw equals the draw made from keys[i] alone.
"""
import jax
import jax.numpy as jnp
import jax.random as jr
from typing import Tuple

from AHMC.datatypes import PRNGKey


def is_batched(key: PRNGKey) -> bool:
    return key.ndim == 2


def split(key: PRNGKey, num: int = 2) -> Tuple[PRNGKey, ...]:
    """Split into `num` keys (per chain when `key` is batched)."""
    if is_batched(key):
        ks = jax.vmap(lambda k: jr.split(k, num))(key) # (n_chains, num, 2)
        return tuple(ks[:, i] for i in range(num))
    return tuple(jr.split(key, num))


def chain_keys(key: PRNGKey, n_chains: int) -> PRNGKey:
    """Per-chain keys for a batch; already-batched keys pass through."""
    if is_batched(key):
        if key.shape[0] != n_chains:
            raise ValueError(f"Got {key.shape[0]} keys for {n_chains} chains")
        return key
    return jr.split(key, n_chains)


def normal(key: PRNGKey, shape: Tuple[int, ...]) -> jnp.ndarray:
    if is_batched(key):
        return jax.vmap(lambda k: jr.normal(k, shape=shape[1:]))(key)
    return jr.normal(key, shape=shape)


def uniform(key: PRNGKey, shape: Tuple[int, ...] = ()) -> jnp.ndarray:
    if is_batched(key):
        return jax.vmap(lambda k: jr.uniform(k, shape=shape[1:]))(key)
    return jr.uniform(key, shape=shape)
