"""
Description:
    MCMC diagnostics.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-02-16
Last Modified: 2026-10-18
Version: 0.2
"""
import numpy as np
from typing import Sequence

from AHMC.datatypes import TransitionStats


def maxdiagdiff(A, B) -> float:
    """
    Largest absolute change between the diagonals of two inverse mass
    matrices. A 1-D array is read as the diagonal itself.
    """
    a = np.diag(A) if np.ndim(A) == 2 else np.asarray(A)
    b = np.diag(B) if np.ndim(B) == 2 else np.asarray(B)
    return float(np.max(np.abs(a - b)))


def ebfmi(energies) -> float:
    """
    Energy Bayesian fraction of missing information:
        E-BFMI = Σ (E_n - E_{n-1})^2 / Σ (E_n - Ē)^2
    computed as mean squared difference over the (unbiased) variance.
    Energies of shape (n, n_chains) give one value per chain.
    """
    E = np.asarray(energies, dtype=float)
    if E.shape[0] < 2:
        return float("nan")
    out = np.mean(np.diff(E, axis=0)**2, axis=0) / np.var(E, axis=0, ddof=1)
    return out.item() if np.ndim(out) == 0 else out


def mean_acceptance_rate(stats: Sequence[TransitionStats]) -> float:
    if len(stats) == 0:
        return float("nan")
    return float(np.mean([np.mean(s.acceptance_rate) for s in stats]))


def divergence_rate(stats: Sequence[TransitionStats]) -> float:
    """Fraction of transitions (over all chains) flagged as numerical errors"""
    if len(stats) == 0:
        return float("nan")
    return float(np.mean([np.mean(s.numerical_error) for s in stats]))
