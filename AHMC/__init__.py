"""
Description:
    AHMC: adaptive Hamiltonian Monte Carlo (static HMC and NUTS) in JAX.
    USE THE CORRECT ENVIRONMENT:  HMC-Research

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2
"""
from AHMC.datatypes import (
    PhasePoint, Transition, TransitionStats, SamplerOutput,
    ShapeMismatch, ConfigurationError, AdaptationError,
)
from AHMC.metrics import (
    UnitEuclideanMetric, DiagEuclideanMetric, DenseEuclideanMetric,
    unit_euclidean_metric, diag_euclidean_metric, dense_euclidean_metric, build_metric,
)
from AHMC.hamiltonian import Hamiltonian, standard_hamiltonian, value_and_grad_oracle
from AHMC.integrator import Leapfrog
from AHMC.trajectory import StaticTrajectory, NUTS, find_good_eps
from AHMC.adaptation import (
    NoAdaptation, NesterovDualAveraging, Preconditioner,
    UnitPreconditioner, DiagPreconditioner, DensePreconditioner,
    CompositeAdaptor, NaiveCompAdaptor, StagedAdaptor, StanNUTSAdaptor,
    WindowSchedule, make_window_schedule,
)
from AHMC.diagnostics import ebfmi, mean_acceptance_rate, divergence_rate
from AHMC.sampler import sample, sample_init, step, adapt, update
from AHMC.log import setup_logging

__version__ = "0.2.0"
