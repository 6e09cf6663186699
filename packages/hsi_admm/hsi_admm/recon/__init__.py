"""Reconstruction of spectral images from colour filter array captures.

- ADMM with per-term L1/L2 priors and an optional non-negativity constraint
- Persistent solver state for repeated solves with new regularization weights
- Residual-balancing adaptive penalty parameters
"""

from hsi_admm.recon.admm_cfa import (
    ADMMSolver,
    AdmmResult,
    SolverStatus,
    run_admm_cfa,
    solve_admm,
)
from hsi_admm.recon.admm_state import (
    ADMMState,
    DisabledTerm,
    L1Term,
    L2Term,
    NonNegativityTerm,
    SlackState,
)
from hsi_admm.recon.convergence import ConvergenceMonitor, ResidualRecord, SlotResidual
from hsi_admm.recon.penalty import (
    NoAdaptation,
    PenaltyStrategy,
    ResidualBalancing,
    make_penalty_strategy,
)
from hsi_admm.recon.weighting import fold_weights, normalize_weights

__all__ = [
    "ADMMSolver",
    "AdmmResult",
    "SolverStatus",
    "run_admm_cfa",
    "solve_admm",
    "ADMMState",
    "DisabledTerm",
    "L1Term",
    "L2Term",
    "NonNegativityTerm",
    "SlackState",
    "ConvergenceMonitor",
    "ResidualRecord",
    "SlotResidual",
    "NoAdaptation",
    "PenaltyStrategy",
    "ResidualBalancing",
    "make_penalty_strategy",
    "fold_weights",
    "normalize_weights",
]
