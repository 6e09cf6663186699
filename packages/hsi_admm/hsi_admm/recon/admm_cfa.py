"""ADMM reconstruction of a spectral image from a colour filter array capture.

Solves

    min_I  1/2 ||M Omega_Phi I - J||^2
           + sum_{k: L2} w_k/2 ||G_k I||^2 + sum_{k: L1} w_k ||G_k I||_1
    s.t.   I >= 0   (optional)

with the L1 terms and the non-negativity constraint split into slack
variables, ADMM style:

    I-update : (A_const + sum_k rho_k G_k^T G_k) I = (M Omega_Phi)^T J
                                                    + sum_k rho_k G_k^T (Z_k - U_k)
    Z-update : soft thresholding (L1) or projection (non-negativity)
    U-update : U_k <- U_k + G_k I - Z_k

The I-update is solved with conjugate gradients, warm-started from the
previous iterate.

References:
- Baek, S.-H., Kim, I., Gutierrez, D., & Kim, M. H. (2017). "Compact
  single-shot hyperspectral imaging using a prism", ACM TOG 36(6).
- Boyd, S. et al. (2011). "Distributed Optimization and Statistical Learning
  via the Alternating Direction Method of Multipliers".
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from hsi_admm.api.errors import ConfigurationError, NumericalNonConvergence
from hsi_admm.api.types import AdmmOptions, validate_options
from hsi_admm.physics.spectral.cfa_operators import Operators, build_operators
from hsi_admm.recon.admm_state import ADMMState, L1Term, SlackSlot, absolute_tolerance
from hsi_admm.recon.classical import conjugate_gradient, project_nonneg, soft_thresh
from hsi_admm.recon.convergence import ConvergenceMonitor, ResidualRecord
from hsi_admm.recon.penalty import PenaltyStrategy, make_penalty_strategy
from hsi_admm.recon.weighting import check_weights

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = (1e-2, 0.0, 0.0)


class SolverStatus(str, Enum):
    converged = "converged"
    budget_exhausted = "budget_exhausted"
    direct = "direct"  # no slack variables: single linear solve


@dataclass
class AdmmResult:
    """Outcome of one solve.

    Attributes:
        image: Reconstructed latent image, (H, W, B).
        weights: Normalized regularization weights that were applied.
        status: Terminal state of the solver.
        iterations: Number of ADMM iterations run (0 for a direct solve).
        rho: Penalty parameters at exit.
        history: Per-iteration residual records.
        nonconvergence: Iteration budgets that ran out, inner or outer.
    """

    image: np.ndarray
    weights: np.ndarray
    status: SolverStatus
    iterations: int
    rho: Tuple[float, ...] = ()
    history: List[ResidualRecord] = field(default_factory=list)
    nonconvergence: List[NumericalNonConvergence] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        if self.status is SolverStatus.direct:
            return not self.nonconvergence
        return self.status is SolverStatus.converged


class ADMMSolver:
    """Runs ADMM on an ``ADMMState`` until convergence or the iteration cap.

    Args:
        options: Solver options; defaults to the options the state was
            built with.  Norm choices and the non-negativity flag must agree
            with the state.  An explicitly given ``rho`` replaces the
            penalties of the state, rescaling its dual variables.
        penalty_strategy: Adaptive penalty rule; defaults to the one
            described by ``options.adaptive_penalty``.
    """

    def __init__(
        self,
        options: Union[AdmmOptions, Dict[str, Any], None] = None,
        penalty_strategy: Optional[PenaltyStrategy] = None,
    ):
        self.options = validate_options(options) if options is not None else None
        self.penalty_strategy = penalty_strategy

    def solve(self, state: ADMMState, warm: bool = True) -> AdmmResult:
        """Estimate the latent image, updating ``state`` in place.

        With ``warm`` the primal iterate of ``state`` seeds the solve,
        otherwise it is zeroed first.  Slack and dual variables are always
        reused.
        """
        options = self.options if self.options is not None else state.options
        self._check_compatible(state, options)
        if self.options is not None and "rho" in self.options.model_fields_set:
            state.set_rho(self.options.rho)
        if not warm:
            state.reset_primal()

        if not state.has_slack:
            return self._solve_direct(state, options)
        return self._solve_admm(state, options)

    # -- degenerate case ------------------------------------------------------

    def _solve_direct(self, state: ADMMState, options: AdmmOptions) -> AdmmResult:
        events: List[NumericalNonConvergence] = []
        x, info = conjugate_gradient(
            state.A_const, state.b_const, x0=state.I,
            rtol=options.inner_tol, maxiter=options.inner_max_iter,
        )
        state.I[:] = x
        if not info.converged:
            ev = NumericalNonConvergence(
                "conjugate-gradient", info.iterations, info.relative_residual, options.inner_tol
            )
            logger.warning("%s", ev)
            events.append(ev)
        logger.info(
            "Least squares solve: %d CG iterations, relative residual %.3e",
            info.iterations, info.relative_residual,
        )
        return AdmmResult(
            image=state.image(),
            weights=state.weights.copy(),
            status=SolverStatus.direct,
            iterations=0,
            rho=tuple(float(r) for r in state.rho),
            nonconvergence=events,
        )

    # -- ADMM loop ------------------------------------------------------------

    def _solve_admm(self, state: ADMMState, options: AdmmOptions) -> AdmmResult:
        strategy = self.penalty_strategy or make_penalty_strategy(options)
        slots = state.slots()
        rho = state.rho
        A = self._assemble(state, slots)
        abs_tol = absolute_tolerance(state.J, state.operators.sensitivity, options.outer_tol)
        monitor = ConvergenceMonitor(abs_tol, options.outer_tol, state.I.shape[0])
        events: List[NumericalNonConvergence] = []

        status = SolverStatus.budget_exhausted
        it = 0
        for it in range(1, options.outer_max_iter + 1):
            # I-update
            b = state.b_const.copy()
            for slot in slots:
                s = slot.slack
                b += rho[slot.index] * slot.apply_T(s.Z - s.U)
            x, info = conjugate_gradient(
                A, b, x0=state.I, rtol=options.inner_tol, maxiter=options.inner_max_iter
            )
            state.I[:] = x
            if not info.converged:
                ev = NumericalNonConvergence(
                    "conjugate-gradient", info.iterations, info.relative_residual,
                    options.inner_tol, outer_iteration=it,
                )
                logger.warning("%s", ev)
                events.append(ev)

            # Z- and U-updates
            residuals = []
            for slot in slots:
                s = slot.slack
                r = rho[slot.index]
                GI = slot.apply(state.I)
                s.Z_prev[:] = s.Z
                np.add(GI, s.U, out=s.g)
                if slot.operator is None:
                    project_nonneg(s.g, out=s.Z)
                else:
                    soft_thresh(s.g, slot.weight / r, out=s.Z)
                s.U += GI - s.Z
                residuals.append(monitor.slot_residual(slot, GI, r))

            record = monitor.record(it, residuals, rho)
            if record.converged:
                status = SolverStatus.converged
                break

            changed = False
            for slot, res in zip(slots, residuals):
                factor = strategy.update(it, rho[slot.index], res.primal_norm, res.dual_norm)
                if factor != 1.0:
                    rho[slot.index] *= factor
                    slot.slack.U /= factor
                    changed = True
            if changed:
                logger.debug("Penalty parameters updated at iter %d: rho=%s", it, rho)
                A = self._assemble(state, slots)

        if status is SolverStatus.budget_exhausted:
            last = monitor.history[-1]
            tol = math.sqrt(sum(r.primal_tol ** 2 + r.dual_tol ** 2 for r in last.slots))
            ev = NumericalNonConvergence("ADMM", it, last.combined_norm, tol)
            logger.warning("%s", ev)
            events.append(ev)
        else:
            logger.info("ADMM converged after %d iterations", it)

        return AdmmResult(
            image=state.image(),
            weights=state.weights.copy(),
            status=status,
            iterations=it,
            rho=tuple(float(r) for r in rho),
            history=monitor.history,
            nonconvergence=events,
        )

    @staticmethod
    def _assemble(state: ADMMState, slots: Sequence[SlackSlot]) -> sp.csr_matrix:
        """A = A_const + sum_k rho_k G_k^T G_k (+ rho_nonneg I)."""
        A = state.A_const
        for slot in slots:
            r = state.rho[slot.index]
            if slot.gram is None:
                A = A + r * sp.identity(A.shape[0], format="csr")
            else:
                A = A + r * slot.gram
        return A.tocsr()

    @staticmethod
    def _check_compatible(state: ADMMState, options: AdmmOptions) -> None:
        if not state.is_weighted:
            raise ConfigurationError(
                "Regularization weights have not been set; call `re_weight` before solving."
            )
        if options.nonneg != (state.nonneg is not None):
            raise ConfigurationError(
                "The non-negativity setting differs from the one the state was built with."
            )
        for k, term in enumerate(state.terms):
            if state.enabled[k] and options.l1_norms[k] != isinstance(term, L1Term):
                raise ConfigurationError(
                    f"The norm of term {k} differs from the one the state was built with."
                )


def solve_admm(
    state: ADMMState,
    options: Union[AdmmOptions, Dict[str, Any], None] = None,
    penalty_strategy: Optional[PenaltyStrategy] = None,
    warm: bool = True,
) -> AdmmResult:
    """Functional form of ``ADMMSolver(options, penalty_strategy).solve(state)``."""
    return ADMMSolver(options, penalty_strategy).solve(state, warm=warm)


# ---------------------------------------------------------------------------
# Portfolio-style wrapper
# ---------------------------------------------------------------------------

def run_admm_cfa(
    y: np.ndarray,
    physics: Union[Operators, Dict[str, Any]],
    cfg: Dict[str, Any],
) -> Tuple[np.ndarray, Dict[str, Any]]:
    """Reconstruct a latent image from one raw CFA image.

    Args:
        y: Raw image (H, W).
        physics: Prebuilt ``Operators``, or a dict with ``sensitivity`` and
                 optionally ``dispersion``.
        cfg: Configuration dict with:
            - weights: three regularization weights (default: [1e-2, 0, 0])
            - options: ``AdmmOptions`` or dict of its fields

    Returns:
        Tuple of (reconstructed image (H, W, B), info_dict)
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim != 2:
        raise ConfigurationError(f"Expected a 2D raw image, got shape {y.shape}")
    options = validate_options(cfg.get("options"))
    weights = check_weights(cfg.get("weights", DEFAULT_WEIGHTS))

    if isinstance(physics, Operators):
        operators = physics
    else:
        operators = build_operators(
            y.shape,
            options.bayer_pattern,
            physics["sensitivity"],
            dispersion=physics.get("dispersion"),
            enabled=weights != 0,
            replicate_spectral_gradient=options.replicate_spectral_gradient,
        )

    state, normalized = ADMMState.from_weights(operators, y, weights, options)
    result = ADMMSolver(options).solve(state)

    info: Dict[str, Any] = {
        "solver": "admm_cfa",
        "weights": normalized.tolist(),
        "status": result.status.value,
        "iterations": result.iterations,
        "converged": result.converged,
        "rho": list(result.rho),
        "nonconvergence": [str(ev) for ev in result.nonconvergence],
    }
    return result.image, info
