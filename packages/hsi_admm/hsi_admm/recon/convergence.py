"""hsi_admm.recon.convergence

Primal/dual residuals and the ADMM stopping rule.

Follows Section 3.3.1 of Boyd et al. (2011), "Distributed Optimization and
Statistical Learning via the Alternating Direction Method of Multipliers",
applied to each slack slot ``G_k I = Z_k``:

    r_k = G_k I - Z_k
    s_k = rho_k G_k^T (Z_k - Z_prev_k)

    ||r_k|| <= sqrt(p_k) eps_abs + eps_rel max(||G_k I||, ||Z_k||)
    ||s_k|| <= sqrt(n)   eps_abs + eps_rel ||rho_k G_k^T U_k||
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from hsi_admm.recon.admm_state import SlackSlot

logger = logging.getLogger(__name__)


@dataclass
class SlotResidual:
    """Residual norms and tolerances of one slack slot at one iteration."""
    name: str
    primal_norm: float
    dual_norm: float
    primal_tol: float
    dual_tol: float

    @property
    def converged(self) -> bool:
        return self.primal_norm <= self.primal_tol and self.dual_norm <= self.dual_tol


@dataclass
class ResidualRecord:
    """Combined residuals of one outer iteration."""
    iteration: int
    primal_norm: float
    dual_norm: float
    converged: bool
    rho: Tuple[float, ...]
    slots: List[SlotResidual] = field(default_factory=list)

    @property
    def combined_norm(self) -> float:
        return math.hypot(self.primal_norm, self.dual_norm)


class ConvergenceMonitor:
    """Computes residuals into the slot buffers and decides when to stop.

    Parameters
    ----------
    absolute_tol : float
        eps_abs, computed once per state from the raw image.
    relative_tol : float
        eps_rel, the outer tolerance of the solver options.
    n_elements : int
        Length of the primal image vector.
    """

    def __init__(self, absolute_tol: float, relative_tol: float, n_elements: int):
        self.absolute_tol = float(absolute_tol)
        self.relative_tol = float(relative_tol)
        self.n_elements = int(n_elements)
        self.history: List[ResidualRecord] = []

    def slot_residual(self, slot: SlackSlot, GI: np.ndarray, rho: float) -> SlotResidual:
        """Fill ``slot.slack.R`` and ``slot.slack.Y`` and measure them.

        ``GI`` is G_k I for the current primal iterate; ``slot.slack.U`` must
        already hold the updated dual variable.
        """
        s = slot.slack
        np.subtract(GI, s.Z, out=s.R)
        s.Y[:] = rho * slot.apply_T(s.Z - s.Z_prev)

        primal_tol = math.sqrt(len(s)) * self.absolute_tol + self.relative_tol * max(
            float(np.linalg.norm(GI)), float(np.linalg.norm(s.Z))
        )
        dual_tol = math.sqrt(self.n_elements) * self.absolute_tol + self.relative_tol * float(
            np.linalg.norm(rho * slot.apply_T(s.U))
        )
        return SlotResidual(
            name=slot.name,
            primal_norm=float(np.linalg.norm(s.R)),
            dual_norm=float(np.linalg.norm(s.Y)),
            primal_tol=primal_tol,
            dual_tol=dual_tol,
        )

    def record(
        self,
        iteration: int,
        residuals: Sequence[SlotResidual],
        rho: Sequence[float],
    ) -> ResidualRecord:
        """Append and return the combined record; converged when every slot is."""
        primal = math.sqrt(sum(r.primal_norm ** 2 for r in residuals))
        dual = math.sqrt(sum(r.dual_norm ** 2 for r in residuals))
        rec = ResidualRecord(
            iteration=iteration,
            primal_norm=primal,
            dual_norm=dual,
            converged=all(r.converged for r in residuals),
            rho=tuple(float(r) for r in rho),
            slots=list(residuals),
        )
        self.history.append(rec)
        logger.debug(
            "ADMM iter %4d | primal=%.3e dual=%.3e | converged=%s",
            iteration, primal, dual, rec.converged,
        )
        return rec
