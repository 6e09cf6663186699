"""hsi_admm.recon.penalty

Adaptive penalty parameter strategies.

A strategy returns a multiplicative factor for one penalty parameter.  The
solver multiplies ``rho_k`` by the factor and divides the scaled dual
``U_k`` by it, so that ``rho_k * U_k`` (the unscaled dual) is unchanged and
the fixed point of the iteration is preserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from hsi_admm.api.types import AdmmOptions


@runtime_checkable
class PenaltyStrategy(Protocol):
    def update(self, iteration: int, rho: float, primal_norm: float, dual_norm: float) -> float:
        """Return the factor to apply to ``rho`` (1.0 for no change)."""
        ...


class NoAdaptation:
    """Fixed penalty parameters."""

    def update(self, iteration: int, rho: float, primal_norm: float, dual_norm: float) -> float:
        return 1.0


@dataclass
class ResidualBalancing:
    """Residual balancing, Boyd et al. (2011), Section 3.4.1.

    Increase rho when the primal residual is more than ``mu`` times the dual
    residual, decrease it in the opposite case.
    """

    tau_incr: float = 2.0
    tau_decr: float = 2.0
    mu: float = 10.0
    interval: int = 1

    def update(self, iteration: int, rho: float, primal_norm: float, dual_norm: float) -> float:
        if self.interval > 1 and iteration % self.interval != 0:
            return 1.0
        if primal_norm > self.mu * dual_norm:
            return self.tau_incr
        if dual_norm > self.mu * primal_norm:
            return 1.0 / self.tau_decr
        return 1.0


def make_penalty_strategy(options: AdmmOptions) -> PenaltyStrategy:
    """Strategy described by ``options.adaptive_penalty``."""
    params: Optional[tuple] = options.adaptive_penalty
    if params is None:
        return NoAdaptation()
    tau_incr, tau_decr, mu = params
    return ResidualBalancing(
        tau_incr=float(tau_incr),
        tau_decr=float(tau_decr),
        mu=float(mu),
        interval=options.penalty_update_interval,
    )
