"""
hsi_admm.api.errors

Typed exceptions for the reconstruction core.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HSIAdmmError(Exception):
    """Base hsi_admm error."""


class ConfigurationError(HSIAdmmError):
    """Fatal, raised at construction/validation time. Never retried."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class NumericalNonConvergence(HSIAdmmError, RuntimeWarning):
    """An iteration budget ran out before the tolerance was met.

    Not raised by the solver: instances are logged and attached to the
    result so that the caller can decide whether to retry.
    """

    def __init__(
        self,
        stage: str,
        iterations: int,
        residual: float,
        tolerance: float,
        outer_iteration: Optional[int] = None,
    ):
        self.stage = stage
        self.iterations = int(iterations)
        self.residual = float(residual)
        self.tolerance = float(tolerance)
        self.outer_iteration = outer_iteration
        where = "" if outer_iteration is None else f" (outer iteration {outer_iteration})"
        super().__init__(
            f"{stage} solve stopped after {self.iterations} iterations{where}: "
            f"residual={self.residual:.3e}, tol={self.tolerance:.3e}"
        )
