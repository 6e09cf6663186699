"""hsi_admm.recon.classical

Building blocks shared by the ADMM solver: proximal operators, a
conjugate-gradient wrapper, and a closed-form least squares reference.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import cg, spsolve


def soft_thresh(x: np.ndarray, lam: float, out: Optional[np.ndarray] = None) -> np.ndarray:
    """Proximal operator of ``lam * ||.||_1``."""
    if out is None:
        return np.sign(x) * np.maximum(np.abs(x) - lam, 0.0)
    np.multiply(np.sign(x), np.maximum(np.abs(x) - lam, 0.0), out=out)
    return out


def project_nonneg(x: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
    """Projection onto the non-negative orthant."""
    return np.maximum(x, 0.0, out=out)


@dataclass
class CGInfo:
    """Outcome of one conjugate-gradient solve."""
    converged: bool
    iterations: int
    relative_residual: float
    info: int


def conjugate_gradient(
    A: sp.spmatrix,
    b: np.ndarray,
    x0: Optional[np.ndarray] = None,
    rtol: float = 1e-5,
    maxiter: int = 500,
) -> Tuple[np.ndarray, CGInfo]:
    """Solve the symmetric positive (semi-)definite system A x = b.

    Wraps ``scipy.sparse.linalg.cg``.  The iterate is returned even when the
    tolerance was not reached; ``CGInfo`` tells the caller what happened.
    """
    n_iter = 0

    def _count(_xk: np.ndarray) -> None:
        nonlocal n_iter
        n_iter += 1

    x, info = cg(A, b, x0=x0, rtol=rtol, maxiter=maxiter, callback=_count)
    b_norm = float(np.linalg.norm(b))
    r_norm = float(np.linalg.norm(b - A @ x))
    rel = r_norm / b_norm if b_norm > 0 else r_norm
    return x, CGInfo(converged=(info == 0), iterations=n_iter, relative_residual=rel, info=int(info))


def least_squares(A: sp.spmatrix, y: np.ndarray, reg: float = 0.0) -> np.ndarray:
    """Closed-form solution of (A^T A + reg I) x = A^T y (sparse direct solve).

    Not used by the solver.  It is the reference the conjugate-gradient path
    of ``ADMMSolver`` is checked against when no prior is active.
    """
    AtA = (A.T @ A).tocsc()
    if reg:
        AtA = AtA + reg * sp.identity(A.shape[1], format="csc")
    Aty = A.T @ np.asarray(y, dtype=np.float64).ravel()
    return np.atleast_1d(spsolve(AtA, Aty))
