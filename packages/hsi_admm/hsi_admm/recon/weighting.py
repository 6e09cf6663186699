"""hsi_admm.recon.weighting

Regularization weight normalization and the weight-dependent part of the
ADMM normal equations.

    A_const = (M Omega_Phi)^T (M Omega_Phi) + sum_{k: L2} w_k G_k^T G_k

Only L2-penalized terms are folded into ``A_const``.  L1-penalized terms and
the non-negativity constraint are handled through slack variables in the
ADMM loop and never enter ``A_const``.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from hsi_admm.api.errors import ConfigurationError
from hsi_admm.api.types import N_PRIORS


def check_weights(weights: Sequence[float]) -> np.ndarray:
    """Validate a raw weight vector: length 3, finite, non-negative."""
    w = np.asarray(weights, dtype=np.float64).ravel()
    if w.shape[0] != N_PRIORS:
        raise ConfigurationError(
            f"Expected `weights` to have length {N_PRIORS} for the {N_PRIORS} prior terms, "
            f"got {w.shape[0]}."
        )
    if not np.all(np.isfinite(w)):
        raise ConfigurationError("All elements of `weights` must be finite.")
    if np.any(w < 0):
        raise ConfigurationError("All elements of `weights` must be non-negative numbers.")
    return w


def normalization_factors(n_observations: int, row_counts: Sequence[Optional[int]]) -> np.ndarray:
    """Per-term factor rows(M Omega_Phi) / rows(G_k); 0 for disabled terms."""
    factors = np.zeros(len(row_counts), dtype=np.float64)
    for k, rows in enumerate(row_counts):
        if rows:
            factors[k] = n_observations / rows
    return factors


def normalize_weights(
    weights: Sequence[float],
    n_observations: int,
    row_counts: Sequence[Optional[int]],
) -> np.ndarray:
    """Scale each active weight by the length of the vector it penalizes.

    Makes the relative importance of the terms independent of how many
    gradient directions and bands each one spans.  Zero weights stay zero.
    """
    w = check_weights(weights)
    for k, rows in enumerate(row_counts):
        if w[k] != 0 and not rows:
            raise ConfigurationError(
                f"Weight {k} is non-zero but the corresponding operator was not built."
            )
    return w * normalization_factors(n_observations, row_counts)


def const_part(M_omega_phi: sp.spmatrix) -> sp.csr_matrix:
    """A_const_noWeights = (M Omega_Phi)^T (M Omega_Phi)."""
    return (M_omega_phi.T @ M_omega_phi).tocsr()


def fold_weights(
    A_const_no_weights: sp.spmatrix,
    l2_terms: Iterable[Tuple[sp.spmatrix, float]],
) -> sp.csr_matrix:
    """Add ``w_k G_k^T G_k`` for every L2 term.

    ``l2_terms`` yields (G_k^T G_k, w_k) pairs; the Gram matrices are cached
    by the caller so that re-weighting does not recompute them.
    """
    A_const = sp.csr_matrix(A_const_no_weights, copy=True)
    for gram, weight in l2_terms:
        if weight == 0:
            continue
        A_const = A_const + weight * gram
    return A_const.tocsr()
