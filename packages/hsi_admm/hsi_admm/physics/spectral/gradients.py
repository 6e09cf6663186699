"""hsi_admm.physics.spectral.gradients

Sparse regularization operators for vectorized spectral images.

Images are vectorized band-planar (see ``cfa_operators.vectorize_image``):
pixels of one band in row-major order, bands concatenated.

Provides:
- spatial gradient (stacked x/y forward differences)
- spectral gradient (adjacent-band differences)
- spatial Laplacian (5-point stencil)
- regularization_operator(): G_k for each of the three prior terms
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import scipy.sparse as sp

from hsi_admm.api.errors import ConfigurationError

logger = logging.getLogger(__name__)

SPATIAL_GRADIENT = 0
SPECTRAL_GRADIENT = 1
SPATIAL_LAPLACIAN = 2

TERM_NAMES = ("spatial_gradient", "spectral_gradient", "spatial_laplacian")


def _forward_difference(n: int) -> sp.csr_matrix:
    """(n, n) forward difference; the last row is zero (Neumann boundary)."""
    i = np.arange(n - 1)
    rows = np.concatenate([i, i])
    cols = np.concatenate([i, i + 1])
    data = np.concatenate([-np.ones(n - 1), np.ones(n - 1)])
    return sp.coo_matrix((data, (rows, cols)), shape=(n, n), dtype=np.float64).tocsr()


def _check_sampling(image_sampling: Tuple[int, int], n_bands: int) -> Tuple[int, int]:
    h, w = (int(s) for s in image_sampling)
    if h < 1 or w < 1 or n_bands < 1:
        raise ConfigurationError(
            f"Invalid image dimensions {h}x{w}x{n_bands}.",
            details={"image_sampling": (h, w), "n_bands": n_bands},
        )
    return h, w


def spatial_gradient(image_sampling: Tuple[int, int], n_bands: int) -> sp.csr_matrix:
    """Stacked ``[G_x; G_y]`` forward differences applied to every band.

    Returns
    -------
    scipy.sparse.csr_matrix, shape (2 * H * W * B, H * W * B)
    """
    h, w = _check_sampling(image_sampling, n_bands)
    eye_b = sp.identity(n_bands, format="csr")
    g_x = sp.kron(sp.identity(h, format="csr"), _forward_difference(w))
    g_y = sp.kron(_forward_difference(h), sp.identity(w, format="csr"))
    return sp.vstack(
        [sp.kron(eye_b, g_x), sp.kron(eye_b, g_y)], format="csr"
    )


def spectral_gradient(
    image_sampling: Tuple[int, int],
    n_bands: int,
    replicate: bool = False,
) -> sp.csr_matrix:
    """Differences between adjacent bands at every pixel.

    Args:
        image_sampling: (H, W).
        n_bands: Number of spectral bands, B.
        replicate: If True, the output has H*W*B rows, the rows for the last
            band being zero, so that it has the same size as the image.
            Otherwise it has H*W*(B - 1) rows.

    Returns:
        Sparse matrix with H*W*B columns.
    """
    h, w = _check_sampling(image_sampling, n_bands)
    d = _forward_difference(n_bands)
    if not replicate:
        d = d[: n_bands - 1, :]
    return sp.kron(d, sp.identity(h * w, format="csr"), format="csr")


def spatial_laplacian(image_sampling: Tuple[int, int], n_bands: int) -> sp.csr_matrix:
    """5-point discrete Laplacian of every band, Neumann boundaries."""
    h, w = _check_sampling(image_sampling, n_bands)
    d_w = _forward_difference(w)
    d_h = _forward_difference(h)
    lap_w = -(d_w.T @ d_w)
    lap_h = -(d_h.T @ d_h)
    lap = sp.kron(sp.identity(h, format="csr"), lap_w) + sp.kron(
        lap_h, sp.identity(w, format="csr")
    )
    return sp.kron(sp.identity(n_bands, format="csr"), lap, format="csr")


def regularization_operator(
    term: int,
    image_sampling: Tuple[int, int],
    n_bands: int,
    replicate_spectral_gradient: bool = False,
) -> sp.csr_matrix:
    """Build G_k for prior term ``term`` (0, 1 or 2).

    Term 1 (spectral) composes a block-replicated spectral difference with the
    spatial gradient, so that it acts on both the x and y gradients.
    """
    if term == SPATIAL_GRADIENT:
        G = spatial_gradient(image_sampling, n_bands)
    elif term == SPECTRAL_GRADIENT:
        g_lambda = spectral_gradient(image_sampling, n_bands, replicate_spectral_gradient)
        if g_lambda.shape[0] == 0:
            raise ConfigurationError(
                "The spectral gradient term requires at least two bands "
                "unless the spectral gradient is replicated.",
                details={"n_bands": n_bands},
            )
        G = sp.block_diag((g_lambda, g_lambda), format="csr") @ spatial_gradient(
            image_sampling, n_bands
        )
    elif term == SPATIAL_LAPLACIAN:
        G = spatial_laplacian(image_sampling, n_bands)
    else:
        raise ConfigurationError(f"Unknown regularization term index {term!r}.")
    G = sp.csr_matrix(G, dtype=np.float64)
    logger.debug("Built %s operator: shape=%s nnz=%d", TERM_NAMES[term], G.shape, G.nnz)
    return G
