"""hsi_admm.physics.spectral.cfa_operators

Fixed sparse operators for reconstructing a spectral image from a colour
filter array (CFA) capture.

    J = M @ Omega_Phi @ I

- I: latent image, H x W x B, vectorized band-planar
- Omega: colour conversion, kron(sensitivity, identity)
- Omega_Phi: colour conversion with dispersion (caller supplied), or Omega
- M: CFA sampling, one row per raw pixel

Operators are built once per (image shape, sensitivity, dispersion, CFA
pattern) and are shared read-only by every solve on that problem.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from hsi_admm.api.errors import ConfigurationError
from hsi_admm.api.types import N_PRIORS
from hsi_admm.physics.spectral.gradients import TERM_NAMES, regularization_operator

logger = logging.getLogger(__name__)

_CFA_CHANNELS = {"r": 0, "g": 1, "b": 2}


# ---------------------------------------------------------------------------
# Vectorization helpers
# ---------------------------------------------------------------------------

def vectorize_image(x: np.ndarray) -> np.ndarray:
    """(H, W) or (H, W, B) array -> band-planar column vector."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 2:
        return x.ravel()
    if x.ndim != 3:
        raise ValueError(f"Expected a 2D or 3D image, got shape {x.shape}")
    return x.transpose(2, 0, 1).ravel()


def devectorize_image(v: np.ndarray, image_sampling: Tuple[int, int], n_bands: int) -> np.ndarray:
    """Inverse of ``vectorize_image``; always returns (H, W, B)."""
    h, w = image_sampling
    return np.asarray(v).reshape(n_bands, h, w).transpose(1, 2, 0)


# ---------------------------------------------------------------------------
# Operator construction
# ---------------------------------------------------------------------------

def parse_cfa_pattern(align: str) -> np.ndarray:
    """Parse a 4-symbol CFA tile such as ``"gbrg"`` into a 2x2 channel map.

    The symbols are read row-wise: ``"gbrg"`` is ``[[g, b], [r, g]]``.
    """
    if not isinstance(align, str) or len(align) != 4:
        raise ConfigurationError(
            f"CFA pattern must be a 4-character string, got {align!r}."
        )
    symbols = align.lower()
    if any(s not in _CFA_CHANNELS for s in symbols) or set(symbols) != set(_CFA_CHANNELS):
        raise ConfigurationError(
            f"Unsupported CFA pattern {align!r}: expected the symbols 'r', 'g' and 'b'.",
            details={"align": align},
        )
    return np.array([_CFA_CHANNELS[s] for s in symbols], dtype=np.int64).reshape(2, 2)


def _as_sensitivity(sensitivity: Any) -> np.ndarray:
    s = np.asarray(sensitivity, dtype=np.float64)
    if s.ndim == 1:
        s = s.reshape(1, -1)
    if s.ndim != 2 or s.size == 0:
        raise ConfigurationError(
            f"`sensitivity` must be a non-empty 2D array, got shape {s.shape}."
        )
    return s


def color_mixing_matrix(image_sampling: Tuple[int, int], sensitivity: Any) -> sp.csr_matrix:
    """Omega: maps a vectorized B-band image to a vectorized C-channel image."""
    s = _as_sensitivity(sensitivity)
    h, w = image_sampling
    return sp.kron(sp.csr_matrix(s), sp.identity(h * w, format="csr"), format="csr")


def dispersion_matrix(
    image_sampling: Tuple[int, int],
    sensitivity: Any,
    dispersion: Any = None,
    omega: Optional[sp.csr_matrix] = None,
) -> sp.csr_matrix:
    """Omega_Phi: colour conversion including dispersion.

    ``dispersion`` warps the latent image into the space of the raw image and
    converts it to the raw image's colour space at the same time.  When it is
    None, Omega_Phi is Omega.
    """
    if omega is None:
        omega = color_mixing_matrix(image_sampling, sensitivity)
    if dispersion is None:
        return omega

    if sp.issparse(dispersion):
        dtype = dispersion.dtype
        ndim = 2
    else:
        dispersion = np.asarray(dispersion)
        dtype = dispersion.dtype
        ndim = dispersion.ndim
    if ndim != 2 or not np.issubdtype(dtype, np.floating):
        raise ConfigurationError("`dispersion` must be a floating-point matrix.")

    n_elements = omega.shape[1]
    if dispersion.shape[0] != omega.shape[0]:
        raise ConfigurationError(
            "`dispersion` must have as many rows as the colour conversion operator "
            f"({omega.shape[0]}), got {dispersion.shape[0]}.",
            details={"expected_rows": omega.shape[0], "rows": dispersion.shape[0]},
        )
    if dispersion.shape[1] != n_elements:
        raise ConfigurationError(
            "`dispersion` must have as many columns as there are values in the latent "
            f"image ({n_elements}), got {dispersion.shape[1]}.",
            details={"expected_cols": n_elements, "cols": dispersion.shape[1]},
        )
    return sp.csr_matrix(dispersion, dtype=np.float64)


def mosaic_matrix(
    image_sampling: Tuple[int, int],
    align: str,
    n_channels: int = 3,
) -> sp.csr_matrix:
    """M: samples a vectorized C-channel image at the CFA sites.

    A 3-channel image is sampled according to ``align``.  A single-channel
    (monochrome) sensor samples channel 0 everywhere, so M is the identity.
    """
    tile = parse_cfa_pattern(align)
    h, w = image_sampling
    n_px = h * w
    if n_channels == 1:
        return sp.identity(n_px, format="csr", dtype=np.float64)
    if n_channels != 3:
        raise ConfigurationError(
            f"CFA sampling supports 1 or 3 sensor channels, got {n_channels}.",
            details={"n_channels": n_channels},
        )
    rr, cc = np.meshgrid(np.arange(h), np.arange(w), indexing="ij")
    channel = tile[rr % 2, cc % 2].ravel()
    pixel = np.arange(n_px)
    cols = channel * n_px + pixel
    return sp.csr_matrix(
        (np.ones(n_px), (pixel, cols)), shape=(n_px, n_channels * n_px), dtype=np.float64
    )


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Operators:
    """Fixed linear operators of one reconstruction problem.

    Attributes
    ----------
    image_sampling : tuple[int, int]
        (H, W) of the raw and latent images.
    n_bands : int
        Number of bands of the latent image.
    sensitivity : np.ndarray
        (C, B) spectral sensitivity of the sensor channels.
    omega, omega_phi, M, M_omega_phi : scipy.sparse.csr_matrix
        Colour conversion, colour conversion with dispersion, CFA sampling,
        and the full forward model.
    G : tuple
        Regularization operators of the three prior terms; None for terms
        that were disabled when the operators were built.
    has_dispersion : bool
        Whether a dispersion operator was supplied.
    """

    image_sampling: Tuple[int, int]
    n_bands: int
    sensitivity: np.ndarray
    omega: sp.csr_matrix
    omega_phi: sp.csr_matrix
    M: sp.csr_matrix
    M_omega_phi: sp.csr_matrix
    G: Tuple[Optional[sp.csr_matrix], ...] = field(default_factory=lambda: (None,) * N_PRIORS)
    has_dispersion: bool = False

    @property
    def n_channels(self) -> int:
        return int(self.sensitivity.shape[0])

    @property
    def n_elements(self) -> int:
        """Length of the vectorized latent image."""
        return int(self.M_omega_phi.shape[1])

    @property
    def n_observations(self) -> int:
        """Length of the vectorized raw image."""
        return int(self.M_omega_phi.shape[0])

    @property
    def enabled(self) -> Tuple[bool, ...]:
        return tuple(g is not None for g in self.G)

    def reestimate(self, I: np.ndarray) -> np.ndarray:
        """Simulate the raw image, (H, W), from a latent image."""
        return (self.M_omega_phi @ self._as_vector(I)).reshape(self.image_sampling)

    def render_channels(self, I: np.ndarray, warped: bool = True) -> np.ndarray:
        """Convert a latent image to the sensor's colour space, (H, W, C).

        With ``warped`` the dispersion model is applied as well, which gives
        a demosaiced version of the raw image.
        """
        op = self.omega_phi if warped else self.omega
        return devectorize_image(op @ self._as_vector(I), self.image_sampling, self.n_channels)

    def _as_vector(self, I: np.ndarray) -> np.ndarray:
        I = np.asarray(I, dtype=np.float64)
        v = I.ravel() if I.ndim == 1 else vectorize_image(I)
        if v.shape[0] != self.n_elements:
            raise ValueError(
                f"Shape mismatch: expected {self.n_elements} latent values, got {v.shape[0]}"
            )
        return v


def build_operators(
    image_sampling: Tuple[int, int],
    align: str,
    sensitivity: Any,
    dispersion: Any = None,
    enabled: Sequence[bool] = (True, True, True),
    replicate_spectral_gradient: bool = False,
) -> Operators:
    """Build all fixed operators for one problem shape.

    Parameters
    ----------
    image_sampling : tuple[int, int]
        (H, W) of the raw image.
    align : str
        CFA tile pattern, e.g. ``"gbrg"``.
    sensitivity : array-like, shape (C, B)
        ``sensitivity[i, j]`` is the sensitivity of channel i to band j.
    dispersion : array-like or sparse matrix, optional
        Combined warp and colour conversion, shape (C*H*W, B*H*W).
    enabled : sequence of bool
        Which of the three regularization operators to build.
    replicate_spectral_gradient : bool
        Passed to ``spectral_gradient`` for the spectral term.

    Returns
    -------
    Operators
    """
    if len(enabled) != N_PRIORS:
        raise ConfigurationError(
            f"Expected {N_PRIORS} enabled-term flags, got {len(enabled)}."
        )
    h, w = (int(s) for s in image_sampling)
    if h < 1 or w < 1:
        raise ConfigurationError(f"Invalid image sampling {image_sampling!r}.")
    s = _as_sensitivity(sensitivity)
    n_channels, n_bands = s.shape

    omega = color_mixing_matrix((h, w), s)
    omega_phi = dispersion_matrix((h, w), s, dispersion, omega=omega)
    M = mosaic_matrix((h, w), align, n_channels)
    M_omega_phi = (M @ omega_phi).tocsr()

    G = tuple(
        regularization_operator(k, (h, w), n_bands, replicate_spectral_gradient)
        if enabled[k] else None
        for k in range(N_PRIORS)
    )
    logger.debug(
        "Built operators: sampling=%dx%d bands=%d channels=%d dispersion=%s G=%s",
        h, w, n_bands, n_channels, dispersion is not None,
        {TERM_NAMES[k]: (g.shape if g is not None else None) for k, g in enumerate(G)},
    )
    return Operators(
        image_sampling=(h, w),
        n_bands=int(n_bands),
        sensitivity=s,
        omega=omega,
        omega_phi=omega_phi,
        M=M,
        M_omega_phi=M_omega_phi,
        G=G,
        has_dispersion=dispersion is not None,
    )
