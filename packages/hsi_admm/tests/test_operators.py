"""Tests for the fixed sparse operators: colour mixing, dispersion, CFA sampling, priors."""

import dataclasses

import numpy as np
import pytest
import scipy.sparse as sp

from hsi_admm.api.errors import ConfigurationError
from hsi_admm.physics.spectral.cfa_operators import (
    build_operators,
    color_mixing_matrix,
    devectorize_image,
    dispersion_matrix,
    mosaic_matrix,
    parse_cfa_pattern,
    vectorize_image,
)
from hsi_admm.physics.spectral.gradients import (
    SPATIAL_GRADIENT,
    SPATIAL_LAPLACIAN,
    SPECTRAL_GRADIENT,
    regularization_operator,
    spatial_gradient,
    spatial_laplacian,
    spectral_gradient,
)


# ── Vectorization ────────────────────────────────────────────────────────


class TestVectorization:

    def test_band_planar_order(self):
        x = np.arange(2 * 3 * 2, dtype=np.float64).reshape(2, 3, 2)
        v = vectorize_image(x)
        np.testing.assert_array_equal(v[:6], x[:, :, 0].ravel())
        np.testing.assert_array_equal(v[6:], x[:, :, 1].ravel())

    def test_devectorize_inverts(self, rng):
        x = rng.random((4, 5, 3))
        np.testing.assert_array_equal(devectorize_image(vectorize_image(x), (4, 5), 3), x)

    def test_2d_image_is_row_major(self):
        x = np.arange(6, dtype=np.float64).reshape(2, 3)
        np.testing.assert_array_equal(vectorize_image(x), np.arange(6))


# ── CFA ──────────────────────────────────────────────────────────────────


class TestCFAPattern:

    def test_gbrg_layout(self):
        np.testing.assert_array_equal(parse_cfa_pattern("gbrg"), [[1, 2], [0, 1]])

    def test_case_insensitive(self):
        np.testing.assert_array_equal(parse_cfa_pattern("RGGB"), parse_cfa_pattern("rggb"))

    @pytest.mark.parametrize("align", ["rgbx", "rrgg", "rgb", "rggbb", ""])
    def test_unsupported_pattern(self, align):
        with pytest.raises(ConfigurationError):
            parse_cfa_pattern(align)

    def test_mosaic_samples_tile(self):
        M = mosaic_matrix((2, 2), "rggb", 3).toarray()
        assert M.shape == (4, 12)
        # pixel p of channel c sits at column c * 4 + p
        expected_cols = [0, 4 + 1, 4 + 2, 8 + 3]
        for p, col in enumerate(expected_cols):
            assert M[p, col] == 1.0
            assert M[p].sum() == 1.0

    def test_mosaic_repeats_tile(self):
        M = mosaic_matrix((4, 4), "gbrg", 3)
        channel_image = np.zeros((4, 4, 3))
        channel_image[:, :, 0] = 1.0  # red everywhere
        raw = (M @ vectorize_image(channel_image)).reshape(4, 4)
        expected = np.zeros((4, 4))
        expected[1::2, 0::2] = 1.0
        np.testing.assert_array_equal(raw, expected)

    def test_monochrome_sensor_is_identity(self):
        M = mosaic_matrix((4, 4), "rggb", 1)
        np.testing.assert_array_equal(M.toarray(), np.eye(16))

    def test_unsupported_channel_count(self):
        with pytest.raises(ConfigurationError):
            mosaic_matrix((4, 4), "rggb", 2)


# ── Colour mixing and dispersion ─────────────────────────────────────────


class TestColorMixing:

    def test_applies_sensitivity_per_pixel(self, rng, sensitivity):
        x = rng.random((3, 4, 3))
        omega = color_mixing_matrix((3, 4), sensitivity)
        assert omega.shape == (3 * 12, 3 * 12)
        channels = devectorize_image(omega @ vectorize_image(x), (3, 4), 3)
        np.testing.assert_allclose(channels, np.einsum("hwb,cb->hwc", x, sensitivity))

    def test_no_dispersion_returns_omega(self, sensitivity):
        omega = color_mixing_matrix((3, 3), sensitivity)
        omega_phi = dispersion_matrix((3, 3), sensitivity, omega=omega)
        assert omega_phi is omega

    def test_dispersion_accepted(self, rng, sensitivity):
        phi = rng.random((27, 27))
        omega_phi = dispersion_matrix((3, 3), sensitivity, phi)
        assert sp.issparse(omega_phi)
        np.testing.assert_allclose(omega_phi.toarray(), phi)

    def test_dispersion_row_mismatch(self, sensitivity):
        with pytest.raises(ConfigurationError, match="rows"):
            dispersion_matrix((3, 3), sensitivity, sp.eye(26, 27, format="csr"))

    def test_dispersion_column_mismatch(self, sensitivity):
        with pytest.raises(ConfigurationError, match="columns"):
            dispersion_matrix((3, 3), sensitivity, np.zeros((27, 18)))

    def test_dispersion_not_float(self, sensitivity):
        with pytest.raises(ConfigurationError, match="floating-point"):
            dispersion_matrix((3, 3), sensitivity, np.zeros((27, 27), dtype=np.int64))


# ── Regularization operators ─────────────────────────────────────────────


class TestGradients:

    def test_spatial_gradient_shape(self):
        G = spatial_gradient((4, 5), 3)
        assert G.shape == (2 * 60, 60)

    def test_spatial_gradient_of_constant_is_zero(self):
        G = spatial_gradient((4, 5), 2)
        np.testing.assert_allclose(G @ np.ones(40), 0.0)

    def test_spatial_gradient_of_ramp(self):
        x = np.tile(np.arange(5, dtype=np.float64), (4, 1))
        gx = (spatial_gradient((4, 5), 1) @ x.ravel())[:20].reshape(4, 5)
        expected = np.ones((4, 5))
        expected[:, -1] = 0.0  # Neumann boundary
        np.testing.assert_array_equal(gx, expected)

    def test_spectral_gradient_shapes(self):
        assert spectral_gradient((3, 3), 4).shape == (27, 36)
        assert spectral_gradient((3, 3), 4, replicate=True).shape == (36, 36)

    def test_spectral_gradient_values(self, rng):
        x = rng.random((3, 3, 4))
        d = spectral_gradient((3, 3), 4) @ vectorize_image(x)
        np.testing.assert_allclose(d, vectorize_image(np.diff(x, axis=2)))

    def test_spectral_term_shape(self):
        G = regularization_operator(SPECTRAL_GRADIENT, (3, 3), 4)
        assert G.shape == (2 * 27, 36)

    def test_spectral_term_needs_two_bands(self):
        with pytest.raises(ConfigurationError):
            regularization_operator(SPECTRAL_GRADIENT, (3, 3), 1)

    def test_spectral_term_single_band_replicated(self):
        G = regularization_operator(SPECTRAL_GRADIENT, (3, 3), 1, replicate_spectral_gradient=True)
        assert G.shape == (18, 9)
        assert G.nnz == 0

    def test_laplacian_symmetric_and_kills_constants(self):
        L = spatial_laplacian((4, 4), 2)
        assert L.shape == (32, 32)
        np.testing.assert_allclose((L - L.T).toarray(), 0.0)
        np.testing.assert_allclose(L @ np.ones(32), 0.0)

    def test_laplacian_interior_stencil(self):
        L = spatial_laplacian((3, 3), 1).toarray()
        center = 4
        assert L[center, center] == -4.0
        assert sorted(np.nonzero(L[center])[0].tolist()) == [1, 3, 4, 5, 7]

    def test_unknown_term(self):
        with pytest.raises(ConfigurationError):
            regularization_operator(5, (3, 3), 2)


# ── build_operators ──────────────────────────────────────────────────────


class TestBuildOperators:

    def test_shapes(self, sensitivity):
        ops = build_operators((4, 6), "gbrg", sensitivity)
        assert ops.n_elements == 4 * 6 * 3
        assert ops.n_observations == 24
        assert ops.n_channels == 3
        assert ops.M_omega_phi.shape == (24, 72)
        assert ops.G[SPATIAL_GRADIENT].shape == (144, 72)
        assert ops.G[SPATIAL_LAPLACIAN].shape == (72, 72)

    def test_only_enabled_terms_built(self, sensitivity):
        ops = build_operators((4, 4), "gbrg", sensitivity, enabled=(True, False, False))
        assert ops.G[0] is not None
        assert ops.G[1] is None and ops.G[2] is None
        assert ops.enabled == (True, False, False)

    def test_reestimate_matches_forward_model(self, rng, sensitivity):
        ops = build_operators((4, 4), "rggb", sensitivity, enabled=(False, False, False))
        x = rng.random((4, 4, 3))
        raw = ops.reestimate(x)
        assert raw.shape == (4, 4)
        # top-left site is red
        np.testing.assert_allclose(raw[0, 0], sensitivity[0] @ x[0, 0])
        np.testing.assert_allclose(raw[1, 1], sensitivity[2] @ x[1, 1])

    def test_render_channels(self, rng, sensitivity):
        phi = sp.identity(48, format="csr") * 2.0
        ops = build_operators((4, 4), "rggb", sensitivity, dispersion=phi,
                              enabled=(False, False, False))
        x = rng.random((4, 4, 3))
        unwarped = ops.render_channels(x, warped=False)
        assert unwarped.shape == (4, 4, 3)
        np.testing.assert_allclose(unwarped, np.einsum("hwb,cb->hwc", x, sensitivity))
        np.testing.assert_allclose(ops.render_channels(x), 2.0 * x)
        assert ops.has_dispersion

    def test_rejects_wrong_latent_size(self, sensitivity):
        ops = build_operators((4, 4), "rggb", sensitivity, enabled=(False, False, False))
        with pytest.raises(ValueError):
            ops.reestimate(np.zeros((4, 4, 2)))

    def test_single_band_monochrome(self):
        ops = build_operators((4, 4), "rggb", [[1.0]], enabled=(False, False, False))
        np.testing.assert_array_equal(ops.M_omega_phi.toarray(), np.eye(16))

    def test_enabled_length(self, sensitivity):
        with pytest.raises(ConfigurationError):
            build_operators((4, 4), "rggb", sensitivity, enabled=(True, True))

    def test_operators_are_frozen(self, sensitivity):
        ops = build_operators((4, 4), "rggb", sensitivity)
        with pytest.raises(dataclasses.FrozenInstanceError):
            ops.M = None
        with pytest.raises(dataclasses.FrozenInstanceError):
            ops.sensitivity = np.eye(3)
