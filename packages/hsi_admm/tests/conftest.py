"""Shared pytest fixtures for hsi_admm tests."""

from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hsi_admm.physics.spectral.cfa_operators import build_operators  # noqa: E402


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def sensitivity():
    """3 sensor channels x 3 bands, full rank."""
    return np.array([
        [0.9, 0.4, 0.1],
        [0.3, 0.8, 0.3],
        [0.1, 0.3, 0.9],
    ])


@pytest.fixture
def spectral_problem(sensitivity):
    """6x6x3 latent image with a dark corner, its operators and raw image."""
    rng = np.random.default_rng(7)
    image = rng.uniform(0.2, 1.0, (6, 6, 3))
    image[:2, :2, :] = 0.0
    ops = build_operators((6, 6), "gbrg", sensitivity)
    y = ops.reestimate(image) + rng.normal(0.0, 0.01, (6, 6))
    return ops, image, y


@pytest.fixture
def mono_raw():
    """4x4 raw image for single-band, single-channel problems."""
    return np.random.default_rng(3).uniform(0.5, 1.5, (4, 4))
