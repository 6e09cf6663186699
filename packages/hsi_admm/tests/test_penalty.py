"""Tests for adaptive penalty strategies."""

import pytest

from hsi_admm.api.types import AdmmOptions
from hsi_admm.recon.penalty import (
    NoAdaptation,
    PenaltyStrategy,
    ResidualBalancing,
    make_penalty_strategy,
)


class TestResidualBalancing:

    def test_increase_when_primal_dominates(self):
        s = ResidualBalancing(tau_incr=2.0, tau_decr=3.0, mu=10.0)
        assert s.update(1, 1.0, primal_norm=100.0, dual_norm=1.0) == 2.0

    def test_decrease_when_dual_dominates(self):
        s = ResidualBalancing(tau_incr=2.0, tau_decr=4.0, mu=10.0)
        assert s.update(1, 1.0, primal_norm=1.0, dual_norm=100.0) == pytest.approx(0.25)

    def test_balanced_unchanged(self):
        s = ResidualBalancing()
        assert s.update(1, 1.0, primal_norm=5.0, dual_norm=1.0) == 1.0

    def test_interval(self):
        s = ResidualBalancing(interval=3)
        assert s.update(1, 1.0, primal_norm=100.0, dual_norm=1.0) == 1.0
        assert s.update(2, 1.0, primal_norm=100.0, dual_norm=1.0) == 1.0
        assert s.update(3, 1.0, primal_norm=100.0, dual_norm=1.0) == 2.0

    def test_protocol(self):
        assert isinstance(ResidualBalancing(), PenaltyStrategy)
        assert isinstance(NoAdaptation(), PenaltyStrategy)


class TestFactory:

    def test_disabled(self):
        assert isinstance(make_penalty_strategy(AdmmOptions(adaptive_penalty=None)), NoAdaptation)

    def test_from_options(self):
        s = make_penalty_strategy(
            AdmmOptions(adaptive_penalty=(3.0, 1.5, 20.0), penalty_update_interval=5)
        )
        assert isinstance(s, ResidualBalancing)
        assert (s.tau_incr, s.tau_decr, s.mu, s.interval) == (3.0, 1.5, 20.0, 5)

    def test_no_adaptation(self):
        assert NoAdaptation().update(4, 2.0, 1e6, 1e-6) == 1.0
