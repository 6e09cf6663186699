"""hsi_admm.recon.admm_state

Persistent working set of the ADMM solver.

An ``ADMMState`` is allocated once per operator set and then reused across
many solves, e.g. by a regularization weight search:

- ``ADMMState.build``  -- full allocation (new operators)
- ``state.re_weight``  -- new weights; rebuilds A_const, keeps I, Z and U warm
- ``state.reset_primal`` -- zeroes I only, keeps slack and dual history

Each prior term occupies one fixed slot holding a tagged variant:
``DisabledTerm``, ``L2Term`` (folded into A_const) or ``L1Term`` (split with
slack variables).  Non-negativity is a separate optional slot.

A state is exclusively owned by one in-flight solve.  Concurrent solves
(e.g. image tiles on a worker pool) need independent states.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from hsi_admm.api.errors import ConfigurationError
from hsi_admm.api.types import N_PRIORS, NONNEG_INDEX, AdmmOptions, validate_options
from hsi_admm.physics.spectral.cfa_operators import Operators, devectorize_image
from hsi_admm.physics.spectral.gradients import TERM_NAMES
from hsi_admm.recon.weighting import check_weights, const_part, fold_weights, normalize_weights

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Slack variables and term variants
# ---------------------------------------------------------------------------

@dataclass
class SlackState:
    """Per-slot ADMM variables, all of the same length.

    Z: slack, U: scaled dual, g: proximal input (G I + U), Z_prev: slack of
    the previous iteration, R: primal residual, Y: dual residual.
    """

    Z: np.ndarray
    U: np.ndarray
    g: np.ndarray
    Z_prev: np.ndarray
    R: np.ndarray
    Y: np.ndarray

    @classmethod
    def zeros(cls, n_slack: int, n_elements: int) -> "SlackState":
        return cls(
            Z=np.zeros(n_slack),
            U=np.zeros(n_slack),
            g=np.zeros(n_slack),
            Z_prev=np.zeros(n_slack),
            R=np.zeros(n_slack),
            Y=np.zeros(n_elements),
        )

    def __len__(self) -> int:
        return int(self.Z.shape[0])


@dataclass(frozen=True)
class DisabledTerm:
    """Prior term with zero weight; contributes nothing."""


@dataclass
class L2Term:
    """Squared L2 penalty ``w ||G I||^2``, folded into A_const."""

    operator: sp.csr_matrix
    gram: sp.csr_matrix
    weight: float = 0.0


@dataclass
class L1Term:
    """L1 penalty ``w ||G I||_1``, split as G I = Z."""

    operator: sp.csr_matrix
    operator_T: sp.csr_matrix
    gram: sp.csr_matrix
    slack: SlackState
    weight: float = 0.0


@dataclass
class NonNegativityTerm:
    """Constraint I >= 0, split as I = Z."""

    slack: SlackState


RegularizationTerm = Union[DisabledTerm, L2Term, L1Term]


@dataclass
class SlackSlot:
    """View of one active slack slot, as iterated by the solver."""

    index: int  # position in ``rho``
    name: str
    slack: SlackState
    operator: Optional[sp.csr_matrix] = None  # None means identity
    operator_T: Optional[sp.csr_matrix] = None
    gram: Optional[sp.csr_matrix] = None
    weight: float = 0.0

    def apply(self, x: np.ndarray) -> np.ndarray:
        return x if self.operator is None else self.operator @ x

    def apply_T(self, z: np.ndarray) -> np.ndarray:
        return z if self.operator_T is None else self.operator_T @ z


def _as_enabled(enabled: Sequence[Any]) -> Tuple[bool, ...]:
    arr = np.asarray(enabled)
    if arr.ndim != 1 or arr.shape[0] != N_PRIORS:
        raise ConfigurationError(
            f"Expected `enabled` to have length {N_PRIORS} for the {N_PRIORS} prior terms."
        )
    if arr.dtype == bool:
        return tuple(bool(e) for e in arr)
    return tuple(bool(w != 0) for w in check_weights(arr))


def absolute_tolerance(J: np.ndarray, sensitivity: np.ndarray, outer_tol: float) -> float:
    """ADMM absolute tolerance for raw image ``J``, clamped at zero."""
    # Assume a uniform spectral intensity, and that the median raw value comes
    # from the channel with the largest total sensitivity.
    max_sensitivity = float(np.max(np.sum(sensitivity, axis=1)))
    if max_sensitivity <= 0:
        raise ConfigurationError("`sensitivity` must have a channel with positive total sensitivity.")
    return max(outer_tol * float(np.median(J)) / max_sensitivity, 0.0)


# ---------------------------------------------------------------------------
# ADMMState
# ---------------------------------------------------------------------------

@dataclass
class ADMMState:
    """Mutable working set reused across solves on one operator set.

    Attributes
    ----------
    operators : Operators
        Fixed operators, shared read-only.
    options : AdmmOptions
        Options the state was built with.
    J : np.ndarray
        Vectorized raw image.
    terms : tuple
        One ``RegularizationTerm`` per prior slot.
    nonneg : NonNegativityTerm | None
        Non-negativity slot, if enabled.
    rho : np.ndarray
        Current penalty parameters; adaptive penalty updates persist here so
        that warm restarts stay consistent with the scaled duals.
    absolute_tol : float
        ADMM absolute tolerance, derived from the raw image and sensitivity.
    I : np.ndarray
        Primal iterate (vectorized latent image).
    A_const_no_weights : scipy.sparse.csr_matrix
        (M Omega_Phi)^T (M Omega_Phi).
    A_const : scipy.sparse.csr_matrix | None
        A_const_no_weights plus folded L2 terms; None until weights are set.
    b_const : np.ndarray
        (M Omega_Phi)^T J.
    weights : np.ndarray | None
        Normalized weights currently applied.
    """

    operators: Operators
    options: AdmmOptions
    J: np.ndarray
    terms: Tuple[RegularizationTerm, ...]
    nonneg: Optional[NonNegativityTerm]
    rho: np.ndarray
    absolute_tol: float
    I: np.ndarray
    A_const_no_weights: sp.csr_matrix
    b_const: np.ndarray
    A_const: Optional[sp.csr_matrix] = None
    weights: Optional[np.ndarray] = None

    # -- construction ---------------------------------------------------------

    @classmethod
    def build(
        cls,
        operators: Operators,
        J: np.ndarray,
        enabled: Sequence[Any],
        options: Union[AdmmOptions, Dict[str, Any], None] = None,
    ) -> "ADMMState":
        """Allocate a state for ``operators``.

        ``enabled`` is a boolean mask of the active prior terms, or a weight
        vector whose non-zero entries mark them.  Weight-dependent parts are
        left unset; call ``re_weight`` before solving.
        """
        options = validate_options(options)
        mask = _as_enabled(enabled)

        J = np.asarray(J, dtype=np.float64).ravel()
        if J.shape[0] != operators.n_observations:
            raise ConfigurationError(
                f"Raw image has {J.shape[0]} values, operators expect {operators.n_observations}."
            )
        n_elements = operators.n_elements

        terms: List[RegularizationTerm] = []
        for k in range(N_PRIORS):
            if not mask[k]:
                terms.append(DisabledTerm())
                continue
            G = operators.G[k]
            if G is None:
                raise ConfigurationError(
                    f"Term {k} ({TERM_NAMES[k]}) is enabled but its operator was not built.",
                    details={"term": k},
                )
            gram = (G.T @ G).tocsr()
            if options.l1_norms[k]:
                terms.append(L1Term(
                    operator=G,
                    operator_T=G.T.tocsr(),
                    gram=gram,
                    slack=SlackState.zeros(G.shape[0], n_elements),
                ))
            else:
                terms.append(L2Term(operator=G, gram=gram))

        nonneg = None
        if options.nonneg:
            nonneg = NonNegativityTerm(slack=SlackState.zeros(n_elements, n_elements))

        n_rho = NONNEG_INDEX + 1 if options.nonneg else N_PRIORS
        rho = np.array(options.rho[:n_rho], dtype=np.float64)

        absolute_tol = absolute_tolerance(J, operators.sensitivity, options.outer_tol)

        state = cls(
            operators=operators,
            options=options,
            J=J,
            terms=tuple(terms),
            nonneg=nonneg,
            rho=rho,
            absolute_tol=absolute_tol,
            I=np.zeros(n_elements),
            A_const_no_weights=const_part(operators.M_omega_phi),
            b_const=operators.M_omega_phi.T @ J,
        )
        logger.debug(
            "Allocated ADMM state: n=%d terms=%s nonneg=%s abs_tol=%.3e",
            n_elements,
            [type(t).__name__ for t in state.terms],
            options.nonneg,
            absolute_tol,
        )
        return state

    @classmethod
    def from_weights(
        cls,
        operators: Operators,
        J: np.ndarray,
        weights: Sequence[float],
        options: Union[AdmmOptions, Dict[str, Any], None] = None,
    ) -> Tuple["ADMMState", np.ndarray]:
        """``build`` followed by ``re_weight``; returns (state, normalized weights)."""
        w = check_weights(weights)
        state = cls.build(operators, J, w != 0, options)
        return state, state.re_weight(w)

    # -- incremental updates ----------------------------------------------------

    def re_weight(self, weights: Sequence[float]) -> np.ndarray:
        """Apply new regularization weights.

        Rebuilds A_const without touching I, Z or U.  The zero pattern of
        ``weights`` must match the enabled terms of this state.

        Returns
        -------
        np.ndarray
            The normalized weights.
        """
        w = check_weights(weights)
        self._check_enabled(tuple(bool(x != 0) for x in w))
        row_counts = [
            None if isinstance(t, DisabledTerm) else t.operator.shape[0] for t in self.terms
        ]
        normalized = normalize_weights(w, self.operators.n_observations, row_counts)
        for k, term in enumerate(self.terms):
            if not isinstance(term, DisabledTerm):
                term.weight = float(normalized[k])
        self.A_const = fold_weights(
            self.A_const_no_weights,
            ((t.gram, t.weight) for t in self.terms if isinstance(t, L2Term)),
        )
        self.weights = normalized
        logger.debug("Re-weighted ADMM state: weights=%s normalized=%s", w, normalized)
        return normalized.copy()

    def reset_primal(self, enabled: Optional[Sequence[Any]] = None) -> None:
        """Zero the primal image, keeping slack and dual variables warm."""
        if enabled is not None:
            self._check_enabled(_as_enabled(enabled))
        self.I.fill(0.0)

    def set_rho(self, rho: Sequence[float]) -> None:
        """Replace the penalty parameters.

        The scaled dual of every slack slot whose penalty changes is rescaled
        by rho_old / rho_new, so that warm solves keep the same unscaled dual.
        """
        new = np.asarray(rho, dtype=np.float64).ravel()[: self.rho.shape[0]]
        if new.shape != self.rho.shape or np.any(new <= 0):
            raise ConfigurationError(
                f"Expected {self.rho.shape[0]} positive penalty parameters, got {list(rho)!r}."
            )
        for slot in self.slots():
            old_r, new_r = self.rho[slot.index], new[slot.index]
            if old_r != new_r:
                slot.slack.U *= old_r / new_r
        self.rho[:] = new

    def _check_enabled(self, mask: Tuple[bool, ...]) -> None:
        if mask != self.enabled:
            raise ConfigurationError(
                "The set of enabled regularization terms has changed since the state was created.",
                details={"built": self.enabled, "requested": mask},
            )

    # -- views ------------------------------------------------------------------

    @property
    def enabled(self) -> Tuple[bool, ...]:
        return tuple(not isinstance(t, DisabledTerm) for t in self.terms)

    @property
    def is_weighted(self) -> bool:
        return self.A_const is not None

    def slots(self) -> List[SlackSlot]:
        """Active slack slots: L1 terms in order, then non-negativity."""
        out: List[SlackSlot] = []
        for k, term in enumerate(self.terms):
            if isinstance(term, L1Term):
                out.append(SlackSlot(
                    index=k,
                    name=TERM_NAMES[k],
                    slack=term.slack,
                    operator=term.operator,
                    operator_T=term.operator_T,
                    gram=term.gram,
                    weight=term.weight,
                ))
        if self.nonneg is not None:
            out.append(SlackSlot(index=NONNEG_INDEX, name="nonneg", slack=self.nonneg.slack))
        return out

    @property
    def has_slack(self) -> bool:
        return any(isinstance(t, L1Term) for t in self.terms) or self.nonneg is not None

    def image(self) -> np.ndarray:
        """Current primal iterate as an (H, W, B) array."""
        return devectorize_image(
            self.I.copy(), self.operators.image_sampling, self.operators.n_bands
        )
