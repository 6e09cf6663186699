"""
hsi_admm.api.types

Pydantic models for the solver configuration record.

The record is validated once, at construction.  Solver code only ever sees
an ``AdmmOptions`` instance; plain dicts are accepted at the API boundary
through ``validate_options``.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

N_PRIORS = 3
NONNEG_INDEX = 3  # position of the non-negativity penalty in ``rho``


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True,
                              ser_json_inf_nan="constants")

    @model_validator(mode="after")
    def _reject_nan_inf(self) -> "StrictBaseModel":
        for field_name in self.__class__.model_fields:
            val = getattr(self, field_name)
            values = val if isinstance(val, (list, tuple)) else (val,)
            for v in values:
                if isinstance(v, float) and (math.isnan(v) or math.isinf(v)):
                    raise ValueError(f"Field '{field_name}' contains {v!r}")
        return self


class AdmmOptions(StrictBaseModel):
    """Options and small parameters of the ADMM solver.

    Attributes
    ----------
    rho : list[float]
        Penalty parameters. The first three correspond to the regularization
        terms (spatial gradient, spectral gradient of the spatial gradient,
        spatial Laplacian); the fourth is for the non-negativity constraint
        and is only required when ``nonneg`` is True.
    replicate_spectral_gradient : bool
        Make the spectral difference operator as tall as the image (last band
        differences are zero) instead of omitting the last band.
    l1_norms : tuple[bool, bool, bool]
        Per-term norm choice: True for an L1 penalty handled with slack
        variables, False for an L2 penalty folded into the normal equations.
    nonneg : bool
        Constrain the estimated image to be non-negative.
    tol : tuple[float, float]
        (conjugate-gradient relative tolerance, ADMM relative tolerance).
    max_iter : tuple[int, int]
        (conjugate-gradient iteration cap, ADMM iteration cap).
    adaptive_penalty : tuple[float, float, float] | None
        (increase factor, decrease factor, imbalance threshold) for residual
        balancing of the penalty parameters, or None for fixed penalties.
    penalty_update_interval : int
        Number of ADMM iterations between penalty parameter updates.
    bayer_pattern : str
        Colour filter tile, read row-wise, e.g. ``"gbrg"``.
    """

    rho: List[float] = Field(default_factory=lambda: [1.0, 1.0, 1.0, 1.0])
    replicate_spectral_gradient: bool = False
    l1_norms: Tuple[bool, bool, bool] = (False, True, False)
    nonneg: bool = True
    tol: Tuple[float, float] = (1e-5, 1e-3)
    max_iter: Tuple[int, int] = (500, 1000)
    adaptive_penalty: Optional[Tuple[float, float, float]] = (2.0, 2.0, 10.0)
    penalty_update_interval: int = Field(1, ge=1)
    bayer_pattern: str = Field("gbrg", pattern=r"^[rgbRGB]{4}$")

    @field_validator("rho")
    @classmethod
    def _positive_rho(cls, v: List[float]) -> List[float]:
        if len(v) < N_PRIORS:
            raise ValueError(
                f"Expected `rho` to have length at least {N_PRIORS} for the {N_PRIORS} prior terms."
            )
        if any(r <= 0 for r in v):
            raise ValueError("The penalty parameters, `rho`, must be positive numbers.")
        return [float(r) for r in v]

    @field_validator("tol")
    @classmethod
    def _positive_tol(cls, v: Tuple[float, float]) -> Tuple[float, float]:
        if any(t <= 0 for t in v):
            raise ValueError("Convergence tolerances must be positive.")
        return v

    @field_validator("max_iter")
    @classmethod
    def _positive_max_iter(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        if any(n < 1 for n in v):
            raise ValueError("Iteration caps must be at least 1.")
        return v

    @field_validator("adaptive_penalty")
    @classmethod
    def _valid_adaptive(
        cls, v: Optional[Tuple[float, float, float]]
    ) -> Optional[Tuple[float, float, float]]:
        if v is None:
            return v
        tau_incr, tau_decr, mu = v
        if tau_incr < 1 or tau_decr < 1:
            raise ValueError("Penalty scaling factors must be at least 1.")
        if mu <= 1:
            raise ValueError("The residual imbalance threshold must be greater than 1.")
        return v

    @field_validator("bayer_pattern")
    @classmethod
    def _lower_pattern(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def _rho_covers_nonneg(self) -> "AdmmOptions":
        if self.nonneg and len(self.rho) <= NONNEG_INDEX:
            raise ValueError(
                f"A {NONNEG_INDEX + 1}-th penalty parameter must be provided in `rho` "
                "when `nonneg` is True."
            )
        return self

    # -- convenience accessors ------------------------------------------------

    @property
    def inner_tol(self) -> float:
        return float(self.tol[0])

    @property
    def outer_tol(self) -> float:
        return float(self.tol[1])

    @property
    def inner_max_iter(self) -> int:
        return int(self.max_iter[0])

    @property
    def outer_max_iter(self) -> int:
        return int(self.max_iter[1])


def validate_options(options: Union[AdmmOptions, Dict[str, Any], None] = None) -> AdmmOptions:
    """Return a validated ``AdmmOptions``.

    Accepts an existing model, a plain dict, or None (defaults).  Pydantic
    validation failures are re-raised as ``ConfigurationError``.
    """
    if options is None:
        return AdmmOptions()
    if isinstance(options, AdmmOptions):
        return options
    try:
        return AdmmOptions.model_validate(options)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid solver options: {e}", details={"errors": e.errors()}
        ) from e
