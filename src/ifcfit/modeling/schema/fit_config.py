"""Run configuration for parameter-table construction and fitting."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class FitConfig:
    """Config knobs for building the parameter space and solving for it.

    ``maxorder`` counts interaction orders (1 = harmonic only). ``nstart``,
    ``nend`` and ``skip`` select samples with 1-based inclusive indices.
    ``fixed_values`` pins global parameter indices to given values.
    """

    maxorder: int = 1
    basis: str = "Cartesian"
    store_zeros: bool = True
    constraint_mode: str = "algebraic"
    symmetry_constraints: bool = True
    translational_invariance: bool = False
    solver: str = "auto"
    nstart: int = 1
    nend: int | None = None
    skip: tuple[int, int] | None = None
    n_workers: int = 1
    tolerance_constraint: float = 1e-8
    fixed_values: dict[int, float] = field(default_factory=dict)


@dataclass(frozen=True)
class LassoConfig:
    """Config knobs for L1-regularized fitting."""

    algorithm: str = "coordinate_descent"
    l1_alpha: float = 1.0
    l1_alpha_min: float = 1e-3
    l1_alpha_max: float = 1.0
    num_l1_alpha: int = 100
    cross_validation: bool = False
    l2_lambda: float = 10.0
    tolerance: float = 1e-7
    maxiter: int = 100000
    maxiter_cg: int = 5
    preconditioner: int = 0
    standardize: bool = True
    dnorm: float = 1.0
    output_frequency: int = 1000
