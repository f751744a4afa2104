"""Fitting session tying parameter tables, constraints, assembly and solvers together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Sequence

import numpy as np

from .constraints import (
    build_constraint_matrix,
    build_reduced_basis,
    get_constraint_symmetry,
    get_constraint_translation,
    rref_sparse,
)
from .design_matrix import data_multiplier, get_matrix_elements, select_data
from .fcs import build_parameter_tables, order_name
from .fitting import LeastSquaresResult, fit_algebraic_constraints, fit_with_constraints
from .lasso import LassoPath, LassoProblem, LassoResult, lasso_fit, lasso_path
from .types import Array, Cluster, ConstraintRow, ParameterTable, ReducedBasis, SymmetryData

if TYPE_CHECKING:
    from ifcfit.modeling.schema import FitConfig, LassoConfig


logger = logging.getLogger(__name__)


class SolverState(Enum):
    IDLE = "idle"
    ASSEMBLING = "assembling"
    SOLVING = "solving"
    EXPANDING = "expanding"
    DONE = "done"


@dataclass(frozen=True)
class FitResult:
    """Fitted force constants, one value per mother parameter of every order."""

    params: Array
    params_by_order: tuple[Array, ...]
    solver: str
    fitting_error: float
    rank: int | None = None
    lasso: LassoResult | None = None
    path: LassoPath | None = None


def resolve_solver(solver: str, constraint_mode: str) -> str:
    s = solver.strip().lower()
    if s in {"auto", "default"}:
        return "qr" if constraint_mode == "explicit" else "svd"
    if s in {"svd", "gelss", "least_squares"}:
        return "svd"
    if s in {"qr", "qrd", "gglse", "constrained"}:
        return "qr"
    if s in {"lasso", "l1", "sparse"}:
        return "lasso"
    raise ValueError(f"Unknown solver '{solver}'. Use one of: 'auto', 'svd', 'qr', 'lasso'.")


class FitSession:
    """Owns every stage of one fitting run.

    ``build()`` creates parameter tables and constraints from the symmetry data
    and clusters; ``fit()`` assembles the linear system, solves it and expands
    the solution to all parameters. ``state`` follows
    IDLE -> ASSEMBLING -> SOLVING -> EXPANDING -> DONE.

    Displacements and forces are Cartesian, so the fitted ``tables`` and their
    constraints always use the Cartesian basis. ``config.basis`` only selects
    the basis of ``basis_tables``, the reported symmetry reduction.
    """

    def __init__(
        self,
        symmetry: SymmetryData,
        cluster_lists: Sequence[Sequence[Cluster]],
        config: FitConfig,
        lasso_config: LassoConfig | None = None,
    ) -> None:
        self.symmetry = symmetry
        self.cluster_lists = cluster_lists
        self.config = config
        self.lasso_config = lasso_config
        self.solver = resolve_solver(config.solver, config.constraint_mode)
        self.state = SolverState.IDLE
        self.tables: tuple[ParameterTable, ...] = ()
        self.basis_tables: tuple[ParameterTable, ...] = ()
        self.rows_by_order: list[list[ConstraintRow]] = []
        self.basis: ReducedBasis | None = None
        self.result: FitResult | None = None

    @property
    def nparams(self) -> int:
        return sum(t.nparams for t in self.tables)

    @property
    def nconstraints(self) -> int:
        return sum(len(rows) for rows in self.rows_by_order)

    def _fixed_values(self) -> dict[int, float]:
        return {int(k): float(v) for k, v in (self.config.fixed_values or {}).items()}

    def build(self) -> FitSession:
        cfg = self.config
        self.state = SolverState.IDLE
        self.result = None
        self.tables = build_parameter_tables(
            cfg.maxorder,
            self.symmetry.nat,
            self.cluster_lists,
            self.symmetry,
            basis="Cartesian",
            store_zeros=cfg.store_zeros,
        )
        if cfg.basis.strip().lower() == "cartesian":
            self.basis_tables = self.tables
        else:
            self.basis_tables = build_parameter_tables(
                cfg.maxorder,
                self.symmetry.nat,
                self.cluster_lists,
                self.symmetry,
                basis=cfg.basis,
                store_zeros=cfg.store_zeros,
            )

        self.rows_by_order = []
        for table in self.tables:
            rows: list[ConstraintRow] = []
            if cfg.symmetry_constraints:
                rows.extend(
                    get_constraint_symmetry(
                        self.symmetry.nat,
                        self.symmetry,
                        table,
                        basis="Cartesian",
                        tolerance=cfg.tolerance_constraint,
                        n_workers=cfg.n_workers,
                    )
                )
            if cfg.translational_invariance:
                rows.extend(get_constraint_translation(table, tolerance=cfg.tolerance_constraint))
            if cfg.symmetry_constraints and cfg.translational_invariance:
                rows = rref_sparse(table.nparams, rows, cfg.tolerance_constraint)
            self.rows_by_order.append(rows)
            logger.info("%s: %d parameters, %d constraint rows", order_name(table.order), table.nparams, len(rows))

        if cfg.constraint_mode == "algebraic":
            self.basis = build_reduced_basis(
                self.tables,
                self.rows_by_order,
                fixed_values=self._fixed_values(),
                tolerance=cfg.tolerance_constraint,
            )
        else:
            self.basis = None
        return self

    def _prepare_samples(self, displacements: Array, forces: Array) -> tuple[Array, Array]:
        cfg = self.config
        u, f = select_data(
            displacements,
            forces,
            self.symmetry.nat,
            nstart=cfg.nstart,
            nend=cfg.nend,
            skip=cfg.skip,
        )
        return data_multiplier(u, self.symmetry), data_multiplier(f, self.symmetry)

    def _split(self, params: Array) -> tuple[Array, ...]:
        out = []
        start = 0
        for table in self.tables:
            out.append(params[start : start + table.nparams].copy())
            start += table.nparams
        return tuple(out)

    def fit(
        self,
        displacements: Array,
        forces: Array,
        validation: tuple[Array, Array] | None = None,
    ) -> FitResult:
        if not self.tables:
            raise RuntimeError("FitSession.build() must be called before fit().")
        if self.nparams == 0:
            raise ValueError("No force-constant parameters: check the cluster lists and maxorder.")

        self.state = SolverState.ASSEMBLING
        u, f = self._prepare_samples(displacements, forces)
        use_basis = self.solver != "qr"
        if use_basis and self.basis is None:
            if self.nconstraints or self.config.fixed_values:
                raise ValueError(
                    f"solver='{self.solver}' cannot honor explicit constraints; "
                    "use constraint_mode='algebraic' or solver='qr'."
                )
            self.basis = ReducedBasis.identity(self.nparams)
        system = get_matrix_elements(self.tables, u, f, self.symmetry, basis=self.basis if use_basis else None)

        self.state = SolverState.SOLVING
        lasso_res: LassoResult | None = None
        path: LassoPath | None = None
        rank: int | None = None
        if self.solver == "qr":
            cmat, dvec = build_constraint_matrix(
                self.rows_by_order,
                self.tables,
                fixed_values=self._fixed_values(),
                tolerance=self.config.tolerance_constraint,
            )
            ls: LeastSquaresResult = fit_with_constraints(system.amat, system.bvec, cmat, dvec, fnorm=system.fnorm)
            self.state = SolverState.EXPANDING
            params = ls.params
            rank, err = ls.rank, ls.fitting_error
        elif self.solver == "svd":
            params, ls = fit_algebraic_constraints(system, self.basis)
            self.state = SolverState.EXPANDING
            rank, err = ls.rank, ls.fitting_error
        else:
            if self.lasso_config is None:
                raise ValueError("solver='lasso' requires a LassoConfig.")
            validation_system = None
            if validation is not None:
                ut, ft = data_multiplier(validation[0], self.symmetry), data_multiplier(validation[1], self.symmetry)
                validation_system = get_matrix_elements(self.tables, ut, ft, self.symmetry, basis=self.basis)
            problem = LassoProblem.from_system(system, validation_system)
            if self.lasso_config.cross_validation:
                path = lasso_path(problem, self.lasso_config)
                if validation_system is not None:
                    ibest = int(np.nanargmin(path.validation_errors))
                else:
                    ibest = path.alphas.size - 1
                logger.info("Selected l1_alpha = %.6e from the sweep", path.alphas[ibest])
                x = path.params[ibest]
                err = float(path.fitting_errors[ibest]) * 100.0
            else:
                lasso_res = lasso_fit(problem, self.lasso_config)
                x = lasso_res.params
                err = lasso_res.fitting_error * 100.0
            self.state = SolverState.EXPANDING
            params = self.basis.expand(x)

        self.result = FitResult(
            params=params,
            params_by_order=self._split(params),
            solver=self.solver,
            fitting_error=float(err),
            rank=rank,
            lasso=lasso_res,
            path=path,
        )
        self.state = SolverState.DONE
        return self.result
