from .constraints import (
    build_constraint_matrix,
    build_reduced_basis,
    get_constraint_symmetry,
    get_constraint_translation,
    rref_sparse,
)
from .design_matrix import LinearSystem, data_multiplier, gamma, get_matrix_elements, select_data
from .diagnostics import ConvergenceWarning, RankDeficiencyWarning
from .fcs import build_parameter_tables, generate_force_constant_table, get_available_symmop
from .fitting import (
    LeastSquaresResult,
    fit_algebraic_constraints,
    fit_with_constraints,
    fit_without_constraints,
    rank_qrd,
    rank_svd,
    recover_original_forceconstants,
)
from .lasso import LassoPath, LassoProblem, LassoResult, lasso_fit, lasso_path, shrink
from .solver import FitResult, FitSession, SolverState
from .types import (
    MOTHER_ZERO,
    ConstraintRow,
    DependentParameter,
    FcProperty,
    ParameterTable,
    ReducedBasis,
    SymmetryData,
    SymmetryOperation,
)

__all__ = [
    "MOTHER_ZERO",
    "SymmetryOperation",
    "SymmetryData",
    "FcProperty",
    "ParameterTable",
    "ConstraintRow",
    "DependentParameter",
    "ReducedBasis",
    "generate_force_constant_table",
    "build_parameter_tables",
    "get_available_symmop",
    "get_constraint_symmetry",
    "get_constraint_translation",
    "rref_sparse",
    "build_reduced_basis",
    "build_constraint_matrix",
    "LinearSystem",
    "select_data",
    "data_multiplier",
    "gamma",
    "get_matrix_elements",
    "LeastSquaresResult",
    "fit_without_constraints",
    "fit_with_constraints",
    "fit_algebraic_constraints",
    "recover_original_forceconstants",
    "rank_qrd",
    "rank_svd",
    "LassoProblem",
    "LassoResult",
    "LassoPath",
    "shrink",
    "lasso_fit",
    "lasso_path",
    "FitSession",
    "FitResult",
    "SolverState",
    "RankDeficiencyWarning",
    "ConvergenceWarning",
]
