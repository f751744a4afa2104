from .core import FitResult, FitSession, ParameterTable, ReducedBasis, SymmetryData, generate_force_constant_table
from .modeling import FitConfig, LassoConfig
from .models import Crystal, build_symmetry, enumerate_clusters, simple_cubic, simple_hexagonal

__all__ = [
    "FitSession",
    "FitResult",
    "ParameterTable",
    "ReducedBasis",
    "SymmetryData",
    "generate_force_constant_table",
    "FitConfig",
    "LassoConfig",
    "Crystal",
    "build_symmetry",
    "enumerate_clusters",
    "simple_cubic",
    "simple_hexagonal",
]
