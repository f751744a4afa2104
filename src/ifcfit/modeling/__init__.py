from .schema import FitConfig, LassoConfig
from .validators import validate_displacement_force, validate_fit_config, validate_lasso_config, validate_symmetry_data

__all__ = [
    "FitConfig",
    "LassoConfig",
    "validate_fit_config",
    "validate_lasso_config",
    "validate_symmetry_data",
    "validate_displacement_force",
]
