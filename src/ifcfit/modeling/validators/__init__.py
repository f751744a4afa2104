from .config_validator import validate_fit_config, validate_lasso_config
from .dataset_validator import validate_displacement_force, validate_symmetry_data

__all__ = ["validate_fit_config", "validate_lasso_config", "validate_symmetry_data", "validate_displacement_force"]
