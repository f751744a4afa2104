from .fit_config import FitConfig, LassoConfig

__all__ = ["FitConfig", "LassoConfig"]
