from .crystal import (
    Crystal,
    build_symmetry,
    enumerate_clusters,
    is_signed_permutation,
    lattice_point_group,
    minimum_image_distances,
)
from .presets import MODELS, build_model, simple_cubic, simple_hexagonal
from .springs import (
    SpringParams,
    cubic_bond_forces,
    harmonic_force_constants,
    harmonic_forces,
    random_displacements,
    reference_parameters,
)

__all__ = [
    "Crystal",
    "MODELS",
    "SpringParams",
    "build_model",
    "build_symmetry",
    "cubic_bond_forces",
    "enumerate_clusters",
    "harmonic_force_constants",
    "harmonic_forces",
    "is_signed_permutation",
    "lattice_point_group",
    "minimum_image_distances",
    "random_displacements",
    "reference_parameters",
    "simple_cubic",
    "simple_hexagonal",
]
