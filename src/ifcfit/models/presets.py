"""Named toy crystals available to the fitting workflow."""

from __future__ import annotations

import numpy as np

from .crystal import Crystal


def simple_cubic(supercell: tuple[int, int, int] = (3, 3, 3), a: float = 1.0) -> Crystal:
    return Crystal(lattice=a * np.eye(3), positions=np.zeros((1, 3)), supercell=supercell)


def simple_hexagonal(supercell: tuple[int, int, int] = (3, 3, 2), a: float = 1.0, c: float = 1.6) -> Crystal:
    """One atom per cell; only eight of its 24 point operations are Cartesian signed permutations."""

    lattice = np.array(
        [
            [a, 0.0, 0.0],
            [-0.5 * a, 0.5 * np.sqrt(3.0) * a, 0.0],
            [0.0, 0.0, c],
        ]
    )
    return Crystal(lattice=lattice, positions=np.zeros((1, 3)), supercell=supercell)


MODELS = {
    "simple_cubic": simple_cubic,
    "simple_hexagonal": simple_hexagonal,
}


def build_model(name: str, supercell: tuple[int, int, int] | None = None) -> Crystal:
    key = name.strip().lower()
    if key not in MODELS:
        raise ValueError(f"Unknown model '{name}'. Use one of: {', '.join(sorted(MODELS))}.")
    if supercell is None:
        return MODELS[key]()
    return MODELS[key](supercell=tuple(int(n) for n in supercell))
