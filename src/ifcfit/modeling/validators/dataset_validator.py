"""Validation helpers for symmetry data and displacement/force samples."""

from __future__ import annotations

import numpy as np

from ifcfit.core.types import SymmetryData


def validate_symmetry_data(symmetry: SymmetryData, tol: float = 1e-6) -> None:
    nat = symmetry.nat
    map_sym = np.asarray(symmetry.map_sym, dtype=int)
    for isym, op in enumerate(symmetry.operations):
        if np.unique(map_sym[:, isym]).size != nat:
            raise ValueError(f"map_sym column {isym} is not a permutation of the atoms.")
        rot = np.asarray(op.rotation_cart, dtype=float)
        if np.max(np.abs(rot @ rot.T - np.eye(3))) > tol:
            raise ValueError(f"Operation {isym} has a non-orthogonal Cartesian rotation.")
    if nat != symmetry.nat_prim * symmetry.ntran:
        raise ValueError("Number of atoms must equal nat_prim * ntran.")
    for itran, isym in enumerate(symmetry.symnum_tran):
        rot = np.asarray(symmetry.operations[isym].rotation_cart, dtype=float)
        if np.max(np.abs(rot - np.eye(3))) > tol:
            raise ValueError(f"symnum_tran[{itran}] does not refer to a pure translation.")
        if not np.array_equal(map_sym[symmetry.primitive_atoms, isym], np.asarray(symmetry.map_p2s)[:, itran]):
            raise ValueError(f"map_p2s column {itran} disagrees with map_sym.")


def validate_displacement_force(displacements: np.ndarray, forces: np.ndarray, nat: int) -> None:
    u = np.asarray(displacements, dtype=float)
    f = np.asarray(forces, dtype=float)
    if u.shape != f.shape:
        raise ValueError("displacements and forces must have the same shape.")
    if u.ndim not in (2, 3) or u.shape[0] == 0:
        raise ValueError("displacements must have shape (ndata, 3*nat) or (ndata, nat, 3).")
    if u.reshape(u.shape[0], -1).shape[1] != 3 * nat:
        raise ValueError(f"displacements must hold 3*nat = {3 * nat} components per sample.")
    if not (np.all(np.isfinite(u)) and np.all(np.isfinite(f))):
        raise ValueError("displacements and forces must be finite.")
