"""Toy crystals with brute-force symmetry for exercising the fitting engine.

Only symmorphic structures are handled: every lattice point-group operation
that maps the basis onto itself without a fractional translation is kept.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass

import numpy as np

from ifcfit.core.types import Array, Cluster, SymmetryData, SymmetryOperation


@dataclass(frozen=True)
class Crystal:
    """Primitive cell (rows of ``lattice`` are the lattice vectors) and a supercell size."""

    lattice: Array
    positions: Array
    supercell: tuple[int, int, int] = (1, 1, 1)

    def __post_init__(self) -> None:
        if np.shape(self.lattice) != (3, 3):
            raise ValueError("lattice must be a 3x3 array.")
        pos = np.asarray(self.positions, dtype=float)
        if pos.ndim != 2 or pos.shape[1] != 3 or pos.shape[0] == 0:
            raise ValueError("positions must have shape (n_basis, 3).")
        if len(self.supercell) != 3 or any(int(n) <= 0 for n in self.supercell):
            raise ValueError("supercell must contain three positive integers.")

    @property
    def nbasis(self) -> int:
        return int(np.shape(self.positions)[0])

    @property
    def ntran(self) -> int:
        return int(np.prod(self.supercell))

    @property
    def nat(self) -> int:
        return self.nbasis * self.ntran

    def translations(self) -> Array:
        n1, n2, n3 = self.supercell
        return np.array(list(itertools.product(range(n1), range(n2), range(n3))), dtype=int)

    def fractional_positions(self) -> Array:
        """Supercell atoms in primitive fractional units; atom ``itran * nbasis + ib``."""

        pos = np.asarray(self.positions, dtype=float) % 1.0
        return np.concatenate([pos + t for t in self.translations()], axis=0)

    def cartesian_positions(self) -> Array:
        return self.fractional_positions() @ np.asarray(self.lattice, dtype=float)

    def supercell_lattice(self) -> Array:
        return np.asarray(self.supercell, dtype=float)[:, None] * np.asarray(self.lattice, dtype=float)


def lattice_point_group(lattice: Array, tol: float = 1.0e-6) -> list[Array]:
    """Integer matrices ``W`` (fractional coordinates) that preserve the lattice metric.

    The identity comes first.
    """

    lattice = np.asarray(lattice, dtype=float)
    metric = lattice @ lattice.T
    cands = np.array(list(itertools.product((-1, 0, 1), repeat=9)), dtype=int).reshape(-1, 3, 3)
    dets = np.rint(np.linalg.det(cands)).astype(int)
    cands = cands[np.abs(dets) == 1]
    # x' = W x keeps distances iff W^T G W = G with G_ij = a_i . a_j
    transformed = np.einsum("nji,jk,nkl->nil", cands, metric, cands)
    keep = np.all(np.abs(transformed - metric[None, :, :]) < tol * max(1.0, np.abs(metric).max()), axis=(1, 2))
    ops = [w for w in cands[keep]]
    ops.sort(key=lambda w: (not np.array_equal(w, np.eye(3, dtype=int)), tuple(w.ravel())))
    return ops


def is_signed_permutation(rot: Array, tol: float = 1.0e-6) -> bool:
    """True if every row holds exactly one nonzero entry of magnitude one."""

    rot = np.asarray(rot, dtype=float)
    nonzero = np.abs(rot) > tol
    if not np.all(nonzero.sum(axis=1) == 1):
        return False
    return bool(np.all(np.abs(np.abs(rot[nonzero]) - 1.0) < tol))


def _match_atoms(frac: Array, target: Array, supercell: Array, tol: float) -> Array:
    # Index of the atom at each target position, modulo the supercell.
    diff = target[:, None, :] - frac[None, :, :]
    diff -= supercell * np.rint(diff / supercell)
    dist = np.abs(diff).max(axis=2)
    idx = np.argmin(dist, axis=1)
    if np.any(dist[np.arange(target.shape[0]), idx] > tol):
        raise RuntimeError("Symmetry operation does not map the supercell onto itself.")
    return idx


def build_symmetry(crystal: Crystal, tol: float = 1.0e-6) -> SymmetryData:
    """Space-group operations of a symmorphic supercell with atom mapping tables.

    Operations are ordered point operation first, then supercell translation;
    the pure translations are therefore the first ``ntran`` operations.
    """

    lattice = np.asarray(crystal.lattice, dtype=float)
    basis = np.asarray(crystal.positions, dtype=float) % 1.0
    sc = np.asarray(crystal.supercell, dtype=float)

    point_ops = []
    for w in lattice_point_group(lattice, tol):
        # W must map the basis onto itself and the supercell lattice onto itself.
        mapped = (basis @ w.T) % 1.0
        diff = mapped[:, None, :] - basis[None, :, :]
        diff -= np.rint(diff)
        if not np.all(np.abs(diff).max(axis=2).min(axis=1) < tol):
            continue
        scaled = w * sc[None, :] / sc[:, None]
        if np.any(np.abs(scaled - np.rint(scaled)) > tol):
            continue
        point_ops.append(w)

    frac = crystal.fractional_positions()
    translations = crystal.translations()
    inv_lattice = np.linalg.inv(lattice)
    operations: list[SymmetryOperation] = []
    columns: list[Array] = []
    for w in point_ops:
        # r = x @ L, so the Cartesian rotation is L^T W L^-T.
        rot_cart = lattice.T @ w @ inv_lattice.T
        rot_cart[np.abs(rot_cart) < tol] = 0.0
        compat_cart = is_signed_permutation(rot_cart, tol)
        compat_lat = is_signed_permutation(w, tol)
        rotated = frac @ w.T
        for t in translations:
            columns.append(_match_atoms(frac, rotated + t, sc, tol))
            operations.append(
                SymmetryOperation(
                    rotation_cart=rot_cart,
                    rotation=w.astype(float),
                    compatible_with_cartesian=compat_cart,
                    compatible_with_lattice=compat_lat,
                    translation=t.astype(float),
                )
            )

    map_sym = np.stack(columns, axis=1)
    ntran = crystal.ntran
    map_p2s = map_sym[: crystal.nbasis, :ntran].copy()
    return SymmetryData(
        operations=tuple(operations),
        map_sym=map_sym,
        map_p2s=map_p2s,
        symnum_tran=tuple(range(ntran)),
    )


def minimum_image_distances(crystal: Crystal) -> Array:
    """Pairwise distances between supercell atoms under periodic boundary conditions."""

    frac = crystal.fractional_positions()
    sc = np.asarray(crystal.supercell, dtype=float)
    diff = frac[:, None, :] - frac[None, :, :]
    diff -= sc * np.rint(diff / sc)
    cart = diff @ np.asarray(crystal.lattice, dtype=float)
    return np.linalg.norm(cart, axis=2)


def enumerate_clusters(crystal: Crystal, order: int, cutoff: float) -> list[Cluster]:
    """Sorted atom tuples of size ``order + 2`` containing a primitive atom.

    Every pair inside a cluster must lie within ``cutoff`` (minimum image).
    """

    if order < 0:
        raise ValueError("order must be >= 0.")
    dist = minimum_image_distances(crystal)
    found: set[Cluster] = set()
    for iprim in range(crystal.nbasis):
        neighbors = np.flatnonzero(dist[iprim] <= cutoff + 1.0e-8)
        for rest in itertools.combinations_with_replacement(neighbors.tolist(), order + 1):
            atoms = (iprim, *rest)
            if all(dist[a, b] <= cutoff + 1.0e-8 for a, b in itertools.combinations(atoms, 2)):
                found.add(tuple(sorted(atoms)))
    return sorted(found)
