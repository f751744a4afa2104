"""Assembly of the force-fitting linear system."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from math import factorial
from typing import Sequence

import numpy as np

from .types import Array, ParameterTable, ReducedBasis, SymmetryData


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinearSystem:
    """Design matrix and right-hand side of ``amat @ x ~ bvec``.

    ``amat`` is Fortran-ordered with one row per force component of a
    primitive atom per (translated) sample. ``fnorm`` is the norm of the
    unmodified forces and is the reference for relative fitting errors.
    """

    amat: Array
    bvec: Array
    fnorm: float
    column_orders: Array
    prefactor: Array
    ncycle: int
    natmin: int

    @property
    def nrows(self) -> int:
        return int(self.amat.shape[0])

    @property
    def ncols(self) -> int:
        return int(self.amat.shape[1])


def _as_samples(data: Array, nat: int, name: str) -> Array:
    arr = np.asarray(data, dtype=float)
    if arr.ndim == 3:
        arr = arr.reshape(arr.shape[0], -1)
    if arr.ndim != 2 or arr.shape[1] != 3 * nat:
        raise ValueError(f"{name} must have shape (ndata, 3*nat) or (ndata, nat, 3) with nat={nat}.")
    return arr


def select_data(
    displacements: Array,
    forces: Array,
    nat: int,
    nstart: int = 1,
    nend: int | None = None,
    skip: tuple[int, int] | None = None,
) -> tuple[Array, Array]:
    """Pick the samples used for fitting.

    ``nstart`` and ``nend`` are 1-based and inclusive; ``skip=(first, last)``
    removes a further inclusive sub-range.
    """

    u = _as_samples(displacements, nat, "displacements")
    f = _as_samples(forces, nat, "forces")
    if u.shape != f.shape:
        raise ValueError("displacements and forces must contain the same number of samples.")

    ndata = u.shape[0]
    nend = ndata if nend is None else int(nend)
    if nstart < 1:
        raise ValueError("nstart must be >= 1.")
    if nend > ndata:
        raise ValueError(f"nend={nend} exceeds the number of available samples ({ndata}).")
    if nend < nstart:
        raise ValueError("nend must be >= nstart.")

    keep = np.zeros(ndata, dtype=bool)
    keep[nstart - 1 : nend] = True
    if skip is not None:
        first, last = int(skip[0]), int(skip[1])
        if first < 1 or last < first:
            raise ValueError("skip must be an inclusive 1-based range (first, last) with first <= last.")
        keep[first - 1 : last] = False

    if not keep.any():
        raise ValueError("No usable samples remain after applying nstart, nend and skip.")
    return u[keep], f[keep]


def data_multiplier(data: Array, symmetry: SymmetryData) -> Array:
    """Replicate every sample over all pure translations of the supercell.

    Output sample ``i * ntran + itran`` holds the input sample with atom ``j``
    moved onto ``map_sym[j, symnum_tran[itran]]``.
    """

    nat = symmetry.nat
    data = _as_samples(data, nat, "data").reshape(-1, nat, 3)
    map_sym = np.asarray(symmetry.map_sym, dtype=int)
    out = np.zeros((data.shape[0], symmetry.ntran, nat, 3), dtype=float)
    for itran, isym in enumerate(symmetry.symnum_tran):
        out[:, itran, map_sym[:, isym], :] = data
    return out.reshape(-1, 3 * nat)


def gamma(elems: Sequence[int]) -> float:
    """Taylor-expansion prefactor of one force-constant entry.

    Number of positions equal to the leading index divided by the product of
    the factorials of all index multiplicities.
    """

    counts = Counter(elems)
    denom = 1
    for n in counts.values():
        denom *= factorial(n)
    return counts[elems[0]] / denom


def _inprim_rows(symmetry: SymmetryData) -> dict[int, int]:
    return {int(atom): iprim for iprim, atom in enumerate(symmetry.primitive_atoms)}


def get_matrix_elements(
    tables: Sequence[ParameterTable],
    displacements: Array,
    forces: Array,
    symmetry: SymmetryData,
    basis: ReducedBasis | None = None,
) -> LinearSystem:
    """Build ``A`` and ``b`` from translated displacement/force samples.

    Every table entry contributes ``-gamma * sign * prod(u[elems[1:]])`` to the
    force on its leading index, in the column of its mother. With a reduced
    basis the full matrix is contracted onto the free parameters and the
    fixed and offset contributions move to the right-hand side.
    """

    nat = symmetry.nat
    u = _as_samples(displacements, nat, "displacements")
    f = _as_samples(forces, nat, "forces")
    if u.shape != f.shape:
        raise ValueError("displacements and forces must contain the same number of samples.")

    ncycle = u.shape[0]
    natmin = symmetry.nat_prim
    natmin3 = 3 * natmin
    nparams = sum(t.nparams for t in tables)
    if nparams == 0:
        raise ValueError("No force-constant parameters to fit.")
    if basis is not None and basis.nparams != nparams:
        raise ValueError(f"Reduced basis covers {basis.nparams} parameters, tables hold {nparams}.")

    prim_rows = _inprim_rows(symmetry)
    a3 = np.zeros((ncycle, natmin3, nparams), dtype=float)
    column_orders = np.zeros(nparams, dtype=int)
    prefactor = np.zeros(nparams, dtype=float)

    ishift = 0
    for table in tables:
        if table.nparams == 0:
            continue
        column_orders[ishift : ishift + table.nparams] = table.order
        for mother, block in table.mothers():
            prefactor[ishift + mother] = gamma(block[0].elems)

        fc_table = table.fc_table
        rows = np.array([3 * prim_rows[fc.elems[0] // 3] + fc.elems[0] % 3 for fc in fc_table], dtype=int)
        cols = np.array([ishift + fc.mother for fc in fc_table], dtype=int)
        coef = np.array([-gamma(fc.elems) * fc.sign for fc in fc_table], dtype=float)
        tails = np.array([fc.elems[1:] for fc in fc_table], dtype=int).reshape(len(fc_table), table.order + 1)

        values = coef[None, :] * np.prod(u[:, tails], axis=2)
        np.add.at(a3, (slice(None), rows, cols), values)
        ishift += table.nparams

    amat = a3.reshape(ncycle * natmin3, nparams)
    fidx = (3 * symmetry.primitive_atoms[:, None] + np.arange(3)[None, :]).ravel()
    bvec = f[:, fidx].ravel()
    fnorm = float(np.linalg.norm(bvec))

    if basis is not None:
        bvec = bvec - amat @ basis.offset_vector()
        amat = np.asarray(basis.expansion_matrix().T.dot(amat.T)).T
        free = list(basis.free)
        column_orders = column_orders[free]
        prefactor = prefactor[free]

    logger.info("Design matrix: %d rows x %d columns (%d samples)", amat.shape[0], amat.shape[1], ncycle)
    return LinearSystem(
        amat=np.asfortranarray(amat),
        bvec=np.ascontiguousarray(bvec),
        fnorm=fnorm,
        column_orders=column_orders,
        prefactor=prefactor,
        ncycle=ncycle,
        natmin=natmin,
    )
