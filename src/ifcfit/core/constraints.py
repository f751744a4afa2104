"""Linear constraints between force-constant parameters and the reduced basis they induce."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Mapping, Sequence

import numpy as np

from .fcs import EPS8, EPS12, canonicalize, get_available_symmop, get_xyzcomponent, order_name, primitive_mask
from .types import Array, ConstraintRow, DependentParameter, FcProperty, ParameterTable, ReducedBasis, SymmetryData


logger = logging.getLogger(__name__)

RowEntries = tuple[tuple[int, float], ...]


def rref_sparse(ncols: int, rows: Sequence[ConstraintRow], tolerance: float = 1.0e-8) -> list[ConstraintRow]:
    """Gauss-Jordan elimination of sparse constraint rows.

    Returns the rows in reduced row echelon form ordered by pivot column, with
    every pivot coefficient equal to one and coefficients below ``tolerance``
    dropped. Rows that reduce to ``0 = target`` with a nonzero target make the
    constraint set inconsistent and raise ``ValueError``.
    """

    work: list[tuple[dict[int, float], float]] = []
    for row in rows:
        coeffs = {int(k): float(v) for k, v in row.coeffs if abs(v) >= tolerance}
        for k in coeffs:
            if k < 0 or k >= ncols:
                raise ValueError(f"Constraint coefficient index {k} out of range for {ncols} parameters.")
        work.append((coeffs, float(row.target)))

    nrank = 0
    for col in range(ncols):
        if nrank == len(work):
            break
        ipiv = -1
        vmax = tolerance
        for irow in range(nrank, len(work)):
            v = abs(work[irow][0].get(col, 0.0))
            if v > vmax:
                ipiv, vmax = irow, v
        if ipiv < 0:
            continue

        work[nrank], work[ipiv] = work[ipiv], work[nrank]
        prow, ptarget = work[nrank]
        inv = 1.0 / prow[col]
        prow = {k: v * inv for k, v in prow.items()}
        prow[col] = 1.0
        ptarget *= inv
        work[nrank] = (prow, ptarget)

        for irow in range(len(work)):
            if irow == nrank:
                continue
            row, target = work[irow]
            factor = row.get(col)
            if factor is None:
                continue
            for k, v in prow.items():
                value = row.get(k, 0.0) - factor * v
                if abs(value) < tolerance:
                    row.pop(k, None)
                else:
                    row[k] = value
            row.pop(col, None)
            work[irow] = (row, target - factor * ptarget)
        nrank += 1

    out: list[ConstraintRow] = []
    for irow, (row, target) in enumerate(work):
        row = {k: v for k, v in row.items() if abs(v) >= tolerance}
        if irow >= nrank or not row:
            if abs(target) > tolerance:
                raise ValueError("Inconsistent constraints: a row reduces to 0 = %.6e." % target)
            continue
        out.append(ConstraintRow.from_dict(row, target=target))
    return out


def _finalize_rows(
    rows: list[RowEntries],
    nparams: int,
    tolerance: float,
    do_rref: bool,
) -> list[ConstraintRow]:
    # Sort, drop exact duplicates, normalize by the first coefficient.
    unique_rows = sorted(set(rows))
    out: list[ConstraintRow] = []
    for entries in unique_rows:
        if not entries:
            continue
        factor = 1.0 / entries[0][1]
        out.append(ConstraintRow(coeffs=tuple((col, val * factor) for col, val in entries)))
    if do_rref:
        out = rref_sparse(nparams, out, tolerance)
    return out


def _row_entries(row: Array) -> RowEntries | None:
    nonzero = np.flatnonzero(np.abs(row) > EPS8)
    if nonzero.size == 0:
        return None
    if row[nonzero[0]] < 0.0:
        row = -row
    return tuple((int(j), float(row[j])) for j in np.flatnonzero(np.abs(row) >= EPS8))


def _symmetry_rows_chunk(
    fc_chunk: Sequence[FcProperty],
    rotations: Array,
    map_sym: Array,
    prim: Array,
    nat: int,
    lookup: Mapping[tuple[int, ...], FcProperty],
    xyzcomponent: Array,
    nparams: int,
) -> list[RowEntries]:
    rows: list[RowEntries] = []
    for fc in fc_chunk:
        atm_index = np.asarray(fc.atoms, dtype=int)
        xyz_index = np.asarray(fc.xyz, dtype=int)
        coeffs = np.prod(rotations[:, xyzcomponent, xyz_index], axis=2)
        for isym in range(rotations.shape[0]):
            atm_symm = map_sym[atm_index, isym]
            if not prim[atm_symm].any():
                continue
            row = np.zeros(nparams, dtype=float)
            row[fc.mother] = -fc.sign
            for ixyz in np.flatnonzero(np.abs(coeffs[isym]) > EPS12):
                found = lookup.get(canonicalize(3 * atm_symm + xyzcomponent[ixyz], nat, prim))
                if found is not None:
                    row[found.mother] += found.sign * coeffs[isym, ixyz]
            entries = _row_entries(row)
            if entries is not None:
                rows.append(entries)
    return rows


def get_constraint_symmetry(
    nat: int,
    symmetry: SymmetryData,
    table: ParameterTable,
    basis: str = "Cartesian",
    tolerance: float = 1.0e-8,
    do_rref: bool = True,
    n_workers: int = 1,
) -> list[ConstraintRow]:
    """Constraint rows imposed by the operations that are incompatible with ``basis``.

    Each table entry is moved by every incompatible operation that keeps one of
    its atoms in the primitive cell; the moved components are projected back
    onto the table and the resulting linear relation between mothers becomes a
    row. Chunks of the table are searched on a thread pool when
    ``n_workers > 1``.
    """

    nparams = table.nparams
    if table.order < 0 or nparams == 0:
        return []
    if n_workers <= 0:
        raise ValueError("n_workers must be positive.")

    rotations, map_sym = get_available_symmop(symmetry, basis, use_compatible=False)
    if rotations.shape[0] == 0:
        return []

    prim = primitive_mask(symmetry)
    xyzcomponent = get_xyzcomponent(table.order + 2)
    lookup = table.lookup()
    fc_table = table.fc_table

    def run(chunk: Sequence[FcProperty]) -> list[RowEntries]:
        return _symmetry_rows_chunk(chunk, rotations, map_sym, prim, nat, lookup, xyzcomponent, nparams)

    if n_workers == 1 or len(fc_table) < 2:
        constraint_all = run(fc_table)
    else:
        bounds = np.linspace(0, len(fc_table), min(n_workers, len(fc_table)) + 1).astype(int)
        chunks = [fc_table[bounds[i] : bounds[i + 1]] for i in range(len(bounds) - 1)]
        constraint_all = []
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            for rows in ex.map(run, chunks):
                constraint_all.extend(rows)

    out = _finalize_rows(constraint_all, nparams, tolerance, do_rref)
    logger.debug(
        "%s: %d symmetry constraint rows from %d incompatible operations",
        order_name(table.order),
        len(out),
        rotations.shape[0],
    )
    return out


def get_constraint_translation(
    table: ParameterTable,
    tolerance: float = 1.0e-8,
    do_rref: bool = True,
) -> list[ConstraintRow]:
    """Acoustic sum rules ``sum_k Phi(i, ..., 3k+c) = 0`` in terms of mother parameters.

    Every entry with a primitive atom in front is reached from each distinct
    value of its tail; removing that value gives the index prefix and the
    Cartesian component of the summed position.
    """

    nparams = table.nparams
    if table.order < 0 or nparams == 0:
        return []

    sums: dict[tuple[int, tuple[int, ...], int], Array] = {}
    for fc in table.fc_table:
        tail = list(fc.elems[1:])
        for value in sorted(set(tail)):
            rest = list(tail)
            rest.remove(value)
            key = (fc.elems[0], tuple(rest), value % 3)
            row = sums.get(key)
            if row is None:
                row = np.zeros(nparams, dtype=float)
                sums[key] = row
            row[fc.mother] += fc.sign

    constraint_all: list[RowEntries] = []
    for row in sums.values():
        entries = _row_entries(row)
        if entries is not None:
            constraint_all.append(entries)

    out = _finalize_rows(constraint_all, nparams, tolerance, do_rref)
    logger.debug("%s: %d translational constraint rows", order_name(table.order), len(out))
    return out


def _global_rows(
    tables: Sequence[ParameterTable],
    rows_by_order: Sequence[Sequence[ConstraintRow]],
    fixed_values: Mapping[int, float] | None,
) -> tuple[int, list[ConstraintRow]]:
    if len(rows_by_order) != len(tables):
        raise ValueError("rows_by_order must have one entry per parameter table.")
    nparams = sum(t.nparams for t in tables)
    rows: list[ConstraintRow] = []
    offset = 0
    for table, order_rows in zip(tables, rows_by_order):
        rows.extend(row.shifted(offset) for row in order_rows)
        offset += table.nparams

    for idx, value in sorted((fixed_values or {}).items()):
        idx = int(idx)
        if idx < 0 or idx >= nparams:
            raise ValueError(f"fixed_values index {idx} out of range for {nparams} parameters.")
        rows.append(ConstraintRow(coeffs=((idx, 1.0),), target=float(value)))
    return nparams, rows


def build_reduced_basis(
    tables: Sequence[ParameterTable],
    rows_by_order: Sequence[Sequence[ConstraintRow]],
    fixed_values: Mapping[int, float] | None = None,
    tolerance: float = 1.0e-8,
) -> ReducedBasis:
    """Classify every parameter as free, fixed or dependent.

    Per-order rows are shifted to global parameter indices, user-fixed values
    enter as unit rows with their value as target, and the whole set is
    row-reduced. Pivots of rows without other entries are fixed, the remaining
    pivots depend on the non-pivot (free) parameters.
    """

    nparams, rows = _global_rows(tables, rows_by_order, fixed_values)
    reduced = rref_sparse(nparams, rows, tolerance)

    pivots = {row.coeffs[0][0] for row in reduced}
    free = tuple(i for i in range(nparams) if i not in pivots)
    free_pos = {iorig: ifree for ifree, iorig in enumerate(free)}

    fixed: list[tuple[int, float]] = []
    dependent: list[DependentParameter] = []
    for row in reduced:
        pivot = row.coeffs[0][0]
        others = row.coeffs[1:]
        if not others:
            fixed.append((pivot, row.target))
        else:
            dependent.append(
                DependentParameter(
                    index=pivot,
                    terms=tuple((free_pos[j], -c) for j, c in others),
                    offset=row.target,
                )
            )

    basis = ReducedBasis(nparams=nparams, free=free, fixed=tuple(fixed), dependent=tuple(dependent))
    logger.info(
        "Reduced basis: %d parameters, %d free, %d fixed, %d dependent",
        nparams,
        basis.nfree,
        len(fixed),
        len(dependent),
    )
    return basis


def build_constraint_matrix(
    rows_by_order: Sequence[Sequence[ConstraintRow]],
    tables: Sequence[ParameterTable],
    fixed_values: Mapping[int, float] | None = None,
    tolerance: float = 1.0e-8,
) -> tuple[Array, Array]:
    """Dense ``(C, d)`` with ``C @ p = d`` over all orders.

    Fixed values are row-reduced together with the constraint rows, so ``C``
    has full row rank and contradicting fixed values raise ``ValueError``.
    """

    nparams, rows = _global_rows(tables, rows_by_order, fixed_values)
    rows = rref_sparse(nparams, rows, tolerance)
    cmat = np.zeros((len(rows), nparams), dtype=float, order="F")
    dvec = np.zeros(len(rows), dtype=float)
    for irow, row in enumerate(rows):
        for col, val in row.coeffs:
            cmat[irow, col] = val
        dvec[irow] = row.target
    return cmat, dvec
