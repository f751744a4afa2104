"""Generation of symmetry-reduced force-constant parameter tables."""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from typing import Iterable, Sequence

import numpy as np

from .types import MOTHER_ZERO, Array, Cluster, FcProperty, ParameterTable, SymmetryData


logger = logging.getLogger(__name__)

EPS8 = 1.0e-8
EPS12 = 1.0e-12


def order_name(order: int) -> str:
    return "HARMONIC" if order == 0 else f"ANHARM{order + 2}"


def get_xyzcomponent(n: int) -> Array:
    """Return all ``3**n`` Cartesian component assignments in lexicographic order."""

    if n <= 0:
        raise ValueError("Number of components must be positive.")
    return np.array(list(itertools.product(range(3), repeat=n)), dtype=int)


def primitive_mask(symmetry: SymmetryData) -> Array:
    mask = np.zeros(symmetry.nat, dtype=bool)
    mask[symmetry.primitive_atoms] = True
    return mask


def get_available_symmop(
    symmetry: SymmetryData,
    basis: str = "Cartesian",
    use_compatible: bool = True,
) -> tuple[Array, Array]:
    """Return rotations and atom maps of the operations (in)compatible with ``basis``.

    ``use_compatible=True`` selects the operations used to build the parameter
    table, ``False`` the ones that only enter through constraints.
    Returns ``(rotations, map_sym)`` with shapes ``(nsym_avail, 3, 3)`` and
    ``(nat, nsym_avail)``.
    """

    b = basis.strip().lower()
    if b == "cartesian":
        picked = [i for i, op in enumerate(symmetry.operations) if op.compatible_with_cartesian == use_compatible]
        rotations = [np.asarray(symmetry.operations[i].rotation_cart, dtype=float) for i in picked]
    elif b == "lattice":
        picked = [i for i, op in enumerate(symmetry.operations) if op.compatible_with_lattice == use_compatible]
        rotations = [np.asarray(symmetry.operations[i].rotation, dtype=float) for i in picked]
    else:
        raise ValueError(f"Invalid basis '{basis}'. Use one of: 'Cartesian', 'Lattice'.")

    map_sym = np.asarray(symmetry.map_sym, dtype=int)[:, picked]
    return np.array(rotations, dtype=float).reshape(len(picked), 3, 3), map_sym


def coef_sym(rotation: Array, xyz_from: Sequence[int], xyz_to: Sequence[int]) -> float:
    """Product of rotation entries coupling component ``xyz_from`` to ``xyz_to``."""

    tmp = 1.0
    for a, b in zip(xyz_from, xyz_to):
        tmp *= float(rotation[b, a])
    return tmp


def is_ascending(arr: Sequence[int]) -> bool:
    return all(arr[i] <= arr[i + 1] for i in range(len(arr) - 1))


def is_inprim(atoms: Iterable[int], prim: Array) -> bool:
    return any(bool(prim[a]) for a in atoms)


def get_minimum_index_in_primitive(arr: Sequence[int], nat: int, prim: Array) -> int:
    """Position of the smallest flattened index whose atom lies in the primitive cell."""

    keys = [int(a) if prim[int(a) // 3] else 3 * nat for a in arr]
    return min(range(len(keys)), key=keys.__getitem__)


def canonicalize(arr: Sequence[int], nat: int, prim: Array) -> tuple[int, ...]:
    """Move the minimum primitive-cell index to the front and sort the rest."""

    tmp = [int(a) for a in arr]
    loc = get_minimum_index_in_primitive(tmp, nat, prim)
    tmp[0], tmp[loc] = tmp[loc], tmp[0]
    return (tmp[0], *sorted(tmp[1:]))


def _primitive_permutations(elems: tuple[int, ...], sign: float, mother: int, prim: Array) -> list[FcProperty]:
    # The fitting matrix needs one row source per primitive atom in the entry.
    out: list[FcProperty] = []
    searched = {elems[0]}
    for i in range(1, len(elems)):
        e = elems[i]
        if e in searched or not prim[e // 3]:
            continue
        tmp = list(elems)
        tmp[0], tmp[i] = tmp[i], tmp[0]
        out.append(FcProperty(elems=(tmp[0], *sorted(tmp[1:])), sign=sign, mother=mother))
        searched.add(e)
    return out


def generate_force_constant_table(
    order: int,
    nat: int,
    clusters: Iterable[Cluster],
    symmetry: SymmetryData,
    basis: str = "Cartesian",
    store_zeros: bool = True,
) -> ParameterTable:
    """Build the irreducible force-constant table of one interaction order.

    Every Cartesian component of every cluster is mapped by all operations
    compatible with ``basis``. Components reached from a not-yet-seen one form
    a group sharing one mother parameter. A group that contains its own
    starting component with coefficient -1 vanishes by symmetry and is moved to
    ``fc_zeros`` (kept only if ``store_zeros``).
    """

    if order < 0:
        return ParameterTable(order=order)
    if nat != symmetry.nat:
        raise ValueError(f"nat={nat} does not match the symmetry data ({symmetry.nat} atoms).")

    rotations, map_sym = get_available_symmop(symmetry, basis, use_compatible=True)
    prim = primitive_mask(symmetry)
    nelems = order + 2
    xyzcomponent = get_xyzcomponent(nelems)

    list_found: set[tuple[int, ...]] = set()
    fc_vec: list[FcProperty] = []
    ndup: list[int] = []
    fc_zeros: list[FcProperty] = []
    nmother = 0

    for cluster in sorted(tuple(int(a) for a in c) for c in clusters):
        if len(cluster) != nelems:
            raise ValueError(f"Cluster {cluster} does not have {nelems} atoms for order {order}.")
        atmn = np.asarray(cluster, dtype=int)
        if not is_inprim(atmn, prim):
            raise ValueError(f"Cluster {cluster} contains no atom of the primitive cell.")
        atmn_mapped_all = map_sym[atmn, :]
        sym_in_prim = np.flatnonzero(prim[atmn_mapped_all].any(axis=0))

        for xyz1 in xyzcomponent:
            ind = 3 * atmn + xyz1
            if not is_ascending(ind):
                continue
            ind = canonicalize(ind, nat, prim)
            if ind in list_found:
                continue

            # coeffs[isym, i2] = prod_i R[isym][xyz2_i, xyz1_i]
            coeffs = np.prod(rotations[:, xyzcomponent, xyz1], axis=2)
            is_zero = False
            group: list[FcProperty] = []

            for isym in sym_in_prim:
                atmn_mapped = atmn_mapped_all[:, isym]
                for i2 in np.flatnonzero(np.abs(coeffs[isym]) > EPS12):
                    c_tmp = float(coeffs[isym, i2])
                    ind_mapped = canonicalize(3 * atmn_mapped + xyzcomponent[i2], nat, prim)

                    if not is_zero and ind_mapped == ind and abs(c_tmp + 1.0) < EPS8:
                        is_zero = True

                    if ind_mapped in list_found:
                        continue
                    list_found.add(ind_mapped)
                    group.append(FcProperty(elems=ind_mapped, sign=c_tmp, mother=nmother))
                    group.extend(_primitive_permutations(ind_mapped, c_tmp, nmother, prim))

            if is_zero:
                if store_zeros:
                    fc_zeros.extend(replace(fc, mother=MOTHER_ZERO) for fc in group)
            else:
                ndup.append(len(group))
                fc_vec.extend(group)
                nmother += 1

    sorted_vec: list[FcProperty] = []
    start = 0
    for n in ndup:
        sorted_vec.extend(sorted(fc_vec[start : start + n]))
        start += n

    logger.info("Number of %9s FCs : %d", order_name(order), len(ndup))
    return ParameterTable(
        order=order,
        fc_table=tuple(sorted_vec),
        nequiv=tuple(ndup),
        fc_zeros=tuple(fc_zeros),
    )


def build_parameter_tables(
    maxorder: int,
    nat: int,
    cluster_lists: Sequence[Iterable[Cluster]],
    symmetry: SymmetryData,
    basis: str = "Cartesian",
    store_zeros: bool = True,
) -> tuple[ParameterTable, ...]:
    """Generate the parameter tables of orders ``0 .. maxorder-1``."""

    if maxorder <= 0:
        raise ValueError("maxorder must be positive.")
    if len(cluster_lists) < maxorder:
        raise ValueError(f"Expected cluster lists for {maxorder} orders, got {len(cluster_lists)}.")
    return tuple(
        generate_force_constant_table(
            order,
            nat,
            cluster_lists[order],
            symmetry,
            basis=basis,
            store_zeros=store_zeros,
        )
        for order in range(maxorder)
    )
