"""Core data structures for symmetry-reduced force-constant fitting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

import numpy as np
from scipy.sparse import csr_matrix


Array = np.ndarray
Cluster = tuple[int, ...]

# Mother index of force-constant entries that vanish by symmetry.
MOTHER_ZERO = -1


@dataclass(frozen=True)
class SymmetryOperation:
    """One space-group operation of the supercell."""

    rotation_cart: Array
    rotation: Array
    compatible_with_cartesian: bool = True
    compatible_with_lattice: bool = True
    translation: Array | None = None

    def __post_init__(self) -> None:
        if np.shape(self.rotation_cart) != (3, 3):
            raise ValueError("rotation_cart must be a 3x3 array.")
        if np.shape(self.rotation) != (3, 3):
            raise ValueError("rotation must be a 3x3 array.")


@dataclass(frozen=True)
class SymmetryData:
    """Symmetry information of a supercell as consumed by the fitting core.

    ``map_sym[atom, isym]`` is the atom that ``atom`` is moved onto by operation
    ``isym``. ``map_p2s[iprim, itran]`` is the supercell image of primitive atom
    ``iprim`` under the ``itran``-th pure translation, whose operation index is
    ``symnum_tran[itran]``.
    """

    operations: tuple[SymmetryOperation, ...]
    map_sym: Array
    map_p2s: Array
    symnum_tran: tuple[int, ...]

    def __post_init__(self) -> None:
        map_sym = np.asarray(self.map_sym)
        map_p2s = np.asarray(self.map_p2s)
        if len(self.operations) == 0:
            raise ValueError("SymmetryData must contain at least the identity operation.")
        if map_sym.ndim != 2 or map_sym.shape[1] != len(self.operations):
            raise ValueError("map_sym must have shape (n_atoms, n_operations).")
        if map_p2s.ndim != 2:
            raise ValueError("map_p2s must have shape (n_primitive_atoms, n_translations).")
        if map_p2s.shape[1] != len(self.symnum_tran):
            raise ValueError("map_p2s must have one column per pure translation.")
        nat = map_sym.shape[0]
        if map_p2s.size and (np.any(map_p2s < 0) or np.any(map_p2s >= nat)):
            raise ValueError("map_p2s contains atom indices out of range.")
        if np.any(map_sym < 0) or np.any(map_sym >= nat):
            raise ValueError("map_sym contains atom indices out of range.")
        for isym in self.symnum_tran:
            if isym < 0 or isym >= len(self.operations):
                raise ValueError("symnum_tran contains operation indices out of range.")

    @property
    def nat(self) -> int:
        return int(np.shape(self.map_sym)[0])

    @property
    def nat_prim(self) -> int:
        return int(np.shape(self.map_p2s)[0])

    @property
    def ntran(self) -> int:
        return len(self.symnum_tran)

    @property
    def nsym(self) -> int:
        return len(self.operations)

    @property
    def primitive_atoms(self) -> Array:
        """Supercell indices of the atoms that make up the primitive cell."""
        return np.asarray(self.map_p2s, dtype=int)[:, 0]


@dataclass(frozen=True, order=True)
class FcProperty:
    """One Cartesian component of a force constant.

    ``elems`` holds the flattened ``3 * atom + xyz`` indices with a primitive-cell
    index first and the remaining indices sorted. Two entries with the same
    ``elems`` are the same entity regardless of ``sign`` and ``mother``.
    """

    elems: tuple[int, ...]
    sign: float = field(default=1.0, compare=False)
    mother: int = field(default=0, compare=False)

    @property
    def atoms(self) -> tuple[int, ...]:
        return tuple(e // 3 for e in self.elems)

    @property
    def xyz(self) -> tuple[int, ...]:
        return tuple(e % 3 for e in self.elems)


@dataclass(frozen=True)
class ParameterTable:
    """Symmetry-reduced force constants of one interaction order."""

    order: int
    fc_table: tuple[FcProperty, ...] = ()
    nequiv: tuple[int, ...] = ()
    fc_zeros: tuple[FcProperty, ...] = ()

    def __post_init__(self) -> None:
        if sum(self.nequiv) != len(self.fc_table):
            raise RuntimeError("ParameterTable: multiplicities do not add up to the number of entries.")
        if any(n <= 0 for n in self.nequiv):
            raise RuntimeError("ParameterTable: every mother must own at least one entry.")
        start = 0
        for mother, n in enumerate(self.nequiv):
            for fc in self.fc_table[start : start + n]:
                if fc.mother != mother:
                    raise RuntimeError(
                        f"ParameterTable: entry {fc.elems} is stored in the block of mother {mother} "
                        f"but refers to mother {fc.mother}."
                    )
                if len(fc.elems) != self.order + 2:
                    raise RuntimeError("ParameterTable: entry length does not match the interaction order.")
            start += n
        seen: set[tuple[int, ...]] = set()
        for fc in self.fc_table:
            if fc.elems in seen:
                raise RuntimeError(f"ParameterTable: duplicate force-constant entry {fc.elems}.")
            seen.add(fc.elems)

    @property
    def nparams(self) -> int:
        return len(self.nequiv)

    def mothers(self) -> Iterator[tuple[int, tuple[FcProperty, ...]]]:
        start = 0
        for mother, n in enumerate(self.nequiv):
            yield mother, self.fc_table[start : start + n]
            start += n

    def first_of_each_mother(self) -> tuple[FcProperty, ...]:
        return tuple(block[0] for _, block in self.mothers())

    def lookup(self) -> dict[tuple[int, ...], FcProperty]:
        return {fc.elems: fc for fc in self.fc_table}


@dataclass(frozen=True)
class ConstraintRow:
    """Linear constraint ``sum(coeff * param) = target`` over parameter indices."""

    coeffs: tuple[tuple[int, float], ...]
    target: float = 0.0

    def as_dict(self) -> dict[int, float]:
        return dict(self.coeffs)

    @classmethod
    def from_dict(cls, coeffs: dict[int, float], target: float = 0.0) -> ConstraintRow:
        return cls(coeffs=tuple(sorted((int(k), float(v)) for k, v in coeffs.items())), target=float(target))

    def shifted(self, offset: int) -> ConstraintRow:
        return ConstraintRow(coeffs=tuple((k + offset, v) for k, v in self.coeffs), target=self.target)


@dataclass(frozen=True)
class DependentParameter:
    """Parameter expressed through free ones: ``p = offset + sum(coeff * x[free])``."""

    index: int
    terms: tuple[tuple[int, float], ...]
    offset: float = 0.0


@dataclass(frozen=True)
class ReducedBasis:
    """Partition of all parameters into free, fixed and dependent ones."""

    nparams: int
    free: tuple[int, ...]
    fixed: tuple[tuple[int, float], ...] = ()
    dependent: tuple[DependentParameter, ...] = ()

    def __post_init__(self) -> None:
        owner = np.zeros(self.nparams, dtype=int)
        indices = [*self.free, *(i for i, _ in self.fixed), *(d.index for d in self.dependent)]
        for idx in indices:
            if idx < 0 or idx >= self.nparams:
                raise ValueError(f"ReducedBasis index {idx} out of range.")
            owner[idx] += 1
        if np.any(owner != 1):
            missing = np.where(owner != 1)[0]
            raise ValueError(
                "Every parameter must be exactly one of free, fixed or dependent "
                f"(offending indices: {missing[:10].tolist()})."
            )
        nfree = len(self.free)
        for dep in self.dependent:
            for ifree, _ in dep.terms:
                if ifree < 0 or ifree >= nfree:
                    raise ValueError(f"Dependent parameter {dep.index} refers to unknown free index {ifree}.")

    @classmethod
    def identity(cls, nparams: int) -> ReducedBasis:
        return cls(nparams=nparams, free=tuple(range(nparams)))

    @property
    def nfree(self) -> int:
        return len(self.free)

    def expand(self, x: Array) -> Array:
        x = np.asarray(x, dtype=float)
        if x.shape != (self.nfree,):
            raise ValueError(f"Expected {self.nfree} free parameters, got shape {x.shape}.")
        params = np.zeros(self.nparams, dtype=float)
        for idx, value in self.fixed:
            params[idx] = value
        params[list(self.free)] = x
        for dep in self.dependent:
            params[dep.index] = dep.offset + sum(coeff * x[ifree] for ifree, coeff in dep.terms)
        return params

    def project(self, params: Array) -> Array:
        params = np.asarray(params, dtype=float)
        if params.shape != (self.nparams,):
            raise ValueError(f"Expected {self.nparams} parameters, got shape {params.shape}.")
        return params[list(self.free)].copy()

    def expansion_matrix(self) -> csr_matrix:
        rows: list[int] = []
        cols: list[int] = []
        vals: list[float] = []
        for ifree, iorig in enumerate(self.free):
            rows.append(iorig)
            cols.append(ifree)
            vals.append(1.0)
        for dep in self.dependent:
            for ifree, coeff in dep.terms:
                rows.append(dep.index)
                cols.append(ifree)
                vals.append(coeff)
        return csr_matrix((vals, (rows, cols)), shape=(self.nparams, self.nfree), dtype=float)

    def offset_vector(self) -> Array:
        offset = np.zeros(self.nparams, dtype=float)
        for idx, value in self.fixed:
            offset[idx] = value
        for dep in self.dependent:
            offset[dep.index] = dep.offset
        return offset
