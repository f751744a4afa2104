"""Harmonic spring model producing reference force constants and synthetic forces."""

from __future__ import annotations

import itertools
from dataclasses import dataclass

import numpy as np

from ifcfit.core.types import Array, ParameterTable

from .crystal import Crystal


@dataclass(frozen=True)
class SpringParams:
    longitudinal: float
    transverse: float = 0.0
    cutoff: float = 1.1


def _bonds(crystal: Crystal, cutoff: float) -> list[tuple[int, int, Array]]:
    # (a, b, unit vector a -> b) for every periodic image of b within cutoff.
    frac = crystal.fractional_positions()
    lattice = np.asarray(crystal.lattice, dtype=float)
    sc = np.asarray(crystal.supercell, dtype=int)
    shifts = np.array(list(itertools.product((-1, 0, 1), repeat=3)), dtype=float) * sc[None, :]
    out = []
    for a in range(crystal.nat):
        for b in range(crystal.nat):
            for shift in shifts:
                vec = (frac[b] + shift - frac[a]) @ lattice
                dist = float(np.linalg.norm(vec))
                if dist < 1.0e-8 or dist > cutoff + 1.0e-8:
                    continue
                out.append((a, b, vec / dist))
    return out


def harmonic_force_constants(crystal: Crystal, params: SpringParams) -> Array:
    """Second-order force constants ``Phi[3a+i, 3b+j]`` of pairwise springs.

    Every periodic image of ``b`` within ``cutoff`` of ``a`` contributes
    ``-kL e e^T - kT (1 - e e^T)``; diagonal blocks restore the acoustic sum rule.
    """

    nat = crystal.nat
    phi = np.zeros((3 * nat, 3 * nat), dtype=float)
    eye = np.eye(3)
    for a, b, e in _bonds(crystal, params.cutoff):
        ee = np.outer(e, e)
        block = -params.longitudinal * ee - params.transverse * (eye - ee)
        phi[3 * a : 3 * a + 3, 3 * b : 3 * b + 3] += block

    # Springs to periodic self-images cancel on the diagonal block.
    for a in range(nat):
        block = np.zeros((3, 3))
        for b in range(nat):
            if b != a:
                block -= phi[3 * a : 3 * a + 3, 3 * b : 3 * b + 3]
        phi[3 * a : 3 * a + 3, 3 * a : 3 * a + 3] = block
    return phi


def harmonic_forces(phi: Array, displacements: Array) -> Array:
    """Forces ``F = -Phi u`` for every sample, shape ``(ndata, 3*nat)``."""

    u = np.asarray(displacements, dtype=float)
    u = u.reshape(u.shape[0], -1)
    return -u @ phi.T


def cubic_bond_forces(crystal: Crystal, k3: float, displacements: Array, cutoff: float = 1.1) -> Array:
    """Forces of the bond potential ``k3/6 * s**3``, ``s = e . (u_b - u_a)`` the bond stretch.

    Each bond appears once from either end, so atom ``a`` collects
    ``k3/2 * s**2 * e`` from all its bonds.
    """

    u = np.asarray(displacements, dtype=float)
    u = u.reshape(u.shape[0], crystal.nat, 3)
    f = np.zeros_like(u)
    for a, b, e in _bonds(crystal, cutoff):
        s = (u[:, b, :] - u[:, a, :]) @ e
        f[:, a, :] += 0.5 * k3 * (s**2)[:, None] * e[None, :]
    return f.reshape(u.shape[0], -1)


def random_displacements(nat: int, ndata: int, amplitude: float = 0.01, seed: int = 0) -> Array:
    rng = np.random.default_rng(seed)
    return amplitude * rng.standard_normal((ndata, 3 * nat))


def reference_parameters(table: ParameterTable, phi: Array) -> Array:
    """Mother values of a harmonic table read from an exact force-constant matrix."""

    if table.order != 0:
        raise ValueError("reference_parameters supports the harmonic table only.")
    out = np.zeros(table.nparams, dtype=float)
    for mother, block in table.mothers():
        first = block[0]
        out[mother] = phi[first.elems[0], first.elems[1]] / first.sign
    return out
