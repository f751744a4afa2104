import numpy as np
import pytest

from ifcfit.core import ReducedBasis, data_multiplier, gamma, generate_force_constant_table, get_matrix_elements, select_data
from ifcfit.models import build_symmetry, enumerate_clusters, random_displacements, simple_cubic


def test_gamma_prefactors() -> None:
    assert gamma((0, 1)) == 1.0
    assert gamma((0, 0)) == 1.0
    assert gamma((0, 0, 0)) == 0.5
    assert gamma((0, 0, 3)) == 1.0
    assert gamma((0, 3, 3)) == 0.5


def test_select_data_uses_one_based_inclusive_ranges() -> None:
    u = np.arange(6 * 3, dtype=float).reshape(6, 3)
    f = -u
    us, fs = select_data(u, f, 1, nstart=2, nend=5, skip=(3, 3))
    assert np.array_equal(us, u[[1, 3, 4]])
    assert np.array_equal(fs, f[[1, 3, 4]])

    us, _ = select_data(u.reshape(6, 1, 3), f.reshape(6, 1, 3), 1)
    assert us.shape == (6, 3)


def test_select_data_rejects_bad_ranges() -> None:
    u = np.zeros((4, 3))
    with pytest.raises(ValueError, match="nend"):
        select_data(u, u, 1, nend=5)
    with pytest.raises(ValueError, match="nstart"):
        select_data(u, u, 1, nstart=0)
    with pytest.raises(ValueError, match="No usable samples"):
        select_data(u, u, 1, nstart=2, nend=3, skip=(1, 4))
    with pytest.raises(ValueError):
        select_data(u, np.zeros((3, 3)), 1)
    with pytest.raises(ValueError):
        select_data(np.zeros((4, 6)), np.zeros((4, 6)), 1)


def test_data_multiplier_replicates_over_translations() -> None:
    crystal = simple_cubic()
    symmetry = build_symmetry(crystal)
    u = random_displacements(crystal.nat, 2, seed=3)
    out = data_multiplier(u, symmetry)
    assert out.shape == (2 * symmetry.ntran, 3 * crystal.nat)
    assert np.array_equal(out[0], u[0])
    assert np.array_equal(out[symmetry.ntran], u[1])
    for row in out[: symmetry.ntran]:
        assert np.allclose(np.sort(row), np.sort(u[0]))


def test_onsite_design_matrix_is_minus_displacement() -> None:
    crystal = simple_cubic(supercell=(1, 1, 1))
    symmetry = build_symmetry(crystal)
    table = generate_force_constant_table(0, crystal.nat, [(0, 0)], symmetry)
    u = random_displacements(crystal.nat, 3, seed=1)
    f = -2.5 * u
    system = get_matrix_elements([table], u, f, symmetry)
    assert system.amat.shape == (9, 1)
    assert system.amat.flags["F_CONTIGUOUS"]
    assert np.allclose(system.amat[:, 0], -u.ravel())
    assert np.allclose(system.bvec, f.ravel())
    assert np.isclose(system.fnorm, np.linalg.norm(f))
    assert system.ncycle == 3 and system.natmin == 1
    assert system.column_orders.tolist() == [0]


def test_reduced_basis_moves_fixed_columns_to_rhs() -> None:
    crystal = simple_cubic()
    symmetry = build_symmetry(crystal)
    table = generate_force_constant_table(0, crystal.nat, enumerate_clusters(crystal, 0, 1.1), symmetry)
    u = random_displacements(crystal.nat, 2, seed=2)
    f = random_displacements(crystal.nat, 2, seed=5)

    full = get_matrix_elements([table], u, f, symmetry)
    basis = ReducedBasis(nparams=3, free=(1, 2), fixed=((0, 2.0),))
    reduced = get_matrix_elements([table], u, f, symmetry, basis=basis)
    assert reduced.ncols == 2
    assert np.allclose(reduced.amat, full.amat[:, 1:])
    assert np.allclose(reduced.bvec, full.bvec - 2.0 * full.amat[:, 0])
    assert reduced.fnorm == full.fnorm

    with pytest.raises(ValueError):
        get_matrix_elements([table], u, f, symmetry, basis=ReducedBasis.identity(2))
