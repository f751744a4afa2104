import numpy as np
import pytest

from ifcfit.core import MOTHER_ZERO, generate_force_constant_table, get_available_symmop
from ifcfit.core.fcs import (
    build_parameter_tables,
    canonicalize,
    coef_sym,
    get_xyzcomponent,
    order_name,
    primitive_mask,
)
from ifcfit.models import build_symmetry, enumerate_clusters, simple_cubic, simple_hexagonal


def _cubic_nn():
    crystal = simple_cubic()
    symmetry = build_symmetry(crystal)
    clusters = enumerate_clusters(crystal, 0, 1.1)
    return crystal, symmetry, clusters


def test_onsite_cubic_has_single_parameter() -> None:
    crystal = simple_cubic(supercell=(1, 1, 1))
    symmetry = build_symmetry(crystal)
    table = generate_force_constant_table(0, crystal.nat, [(0, 0)], symmetry)
    assert table.nparams == 1
    assert table.nequiv == (3,)
    assert sorted(fc.elems for fc in table.fc_table) == [(0, 0), (1, 1), (2, 2)]
    assert all(fc.sign == 1.0 for fc in table.fc_table)
    assert len(table.fc_zeros) == 6


def test_onsite_cubic_third_order_vanishes_by_inversion() -> None:
    crystal = simple_cubic(supercell=(1, 1, 1))
    symmetry = build_symmetry(crystal)
    table = generate_force_constant_table(1, crystal.nat, [(0, 0, 0)], symmetry)
    assert table.nparams == 0
    assert len(table.fc_zeros) > 0
    assert all(fc.mother == MOTHER_ZERO for fc in table.fc_zeros)


def test_nearest_neighbor_cubic_has_three_parameters() -> None:
    crystal, symmetry, clusters = _cubic_nn()
    assert len(clusters) == 7
    table = generate_force_constant_table(0, crystal.nat, clusters, symmetry)
    assert table.nparams == 3
    assert sum(table.nequiv) == len(table.fc_table)


def test_table_entries_are_unique_and_grouped() -> None:
    crystal, symmetry, clusters = _cubic_nn()
    table = generate_force_constant_table(0, crystal.nat, clusters, symmetry)
    elems = [fc.elems for fc in table.fc_table]
    assert len(elems) == len(set(elems))
    mothers = [fc.mother for fc in table.fc_table]
    assert mothers == sorted(mothers)
    assert set(mothers) == set(range(table.nparams))
    assert {fc.elems for fc in table.fc_zeros}.isdisjoint(elems)

    prim = primitive_mask(symmetry)
    assert all(prim[fc.elems[0] // 3] for fc in table.fc_table)
    assert all(list(fc.elems[1:]) == sorted(fc.elems[1:]) for fc in table.fc_table)


def test_store_zeros_false_keeps_parameters() -> None:
    crystal, symmetry, clusters = _cubic_nn()
    with_zeros = generate_force_constant_table(0, crystal.nat, clusters, symmetry, store_zeros=True)
    without = generate_force_constant_table(0, crystal.nat, clusters, symmetry, store_zeros=False)
    assert without.fc_zeros == ()
    assert len(with_zeros.fc_zeros) > 0
    assert without.fc_table == with_zeros.fc_table


def test_lattice_basis_matches_cartesian_for_cubic() -> None:
    crystal, symmetry, clusters = _cubic_nn()
    cart = generate_force_constant_table(0, crystal.nat, clusters, symmetry, basis="Cartesian")
    latt = generate_force_constant_table(0, crystal.nat, clusters, symmetry, basis="Lattice")
    assert latt.nparams == cart.nparams


def test_available_symmop_splits_hexagonal_group() -> None:
    symmetry = build_symmetry(simple_hexagonal())
    rot_c, map_c = get_available_symmop(symmetry, "Cartesian", use_compatible=True)
    rot_i, map_i = get_available_symmop(symmetry, "Cartesian", use_compatible=False)
    assert rot_c.shape == (8 * symmetry.ntran, 3, 3)
    assert rot_c.shape[0] + rot_i.shape[0] == symmetry.nsym
    assert map_c.shape == (symmetry.nat, rot_c.shape[0])
    assert map_i.shape == (symmetry.nat, rot_i.shape[0])
    with pytest.raises(ValueError):
        get_available_symmop(symmetry, "spherical")


def test_table_rejects_bad_clusters() -> None:
    crystal, symmetry, _ = _cubic_nn()
    with pytest.raises(ValueError):
        generate_force_constant_table(0, crystal.nat, [(1, 2)], symmetry)
    with pytest.raises(ValueError):
        generate_force_constant_table(0, crystal.nat, [(0, 1, 2)], symmetry)
    with pytest.raises(ValueError):
        generate_force_constant_table(0, crystal.nat + 1, [(0, 1)], symmetry)


def test_build_parameter_tables_needs_cluster_lists() -> None:
    crystal, symmetry, clusters = _cubic_nn()
    tables = build_parameter_tables(1, crystal.nat, [clusters], symmetry)
    assert len(tables) == 1 and tables[0].order == 0
    with pytest.raises(ValueError):
        build_parameter_tables(2, crystal.nat, [clusters], symmetry)
    with pytest.raises(ValueError):
        build_parameter_tables(0, crystal.nat, [clusters], symmetry)


def test_index_helpers() -> None:
    prim = np.array([True, False])
    assert canonicalize((5, 4, 1), 2, prim) == (1, 4, 5)
    assert canonicalize((1, 0), 2, prim) == (0, 1)
    xyz = get_xyzcomponent(2)
    assert xyz.shape == (9, 2)
    assert xyz[0].tolist() == [0, 0] and xyz[-1].tolist() == [2, 2]
    assert order_name(0) == "HARMONIC"
    assert order_name(1) == "ANHARM3"
    rot = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    assert coef_sym(rot, (0, 1), (1, 0)) == rot[1, 0] * rot[0, 1]
    assert coef_sym(rot, (2, 2, 2), (2, 2, 2)) == 1.0


def test_compatible_operations_map_table_onto_itself() -> None:
    crystal, symmetry, clusters = _cubic_nn()
    table = generate_force_constant_table(0, crystal.nat, clusters, symmetry)
    rotations, map_sym = get_available_symmop(symmetry)
    prim = primitive_mask(symmetry)
    lookup = table.lookup()
    zeros = {fc.elems for fc in table.fc_zeros}
    xyzcomponent = get_xyzcomponent(2)
    for fc in table.fc_table:
        atoms = np.asarray(fc.atoms)
        coeffs = np.array([[coef_sym(rot, fc.xyz, xyz2) for xyz2 in xyzcomponent] for rot in rotations])
        for isym in range(rotations.shape[0]):
            mapped = map_sym[atoms, isym]
            if not prim[mapped].any():
                continue
            for i2 in np.flatnonzero(np.abs(coeffs[isym]) > 1.0e-12):
                key = canonicalize(3 * mapped + xyzcomponent[i2], crystal.nat, prim)
                assert key not in zeros
                found = lookup[key]
                assert found.mother == fc.mother
                assert np.isclose(found.sign, coeffs[isym, i2] * fc.sign)
