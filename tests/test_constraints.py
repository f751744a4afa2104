import numpy as np
import pytest

from ifcfit.core import (
    ConstraintRow,
    DependentParameter,
    ReducedBasis,
    build_constraint_matrix,
    build_reduced_basis,
    generate_force_constant_table,
    get_constraint_symmetry,
    get_constraint_translation,
    rref_sparse,
)
from ifcfit.models import (
    SpringParams,
    build_symmetry,
    enumerate_clusters,
    harmonic_force_constants,
    reference_parameters,
    simple_cubic,
    simple_hexagonal,
)


def _harmonic_setup(crystal):
    symmetry = build_symmetry(crystal)
    clusters = enumerate_clusters(crystal, 0, 1.1)
    table = generate_force_constant_table(0, crystal.nat, clusters, symmetry)
    phi = harmonic_force_constants(crystal, SpringParams(longitudinal=1.0, transverse=0.2, cutoff=1.1))
    return symmetry, table, reference_parameters(table, phi)


def _row_residual(row: ConstraintRow, params: np.ndarray) -> float:
    return sum(c * params[k] for k, c in row.coeffs) - row.target


def test_rref_sparse_solves_small_system() -> None:
    rows = [
        ConstraintRow.from_dict({0: 1.0, 1: 1.0}, target=1.0),
        ConstraintRow.from_dict({0: 1.0, 1: -1.0}),
    ]
    out = rref_sparse(2, rows)
    assert [r.coeffs for r in out] == [((0, 1.0),), ((1, 1.0),)]
    assert np.allclose([r.target for r in out], [0.5, 0.5])


def test_rref_sparse_drops_dependent_rows() -> None:
    rows = [
        ConstraintRow.from_dict({0: 1.0, 2: -2.0}),
        ConstraintRow.from_dict({0: 2.0, 2: -4.0}),
        ConstraintRow.from_dict({1: 3.0, 2: 1.0}),
    ]
    out = rref_sparse(3, rows)
    assert len(out) == 2
    pivots = [r.coeffs[0][0] for r in out]
    assert pivots == [0, 1]
    for r in out:
        assert r.coeffs[0][1] == 1.0
        others = {k for k, _ in r.coeffs[1:]}
        assert others.isdisjoint(pivots)


def test_rref_sparse_rejects_inconsistent_rows() -> None:
    rows = [ConstraintRow.from_dict({0: 1.0}, 1.0), ConstraintRow.from_dict({0: 1.0}, 2.0)]
    with pytest.raises(ValueError):
        rref_sparse(1, rows)
    with pytest.raises(ValueError):
        rref_sparse(1, [ConstraintRow.from_dict({3: 1.0})])


def test_cubic_has_no_symmetry_rows_in_cartesian_basis() -> None:
    crystal = simple_cubic()
    symmetry, table, _ = _harmonic_setup(crystal)
    assert get_constraint_symmetry(crystal.nat, symmetry, table) == []


def test_translation_rows_hold_for_spring_model() -> None:
    _, table, ref = _harmonic_setup(simple_cubic())
    rows = get_constraint_translation(table)
    assert len(rows) == 1
    for row in rows:
        assert abs(_row_residual(row, ref)) < 1.0e-10


def test_hexagonal_symmetry_rows_hold_for_spring_model() -> None:
    crystal = simple_hexagonal()
    symmetry, table, ref = _harmonic_setup(crystal)
    rows = get_constraint_symmetry(crystal.nat, symmetry, table)
    assert len(rows) > 0
    for row in rows:
        assert abs(_row_residual(row, ref)) < 1.0e-10
    for row in get_constraint_translation(table):
        assert abs(_row_residual(row, ref)) < 1.0e-10


def test_symmetry_rows_independent_of_worker_count() -> None:
    crystal = simple_hexagonal()
    symmetry, table, _ = _harmonic_setup(crystal)
    serial = get_constraint_symmetry(crystal.nat, symmetry, table, n_workers=1)
    threaded = get_constraint_symmetry(crystal.nat, symmetry, table, n_workers=3)
    assert serial == threaded
    with pytest.raises(ValueError):
        get_constraint_symmetry(crystal.nat, symmetry, table, n_workers=0)


def test_reduced_basis_round_trip() -> None:
    crystal = simple_hexagonal()
    symmetry, table, ref = _harmonic_setup(crystal)
    rows = get_constraint_symmetry(crystal.nat, symmetry, table) + get_constraint_translation(table)
    basis = build_reduced_basis([table], [rows])
    assert basis.nfree < table.nparams
    assert np.allclose(basis.expand(basis.project(ref)), ref, atol=1.0e-10)

    x = np.linspace(-1.0, 1.0, basis.nfree)
    expanded = basis.expand(x)
    assert np.array_equal(basis.project(expanded), x)
    assert np.allclose(basis.expansion_matrix() @ x + basis.offset_vector(), expanded)
    for row in rows:
        assert abs(_row_residual(row, expanded)) < 1.0e-8


def test_fixed_values_become_fixed_parameters() -> None:
    _, table, _ = _harmonic_setup(simple_cubic())
    basis = build_reduced_basis([table], [[]], fixed_values={1: 0.5})
    assert basis.fixed == ((1, 0.5),)
    assert basis.nfree == table.nparams - 1
    assert basis.expand(np.zeros(basis.nfree))[1] == 0.5
    with pytest.raises(ValueError):
        build_reduced_basis([table], [[]], fixed_values={table.nparams: 1.0})


def test_constraint_matrix_matches_rows() -> None:
    _, table, ref = _harmonic_setup(simple_cubic())
    rows = get_constraint_translation(table)
    cmat, dvec = build_constraint_matrix([rows], [table], fixed_values={0: ref[0]})
    assert cmat.shape == (len(rows) + 1, table.nparams)
    assert cmat.flags["F_CONTIGUOUS"]
    assert np.allclose(cmat @ ref, dvec)


def test_constraint_matrix_reduces_redundant_fixed_values() -> None:
    _, table, _ = _harmonic_setup(simple_cubic())
    rows = [[ConstraintRow.from_dict({0: 1.0, 1: -1.0})]]
    cmat, dvec = build_constraint_matrix(rows, [table], fixed_values={0: 0.5, 1: 0.5})
    assert cmat.shape == (2, table.nparams)
    assert np.linalg.matrix_rank(cmat) == 2
    assert np.allclose(cmat @ np.array([0.5, 0.5, 0.0]), dvec)
    with pytest.raises(ValueError):
        build_constraint_matrix(rows, [table], fixed_values={0: 0.5, 1: 1.5})


def test_reduced_basis_rejects_inconsistent_partition() -> None:
    with pytest.raises(ValueError):
        ReducedBasis(nparams=2, free=(0,), fixed=((0, 1.0),))
    with pytest.raises(ValueError):
        ReducedBasis(nparams=2, free=(0,), dependent=(DependentParameter(index=1, terms=((1, 1.0),)),))
    basis = ReducedBasis(nparams=3, free=(0, 2), dependent=(DependentParameter(index=1, terms=((0, 2.0),), offset=1.0),))
    assert np.allclose(basis.expand([1.0, 3.0]), [1.0, 3.0, 3.0])
    with pytest.raises(ValueError):
        basis.expand([1.0])
