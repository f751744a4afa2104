import numpy as np
import pytest

from ifcfit.core import (
    RankDeficiencyWarning,
    ReducedBasis,
    fit_with_constraints,
    fit_without_constraints,
    rank_qrd,
    rank_svd,
    recover_original_forceconstants,
)


def _random_system(m: int = 20, n: int = 3, seed: int = 0):
    rng = np.random.default_rng(seed)
    a = rng.standard_normal((m, n))
    x = rng.standard_normal(n)
    return a, x, a @ x


def test_rank_detects_duplicate_columns() -> None:
    a, _, _ = _random_system()
    dup = np.column_stack([a, a[:, 0]])
    assert rank_qrd(a) == 3
    assert rank_svd(a) == 3
    assert rank_qrd(dup) == 3
    assert rank_svd(dup) == 3
    assert rank_qrd(np.zeros((4, 2))) == 0


def test_rank_never_drops_when_rows_are_added() -> None:
    a, _, _ = _random_system(m=2, n=4)
    rng = np.random.default_rng(7)
    ranks = []
    mat = a
    for _ in range(3):
        ranks.append(rank_qrd(mat))
        mat = np.vstack([mat, rng.standard_normal((1, 4))])
    ranks.append(rank_qrd(mat))
    assert ranks == sorted(ranks)
    assert ranks[-1] == 4


def test_unconstrained_fit_recovers_exact_solution() -> None:
    a, x, b = _random_system()
    res = fit_without_constraints(a, b)
    assert np.allclose(res.params, x)
    assert res.rank == 3
    assert res.fitting_error < 1.0e-10


def test_unconstrained_fit_warns_on_rank_deficiency() -> None:
    a, _, b = _random_system()
    dup = np.column_stack([a, a[:, 0]])
    with pytest.warns(RankDeficiencyWarning):
        res = fit_without_constraints(dup, b)
    assert res.rank == 3
    assert np.allclose(dup @ res.params, b)


def test_constrained_fit_matches_kkt_solution() -> None:
    rng = np.random.default_rng(3)
    a = rng.standard_normal((15, 3))
    b = rng.standard_normal(15)
    c = np.array([[1.0, 1.0, 0.0]])
    d = np.array([1.0])
    res = fit_with_constraints(a, b, c, d)

    kkt = np.block([[2.0 * a.T @ a, c.T], [c, np.zeros((1, 1))]])
    rhs = np.concatenate([2.0 * a.T @ b, d])
    expected = np.linalg.solve(kkt, rhs)[:3]
    assert np.allclose(res.params, expected)
    assert np.allclose(c @ res.params, d)
    assert res.rank == 3
    assert np.isclose(res.fitting_error, res.residual / np.linalg.norm(b) * 100.0)


def test_constrained_fit_rejects_too_many_constraints() -> None:
    a, _, b = _random_system(n=2)
    with pytest.raises(ValueError):
        fit_with_constraints(a, b, np.eye(3, 2), np.zeros(3))
    with pytest.raises(ValueError):
        fit_with_constraints(a, b, np.eye(1, 3), np.zeros(1))


def test_constrained_fit_without_rows_falls_back_to_svd() -> None:
    a, x, b = _random_system()
    res = fit_with_constraints(a, b, np.zeros((0, 3)), np.zeros(0))
    assert np.allclose(res.params, x)


def test_recover_original_forceconstants_uses_basis() -> None:
    basis = ReducedBasis(nparams=3, free=(0, 2), fixed=((1, -1.5),))
    assert np.allclose(recover_original_forceconstants(np.array([1.0, 2.0]), basis), [1.0, -1.5, 2.0])
