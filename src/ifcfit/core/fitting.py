"""Least-squares solvers for the force-fitting problem."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from scipy.linalg import lapack, lstsq, qr, svdvals

from .design_matrix import LinearSystem
from .diagnostics import RankDeficiencyWarning
from .types import Array, ReducedBasis


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeastSquaresResult:
    params: Array
    rank: int
    residual: float
    fitting_error: float


def _fitting_error(residual: float, fnorm: float) -> float:
    if fnorm <= 0.0:
        return 0.0
    return residual / fnorm * 100.0


def rank_qrd(mat: Array, tolerance: float = 1.0e-12) -> int:
    """Rank revealed by column-pivoted QR, relative to the leading diagonal of ``R``."""

    mat = np.asarray(mat, dtype=float)
    if mat.size == 0:
        return 0
    r = qr(mat, mode="r", pivoting=True)[0]
    diag = np.abs(np.diag(r))
    if diag[0] < np.finfo(float).eps:
        return 0
    return int(np.count_nonzero(diag > tolerance * diag[0]))


def rank_svd(mat: Array, tolerance: float = 1.0e-12) -> int:
    mat = np.asarray(mat, dtype=float)
    if mat.size == 0:
        return 0
    s = svdvals(mat)
    if s[0] <= 0.0:
        return 0
    return int(np.count_nonzero(s > tolerance * s[0]))


def fit_without_constraints(amat: Array, bvec: Array, fnorm: float | None = None) -> LeastSquaresResult:
    """Minimum-norm least-squares solution of ``amat @ x ~ bvec`` via SVD (``gelss``).

    A rank below the number of columns is reported with
    ``RankDeficiencyWarning`` and the minimum-norm solution is still returned.
    """

    amat = np.asarray(amat, dtype=float)
    bvec = np.asarray(bvec, dtype=float)
    m, n = amat.shape
    if bvec.shape != (m,):
        raise ValueError(f"bvec must have shape ({m},), got {bvec.shape}.")

    logger.info("SVD fit without constraints: %d rows x %d columns", m, n)
    x, _, rank, _ = lstsq(amat, bvec, cond=np.finfo(float).eps * max(m, n), lapack_driver="gelss")
    rank = int(rank)
    logger.info("Rank of the design matrix: %d", rank)
    if rank < n:
        warnings.warn(
            f"Matrix is rank-deficient (rank {rank} < {n} parameters). "
            "Force constants could not be determined uniquely.",
            RankDeficiencyWarning,
            stacklevel=2,
        )

    residual = float(np.linalg.norm(amat @ x - bvec))
    ref = float(np.linalg.norm(bvec)) if fnorm is None else float(fnorm)
    err = _fitting_error(residual, ref)
    logger.info("Residual norm: %.6e", residual)
    logger.info("Fitting error: %.6e %%", err)
    return LeastSquaresResult(params=np.asarray(x, dtype=float), rank=rank, residual=residual, fitting_error=err)


def fit_with_constraints(
    amat: Array,
    bvec: Array,
    cmat: Array,
    dvec: Array,
    fnorm: float | None = None,
) -> LeastSquaresResult:
    """Solve ``min ||amat @ x - bvec||`` subject to ``cmat @ x = dvec`` with LAPACK ``dgglse``.

    The rank of the stacked ``[amat; cmat]`` is a diagnostic: a value below the
    number of parameters warns but does not stop the solve. A nonzero LAPACK
    status raises ``RuntimeError``.
    """

    amat = np.asarray(amat, dtype=float)
    bvec = np.asarray(bvec, dtype=float)
    cmat = np.asarray(cmat, dtype=float)
    dvec = np.asarray(dvec, dtype=float)
    m, n = amat.shape
    p = cmat.shape[0]
    if cmat.ndim != 2 or cmat.shape[1] != n:
        raise ValueError(f"cmat must have {n} columns.")
    if dvec.shape != (p,):
        raise ValueError(f"dvec must have shape ({p},), got {dvec.shape}.")
    if p == 0:
        return fit_without_constraints(amat, bvec, fnorm=fnorm)
    if not p <= n <= m + p:
        raise ValueError(f"dgglse requires P <= N <= M + P (M={m}, N={n}, P={p}).")

    logger.info("Constrained QR fit: %d rows x %d columns, %d constraint rows", m, n, p)
    rank = rank_qrd(np.vstack([amat, cmat]), tolerance=1.0e-12)
    if rank != n:
        warnings.warn(
            f"rank([A; C]) = {rank} != N = {n}. The constrained fit may be unreliable; "
            "reduce the cutoff radii or add linearly-independent displacement patterns.",
            RankDeficiencyWarning,
            stacklevel=2,
        )

    _, _, _, x, info = lapack.dgglse(
        np.asfortranarray(amat.copy()),
        np.asfortranarray(cmat.copy()),
        bvec.copy(),
        dvec.copy(),
    )
    if info != 0:
        raise RuntimeError(f"dgglse failed with info = {info}.")

    residual = float(np.linalg.norm(amat @ x - bvec))
    ref = float(np.linalg.norm(bvec)) if fnorm is None else float(fnorm)
    err = _fitting_error(residual, ref)
    logger.info("Residual norm: %.6e", residual)
    logger.info("Fitting error: %.6e %%", err)
    return LeastSquaresResult(params=np.asarray(x, dtype=float), rank=rank, residual=residual, fitting_error=err)


def recover_original_forceconstants(x: Array, basis: ReducedBasis) -> Array:
    return basis.expand(x)


def fit_algebraic_constraints(system: LinearSystem, basis: ReducedBasis) -> tuple[Array, LeastSquaresResult]:
    """SVD fit in the reduced basis, then expansion to all parameters."""

    if system.ncols != basis.nfree:
        raise ValueError(f"System has {system.ncols} columns but the basis has {basis.nfree} free parameters.")
    if basis.nfree == 0:
        result = LeastSquaresResult(
            params=np.zeros(0),
            rank=0,
            residual=float(np.linalg.norm(system.bvec)),
            fitting_error=_fitting_error(float(np.linalg.norm(system.bvec)), system.fnorm),
        )
        return recover_original_forceconstants(result.params, basis), result
    result = fit_without_constraints(system.amat, system.bvec, fnorm=system.fnorm)
    return recover_original_forceconstants(result.params, basis), result
