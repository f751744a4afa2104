"""L1-regularized force fitting: coordinate descent and split-Bregman iterations."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.linalg import solve_triangular

from .design_matrix import LinearSystem
from .diagnostics import ConvergenceWarning
from .types import Array

if TYPE_CHECKING:
    from ifcfit.modeling.schema import LassoConfig


logger = logging.getLogger(__name__)

IC_ZERO_CRITERION = 1.0e-8
CG_TOLERANCE = 1.0e-10
SPLIT_BREGMAN_MINITER = 5
ZERO_PARAM_EPS = 1.0e-15


@dataclass(frozen=True)
class LassoProblem:
    """Everything an L1 fit needs, passed explicitly.

    ``amat``/``bvec`` are the (reduced) fitting system; ``column_orders`` and
    ``prefactor`` describe each column. The optional ``*_test`` fields hold an
    independent validation system with the same columns.
    """

    amat: Array
    bvec: Array
    fnorm: float
    column_orders: Array
    prefactor: Array
    amat_test: Array | None = None
    bvec_test: Array | None = None
    fnorm_test: float | None = None

    def __post_init__(self) -> None:
        m, n = np.shape(self.amat)
        if np.shape(self.bvec) != (m,):
            raise ValueError("LassoProblem.bvec must match the rows of amat.")
        if np.shape(self.column_orders) != (n,) or np.shape(self.prefactor) != (n,):
            raise ValueError("LassoProblem.column_orders and prefactor must have one entry per column.")
        if self.amat_test is not None:
            if self.bvec_test is None or self.fnorm_test is None:
                raise ValueError("Validation data needs amat_test, bvec_test and fnorm_test together.")
            if np.shape(self.amat_test)[1] != n:
                raise ValueError("amat_test must have the same number of columns as amat.")

    @classmethod
    def from_system(cls, system: LinearSystem, validation: LinearSystem | None = None) -> LassoProblem:
        return cls(
            amat=system.amat,
            bvec=system.bvec,
            fnorm=system.fnorm,
            column_orders=system.column_orders,
            prefactor=system.prefactor,
            amat_test=None if validation is None else validation.amat,
            bvec_test=None if validation is None else validation.bvec,
            fnorm_test=None if validation is None else validation.fnorm,
        )

    @property
    def ncols(self) -> int:
        return int(np.shape(self.amat)[1])

    @property
    def norders(self) -> int:
        return int(np.max(self.column_orders)) + 1 if self.ncols else 0


@dataclass(frozen=True)
class LassoResult:
    params: Array
    l1_alpha: float
    fitting_error: float
    validation_error: float | None
    nzero: tuple[int, ...]
    sparse_scan: tuple[tuple[float, tuple[int, ...], float], ...] = ()
    recommended_max_alpha: float | None = None


@dataclass(frozen=True)
class LassoPath:
    alphas: Array
    fitting_errors: Array
    validation_errors: Array
    nzero: Array
    params: Array


def shrink(z: float | Array, t: float) -> float | Array:
    """Soft-threshold operator ``sign(z) * max(|z| - t, 0)``."""

    return np.sign(z) * np.maximum(np.abs(z) - t, 0.0)


def l1_alpha_grid(l1_alpha_min: float, l1_alpha_max: float, num_l1_alpha: int) -> Array:
    """Geometric grid from ``l1_alpha_max`` down to ``l1_alpha_min`` (``num_l1_alpha + 1`` points)."""

    if l1_alpha_min <= 0.0 or l1_alpha_max <= 0.0:
        raise ValueError("l1_alpha_min and l1_alpha_max must be positive.")
    if num_l1_alpha <= 0:
        raise ValueError("num_l1_alpha must be positive.")
    i = np.arange(num_l1_alpha + 1, dtype=float)
    return l1_alpha_min * (l1_alpha_max / l1_alpha_min) ** ((num_l1_alpha - i) / num_l1_alpha)


def calculate_residual(amat: Array, params: Array, bvec: Array, f2norm: float) -> float:
    """``||amat @ params - bvec||**2 / f2norm``."""

    res = amat @ params - bvec
    return float(res @ res) / f2norm


def count_zero_parameters(
    params: Array,
    column_orders: Array,
    norders: int,
    eps: float = ZERO_PARAM_EPS,
) -> tuple[int, ...]:
    is_zero = np.abs(params) < eps
    return tuple(int(np.count_nonzero(is_zero & (column_orders == order))) for order in range(norders))


def displacement_scale(column_orders: Array, dnorm: float) -> Array:
    """Per-column factor ``dnorm**-(order+1)`` from dividing displacements by ``dnorm``."""

    if dnorm <= 0.0:
        raise ValueError("dnorm must be positive.")
    return dnorm ** (-(np.asarray(column_orders, dtype=float) + 1.0))


def standardize_columns(amat: Array, bvec: Array) -> tuple[Array, Array, Array]:
    """Center and scale every column to unit variance and center ``bvec``.

    Returns ``(amat_std, bvec_centered, factor_std)``. Coefficients of the
    standardized problem map back as ``x * factor_std``. Constant columns carry
    no information after centering and get ``factor_std = 0``.
    """

    amat = np.asarray(amat, dtype=float)
    mean = amat.mean(axis=0)
    var = (amat * amat).mean(axis=0) - mean * mean
    std = np.sqrt(np.maximum(var, 0.0))
    nonzero = std > 0.0
    factor_std = np.zeros_like(std)
    factor_std[nonzero] = 1.0 / std[nonzero]
    amat_std = np.asfortranarray((amat - mean) * factor_std)
    return amat_std, bvec - bvec.mean(), factor_std


class ColumnProductCache:
    """Columns of ``A^T A``, computed only once a coefficient first moves."""

    def __init__(self, amat: Array) -> None:
        self.amat = amat
        n = amat.shape[1]
        self.prod = np.zeros((n, n), dtype=float, order="F")
        self.has_prod = np.zeros(n, dtype=bool)

    def column(self, i: int) -> Array:
        if not self.has_prod[i]:
            self.prod[:, i] = self.amat.T @ self.amat[:, i]
            self.has_prod[i] = True
        return self.prod[:, i]


def coordinate_descent(
    amat: Array,
    bvec: Array,
    alpha: float,
    tolerance: float = 1.0e-7,
    maxiter: int = 100000,
    beta0: Array | None = None,
    grad0: Array | None = None,
    cache: ColumnProductCache | None = None,
    scale_beta: Array | None = None,
    output_frequency: int = 1000,
    f2norm: float | None = None,
) -> tuple[Array, Array, int]:
    """Cyclic coordinate descent for ``||A x - b||**2 / (2M) + alpha * ||x||_1``.

    With ``beta0`` and ``grad0`` the run continues from a previous solution
    (the gradient ``A^T (b - A beta0)`` must match ``beta0``). ``scale_beta``
    selects the update for columns that are not standardized, with
    ``scale_beta[i] = M / (A_i . A_i)``. Returns ``(beta, grad, niter)``.
    """

    m, n = amat.shape
    minv = 1.0 / m
    if cache is None:
        cache = ColumnProductCache(amat)
    if beta0 is None:
        beta = np.zeros(n, dtype=float)
        grad = amat.T @ bvec
    else:
        if grad0 is None:
            raise ValueError("grad0 is required for a warm start.")
        beta = np.array(beta0, dtype=float)
        grad = np.array(grad0, dtype=float)
    f2norm = float(bvec @ bvec) if f2norm is None else f2norm

    iloop = 0
    converged = False
    while iloop < maxiter:
        delta = beta.copy()
        for i in range(n):
            if scale_beta is None:
                beta[i] = shrink(minv * grad[i] + beta[i], alpha)
            else:
                beta[i] = shrink(minv * grad[i] + beta[i] / scale_beta[i], alpha) * scale_beta[i]
            delta[i] -= beta[i]
            if delta[i] != 0.0:
                grad += cache.column(i) * delta[i]
        iloop += 1
        diff = float(np.sqrt(delta @ delta / n))
        if diff < tolerance:
            converged = True
            break
        if iloop % output_frequency == 0:
            res = amat @ beta - bvec
            logger.debug(
                "Coordinate descent %5d: |dx| = %.6e, |x|_1 = %.6e, |Ax-f| = %.6e",
                iloop,
                diff,
                float(np.abs(beta).sum()),
                float(np.sqrt(res @ res / f2norm)) if f2norm > 0.0 else 0.0,
            )

    if converged:
        logger.info("Coordinate descent converged in %d iterations.", iloop)
    else:
        warnings.warn(
            f"Coordinate descent did not converge within {maxiter} iterations.",
            ConvergenceWarning,
            stacklevel=2,
        )
    return beta, grad, iloop


def incomplete_cholesky_factorization(amat: Array) -> tuple[Array, Array]:
    """IC(0) factor of a symmetric matrix: returns lower ``L`` and ``d = 1 / diag(L)``.

    Entries with ``|A_ij| < 1e-8`` stay zero in ``L``.
    """

    amat = np.asarray(amat, dtype=float)
    n = amat.shape[0]
    lmat = np.zeros((n, n), dtype=float)
    d = np.zeros(n, dtype=float)
    if n == 0:
        return lmat, d

    lmat[0, 0] = amat[0, 0]
    d[0] = 1.0 / lmat[0, 0]
    for i in range(1, n):
        for j in range(i + 1):
            if abs(amat[i, j]) < IC_ZERO_CRITERION:
                continue
            lmat[i, j] = amat[i, j] - float(np.sum(lmat[i, :j] * lmat[j, :j] * d[:j]))
        d[i] = 1.0 / lmat[i, i]
    return lmat, d


def forward_backward_substitution(lmat: Array, d: Array, vec: Array) -> Array:
    """Apply ``(L D L^T)^-1``-style preconditioning from an IC(0) factor."""

    y = solve_triangular(lmat, vec, lower=True)
    upper = np.triu(d[:, None] * lmat.T, k=1) + np.eye(lmat.shape[0])
    return solve_triangular(upper, y, lower=False, unit_diagonal=True)


def minimize_quadratic_cg(
    qmat: Array,
    bvec: Array,
    x0: Array,
    nmax: int,
    preconditioner: int = 0,
    lmat: Array | None = None,
    d: Array | None = None,
) -> Array:
    """Up to ``nmax`` (preconditioned) conjugate-gradient steps on ``Q x = b``.

    Stops once ``||r|| / ||b|| < 1e-10``. ``preconditioner`` is 0 (none) or
    1 (IC(0) factors ``lmat``, ``d``).
    """

    if preconditioner not in (0, 1):
        raise RuntimeError(f"Invalid preconditioner {preconditioner}: expected 0 or 1.")
    if preconditioner == 1 and (lmat is None or d is None):
        raise RuntimeError("Preconditioned CG requires the incomplete Cholesky factors.")

    x = np.array(x0, dtype=float)
    bnorm2 = float(bvec @ bvec)
    if bnorm2 == 0.0:
        return np.zeros_like(x)
    inv_bnorm2 = 1.0 / bnorm2

    r = bvec - qmat @ x
    if np.sqrt(float(r @ r) * inv_bnorm2) < CG_TOLERANCE:
        return x

    if preconditioner == 0:
        p = r.copy()
        for _ in range(nmax):
            qp = qmat @ p
            rr = float(r @ r)
            step = rr / float(p @ qp)
            x += step * p
            r -= step * qp
            rr_new = float(r @ r)
            if np.sqrt(rr_new * inv_bnorm2) < CG_TOLERANCE:
                break
            p = r + (rr_new / rr) * p
    else:
        z = forward_backward_substitution(lmat, d, r)
        p = z.copy()
        rz = float(r @ z)
        for _ in range(nmax):
            qp = qmat @ p
            step = rz / float(p @ qp)
            x += step * p
            r -= step * qp
            if np.sqrt(float(r @ r) * inv_bnorm2) < CG_TOLERANCE:
                break
            z = forward_backward_substitution(lmat, d, r)
            rz_new = float(r @ z)
            p = z + (rz_new / rz) * p
            rz = rz_new
    return x


def split_bregman_minimization(
    amat: Array,
    fvec: Array,
    alpha: float,
    l2_lambda: float = 10.0,
    tolerance: float = 1.0e-7,
    maxiter: int = 100000,
    maxiter_cg: int = 5,
    preconditioner: int = 0,
    init_mode: int = 0,
    x0: Array | None = None,
    b0: Array | None = None,
    d0: Array | None = None,
    output_frequency: int = 1000,
    f2norm: float | None = None,
) -> tuple[Array, Array, Array, int]:
    """Split-Bregman iterations for L1-penalized least squares with weight ``alpha``.

    ``init_mode`` 0 starts from ``x = b = d = 0``, 1 continues from
    ``(x0, b0, d0)``, 2 starts from zero auxiliaries with ``x`` from a CG
    least-squares solve. Converges once the RMS change of ``x`` is below
    ``tolerance`` after at least five iterations. Returns ``(x, b, d, niter)``.
    """

    m, n = amat.shape
    inv_lambda = 1.0 / l2_lambda
    al = alpha * l2_lambda
    f2norm = float(fvec @ fvec) if f2norm is None else f2norm

    qmat = amat.T @ amat
    qmat[np.diag_indices(n)] += alpha * alpha * l2_lambda
    bvec_cg = amat.T @ fvec

    lmat = d_ic = None
    if preconditioner == 1:
        logger.debug("Preparing IC(0) preconditioner for %d parameters.", n)
        lmat, d_ic = incomplete_cholesky_factorization(qmat)
    elif preconditioner != 0:
        raise RuntimeError(f"Invalid preconditioner {preconditioner}: expected 0 or 1.")

    if init_mode == 1:
        if x0 is None or b0 is None or d0 is None:
            raise ValueError("init_mode=1 requires x0, b0 and d0.")
        x = np.array(x0, dtype=float)
        bvec = np.array(b0, dtype=float)
        dvec = np.array(d0, dtype=float)
    elif init_mode in (0, 2):
        x = np.zeros(n, dtype=float)
        bvec = np.zeros(n, dtype=float)
        dvec = np.zeros(n, dtype=float)
        if init_mode == 2:
            x = minimize_quadratic_cg(qmat, bvec_cg + al * (dvec - bvec), x, 20 * n, preconditioner, lmat, d_ic)
    else:
        raise ValueError(f"Invalid init_mode {init_mode}: expected 0, 1 or 2.")

    niter = 0
    converged = False
    for it in range(maxiter):
        niter = it + 1
        rhs = bvec_cg + al * (dvec - bvec)
        x_new = minimize_quadratic_cg(qmat, rhs, x, maxiter_cg, preconditioner, lmat, d_ic)
        dvec = shrink(alpha * x_new + bvec, inv_lambda)
        bvec = bvec + alpha * x_new - dvec

        diff = float((x - x_new) @ (x - x_new))
        x = x_new
        if niter % output_frequency == 0:
            res = amat @ x - fvec
            logger.debug(
                "Split Bregman %5d: |dx| = %.6e, |x|_1 = %.6e, |Ax-f| = %.6e, |d-alpha x| = %.6e",
                niter,
                np.sqrt(diff / n),
                float(np.abs(x).sum()),
                float(np.sqrt(res @ res / f2norm)) if f2norm > 0.0 else 0.0,
                float(np.linalg.norm(dvec - alpha * x)),
            )
        if np.sqrt(diff / n) < tolerance and it >= SPLIT_BREGMAN_MINITER:
            converged = True
            break

    if converged:
        logger.info("Split Bregman converged in %d iterations.", niter)
    else:
        warnings.warn(
            f"Split Bregman did not converge within {maxiter} iterations.",
            ConvergenceWarning,
            stacklevel=2,
        )
    return x, bvec, dvec, niter


def resolve_algorithm(algorithm: str) -> str:
    a = str(algorithm).strip().lower()
    if a in {"cd", "coordinate_descent", "coordinate-descent", "0"}:
        return "cd"
    if a in {"sb", "split_bregman", "split-bregman", "bregman", "1"}:
        return "sb"
    raise ValueError(f"Unknown lasso algorithm '{algorithm}'. Use 'coordinate_descent' or 'split_bregman'.")


class _CoordinateDescentRun:
    def __init__(self, amat: Array, bvec: Array, standardize: bool) -> None:
        m = amat.shape[0]
        if standardize:
            self.amat, self.bvec, self.factor_std = standardize_columns(amat, bvec)
            self.scale_beta = None
        else:
            self.amat, self.bvec = amat, bvec
            self.factor_std = np.ones(amat.shape[1], dtype=float)
            colnorm = np.einsum("ij,ij->j", amat, amat) / m
            if np.any(colnorm <= 0.0):
                raise ValueError("Design matrix has an all-zero column; use standardize=True.")
            self.scale_beta = 1.0 / colnorm
        self.cache = ColumnProductCache(self.amat)
        self.beta: Array | None = None
        self.grad: Array | None = None
        self.lambda_max = float(np.max(np.abs(self.amat.T @ self.bvec))) / m if amat.shape[1] else 0.0

    def solve(self, alpha: float, config: LassoConfig, warm: bool, f2norm: float) -> Array:
        self.beta, self.grad, _ = coordinate_descent(
            self.amat,
            self.bvec,
            alpha,
            tolerance=config.tolerance,
            maxiter=config.maxiter,
            beta0=self.beta if warm else None,
            grad0=self.grad if warm else None,
            cache=self.cache,
            scale_beta=self.scale_beta,
            output_frequency=config.output_frequency,
            f2norm=f2norm,
        )
        return self.beta * self.factor_std


class _SplitBregmanRun:
    def __init__(self, amat: Array, bvec: Array) -> None:
        self.amat, self.bvec = amat, bvec
        n = amat.shape[1]
        self.x = np.zeros(n)
        self.b = np.zeros(n)
        self.d = np.zeros(n)

    def solve(self, alpha: float, config: LassoConfig, warm: bool, f2norm: float) -> Array:
        self.x, self.b, self.d, _ = split_bregman_minimization(
            self.amat,
            self.bvec,
            alpha,
            l2_lambda=config.l2_lambda,
            tolerance=config.tolerance,
            maxiter=config.maxiter,
            maxiter_cg=config.maxiter_cg,
            preconditioner=config.preconditioner,
            init_mode=1 if warm else 0,
            x0=self.x,
            b0=self.b,
            d0=self.d,
            output_frequency=config.output_frequency,
            f2norm=f2norm,
        )
        return self.x.copy()


def _scaled_problem(problem: LassoProblem, config: LassoConfig) -> tuple[Array, Array | None, Array]:
    scale = displacement_scale(problem.column_orders, config.dnorm)
    amat = np.asfortranarray(np.asarray(problem.amat, dtype=float) * scale)
    amat_test = None
    if problem.amat_test is not None:
        amat_test = np.asarray(problem.amat_test, dtype=float) * scale
    return amat, amat_test, scale


def _make_run(problem: LassoProblem, config: LassoConfig, amat: Array) -> _CoordinateDescentRun | _SplitBregmanRun:
    bvec = np.asarray(problem.bvec, dtype=float)
    if resolve_algorithm(config.algorithm) == "cd":
        run = _CoordinateDescentRun(amat, bvec, bool(config.standardize))
        logger.info("Recommended l1_alpha_max = %.6e", run.lambda_max)
        return run
    return _SplitBregmanRun(amat, bvec)


def lasso_path(problem: LassoProblem, config: LassoConfig) -> LassoPath:
    """Warm-started sweep over a geometric grid of L1 strengths.

    Fitting and validation errors are relative RMS residuals; validation
    errors are NaN without validation data.
    """

    amat, amat_test, scale = _scaled_problem(problem, config)
    run = _make_run(problem, config, amat)
    alphas = l1_alpha_grid(config.l1_alpha_min, config.l1_alpha_max, config.num_l1_alpha)
    f2norm = problem.fnorm**2
    norders = problem.norders

    fit_err = np.zeros(alphas.size)
    val_err = np.full(alphas.size, np.nan)
    nzero = np.zeros((alphas.size, norders), dtype=int)
    params = np.zeros((alphas.size, problem.ncols))

    for ialpha, alpha in enumerate(alphas):
        logger.info("L1 alpha = %.6e (%d/%d)", alpha, ialpha + 1, alphas.size)
        param = run.solve(float(alpha), config, warm=ialpha > 0, f2norm=f2norm)
        fit_err[ialpha] = np.sqrt(calculate_residual(amat, param, problem.bvec, f2norm))
        if amat_test is not None:
            val_err[ialpha] = np.sqrt(
                calculate_residual(amat_test, param, problem.bvec_test, problem.fnorm_test**2)
            )
        nzero[ialpha] = count_zero_parameters(param, problem.column_orders, norders)
        params[ialpha] = param * scale

    return LassoPath(alphas=alphas, fitting_errors=fit_err, validation_errors=val_err, nzero=nzero, params=params)


def sparse_threshold_scan(
    amat: Array,
    params: Array,
    bvec: Array,
    f2norm: float,
    prefactor: Array,
    column_orders: Array,
    norders: int,
) -> tuple[tuple[float, tuple[int, ...], float], ...]:
    """Zero parameters with ``|x| * prefactor`` below growing thresholds ``1e-20 .. 1e1``.

    Each entry is ``(threshold, zeros per order, fitting error in %)``.
    """

    param_copy = np.array(params, dtype=float)
    scale_factor = 1.0e21**0.01
    out = []
    for itol in range(101):
        thr = 1.0e-20 * scale_factor**itol
        small = np.abs(param_copy) * prefactor < thr
        param_copy[small] = 0.0
        nz = tuple(int(np.count_nonzero(small & (column_orders == order))) for order in range(norders))
        err = np.sqrt(calculate_residual(amat, param_copy, bvec, f2norm)) * 100.0
        out.append((float(thr), nz, float(err)))
    return tuple(out)


def lasso_fit(problem: LassoProblem, config: LassoConfig) -> LassoResult:
    """Single L1 fit at ``config.l1_alpha``; returns parameters in physical units."""

    amat, amat_test, scale = _scaled_problem(problem, config)
    run = _make_run(problem, config, amat)
    f2norm = problem.fnorm**2
    norders = problem.norders

    param = run.solve(float(config.l1_alpha), config, warm=False, f2norm=f2norm)
    fit_err = float(np.sqrt(calculate_residual(amat, param, problem.bvec, f2norm)))
    val_err = None
    if amat_test is not None:
        val_err = float(np.sqrt(calculate_residual(amat_test, param, problem.bvec_test, problem.fnorm_test**2)))
    nzero = count_zero_parameters(param, problem.column_orders, norders)

    logger.info("Lasso residual: %.6e %%", fit_err * 100.0)
    for order in range(norders):
        nonzero = int(np.count_nonzero(problem.column_orders == order)) - nzero[order]
        logger.info("Number of non-zero parameters of order %d: %d", order, nonzero)

    scan: tuple[tuple[float, tuple[int, ...], float], ...] = ()
    if isinstance(run, _SplitBregmanRun):
        scan = sparse_threshold_scan(
            amat, param, problem.bvec, f2norm, problem.prefactor, problem.column_orders, norders
        )

    return LassoResult(
        params=param * scale,
        l1_alpha=float(config.l1_alpha),
        fitting_error=fit_err,
        validation_error=val_err,
        nzero=nzero,
        sparse_scan=scan,
        recommended_max_alpha=run.lambda_max if isinstance(run, _CoordinateDescentRun) else None,
    )
