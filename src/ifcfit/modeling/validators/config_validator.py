"""Validation helpers for fitting configuration."""

from __future__ import annotations

from ifcfit.core.lasso import resolve_algorithm
from ifcfit.core.solver import resolve_solver
from ifcfit.modeling.schema import FitConfig, LassoConfig


def validate_fit_config(cfg: FitConfig) -> None:
    if cfg.maxorder <= 0:
        raise ValueError("maxorder must be positive.")
    if cfg.basis.strip().lower() not in {"cartesian", "lattice"}:
        raise ValueError(f"Invalid basis '{cfg.basis}'. Use one of: 'Cartesian', 'Lattice'.")
    if cfg.constraint_mode not in {"algebraic", "explicit"}:
        raise ValueError("constraint_mode must be one of: algebraic, explicit.")
    solver = resolve_solver(cfg.solver, cfg.constraint_mode)
    if cfg.constraint_mode == "explicit" and solver == "lasso":
        raise ValueError("solver='lasso' requires constraint_mode='algebraic'.")
    if cfg.constraint_mode == "algebraic" and solver == "qr":
        raise ValueError("solver='qr' requires constraint_mode='explicit'.")
    if cfg.nstart < 1:
        raise ValueError("nstart must be >= 1.")
    if cfg.nend is not None and cfg.nend < cfg.nstart:
        raise ValueError("nend must be >= nstart.")
    if cfg.skip is not None:
        if len(cfg.skip) != 2 or cfg.skip[0] < 1 or cfg.skip[1] < cfg.skip[0]:
            raise ValueError("skip must be an inclusive 1-based range (first, last) with first <= last.")
    if cfg.n_workers <= 0:
        raise ValueError("n_workers must be positive.")
    if cfg.tolerance_constraint <= 0.0:
        raise ValueError("tolerance_constraint must be positive.")
    for key in cfg.fixed_values:
        if int(key) < 0:
            raise ValueError("fixed_values keys must be non-negative parameter indices.")


def validate_lasso_config(cfg: LassoConfig) -> None:
    resolve_algorithm(cfg.algorithm)
    if cfg.l1_alpha < 0.0:
        raise ValueError("l1_alpha must be non-negative.")
    if cfg.l1_alpha_min <= 0.0 or cfg.l1_alpha_max <= 0.0:
        raise ValueError("l1_alpha_min and l1_alpha_max must be positive.")
    if cfg.l1_alpha_min > cfg.l1_alpha_max:
        raise ValueError("l1_alpha_min must not exceed l1_alpha_max.")
    if cfg.num_l1_alpha <= 0:
        raise ValueError("num_l1_alpha must be positive.")
    if cfg.l2_lambda <= 0.0:
        raise ValueError("l2_lambda must be positive.")
    if cfg.tolerance <= 0.0:
        raise ValueError("tolerance must be positive.")
    if cfg.maxiter <= 0:
        raise ValueError("maxiter must be positive.")
    if cfg.maxiter_cg <= 0:
        raise ValueError("maxiter_cg must be positive.")
    if cfg.preconditioner not in (0, 1):
        raise ValueError("preconditioner must be 0 (none) or 1 (incomplete Cholesky).")
    if cfg.dnorm <= 0.0:
        raise ValueError("dnorm must be positive.")
    if cfg.output_frequency <= 0:
        raise ValueError("output_frequency must be positive.")
