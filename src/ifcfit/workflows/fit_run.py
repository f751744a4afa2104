"""JSON-driven force-constant fitting runs on built-in toy crystals."""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import re
import time
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np

from ifcfit.core import FitSession
from ifcfit.core.fcs import order_name
from ifcfit.modeling import (
    FitConfig,
    LassoConfig,
    validate_displacement_force,
    validate_fit_config,
    validate_lasso_config,
    validate_symmetry_data,
)
from ifcfit.models import (
    SpringParams,
    build_model,
    build_symmetry,
    enumerate_clusters,
    harmonic_force_constants,
    harmonic_forces,
    random_displacements,
    reference_parameters,
)


logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sanitize_token(value: str) -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return token if token else "unnamed"


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _to_builtin(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (np.floating, np.integer)):
        return value.item()
    if isinstance(value, dict):
        return {str(k): _to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_builtin(v) for v in value]
    return value


def _load_json_config(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8-sig") as fh:
        cfg = json.load(fh)
    if not isinstance(cfg, dict):
        raise ValueError("Input config must be a JSON object.")
    return cfg


def _save_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(_to_builtin(payload), fh, indent=2, sort_keys=True)
        fh.write("\n")


def _dataclass_from_section(cls, section: dict[str, Any], name: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' section: {', '.join(unknown)}.")
    return cls(**section)


def _fit_config_from_section(section: dict[str, Any]) -> FitConfig:
    section = dict(section)
    if section.get("skip") is not None:
        section["skip"] = tuple(int(v) for v in section["skip"])
    section["fixed_values"] = {int(k): float(v) for k, v in dict(section.get("fixed_values", {})).items()}
    return _dataclass_from_section(FitConfig, section, "fit")


def _resolve_cutoffs(model_cfg: dict[str, Any], maxorder: int) -> list[float]:
    raw = model_cfg.get("cutoffs", [1.1])
    cutoffs = [float(c) for c in (raw if isinstance(raw, (list, tuple)) else [raw])]
    if len(cutoffs) < maxorder:
        cutoffs.extend([cutoffs[-1]] * (maxorder - len(cutoffs)))
    if any(c < 0.0 for c in cutoffs):
        raise ValueError("model.cutoffs must be non-negative.")
    return cutoffs[:maxorder]


def _save_parameter_data(path: Path, session: FitSession, params_by_order: tuple[np.ndarray, ...]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        fh.write("# order\tmother\tvalue\tmultiplicity\telems\n")
        for table, values in zip(session.tables, params_by_order):
            for (mother, block), value in zip(table.mothers(), values):
                elems = ",".join(str(e) for e in block[0].elems)
                fh.write(f"{order_name(table.order)}\t{mother}\t{float(value):.12e}\t{len(block)}\t{elems}\n")


def _save_path_data(path: Path, alphas: np.ndarray, fit_err: np.ndarray, val_err: np.ndarray, nzero: np.ndarray) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        cols = "\t".join(f"nzero_{order_name(i)}" for i in range(nzero.shape[1]))
        fh.write(f"# l1_alpha\tfitting_error\tvalidation_error\t{cols}\n")
        for i in range(alphas.size):
            v_str = "nan" if not np.isfinite(val_err[i]) else f"{float(val_err[i]):.12e}"
            zeros = "\t".join(str(int(n)) for n in nzero[i])
            fh.write(f"{float(alphas[i]):.10e}\t{float(fit_err[i]):.12e}\t{v_str}\t{zeros}\n")


def _plot_path(path: Path, alphas: np.ndarray, fit_err: np.ndarray, val_err: np.ndarray, *, title: str) -> None:
    import matplotlib.pyplot as plt

    path.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(7.2, 4.6))
    ax.loglog(alphas, fit_err, color="tab:blue", lw=1.6, label="fitting")
    if np.any(np.isfinite(val_err)):
        ax.loglog(alphas, val_err, color="tab:orange", lw=1.6, label="validation")
    ax.set_xlabel(r"L1 $\alpha$")
    ax.set_ylabel("Relative force error")
    ax.set_title(title)
    ax.grid(alpha=0.3)
    ax.legend()
    fig.tight_layout()
    fig.savefig(path, dpi=220)
    plt.close(fig)


def _default_template() -> dict[str, Any]:
    return {
        "run": {
            "name": "simple_cubic_fit",
            "output_dir": "outputs/fit_runs",
            "write_report": True,
            "write_data": True,
            "write_plot": True,
        },
        "model": {
            "name": "simple_cubic",
            "supercell": [3, 3, 3],
            "cutoffs": [1.1],
            "spring": {"longitudinal": 1.0, "transverse": 0.2, "cutoff": 1.1},
        },
        "data": {
            "ndata": 4,
            "ndata_test": 0,
            "amplitude": 0.01,
            "noise": 0.0,
            "seed": 0,
        },
        "fit": {
            "maxorder": 1,
            "basis": "Cartesian",
            "store_zeros": True,
            "constraint_mode": "algebraic",
            "symmetry_constraints": True,
            "translational_invariance": False,
            "solver": "auto",
            "nstart": 1,
            "nend": None,
            "skip": None,
            "n_workers": 1,
            "tolerance_constraint": 1e-8,
            "fixed_values": {},
        },
        "lasso": {
            "algorithm": "coordinate_descent",
            "l1_alpha": 1e-4,
            "l1_alpha_min": 1e-6,
            "l1_alpha_max": 1e-2,
            "num_l1_alpha": 20,
            "cross_validation": False,
            "l2_lambda": 10.0,
            "tolerance": 1e-7,
            "maxiter": 100000,
            "maxiter_cg": 5,
            "preconditioner": 0,
            "standardize": True,
            "dnorm": 1.0,
            "output_frequency": 1000,
        },
    }


def write_input_template(path: str | Path) -> Path:
    out = Path(path)
    _save_json(out, _default_template())
    return out


def run_fit(config_path: str | Path) -> dict[str, Any]:
    cfg_path = Path(config_path)
    cfg = _load_json_config(cfg_path)
    started = _utc_now_iso()
    t0 = time.perf_counter()

    run_cfg = dict(cfg.get("run", {}))
    run_name = str(run_cfg.get("name", f"fit_{cfg_path.stem}"))
    run_name_safe = _sanitize_token(run_name)
    output_dir = Path(run_cfg.get("output_dir", "outputs/fit_runs"))
    if not output_dir.is_absolute():
        output_dir = cfg_path.parent / output_dir
    write_report = bool(run_cfg.get("write_report", True))
    write_data = bool(run_cfg.get("write_data", True))
    write_plot = bool(run_cfg.get("write_plot", True))

    fit_cfg = _fit_config_from_section(dict(cfg.get("fit", {})))
    validate_fit_config(fit_cfg)
    lasso_cfg = _dataclass_from_section(LassoConfig, dict(cfg.get("lasso", {})), "lasso")
    validate_lasso_config(lasso_cfg)

    model_cfg = dict(cfg.get("model", {}))
    model_name = str(model_cfg.get("name", "simple_cubic"))
    supercell = model_cfg.get("supercell", None)
    crystal = build_model(model_name, supercell)
    symmetry = build_symmetry(crystal)
    validate_symmetry_data(symmetry)
    cutoffs = _resolve_cutoffs(model_cfg, fit_cfg.maxorder)
    cluster_lists = [enumerate_clusters(crystal, order, cutoffs[order]) for order in range(fit_cfg.maxorder)]

    spring_cfg = dict(model_cfg.get("spring", {}))
    spring = SpringParams(
        longitudinal=float(spring_cfg.get("longitudinal", 1.0)),
        transverse=float(spring_cfg.get("transverse", 0.0)),
        cutoff=float(spring_cfg.get("cutoff", 1.1)),
    )
    phi = harmonic_force_constants(crystal, spring)

    data_cfg = dict(cfg.get("data", {}))
    ndata = int(data_cfg.get("ndata", 4))
    ndata_test = int(data_cfg.get("ndata_test", 0))
    amplitude = float(data_cfg.get("amplitude", 0.01))
    noise = float(data_cfg.get("noise", 0.0))
    seed = int(data_cfg.get("seed", 0))
    if ndata <= 0:
        raise ValueError("data.ndata must be positive.")
    if ndata_test < 0:
        raise ValueError("data.ndata_test must be non-negative.")
    rng = np.random.default_rng(seed + 1)
    u = random_displacements(crystal.nat, ndata, amplitude=amplitude, seed=seed)
    f = harmonic_forces(phi, u) + noise * rng.standard_normal((ndata, 3 * crystal.nat))
    validate_displacement_force(u, f, crystal.nat)
    validation = None
    if ndata_test > 0:
        ut = random_displacements(crystal.nat, ndata_test, amplitude=amplitude, seed=seed + 1000)
        ft = harmonic_forces(phi, ut) + noise * rng.standard_normal((ndata_test, 3 * crystal.nat))
        validation = (ut, ft)

    session = FitSession(symmetry, cluster_lists, fit_cfg, lasso_config=lasso_cfg).build()
    result = session.fit(u, f, validation=validation)

    harmonic_reference = reference_parameters(session.tables[0], phi)
    harmonic_max_error = float(np.max(np.abs(result.params_by_order[0] - harmonic_reference))) if harmonic_reference.size else 0.0

    outputs: dict[str, str] = {}
    if write_data:
        params_path = output_dir / f"{run_name_safe}_params.tsv"
        _save_parameter_data(params_path, session, result.params_by_order)
        outputs["params"] = str(params_path)
        if result.path is not None:
            path_path = output_dir / f"{run_name_safe}_l1_path.tsv"
            _save_path_data(
                path_path,
                result.path.alphas,
                result.path.fitting_errors,
                result.path.validation_errors,
                result.path.nzero,
            )
            outputs["l1_path"] = str(path_path)
    if write_plot and result.path is not None:
        plot_path = output_dir / f"{run_name_safe}_l1_path.png"
        _plot_path(
            plot_path,
            result.path.alphas,
            result.path.fitting_errors,
            result.path.validation_errors,
            title=f"{model_name}: L1 path",
        )
        outputs["plot"] = str(plot_path)

    runtime = time.perf_counter() - t0
    report: dict[str, Any] = {
        "run": {
            "name": run_name,
            "started_utc": started,
            "finished_utc": _utc_now_iso(),
            "runtime_seconds": runtime,
        },
        "model": {
            "name": model_name,
            "supercell": list(crystal.supercell),
            "nat": crystal.nat,
            "nsym": symmetry.nsym,
            "ntran": symmetry.ntran,
            "cutoffs": cutoffs,
            "spring": {"longitudinal": spring.longitudinal, "transverse": spring.transverse, "cutoff": spring.cutoff},
        },
        "parameters": {
            order_name(t.order): {
                "nparams": t.nparams,
                "nentries": len(t.fc_table),
                "nzero_entries": len(t.fc_zeros),
                "nconstraints": len(rows),
                "nparams_in_basis": bt.nparams,
            }
            for t, rows, bt in zip(session.tables, session.rows_by_order, session.basis_tables)
        },
        "fit": {
            "solver": result.solver,
            "rank": result.rank,
            "nfree": None if session.basis is None else session.basis.nfree,
            "fitting_error_percent": result.fitting_error,
            "params": {order_name(t.order): p for t, p in zip(session.tables, result.params_by_order)},
            "harmonic_reference": harmonic_reference,
            "harmonic_max_abs_error": harmonic_max_error,
        },
        "provenance": {"config_sha256": _sha256_file(cfg_path)},
        "outputs": outputs,
    }
    if result.lasso is not None:
        report["fit"]["lasso"] = {
            "l1_alpha": result.lasso.l1_alpha,
            "nzero": list(result.lasso.nzero),
            "validation_error": result.lasso.validation_error,
            "recommended_max_alpha": result.lasso.recommended_max_alpha,
        }

    if write_report:
        report_path = output_dir / run_cfg.get("report_filename", f"{run_name_safe}_fit_report.json")
        report["outputs"]["report"] = str(report_path)
        _save_json(report_path, report)
    return report


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--input", type=Path, default=None, help="Path to JSON run configuration.")
    parser.add_argument("--write-template", type=Path, default=None, help="Write template config and exit.")
    parser.add_argument("--verbose", action="store_true", help="Log fitting progress to stderr.")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.write_template is not None:
        out = write_input_template(args.write_template)
        print(f"Wrote template: {out}")
        return
    if args.input is None:
        raise ValueError("Provide --input <config.json> or --write-template <path>.")

    report = run_fit(args.input)
    print(f"Run complete: {report['run']['name']}")
    print(f"solver={report['fit']['solver']}")
    print(f"fitting_error_percent={report['fit']['fitting_error_percent']:.6e}")
    print(f"runtime_seconds={report['run']['runtime_seconds']:.3f}")
    print(f"outputs={report['outputs']}")


if __name__ == "__main__":
    main()
