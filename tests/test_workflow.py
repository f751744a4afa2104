import json
import sys
from pathlib import Path

import numpy as np
import pytest

from ifcfit.workflows.fit_run import main, run_fit, write_input_template


def _config(tmp_path, **sections) -> Path:
    path = write_input_template(tmp_path / "fit.json")
    cfg = json.loads(path.read_text(encoding="utf-8"))
    cfg["run"]["output_dir"] = str(tmp_path / "out")
    for name, values in sections.items():
        cfg[name].update(values)
    path.write_text(json.dumps(cfg), encoding="utf-8")
    return path


def test_template_round_trips(tmp_path) -> None:
    path = write_input_template(tmp_path / "template.json")
    cfg = json.loads(path.read_text(encoding="utf-8"))
    assert set(cfg) == {"run", "model", "data", "fit", "lasso"}
    assert cfg["fit"]["constraint_mode"] == "algebraic"


def test_run_fit_recovers_spring_constants(tmp_path) -> None:
    path = _config(tmp_path, run={"write_plot": False})
    report = run_fit(path)
    assert report["fit"]["solver"] == "svd"
    assert report["fit"]["harmonic_max_abs_error"] < 1.0e-8
    assert report["parameters"]["HARMONIC"]["nparams"] == 3
    assert report["parameters"]["HARMONIC"]["nparams_in_basis"] == 3
    outputs = report["outputs"]
    for key in ("params", "report"):
        assert Path(outputs[key]).exists()
    saved = json.loads((tmp_path / "out" / "simple_cubic_fit_fit_report.json").read_text(encoding="utf-8"))
    assert saved["run"]["name"] == "simple_cubic_fit"
    assert len(saved["provenance"]["config_sha256"]) == 64

    lines = (tmp_path / "out" / "simple_cubic_fit_params.tsv").read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("# order")
    assert len(lines) == 4


def test_run_fit_lasso_sweep_writes_path(tmp_path) -> None:
    path = _config(
        tmp_path,
        run={"name": "sweep"},
        data={"ndata_test": 2},
        fit={"solver": "lasso"},
        lasso={"cross_validation": True, "num_l1_alpha": 4},
    )
    report = run_fit(path)
    assert report["fit"]["solver"] == "lasso"
    out = tmp_path / "out"
    assert (out / "sweep_l1_path.tsv").exists()
    assert (out / "sweep_l1_path.png").exists()
    rows = np.loadtxt(out / "sweep_l1_path.tsv", comments="#")
    assert rows.shape == (5, 4)


def test_run_fit_rejects_unknown_keys(tmp_path) -> None:
    path = _config(tmp_path, fit={"max_order": 2})
    with pytest.raises(ValueError, match="Unknown keys"):
        run_fit(path)


def test_main_writes_template(tmp_path, monkeypatch, capsys) -> None:
    out = tmp_path / "cli.json"
    monkeypatch.setattr(sys, "argv", ["ifcfit-run", "--write-template", str(out)])
    main()
    assert out.exists()
    assert "Wrote template" in capsys.readouterr().out
