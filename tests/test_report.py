"""Test the survival report pipeline."""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import json
import os

import numpy as np
import pytest
from hydra import compose, initialize

from nafld import report

HEADER = "id,status,futime,age,male,weight,height,bmi"


def write_cohort(path, n=240, seed=4):
    rng = np.random.default_rng(seed)
    age = rng.uniform(22, 88, n)
    male = rng.binomial(1, 0.5, n)
    height = rng.normal(170, 9, n)
    bmi = rng.uniform(17, 46, n)
    weight = bmi * (height / 100) ** 2
    rate = 2e-4 * np.exp(0.04 * (age - 55) + 0.3 * male)
    durations = np.ceil(rng.exponential(1 / rate))
    censoring = np.ceil(rng.uniform(300, 6000, n))
    futime = np.minimum(durations, censoring)
    status = (durations <= censoring).astype(int)

    rows = [
        f"{i},{status[i]},{futime[i]:.0f},{age[i]:.1f},{male[i]},"
        f"{weight[i]:.1f},{height[i]:.1f},{bmi[i]:.2f}"
        for i in range(n)
    ]
    rows.append(f"{n},1,100,NA,1,80,170,27.7")
    path.write_text("\n".join([HEADER] + rows) + "\n")
    return path


def make_config(overrides):
    with initialize(version_base=None, config_path="../conf"):
        return compose(config_name="report", overrides=overrides)


def test_report(tmp_path):
    data = write_cohort(tmp_path / "nafld.csv")
    output_dir = tmp_path / "out"
    cfg = make_config(
        [
            f"data.load.path={data}",
            f"outputs.dir={output_dir}",
            "plots.enabled=false",
            "analysis.fp.max_cycles=2",
        ]
    )
    results = report.build_report(cfg)

    assert results["data"]["n_read"] == 241
    assert results["data"]["n_incomplete"] == 1
    assert results["data"]["n_kept"] == 240
    for key in ["descriptive", "kaplan_meier", "cox", "fractional_polynomials", "parametric"]:
        assert key in results

    assert "error" not in results["descriptive"]
    assert "error" not in results["kaplan_meier"]
    assert "error" not in results["cox"]
    assert "error" not in results["fractional_polynomials"]
    assert "error" not in results["parametric"]
    assert set(results["fractional_polynomials"]["selections"]) == {"age", "bmi"}
    assert results["parametric"]["best_aic"] is not None
    assert set(results["kaplan_meier"]) == {"all", "male", "agecl", "bmicl"}
    assert set(results["kaplan_meier"]["male"]["tests"]) == {
        "logrank",
        "peto-peto",
        "logrank_pairwise",
        "peto-peto_pairwise",
    }

    with open(os.path.join(output_dir, report.SUMMARY_FILE)) as f:
        summary = json.load(f)
    assert summary["data"]["n_kept"] == 240
    assert os.path.exists(os.path.join(output_dir, "kaplan_meier", "event_table.csv"))
    assert os.path.exists(os.path.join(output_dir, "cox", "schoenfeld_tests.csv"))


def test_report_plots(tmp_path):
    data = write_cohort(tmp_path / "nafld.csv", n=120)
    output_dir = tmp_path / "out"
    cfg = make_config(
        [
            f"data.load.path={data}",
            f"outputs.dir={output_dir}",
            "analysis.run_fp=false",
            "analysis.run_parametric=false",
            "analysis.strata=[male]",
        ]
    )
    report.build_report(cfg)

    assert os.path.exists(os.path.join(output_dir, "kaplan_meier", "km_male.png"))
    assert os.path.exists(os.path.join(output_dir, "descriptive", "correlation.png"))
    assert os.path.exists(os.path.join(output_dir, "cox", "cox_vs_km.png"))


def test_failed_step_is_recorded(tmp_path, monkeypatch):
    def failing_fit(*args, **kwargs):
        raise RuntimeError("singular")

    monkeypatch.setattr(report.cox, "fit_cox", failing_fit)
    data = write_cohort(tmp_path / "nafld.csv", n=120)
    output_dir = tmp_path / "out"
    cfg = make_config(
        [
            f"data.load.path={data}",
            f"outputs.dir={output_dir}",
            "plots.enabled=false",
            "analysis.run_fp=false",
            "analysis.run_parametric=false",
        ]
    )
    results = report.build_report(cfg)

    assert "singular" in results["cox"]["error"]
    assert "error" not in results["kaplan_meier"]


def test_missing_column_aborts(tmp_path):
    path = tmp_path / "nafld.csv"
    path.write_text("id,status,futime,age,male,weight,height\n1,0,100,50,1,80,170\n")
    cfg = make_config([f"data.load.path={path}", f"outputs.dir={tmp_path / 'out'}"])

    with pytest.raises(Exception) as e:
        report.build_report(cfg)
    assert "bmi" in str(e.value)
