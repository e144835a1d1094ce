# tests/test_case_control.py

import numpy as np
import pandas as pd
import pytest

from conftest import joint_adata
from sccontrast.case_control import run_de, run_expression_shifts, sample_covariates
from sccontrast.config import DEConfig, ExpressionShiftConfig


@pytest.fixture(autouse=True)
def _keep_test_logging(monkeypatch):
    monkeypatch.setattr("sccontrast.case_control.init_logging", lambda *a, **k: None)


@pytest.fixture
def h5ad_path(tmp_path, dataset):
    adata = joint_adata(*dataset)
    # a per-sample covariate that is not confounded with the condition
    adata.obs["batch"] = adata.obs["sample_id"].map(
        lambda s: "b1" if s.endswith(("0", "1")) else "b2"
    )
    path = tmp_path / "data.h5ad"
    adata.write_h5ad(path)
    return path


# -------------------------------------------------------------------------
# Covariates
# -------------------------------------------------------------------------
def test_sample_covariates():
    obs = pd.DataFrame(
        {"sample_id": ["s1", "s1", "s2"], "batch": ["x", "x", "y"], "age": [30, 30, 40], "score": [1.0, 2.0, 3.0]}
    )
    tab = sample_covariates(obs, "sample_id", ["batch", "age"])
    assert tab.loc["s2", "batch"] == "y"
    assert tab.loc["s1", "age"] == 30

    with pytest.raises(ValueError, match="vary within samples"):
        sample_covariates(obs, "sample_id", ["score"])
    with pytest.raises(KeyError):
        sample_covariates(obs, "sample_id", ["missing"])


# -------------------------------------------------------------------------
# DE
# -------------------------------------------------------------------------
def test_run_de_writes_tables(tmp_path, h5ad_path):
    out = tmp_path / "de"
    cfg = DEConfig(
        input_path=h5ad_path, output_dir=out, ref_level="ctrl", test="wilcoxon", n_jobs=1, progress=False,
    )
    res = run_de(cfg)

    assert set(res) == {"A", "B"}
    assert (out / "de_tables" / "de__A.tsv").exists()
    assert (out / "de_settings.txt").read_text().count("test=wilcoxon") == 1

    tab = pd.read_csv(out / "de_tables" / "de__A.tsv", sep="\t")
    assert {"Gene", "log2FoldChange", "pvalue", "padj", "Z", "CellFrac", "SampleFrac"} <= set(tab.columns)

    summary = pd.read_csv(out / "de_summary.tsv", sep="\t")
    assert summary["status"].tolist() == ["ok", "ok"]


def test_run_de_with_covariates(tmp_path, h5ad_path):
    cfg = DEConfig(
        input_path=h5ad_path, output_dir=tmp_path / "de_cov", ref_level="ctrl", test="edger",
        covariates=["batch"], n_jobs=1, progress=False, append_statistics=False,
    )
    res = run_de(cfg)

    assert list(res["A"].meta.columns) == ["sample_id", "group", "batch"]
    assert "CellFrac" not in res["A"].res.columns


# -------------------------------------------------------------------------
# Expression shifts
# -------------------------------------------------------------------------
def test_run_expression_shifts_writes_tables(tmp_path, h5ad_path):
    out = tmp_path / "shifts"
    cfg = ExpressionShiftConfig(
        input_path=h5ad_path, output_dir=out, ref_level="ctrl", dist="cor",
        n_permutations=50, n_jobs=1, progress=False,
    )
    res = run_expression_shifts(cfg)

    assert set(res.per_type) == {"A", "B"}
    shifts = pd.read_csv(out / "expression_shifts.tsv", sep="\t")
    assert shifts["cell_type"].tolist() == ["A", "B"]
    assert shifts["pvalue"].between(1.0 / 51, 1.0).all()

    joint = pd.read_csv(out / "joint_distance_matrix.tsv", sep="\t", index_col=0)
    assert joint.shape == (8, 8)
    assert np.allclose(joint.to_numpy(), joint.to_numpy().T)

    within = pd.read_csv(out / "within_condition_distances.tsv", sep="\t")
    assert set(within["Type"]) == {"A", "B"}
    assert set(within["Condition"]) == {"ctrl", "case"}
    assert (out / "expression_shift_dists.tsv").exists()
    assert "dist_type=shift" in (out / "expression_shift_settings.txt").read_text()


def test_run_expression_shifts_total_distance(tmp_path, h5ad_path):
    cfg = ExpressionShiftConfig(
        input_path=h5ad_path, output_dir=tmp_path / "total", ref_level="ctrl", dist="l1", dist_type="total",
        top_n_genes=10, n_permutations=20, n_jobs=1, progress=False,
    )
    res = run_expression_shifts(cfg)
    assert res.settings["dist_type"] == "total"
    assert all(r.dists.size == 2 * 4 * 4 for r in res.per_type.values())
