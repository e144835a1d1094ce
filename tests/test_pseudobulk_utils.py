# tests/test_pseudobulk_utils.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from sccontrast.pseudobulk_utils import (
    cell_type_levels,
    collapse_cells_by_type,
    collapse_samples,
    extend_matrices_to_gene_union,
    extend_matrix,
    get_counts_matrix,
    get_expression_fraction_per_group,
    pseudobulk_per_type,
    subsample_cells_per_type,
    subset_matrices_with_common_genes,
)


def _adata(X, cells, genes):
    return ad.AnnData(X=sp.csr_matrix(np.asarray(X, dtype=float)), obs=pd.DataFrame(index=cells), var=pd.DataFrame(index=genes))


# -------------------------------------------------------------------------
# Counts access
# -------------------------------------------------------------------------
def test_get_counts_matrix_layer_and_errors():
    a = _adata([[1, 2], [3, 4]], ["c1", "c2"], ["g1", "g2"])
    a.layers["counts"] = sp.csr_matrix(np.array([[5, 6], [7, 8]], dtype=float))

    assert get_counts_matrix(a).toarray().tolist() == [[1, 2], [3, 4]]
    assert get_counts_matrix(a, counts_layer="counts").toarray().tolist() == [[5, 6], [7, 8]]
    with pytest.raises(KeyError):
        get_counts_matrix(a, counts_layer="missing")


# -------------------------------------------------------------------------
# Collapse
# -------------------------------------------------------------------------
def test_collapse_reproduces_sample_totals(dataset):
    raw_mats, cell_groups, _ = dataset
    for s, m in raw_mats.items():
        pb = collapse_cells_by_type(m, cell_groups, min_cell_count=0)
        total = np.asarray(m.X.sum(axis=0)).ravel()
        assert np.allclose(pb.sum(axis=0).to_numpy(), total)


def test_collapse_applies_cell_count_limits():
    cells = [f"c{i}" for i in range(6)]
    groups = pd.Series(["A", "A", "A", "A", "B", "B"], index=cells)
    a = _adata(np.ones((6, 3)), cells, ["g1", "g2", "g3"])

    pb = collapse_cells_by_type(a, groups, min_cell_count=3)
    assert pb.index.tolist() == ["A"]
    assert pb.loc["A"].tolist() == [4.0, 4.0, 4.0]

    pb = collapse_cells_by_type(a, groups, min_cell_count=1, max_cell_count=2)
    assert pb.index.tolist() == ["B"]


def test_collapse_ignores_unlabelled_cells():
    cells = ["c1", "c2", "c3"]
    groups = pd.Series(["A", "A"], index=["c1", "c2"])
    a = _adata([[1, 0], [2, 0], [100, 100]], cells, ["g1", "g2"])

    pb = collapse_cells_by_type(a, groups, min_cell_count=1)
    assert pb.loc["A"].tolist() == [3.0, 0.0]


def test_collapse_samples_drops_empty_samples():
    groups = pd.Series(["A"] * 3, index=["x1", "x2", "x3"])
    mats = {
        "s1": _adata(np.ones((3, 2)), ["x1", "x2", "x3"], ["g1", "g2"]),
        "s2": _adata(np.ones((1, 2)), ["y1"], ["g1", "g2"]),
    }
    out = collapse_samples(mats, groups, min_cell_count=2)
    assert list(out) == ["s1"]


def test_pseudobulk_per_type_is_integer_and_drops_zero_genes():
    pb = {
        "s1": pd.DataFrame([[1.0, 0.0, 2.0], [5.0, 0.0, 0.0]], index=["A", "B"], columns=["g1", "g2", "g3"]),
        "s2": pd.DataFrame([[3.0, 0.0, 1.0]], index=["A"], columns=["g1", "g2", "g3"]),
    }
    out = pseudobulk_per_type(pb, ["A", "B", "C"])

    assert set(out) == {"A", "B"}
    assert out["A"].columns.tolist() == ["g1", "g3"]
    assert out["A"].dtypes.unique().tolist() == [np.dtype("int64")]
    assert out["B"].index.tolist() == ["s1"]


def test_cell_type_levels_uses_categories():
    s = pd.Series(pd.Categorical(["b", "a"], categories=["b", "a", "c"]))
    assert cell_type_levels(s) == ["b", "a", "c"]
    assert cell_type_levels(pd.Series(["b", "a", "b"])) == ["a", "b"]


# -------------------------------------------------------------------------
# Gene reconciliation
# -------------------------------------------------------------------------
def test_extend_matrix_zero_fills_missing_genes():
    a = _adata([[1, 2], [3, 4]], ["c1", "c2"], ["g2", "g1"])
    out = extend_matrix(a, ["g1", "g2", "g3"])

    assert out.var_names.tolist() == ["g1", "g2", "g3"]
    assert out.X.toarray().tolist() == [[2, 1, 0], [4, 3, 0]]


def test_extend_matrix_takes_counts_from_layer():
    a = _adata([[0, 0], [0, 0]], ["c1", "c2"], ["g2", "g1"])
    a.layers["counts"] = sp.csr_matrix(np.array([[1, 2], [3, 4]], dtype=float))

    out = extend_matrix(a, ["g1", "g2", "g3"], counts_layer="counts")
    assert out.X.toarray().tolist() == [[2, 1, 0], [4, 3, 0]]

    same = extend_matrix(a, ["g2", "g1"], counts_layer="counts")
    assert same.X.toarray().tolist() == [[1, 2], [3, 4]]

    mats = {"s1": a, "s2": _adata([[7, 7]], ["c3"], ["g1", "g3"])}
    mats["s2"].layers["counts"] = sp.csr_matrix(np.array([[5, 6]], dtype=float))
    union = extend_matrices_to_gene_union(mats, counts_layer="counts")
    assert union["s2"].X.toarray().tolist() == [[0, 5, 6]]
    common = subset_matrices_with_common_genes(mats, counts_layer="counts")
    assert common["s1"].X.toarray().tolist() == [[2], [4]]


def test_common_and_union_genes():
    mats = {
        "s1": _adata([[1, 2]], ["c1"], ["g1", "g2"]),
        "s2": _adata([[3, 4]], ["c2"], ["g2", "g3"]),
    }
    common = subset_matrices_with_common_genes(mats)
    assert all(m.var_names.tolist() == ["g2"] for m in common.values())

    union = extend_matrices_to_gene_union(mats)
    assert all(m.var_names.tolist() == ["g1", "g2", "g3"] for m in union.values())
    assert union["s2"].X.toarray().tolist() == [[0, 3, 4]]

    only_s1 = subset_matrices_with_common_genes(mats, {"x": ["s1"]})
    assert list(only_s1) == ["s1"]


# -------------------------------------------------------------------------
# Subsampling and fractions
# -------------------------------------------------------------------------
def test_subsample_cells_per_type_caps_counts(dataset):
    raw_mats, cell_groups, _ = dataset
    out = subsample_cells_per_type(raw_mats, cell_groups, n_cells=5, rng=np.random.default_rng(0))

    for s, m in out.items():
        counts = cell_groups.reindex(m.obs_names).value_counts()
        assert (counts == 5).all()


def test_expression_fraction_per_group():
    cells = ["c1", "c2", "c3", "c4"]
    groups = pd.Series(["A", "A", "B", "B"], index=cells)
    a = _adata([[1, 0], [0, 0], [2, 5], [3, 0]], cells, ["g1", "g2"])

    frac = get_expression_fraction_per_group({"s": a}, groups)
    assert frac.loc["g1", "A"] == pytest.approx(0.5)
    assert frac.loc["g1", "B"] == pytest.approx(1.0)
    assert frac.loc["g2", "B"] == pytest.approx(0.5)
    assert frac.loc["g2", "A"] == pytest.approx(0.0)


def test_expression_fraction_counts_only_cells_of_mats():
    cells = ["c1", "c2", "c3", "c4"]
    # x1/x2 belong to a sample outside the compared conditions
    groups = pd.Series(["A", "A", "B", "B", "A", "A"], index=cells + ["x1", "x2"])
    a = _adata([[1, 0], [0, 0], [2, 5], [3, 0]], cells, ["g1", "g2"])

    frac = get_expression_fraction_per_group({"s": a}, groups)
    assert frac.loc["g1", "A"] == pytest.approx(0.5)
    assert frac.loc["g2", "B"] == pytest.approx(0.5)
