# tests/test_gene_selection_utils.py

import logging

import numpy as np
import pandas as pd
import pytest

from sccontrast.gene_selection_utils import (
    distance_matrix,
    estimate_explained_variance,
    filter_genes_for_cell_type,
    find_overdispersed_genes,
    parse_distance,
    project_to_pcs,
)


def _groups(n_ref, n_target):
    idx = [f"r{i}" for i in range(n_ref)] + [f"t{i}" for i in range(n_target)]
    return pd.Series(
        pd.Categorical(["ref"] * n_ref + ["target"] * n_target, categories=["ref", "target"]),
        index=idx,
    )


def _shifted_matrix(n_per_group=6, n_genes=40, n_shifted=4, seed=0):
    rng = np.random.default_rng(seed)
    g = _groups(n_per_group, n_per_group)
    x = rng.normal(10.0, 1.0, size=(len(g), n_genes))
    x[n_per_group:, :n_shifted] += 5.0
    return pd.DataFrame(x, index=g.index, columns=[f"g{i}" for i in range(n_genes)]), g


# -------------------------------------------------------------------------
# Distance choice
# -------------------------------------------------------------------------
def test_parse_distance_defaults():
    assert parse_distance(None) == "cor"
    assert parse_distance(None, top_n_genes=10) == "l1"
    assert parse_distance(None, top_n_genes=500, n_pcs=5) == "l1"
    assert parse_distance("COR") == "cor"


def test_parse_distance_warnings(caplog):
    with caplog.at_level(logging.WARNING):
        assert parse_distance("l2") == "l2"
    assert "not recommended" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING):
        parse_distance("cor", n_pcs=10)
    assert "dimensionality < 20" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING):
        parse_distance("l1", top_n_genes=100)
    assert "dimensionality > 30" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING):
        parse_distance("l1", top_n_genes=25)
    assert caplog.text == ""


def test_parse_distance_rejects_unknown():
    with pytest.raises(ValueError, match="Unknown dist"):
        parse_distance("cosine")


def test_distance_matrix_cor_constant_rows_count_as_one():
    x = pd.DataFrame([[1.0, 2.0, 3.0], [2.0, 4.0, 6.0], [5.0, 5.0, 5.0]], index=["a", "b", "c"])
    d = distance_matrix(x, "cor")

    assert d.loc["a", "b"] == pytest.approx(0.0)
    assert d.loc["a", "c"] == 1.0
    assert d.loc["c", "c"] == 1.0
    assert list(d.index) == ["a", "b", "c"]


def test_distance_matrix_l1_l2():
    x = pd.DataFrame([[0.0, 0.0], [3.0, 4.0]], index=["a", "b"])
    assert distance_matrix(x, "l1").loc["a", "b"] == pytest.approx(7.0)
    assert distance_matrix(x, "l2").loc["a", "b"] == pytest.approx(5.0)


def test_project_to_pcs_caps_components(caplog):
    rng = np.random.default_rng(0)
    cm = pd.DataFrame(rng.normal(size=(5, 30)), index=list("abcde"))

    with caplog.at_level(logging.WARNING):
        pcs = project_to_pcs(cm, n_pcs=10)
    assert "n_pcs is too large" in caplog.text
    assert pcs.shape == (5, 4)
    assert list(pcs.index) == list("abcde")

    assert project_to_pcs(cm, n_pcs=2).columns.tolist() == ["PC1", "PC2"]


# -------------------------------------------------------------------------
# Gene ranking
# -------------------------------------------------------------------------
def test_explained_variance():
    cm, g = _shifted_matrix()
    ev = estimate_explained_variance(cm, g)

    assert ev.loc[["g0", "g1", "g2", "g3"]].min() > 0.7
    assert ev.drop(["g0", "g1", "g2", "g3"]).max() < ev.loc[["g0", "g1", "g2", "g3"]].min()


def test_explained_variance_single_condition_is_none():
    cm, g = _shifted_matrix()
    only_ref = g[g == "ref"].index
    assert estimate_explained_variance(cm.loc[only_ref], g) is None


@pytest.mark.parametrize("method", ["wilcox", "var"])
def test_selection_picks_shifted_genes(method):
    cm, g = _shifted_matrix()
    sel = filter_genes_for_cell_type(cm, g, top_n_genes=4, gene_selection=method)
    assert set(sel) == {"g0", "g1", "g2", "g3"}


def test_selection_respects_exclusion():
    cm, g = _shifted_matrix()
    sel = filter_genes_for_cell_type(cm, g, top_n_genes=4, gene_selection="var", exclude_genes=["g0"])
    assert "g0" not in sel
    assert len(sel) == 4


def test_selection_unknown_method():
    cm, g = _shifted_matrix()
    with pytest.raises(ValueError, match="gene_selection"):
        filter_genes_for_cell_type(cm, g, gene_selection="pagoda")


def test_overdispersed_genes_ignore_labels():
    rng = np.random.default_rng(2)
    means = np.linspace(5, 50, 60)
    x = rng.poisson(means, size=(40, 60)).astype(float)
    # two genes with strongly inflated variance
    x[:, 10] = rng.negative_binomial(1, 1.0 / (1.0 + means[10]), size=40)
    x[:, 40] = rng.negative_binomial(1, 1.0 / (1.0 + means[40]), size=40)
    cm = pd.DataFrame(x, columns=[f"g{i}" for i in range(60)])

    od = find_overdispersed_genes(cm)
    assert {"g10", "g40"} <= set(od)
    assert len(od) < 10
