# tests/test_stats_utils.py

import numpy as np
import pandas as pd
import pytest

from sccontrast.stats_utils import (
    add_z_scores,
    cpm,
    fit_f_dist,
    model_matrix,
    p_adjust,
    squeeze_var,
    tmm_norm_factors,
    trimmed_mean,
)


# -------------------------------------------------------------------------
# Z-scores
# -------------------------------------------------------------------------
def test_z_scores_sign_and_missing_pvalues():
    df = pd.DataFrame(
        {
            "log2FoldChange": [-1.0, 1.0, 2.0, 0.5],
            "pvalue": [0.05, 0.05, np.nan, 1.0],
            "padj": [0.1, 0.1, 1.0, 1.0],
        },
        index=["a", "b", "c", "d"],
    )
    out = add_z_scores(df)

    assert out.loc["a", "Z"] < 0
    assert out.loc["b", "Z"] > 0
    assert out.loc["a", "Z"] == pytest.approx(-1.959964, abs=1e-5)
    assert out.loc["c", "Z"] == 0.0
    assert out.loc["d", "Z"] == 0.0
    assert out.loc["a", "Za"] == pytest.approx(-1.644854, abs=1e-5)
    # input untouched
    assert "Z" not in df.columns


def test_z_scores_zero_fold_change_gives_zero():
    df = pd.DataFrame({"log2FoldChange": [0.0], "pvalue": [1e-5], "padj": [1e-4]})
    out = add_z_scores(df)
    assert out["Z"].iloc[0] == 0.0


# -------------------------------------------------------------------------
# p-value adjustment
# -------------------------------------------------------------------------
def test_bh_monotone_and_not_below_raw():
    rng = np.random.default_rng(3)
    p = np.sort(rng.uniform(size=200) ** 3)
    padj = p_adjust(p, "BH")

    assert np.all(np.diff(padj) >= -1e-12)
    assert np.all(padj >= p - 1e-12)
    assert np.all(padj <= 1.0)


def test_p_adjust_keeps_nan_out_of_the_correction():
    p = np.array([0.01, np.nan, 0.04])
    padj = p_adjust(p, "BH")
    assert np.isnan(padj[1])
    assert padj[0] == pytest.approx(0.02)
    assert padj[2] == pytest.approx(0.04)


def test_p_adjust_none_and_unknown():
    p = np.array([0.2, 0.5])
    assert np.allclose(p_adjust(p, "none"), p)
    with pytest.raises(ValueError):
        p_adjust(p, "not-a-method")


def test_trimmed_mean_drops_tails_and_nan():
    x = [1, 2, 3, 4, 100, np.nan]
    assert trimmed_mean(x, 0.2) == pytest.approx(3.0)
    assert np.isnan(trimmed_mean([np.nan]))


def test_trimmed_mean_full_trim_is_median():
    assert trimmed_mean([1, 2, 10], 0.5) == pytest.approx(2.0)
    assert trimmed_mean([1, 2, 3, 10], 0.7) == pytest.approx(2.5)


# -------------------------------------------------------------------------
# Design matrix
# -------------------------------------------------------------------------
def test_model_matrix_puts_group_last():
    meta = pd.DataFrame(
        {
            "batch": ["b1", "b2", "b1", "b2"],
            "age": [30.0, 40.0, 50.0, 60.0],
            "group": pd.Categorical(["ctrl", "ctrl", "case", "case"], categories=["ctrl", "case"]),
        },
        index=list("abcd"),
    )
    X = model_matrix(meta, ["batch", "age"])

    assert list(X.columns) == ["Intercept", "batch_b2", "age", "group_case"]
    assert X["group_case"].tolist() == [0.0, 0.0, 1.0, 1.0]


# -------------------------------------------------------------------------
# Normalization / variance moderation
# -------------------------------------------------------------------------
def test_tmm_factors_multiply_to_one():
    rng = np.random.default_rng(0)
    counts = pd.DataFrame(rng.poisson(20, size=(6, 300)), index=[f"s{i}" for i in range(6)])
    counts.iloc[0] *= 3
    f = tmm_norm_factors(counts)

    assert np.prod(f.to_numpy()) == pytest.approx(1.0)
    # pure depth differences are absorbed by the library size, not the factor
    assert np.all(np.abs(np.log2(f.to_numpy())) < 0.3)


def test_cpm_rows_sum_to_a_million():
    counts = pd.DataFrame([[1, 3], [10, 30]], index=["a", "b"], columns=["g1", "g2"])
    out = cpm(counts)
    assert np.allclose(out.sum(axis=1), 1e6)


def test_fit_f_dist_and_squeeze_var():
    rng = np.random.default_rng(1)
    df1 = 4
    s2 = rng.chisquare(df1, size=2000) / df1 * rng.gamma(5.0, 0.2, size=2000)
    s0_sq, d0 = fit_f_dist(s2, df1)

    assert s0_sq > 0
    assert d0 > 0

    post = squeeze_var(s2, df1, s0_sq, d0)
    # shrinkage pulls variances towards the prior
    assert np.var(post) < np.var(s2)
    assert np.allclose(squeeze_var(s2, df1, s0_sq, np.inf), s0_sq)
