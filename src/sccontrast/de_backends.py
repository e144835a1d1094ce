# src/sccontrast/de_backends.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats

from .stats_utils import (
    cpm,
    fit_f_dist,
    model_matrix,
    p_adjust,
    squeeze_var,
    tmm_norm_factors,
)

LOGGER = logging.getLogger(__name__)

NORMALIZATIONS = ("totcount", "deseq2", "edger")


# -----------------------------------------------------------------------------
# Result container
# -----------------------------------------------------------------------------
@dataclass
class DEResult:
    """DE output of one cell type: gene table, the pseudo-bulk matrix and metadata used."""
    res: pd.DataFrame
    cm: Optional[pd.DataFrame] = None          # samples x genes
    meta: Optional[pd.DataFrame] = None
    subsamples: Optional[Dict[str, Any]] = None


# -----------------------------------------------------------------------------
# Backend selection
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class WilcoxonTest:
    normalization: str = "totcount"
    name: str = "wilcoxon"


@dataclass(frozen=True)
class TTest:
    normalization: str = "totcount"
    name: str = "t-test"


@dataclass(frozen=True)
class DESeq2Test:
    test_type: Literal["wald", "lrt"] = "wald"
    name: str = "deseq2"


@dataclass(frozen=True)
class EdgeRTest:
    name: str = "edger"


@dataclass(frozen=True)
class LimmaVoomTest:
    name: str = "limma-voom"


DETest = Union[WilcoxonTest, TTest, DESeq2Test, EdgeRTest, LimmaVoomTest]
DE_METHODS = ("wilcoxon", "t-test", "deseq2", "edger", "limma-voom")


def parse_de_test(test: Union[str, DETest]) -> DETest:
    """
    Parse a ``method[.subtype]`` identifier (case-insensitive), e.g. ``"DESeq2.Wald"``,
    ``"deseq2.lrt"``, ``"wilcoxon.edger"``, ``"limma-voom"``.
    """
    if isinstance(test, (WilcoxonTest, TTest, DESeq2Test, EdgeRTest, LimmaVoomTest)):
        return test

    parts = str(test).lower().strip().split(".")
    method = parts[0]
    subtype = parts[1] if len(parts) > 1 else ""

    if method in ("wilcoxon", "t-test"):
        norm = subtype or "totcount"
        if norm not in NORMALIZATIONS:
            raise ValueError(f"Unknown normalization {subtype!r} for test {method!r}. Allowed: {', '.join(NORMALIZATIONS)}")
        return WilcoxonTest(normalization=norm) if method == "wilcoxon" else TTest(normalization=norm)

    if method == "deseq2":
        tt = subtype or "wald"
        if tt not in ("wald", "lrt"):
            raise ValueError(f"Unknown DESeq2 test type {subtype!r}. Allowed: wald, lrt")
        return DESeq2Test(test_type=tt)

    if method in ("edger", "limma-voom"):
        if subtype:
            raise ValueError(f"Test {method!r} does not take a subtype (got {subtype!r})")
        return EdgeRTest() if method == "edger" else LimmaVoomTest()

    raise ValueError(f"Unknown DE test {test!r}. Allowed methods: {', '.join(DE_METHODS)}")


def design_formula(covariates: Sequence[str], group_col: str = "group") -> str:
    return "~ " + " + ".join([*[str(c) for c in covariates], group_col])


def _finalize(res: pd.DataFrame) -> pd.DataFrame:
    res = res.copy()
    res["padj"] = pd.to_numeric(res["padj"], errors="coerce").fillna(1.0)
    return res


# -----------------------------------------------------------------------------
# PyDESeq2 helpers
# -----------------------------------------------------------------------------
def _require_pydeseq2():
    try:
        import pydeseq2  # noqa: F401
    except Exception as e:
        raise ImportError(
            "PyDESeq2 is required for the 'deseq2' test and DESeq2 normalization. "
            "Install it (and its deps) in your environment."
        ) from e


def _deseq_dataset(counts: pd.DataFrame, meta: pd.DataFrame, formula: str, n_cpus: int = 1):
    _require_pydeseq2()
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference

    counts_i = counts.loc[meta.index].round().astype(np.int64)
    return DeseqDataSet(
        counts=counts_i,
        metadata=meta.copy(),
        design=formula,
        refit_cooks=True,
        inference=DefaultInference(n_cpus=int(n_cpus)),
        quiet=True,
    )


def _obs_or_obsm(adata, key: str) -> np.ndarray:
    # size factors moved from obsm to obs between PyDESeq2 releases
    if key in adata.obs:
        return np.asarray(adata.obs[key], dtype=float)
    return np.asarray(adata.obsm[key], dtype=float)


def _var_or_varm(adata, key: str) -> np.ndarray:
    if key in adata.var:
        return np.asarray(adata.var[key], dtype=float)
    return np.asarray(adata.varm[key], dtype=float)


def deseq2_normalized_counts(counts: pd.DataFrame, meta: pd.DataFrame, formula: str) -> pd.DataFrame:
    """Median-of-ratios normalized counts (samples x genes)."""
    dds = _deseq_dataset(counts, meta, formula)
    dds.fit_size_factors()
    sf = _obs_or_obsm(dds, "size_factors")
    vals = counts.loc[meta.index].to_numpy(dtype=float) / sf[:, None]
    return pd.DataFrame(vals, index=meta.index, columns=counts.columns)


# -----------------------------------------------------------------------------
# GLM helpers (statsmodels)
# -----------------------------------------------------------------------------
def _glm_fit(y: np.ndarray, X: np.ndarray, offset: np.ndarray, dispersion: Optional[float]):
    import statsmodels.api as sm

    family = sm.families.Poisson() if not dispersion else sm.families.NegativeBinomial(alpha=float(dispersion))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return sm.GLM(y, X, family=family, offset=offset).fit()


def _nb_deviance_pair(y, X_full, X_red, offset, dispersion) -> tuple[float, float, float]:
    """(deviance_full, deviance_reduced, last full coefficient) or NaNs if a fit fails."""
    try:
        full = _glm_fit(y, X_full, offset, dispersion)
        red = _glm_fit(y, X_red, offset, dispersion)
        return float(full.deviance), float(red.deviance), float(np.asarray(full.params)[-1])
    except Exception as e:
        LOGGER.debug("GLM fit failed: %s", e)
        return np.nan, np.nan, np.nan


# -----------------------------------------------------------------------------
# Normalization for the pairwise tests
# -----------------------------------------------------------------------------
def normalize_pseudobulk_matrix(
    cm: pd.DataFrame,
    *,
    meta: Optional[pd.DataFrame] = None,
    formula: Optional[str] = None,
    normalization: str = "totcount",
) -> pd.DataFrame:
    """
    Normalize a pseudo-bulk matrix (samples x genes).

    - totcount: per-sample proportions of the total count
    - deseq2: median-of-ratios size factors (PyDESeq2)
    - edger: TMM-scaled counts per million
    """
    if normalization == "totcount":
        tot = cm.sum(axis=1).replace(0, np.nan)
        return cm.div(tot, axis=0).fillna(0.0)
    if normalization == "deseq2":
        if meta is None or formula is None:
            raise ValueError("DESeq2 normalization needs metadata and a design formula")
        return deseq2_normalized_counts(cm, meta, formula)
    if normalization == "edger":
        return cpm(cm, tmm_norm_factors(cm)).fillna(0.0)
    raise ValueError(f"Unknown normalization {normalization!r}. Allowed: {', '.join(NORMALIZATIONS)}")


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------
def estimate_de_for_type_pairwise_stat(
    cm_norm: pd.DataFrame,
    meta: pd.DataFrame,
    *,
    target_level: str,
    test: Literal["wilcoxon", "t-test"],
) -> pd.DataFrame:
    """
    Per-gene two-sample test between target and the other samples on normalized counts.

    Statistics are oriented target over reference like log2FoldChange: ``AUC`` is the
    probability that a target sample exceeds a reference sample and the Welch t
    ``stat`` is positive for genes up in the target. scran reports the reference
    level first, so its AUC is 1 - AUC here and its t has the opposite sign.
    """
    is_target = (meta["group"].astype(str) == str(target_level)).reindex(cm_norm.index).to_numpy()
    x_t = cm_norm.to_numpy(dtype=float)[is_target]
    x_r = cm_norm.to_numpy(dtype=float)[~is_target]

    with np.errstate(divide="ignore", invalid="ignore"), warnings.catch_warnings():
        warnings.simplefilter("ignore")
        if test == "wilcoxon":
            u, p = stats.mannwhitneyu(x_t, x_r, axis=0, alternative="two-sided", method="asymptotic")
            res = pd.DataFrame({"AUC": u / (x_t.shape[0] * x_r.shape[0]), "pvalue": p}, index=cm_norm.columns)
        elif test == "t-test":
            t, p = stats.ttest_ind(x_t, x_r, axis=0, equal_var=False)
            res = pd.DataFrame({"stat": t, "pvalue": p}, index=cm_norm.columns)
        else:
            raise ValueError(f"Unknown pairwise test {test!r}")

    res["padj"] = p_adjust(res["pvalue"].to_numpy(), "BH")
    lg = np.log2(cm_norm.to_numpy(dtype=float) + 1.0)
    res["log2FoldChange"] = lg[is_target].mean(axis=0) - lg[~is_target].mean(axis=0)
    return _finalize(res)


def estimate_de_for_type_deseq(
    cm: pd.DataFrame,
    meta: pd.DataFrame,
    *,
    formula: str,
    covariates: Sequence[str],
    ref_level: str,
    target_level: str,
    test_type: str = "wald",
    cooks_cutoff: bool = False,
    independent_filtering: bool = True,
    alpha: float = 0.1,
    n_cpus: int = 1,
) -> pd.DataFrame:
    """
    DESeq2 via PyDESeq2. ``lrt`` compares the full model against an intercept-only
    model with the fitted size factors and gene-wise dispersions.
    """
    _require_pydeseq2()
    from pydeseq2.default_inference import DefaultInference
    from pydeseq2.ds import DeseqStats

    dds = _deseq_dataset(cm, meta, formula, n_cpus=n_cpus)
    dds.deseq2()

    ds = DeseqStats(
        dds,
        contrast=["group", str(target_level), str(ref_level)],
        alpha=float(alpha),
        cooks_filter=bool(cooks_cutoff),
        independent_filter=bool(independent_filtering),
        inference=DefaultInference(n_cpus=int(n_cpus)),
        quiet=True,
    )
    ds.summary()
    res = ds.results_df.copy()

    if test_type == "lrt":
        counts = cm.loc[meta.index].to_numpy(dtype=float)
        offset = np.log(_obs_or_obsm(dds, "size_factors"))
        disp = _var_or_varm(dds, "dispersions")
        X_full = model_matrix(meta, covariates).to_numpy()
        X_red = np.ones((X_full.shape[0], 1))

        stat = np.full(counts.shape[1], np.nan)
        for j in range(counts.shape[1]):
            if counts[:, j].sum() == 0 or not np.isfinite(disp[j]):
                continue
            d_full, d_red, _ = _nb_deviance_pair(counts[:, j], X_full, X_red, offset, disp[j])
            stat[j] = max(d_red - d_full, 0.0) if np.isfinite(d_full) else np.nan

        res["stat"] = stat
        res["pvalue"] = stats.chi2.sf(stat, df=X_full.shape[1] - 1)
        res["padj"] = p_adjust(res["pvalue"].to_numpy(), "BH")

    return _finalize(res)


def estimate_de_for_type_edger(
    cm: pd.DataFrame,
    meta: pd.DataFrame,
    *,
    covariates: Sequence[str],
) -> pd.DataFrame:
    """
    Quasi-likelihood F-test on negative binomial GLMs (edgeR-style).

    TMM offsets; dispersions from a lowess trend of moment estimates over
    average log-CPM; QL dispersions squeezed by empirical Bayes; the tested
    coefficient is the last design column (the group term).
    """
    from statsmodels.nonparametric.smoothers_lowess import lowess

    design = model_matrix(meta, covariates)
    X_full = design.to_numpy()
    X_red = X_full[:, :-1]
    n, p = X_full.shape
    df_res = n - p
    if df_res < 1:
        raise ValueError("No residual degrees of freedom for the edgeR fit")

    counts = cm.loc[meta.index]
    nf = tmm_norm_factors(counts)
    lib = counts.sum(axis=1).to_numpy(dtype=float) * nf.to_numpy()
    offset = np.log(lib)
    y = counts.to_numpy(dtype=float)
    n_genes = y.shape[1]

    log_cpm = np.log2(cpm(counts, nf).mean(axis=0).to_numpy() + 0.25)

    # moment dispersion estimates from Poisson fits
    phi = np.full(n_genes, np.nan)
    for j in range(n_genes):
        try:
            mu = _glm_fit(y[:, j], X_full, offset, None).fittedvalues
        except Exception:
            continue
        with np.errstate(divide="ignore", invalid="ignore"):
            phi[j] = np.sum(((y[:, j] - mu) ** 2 - y[:, j]) / mu ** 2) / df_res
    ok = np.isfinite(phi)
    common = float(np.median(np.maximum(phi[ok], 0))) if ok.any() else 0.1
    if ok.sum() >= 10:
        trend = lowess(np.maximum(phi[ok], 0), log_cpm[ok], frac=0.3, return_sorted=True)
        disp = np.interp(log_cpm, trend[:, 0], trend[:, 1])
    else:
        disp = np.full(n_genes, common)
    disp = np.maximum(disp, 1e-4)

    dev_full = np.full(n_genes, np.nan)
    dev_red = np.full(n_genes, np.nan)
    coef = np.full(n_genes, np.nan)
    for j in range(n_genes):
        dev_full[j], dev_red[j], coef[j] = _nb_deviance_pair(y[:, j], X_full, X_red, offset, disp[j])

    s2 = dev_full / df_res
    s0_sq, d0 = fit_f_dist(s2, df_res)
    s2_post = squeeze_var(s2, df_res, s0_sq, d0)
    df_total = min(df_res + (d0 if np.isfinite(d0) else np.inf), df_res * n_genes)

    with np.errstate(divide="ignore", invalid="ignore"):
        f_stat = np.maximum(dev_red - dev_full, 0.0) / s2_post
    res = pd.DataFrame(
        {
            "log2FoldChange": coef / np.log(2.0),
            "logCPM": log_cpm,
            "stat": f_stat,
            "pvalue": stats.f.sf(f_stat, 1, df_total),
        },
        index=cm.columns,
    )
    res["padj"] = p_adjust(res["pvalue"].to_numpy(), "BH")
    return _finalize(res.sort_values("pvalue", na_position="last"))


def _weighted_lm(y: np.ndarray, X: np.ndarray, w: Optional[np.ndarray] = None):
    """
    Gene-wise (weighted) least squares; y and w are genes x samples.
    Returns (coef [g,p], stdev_unscaled [g,p], sigma2 [g], df_residual).
    """
    g, n = y.shape
    if w is None:
        w = np.ones_like(y)
    XtWX = np.einsum("ni,gn,nj->gij", X, w, X)
    XtWy = np.einsum("ni,gn,gn->gi", X, w, y)
    inv = np.linalg.pinv(XtWX)
    coef = np.einsum("gij,gj->gi", inv, XtWy)
    resid = y - coef @ X.T
    df_res = n - np.linalg.matrix_rank(X)
    sigma2 = np.sum(w * resid ** 2, axis=1) / df_res
    su = np.sqrt(np.maximum(np.einsum("gii->gi", inv), 0.0))
    return coef, su, sigma2, df_res


def estimate_de_for_type_limma(
    cm: pd.DataFrame,
    meta: pd.DataFrame,
    *,
    covariates: Sequence[str],
    target_level: str,
) -> pd.DataFrame:
    """
    voom precision weights, weighted linear fit, empirical-Bayes moderated t-test
    for the group coefficient (limma-voom style).
    """
    from statsmodels.nonparametric.smoothers_lowess import lowess

    design = model_matrix(meta, covariates)
    coef_name = f"group_{target_level}"
    if coef_name not in design.columns:
        raise ValueError(f"Design has no coefficient {coef_name!r}; columns={list(design.columns)}")
    j_coef = int(design.columns.get_loc(coef_name))
    X = design.to_numpy()

    counts = cm.loc[meta.index].to_numpy(dtype=float).T      # genes x samples
    lib = counts.sum(axis=0)
    y = np.log2((counts + 0.5) / (lib + 1.0) * 1e6)

    # mean-variance trend on the unweighted fit
    coef0, _, sigma2_0, _ = _weighted_lm(y, X)
    amean = y.mean(axis=1)
    sx = amean + np.mean(np.log2(lib + 1.0)) - np.log2(1e6)
    sy = np.sqrt(np.sqrt(sigma2_0))
    nonzero = counts.sum(axis=1) > 0
    trend = lowess(sy[nonzero], sx[nonzero], frac=0.5, return_sorted=True)

    fitted_log_count = coef0 @ X.T + np.log2(lib + 1.0) - np.log2(1e6)
    pred = np.interp(fitted_log_count, trend[:, 0], trend[:, 1])
    w = 1.0 / np.maximum(pred, 1e-8) ** 4

    coef, su, sigma2, df_res = _weighted_lm(y, X, w)
    s0_sq, d0 = fit_f_dist(sigma2, df_res)
    s2_post = squeeze_var(sigma2, df_res, s0_sq, d0)
    df_total = min(df_res + (d0 if np.isfinite(d0) else np.inf), df_res * y.shape[0])

    with np.errstate(divide="ignore", invalid="ignore"):
        t = coef[:, j_coef] / (su[:, j_coef] * np.sqrt(s2_post))
    res = pd.DataFrame(
        {
            "log2FoldChange": coef[:, j_coef],
            "AveExpr": amean,
            "stat": t,
            "pvalue": 2.0 * stats.t.sf(np.abs(t), df_total),
        },
        index=cm.columns,
    )
    res["padj"] = p_adjust(res["pvalue"].to_numpy(), "BH")
    return _finalize(res.sort_values("pvalue", na_position="last"))


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------
def run_de_backend(
    test: DETest,
    cm: pd.DataFrame,
    meta: pd.DataFrame,
    *,
    covariates: Sequence[str],
    ref_level: str,
    target_level: str,
    cooks_cutoff: bool = False,
    independent_filtering: bool = True,
    n_cpus: int = 1,
) -> pd.DataFrame:
    """Run exactly one backend; every result has log2FoldChange, pvalue and padj (NaN padj -> 1)."""
    formula = design_formula(covariates)

    if isinstance(test, (WilcoxonTest, TTest)):
        cm_norm = normalize_pseudobulk_matrix(cm, meta=meta, formula=formula, normalization=test.normalization)
        return estimate_de_for_type_pairwise_stat(cm_norm, meta, target_level=target_level, test=test.name)
    if isinstance(test, DESeq2Test):
        return estimate_de_for_type_deseq(
            cm, meta, formula=formula, covariates=covariates, ref_level=ref_level, target_level=target_level,
            test_type=test.test_type, cooks_cutoff=cooks_cutoff, independent_filtering=independent_filtering,
            n_cpus=n_cpus,
        )
    if isinstance(test, EdgeRTest):
        return estimate_de_for_type_edger(cm, meta, covariates=covariates)
    if isinstance(test, LimmaVoomTest):
        return estimate_de_for_type_limma(cm, meta, covariates=covariates, target_level=target_level)
    raise ValueError(f"Unsupported DE test: {test!r}")
