# src/sccontrast/stats_utils.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

LOGGER = logging.getLogger(__name__)

# R-style names accepted for multiple-testing correction
P_ADJUST_METHODS = {
    "bh": "fdr_bh",
    "fdr": "fdr_bh",
    "fdr_bh": "fdr_bh",
    "by": "fdr_by",
    "fdr_by": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
}


# -----------------------------------------------------------------------------
# p-values and Z-scores
# -----------------------------------------------------------------------------
def p_adjust(pvalues, method: str = "BH") -> np.ndarray:
    """
    Multiple-testing correction that, like R's p.adjust, leaves NaN entries as NaN
    and corrects over the finite p-values only.
    """
    p = np.asarray(pvalues, dtype=float)
    out = np.full(p.shape, np.nan, dtype=float)

    m = str(method).lower()
    if m == "none":
        return p.copy()
    if m not in P_ADJUST_METHODS:
        raise ValueError(f"Unknown p-value adjustment method {method!r}. Allowed: {sorted(P_ADJUST_METHODS)} or 'none'")

    ok = np.isfinite(p)
    if ok.any():
        _, padj, _, _ = multipletests(p[ok], method=P_ADJUST_METHODS[m])
        out[ok] = padj
    return out


def add_z_scores(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add signed Z-scores for the raw (Z) and adjusted (Za) p-values.

    Z = -qnorm(p / 2) * sign(log2FoldChange); undefined p-values give 0.
    """
    df = df.copy()
    lfc_sign = np.sign(pd.to_numeric(df["log2FoldChange"], errors="coerce").to_numpy(dtype=float))

    for p_col, z_col in (("pvalue", "Z"), ("padj", "Za")):
        p = pd.to_numeric(df[p_col], errors="coerce").to_numpy(dtype=float)
        with np.errstate(invalid="ignore"):
            z = -stats.norm.ppf(p / 2.0)
        z[np.isnan(z)] = 0.0
        z = z * lfc_sign
        z[np.isnan(z)] = 0.0
        df[z_col] = z

    return df


def trimmed_mean(values, trim: float = 0.2) -> float:
    """
    Mean after dropping ``trim`` of the observations from each tail (NaNs ignored).
    A trim of 0.5 or more gives the median.
    """
    v = np.asarray(values, dtype=float).ravel()
    v = v[~np.isnan(v)]
    if v.size == 0:
        return float("nan")
    if trim >= 0.5:
        return float(np.median(v))
    return float(stats.trim_mean(v, float(trim)))


# -----------------------------------------------------------------------------
# Design matrices
# -----------------------------------------------------------------------------
def model_matrix(
    meta: pd.DataFrame,
    covariates: Sequence[str],
    *,
    group_col: str = "group",
) -> pd.DataFrame:
    """
    Treatment-coded design matrix: intercept, covariates, then the group term last.

    ``meta[group_col]`` must be categorical with the reference level first.
    Numeric covariates are used as-is; anything else is dummy-coded.
    """
    parts = [pd.DataFrame({"Intercept": 1.0}, index=meta.index)]

    for c in covariates:
        col = meta[c]
        if pd.api.types.is_numeric_dtype(col) and not isinstance(col.dtype, pd.CategoricalDtype):
            parts.append(col.astype(float).to_frame(str(c)))
        else:
            parts.append(pd.get_dummies(col.astype("category"), prefix=str(c), drop_first=True, dtype=float))

    grp = meta[group_col]
    if not isinstance(grp.dtype, pd.CategoricalDtype):
        grp = grp.astype("category")
    parts.append(pd.get_dummies(grp, prefix=group_col, drop_first=True, dtype=float))

    return pd.concat(parts, axis=1)


# -----------------------------------------------------------------------------
# Library normalization
# -----------------------------------------------------------------------------
def _tmm_factor(obs: np.ndarray, ref: np.ndarray, *, logratio_trim: float = 0.3, sum_trim: float = 0.05) -> float:
    n_o = float(obs.sum())
    n_r = float(ref.sum())
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / n_o) / (ref / n_r))
        abs_e = (np.log2(obs / n_o) + np.log2(ref / n_r)) / 2.0
        v = (n_o - obs) / n_o / obs + (n_r - ref) / n_r / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    r_l = stats.rankdata(log_r)
    r_s = stats.rankdata(abs_e)
    keep = (r_l >= lo_l) & (r_l <= hi_l) & (r_s >= lo_s) & (r_s <= hi_s)

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def tmm_norm_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Trimmed-mean-of-M-values normalization factors (samples x genes input).

    The reference library is the one whose upper-quartile scaled count is
    closest to the mean upper quartile. Factors multiply to one.
    """
    x = counts.to_numpy(dtype=float)
    lib = x.sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        f75 = np.array([np.quantile(row / l, 0.75) if l > 0 else np.nan for row, l in zip(x, lib)])

    if np.all(np.isnan(f75)):
        return pd.Series(1.0, index=counts.index)

    ref_idx = int(np.nanargmin(np.abs(f75 - np.nanmean(f75))))
    factors = np.array([
        _tmm_factor(x[i], x[ref_idx]) if lib[i] > 0 else 1.0
        for i in range(x.shape[0])
    ])
    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=counts.index)


def cpm(counts: pd.DataFrame, norm_factors: Optional[pd.Series] = None, *, log: bool = False, prior_count: float = 0.5) -> pd.DataFrame:
    """Counts per million over effective library sizes (samples x genes)."""
    lib = counts.sum(axis=1).astype(float)
    if norm_factors is not None:
        lib = lib * norm_factors.reindex(counts.index).astype(float)
    if log:
        vals = np.log2((counts.to_numpy(dtype=float) + prior_count) / (lib.to_numpy()[:, None] + 2 * prior_count) * 1e6)
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            vals = counts.to_numpy(dtype=float) / lib.to_numpy()[:, None] * 1e6
    return pd.DataFrame(vals, index=counts.index, columns=counts.columns)


# -----------------------------------------------------------------------------
# Empirical Bayes variance moderation
# -----------------------------------------------------------------------------
def trigamma_inverse(y: np.ndarray) -> np.ndarray:
    """Solve trigamma(x) = y for x > 0 by Newton iteration."""
    y = np.atleast_1d(np.asarray(y, dtype=float))
    x = np.full(y.shape, np.nan)

    big = y > 1e7
    small = y < 1e-6
    mid = ~(big | small) & np.isfinite(y) & (y > 0)
    x[big] = 1.0 / np.sqrt(y[big])
    x[small] = 1.0 / y[small]

    if mid.any():
        ym = y[mid]
        xm = 0.5 + 1.0 / ym
        for _ in range(50):
            tri = special.polygamma(1, xm)
            dif = tri * (1.0 - tri / ym) / special.polygamma(2, xm)
            xm = xm + dif
            if np.max(-dif / xm) < 1e-8:
                break
        x[mid] = xm
    return x


def fit_f_dist(x: np.ndarray, df1) -> tuple[float, float]:
    """
    Moment estimation of a scaled F prior for sample variances.

    Returns (s0_sq, d0); d0 is ``inf`` when the variances show no extra spread.
    """
    x = np.asarray(x, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape)
    ok = np.isfinite(x) & np.isfinite(df1) & (x > -1e-15) & (df1 > 1e-15)
    if ok.sum() < 2:
        return float("nan"), float("nan")

    x = np.maximum(x[ok], 0.0)
    df1 = df1[ok]
    med = np.median(x)
    if med == 0:
        LOGGER.warning("More than half of the residual variances are exactly zero: variance moderation unreliable")
        med = 1.0
    x = np.maximum(x, 1e-5 * med)

    z = np.log(x)
    e = z - special.digamma(df1 / 2.0) + np.log(df1 / 2.0)
    emean = float(np.mean(e))
    evar = float(np.sum((e - emean) ** 2) / (e.size - 1))
    evar -= float(np.mean(special.polygamma(1, df1 / 2.0)))

    if evar > 0:
        d0 = float(2.0 * trigamma_inverse(evar)[0])
        s0_sq = float(np.exp(emean + special.digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        d0 = float("inf")
        s0_sq = float(np.exp(emean))
    return s0_sq, d0


def squeeze_var(var: np.ndarray, df, s0_sq: float, d0: float) -> np.ndarray:
    """Posterior variances shrunk towards the prior ``s0_sq`` with ``d0`` prior degrees of freedom."""
    var = np.asarray(var, dtype=float)
    df = np.asarray(df, dtype=float)
    if np.isnan(d0) or np.isnan(s0_sq):
        return var.copy()
    if not np.isfinite(d0):
        return np.full(var.shape, s0_sq)
    return (df * var + d0 * s0_sq) / (df + d0)
