# src/sccontrast/gene_selection_utils.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from scipy.spatial.distance import cdist
from statsmodels.nonparametric.smoothers_lowess import lowess

from .stats_utils import p_adjust

LOGGER = logging.getLogger(__name__)

DISTANCES = ("l1", "l2", "cor")
GENE_SELECTIONS = ("wilcox", "var", "od")


# -----------------------------------------------------------------------------
# Distance choice
# -----------------------------------------------------------------------------
def parse_distance(
    dist: Optional[str],
    *,
    top_n_genes: Optional[int] = None,
    n_pcs: Optional[int] = None,
) -> str:
    """
    Resolve the distance identifier.

    Default: 'l1' when the working dimensionality (min of top_n_genes and n_pcs)
    is below 20, 'cor' otherwise. Choices outside their recommended range are
    accepted with a warning.
    """
    dims = [float(x) for x in (top_n_genes, n_pcs) if x is not None]
    n_comps = min(dims) if dims else np.inf

    if dist is None:
        return "l1" if n_comps < 20 else "cor"

    dist = str(dist).lower()
    if dist == "l2":
        LOGGER.warning(
            "Using dist='l2' is not recommended, as it may introduce unwanted dependency "
            "on the number of cells per cluster. Please, consider using 'l1' instead."
        )
    elif dist == "cor":
        if n_comps < 20:
            LOGGER.warning(
                "dist='cor' is not recommended for data with dimensionality < 20. Please, consider using 'l1' instead."
            )
    elif dist == "l1":
        if n_comps > 30:
            LOGGER.warning(
                "dist='l1' is not recommended for data with dimensionality > 30. Please, consider using 'cor' instead."
            )
    else:
        raise ValueError(f"Unknown dist: {dist!r}. Allowed: {', '.join(DISTANCES)}")

    return dist


def distance_matrix(x: pd.DataFrame, dist: str) -> pd.DataFrame:
    """Pairwise sample distances (rows of ``x``). Undefined correlations count as distance 1."""
    vals = x.to_numpy(dtype=float)
    if dist == "cor":
        with np.errstate(divide="ignore", invalid="ignore"):
            d = 1.0 - np.corrcoef(vals)
        d = np.atleast_2d(d)
        d[np.isnan(d)] = 1.0
    elif dist == "l2":
        d = cdist(vals, vals, metric="euclidean")
    elif dist == "l1":
        d = cdist(vals, vals, metric="cityblock")
    else:
        raise ValueError(f"Unknown distance: {dist!r}")
    return pd.DataFrame(d, index=x.index, columns=x.index)


def project_to_pcs(cm: pd.DataFrame, n_pcs: int) -> pd.DataFrame:
    """Project samples onto the top right singular vectors (no centering)."""
    min_dim = min(cm.shape) - 1
    if n_pcs > min_dim:
        LOGGER.warning("n_pcs is too large. Setting it to maximal allowed value %d", min_dim)
        n_pcs = min_dim

    _, _, vt = np.linalg.svd(cm.to_numpy(dtype=float), full_matrices=False)
    proj = cm.to_numpy(dtype=float) @ vt[:n_pcs].T
    return pd.DataFrame(proj, index=cm.index, columns=[f"PC{i + 1}" for i in range(proj.shape[1])])


# -----------------------------------------------------------------------------
# Gene ranking
# -----------------------------------------------------------------------------
def _split_by_condition(cm: pd.DataFrame, sample_groups: pd.Series) -> dict:
    g = sample_groups.reindex(cm.index)
    levels = [lv for lv in _levels(g) if (g == lv).any()]
    return {lv: g.index[(g == lv).to_numpy()].tolist() for lv in levels}


def _levels(g: pd.Series) -> list:
    if isinstance(g.dtype, pd.CategoricalDtype):
        return list(g.cat.categories)
    return sorted(pd.unique(g.dropna()).tolist())


def estimate_explained_variance(cm: pd.DataFrame, sample_groups: pd.Series) -> Optional[pd.Series]:
    """
    Per-gene share of the total variance explained by the condition split:
    1 - pooled within-condition sum of squares / total sum of squares.
    Returns None if all samples share one condition.
    """
    spg = _split_by_condition(cm, sample_groups)
    if len(spg) == 1:
        return None

    within = sum(
        (cm.loc[s].var(axis=0, ddof=1) * (len(s) - 1)).fillna(0.0) for s in spg.values()
    )
    total = cm.var(axis=0, ddof=1) * (cm.shape[0] - 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        return 1.0 - within / total


def _wilcox_pvalues(cm: pd.DataFrame, sample_groups: pd.Series) -> pd.Series:
    spg = list(_split_by_condition(cm, sample_groups).values())
    if len(spg) < 2:
        raise ValueError("Rank-sum gene selection needs samples from two conditions")
    x = cm.loc[spg[0]].to_numpy(dtype=float)
    y = cm.loc[spg[1]].to_numpy(dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = stats.mannwhitneyu(x, y, alternative="two-sided", use_continuity=True, method="asymptotic", axis=0).pvalue
    return pd.Series(np.asarray(p, dtype=float), index=cm.columns)


def find_overdispersed_genes(cm: pd.DataFrame, *, alpha: float = 0.05, frac: float = 2.0 / 3.0) -> list:
    """
    Genes whose variance exceeds the mean-variance trend.

    log(var) is regressed on log(mean) with lowess; the residual ratio is tested
    against F(n, n) and genes with BH-adjusted p below ``alpha`` are returned,
    ordered by raw p-value. Label-independent.
    """
    x = cm.to_numpy(dtype=float)
    n_obs = x.shape[0]
    m = x.mean(axis=0)
    v = x.var(axis=0, ddof=1)
    ok = (m > 0) & (v > 0)
    if ok.sum() < 3:
        return []

    log_m = np.log(m[ok])
    log_v = np.log(v[ok])
    fit = lowess(log_v, log_m, frac=frac, return_sorted=False)
    resid = log_v - fit

    p = stats.f.sf(np.exp(resid), n_obs, n_obs)
    padj = p_adjust(p, method="BH")

    genes = cm.columns[ok]
    tab = pd.DataFrame({"p": p, "padj": padj}, index=genes)
    tab = tab[tab["padj"] < alpha].sort_values("p", kind="stable")
    return tab.index.astype(str).tolist()


def filter_genes_for_cell_type(
    cm_norm: pd.DataFrame,
    sample_groups: pd.Series,
    *,
    top_n_genes: int = 500,
    gene_selection: str = "wilcox",
    exclude_genes: Optional[Sequence[str]] = None,
) -> list:
    """
    Top genes of one cell type (samples x genes) by:
      - var: explained variance between conditions, descending
      - wilcox: rank-sum p-value between conditions, ascending
      - od: overdispersion (ignores the conditions)
    Genes without a defined score are dropped.
    """
    if gene_selection == "var":
        ev = estimate_explained_variance(cm_norm, sample_groups)
        if ev is None:
            raise ValueError("Explained variance needs samples from at least two conditions")
        sel = ev.dropna().sort_values(ascending=False, kind="stable").index.astype(str).tolist()
    elif gene_selection == "wilcox":
        p = _wilcox_pvalues(cm_norm, sample_groups)
        sel = p.dropna().sort_values(kind="stable").index.astype(str).tolist()
    elif gene_selection == "od":
        sel = find_overdispersed_genes(cm_norm)
    else:
        raise ValueError(f"Unknown gene_selection={gene_selection!r}. Allowed: {', '.join(GENE_SELECTIONS)}")

    if exclude_genes is not None:
        excl = set(str(g) for g in exclude_genes)
        sel = [g for g in sel if g not in excl]
    return sel[: int(top_n_genes)]
