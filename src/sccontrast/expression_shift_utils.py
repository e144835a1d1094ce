# src/sccontrast/expression_shift_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd

from .gene_selection_utils import distance_matrix, filter_genes_for_cell_type, parse_distance, project_to_pcs
from .parallel_utils import ExecutionContext, run_parallel, spawn_seeds
from .pseudobulk_utils import as_str_index, collapse_cells_by_type, get_counts_matrix
from .stats_utils import p_adjust, trimmed_mean

LOGGER = logging.getLogger(__name__)

DIST_TYPES = ("shift", "total", "var")
NORM_TYPES = ("both", "ref", "none")
RETURN_TYPES = ("cross", "target")

SampleGroupsLike = Union[pd.Series, Mapping[str, Sequence[str]]]


# -----------------------------------------------------------------------------
# Result containers
# -----------------------------------------------------------------------------
@dataclass
class CellTypeShift:
    """Shift statistics of one cell type."""
    dists: np.ndarray
    dist_mat: pd.DataFrame
    n_cells: pd.Series
    pvalue: float
    observed: float = float("nan")


@dataclass
class ExpressionShiftResult:
    per_type: Dict[str, CellTypeShift]
    sample_groups: pd.Series
    cell_groups: pd.Series
    pvalues: pd.Series
    padjust: pd.Series
    settings: dict = field(default_factory=dict)

    @property
    def dists_per_type(self) -> Dict[str, np.ndarray]:
        return {ct: r.dists for ct, r in self.per_type.items()}

    @property
    def dist_matrices(self) -> Dict[str, pd.DataFrame]:
        return {ct: r.dist_mat for ct, r in self.per_type.items()}

    def summary(self) -> pd.DataFrame:
        rows = []
        for ct, r in self.per_type.items():
            d = np.asarray(r.dists, dtype=float)
            rows.append(
                {
                    "cell_type": ct,
                    "n_samples": int(r.dist_mat.shape[0]),
                    "n_cells": int(r.n_cells.sum()),
                    "observed": r.observed,
                    "median_shift": float(np.nanmedian(d)) if np.isfinite(d).any() else np.nan,
                    "pvalue": float(self.pvalues.get(ct, np.nan)),
                    "padj": float(self.padjust.get(ct, np.nan)),
                }
            )
        return pd.DataFrame(rows, columns=["cell_type", "n_samples", "n_cells", "observed", "median_shift", "pvalue", "padj"])


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def as_sample_groups_series(sample_groups: SampleGroupsLike) -> pd.Series:
    """
    Sample id -> condition as a categorical Series.

    A mapping keeps its key order as the level order; a non-categorical Series gets
    sorted levels.
    """
    if isinstance(sample_groups, pd.Series):
        s = as_str_index(sample_groups)
        if isinstance(s.dtype, pd.CategoricalDtype):
            return s.cat.remove_unused_categories()
        return s.astype(str).astype("category")

    levels = [str(k) for k in sample_groups.keys()]
    pairs = {str(smp): str(k) for k, v in sample_groups.items() for smp in v}
    return pd.Series(pd.Categorical(list(pairs.values()), categories=levels), index=list(pairs.keys()))


def _levels(g: pd.Series) -> list:
    if isinstance(g.dtype, pd.CategoricalDtype):
        return [str(c) for c in g.cat.categories]
    return sorted(pd.unique(g.dropna().astype(str)).tolist())


def _median(v: np.ndarray) -> float:
    v = v[~np.isnan(v)]
    return float(np.median(v)) if v.size else float("nan")


# -----------------------------------------------------------------------------
# Distances
# -----------------------------------------------------------------------------
def estimate_expression_shifts_for_cell_type(
    cm_norm: pd.DataFrame,
    sample_groups: pd.Series,
    dist: str,
    *,
    top_n_genes: Optional[int] = None,
    n_pcs: Optional[int] = None,
    gene_selection: str = "wilcox",
    exclude_genes: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Sample x sample distance matrix of one cell type, after optional gene selection and PCA."""
    if top_n_genes is not None:
        sel = filter_genes_for_cell_type(
            cm_norm, sample_groups, top_n_genes=top_n_genes, gene_selection=gene_selection, exclude_genes=exclude_genes,
        )
        cm_norm = cm_norm.loc[:, sel]

    if n_pcs is not None:
        cm_norm = project_to_pcs(cm_norm, int(n_pcs))

    return distance_matrix(cm_norm, dist)


def subset_distance_matrix(
    dist_mat: pd.DataFrame,
    sample_groups: pd.Series,
    *,
    cross_factor: bool,
    build_df: bool = False,
) -> Union[np.ndarray, pd.DataFrame, None]:
    """
    Off-diagonal distances between samples of different (``cross_factor=True``) or the
    same condition. Returns the values, or with ``build_df`` a long table
    (Var1, Var2, value); None when nothing is selected.
    """
    g_row = sample_groups.reindex(dist_mat.index).astype(object).to_numpy()
    g_col = sample_groups.reindex(dist_mat.columns).astype(object).to_numpy()
    valid = pd.notna(g_row)[:, None] & pd.notna(g_col)[None, :]
    same = g_row[:, None] == g_col[None, :]
    mask = valid & (~same if cross_factor else same)

    vals = dist_mat.to_numpy(dtype=float).copy()
    np.fill_diagonal(vals, np.nan)

    if not build_df:
        sel = vals[mask]
        return sel[~np.isnan(sel)]

    vals[~mask] = np.nan
    if np.isnan(vals).all():
        return None

    wide = pd.DataFrame(vals, index=pd.Index(dist_mat.index, name="Var1"), columns=dist_mat.columns)
    long = wide.reset_index().melt(id_vars="Var1", var_name="Var2", value_name="value")
    return long.dropna(subset=["value"]).reset_index(drop=True)


def estimate_expression_shifts_by_dist_mat(
    dist_mat: pd.DataFrame,
    sample_groups: pd.Series,
    *,
    norm_type: str = "both",
    ref_level: Optional[str] = None,
    return_type: str = "cross",
) -> np.ndarray:
    """
    Baseline-corrected distances of one cell type.

    norm_type: subtract the mean of both within-condition median distances ("both"),
    the median reference-reference distance ("ref") or nothing ("none").
    return_type: cross-condition distances ("cross") or distances among the
    non-reference samples ("target").
    """
    if norm_type not in NORM_TYPES:
        raise ValueError(f"Unknown norm_type={norm_type!r}. Allowed: {', '.join(NORM_TYPES)}")
    if return_type not in RETURN_TYPES:
        raise ValueError(f"Unknown return_type={return_type!r}. Allowed: {', '.join(RETURN_TYPES)}")
    if (norm_type == "ref" or return_type == "target") and ref_level is None:
        raise ValueError("ref_level has to be provided for norm_type='ref' or return_type='target'")

    g = sample_groups.reindex(dist_mat.index)
    gv = g.astype(object).to_numpy()
    valid = pd.notna(gv)
    vals = dist_mat.to_numpy(dtype=float)
    off = ~np.eye(vals.shape[0], dtype=bool)

    if norm_type == "both":
        levels = _levels(sample_groups)
        if len(levels) != 2:
            raise ValueError(f"norm_type='both' requires exactly two conditions, got {levels}")
        in1 = valid & (gv == levels[0])
        in2 = valid & (gv != levels[0])
        m1 = in1[:, None] & in1[None, :] & off
        m2 = in2[:, None] & in2[None, :] & off
        norm_const = (_median(vals[m1]) + _median(vals[m2])) / 2.0
    elif norm_type == "ref":
        in_ref = valid & (gv == ref_level)
        norm_const = _median(vals[in_ref[:, None] & in_ref[None, :] & off])
    else:
        norm_const = 0.0

    vals = vals - norm_const
    if return_type == "cross":
        shifted = pd.DataFrame(vals, index=dist_mat.index, columns=dist_mat.columns)
        return subset_distance_matrix(shifted, g, cross_factor=True)

    idx = np.where(valid & (gv != ref_level))[0]
    sub = vals[np.ix_(idx, idx)]
    return sub[np.triu_indices(idx.size, k=1)]


# -----------------------------------------------------------------------------
# Permutation workers
# -----------------------------------------------------------------------------
def _shuffle_groups(sample_groups: pd.Series, rng: np.random.Generator) -> pd.Series:
    cats = sample_groups.cat.categories if isinstance(sample_groups.dtype, pd.CategoricalDtype) else None
    perm = rng.permutation(sample_groups.astype(object).to_numpy())
    if cats is None:
        return pd.Series(perm, index=sample_groups.index)
    return pd.Series(pd.Categorical(perm, categories=cats), index=sample_groups.index)


def _permutation_chunk_worker(payload: dict) -> tuple[int, np.ndarray, dict]:
    """Worker: a block of label permutations for one cell type."""
    cm_norm: pd.DataFrame = payload["cm_norm"]
    dist_mat: pd.DataFrame = payload["dist_mat"]
    sg: pd.Series = payload["sample_groups"]
    rng = np.random.default_rng(payload["seed"])
    reselect = payload["top_n_genes"] is not None and payload["gene_selection"] != "od"

    out = np.full(int(payload["n_permutations"]), np.nan)
    for i in range(out.size):
        sg_shuff = _shuffle_groups(sg, rng)
        dm = dist_mat
        if reselect:
            dm = estimate_expression_shifts_for_cell_type(
                cm_norm,
                sg_shuff,
                payload["dist"],
                top_n_genes=payload["top_n_genes"],
                n_pcs=payload["n_pcs"],
                gene_selection=payload["gene_selection"],
                exclude_genes=payload["exclude_genes"],
            )
        d = estimate_expression_shifts_by_dist_mat(
            dm, sg_shuff, norm_type=payload["norm_type"], ref_level=payload["ref_level"], return_type=payload["return_type"],
        )
        out[i] = trimmed_mean(d, payload["trim"])
    return payload["key"], out, {"status": "ok"}


def _shift_cell_type_worker(payload: dict) -> tuple[str, CellTypeShift, dict]:
    """
    Worker: observed shift statistic and permutation p-value for one cell type.
    """
    ct = payload["key"]
    cm_norm: pd.DataFrame = payload["cm_norm"]
    sg: pd.Series = payload["sample_groups"]

    dist_mat = estimate_expression_shifts_for_cell_type(
        cm_norm,
        sg,
        payload["dist"],
        top_n_genes=payload["top_n_genes"],
        n_pcs=payload["n_pcs"],
        gene_selection=payload["gene_selection"],
        exclude_genes=payload["exclude_genes"],
    )
    dists = estimate_expression_shifts_by_dist_mat(
        dist_mat, sg, norm_type=payload["norm_type"], ref_level=payload["ref_level"], return_type=payload["return_type"],
    )
    obs_diff = trimmed_mean(dists, payload["trim"])

    n_perm = int(payload["n_permutations"])
    n_chunks = int(max(1, min(payload["n_cores_inner"], n_perm)))
    sizes = [len(c) for c in np.array_split(np.arange(n_perm), n_chunks)]
    seeds = spawn_seeds(payload["seed"], n_chunks)
    base = {k: payload[k] for k in (
        "cm_norm", "sample_groups", "dist", "top_n_genes", "n_pcs", "gene_selection",
        "exclude_genes", "norm_type", "return_type", "ref_level", "trim",
    )}
    chunks = [
        {**base, "key": i, "dist_mat": dist_mat, "n_permutations": n, "seed": sd}
        for i, (n, sd) in enumerate(zip(sizes, seeds))
    ]
    values, _ = run_parallel(
        _permutation_chunk_worker,
        chunks,
        ctx=ExecutionContext(n_jobs=n_chunks, progress=False),
        stage=f"permutations[{ct}]",
        fail_on_error=True,
    )
    randomized = np.concatenate([values[i] for i in range(n_chunks)]) if n_perm > 0 else np.array([])

    finite = ~np.isnan(randomized)
    if np.isnan(obs_diff):
        pvalue = float("nan")
    else:
        pvalue = float((np.sum(randomized[finite] >= obs_diff) + 1) / (finite.sum() + 1))
    dists = dists - _median(randomized)

    res = CellTypeShift(
        dists=dists,
        dist_mat=dist_mat,
        n_cells=payload["n_cells"],
        pvalue=pvalue,
        observed=float(obs_diff),
    )
    return ct, res, {"status": "ok", "pvalue": pvalue, "n_samples": int(cm_norm.shape[0])}


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------
def estimate_expression_change(
    cm_per_type: Mapping[str, pd.DataFrame],
    sample_groups: SampleGroupsLike,
    cell_groups: pd.Series,
    sample_per_cell: pd.Series,
    *,
    dist: Optional[str] = None,
    dist_type: str = "shift",
    ref_level: Optional[str] = None,
    n_permutations: int = 1000,
    p_adjust_method: str = "BH",
    top_n_genes: Optional[int] = None,
    gene_selection: str = "wilcox",
    n_pcs: Optional[int] = None,
    trim: float = 0.2,
    exclude_genes: Optional[Sequence[str]] = None,
    seed: Optional[int] = None,
    ctx: ExecutionContext = ExecutionContext(),
    fail_on_error: bool = True,
) -> ExpressionShiftResult:
    """
    Expression shift magnitudes per cell type between two conditions.

    cm_per_type: cell type -> normalized expression (samples x genes), see
        ``prepare_expression_distance_input``
    dist_type: "shift" (cross-condition distances normalized by both within-condition
        medians), "total" (cross-condition, normalized by the reference median) or
        "var" (distances among non-reference samples, normalized by the reference median)

    Significance comes from ``n_permutations`` shuffles of the condition labels among
    the samples of each cell type; p-values are adjusted across cell types.
    """
    if dist_type not in DIST_TYPES:
        raise ValueError(f"Unknown dist_type={dist_type!r}. Allowed: {', '.join(DIST_TYPES)}")
    if not 0.0 <= float(trim) < 0.5:
        raise ValueError(f"trim must be in [0, 0.5), got {trim!r}")
    dist = parse_distance(dist, top_n_genes=top_n_genes, n_pcs=n_pcs)

    norm_type = "both" if dist_type == "shift" else "ref"
    return_type = "target" if dist_type == "var" else "cross"
    if norm_type == "ref" and ref_level is None:
        raise ValueError(f"ref_level has to be provided for dist_type={dist_type!r}")

    sg_all = as_sample_groups_series(sample_groups)
    cell_groups = as_str_index(cell_groups).astype("category").cat.remove_unused_categories()
    spc = as_str_index(sample_per_cell).reindex(cell_groups.index)
    sample_type_table = pd.crosstab(cell_groups, spc.astype(str))

    levels = [str(c) for c in cell_groups.cat.categories]
    missing = [ct for ct in levels if ct not in cm_per_type]
    if missing:
        LOGGER.warning("No expression matrix for cell type(s): %s", ", ".join(missing))
    types = [ct for ct in levels if ct in cm_per_type]

    LOGGER.info("Calculating pairwise distances using dist='%s' (cell types=%d)", dist, len(types))
    n_cores_inner = max(int(ctx.n_jobs) // max(len(types), 1), 1)

    payloads = []
    for ct, sd in zip(types, spawn_seeds(seed, len(types))):
        cm_norm = cm_per_type[ct]
        payloads.append(
            {
                "key": ct,
                "cm_norm": cm_norm,
                "sample_groups": sg_all.reindex(cm_norm.index),
                "n_cells": sample_type_table.loc[ct].reindex(cm_norm.index).fillna(0).astype(int)
                if ct in sample_type_table.index else pd.Series(0, index=cm_norm.index),
                "dist": dist,
                "top_n_genes": top_n_genes,
                "n_pcs": n_pcs,
                "gene_selection": gene_selection,
                "exclude_genes": None if exclude_genes is None else list(exclude_genes),
                "norm_type": norm_type,
                "return_type": return_type,
                "ref_level": ref_level,
                "trim": float(trim),
                "n_permutations": int(n_permutations),
                "n_cores_inner": n_cores_inner,
                "seed": sd,
            }
        )

    values, _ = run_parallel(
        _shift_cell_type_worker,
        payloads,
        ctx=ctx.with_jobs(min(int(ctx.n_jobs), max(len(payloads), 1))),
        stage="Expression shifts",
        fail_on_error=fail_on_error,
    )
    per_type = {ct: values[ct] for ct in types if values.get(ct) is not None}
    LOGGER.info("Expression shifts done (cell types=%d)", len(per_type))

    pvalues = pd.Series({ct: r.pvalue for ct, r in per_type.items()}, dtype=float)
    padjust = pd.Series(p_adjust(pvalues.to_numpy(), method=p_adjust_method), index=pvalues.index)

    return ExpressionShiftResult(
        per_type=per_type,
        sample_groups=sg_all,
        cell_groups=cell_groups,
        pvalues=pvalues,
        padjust=padjust,
        settings={
            "dist": dist,
            "dist_type": dist_type,
            "n_permutations": int(n_permutations),
            "top_n_genes": top_n_genes,
            "gene_selection": gene_selection,
            "n_pcs": n_pcs,
            "trim": float(trim),
            "p_adjust_method": p_adjust_method,
        },
    )


# -----------------------------------------------------------------------------
# Joint distances
# -----------------------------------------------------------------------------
def join_expression_shift_dfs(
    dist_df_per_type: Mapping[str, Optional[pd.DataFrame]],
    sample_groups: SampleGroupsLike,
) -> pd.DataFrame:
    """Stack long distance tables of several cell types, adding Type and Condition (of Var1)."""
    sg = as_sample_groups_series(sample_groups).astype(str)
    parts = [df.assign(Type=ct) for ct, df in dist_df_per_type.items() if df is not None]
    if not parts:
        return pd.DataFrame(columns=["Var1", "Var2", "value", "Type", "Condition"])
    df = pd.concat(parts, ignore_index=True)
    df["Condition"] = df["Var1"].astype(str).map(sg)
    return df.dropna().reset_index(drop=True)


def prepare_joint_expression_distance(
    p_dist_per_type: Mapping[str, CellTypeShift],
    sample_groups: Optional[SampleGroupsLike] = None,
    *,
    return_dists: bool = True,
) -> Union[pd.DataFrame, None]:
    """
    Cell-count weighted average of per-type distance matrices over the union of samples.

    The pair (i, j) of a type is weighted by sqrt(min(n_i, n_j)); samples missing in
    a type carry zero weight. With ``return_dists=False`` the same-condition pairs are
    returned as a long table (Var1, Var2, value, type1, type2).
    """
    samples: list = []
    for r in p_dist_per_type.values():
        samples.extend(str(s) for s in r.dist_mat.columns)
    samples = list(dict.fromkeys(samples))
    n = len(samples)

    num = np.zeros((n, n))
    den = np.zeros((n, n))
    for r in p_dist_per_type.values():
        pos = pd.Index(samples).get_indexer(r.dist_mat.columns.astype(str))
        nc = np.zeros(n)
        nc[pos] = r.n_cells.reindex(r.dist_mat.columns).fillna(0).to_numpy(dtype=float)
        x = np.zeros((n, n))
        x[np.ix_(pos, pos)] = r.dist_mat.to_numpy(dtype=float)
        w = np.sqrt(np.minimum.outer(nc, nc))
        num += x * w
        den += w

    with np.errstate(divide="ignore", invalid="ignore"):
        xd = pd.DataFrame(num / den, index=samples, columns=samples)

    if return_dists:
        return xd

    if sample_groups is None:
        raise ValueError("sample_groups is required when return_dists=False")
    sg = as_sample_groups_series(sample_groups).astype(str)
    out = subset_distance_matrix(xd, sg, cross_factor=False, build_df=True)
    if out is None:
        return None
    out["type1"] = out["Var1"].astype(str).map(sg)
    out["type2"] = out["Var2"].astype(str).map(sg)
    return out


# -----------------------------------------------------------------------------
# Input preparation
# -----------------------------------------------------------------------------
def filter_cell_types_by_n_samples(
    cell_groups: pd.Series,
    sample_per_cell: pd.Series,
    sample_groups: SampleGroupsLike,
    *,
    min_cells_per_sample: int = 10,
    min_samp_per_type: int = 2,
) -> pd.DataFrame:
    """
    (Type, Sample, Freq, Condition) rows of every cell type / sample pair with at
    least ``min_cells_per_sample`` cells, without cell types that have fewer than
    ``min_samp_per_type`` such samples in either condition.
    """
    sg = as_sample_groups_series(sample_groups).astype(str)
    cg = as_str_index(cell_groups).astype(str)
    spc = as_str_index(sample_per_cell).reindex(cg.index).astype(str)

    freq = (
        pd.crosstab(cg.rename("Type"), spc.rename("Sample"))
        .rename_axis(index="Type", columns="Sample")
        .reset_index()
        .melt(id_vars="Type", var_name="Sample", value_name="Freq")
    )
    freq["Condition"] = freq["Sample"].map(sg)
    freq = freq.dropna(subset=["Condition"])
    freq = freq[freq["Freq"] >= int(min_cells_per_sample)]

    conditions = sorted(freq["Condition"].unique().tolist())
    if len(conditions) != 2:
        raise ValueError("'sample_groups' must have 2 levels describing which samples are being contrasted")

    counts = freq.groupby(["Type", "Condition"]).size().unstack(fill_value=0).reindex(columns=conditions, fill_value=0)
    removed = counts.index[(counts < int(min_samp_per_type)).any(axis=1)].astype(str).tolist()
    if removed:
        LOGGER.warning("Excluding cell types %s that don't have enough samples", ", ".join(removed))

    return freq[~freq["Type"].isin(removed)].reset_index(drop=True)


def prepare_expression_distance_input(
    cms: Mapping[str, ad.AnnData],
    cell_groups: pd.Series,
    sample_per_cell: pd.Series,
    sample_groups: SampleGroupsLike,
    *,
    min_cells_per_sample: int = 10,
    min_samp_per_type: int = 2,
    min_gene_frac: float = 0.01,
    genes: Optional[Sequence[str]] = None,
    counts_layer: Optional[str] = None,
) -> Tuple[Dict[str, pd.DataFrame], pd.Series, pd.Series]:
    """
    Per-type normalized pseudo-bulk matrices for ``estimate_expression_change``.

    Rare (type, sample) pairs and types without enough samples are dropped, genes are
    kept if expressed (count > 1) in more than ``min_gene_frac`` of the cells of more
    than 10% of the samples, and each sample row is scaled to
    log10(1e3 * counts / total + 1).

    Returns (cm_per_type, cell_groups, sample_groups).
    """
    cg = as_str_index(cell_groups).astype(str)
    cell_names = pd.Index([str(c) for m in cms.values() for c in m.obs_names])
    freq = filter_cell_types_by_n_samples(
        cg.reindex(cell_names),
        as_str_index(sample_per_cell).reindex(cell_names),
        sample_groups,
        min_cells_per_sample=min_cells_per_sample,
        min_samp_per_type=min_samp_per_type,
    )

    types_per_sample = freq.groupby("Sample")["Type"].apply(set).to_dict()
    cms_filt: Dict[str, ad.AnnData] = {}
    for s, types in types_per_sample.items():
        if s not in cms:
            continue
        m = cms[s]
        keep = cg.reindex(m.obs_names.astype(str)).isin(types).to_numpy()
        cms_filt[s] = m[keep]

    if genes is None:
        hits: Dict[str, int] = {}
        for m in cms_filt.values():
            X = get_counts_matrix(m, counts_layer=counts_layer).copy()
            X.data = (X.data > 1).astype(np.float64)
            frac = np.asarray(X.mean(axis=0)).ravel()
            for g in m.var_names[frac > min_gene_frac].astype(str):
                hits[g] = hits.get(g, 0) + 1
        genes = sorted(g for g, k in hits.items() if k / max(len(cms_filt), 1) > 0.1)
    genes = [str(g) for g in genes]

    pb = {
        s: collapse_cells_by_type(m, cg, min_cell_count=1, counts_layer=counts_layer).reindex(columns=genes, fill_value=0)
        for s, m in cms_filt.items()
    }

    kept_cells = pd.Index([str(c) for m in cms_filt.values() for c in m.obs_names])
    cg_kept = cg.reindex(kept_cells).astype("category")

    cm_per_type: Dict[str, pd.DataFrame] = {}
    for ct in cg_kept.cat.categories:
        rows = {s: t.loc[ct] for s, t in pb.items() if ct in t.index}
        if not rows:
            continue
        cm = pd.DataFrame(rows).T.astype(float)
        cm = cm.div(np.maximum(1.0, cm.sum(axis=1)), axis=0)
        cm_per_type[str(ct)] = np.log10(cm * 1e3 + 1)

    sg = as_sample_groups_series(sample_groups)
    sg = sg[sg.index.isin([str(s) for s in cms.keys()])]
    return cm_per_type, cg_kept, sg
