# src/sccontrast/de_utils.py
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd

from .de_backends import DEResult, DETest, parse_de_test, run_de_backend
from .parallel_utils import ExecutionContext, compute_parallelism, run_parallel, spawn_seeds
from .pseudobulk_utils import (
    cell_type_levels,
    collapse_samples,
    extend_matrices_to_gene_union,
    pseudobulk_per_type,
    subsample_cells_per_type,
    subset_matrices_with_common_genes,
)
from .resampling_utils import prepare_samples_for_de, summarize_de_resampling_results
from .stats_utils import add_z_scores

LOGGER = logging.getLogger(__name__)

SampleGroups = Mapping[str, Sequence[str]]
GeneFilter = Union[pd.DataFrame, Mapping[str, Sequence[str]]]


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------
def validate_de_params(
    raw_mats: Mapping[str, ad.AnnData],
    cell_groups: Optional[pd.Series],
    sample_groups: Optional[SampleGroups],
    ref_level: Optional[str],
) -> None:
    """Fail fast on malformed inputs; every message names the violated precondition."""
    if cell_groups is None:
        raise ValueError('"cell_groups" must be specified')
    if not isinstance(cell_groups, pd.Series):
        raise ValueError('"cell_groups" must be a pandas Series mapping cell ids to cell types')
    if sample_groups is None:
        raise ValueError('"sample_groups" must be specified')
    if not isinstance(sample_groups, Mapping):
        raise ValueError('"sample_groups" must be a mapping of condition -> sample ids')
    if len(sample_groups) != 2:
        raise ValueError(f'"sample_groups" must have exactly 2 entries (got {len(sample_groups)})')

    names = list(sample_groups.keys())
    if any((not isinstance(n, str)) or (not n) for n in names):
        raise ValueError('"sample_groups" must be named with non-empty strings')

    for n, v in sample_groups.items():
        if isinstance(v, str) or not all(isinstance(s, str) for s in v):
            raise ValueError('"sample_groups" must map to lists of sample-id strings')
        if len(v) == 0:
            raise ValueError(f'"sample_groups" entry {n!r} must contain at least one sample')
        missing = [s for s in v if s not in raw_mats]
        if missing:
            raise ValueError(f'"sample_groups" entry {n!r} has samples missing from the count matrices: {missing}')

    overlap = set(sample_groups[names[0]]) & set(sample_groups[names[1]])
    if overlap:
        raise ValueError(f'"sample_groups" entries must be disjoint; shared samples: {sorted(overlap)}')

    if ref_level is None:
        raise ValueError('"ref_level" is not defined')
    if ref_level not in sample_groups:
        raise ValueError(f'"ref_level"={ref_level!r} is not one of the sample groups {names}')


def filter_de_metadata(meta: pd.DataFrame) -> Optional[pd.DataFrame]:
    """
    Drop constant metadata columns. Returns None when two of the remaining columns
    (ignoring the leading sample-id column) are collinear, i.e. one fully determines the other.
    """
    keep = [c for c in meta.columns if meta[c].nunique(dropna=False) != 1]
    meta = meta.loc[:, keep]
    if meta.shape[1] <= 1:
        return meta

    cols = list(meta.columns)[1:]
    for i, ci in enumerate(cols):
        for cj in cols[i + 1:]:
            n_pairs = meta[[ci, cj]].astype(str).drop_duplicates().shape[0]
            if n_pairs == meta[ci].astype(str).nunique():
                return None
    return meta


# -----------------------------------------------------------------------------
# Per cell type worker
# -----------------------------------------------------------------------------
def _skip(ct: str, reason: str) -> tuple[str, None, dict]:
    return ct, None, {"status": "skipped", "reason": reason}


def _de_cell_type_worker(payload: dict) -> tuple[str, Any, dict]:
    """
    Worker: DE for a single cell type.
    Returns (cell_type, DEResult | DataFrame | None, status_meta)
    """
    ct = payload["key"]
    cm: pd.DataFrame = payload["cm"]
    s_groups: Dict[str, list] = payload["sample_groups"]
    ref_level = str(payload["ref_level"])
    target_level = str(payload["target_level"])
    fix_n_samples = payload.get("fix_n_samples")
    meta_info: Optional[pd.DataFrame] = payload.get("meta_info")
    test: DETest = payload["test"]
    rng = np.random.default_rng(payload.get("seed"))

    genes_keep = payload.get("genes_keep")
    if genes_keep is not None:
        cm = cm.loc[:, cm.columns.intersection(genes_keep, sort=False)]
        if cm.shape[1] == 0:
            return _skip(ct, "no genes left after gene filtering")

    cur_groups = {k: [s for s in v if s in cm.index] for k, v in s_groups.items()}
    if fix_n_samples is not None:
        if min(len(v) for v in cur_groups.values()) < int(fix_n_samples):
            return _skip(ct, f"the cell type does not have {int(fix_n_samples)} samples in every condition")
        cur_groups = {k: sorted(rng.choice(v, size=int(fix_n_samples), replace=False).tolist()) for k, v in cur_groups.items()}
        cm = cm.loc[[s for v in cur_groups.values() for s in v]]

    sample_to_group = {s: k for k, v in cur_groups.items() for s in v}
    groups = pd.Series([sample_to_group.get(s) for s in cm.index], index=cm.index).dropna()
    cm = cm.loc[groups.index]
    n_per_level = groups.value_counts()

    if n_per_level.size < 2:
        return _skip(ct, "the cell type is not present in both conditions")
    if int(n_per_level.min()) < 2:
        return _skip(ct, "each condition should be present in at least two samples")
    if ref_level not in n_per_level.index:
        return _skip(ct, "the reference level is absent in this comparison")

    others = [g for g in s_groups.keys() if g != ref_level]
    meta = pd.DataFrame(
        {
            "sample_id": cm.index.astype(str),
            "group": pd.Categorical(groups.to_numpy(), categories=[ref_level, *others]),
        },
        index=cm.index,
    )

    covariates: list[str] = []
    if meta_info is not None:
        extra = meta_info.reindex(cm.index)
        extra = extra.loc[:, [c for c in extra.columns if c not in ("sample_id", "group")]]
        meta = filter_de_metadata(pd.concat([meta, extra], axis=1))
        if meta is None:
            return _skip(ct, "covariates are not independent")
        if "group" not in meta.columns:
            return _skip(ct, "all samples of the same group")
        covariates = [c for c in meta.columns if c not in ("sample_id", "group")]

    res = run_de_backend(
        test,
        cm,
        meta,
        covariates=covariates,
        ref_level=ref_level,
        target_level=target_level,
        cooks_cutoff=bool(payload.get("cooks_cutoff", False)),
        independent_filtering=bool(payload.get("independent_filtering", True)),
        n_cpus=int(payload.get("n_cpus", 1)),
    )
    res["Gene"] = res.index.astype(str)
    res = add_z_scores(res).sort_values("pvalue", na_position="last")

    status = {
        "status": "ok",
        "n_samples": int(cm.shape[0]),
        "n_genes": int(res.shape[0]),
        "covariates": ",".join(covariates),
    }
    if payload.get("return_matrix", True):
        return ct, DEResult(res=res, cm=cm, meta=meta), status
    return ct, res, status


def _genes_for_type(gene_filter: Optional[GeneFilter], ct: str) -> Optional[list]:
    if gene_filter is None:
        return None
    if isinstance(gene_filter, pd.DataFrame):
        if ct not in gene_filter.columns:
            return None
        col = gene_filter[ct].astype(bool)
        return col.index[col.to_numpy()].astype(str).tolist()
    genes = gene_filter.get(ct)
    return None if genes is None else [str(g) for g in genes]


# -----------------------------------------------------------------------------
# Single-pass DE over all cell types
# -----------------------------------------------------------------------------
def estimate_de_per_cell_type_inner(
    raw_mats: Mapping[str, ad.AnnData],
    cell_groups: pd.Series,
    sample_groups: SampleGroups,
    ref_level: str,
    target_level: Optional[str] = None,
    *,
    common_genes: bool = False,
    cooks_cutoff: bool = False,
    min_cell_count: int = 10,
    max_cell_count: float = np.inf,
    independent_filtering: bool = True,
    return_matrix: bool = True,
    fix_n_samples: Optional[int] = None,
    test: Union[str, DETest] = "deseq2.wald",
    meta_info: Optional[pd.DataFrame] = None,
    gene_filter: Optional[GeneFilter] = None,
    counts_layer: Optional[str] = None,
    seed: Optional[int] = None,
    ctx: ExecutionContext = ExecutionContext(),
    fail_on_error: bool = False,
    return_summary: bool = False,
) -> Union[Dict[str, Any], Tuple[Dict[str, Any], pd.DataFrame]]:
    """
    Pseudo-bulk differential expression between two conditions for every cell type.

    raw_mats: sample id -> AnnData of raw counts (cells x genes)
    cell_groups: cell id -> cell type
    sample_groups: condition -> sample ids (exactly two conditions)
    test: ``method[.subtype]`` (see ``parse_de_test``) or a parsed test
    meta_info: optional per-sample covariates (index = sample ids)
    gene_filter: genes x cell types boolean table, or cell type -> genes to keep

    Returns a mapping cell type -> DEResult (or gene table if ``return_matrix=False``).
    Cell types that cannot be tested are left out with a warning.
    """
    validate_de_params(raw_mats, cell_groups, sample_groups, ref_level)
    test = parse_de_test(test)
    if target_level is None:
        target_level = [g for g in sample_groups if g != ref_level][0]

    # duplicated samples (bootstrap) collapse to one library each
    s_groups = {str(k): list(dict.fromkeys(str(s) for s in v)) for k, v in sample_groups.items()}
    all_samples = [s for v in s_groups.values() for s in v]

    if ctx.progress:
        LOGGER.info("Preparing matrices for DE (test=%s, samples=%d)", test, len(all_samples))
    mats = {s: raw_mats[s] for s in all_samples}
    # counts are resolved here, the extended matrices carry them in .X
    if common_genes:
        mats = subset_matrices_with_common_genes(mats, counts_layer=counts_layer)
    else:
        mats = extend_matrices_to_gene_union(mats, counts_layer=counts_layer)

    pb_per_sample = collapse_samples(
        mats, cell_groups, min_cell_count=min_cell_count, max_cell_count=max_cell_count,
    )
    levels = cell_type_levels(cell_groups)
    cm_per_type = pseudobulk_per_type(pb_per_sample, levels)

    passed = set(pb_per_sample.keys())
    excluded = [s for s in all_samples if s not in passed]
    if excluded:
        LOGGER.warning("Excluded %d sample(s) due to 'min_cell_count': %s", len(excluded), ", ".join(excluded))
    s_groups = {k: [s for s in v if s in passed] for k, v in s_groups.items()}

    seeds = spawn_seeds(seed, len(cm_per_type))
    n_jobs_eff, n_cpus_eff = compute_parallelism(n_units=len(cm_per_type), total_cpus=ctx.n_jobs)
    payloads = []
    for (ct, cm), sd in zip(cm_per_type.items(), seeds):
        payloads.append(
            {
                "key": ct,
                "cm": cm,
                "sample_groups": s_groups,
                "ref_level": ref_level,
                "target_level": target_level,
                "fix_n_samples": fix_n_samples,
                "meta_info": None if meta_info is None else meta_info.reindex(cm.index),
                "genes_keep": _genes_for_type(gene_filter, ct),
                "test": test,
                "cooks_cutoff": cooks_cutoff,
                "independent_filtering": independent_filtering,
                "return_matrix": return_matrix,
                "n_cpus": n_cpus_eff,
                "seed": sd,
            }
        )

    if ctx.progress:
        LOGGER.info("Estimating DE per cell type (cell types=%d)", len(payloads))
    values, metas = run_parallel(
        _de_cell_type_worker,
        payloads,
        ctx=ctx.with_jobs(n_jobs_eff),
        stage="DE",
        fail_on_error=fail_on_error,
    )

    for ct, m in metas.items():
        if m.get("status") == "skipped":
            LOGGER.warning("DE skipped for cell type %s: %s", ct, m.get("reason"))

    de_res = {ct: values[ct] for ct in cm_per_type if values.get(ct) is not None}

    dif = [ct for ct in levels if ct not in de_res]
    if dif:
        LOGGER.info("DEs not calculated for %d cell group(s): %s", len(dif), ", ".join(dif))

    if not return_summary:
        return de_res

    summary = pd.DataFrame(
        [{"cell_type": ct, **metas.get(ct, {"status": "skipped", "reason": "no pseudo-bulk samples"})} for ct in levels]
    )
    return de_res, summary


# -----------------------------------------------------------------------------
# Resampled DE
# -----------------------------------------------------------------------------
def _de_iteration_worker(payload: dict) -> tuple[str, Dict[str, Any], dict]:
    """Worker: one resampling iteration of the full per-cell-type DE."""
    name = payload["key"]
    raw_mats = payload["raw_mats"]
    n_cells = payload.get("n_cells_subsample")
    if n_cells is not None:
        raw_mats = subsample_cells_per_type(
            raw_mats, payload["cell_groups"], n_cells=int(n_cells), rng=np.random.default_rng(payload["seed"]),
        )

    res = estimate_de_per_cell_type_inner(
        raw_mats,
        payload["cell_groups"],
        payload["sample_groups"],
        payload["ref_level"],
        payload["target_level"],
        seed=payload["seed"],
        ctx=ExecutionContext(n_jobs=payload["n_cpus"], progress=False),
        **payload["inner_kwargs"],
    )
    return name, res, {"status": "ok", "n_cell_types": len(res)}


def estimate_de_per_cell_type(
    raw_mats: Mapping[str, ad.AnnData],
    cell_groups: pd.Series,
    sample_groups: SampleGroups,
    ref_level: str,
    target_level: Optional[str] = None,
    *,
    resampling_method: Optional[str] = None,
    n_resamplings: int = 30,
    fix_n_samples: Optional[int] = None,
    n_cells_subsample: Optional[int] = None,
    var_to_sort: str = "pvalue",
    min_cell_count: int = 10,
    seed: Optional[int] = None,
    ctx: ExecutionContext = ExecutionContext(),
    **inner_kwargs,
) -> Dict[str, Any]:
    """
    DE per cell type, optionally with resampling-based stability estimates.

    Without ``resampling_method`` this is a single pass of
    ``estimate_de_per_cell_type_inner``, subsampled to ``fix_n_samples`` samples per
    condition if given. Otherwise the primary run on the original
    groups is followed by one run per iteration from ``prepare_samples_for_de`` and
    the rank-stability columns from ``summarize_de_resampling_results`` are added.
    ``fix.samples`` subsamples ``fix_n_samples`` samples per condition (default: the
    smallest group size minus one, at least 2); ``fix.cells`` keeps at most
    ``n_cells_subsample`` cells per sample and cell type (default: ``min_cell_count``).
    """
    validate_de_params(raw_mats, cell_groups, sample_groups, ref_level)
    if target_level is None:
        target_level = [g for g in sample_groups if g != ref_level][0]

    inner_kwargs = {**inner_kwargs, "min_cell_count": min_cell_count, "return_matrix": True}
    if resampling_method is None:
        return estimate_de_per_cell_type_inner(
            raw_mats, cell_groups, sample_groups, ref_level, target_level,
            fix_n_samples=fix_n_samples, seed=seed, ctx=ctx, **inner_kwargs,
        )
    if fix_n_samples is not None and resampling_method != "fix.samples":
        LOGGER.warning(
            "fix_n_samples=%s is ignored with resampling_method=%r", fix_n_samples, resampling_method,
        )

    primary = estimate_de_per_cell_type_inner(
        raw_mats, cell_groups, sample_groups, ref_level, target_level, seed=seed, ctx=ctx, **inner_kwargs,
    )

    rng = np.random.default_rng(seed)
    plans = prepare_samples_for_de(sample_groups, resampling_method, n_resamplings=n_resamplings, rng=rng)

    iter_kwargs = dict(inner_kwargs)
    if resampling_method == "fix.samples":
        if fix_n_samples is None:
            fix_n_samples = max(2, min(len(v) for v in sample_groups.values()) - 1)
        iter_kwargs["fix_n_samples"] = int(fix_n_samples)
    if resampling_method == "fix.cells" and n_cells_subsample is None:
        n_cells_subsample = int(min_cell_count)

    n_jobs_eff, n_cpus_eff = compute_parallelism(n_units=len(plans), total_cpus=ctx.n_jobs)
    seeds = spawn_seeds(None if seed is None else seed + 1, len(plans))
    payloads = [
        {
            "key": name,
            "raw_mats": {s: raw_mats[s] for s in dict.fromkeys(x for v in groups.values() for x in v)},
            "cell_groups": cell_groups,
            "sample_groups": groups,
            "ref_level": ref_level,
            "target_level": target_level,
            "n_cells_subsample": n_cells_subsample if resampling_method == "fix.cells" else None,
            "inner_kwargs": iter_kwargs,
            "n_cpus": n_cpus_eff,
            "seed": sd,
        }
        for (name, groups), sd in zip(plans.items(), seeds)
    ]

    LOGGER.info("DE resampling: method=%s, iterations=%d", resampling_method, len(payloads))
    values, _ = run_parallel(
        _de_iteration_worker,
        payloads,
        ctx=ctx.with_jobs(n_jobs_eff),
        stage="DE resampling",
        fail_on_error=bool(inner_kwargs.get("fail_on_error", False)),
    )

    de_list = {name: values.get(name) or {} for name in plans}
    return summarize_de_resampling_results(primary, de_list, var_to_sort=var_to_sort)


# -----------------------------------------------------------------------------
# Extra statistics
# -----------------------------------------------------------------------------
def append_statistics_to_de(
    de_results: Mapping[str, DEResult],
    expr_frac_per_type: pd.DataFrame,
) -> Dict[str, DEResult]:
    """
    Add ``CellFrac`` (fraction of the type's cells expressing the gene) and
    ``SampleFrac`` (fraction of pseudo-bulk samples with non-zero counts).
    """
    out: Dict[str, DEResult] = {}
    for ct, r in de_results.items():
        res = r.res.copy()
        genes = res["Gene"].astype(str)
        if ct in expr_frac_per_type.columns:
            res["CellFrac"] = expr_frac_per_type[ct].reindex(genes).to_numpy()
        else:
            res["CellFrac"] = np.nan
        if r.cm is not None:
            res["SampleFrac"] = (r.cm > 0).mean(axis=0).reindex(genes).to_numpy()
        out[ct] = replace(r, res=res)
    return out
