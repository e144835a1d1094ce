# src/sccontrast/case_control.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from .accessors import AnnDataAccessor, restrict_sample_groups
from .config import DEConfig, ExpressionShiftConfig
from .de_backends import DEResult
from .de_utils import append_statistics_to_de, estimate_de_per_cell_type
from .expression_shift_utils import (
    ExpressionShiftResult,
    estimate_expression_change,
    join_expression_shift_dfs,
    prepare_expression_distance_input,
    prepare_joint_expression_distance,
    subset_distance_matrix,
)
from .logging_utils import init_logging
from .pseudobulk_utils import get_expression_fraction_per_group

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _safe_token(x: object) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", str(x)).strip("_") or "NA"


def _write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


def _load_accessor(cfg) -> AnnDataAccessor:
    LOGGER.info("Loading dataset: %s", cfg.input_path)
    adata = ad.read_h5ad(str(cfg.input_path))
    return AnnDataAccessor(
        adata,
        sample_key=cfg.sample_key,
        cell_type_key=cfg.cell_type_key,
        condition_key=cfg.condition_key,
        counts_layer=cfg.counts_layer,
    )


def _resolve_sample_groups(acc: AnnDataAccessor, ref_level: str, target_level: Optional[str]) -> Dict[str, List[str]]:
    groups = acc.get_sample_groups(ref_level=ref_level)
    if target_level is None:
        others = [g for g in groups if g != ref_level]
        if len(others) != 1:
            raise ValueError(
                f"{acc.condition_key!r} has conditions {list(groups)}; set target_level to pick the contrast"
            )
        target_level = others[0]
    sample_groups = restrict_sample_groups(groups, [ref_level, target_level])
    LOGGER.info(
        "Contrast %s (n=%d) vs %s (n=%d)",
        target_level, len(sample_groups[target_level]), ref_level, len(sample_groups[ref_level]),
    )
    return sample_groups


def sample_covariates(obs: pd.DataFrame, sample_key: str, covariates: Sequence[str]) -> pd.DataFrame:
    """
    Per-sample covariate table (index = sample id) from cell-level obs columns.
    Each covariate must be constant within a sample.
    """
    missing = [c for c in covariates if c not in obs]
    if missing:
        raise KeyError(f"Covariate(s) not found in adata.obs: {missing}")

    df = obs[[sample_key, *covariates]].copy()
    df[sample_key] = df[sample_key].astype(str)
    n_values = df.groupby(sample_key, observed=True)[list(covariates)].nunique(dropna=False)
    bad = [c for c in covariates if (n_values[c] > 1).any()]
    if bad:
        raise ValueError(f"Covariate(s) vary within samples and cannot be used in a pseudo-bulk design: {bad}")

    out = df.groupby(sample_key, observed=True)[list(covariates)].first()
    for c in covariates:
        if not pd.api.types.is_numeric_dtype(out[c]):
            out[c] = out[c].astype(str)
    out.index = out.index.astype(str)
    return out


# -----------------------------------------------------------------------------
# DE
# -----------------------------------------------------------------------------
def _de_summary(de_res: Dict[str, DEResult], cell_types: Sequence[str], alpha: float = 0.05) -> pd.DataFrame:
    rows = []
    for ct in cell_types:
        r = de_res.get(ct)
        if r is None:
            rows.append({"cell_type": ct, "status": "not_tested", "n_samples": 0, "n_genes": 0, "n_padj_lt_0.05": 0})
            continue
        padj = pd.to_numeric(r.res["padj"], errors="coerce")
        rows.append(
            {
                "cell_type": ct,
                "status": "ok",
                "n_samples": 0 if r.cm is None else int(r.cm.shape[0]),
                "n_genes": int(r.res.shape[0]),
                "n_padj_lt_0.05": int((padj < alpha).sum()),
            }
        )
    return pd.DataFrame(rows)


def run_de(cfg: DEConfig) -> Dict[str, DEResult]:
    """
    Pseudo-bulk DE per cell type between two conditions.

    Writes one table per cell type to ``<output_dir>/de_tables``, a summary table and
    the settings used.
    """
    init_logging(cfg.logfile)
    LOGGER.info("Starting DE (test=%s)...", cfg.test)

    output_dir = Path(cfg.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    acc = _load_accessor(cfg)
    sample_groups = _resolve_sample_groups(acc, cfg.ref_level, cfg.target_level)
    target_level = [g for g in sample_groups if g != cfg.ref_level][0]

    needed = set(s for v in sample_groups.values() for s in v)
    raw_mats = {s: m for s, m in acc.get_raw_count_matrices().items() if s in needed}
    cell_groups = acc.get_cell_groups()

    meta_info = None
    if cfg.covariates:
        meta_info = sample_covariates(acc.adata.obs, cfg.sample_key, cfg.covariates)
        LOGGER.info("Covariates: %s", ", ".join(cfg.covariates))

    de_res = estimate_de_per_cell_type(
        raw_mats,
        cell_groups,
        sample_groups,
        cfg.ref_level,
        target_level,
        resampling_method=cfg.resampling_method,
        n_resamplings=cfg.n_resamplings,
        fix_n_samples=cfg.fix_n_samples,
        n_cells_subsample=cfg.n_cells_subsample,
        var_to_sort=cfg.var_to_sort,
        min_cell_count=cfg.min_cell_count,
        seed=cfg.seed,
        ctx=cfg.execution,
        test=cfg.test,
        common_genes=cfg.common_genes,
        cooks_cutoff=cfg.cooks_cutoff,
        max_cell_count=np.inf if cfg.max_cell_count is None else float(cfg.max_cell_count),
        independent_filtering=cfg.independent_filtering,
        meta_info=meta_info,
        fail_on_error=cfg.fail_on_error,
    )

    if cfg.append_statistics and de_res:
        frac = get_expression_fraction_per_group(raw_mats, cell_groups)
        de_res = append_statistics_to_de(de_res, frac)

    tables_dir = output_dir / "de_tables"
    tables_dir.mkdir(parents=True, exist_ok=True)
    for ct, r in de_res.items():
        r.res.to_csv(tables_dir / f"de__{_safe_token(ct)}.tsv", sep="\t", index=False)

    cell_types = [str(c) for c in cell_groups.cat.categories]
    summary = _de_summary(de_res, cell_types)
    summary.to_csv(output_dir / "de_summary.tsv", sep="\t", index=False)

    _write_settings(
        output_dir,
        "de_settings.txt",
        [
            f"input_path={cfg.input_path}",
            f"test={cfg.test}",
            f"sample_key={cfg.sample_key}",
            f"cell_type_key={cfg.cell_type_key}",
            f"condition_key={cfg.condition_key}",
            f"ref_level={cfg.ref_level}",
            f"target_level={target_level}",
            f"covariates={','.join(cfg.covariates) or 'none'}",
            f"counts_layer={cfg.counts_layer}",
            f"common_genes={cfg.common_genes}",
            f"min_cell_count={cfg.min_cell_count}",
            f"max_cell_count={cfg.max_cell_count}",
            f"cooks_cutoff={cfg.cooks_cutoff}",
            f"independent_filtering={cfg.independent_filtering}",
            f"resampling_method={cfg.resampling_method}",
            f"n_resamplings={cfg.n_resamplings}",
            f"fix_n_samples={cfg.fix_n_samples}",
            f"seed={cfg.seed}",
            f"n_jobs={cfg.n_jobs}",
        ],
    )

    LOGGER.info("Finished DE: %d/%d cell types tested.", len(de_res), len(cell_types))
    return de_res


# -----------------------------------------------------------------------------
# Expression shifts
# -----------------------------------------------------------------------------
def run_expression_shifts(cfg: ExpressionShiftConfig) -> ExpressionShiftResult:
    """
    Expression shift magnitudes per cell type with permutation p-values.

    Writes the per-type summary, the baseline-corrected distances, the joint
    cell-count weighted distance matrix and the same-condition pairs of it.
    """
    init_logging(cfg.logfile)
    LOGGER.info("Starting expression shifts (dist_type=%s)...", cfg.dist_type)

    output_dir = Path(cfg.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    acc = _load_accessor(cfg)
    sample_groups = _resolve_sample_groups(acc, cfg.ref_level, cfg.target_level)

    needed = set(s for v in sample_groups.values() for s in v)
    raw_mats = {s: m for s, m in acc.get_raw_count_matrices().items() if s in needed}
    sample_per_cell = acc.get_sample_per_cell()

    cm_per_type, cell_groups, sg = prepare_expression_distance_input(
        raw_mats,
        acc.get_cell_groups(),
        sample_per_cell,
        sample_groups,
        min_cells_per_sample=cfg.min_cells_per_sample,
        min_samp_per_type=cfg.min_samp_per_type,
        min_gene_frac=cfg.min_gene_frac,
        counts_layer=None,
    )
    LOGGER.info("Prepared %d cell type matrices.", len(cm_per_type))

    res = estimate_expression_change(
        cm_per_type,
        sg,
        cell_groups,
        sample_per_cell,
        dist=cfg.dist,
        dist_type=cfg.dist_type,
        ref_level=cfg.ref_level,
        n_permutations=cfg.n_permutations,
        p_adjust_method=cfg.p_adjust_method,
        top_n_genes=cfg.top_n_genes,
        gene_selection=cfg.gene_selection,
        n_pcs=cfg.n_pcs,
        trim=cfg.trim,
        exclude_genes=cfg.exclude_genes or None,
        seed=cfg.seed,
        ctx=cfg.execution,
        fail_on_error=cfg.fail_on_error,
    )

    res.summary().to_csv(output_dir / "expression_shifts.tsv", sep="\t", index=False)

    dists = [
        pd.DataFrame({"cell_type": ct, "value": np.asarray(d, dtype=float)})
        for ct, d in res.dists_per_type.items()
    ]
    if dists:
        pd.concat(dists, ignore_index=True).to_csv(output_dir / "expression_shift_dists.tsv", sep="\t", index=False)

    if res.per_type:
        joint = prepare_joint_expression_distance(res.per_type)
        joint.to_csv(output_dir / "joint_distance_matrix.tsv", sep="\t")

        within = join_expression_shift_dfs(
            {ct: subset_distance_matrix(r.dist_mat, sg, cross_factor=False, build_df=True) for ct, r in res.per_type.items()},
            sg,
        )
        within.to_csv(output_dir / "within_condition_distances.tsv", sep="\t", index=False)

    _write_settings(
        output_dir,
        "expression_shift_settings.txt",
        [f"input_path={cfg.input_path}", f"ref_level={cfg.ref_level}", f"seed={cfg.seed}", f"n_jobs={cfg.n_jobs}"]
        + [f"{k}={v}" for k, v in res.settings.items()]
        + [
            f"min_cells_per_sample={cfg.min_cells_per_sample}",
            f"min_samp_per_type={cfg.min_samp_per_type}",
            f"min_gene_frac={cfg.min_gene_frac}",
        ],
    )

    LOGGER.info("Finished expression shifts: %d cell types.", len(res.per_type))
    return res
