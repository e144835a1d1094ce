# src/sccontrast/resampling_utils.py
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .de_backends import DEResult

LOGGER = logging.getLogger(__name__)

ResamplingMethod = Literal["loo", "bootstrap", "fix.cells", "fix.samples"]
RESAMPLING_METHODS = ("loo", "bootstrap", "fix.cells", "fix.samples")


def prepare_samples_for_de(
    sample_groups: Mapping[str, Sequence[str]],
    resampling_method: str = "loo",
    *,
    n_resamplings: int = 30,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, Dict[str, List[str]]]:
    """
    Sample-group assignments per resampling iteration (iteration name -> groups).

    - loo: one iteration per sample (named after it), dropping that sample.
    - bootstrap: groups resampled with replacement to their original size.
      Repeated samples shrink the variance; kept for comparability.
    - fix.cells / fix.samples: the groups unchanged; subsampling happens later.
    """
    if resampling_method not in RESAMPLING_METHODS:
        raise ValueError(
            f"Unknown resampling_method={resampling_method!r}. Allowed: {', '.join(RESAMPLING_METHODS)}"
        )
    rng = rng if rng is not None else np.random.default_rng()
    groups = {str(k): [str(s) for s in v] for k, v in sample_groups.items()}

    if resampling_method == "loo":
        all_samples = [s for v in groups.values() for s in v]
        return {s: {k: [x for x in v if x != s] for k, v in groups.items()} for s in all_samples}

    if resampling_method == "bootstrap":
        return {
            f"bootstrap.{i}": {k: rng.choice(np.asarray(v, dtype=object), size=len(v), replace=True).tolist() for k, v in groups.items()}
            for i in range(1, int(n_resamplings) + 1)
        }

    return {f"fix.{i}": {k: list(v) for k, v in groups.items()} for i in range(1, int(n_resamplings) + 1)}


def _result_table(x: Union[DEResult, pd.DataFrame, None]) -> Optional[pd.DataFrame]:
    if x is None:
        return None
    if isinstance(x, DEResult):
        return x.res
    return x


def summarize_de_resampling_results(
    primary: Mapping[str, Union[DEResult, pd.DataFrame]],
    de_list: Mapping[str, Mapping[str, Union[DEResult, pd.DataFrame]]],
    var_to_sort: str = "pvalue",
) -> Dict[str, DEResult]:
    """
    Attach rank-stability statistics to the primary DE results.

    ``primary`` maps cell type -> result of the run on the original groups and
    ``de_list`` maps iteration name -> {cell type -> result}. For each primary cell
    type, genes are intersected across all iterations containing that type,
    ``var_to_sort`` is ranked within each iteration (aligned by gene name) and the mean, median and variance of the ranks are added
    as ``stab.mean.rank``, ``stab.median.rank`` and ``stab.var.rank``.
    """
    out: Dict[str, DEResult] = {}

    for cell_type, prim in primary.items():
        prim = prim if isinstance(prim, DEResult) else DEResult(res=prim)
        genes_init = pd.Index(prim.res.index)

        columns: Dict[str, pd.Series] = {}
        subsamples: Dict[str, Union[DEResult, pd.DataFrame]] = {}
        for it in de_list:
            if cell_type not in de_list[it]:
                continue
            tab = _result_table(de_list[it][cell_type])
            if tab is None or var_to_sort not in tab.columns:
                continue
            subsamples[it] = de_list[it][cell_type]
            columns[it] = pd.to_numeric(tab[var_to_sort], errors="coerce")

        if not columns:
            LOGGER.warning("Cell type %s was not present in any subsamples", cell_type)
            out[cell_type] = prim
            continue

        # inner join on gene names keeps only genes observed in every iteration
        mx = pd.concat(list(columns.values()), axis=1, join="inner", keys=list(columns.keys()))
        mx = mx.loc[mx.index.intersection(genes_init, sort=False)]

        # average ties, missing values ranked last
        ranks = mx.rank(axis=0, method="average", na_option="bottom")

        res = prim.res.copy()
        res["stab.median.rank"] = ranks.median(axis=1).reindex(genes_init).to_numpy()
        res["stab.mean.rank"] = ranks.mean(axis=1).reindex(genes_init).to_numpy()
        res["stab.var.rank"] = ranks.var(axis=1, ddof=1).reindex(genes_init).to_numpy()

        out[cell_type] = replace(prim, res=res, subsamples=subsamples)

    return out
