# src/sccontrast/pseudobulk_utils.py
from __future__ import annotations

import logging
from functools import reduce
from typing import Dict, List, Mapping, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Counts access helpers
# -----------------------------------------------------------------------------
def get_counts_matrix(
    adata: ad.AnnData,
    *,
    counts_layer: Optional[str] = None,
) -> sp.csr_matrix:
    """
    Return counts matrix as CSR (cells x genes).
    Never densifies.
    """
    if counts_layer:
        if counts_layer not in adata.layers:
            raise KeyError(
                f"counts_layer={counts_layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        X = adata.layers[counts_layer]
    else:
        X = adata.X

    if X is None:
        raise RuntimeError("Counts matrix is None (no .X and no counts layer).")

    if sp.issparse(X):
        return X.tocsr()
    return sp.csr_matrix(np.asarray(X))


def as_str_index(s: pd.Series) -> pd.Series:
    if s.index.dtype == object and all(isinstance(i, str) for i in s.index[:10]):
        return s
    return pd.Series(s.to_numpy(), index=s.index.astype(str), dtype=s.dtype)


def cell_type_levels(cell_groups: pd.Series) -> List[str]:
    """Levels of a cell grouping: categories if categorical, else sorted unique labels."""
    if isinstance(cell_groups.dtype, pd.CategoricalDtype):
        return [str(c) for c in cell_groups.cat.categories]
    return sorted(pd.unique(cell_groups.dropna().astype(str)).tolist())


# -----------------------------------------------------------------------------
# Gene-set reconciliation across samples
# -----------------------------------------------------------------------------
def extend_matrix(
    adata: ad.AnnData,
    genes: Sequence[str],
    *,
    counts_layer: Optional[str] = None,
) -> ad.AnnData:
    """
    Re-index the genes of ``adata`` to ``genes``: absent genes become zero columns,
    genes outside ``genes`` are dropped. Sparse throughout.

    The counts are taken from ``counts_layer`` when given and land in ``.X`` of the
    returned object; other layers are not carried over.
    """
    genes = pd.Index([str(g) for g in genes])
    own = pd.Index(adata.var_names.astype(str))
    if own.equals(genes) and not counts_layer:
        return adata

    pos_new = genes.get_indexer(own)
    present = pos_new >= 0
    rows = np.where(present)[0]
    P = sp.csr_matrix(
        (np.ones(rows.size, dtype=np.float64), (rows, pos_new[present])),
        shape=(own.size, genes.size),
    )
    X = get_counts_matrix(adata, counts_layer=counts_layer) @ P
    return ad.AnnData(X=sp.csr_matrix(X), obs=adata.obs.copy(), var=pd.DataFrame(index=genes))


def subset_matrices_with_common_genes(
    raw_mats: Mapping[str, ad.AnnData],
    sample_groups: Optional[Mapping[str, Sequence[str]]] = None,
    *,
    counts_layer: Optional[str] = None,
) -> Dict[str, ad.AnnData]:
    """Restrict every sample matrix (or those named in sample_groups) to the shared genes."""
    if sample_groups is not None:
        names = [s for grp in sample_groups.values() for s in grp]
        raw_mats = {s: raw_mats[s] for s in names}

    common = reduce(
        lambda a, b: a.intersection(b, sort=False),
        [pd.Index(m.var_names.astype(str)) for m in raw_mats.values()],
    )
    return {s: extend_matrix(m, common, counts_layer=counts_layer) for s, m in raw_mats.items()}


def extend_matrices_to_gene_union(
    raw_mats: Mapping[str, ad.AnnData],
    *,
    counts_layer: Optional[str] = None,
) -> Dict[str, ad.AnnData]:
    union = reduce(
        lambda a, b: a.union(b, sort=False),
        [pd.Index(m.var_names.astype(str)) for m in raw_mats.values()],
    )
    return {s: extend_matrix(m, union, counts_layer=counts_layer) for s, m in raw_mats.items()}


# -----------------------------------------------------------------------------
# Collapse cells into pseudo-bulk
# -----------------------------------------------------------------------------
def collapse_cells_by_type(
    adata: ad.AnnData,
    cell_groups: pd.Series,
    *,
    min_cell_count: int = 10,
    max_cell_count: float = np.inf,
    counts_layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Sum the counts of one sample per cell type (cell types x genes).

    Cells without a label in ``cell_groups`` are ignored. Cell types with fewer
    than ``min_cell_count`` or more than ``max_cell_count`` cells are dropped.
    Uses a sparse indicator matrix (PB = G.T @ X).
    """
    labels = as_str_index(cell_groups).reindex(adata.obs_names.astype(str))
    has_label = labels.notna().to_numpy()

    genes = pd.Index(adata.var_names.astype(str), name="gene")
    if not has_label.any():
        return pd.DataFrame(np.zeros((0, genes.size)), columns=genes)

    X = get_counts_matrix(adata, counts_layer=counts_layer)[np.where(has_label)[0], :]
    codes, uniques = pd.factorize(labels[has_label].astype(str), sort=True)

    G = sp.csr_matrix(
        (np.ones(codes.size, dtype=np.float64), (np.arange(codes.size), codes)),
        shape=(codes.size, uniques.size),
    )
    PB = (G.T @ X).toarray()
    n_cells = np.asarray(G.sum(axis=0)).ravel()

    keep = (n_cells >= int(min_cell_count)) & (n_cells <= float(max_cell_count))
    return pd.DataFrame(PB[keep, :], index=pd.Index(np.asarray(uniques)[keep], name="cell_type"), columns=genes)


def collapse_samples(
    raw_mats: Mapping[str, ad.AnnData],
    cell_groups: pd.Series,
    *,
    min_cell_count: int = 10,
    max_cell_count: float = np.inf,
    counts_layer: Optional[str] = None,
) -> Dict[str, pd.DataFrame]:
    """Collapse every sample separately; samples left without any cell type are dropped."""
    out: Dict[str, pd.DataFrame] = {}
    for s, m in raw_mats.items():
        pb = collapse_cells_by_type(
            m, cell_groups, min_cell_count=min_cell_count, max_cell_count=max_cell_count, counts_layer=counts_layer,
        )
        if pb.shape[0] > 0:
            out[str(s)] = pb
    return out


def pseudobulk_per_type(
    pb_per_sample: Mapping[str, pd.DataFrame],
    cell_types: Sequence[str],
) -> Dict[str, pd.DataFrame]:
    """
    Regroup per-sample pseudo-bulk tables into one integer matrix per cell type
    (samples x genes). Genes with no counts in the type are dropped.
    """
    out: Dict[str, pd.DataFrame] = {}
    for ct in cell_types:
        rows = {s: pb.loc[ct] for s, pb in pb_per_sample.items() if ct in pb.index}
        if not rows:
            continue
        cm = pd.DataFrame(rows).T
        cm.index.name = "sample"
        cm = cm.round().astype(np.int64)
        cm = cm.loc[:, cm.sum(axis=0) > 0]
        if cm.shape[1] > 0:
            out[str(ct)] = cm
    return out


def subsample_cells_per_type(
    raw_mats: Mapping[str, ad.AnnData],
    cell_groups: pd.Series,
    *,
    n_cells: int,
    rng: np.random.Generator,
) -> Dict[str, ad.AnnData]:
    """Keep at most ``n_cells`` random cells of every cell type in every sample."""
    out: Dict[str, ad.AnnData] = {}
    for s, m in raw_mats.items():
        labels = as_str_index(cell_groups).reindex(m.obs_names.astype(str))
        keep: list[int] = []
        for _, idx in pd.Series(np.arange(m.n_obs), index=labels.to_numpy()).groupby(level=0):
            vals = idx.to_numpy()
            if vals.size > n_cells:
                vals = rng.choice(vals, size=int(n_cells), replace=False)
            keep.extend(vals.tolist())
        out[s] = m[np.sort(np.asarray(keep, dtype=int))].copy()
    return out


# -----------------------------------------------------------------------------
# Expression fractions
# -----------------------------------------------------------------------------
def get_expression_fraction_per_group(
    mats: Union[ad.AnnData, Mapping[str, ad.AnnData]],
    cell_groups: pd.Series,
) -> pd.DataFrame:
    """
    Fraction of cells of every cell type with non-zero expression (genes x cell types).
    """
    if isinstance(mats, ad.AnnData):
        mats = {"joint": mats}

    genes = reduce(
        lambda a, b: a.union(b, sort=False),
        [pd.Index(m.var_names.astype(str)) for m in mats.values()],
    )
    total: Optional[pd.DataFrame] = None
    cells: List[str] = []
    for m in mats.values():
        cells.extend(m.obs_names.astype(str))
        m = extend_matrix(m, genes)
        X = get_counts_matrix(m).copy()
        X.data = (X.data > 1e-10).astype(np.float64)
        binar = ad.AnnData(X=X, obs=pd.DataFrame(index=m.obs_names), var=pd.DataFrame(index=genes))
        pb = collapse_cells_by_type(binar, cell_groups, min_cell_count=0)
        total = pb if total is None else total.add(pb, fill_value=0)

    # cell type sizes over the cells of mats only
    sizes = as_str_index(cell_groups).reindex(pd.Index(cells)).dropna().astype(str).value_counts()
    fracs = total.div(sizes.reindex(total.index).astype(float), axis=0)
    return fracs.T
