# src/sccontrast/accessors.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .pseudobulk_utils import get_counts_matrix

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class CellDataAccessor(Protocol):
    """Uniform read access to a single-cell container."""

    def get_cell_groups(self) -> pd.Series: ...

    def get_cell_graph(self) -> sp.csr_matrix: ...

    def get_raw_count_matrices(self) -> Dict[str, ad.AnnData]: ...

    def get_joint_count_matrix(self, raw: bool = True) -> ad.AnnData: ...

    def get_embedding(self) -> Optional[pd.DataFrame]: ...

    def get_gene_expression(self, gene: str) -> pd.Series: ...

    def get_sample_per_cell(self) -> pd.Series: ...


class AnnDataAccessor:
    """
    CellDataAccessor over one AnnData holding all samples.

    sample_key / cell_type_key / condition_key: columns of ``adata.obs``
    counts_layer: layer with raw counts (``adata.X`` when None)
    """

    def __init__(
        self,
        adata: ad.AnnData,
        *,
        sample_key: str,
        cell_type_key: str,
        condition_key: Optional[str] = None,
        counts_layer: Optional[str] = None,
        embedding_key: str = "X_umap",
        graph_key: str = "connectivities",
    ):
        for key in (sample_key, cell_type_key, condition_key):
            if key is not None and key not in adata.obs:
                raise KeyError(f"{key!r} not found in adata.obs. Available: {list(adata.obs.columns)}")
        if counts_layer is not None and counts_layer not in adata.layers:
            raise KeyError(f"counts_layer={counts_layer!r} not found in adata.layers. Available: {list(adata.layers.keys())}")

        self.adata = adata
        self.sample_key = sample_key
        self.cell_type_key = cell_type_key
        self.condition_key = condition_key
        self.counts_layer = counts_layer
        self.embedding_key = embedding_key
        self.graph_key = graph_key

    # ------------------------------------------------------------------
    def get_cell_groups(self) -> pd.Series:
        groups = self.adata.obs[self.cell_type_key]
        if groups.astype(str).nunique() <= 1:
            raise ValueError(f"No cell groups found: obs[{self.cell_type_key!r}] has fewer than two levels")
        groups = groups.astype("category").cat.remove_unused_categories()
        return pd.Series(groups.to_numpy(), index=self.adata.obs_names.astype(str), name=self.cell_type_key)

    def get_sample_per_cell(self) -> pd.Series:
        s = self.adata.obs[self.sample_key].astype(str)
        return pd.Series(s.to_numpy(), index=self.adata.obs_names.astype(str), name=self.sample_key)

    def get_cell_graph(self) -> sp.csr_matrix:
        if self.graph_key not in self.adata.obsp:
            raise KeyError(f"No cell graph {self.graph_key!r} in adata.obsp. Available: {list(self.adata.obsp.keys())}")
        adj = sp.csr_matrix(self.adata.obsp[self.graph_key])
        if (adj != adj.T).nnz > 0:
            LOGGER.warning("The provided adjacency matrix is not symmetric. Converting it to undirected graph.")
            adj = ((adj + adj.T) / 2.0).tocsr()
        return adj

    def get_raw_count_matrices(self) -> Dict[str, ad.AnnData]:
        """Raw counts split per sample (cells x genes)."""
        X = get_counts_matrix(self.adata, counts_layer=self.counts_layer)
        spc = self.get_sample_per_cell()
        var = pd.DataFrame(index=self.adata.var_names.astype(str))

        out: Dict[str, ad.AnnData] = {}
        for sample, idx in pd.Series(np.arange(spc.size), index=spc.to_numpy()).groupby(level=0):
            rows = idx.to_numpy()
            out[str(sample)] = ad.AnnData(
                X=X[rows, :],
                obs=pd.DataFrame(index=spc.index[rows]),
                var=var.copy(),
            )
        return out

    def get_joint_count_matrix(self, raw: bool = True) -> ad.AnnData:
        """All cells; with ``raw=False`` counts are scaled by cell totals."""
        X = get_counts_matrix(self.adata, counts_layer=self.counts_layer)
        if not raw:
            totals = np.maximum(np.asarray(X.sum(axis=1)).ravel(), 0.1)
            X = sp.csr_matrix(sp.diags(1.0 / totals) @ X)
        return ad.AnnData(
            X=X,
            obs=pd.DataFrame(index=self.adata.obs_names.astype(str)),
            var=pd.DataFrame(index=self.adata.var_names.astype(str)),
        )

    def get_embedding(self) -> Optional[pd.DataFrame]:
        key = self.embedding_key
        if key not in self.adata.obsm:
            if len(self.adata.obsm) == 0:
                return None
            key = list(self.adata.obsm.keys())[0]
        emb = np.asarray(self.adata.obsm[key])
        return pd.DataFrame(emb, index=self.adata.obs_names.astype(str))

    def get_gene_expression(self, gene: str) -> pd.Series:
        if gene not in self.adata.var_names:
            raise KeyError(f"Gene {gene!r} not found in adata.var_names")
        j = int(self.adata.var_names.get_loc(gene))
        x = self.get_joint_count_matrix(raw=False).X[:, j]
        return pd.Series(np.asarray(x.todense()).ravel(), index=self.adata.obs_names.astype(str), name=gene)

    # ------------------------------------------------------------------
    def get_sample_groups(self, ref_level: Optional[str] = None) -> Dict[str, List[str]]:
        """
        Condition -> sample ids from ``condition_key``; ``ref_level`` (if given) first.
        Every sample must carry exactly one condition.
        """
        if self.condition_key is None:
            raise ValueError("condition_key is required to derive sample groups")

        obs = self.adata.obs[[self.sample_key, self.condition_key]].astype(str)
        per_sample = obs.drop_duplicates()
        dup = per_sample[self.sample_key][per_sample[self.sample_key].duplicated()]
        if len(dup) > 0:
            raise ValueError(
                f"Samples with more than one value of {self.condition_key!r}: {sorted(dup.unique().tolist())}"
            )

        groups: Dict[str, List[str]] = {}
        for cond, df in per_sample.groupby(self.condition_key, sort=True):
            groups[str(cond)] = sorted(df[self.sample_key].tolist())

        if ref_level is not None:
            if ref_level not in groups:
                raise ValueError(f"ref_level={ref_level!r} not among conditions {list(groups)}")
            groups = {ref_level: groups[ref_level], **{k: v for k, v in groups.items() if k != ref_level}}
        return groups

    def get_od_genes(self, n_genes: Optional[int] = None) -> List[str]:
        """Highly variable genes ranked by normalized dispersion (``adata.var``)."""
        var = self.adata.var
        for col in ("highly_variable_rank", "dispersions_norm", "variances_norm"):
            if col in var:
                asc = col == "highly_variable_rank"
                genes = var[col].dropna().sort_values(ascending=asc).index.astype(str).tolist()
                return genes if n_genes is None else genes[: int(n_genes)]
        raise ValueError(
            "The data object doesn't have gene variance info. Run highly variable gene selection first."
        )


def restrict_sample_groups(groups: Dict[str, Sequence[str]], conditions: Sequence[str]) -> Dict[str, List[str]]:
    """Keep only the named conditions, in the given order."""
    missing = [c for c in conditions if c not in groups]
    if missing:
        raise ValueError(f"Unknown condition(s) {missing}; available: {list(groups)}")
    return {c: list(groups[c]) for c in conditions}
