# tests/conftest.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp


def simulate_samples(
    *,
    n_per_group=4,
    n_cells_per_type=40,
    n_genes=50,
    cell_types=("A", "B"),
    shifted_genes=5,
    fold=2.0,
    seed=0,
):
    """
    Poisson counts for ctrl/case samples. The first ``shifted_genes`` genes of the
    first cell type have ``fold`` times higher means in case samples.

    Returns (raw_mats, cell_groups, sample_groups).
    """
    rng = np.random.default_rng(seed)
    genes = [f"g{i}" for i in range(n_genes)]
    base = rng.uniform(0.5, 3.0, size=n_genes)

    sample_groups = {
        "ctrl": [f"ctrl{i}" for i in range(n_per_group)],
        "case": [f"case{i}" for i in range(n_per_group)],
    }

    raw_mats = {}
    labels = {}
    for cond, samples in sample_groups.items():
        for s in samples:
            scale = rng.lognormal(0.0, 0.1)
            blocks, names = [], []
            for ct in cell_types:
                mu = base * scale
                if cond == "case" and ct == cell_types[0]:
                    mu = mu.copy()
                    mu[:shifted_genes] *= fold
                blocks.append(rng.poisson(mu, size=(n_cells_per_type, n_genes)))
                for i in range(n_cells_per_type):
                    cid = f"{s}_{ct}_{i}"
                    names.append(cid)
                    labels[cid] = ct
            X = sp.csr_matrix(np.vstack(blocks).astype(np.float32))
            raw_mats[s] = ad.AnnData(X=X, obs=pd.DataFrame(index=names), var=pd.DataFrame(index=genes))

    cell_groups = pd.Series(labels).astype("category")
    return raw_mats, cell_groups, sample_groups


def sample_per_cell(raw_mats):
    return pd.Series({c: s for s, m in raw_mats.items() for c in m.obs_names})


def joint_adata(raw_mats, cell_groups, sample_groups):
    """All samples in one AnnData with sample_id / cell_type / condition in obs."""
    adata = ad.concat(raw_mats, label="sample_id")
    cond = {s: c for c, samples in sample_groups.items() for s in samples}
    adata.obs["sample_id"] = adata.obs["sample_id"].astype(str)
    adata.obs["cell_type"] = cell_groups.reindex(adata.obs_names).astype(str).to_numpy()
    adata.obs["condition"] = adata.obs["sample_id"].map(cond).to_numpy()
    return adata


@pytest.fixture
def dataset():
    return simulate_samples()


@pytest.fixture
def small_dataset():
    return simulate_samples(n_per_group=3, n_cells_per_type=15, n_genes=20, seed=1)
