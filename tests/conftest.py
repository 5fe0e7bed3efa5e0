import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
from anndata import AnnData


def make_joint_adata(
    samples=("s1", "s2", "s3", "s4"),
    celltypes=("T", "B"),
    cells_per_type=20,
    n_genes=30,
    seed=0,
):
    """Joint dataset of raw Poisson counts with sample_id and celltype columns."""
    rng = np.random.default_rng(seed)
    rows, sid, ct, names = [], [], [], []
    for s in samples:
        for t in celltypes:
            lam = rng.uniform(1.0, 5.0, n_genes)
            rows.append(rng.poisson(lam, (cells_per_type, n_genes)))
            for i in range(cells_per_type):
                sid.append(s)
                ct.append(t)
                names.append(f"{s}_{t}_{i}")
    X = sp.csr_matrix(np.vstack(rows).astype(np.float32))
    adata = AnnData(X)
    adata.obs_names = names
    adata.var_names = [f"gene{i}" for i in range(n_genes)]
    adata.obs["sample_id"] = pd.Categorical(sid, categories=list(samples))
    adata.obs["celltype"] = pd.Categorical(ct, categories=list(celltypes))
    return adata


@pytest.fixture
def joint_adata():
    return make_joint_adata()


@pytest.fixture
def sample_groups():
    return {"ctrl": ["s1", "s2"], "case": ["s3", "s4"]}
