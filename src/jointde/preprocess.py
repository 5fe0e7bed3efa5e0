# src/jointde/preprocess.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import scanpy as sc

LOGGER = logging.getLogger(__name__)


def basic_preprocess(
    adata: ad.AnnData,
    *,
    regress_out: Optional[Sequence[str]] = None,
    n_pcs: int = 100,
    n_top_genes: Optional[int] = None,
    cluster: bool = True,
    tsne: bool = True,
    random_state: int = 0,
) -> ad.AnnData:
    """
    Standard processing of a raw count matrix (cells x genes).

    normalize -> log1p -> HVG -> (regress) -> scale -> PCA, then optional
    leiden clustering and t-SNE. Works on a copy; raw counts are kept in
    ``layers['counts']``.
    """
    adata = adata.copy()
    adata.var_names_make_unique()
    adata.layers["counts"] = adata.X.copy()
    adata.X = adata.X.astype(np.float32)

    max_pcs = min(adata.n_obs - 1, adata.n_vars - 1, int(n_pcs))
    if max_pcs < 1:
        raise ValueError(
            f"Need at least 2 cells and 2 genes for PCA (got {adata.n_obs} x {adata.n_vars})"
        )

    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes)
    n_hvg = int(adata.var["highly_variable"].sum())
    LOGGER.info("Highly variable genes: %d", n_hvg)

    if regress_out:
        missing = [k for k in regress_out if k not in adata.obs]
        if missing:
            raise KeyError(f"regress_out keys not in adata.obs: {missing}")
        sc.pp.regress_out(adata, keys=list(regress_out))
    sc.pp.scale(adata, max_value=10)

    # HVG mask only when it leaves enough genes for the requested components
    mask_var = "highly_variable" if n_hvg > max_pcs else None
    if mask_var is None:
        LOGGER.info("Too few HVGs (%d) for %d PCs; using all genes.", n_hvg, max_pcs)
    sc.tl.pca(adata, n_comps=max_pcs, mask_var=mask_var, svd_solver="arpack", random_state=random_state)
    LOGGER.info("PCA: %d components", max_pcs)

    if cluster:
        sc.pp.neighbors(adata, n_pcs=max_pcs, use_rep="X_pca", random_state=random_state)
        sc.tl.leiden(
            adata,
            resolution=1.0,
            key_added="leiden",
            flavor="igraph",
            directed=False,
            n_iterations=2,
            random_state=random_state,
        )
        LOGGER.info("Leiden clusters: %d", int(adata.obs["leiden"].nunique()))

    if tsne:
        sc.tl.tsne(adata, n_pcs=max_pcs, use_rep="X_pca", random_state=random_state)

    return adata
