# src/jointde/markers.py
from __future__ import annotations

import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, Mapping, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.stats.multitest import multipletests

LOGGER = logging.getLogger(__name__)

MARKER_COLUMNS = ["Gene", "M", "Z", "PValue", "PAdj"]

# Per-sample marker calling needs a handful of labelled cells to be meaningful.
_MIN_LABELLED_CELLS = 3


def aggregate_markers_across_samples(
    marker_dfs: Union[Sequence[pd.DataFrame], Mapping[str, pd.DataFrame]],
    *,
    z_threshold: float = 3.0,
    upregulated_only: bool = False,
) -> pd.DataFrame:
    """
    Combine per-sample marker tables of one cell type.

    Each input is indexed by gene and carries ``Z`` (test statistic) and
    ``M`` (log2 fold change). Genes are taken over the union of all inputs;
    Z and M are averaged over the samples where the gene was scored.
    """
    if isinstance(marker_dfs, Mapping):
        marker_dfs = list(marker_dfs.values())
    marker_dfs = [df for df in marker_dfs if df is not None and not df.empty]
    if len(marker_dfs) == 0:
        return pd.DataFrame(columns=MARKER_COLUMNS)

    z = pd.concat([df["Z"] for df in marker_dfs], axis=1, join="outer", sort=False)
    m = pd.concat([df["M"] for df in marker_dfs], axis=1, join="outer", sort=False).reindex(z.index)

    z_mean = z.mean(axis=1, skipna=True)
    m_mean = m.mean(axis=1, skipna=True)

    pvals = 2.0 * norm.sf(np.abs(z_mean.to_numpy(dtype=float)))
    padj = np.full_like(pvals, np.nan)
    ok = np.isfinite(pvals)
    if ok.any():
        padj[ok] = multipletests(pvals[ok], method="holm")[1]

    res = pd.DataFrame(
        {
            "Gene": z_mean.index.astype(str),
            "M": m_mean.to_numpy(),
            "Z": z_mean.to_numpy(),
            "PValue": pvals,
            "PAdj": padj,
        },
        index=z_mean.index.astype(str),
    )
    res = res.sort_values("Z", ascending=False, kind="mergesort")

    z_filter = res["Z"] if upregulated_only else res["Z"].abs()
    return res.loc[z_filter > float(z_threshold)]


def _sample_markers(name: str, adata: ad.AnnData, labels: pd.Series) -> Dict[str, pd.DataFrame]:
    """
    Wilcoxon markers (one group vs the rest) within a single sample.

    Returns ``{group: DataFrame(Z, M) indexed by gene}``; empty when the
    sample has too few labelled cells.
    """
    import scanpy as sc

    lab = labels.reindex(adata.obs_names)
    labelled = lab.notna().to_numpy()
    if int(labelled.sum()) < _MIN_LABELLED_CELLS:
        LOGGER.info("markers: sample %s has < %d labelled cells; skipping.", name, _MIN_LABELLED_CELLS)
        return {}

    sub = adata[labelled].copy()
    sub.obs["__group"] = lab[labelled].astype(str).to_numpy()

    # rank_genes_groups needs at least two cells per group and two groups
    vc = sub.obs["__group"].value_counts()
    usable = vc.index[vc >= 2]
    if len(usable) < 2:
        LOGGER.info("markers: sample %s has < 2 usable groups; skipping.", name)
        return {}
    sub = sub[sub.obs["__group"].isin(usable)].copy()
    sub.obs["__group"] = sub.obs["__group"].astype("category")
    sub.X = sub.X.astype(np.float32)

    sc.pp.normalize_total(sub, target_sum=1e4)
    sc.pp.log1p(sub)
    sc.tl.rank_genes_groups(
        sub,
        groupby="__group",
        method="wilcoxon",
        n_genes=int(sub.n_vars),
        key_added="markers",
    )

    out: Dict[str, pd.DataFrame] = {}
    for g in sub.obs["__group"].cat.categories:
        df = sc.get.rank_genes_groups_df(sub, group=str(g), key="markers")
        out[str(g)] = pd.DataFrame(
            {
                "Z": pd.to_numeric(df["scores"], errors="coerce").to_numpy(),
                "M": pd.to_numeric(df["logfoldchanges"], errors="coerce").to_numpy(),
            },
            index=pd.Index(df["names"].astype(str), name="gene"),
        )
    return out


def markers_across_samples(
    samples: Mapping[str, ad.AnnData],
    groups: pd.Series,
    *,
    z_threshold: float = 3.0,
    upregulated_only: bool = False,
    n_jobs: int = 1,
) -> Dict[str, pd.DataFrame]:
    """
    Marker genes per cell type, estimated per sample and aggregated.

    ``samples`` hold raw counts in ``.X``; ``groups`` labels cells by id.
    """
    groups = groups.dropna().astype(str)
    names = list(samples.keys())

    LOGGER.info("Estimating marker genes per sample (%d samples)", len(names))
    if int(n_jobs) > 1 and len(names) > 1:
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=min(int(n_jobs), len(names)), mp_context=ctx) as ex:
            per_sample = list(ex.map(_sample_markers, names, [samples[n] for n in names], [groups] * len(names)))
    else:
        per_sample = [_sample_markers(n, samples[n], groups) for n in names]

    LOGGER.info("Aggregating marker genes")
    out: Dict[str, pd.DataFrame] = {}
    for g in pd.unique(groups.to_numpy()):
        dfs = [ps[g] for ps in per_sample if g in ps]
        out[str(g)] = aggregate_markers_across_samples(
            dfs,
            z_threshold=z_threshold,
            upregulated_only=upregulated_only,
        )
        LOGGER.info("markers: %s -> %d genes from %d samples", g, out[str(g)].shape[0], len(dfs))
    return out
