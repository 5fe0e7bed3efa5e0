# src/jointde/pseudobulk.py
from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

LOGGER = logging.getLogger(__name__)

DEFAULT_CLUSTER_SEP = "<!!>"

SampleData = Union[ad.AnnData, Mapping[str, ad.AnnData]]


# -----------------------------------------------------------------------------
# Counts access helpers
# -----------------------------------------------------------------------------
def _get_counts_matrix(
    adata: ad.AnnData,
    *,
    counts_layer: Optional[str],
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
        return sp.csr_matrix(X)
    LOGGER.warning("Counts matrix is dense; converting to CSR (may use a lot of RAM).")
    return sp.csr_matrix(np.asarray(X))


def split_samples(
    adata: ad.AnnData,
    *,
    sample_key: str,
    counts_layer: Optional[str] = None,
) -> Dict[str, ad.AnnData]:
    """
    Split a joint AnnData into one AnnData per sample.

    The returned objects carry the raw counts in ``.X`` and keep the joint
    cell ids as ``obs_names``. Sample order follows the categorical order of
    ``adata.obs[sample_key]`` (or first appearance for non-categoricals).
    """
    if sample_key not in adata.obs:
        raise KeyError(f"sample_key={sample_key!r} not in adata.obs")

    X = _get_counts_matrix(adata, counts_layer=counts_layer)
    col = adata.obs[sample_key]
    if isinstance(col.dtype, pd.CategoricalDtype):
        names = [str(x) for x in col.cat.categories if (col == x).any()]
    else:
        n_missing = int(col.isna().sum())
        if n_missing:
            LOGGER.warning("%d cells have no %r value and are dropped.", n_missing, sample_key)
        names = [str(x) for x in pd.unique(col.dropna().astype(str))]

    labels = np.where(col.notna().to_numpy(), col.astype(str).to_numpy(), None)
    out: Dict[str, ad.AnnData] = {}
    for name in names:
        idx = np.flatnonzero(labels == name)
        out[name] = ad.AnnData(
            X=X[idx, :],
            obs=pd.DataFrame(index=adata.obs_names[idx].copy()),
            var=pd.DataFrame(index=adata.var_names.copy()),
        )
    LOGGER.info("Split joint dataset into %d samples by %r.", len(out), sample_key)
    return out


def resolve_samples(
    data: SampleData,
    *,
    sample_key: str = "sample_id",
    counts_layer: Optional[str] = None,
) -> Dict[str, ad.AnnData]:
    """Accept a joint AnnData or an explicit sample mapping; return the mapping."""
    if isinstance(data, ad.AnnData):
        return split_samples(data, sample_key=sample_key, counts_layer=counts_layer)
    if isinstance(data, Mapping):
        if counts_layer is None:
            return {str(k): v for k, v in data.items()}
        out = {}
        for k, v in data.items():
            out[str(k)] = ad.AnnData(
                X=_get_counts_matrix(v, counts_layer=counts_layer),
                obs=pd.DataFrame(index=v.obs_names.copy()),
                var=pd.DataFrame(index=v.var_names.copy()),
            )
        return out
    raise TypeError("data must be an AnnData or a mapping of sample name -> AnnData")


def resolve_groups(data: SampleData, groups: Union[str, pd.Series, None]) -> Optional[pd.Series]:
    """
    Turn ``groups`` into a categorical Series indexed by cell id.

    A string is looked up as a column of ``data.obs`` (joint AnnData only).
    Non-categorical Series are passed through unchanged so validation can
    reject them.
    """
    if groups is None or isinstance(groups, pd.Series):
        return groups
    if isinstance(groups, str):
        if not isinstance(data, ad.AnnData):
            raise TypeError("groups given as an obs column requires a joint AnnData")
        if groups not in data.obs:
            raise KeyError(f"groups={groups!r} not in adata.obs")
        col = data.obs[groups]
        if not isinstance(col.dtype, pd.CategoricalDtype):
            col = col.astype(str).astype("category")
        return col.copy()
    raise TypeError("groups must be an obs column name or a categorical pandas Series")


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
def raw_matrices_with_common_genes(
    samples: Mapping[str, ad.AnnData],
    sample_groups: Optional[Mapping[str, Sequence[str]]] = None,
) -> Dict[str, ad.AnnData]:
    """
    Restrict samples to those named in ``sample_groups`` and to the genes
    shared by all of them. Gene order follows the first sample.
    """
    if sample_groups is not None:
        names: list[str] = []
        for members in sample_groups.values():
            for s in members:
                if s not in names:
                    names.append(s)
    else:
        names = list(samples.keys())

    if not names:
        return {}

    common = pd.Index(samples[names[0]].var_names)
    for s in names[1:]:
        common = common[common.isin(samples[s].var_names)]
    LOGGER.info("Using %d genes common to %d samples.", len(common), len(names))

    out: Dict[str, ad.AnnData] = {}
    for s in names:
        a = samples[s]
        out[s] = a[:, common].copy() if not a.var_names.equals(common) else a
    return out


def collapse_cells_by_type(
    adata: ad.AnnData,
    groups: pd.Series,
    *,
    min_cell_count: int = 10,
    max_cell_count: float = np.inf,
    random_state: Optional[int] = 0,
) -> pd.DataFrame:
    """
    Sum the counts of one sample per cell type.

    Returns a (levels x genes) DataFrame holding only the levels with at
    least ``min_cell_count`` cells. Cells missing from ``groups`` are
    ignored; with a finite ``max_cell_count`` each level is randomly
    subsampled to that many cells first.
    """
    if not isinstance(groups.dtype, pd.CategoricalDtype):
        groups = groups.astype("category")
    levels = groups.cat.categories

    X = _get_counts_matrix(adata, counts_layer=None)
    codes = groups.reindex(adata.obs_names).cat.codes.to_numpy()
    keep = codes >= 0

    if np.isfinite(max_cell_count):
        rng = np.random.default_rng(random_state)
        chosen = []
        for code in np.unique(codes[keep]):
            idx = np.flatnonzero(codes == code)
            if idx.size > int(max_cell_count):
                idx = rng.choice(idx, size=int(max_cell_count), replace=False)
            chosen.append(idx)
        keep = np.zeros(codes.shape[0], dtype=bool)
        if chosen:
            keep[np.concatenate(chosen)] = True

    cell_idx = np.flatnonzero(keep)
    lab = codes[cell_idx].astype(np.int64, copy=False)

    # Indicator matrix G: (cells x levels); PB = G.T @ X
    G = sp.csr_matrix(
        (np.ones(cell_idx.size, dtype=X.dtype), (np.arange(cell_idx.size), lab)),
        shape=(cell_idx.size, len(levels)),
    )
    summed = np.asarray((G.T @ X[cell_idx, :]).todense())
    n_cells = np.bincount(lab, minlength=len(levels))

    tc = pd.DataFrame(
        summed,
        index=pd.Index(levels.astype(str), name="celltype"),
        columns=adata.var_names.copy(),
    )
    return tc.loc[n_cells >= int(min_cell_count)]


def bind_pseudobulk_matrices(
    mats: Mapping[str, pd.DataFrame],
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
) -> pd.DataFrame:
    """
    Stack per-sample (levels x genes) matrices into one (genes x libraries)
    matrix whose columns are ``"<sample><sep><level>"``.
    """
    parts = []
    for name, m in mats.items():
        m = m.copy()
        m.index = pd.Index([f"{name}{cluster_sep}{lev}" for lev in m.index])
        parts.append(m)
    if not parts:
        return pd.DataFrame()
    out = pd.concat(parts, axis=0).T
    out.columns.name = "library"
    return out


def split_pseudobulk_name(
    names: Sequence[str],
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
    part: int = 0,
) -> np.ndarray:
    """Pick the sample (part=0) or cell type (part=1) out of library names."""
    pieces = pd.Index([str(x) for x in names]).str.split(cluster_sep, n=1, regex=False)
    return np.asarray([p[part] if len(p) > part else None for p in pieces], dtype=object)


def build_pseudobulk(
    samples: Mapping[str, ad.AnnData],
    groups: pd.Series,
    sample_groups: Optional[Mapping[str, Sequence[str]]] = None,
    *,
    min_cell_count: int = 10,
    max_cell_count: float = np.inf,
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
    random_state: Optional[int] = 0,
) -> pd.DataFrame:
    """Common genes -> per-sample collapse -> one (genes x libraries) matrix."""
    mats = raw_matrices_with_common_genes(samples, sample_groups)
    collapsed = {
        name: collapse_cells_by_type(
            a,
            groups,
            min_cell_count=min_cell_count,
            max_cell_count=max_cell_count,
            random_state=random_state,
        )
        for name, a in mats.items()
    }
    aggr = bind_pseudobulk_matrices(collapsed, cluster_sep=cluster_sep)
    LOGGER.info(
        "Pseudobulk matrix: %d genes x %d libraries (min_cell_count=%d).",
        aggr.shape[0], aggr.shape[1], int(min_cell_count),
    )
    return aggr


# -----------------------------------------------------------------------------
# Library metadata
# -----------------------------------------------------------------------------
def pseudobulk_metadata(
    libraries: Sequence[str],
    ref_group: str,
    alt_group: str,
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
) -> pd.DataFrame:
    """Per-library ``sample``/``library``/``celltype``, restricted to two cell types."""
    libraries = [str(x) for x in libraries]
    meta = pd.DataFrame(
        {
            "sample": libraries,
            "library": split_pseudobulk_name(libraries, cluster_sep, 0),
            "celltype": split_pseudobulk_name(libraries, cluster_sep, 1),
        },
        index=pd.Index(libraries, name="pb_id"),
    )
    return meta.loc[meta["celltype"].isin([str(ref_group), str(alt_group)])].copy()


def paired_libraries(meta: pd.DataFrame) -> pd.DataFrame:
    """Keep only libraries (samples) that carry every cell type present in ``meta``."""
    if meta.empty:
        return meta
    wide = pd.crosstab(meta["library"], meta["celltype"])
    complete = wide.index[(wide > 0).all(axis=1)]
    dropped = sorted(set(wide.index) - set(complete))
    if dropped:
        LOGGER.info("Dropping unpaired libraries: %s", ", ".join(map(str, dropped)))
    return meta.loc[meta["library"].isin(complete)].copy()


# -----------------------------------------------------------------------------
# Matrix merging
# -----------------------------------------------------------------------------
def merge_count_matrices(mats: Mapping[str, ad.AnnData]) -> ad.AnnData:
    """
    Stack per-sample count matrices over the union of their genes.
    Genes absent from a sample are zero-filled.
    """
    if not mats:
        raise ValueError("no matrices to merge")
    merged = ad.concat(
        list(mats.values()),
        axis=0,
        join="outer",
        fill_value=0,
        label="Dataset",
        keys=[str(k) for k in mats.keys()],
        index_unique=None,
    )
    if not sp.issparse(merged.X):
        merged.X = sp.csr_matrix(merged.X)
    return merged
