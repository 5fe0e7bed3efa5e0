# src/jointde/io_utils.py
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.io
import scipy.sparse as sp
from scipy.stats import norm

from .de_utils import BetweenCellTypeDE, CellTypeDE, DEFailure, is_error
from .pseudobulk import DEFAULT_CLUSTER_SEP, merge_count_matrices, resolve_samples, split_pseudobulk_name

LOGGER = logging.getLogger(__name__)

DEResults = Mapping[str, Union[CellTypeDE, BetweenCellTypeDE, pd.DataFrame, DEFailure]]


# =====================================================================
# Dataset I/O
# =====================================================================
def load_dataset(path: Path) -> ad.AnnData:
    """Load an in-memory AnnData from .h5ad or a .zarr store."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")
    LOGGER.info("Loading dataset → %s", path)
    if path.suffix == ".zarr" or path.is_dir():
        return ad.read_zarr(str(path))
    return ad.read_h5ad(str(path))


def save_adata(adata: ad.AnnData, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    adata.write(str(out_path), compression="gzip")
    LOGGER.info("Wrote %s", out_path)


def read_sample_groups_tsv(path: Path) -> Dict[str, List[str]]:
    """
    Read a ``sample<TAB>group`` table into ``{group: [samples...]}``.

    Group order follows first appearance in the file.
    """
    df = pd.read_csv(path, sep="\t", dtype=str)
    df.columns = [c.strip().lower() for c in df.columns]
    missing = [c for c in ("sample", "group") if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: sample groups TSV is missing column(s) {missing}")

    df = df.dropna(subset=["sample", "group"])
    df["sample"] = df["sample"].str.strip()
    df["group"] = df["group"].str.strip()

    dup = df["sample"][df["sample"].duplicated()].unique().tolist()
    if dup:
        raise ValueError(f"{path}: samples listed more than once: {dup}")

    out: Dict[str, List[str]] = {}
    for s, g in zip(df["sample"], df["group"]):
        out.setdefault(g, []).append(s)
    return out


def read_gene_metadata(path: Optional[Path]) -> Optional[pd.DataFrame]:
    if path is None:
        return None
    sep = "\t" if Path(path).suffix in (".tsv", ".txt") else ","
    df = pd.read_csv(path, sep=sep)
    if "geneid" not in df.columns:
        raise ValueError(f"{path}: gene metadata must have a 'geneid' column")
    return df


def write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


# =====================================================================
# DE tables
# =====================================================================
_RESERVED = {
    "if", "else", "repeat", "while", "function", "for", "next", "break",
    "TRUE", "FALSE", "NULL", "Inf", "NaN", "NA", "in",
}


def make_names(name: str) -> str:
    """
    Syntactic file stem in the style of R's make.names:
    invalid characters become '.', and an 'X' is prepended when the name
    does not start with a letter (or a dot not followed by a digit).
    """
    s = re.sub(r"[^0-9A-Za-z._]", ".", str(name))
    if s == "" or not re.match(r"^([A-Za-z]|\.(?![0-9]))", s):
        s = "X" + s
    if s in _RESERVED:
        s = s + "."
    return s


# p-values of exactly 0 (engine underflow) map to this score instead of inf
Z_MAX = float(norm.isf(np.finfo(float).tiny))


def _signed_z(p: pd.Series, sign: np.ndarray) -> np.ndarray:
    z = norm.isf(pd.to_numeric(p, errors="coerce").to_numpy(dtype=float) / 2.0)
    z = np.where(np.isnan(z), 0.0, np.minimum(z, Z_MAX))
    return z * sign


def de_table(res: pd.DataFrame, gene_metadata: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    Decorate an engine result table for export.

    Adds ``gene``, ``significant`` (padj < 0.05) and signed normal scores
    ``Z`` (from pvalue) and ``Za`` (from padj); missing log2FoldChange is
    set to 0 so those genes get a zero score. Optional gene metadata (a
    ``geneid`` column plus annotations) is joined by gene.
    """
    tab = res.copy()
    tab["gene"] = tab.index.astype(str)
    tab.index.name = None
    padj = pd.to_numeric(tab["padj"], errors="coerce")
    tab["significant"] = (padj < 0.05).to_numpy()
    tab["log2FoldChange"] = pd.to_numeric(tab["log2FoldChange"], errors="coerce").fillna(0.0)

    sign = np.sign(tab["log2FoldChange"].to_numpy(dtype=float))
    tab["Z"] = _signed_z(tab["pvalue"], sign)
    tab["Za"] = _signed_z(tab["padj"], sign)

    if gene_metadata is not None:
        if "geneid" not in gene_metadata.columns:
            raise ValueError("gene_metadata must have a 'geneid' column")
        gm = gene_metadata.copy()
        gm["geneid"] = gm["geneid"].astype(str)
        gm = gm.drop_duplicates("geneid").set_index("geneid")
        keep = [c for c in gm.columns if c not in tab.columns]
        tab = tab.join(gm[keep], on="gene")

    return tab


def _successful(de_results: DEResults) -> Dict[str, Any]:
    n_error = sum(1 for v in de_results.values() if is_error(v))
    if n_error > 0:
        LOGGER.warning(
            "%d of %d results have returned an error; ignoring...", n_error, len(de_results)
        )
    return {str(k): v for k, v in de_results.items() if not is_error(v)}


def _res_of(x: Any) -> pd.DataFrame:
    return x.res if isinstance(x, (CellTypeDE, BetweenCellTypeDE)) else x


def save_de_as_csv(
    de_results: Optional[DEResults],
    save_prefix: Optional[Union[str, Path]],
    gene_metadata: Optional[pd.DataFrame] = None,
) -> Dict[str, pd.DataFrame]:
    """Write one ``<prefix><level>.csv`` per successful comparison; return the tables."""
    if de_results is None:
        raise ValueError("de_results has not been specified")
    if save_prefix is None:
        raise ValueError("save_prefix has not been specified")

    out: Dict[str, pd.DataFrame] = {}
    for level, x in _successful(de_results).items():
        tab = de_table(_res_of(x), gene_metadata)
        path = Path(f"{save_prefix}{make_names(level)}.csv")
        path.parent.mkdir(parents=True, exist_ok=True)
        tab.to_csv(path)
        LOGGER.info("Wrote %s (%d genes)", path, tab.shape[0])
        out[level] = tab
    return out


def _log_cpm(cm: pd.DataFrame) -> pd.DataFrame:
    totals = cm.sum(axis=0).astype(float)
    cpm = cm.astype(float).div(totals.replace(0.0, np.nan), axis=1)
    return np.log10(cpm * 1e6 + 1.0)


def _json_safe(values: np.ndarray) -> list:
    arr = np.asarray(values, dtype=float)
    return [[None if not np.isfinite(v) else float(v) for v in row] for row in arr]


def _records(tab: pd.DataFrame) -> list[dict]:
    recs = []
    for row in tab.reset_index(drop=True).to_dict(orient="records"):
        clean = {}
        for k, v in row.items():
            if isinstance(v, (float, np.floating)) and not np.isfinite(v):
                continue
            if v is None or (not isinstance(v, (list, dict)) and pd.isna(v)):
                continue
            clean[str(k)] = v.item() if isinstance(v, np.generic) else v
        recs.append(clean)
    return recs


def de_json_payload(
    result: Union[CellTypeDE, BetweenCellTypeDE],
    gene_metadata: Optional[pd.DataFrame] = None,
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
) -> dict:
    """
    Build the viewer payload for one comparison:
    ``res`` (table records with ``rowid``), ``genes``, ``ilev`` (per sample
    group: sample names and log10(CPM+1) values, genes in ``genes`` order)
    and ``snames`` (sample group names).
    """
    tab = de_table(result.res, gene_metadata)
    tab["rowid"] = np.arange(1, tab.shape[0] + 1)
    tab["_row"] = tab["gene"]
    all_genes = tab["gene"].tolist()

    cm = result.cm.copy()
    cm.columns = split_pseudobulk_name(cm.columns, cluster_sep, 0)

    ilev = {}
    for name, members in result.sample_groups.items():
        sg = [s for s in members if s in set(cm.columns)]
        sub = cm.loc[:, cm.columns.isin(sg)]
        vals = _log_cpm(sub).reindex(all_genes)
        ilev[str(name)] = {
            "snames": [str(c) for c in sub.columns],
            "val": _json_safe(vals.to_numpy()),
        }

    return {
        "res": _records(tab),
        "genes": all_genes,
        "ilev": ilev,
        "snames": [str(k) for k in result.sample_groups.keys()],
    }


def save_de_as_json(
    de_results: Optional[DEResults],
    save_prefix: Optional[Union[str, Path]],
    gene_metadata: Optional[pd.DataFrame] = None,
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
) -> None:
    """Write one ``<prefix><level>.json`` viewer payload per successful comparison."""
    if de_results is None:
        raise ValueError("de_results have not been specified")
    if save_prefix is None:
        raise ValueError("save_prefix has not been specified")

    for level, x in _successful(de_results).items():
        if not isinstance(x, (CellTypeDE, BetweenCellTypeDE)):
            raise TypeError("save_de_as_json needs detailed results (return_details=True)")
        payload = de_json_payload(x, gene_metadata, cluster_sep=cluster_sep)
        path = Path(f"{save_prefix}{make_names(level)}.json")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, allow_nan=False)
        LOGGER.info("Wrote %s", path)


# =====================================================================
# Joint dataset export (for tools reading mtx/csv)
# =====================================================================
def export_joint_dataset(
    adata: ad.AnnData,
    output_path: Path,
    *,
    sample_key: str = "sample_id",
    counts_layer: Optional[str] = None,
    metadata_df: Optional[pd.DataFrame] = None,
    embedding_key: str = "X_pca",
    n_dims: int = 100,
    graph_key: str = "connectivities",
) -> None:
    """
    Write a joint dataset as plain files into an existing directory:

    count_matrix.mtx (genes x cells), metadata.csv (CellId, Dataset, extra
    metadata), genes.csv, pca.csv (first ``n_dims`` embedding columns),
    graph_connectivities.mtx and graph_distances.mtx (1 - weight).
    """
    output_path = Path(output_path)
    if not output_path.is_dir():
        raise FileNotFoundError(f"Path {output_path} doesn't exist")

    LOGGER.info("Merge count matrices...")
    samples = resolve_samples(adata, sample_key=sample_key, counts_layer=counts_layer)
    merged = merge_count_matrices(samples)
    cell_ids = merged.obs_names.astype(str)

    meta = pd.DataFrame(index=pd.Index(cell_ids))
    if metadata_df is not None:
        meta = metadata_df.reindex(cell_ids).copy()
    meta["CellId"] = cell_ids.to_numpy()
    meta["Dataset"] = merged.obs["Dataset"].astype(str).to_numpy()

    if embedding_key not in adata.obsm:
        raise KeyError(f"embedding_key={embedding_key!r} not in adata.obsm")
    emb = np.asarray(adata.obsm[embedding_key])
    emb = emb[:, : min(int(n_dims), emb.shape[1])]
    pca_df = pd.DataFrame(
        emb,
        index=adata.obs_names,
        columns=[f"PC{i + 1}" for i in range(emb.shape[1])],
    ).reindex(cell_ids)

    if graph_key not in adata.obsp:
        raise KeyError(f"graph_key={graph_key!r} not in adata.obsp")
    pos = adata.obs_names.get_indexer(cell_ids)
    conn = sp.csr_matrix(adata.obsp[graph_key])[pos, :][:, pos]
    dist = conn.copy()
    dist.data = 1.0 - dist.data

    LOGGER.info("Write data to disk → %s", output_path)
    scipy.io.mmwrite(str(output_path / "count_matrix.mtx"), sp.csr_matrix(merged.X).T)
    meta.to_csv(output_path / "metadata.csv", index=False)
    pd.DataFrame({"gene": merged.var_names.astype(str)}).to_csv(output_path / "genes.csv", index=False)
    pca_df.to_csv(output_path / "pca.csv", index=False)
    scipy.io.mmwrite(str(output_path / "graph_connectivities.mtx"), conn)
    scipy.io.mmwrite(str(output_path / "graph_distances.mtx"), dist)
    LOGGER.info("Done")
