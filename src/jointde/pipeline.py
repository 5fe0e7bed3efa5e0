# src/jointde/pipeline.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict

import anndata as ad
import numpy as np
import pandas as pd

from jointde import __version__
from . import de_plot_utils, io_utils
from .config import (
    BetweenCellTypeDEConfig,
    ExportConfig,
    MarkersConfig,
    PerCellTypeDEConfig,
    PreprocessConfig,
    PseudobulkDEConfig,
)
from .de_utils import (
    BetweenCellTypeDE,
    CellTypeDE,
    DESeqOptions,
    between_cell_type_de,
    is_error,
    per_cell_type_de,
)
from .logging_utils import init_logging
from .markers import markers_across_samples
from .preprocess import basic_preprocess
from .pseudobulk import resolve_groups, resolve_samples

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _deseq_options(cfg: PseudobulkDEConfig) -> DESeqOptions:
    return DESeqOptions(
        test=cfg.test,
        cooks_cutoff=cfg.cooks_cutoff,
        independent_filtering=cfg.independent_filtering,
        alpha=cfg.alpha,
        shrink_lfc=cfg.shrink_lfc,
        remove_na=cfg.remove_na,
    )


def _summary_table(results: Dict[str, object], alpha: float) -> pd.DataFrame:
    rows = []
    for level, x in results.items():
        if is_error(x):
            rows.append({"comparison": level, "status": "failed", "reason": x.reason})
            continue
        res = x.res if isinstance(x, (CellTypeDE, BetweenCellTypeDE)) else x
        padj = pd.to_numeric(res["padj"], errors="coerce")
        rows.append(
            {
                "comparison": level,
                "status": "ok",
                "reason": "",
                "n_genes": int(res.shape[0]),
                "n_sig": int((padj < float(alpha)).sum()),
                "n_up": int(((padj < float(alpha)) & (res["log2FoldChange"] > 0)).sum()),
                "n_down": int(((padj < float(alpha)) & (res["log2FoldChange"] < 0)).sum()),
            }
        )
    return pd.DataFrame(rows)


def _write_de_outputs(
    results: Dict[str, object],
    cfg: PseudobulkDEConfig,
    *,
    subdir: str,
    settings: list[str],
) -> None:
    out_dir = cfg.output_dir / "tables" / subdir
    out_dir.mkdir(parents=True, exist_ok=True)
    prefix = f"{out_dir}/"

    gene_metadata = io_utils.read_gene_metadata(cfg.gene_metadata)

    if cfg.save_csv:
        io_utils.save_de_as_csv(results, prefix, gene_metadata=gene_metadata)
    if cfg.save_json:
        io_utils.save_de_as_json(results, prefix, gene_metadata=gene_metadata, cluster_sep=cfg.cluster_sep)

    summary = _summary_table(results, cfg.alpha)
    summary.to_csv(cfg.output_dir / "tables" / f"{subdir}_summary.tsv", sep="\t", index=False)

    if cfg.make_figures:
        for level, x in results.items():
            if is_error(x):
                continue
            res = x.res if isinstance(x, (CellTypeDE, BetweenCellTypeDE)) else x
            fig = de_plot_utils.volcano(res, padj_thresh=cfg.alpha, title=str(level))
            de_plot_utils.save_figure(
                fig,
                f"volcano_{io_utils.make_names(level)}",
                cfg.figdir / subdir,
                cfg.figure_formats,
            )

    io_utils.write_settings(cfg.output_dir, f"{subdir}_settings.txt", settings)


def _settings_header(mode: str) -> list[str]:
    return [
        f"jointde {__version__}",
        f"mode: {mode}",
        f"timestamp_utc: {datetime.now(timezone.utc).isoformat()}",
    ]


# -----------------------------------------------------------------------------
# Orchestrator 1: per-cell-type condition DE
# -----------------------------------------------------------------------------
def run_per_cell_type(cfg: PerCellTypeDEConfig) -> Dict[str, object]:
    """
    Per-cell-type DE between the two sample groups of ``cfg.sample_groups_tsv``.

    Writes CSV/JSON tables per cell type, a summary TSV, volcano plots and a
    settings file; returns the result mapping.
    """
    init_logging(cfg.logfile)

    adata = io_utils.load_dataset(cfg.input_path)
    sample_groups = io_utils.read_sample_groups_tsv(cfg.sample_groups_tsv)
    LOGGER.info(
        "per-cell-type: groups=%s, ref_level=%r, group_key=%r",
        {k: len(v) for k, v in sample_groups.items()}, cfg.ref_level, cfg.group_key,
    )

    results = per_cell_type_de(
        adata,
        cfg.group_key,
        sample_groups,
        cfg.ref_level,
        sample_key=cfg.sample_key,
        counts_layer=cfg.counts_layer,
        opts=_deseq_options(cfg),
        min_cell_count=cfg.min_cell_count,
        max_cell_count=float(cfg.max_cell_count) if cfg.max_cell_count else np.inf,
        n_jobs=cfg.n_jobs,
        cluster_sep=cfg.cluster_sep,
        return_details=True,
        random_state=cfg.random_state,
    )

    n_fail = sum(1 for v in results.values() if is_error(v))
    LOGGER.info("per-cell-type: %d levels, %d failed", len(results), n_fail)

    settings = _settings_header("per-cell-type") + [
        f"input: {cfg.input_path}",
        f"sample_groups: {sample_groups}",
        f"ref_level: {cfg.ref_level}",
        f"group_key: {cfg.group_key}",
        f"sample_key: {cfg.sample_key}",
        f"counts_layer: {cfg.counts_layer}",
        f"min_cell_count: {cfg.min_cell_count}",
        f"max_cell_count: {cfg.max_cell_count}",
        f"test: {cfg.test}",
        f"cooks_cutoff: {cfg.cooks_cutoff}",
        f"independent_filtering: {cfg.independent_filtering}",
        f"remove_na: {cfg.remove_na}",
    ]
    _write_de_outputs(results, cfg, subdir="per_cell_type", settings=settings)
    return results


# -----------------------------------------------------------------------------
# Orchestrator 2: between two cell types
# -----------------------------------------------------------------------------
def run_between_cell_types(cfg: BetweenCellTypeDEConfig) -> BetweenCellTypeDE:
    init_logging(cfg.logfile)

    adata = io_utils.load_dataset(cfg.input_path)
    sample_groups = io_utils.read_sample_groups_tsv(cfg.sample_groups_tsv)

    result = between_cell_type_de(
        adata,
        cfg.group_key,
        sample_groups,
        cfg.ref_group,
        cfg.alt_group,
        sample_key=cfg.sample_key,
        counts_layer=cfg.counts_layer,
        opts=_deseq_options(cfg),
        min_cell_count=cfg.min_cell_count,
        only_paired=cfg.only_paired,
        cluster_sep=cfg.cluster_sep,
        return_details=True,
        n_cpus=cfg.n_jobs,
    )

    key = f"{cfg.alt_group}_vs_{cfg.ref_group}"
    settings = _settings_header("between-cell-types") + [
        f"input: {cfg.input_path}",
        f"ref_group: {cfg.ref_group}",
        f"alt_group: {cfg.alt_group}",
        f"only_paired: {cfg.only_paired}",
        f"n_libraries: {result.cm.shape[1]}",
        f"group_key: {cfg.group_key}",
        f"sample_key: {cfg.sample_key}",
        f"min_cell_count: {cfg.min_cell_count}",
    ]
    _write_de_outputs({key: result}, cfg, subdir="between_cell_types", settings=settings)
    return result


# -----------------------------------------------------------------------------
# Orchestrator 3: marker genes aggregated across samples
# -----------------------------------------------------------------------------
def run_markers(cfg: MarkersConfig) -> Dict[str, pd.DataFrame]:
    init_logging(cfg.logfile)

    adata = io_utils.load_dataset(cfg.input_path)
    samples = resolve_samples(adata, sample_key=cfg.sample_key, counts_layer=cfg.counts_layer)
    groups = resolve_groups(adata, cfg.group_key)

    markers = markers_across_samples(
        samples,
        groups,
        z_threshold=cfg.z_threshold,
        upregulated_only=cfg.upregulated_only,
        n_jobs=cfg.n_jobs,
    )

    out_dir = cfg.output_dir / "tables" / "markers"
    out_dir.mkdir(parents=True, exist_ok=True)
    for g, df in markers.items():
        df.to_csv(out_dir / f"{io_utils.make_names(g)}.csv", index=False)
    LOGGER.info("markers: wrote %d tables to %s", len(markers), out_dir)
    return markers


# -----------------------------------------------------------------------------
# Orchestrator 4: export for external tools
# -----------------------------------------------------------------------------
def run_export(cfg: ExportConfig) -> Path:
    init_logging(cfg.logfile)

    adata = io_utils.load_dataset(cfg.input_path)
    metadata_df = None
    if cfg.metadata_columns:
        missing = [c for c in cfg.metadata_columns if c not in adata.obs]
        if missing:
            raise KeyError(f"metadata columns not in adata.obs: {missing}")
        metadata_df = adata.obs[list(cfg.metadata_columns)].copy()

    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    io_utils.export_joint_dataset(
        adata,
        cfg.output_dir,
        sample_key=cfg.sample_key,
        counts_layer=cfg.counts_layer,
        metadata_df=metadata_df,
        embedding_key=cfg.embedding_key,
        n_dims=cfg.n_dims,
        graph_key=cfg.graph_key,
    )
    return cfg.output_dir


# -----------------------------------------------------------------------------
# Orchestrator 5: basic preprocessing
# -----------------------------------------------------------------------------
def run_preprocess(cfg: PreprocessConfig) -> ad.AnnData:
    init_logging(cfg.logfile)

    adata = io_utils.load_dataset(cfg.input_path)
    if cfg.counts_layer:
        if cfg.counts_layer not in adata.layers:
            raise KeyError(f"counts_layer={cfg.counts_layer!r} not found in adata.layers")
        adata.X = adata.layers[cfg.counts_layer].copy()

    out = basic_preprocess(
        adata,
        regress_out=cfg.regress_out,
        n_pcs=cfg.n_pcs,
        n_top_genes=cfg.n_top_genes,
        cluster=cfg.cluster,
        tsne=cfg.tsne,
        random_state=cfg.random_state,
    )
    io_utils.save_adata(out, cfg.resolved_output_path)
    return out
