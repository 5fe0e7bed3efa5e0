from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .pipeline import (
    run_per_cell_type,
    run_between_cell_types,
    run_markers,
    run_export,
    run_preprocess,
)
from .config import (
    PerCellTypeDEConfig,
    BetweenCellTypeDEConfig,
    MarkersConfig,
    ExportConfig,
    PreprocessConfig,
)
from .logging_utils import init_logging


app = typer.Typer(help="jointDE CLI: pseudobulk differential expression across samples of a joint single-cell dataset.")

warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*not compatible with tight_layout.*", category=UserWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_csv_option(values: Optional[List[str]]) -> Optional[List[str]]:
    """Support e.g. --regress-out a,b --regress-out c."""
    if values is None:
        return None
    out = []
    for v in values:
        out.extend([x.strip() for x in v.split(",") if x.strip()])
    return out or None


def _build(cfg_cls, **kwargs):
    try:
        return cfg_cls(**kwargs)
    except ValidationError as e:
        raise typer.BadParameter(str(e))


# ======================================================================
#  per-cell-type
# ======================================================================
@app.command("per-cell-type", help="Condition DE per cell type between two groups of samples.")
def per_cell_type(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    input_path: Path = typer.Option(
        ..., "--input", "-i",
        help="[I/O] Joint dataset (.h5ad or .zarr).",
    ),
    sample_groups_tsv: Path = typer.Option(
        ..., "--sample-groups", "-g",
        help="[I/O] TSV with columns 'sample' and 'group' (exactly two groups).",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory (required).",
    ),
    gene_metadata: Optional[Path] = typer.Option(
        None, "--gene-metadata",
        help="[I/O] Optional CSV/TSV with a 'geneid' column joined into the tables.",
    ),
    save_csv: bool = typer.Option(True, "--csv/--no-csv", help="[I/O] Write CSV tables."),
    save_json: bool = typer.Option(True, "--json/--no-json", help="[I/O] Write JSON viewer payloads."),

    # -------------------------------------------------------------
    # Design
    # -------------------------------------------------------------
    ref_level: str = typer.Option(
        ..., "--ref-level", "-r",
        help="[Design] Sample group used as reference.",
    ),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s", help="[Design] Sample column in .obs."),
    group_key: str = typer.Option("leiden", "--group-key", "-l", help="[Design] Cell type column in .obs."),
    counts_layer: Optional[str] = typer.Option(
        None, "--counts-layer",
        help="[Design] Layer with raw counts (default: .X).",
    ),
    cluster_sep: str = typer.Option("<!!>", "--cluster-sep", help="[Design] Sample/cell type delimiter."),
    min_cell_count: int = typer.Option(10, "--min-cell-count", help="[Pseudobulk] Minimum cells per sample and cell type."),
    max_cell_count: Optional[int] = typer.Option(
        None, "--max-cell-count",
        help="[Pseudobulk] Subsample each cell type to at most this many cells per sample.",
    ),
    random_state: int = typer.Option(0, "--random-state"),

    # -------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------
    test: str = typer.Option("Wald", "--test", help="[DESeq2] Test to use (Wald)."),
    cooks_cutoff: bool = typer.Option(False, "--cooks-cutoff/--no-cooks-cutoff"),
    independent_filtering: bool = typer.Option(False, "--independent-filtering/--no-independent-filtering"),
    alpha: float = typer.Option(0.05, "--alpha"),
    shrink_lfc: bool = typer.Option(False, "--shrink-lfc/--no-shrink-lfc"),
    remove_na: bool = typer.Option(True, "--remove-na/--keep-na"),
    n_jobs: int = typer.Option(1, "--n-jobs", "-j", help="[Compute] Total CPUs."),

    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, "--figures/--no-figures"),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F", help="[Figures] Formats to save."),
):
    logfile = output_dir / "per-cell-type.log"
    init_logging(logfile)

    cfg = _build(
        PerCellTypeDEConfig,
        input_path=input_path,
        sample_groups_tsv=sample_groups_tsv,
        output_dir=output_dir,
        gene_metadata=gene_metadata,
        save_csv=save_csv,
        save_json=save_json,
        ref_level=ref_level,
        sample_key=sample_key,
        group_key=group_key,
        counts_layer=counts_layer,
        cluster_sep=cluster_sep,
        min_cell_count=min_cell_count,
        max_cell_count=max_cell_count,
        random_state=random_state,
        test=test,
        cooks_cutoff=cooks_cutoff,
        independent_filtering=independent_filtering,
        alpha=alpha,
        shrink_lfc=shrink_lfc,
        remove_na=remove_na,
        n_jobs=n_jobs,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )

    run_per_cell_type(cfg)


# ======================================================================
#  between-cell-types
# ======================================================================
@app.command("between-cell-types", help="Compare two cell types across the panel of samples.")
def between_cell_types(
    input_path: Path = typer.Option(..., "--input", "-i", help="[I/O] Joint dataset (.h5ad or .zarr)."),
    sample_groups_tsv: Path = typer.Option(
        ..., "--sample-groups", "-g",
        help="[I/O] TSV with columns 'sample' and 'group'; selects the samples used.",
    ),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory (required)."),
    gene_metadata: Optional[Path] = typer.Option(None, "--gene-metadata"),
    save_csv: bool = typer.Option(True, "--csv/--no-csv"),
    save_json: bool = typer.Option(True, "--json/--no-json"),

    ref_group: str = typer.Option(..., "--ref-group", help="[Design] Reference cell type."),
    alt_group: str = typer.Option(..., "--alt-group", help="[Design] Cell type compared to the reference."),
    only_paired: bool = typer.Option(
        True, "--only-paired/--all-samples",
        help="[Design] Keep only samples carrying both cell types.",
    ),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s"),
    group_key: str = typer.Option("leiden", "--group-key", "-l"),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer"),
    cluster_sep: str = typer.Option("<!!>", "--cluster-sep"),
    min_cell_count: int = typer.Option(10, "--min-cell-count"),

    test: str = typer.Option("Wald", "--test"),
    cooks_cutoff: bool = typer.Option(False, "--cooks-cutoff/--no-cooks-cutoff"),
    independent_filtering: bool = typer.Option(False, "--independent-filtering/--no-independent-filtering"),
    alpha: float = typer.Option(0.05, "--alpha"),
    shrink_lfc: bool = typer.Option(False, "--shrink-lfc/--no-shrink-lfc"),
    remove_na: bool = typer.Option(True, "--remove-na/--keep-na"),
    n_jobs: int = typer.Option(1, "--n-jobs", "-j"),

    make_figures: bool = typer.Option(True, "--figures/--no-figures"),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    logfile = output_dir / "between-cell-types.log"
    init_logging(logfile)

    cfg = _build(
        BetweenCellTypeDEConfig,
        input_path=input_path,
        sample_groups_tsv=sample_groups_tsv,
        output_dir=output_dir,
        gene_metadata=gene_metadata,
        save_csv=save_csv,
        save_json=save_json,
        ref_group=ref_group,
        alt_group=alt_group,
        only_paired=only_paired,
        sample_key=sample_key,
        group_key=group_key,
        counts_layer=counts_layer,
        cluster_sep=cluster_sep,
        min_cell_count=min_cell_count,
        test=test,
        cooks_cutoff=cooks_cutoff,
        independent_filtering=independent_filtering,
        alpha=alpha,
        shrink_lfc=shrink_lfc,
        remove_na=remove_na,
        n_jobs=n_jobs,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )

    run_between_cell_types(cfg)


# ======================================================================
#  markers
# ======================================================================
@app.command("markers", help="Marker genes per cell type, estimated per sample and aggregated.")
def markers(
    input_path: Path = typer.Option(..., "--input", "-i", help="[I/O] Joint dataset (.h5ad or .zarr)."),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory (required)."),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s"),
    group_key: str = typer.Option("leiden", "--group-key", "-l"),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer"),
    z_threshold: float = typer.Option(3.0, "--z-threshold", help="Minimum aggregated Z to report."),
    upregulated_only: bool = typer.Option(False, "--upregulated-only/--both-directions"),
    n_jobs: int = typer.Option(1, "--n-jobs", "-j"),
):
    logfile = output_dir / "markers.log"
    init_logging(logfile)

    cfg = _build(
        MarkersConfig,
        input_path=input_path,
        output_dir=output_dir,
        sample_key=sample_key,
        group_key=group_key,
        counts_layer=counts_layer,
        z_threshold=z_threshold,
        upregulated_only=upregulated_only,
        n_jobs=n_jobs,
        logfile=logfile,
    )

    run_markers(cfg)


# ======================================================================
#  export
# ======================================================================
@app.command("export", help="Write the joint dataset as mtx/csv files for other tools.")
def export(
    input_path: Path = typer.Option(..., "--input", "-i", help="[I/O] Joint dataset (.h5ad or .zarr)."),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory (required)."),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s"),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer"),
    metadata_columns: Optional[List[str]] = typer.Option(
        None, "--metadata-columns", "-m",
        help="Extra .obs columns for metadata.csv (comma-separated or repeated).",
    ),
    embedding_key: str = typer.Option("X_pca", "--embedding-key", "-e"),
    n_dims: int = typer.Option(100, "--n-dims"),
    graph_key: str = typer.Option("connectivities", "--graph-key"),
):
    logfile = output_dir / "export.log"
    init_logging(logfile)

    cfg = _build(
        ExportConfig,
        input_path=input_path,
        output_dir=output_dir,
        sample_key=sample_key,
        counts_layer=counts_layer,
        metadata_columns=_split_csv_option(metadata_columns),
        embedding_key=embedding_key,
        n_dims=n_dims,
        graph_key=graph_key,
        logfile=logfile,
    )

    run_export(cfg)


# ======================================================================
#  preprocess
# ======================================================================
@app.command("preprocess", help="Basic normalization, PCA, clustering and t-SNE of a count matrix.")
def preprocess(
    input_path: Path = typer.Option(..., "--input", "-i", help="[I/O] Count dataset (.h5ad or .zarr)."),
    output_path: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="[I/O] Output h5ad. Defaults to <input>.processed.h5ad",
    ),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer"),
    regress_out: Optional[List[str]] = typer.Option(None, "--regress-out", help="obs columns to regress out."),
    n_pcs: int = typer.Option(100, "--n-pcs"),
    n_top_genes: Optional[int] = typer.Option(None, "--n-top-genes"),
    cluster: bool = typer.Option(True, "--cluster/--no-cluster"),
    tsne: bool = typer.Option(True, "--tsne/--no-tsne"),
    random_state: int = typer.Option(0, "--random-state"),
):
    cfg = _build(
        PreprocessConfig,
        input_path=input_path,
        output_path=output_path,
        counts_layer=counts_layer,
        regress_out=_split_csv_option(regress_out),
        n_pcs=n_pcs,
        n_top_genes=n_top_genes,
        cluster=cluster,
        tsne=tsne,
        random_state=random_state,
    )
    cfg = cfg.model_copy(update={"logfile": cfg.resolved_output_path.parent / "preprocess.log"})
    init_logging(cfg.logfile)

    run_preprocess(cfg)


if __name__ == "__main__":
    app()
