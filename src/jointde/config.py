from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from matplotlib.figure import Figure
from pydantic import BaseModel, Field, field_validator, model_validator


def _check_figure_format(fmt: str) -> str:
    supported = Figure().canvas.get_supported_filetypes()
    fmt = fmt.lower()
    if fmt not in supported:
        raise ValueError(
            f"Unsupported figure format '{fmt}'. "
            f"Supported formats include: {', '.join(sorted(supported))}"
        )
    return fmt


# ---------------------------------------------------------------------
# Shared pseudobulk DE settings
# ---------------------------------------------------------------------
class PseudobulkDEConfig(BaseModel):

    # ---- Input ----
    input_path: Path = Field(..., description="Joint dataset (.h5ad or .zarr)")
    sample_groups_tsv: Path = Field(..., description="TSV with columns sample, group")
    sample_key: str = "sample_id"
    group_key: str = "leiden"
    counts_layer: Optional[str] = Field(
        None,
        description="Layer with raw counts; None uses adata.X (must be raw counts).",
    )
    gene_metadata: Optional[Path] = None

    # ---- Output ----
    output_dir: Path
    save_csv: bool = True
    save_json: bool = True

    # ---- Pseudobulk ----
    cluster_sep: str = "<!!>"
    min_cell_count: int = Field(10, ge=1)

    # ---- Engine ----
    test: Literal["Wald", "LRT"] = "Wald"
    cooks_cutoff: bool = False
    independent_filtering: bool = False
    alpha: float = Field(0.05, gt=0.0, lt=1.0)
    shrink_lfc: bool = False
    remove_na: bool = True

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1)

    # ---- Figures ----
    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @field_validator("figure_formats")
    @classmethod
    def validate_formats(cls, v: List[str]) -> List[str]:
        return [_check_figure_format(f) for f in v]

    @field_validator("test")
    @classmethod
    def wald_only(cls, v: str) -> str:
        if v == "LRT":
            raise ValueError("test='LRT' is not available with the PyDESeq2 engine; use 'Wald'")
        return v

    @field_validator("cluster_sep")
    @classmethod
    def non_empty_sep(cls, v: str) -> str:
        if not v:
            raise ValueError("cluster_sep must be a non-empty string")
        return v


class PerCellTypeDEConfig(PseudobulkDEConfig):
    ref_level: str = Field(..., description="Sample group used as reference")
    max_cell_count: Optional[int] = Field(
        None,
        ge=1,
        description="Subsample each cell type to at most this many cells per sample.",
    )
    random_state: int = 0


class BetweenCellTypeDEConfig(PseudobulkDEConfig):
    ref_group: str
    alt_group: str
    only_paired: bool = True

    @model_validator(mode="after")
    def check_groups_differ(self):
        if self.ref_group == self.alt_group:
            raise ValueError("ref_group and alt_group must differ")
        return self


# ---------------------------------------------------------------------
# Marker aggregation
# ---------------------------------------------------------------------
class MarkersConfig(BaseModel):
    input_path: Path
    output_dir: Path
    sample_key: str = "sample_id"
    group_key: str = "leiden"
    counts_layer: Optional[str] = None

    z_threshold: float = Field(3.0, ge=0.0)
    upregulated_only: bool = False
    n_jobs: int = Field(1, ge=1)

    logfile: Optional[Path] = None


# ---------------------------------------------------------------------
# Export for external tools
# ---------------------------------------------------------------------
class ExportConfig(BaseModel):
    input_path: Path
    output_dir: Path
    sample_key: str = "sample_id"
    counts_layer: Optional[str] = None
    metadata_columns: Optional[List[str]] = None
    embedding_key: str = "X_pca"
    n_dims: int = Field(100, ge=1)
    graph_key: str = "connectivities"

    logfile: Optional[Path] = None


# ---------------------------------------------------------------------
# Basic preprocessing
# ---------------------------------------------------------------------
class PreprocessConfig(BaseModel):
    input_path: Path
    output_path: Optional[Path] = Field(
        None,
        description="Output h5ad. Defaults to <input>.processed.h5ad",
    )
    counts_layer: Optional[str] = None
    regress_out: Optional[List[str]] = None
    n_pcs: int = Field(100, ge=1)
    n_top_genes: Optional[int] = Field(None, ge=1)
    cluster: bool = True
    tsne: bool = True
    random_state: int = 0

    logfile: Optional[Path] = None

    @property
    def resolved_output_path(self) -> Path:
        if self.output_path is not None:
            return self.output_path
        return self.input_path.with_name(self.input_path.stem + ".processed.h5ad")
