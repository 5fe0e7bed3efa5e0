# src/jointde/de_plot_utils.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.figure import Figure

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Small helpers
# -----------------------------------------------------------------------------
def _clip_padj(p: np.ndarray) -> np.ndarray:
    # Avoid inf in -log10; keep NaN as NaN
    out = p.astype(float, copy=True)
    finite = np.isfinite(out)
    out[finite] = np.clip(out[finite], 1e-300, 1.0)
    return out


def _empty_figure(msg: str, figsize: tuple[float, float]) -> Figure:
    fig, ax = plt.subplots(figsize=figsize)
    ax.text(0.5, 0.5, msg, ha="center", va="center")
    ax.set_axis_off()
    return fig


def save_figure(fig: Figure, stem: str, figdir: Path, formats: Sequence[str] = ("png",)) -> list[Path]:
    """Save ``fig`` as ``<figdir>/<fmt>/<stem>.<fmt>`` for every format, then close it."""
    written = []
    for ext in formats:
        outdir = Path(figdir) / ext
        outdir.mkdir(parents=True, exist_ok=True)
        outfile = outdir / f"{stem}.{ext}"
        LOGGER.info("Saving figure: %s", outfile)
        fig.savefig(outfile, dpi=300)
        written.append(outfile)
    plt.close(fig)
    return written


# -----------------------------------------------------------------------------
# Volcano plot
# -----------------------------------------------------------------------------
def volcano(
    res: pd.DataFrame,
    *,
    padj_col: str = "padj",
    lfc_col: str = "log2FoldChange",
    padj_thresh: float = 0.05,
    lfc_thresh: float = 1.0,
    top_label_n: int = 15,
    title: Optional[str] = None,
    figsize: tuple[float, float] = (7.5, 6.0),
) -> Figure:
    """
    Volcano plot from an engine result table indexed by gene.

    Significant genes (padj < padj_thresh and |lfc| > lfc_thresh) are red;
    the top ones by (padj asc, |lfc| desc) are labelled.
    """
    if res is None or res.empty:
        return _empty_figure("No DE results", figsize)

    tmp = pd.DataFrame(
        {
            "gene": res.index.astype(str),
            "padj": pd.to_numeric(res[padj_col], errors="coerce").to_numpy(),
            "lfc": pd.to_numeric(res[lfc_col], errors="coerce").to_numpy(),
        }
    ).dropna()
    if tmp.empty:
        return _empty_figure("No valid rows (NaNs after parsing)", figsize)

    x = tmp["lfc"].to_numpy(dtype=float)
    y = -np.log10(_clip_padj(tmp["padj"].to_numpy(dtype=float)))
    sig = (tmp["padj"].to_numpy(dtype=float) < float(padj_thresh)) & (np.abs(x) > float(lfc_thresh))

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(x[~sig], y[~sig], c="#9aa0a6", s=10.0, alpha=0.65, linewidths=0.0, rasterized=True)
    ax.scatter(x[sig], y[sig], c="#d93025", s=10.0, alpha=0.75, linewidths=0.0, rasterized=True)

    ax.axhline(-np.log10(max(float(padj_thresh), 1e-300)), color="black", linestyle="--", lw=1)
    ax.axvline(float(lfc_thresh), color="black", linestyle="--", lw=1)
    ax.axvline(-float(lfc_thresh), color="black", linestyle="--", lw=1)

    ax.set_xlabel("log2 fold change")
    ax.set_ylabel("-log10 adjusted p-value")
    if title:
        ax.set_title(str(title))

    if int(top_label_n) > 0:
        lab = tmp.loc[sig].assign(abs_lfc=np.abs(x[sig]))
        lab = lab.sort_values(["padj", "abs_lfc"], ascending=[True, False]).head(int(top_label_n))
        for _, row in lab.iterrows():
            ax.text(
                float(row["lfc"]),
                float(-np.log10(max(float(row["padj"]), 1e-300))),
                str(row["gene"]),
                fontsize=8,
                ha="left" if float(row["lfc"]) >= 0 else "right",
                va="bottom",
            )

    ax.grid(True, linestyle=":", linewidth=0.8, alpha=0.6)
    fig.tight_layout()
    return fig
