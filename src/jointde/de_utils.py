# src/jointde/de_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .pseudobulk import (
    DEFAULT_CLUSTER_SEP,
    SampleData,
    build_pseudobulk,
    paired_libraries,
    pseudobulk_metadata,
    resolve_groups,
    resolve_samples,
    split_pseudobulk_name,
)
from .validation import (
    check_counts_whole_numbers,
    require_deseq_engine,
    validate_between_cell_type_params,
    validate_per_cell_type_params,
)

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


# -----------------------------------------------------------------------------
# Options and result containers
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DESeqOptions:
    """Knobs passed through to the DE engine for every comparison."""
    test: Literal["Wald", "LRT"] = "Wald"
    cooks_cutoff: bool = False
    independent_filtering: bool = False
    alpha: float = 0.05
    shrink_lfc: bool = False
    remove_na: bool = True

    def __post_init__(self):
        if self.test == "LRT":
            raise ValueError(
                "test='LRT' is not available: the PyDESeq2 engine only implements the Wald test"
            )
        if self.test != "Wald":
            raise ValueError(f"Unknown test {self.test!r}; expected 'Wald'")
        if not (0.0 < float(self.alpha) < 1.0):
            raise ValueError("alpha must be in (0, 1)")


@dataclass
class CellTypeDE:
    """Detailed result of one per-cell-type condition comparison."""
    res: pd.DataFrame
    cm: pd.DataFrame
    sample_groups: Dict[str, list]
    meta: Optional[pd.DataFrame] = None
    provenance: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BetweenCellTypeDE:
    """Detailed result of a two-cell-type comparison across samples."""
    res: pd.DataFrame
    cm: pd.DataFrame
    meta: pd.DataFrame
    ref_group: str
    alt_group: str
    sample_groups: Dict[str, list]
    provenance: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DEFailure:
    """Marker for a comparison that could not be run."""
    level: str
    reason: str


def is_error(x: Any) -> bool:
    return isinstance(x, DEFailure)


# -----------------------------------------------------------------------------
# Engine adapter (PyDESeq2 only)
# -----------------------------------------------------------------------------
def order_and_filter(res: pd.DataFrame, *, remove_na: bool = True) -> pd.DataFrame:
    """Order by padj ascending (NaN last); optionally drop rows with NaN padj."""
    res = res.sort_values("padj", ascending=True, na_position="last", kind="mergesort")
    if remove_na:
        res = res.loc[res["padj"].notna()]
    return res


def run_deseq(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    design_factors: Sequence[str],
    contrast: Tuple[str, str, str],
    opts: DESeqOptions = DESeqOptions(),
    n_cpus: int = 1,
) -> tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Run PyDESeq2 for one contrast.

    counts: (libraries x genes), metadata indexed like counts.
    The contrast factor must be categorical with the reference level first.

    Returns: (results_df indexed by gene, provenance dict)
    """
    require_deseq_engine()
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference
    from pydeseq2.ds import DeseqStats

    counts = counts.loc[metadata.index]
    check_counts_whole_numbers(counts)
    counts_i = counts.round().astype(np.int64)

    factor, test_level, ref_level = (str(x) for x in contrast)
    design = "~" + " + ".join(str(f) for f in design_factors)
    inference = DefaultInference(n_cpus=int(n_cpus))

    meta: Dict[str, Any] = {
        "design": design,
        "contrast": [factor, test_level, ref_level],
        "n_libraries": int(counts_i.shape[0]),
        "n_genes": int(counts_i.shape[1]),
        "lfc_shrunk": False,
        "warnings": [],
    }

    with warnings.catch_warnings(record=True) as wrec:
        warnings.simplefilter("always")

        dds = DeseqDataSet(
            counts=counts_i,
            metadata=metadata.copy(),
            design=design,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        stat = DeseqStats(
            dds,
            contrast=[factor, test_level, ref_level],
            alpha=float(opts.alpha),
            cooks_filter=bool(opts.cooks_cutoff),
            independent_filter=bool(opts.independent_filtering),
            inference=inference,
            quiet=True,
        )
        stat.summary()

        if opts.shrink_lfc:
            try:
                stat.lfc_shrink(coeff=f"{factor}[T.{test_level}]")
                meta["lfc_shrunk"] = True
            except Exception as e:
                LOGGER.warning("LFC shrinkage failed, using MLE estimates: %s", e)

    for ww in wrec:
        meta["warnings"].append(str(getattr(ww, "message", ww)))

    res = stat.results_df.copy()
    res.index = res.index.astype(str)
    res.index.name = "gene"
    cols = [c for c in RESULT_COLUMNS if c in res.columns]
    return res[cols], meta


def compute_parallelism(
    *,
    n_groups: int,
    total_cpus: int,
) -> tuple[int, int]:
    """
    Decide (n_jobs, n_cpus_per_job) for group-wise pseudobulk DE.

    Rules:
      - If total_cpus <= n_groups:
          n_jobs = total_cpus
          n_cpus = 1
      - Else:
          n_jobs = n_groups
          n_cpus = 1 + floor((total_cpus - n_groups) / n_groups)
    """
    total_cpus = int(max(1, total_cpus))
    n_groups = int(max(1, n_groups))

    if total_cpus <= n_groups:
        return total_cpus, 1

    extra = total_cpus - n_groups
    return n_groups, 1 + (extra // n_groups)


# -----------------------------------------------------------------------------
# Per-cell-type condition DE
# -----------------------------------------------------------------------------
def _assign_sample_group(
    libraries: Sequence[str],
    sample_groups: Mapping[str, Sequence[str]],
    cluster_sep: str,
) -> list[Optional[str]]:
    owner = {s: str(name) for name, members in sample_groups.items() for s in members}
    return [owner.get(s) for s in split_pseudobulk_name(libraries, cluster_sep, 0)]


def _per_cell_type_worker(payload: dict) -> tuple[str, Union[CellTypeDE, pd.DataFrame, DEFailure]]:
    """
    Worker: run the condition comparison for a single cell type.
    Any failure is returned as a DEFailure instead of raised.
    """
    level = payload["level"]
    cm: pd.DataFrame = payload["cm"]
    sample_groups = payload["sample_groups"]
    ref_level = str(payload["ref_level"])
    cluster_sep = payload["cluster_sep"]
    opts: DESeqOptions = payload["opts"]

    try:
        meta = pd.DataFrame(
            {
                "sample_id": cm.columns.astype(str),
                "group": _assign_sample_group(cm.columns, sample_groups, cluster_sep),
            },
            index=pd.Index(cm.columns.astype(str), name="pb_id"),
        )
        present = [g for g in sample_groups.keys() if g in set(meta["group"])]
        if ref_level not in present:
            raise ValueError("The reference level is absent in this comparison")
        if len(present) < 2:
            raise ValueError("The cluster is not present in both conditions")
        test_level = [g for g in present if g != ref_level][0]
        meta["group"] = pd.Categorical(meta["group"], categories=[ref_level, test_level])

        check_counts_whole_numbers(cm)
        res, prov = run_deseq(
            cm.T,
            meta[["group"]],
            design_factors=["group"],
            contrast=("group", test_level, ref_level),
            opts=opts,
            n_cpus=int(payload.get("n_cpus", 1)),
        )
        res = order_and_filter(res, remove_na=opts.remove_na)
    except Exception as e:
        return level, DEFailure(level=level, reason=str(e))

    if payload.get("return_details", True):
        return level, CellTypeDE(
            res=res,
            cm=cm,
            sample_groups={k: list(v) for k, v in sample_groups.items()},
            meta=meta,
            provenance=prov,
        )
    return level, res


def per_cell_type_de(
    data: SampleData,
    groups: Union[str, pd.Series, None] = None,
    sample_groups: Optional[Mapping[str, Sequence[str]]] = None,
    ref_level: Optional[str] = None,
    *,
    sample_key: str = "sample_id",
    counts_layer: Optional[str] = None,
    test: str = "Wald",
    cooks_cutoff: bool = False,
    independent_filtering: bool = False,
    remove_na: bool = True,
    shrink_lfc: bool = False,
    opts: Optional[DESeqOptions] = None,
    min_cell_count: int = 10,
    max_cell_count: float = np.inf,
    n_jobs: int = 1,
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
    return_details: bool = True,
    random_state: Optional[int] = 0,
) -> Dict[str, Union[CellTypeDE, pd.DataFrame, DEFailure]]:
    """
    Condition DE for every cell type, between two groups of samples.

    For each level of ``groups`` the per-sample pseudobulk libraries of that
    cell type are labelled with the sample group they belong to and tested
    with design ``~group`` (``ref_level`` as reference).

    Returns a dict keyed by cell type. Levels that cannot be tested (absent
    from one condition, engine failure, ...) map to a ``DEFailure``.

    Engine options come from the keyword arguments unless ``opts`` is given.
    """
    if opts is None:
        opts = DESeqOptions(
            test=test,
            cooks_cutoff=cooks_cutoff,
            independent_filtering=independent_filtering,
            remove_na=remove_na,
            shrink_lfc=shrink_lfc,
        )

    samples = resolve_samples(data, sample_key=sample_key, counts_layer=counts_layer)
    groups = resolve_groups(data, groups)
    validate_per_cell_type_params(samples, groups, sample_groups, ref_level, cluster_sep)

    aggr = build_pseudobulk(
        samples,
        groups,
        sample_groups,
        min_cell_count=min_cell_count,
        max_cell_count=max_cell_count,
        cluster_sep=cluster_sep,
        random_state=random_state,
    )

    levels = [str(x) for x in groups.cat.categories]
    celltype = (
        split_pseudobulk_name(aggr.columns, cluster_sep, 1)
        if aggr.shape[1] else np.array([], dtype=object)
    )

    n_jobs_eff, n_cpus_eff = compute_parallelism(n_groups=len(levels), total_cpus=int(n_jobs))
    LOGGER.info(
        "Per-cell-type DE parallelism: n_levels=%d, total_cpus=%d -> n_jobs=%d, n_cpus_per_job=%d",
        len(levels), int(n_jobs), n_jobs_eff, n_cpus_eff,
    )

    payloads = [
        {
            "level": lev,
            "cm": aggr.loc[:, celltype == lev],
            "sample_groups": {str(k): list(v) for k, v in sample_groups.items()},
            "ref_level": str(ref_level),
            "cluster_sep": cluster_sep,
            "opts": opts,
            "n_cpus": n_cpus_eff,
            "return_details": bool(return_details),
        }
        for lev in levels
    ]

    results: Dict[str, Union[CellTypeDE, pd.DataFrame, DEFailure]] = {}
    t0 = time.perf_counter()
    total = len(payloads)

    if n_jobs_eff <= 1 or total <= 1:
        for i, p in enumerate(payloads, start=1):
            lev, out = _per_cell_type_worker(p)
            results[lev] = out
            _log_level_done(i, total, lev, out, t0)
    else:
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=n_jobs_eff, mp_context=ctx) as ex:
            futs = {ex.submit(_per_cell_type_worker, p): p["level"] for p in payloads}
            done = 0
            for fut in as_completed(futs):
                lev = futs[fut]
                try:
                    lev, out = fut.result()
                except Exception as e:
                    out = DEFailure(level=lev, reason=str(e))
                results[lev] = out
                done += 1
                _log_level_done(done, total, lev, out, t0)

    # keep the categorical order regardless of completion order
    return {lev: results[lev] for lev in levels}


def _log_level_done(i: int, total: int, level: str, out: Any, t0: float) -> None:
    elapsed = time.perf_counter() - t0
    if is_error(out):
        LOGGER.warning("Error for level %s: %s", level, out.reason)
        return
    res = out.res if isinstance(out, CellTypeDE) else out
    n_sig = int((pd.to_numeric(res["padj"], errors="coerce") < 0.05).sum()) if not res.empty else 0
    LOGGER.info(
        "DE [%d/%d] done level=%s genes=%d n_sig=%d elapsed=%.1fs",
        i, total, level, int(res.shape[0]), n_sig, elapsed,
    )


# -----------------------------------------------------------------------------
# Between-cell-type DE
# -----------------------------------------------------------------------------
def between_cell_type_de(
    data: SampleData,
    groups: Union[str, pd.Series, None] = None,
    sample_groups: Optional[Mapping[str, Sequence[str]]] = None,
    ref_group: Optional[str] = None,
    alt_group: Optional[str] = None,
    *,
    sample_key: str = "sample_id",
    counts_layer: Optional[str] = None,
    cooks_cutoff: bool = False,
    independent_filtering: bool = False,
    remove_na: bool = True,
    shrink_lfc: bool = False,
    opts: Optional[DESeqOptions] = None,
    min_cell_count: int = 10,
    only_paired: bool = True,
    cluster_sep: str = DEFAULT_CLUSTER_SEP,
    return_details: bool = True,
    n_cpus: int = 1,
) -> Union[BetweenCellTypeDE, pd.DataFrame]:
    """
    Compare two cell types across the panel of samples.

    Libraries of ``ref_group`` and ``alt_group`` are tested with design
    ``~ library + celltype`` so each sample acts as its own block. With
    ``only_paired`` (default) samples lacking either cell type are dropped.
    """
    if opts is None:
        opts = DESeqOptions(
            cooks_cutoff=cooks_cutoff,
            independent_filtering=independent_filtering,
            remove_na=remove_na,
            shrink_lfc=shrink_lfc,
        )

    samples = resolve_samples(data, sample_key=sample_key, counts_layer=counts_layer)
    groups = resolve_groups(data, groups)
    validate_between_cell_type_params(samples, groups, sample_groups, ref_group, alt_group, cluster_sep)

    ref_group, alt_group = str(ref_group), str(alt_group)

    aggr = build_pseudobulk(
        samples,
        groups,
        sample_groups,
        min_cell_count=min_cell_count,
        cluster_sep=cluster_sep,
    )

    meta = pseudobulk_metadata(aggr.columns, ref_group, alt_group, cluster_sep)
    if only_paired:
        meta = paired_libraries(meta)

    vc = meta["celltype"].value_counts()
    if int(vc.get(ref_group, 0)) == 0 or int(vc.get(alt_group, 0)) == 0:
        raise ValueError(
            f"No pseudobulk libraries left for {ref_group!r} vs {alt_group!r} "
            f"(min_cell_count={min_cell_count}, only_paired={only_paired})"
        )

    meta["celltype"] = pd.Categorical(meta["celltype"], categories=[ref_group, alt_group])
    meta["library"] = meta["library"].astype(str).astype("category")
    cm = aggr.loc[:, meta.index]
    check_counts_whole_numbers(cm)

    LOGGER.info(
        "Between-cell-type DE: %s (n=%d) vs %s (n=%d) over %d samples.",
        alt_group, int(vc.get(alt_group, 0)), ref_group, int(vc.get(ref_group, 0)),
        int(meta["library"].nunique()),
    )

    res, prov = run_deseq(
        cm.T,
        meta[["library", "celltype"]],
        design_factors=["library", "celltype"],
        contrast=("celltype", alt_group, ref_group),
        opts=opts,
        n_cpus=n_cpus,
    )
    res = order_and_filter(res, remove_na=opts.remove_na)

    if return_details:
        return BetweenCellTypeDE(
            res=res,
            cm=cm,
            meta=meta,
            ref_group=ref_group,
            alt_group=alt_group,
            sample_groups={str(k): list(v) for k, v in sample_groups.items()},
            provenance=prov,
        )
    return res
