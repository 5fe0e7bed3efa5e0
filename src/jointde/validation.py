# src/jointde/validation.py
from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Engine availability
# -----------------------------------------------------------------------------
def require_deseq_engine() -> None:
    try:
        import pydeseq2  # noqa: F401
    except Exception as e:
        raise ImportError(
            "PyDESeq2 is required for pseudobulk differential expression. "
            "Install it (and its deps) in your environment."
        ) from e


# -----------------------------------------------------------------------------
# Argument checks shared by the comparisons
# -----------------------------------------------------------------------------
def _check_samples(samples: Mapping[str, ad.AnnData]) -> None:
    if not isinstance(samples, Mapping):
        raise TypeError("samples must be a mapping of sample name -> AnnData")
    if len(samples) == 0:
        raise ValueError("samples must contain at least one sample")
    bad = [str(k) for k, v in samples.items() if not isinstance(v, ad.AnnData)]
    if bad:
        raise TypeError(f"samples entries must be AnnData objects (offending: {bad})")


def _check_groups(groups: Optional[pd.Series]) -> None:
    if groups is None:
        raise ValueError("groups must be specified")
    if not isinstance(groups, pd.Series) or not isinstance(groups.dtype, pd.CategoricalDtype):
        raise TypeError("groups must be a categorical pandas Series indexed by cell id")
    if not groups.index.is_unique:
        raise ValueError("groups index (cell ids) must be unique")


def _check_sample_groups(
    samples: Mapping[str, ad.AnnData],
    sample_groups: Optional[Mapping[str, Sequence[str]]],
) -> None:
    if sample_groups is None:
        raise ValueError("sample_groups must be specified")
    if not isinstance(sample_groups, Mapping):
        raise TypeError("sample_groups must be a mapping of group name -> sample names")
    if any(k is None or str(k) == "" for k in sample_groups.keys()):
        raise ValueError("sample_groups must be named")

    for name, members in sample_groups.items():
        if isinstance(members, str) or not all(isinstance(x, str) for x in members):
            raise TypeError("sample_groups must map names to lists of sample names (strings)")
        if len(members) == 0:
            raise ValueError("sample_groups entries must be of length greater or equal to 1")
        missing = [x for x in members if x not in samples]
        if missing:
            raise ValueError(
                f"sample_groups entries must be names of samples in the dataset "
                f"(group {name!r}, unknown: {missing})"
            )


def _check_separator(
    samples: Mapping[str, ad.AnnData],
    groups: pd.Series,
    cluster_sep: str,
) -> None:
    if not isinstance(cluster_sep, str) or cluster_sep == "":
        raise ValueError("cluster_sep must be a non-empty string")
    if any(cluster_sep in str(s) for s in samples.keys()):
        raise ValueError("cluster_sep must not be part of any sample name")
    if any(cluster_sep in str(lev) for lev in groups.cat.categories):
        raise ValueError("cluster_sep must not be part of any cluster name")


def validate_per_cell_type_params(
    samples: Mapping[str, ad.AnnData],
    groups: Optional[pd.Series],
    sample_groups: Optional[Mapping[str, Sequence[str]]],
    ref_level: Optional[str],
    cluster_sep: str,
) -> None:
    """Validate the design of a per-cell-type condition comparison."""
    require_deseq_engine()
    _check_samples(samples)
    _check_groups(groups)
    _check_sample_groups(samples, sample_groups)

    if len(sample_groups) != 2:
        raise ValueError("sample_groups must be of length 2")
    if ref_level is None:
        raise ValueError("reference level is not defined")
    if str(ref_level) not in sample_groups:
        raise ValueError(
            f"ref_level={ref_level!r} must be one of the sample group names {list(sample_groups)}"
        )

    seen: dict[str, str] = {}
    for name, members in sample_groups.items():
        for s in members:
            if s in seen and seen[s] != name:
                raise ValueError(f"sample {s!r} is assigned to both {seen[s]!r} and {name!r}")
            seen[s] = name

    _check_separator(samples, groups, cluster_sep)


def validate_between_cell_type_params(
    samples: Mapping[str, ad.AnnData],
    groups: Optional[pd.Series],
    sample_groups: Optional[Mapping[str, Sequence[str]]],
    ref_group: Optional[str],
    alt_group: Optional[str],
    cluster_sep: str,
) -> None:
    """Validate the design of a two-cell-type comparison across the panel."""
    require_deseq_engine()
    _check_samples(samples)
    _check_groups(groups)
    _check_sample_groups(samples, sample_groups)

    if ref_group is None:
        raise ValueError("reference group is not defined")
    if alt_group is None:
        raise ValueError("alt_group is not defined")
    if str(ref_group) == str(alt_group):
        raise ValueError("ref_group and alt_group must differ")

    _check_separator(samples, groups, cluster_sep)


# -----------------------------------------------------------------------------
# Count sanity
# -----------------------------------------------------------------------------
def check_counts_whole_numbers(matrix) -> None:
    """
    Raise if any entry of the count matrix is not a whole number.

    Accepts a DataFrame, ndarray or scipy sparse matrix.
    """
    if sp.issparse(matrix):
        values = np.asarray(matrix.data)
    elif isinstance(matrix, pd.DataFrame):
        values = matrix.to_numpy()
    else:
        values = np.asarray(matrix)

    if values.size == 0:
        return

    values = values.astype(np.float64, copy=False)
    ok = np.isfinite(values) & (values == np.floor(values))
    if not bool(np.all(ok)):
        n_bad = int((~ok).sum())
        raise ValueError(
            f"There are {n_bad} counts in the matrix which are not integers. "
            "This leads to DESeq errors. Please check your count matrices."
        )
